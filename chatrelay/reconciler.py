"""
Status reconciliation for gateway callbacks.

Every status report goes through one conditional update on the stored
record, so concurrent or repeated callbacks for the same message can only
move it forward. Reports for messages this instance does not track are
logged and acknowledged, not treated as errors. A bounded number of them
are held and replayed once the submission records that gateway id.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from chatrelay import storage
from chatrelay.errors import MessageNotFound, ValidationError
from chatrelay.gateway import GatewayClient
from chatrelay.logging_utils import bind_message_context
from chatrelay.metrics import record_status_transition
from chatrelay.phone import strip_channel_prefix
from chatrelay.realtime import EVENT_MESSAGES_READ, EVENT_NEW_MESSAGE, EVENT_STATUS_UPDATE, Broadcaster
from chatrelay.schemas import IncomingWebhookPayload, MessageSnapshot, StatusCallbackPayload
from chatrelay.status import (
    DEFAULT_FAILURE_CODE,
    DEFAULT_FAILURE_MESSAGE,
    Direction,
    MessageStatus,
    is_failure,
    map_gateway_status,
)

logger = logging.getLogger(__name__)

# Gateway ids whose early reports are held until their record is known
PENDING_REPORT_LIMIT = 256

PendingReport = Tuple[MessageStatus, Optional[str], Optional[str]]


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    NOT_TRACKED = "not_tracked"
    UNRECOGNIZED = "unrecognized"


@dataclass
class ReconcileResult:
    outcome: ReconcileOutcome
    message: Optional[MessageSnapshot] = None
    status: Optional[MessageStatus] = None


class StatusReconciler:
    """Applies gateway reports (status callbacks, inbound messages, reads) to the store."""

    def __init__(
        self,
        store: storage.MessageStore,
        broadcaster: Broadcaster,
        gateway: Optional[GatewayClient] = None,
        pending_limit: int = PENDING_REPORT_LIMIT,
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.gateway = gateway
        self.pending_limit = pending_limit
        self._pending: "OrderedDict[str, List[PendingReport]]" = OrderedDict()

    async def reconcile(self, callback: StatusCallbackPayload) -> ReconcileResult:
        """Apply one delivery-status callback."""
        status = map_gateway_status(callback.message_status)
        if status is None:
            record_status_transition(callback.message_status, ReconcileOutcome.UNRECOGNIZED.value)
            logger.warning(
                f"Ignoring unrecognized status {callback.message_status!r} for {callback.message_sid}"
            )
            return ReconcileResult(ReconcileOutcome.UNRECOGNIZED)

        error_code = error_message = None
        if is_failure(status):
            error_code = callback.error_code or DEFAULT_FAILURE_CODE
            error_message = callback.error_message or DEFAULT_FAILURE_MESSAGE

        with bind_message_context(gateway_message_id=callback.message_sid):
            result = await self._apply(callback.message_sid, status, error_code, error_message)
            if result.outcome is ReconcileOutcome.NOT_TRACKED and not storage.is_interim_id(callback.message_sid):
                self._hold(callback.message_sid, (status, error_code, error_message))
        return result

    async def replay_pending(self, gateway_message_id: str) -> Optional[MessageSnapshot]:
        """
        Apply reports that arrived before the gateway id was recorded.

        Returns:
            The record after the last replayed report, or None if nothing was held
        """
        reports = self._pending.pop(gateway_message_id, None)
        if not reports:
            return None

        latest = None
        for status, error_code, error_message in reports:
            result = await self._apply(gateway_message_id, status, error_code, error_message)
            if result.message is not None:
                latest = result.message
        logger.info(f"Replayed {len(reports)} early report(s) for {gateway_message_id}")
        return latest

    def _hold(self, gateway_message_id: str, report: PendingReport) -> None:
        self._pending.setdefault(gateway_message_id, []).append(report)
        self._pending.move_to_end(gateway_message_id)
        while len(self._pending) > self.pending_limit:
            dropped, _ = self._pending.popitem(last=False)
            logger.debug(f"Dropped held reports for untracked gateway id {dropped}")

    async def _apply(
        self,
        gateway_message_id: str,
        status: MessageStatus,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> ReconcileResult:
        outcome_name, record = await self.store.run(
            storage.apply_status, gateway_message_id, status, error_code, error_message
        )
        outcome = ReconcileOutcome(outcome_name)
        record_status_transition(status.value, outcome.value)

        if outcome is ReconcileOutcome.NOT_TRACKED:
            logger.info(f"No message found for gateway id {gateway_message_id}; status {status.value} not applied")
            return ReconcileResult(outcome, status=status)

        snapshot = MessageSnapshot.model_validate(record)
        if outcome is ReconcileOutcome.APPLIED:
            logger.info(f"Message {gateway_message_id} moved to {status.value}")
            await self._notify(snapshot.conversation_id, EVENT_STATUS_UPDATE, snapshot.to_event())
        else:
            logger.info(
                f"Status {status.value} for {gateway_message_id} does not advance {snapshot.status}; ignored"
            )
        return ReconcileResult(outcome, message=snapshot, status=status)

    async def record_inbound(self, inbound: IncomingWebhookPayload) -> Tuple[MessageSnapshot, bool]:
        """
        Store an inbound message on first sight; a repeat only re-reports 'received'.

        Returns:
            Tuple of (record snapshot, created)
        """
        from_address = strip_channel_prefix(inbound.from_address)
        to_address = strip_channel_prefix(inbound.to_address)
        contact_name = inbound.profile_name or from_address

        existing = await self.store.run(storage.get_message_by_gateway_id, inbound.message_sid)
        if existing is not None:
            result = await self._apply(inbound.message_sid, MessageStatus.RECEIVED)
            return result.message, False

        conversation_id = await self.store.run(storage.find_conversation_for_address, from_address)
        if not conversation_id:
            logger.warning(
                f"No conversation found for incoming number {from_address}; using the number itself"
            )
            conversation_id = from_address

        now = storage.utcnow()
        record, created = await self.store.run(
            storage.create_message,
            gateway_message_id=inbound.message_sid,
            conversation_id=conversation_id,
            contact_name=contact_name,
            from_name=contact_name or "Unknown",
            direction=Direction.INBOUND.value,
            message_type="media" if inbound.media_urls else "text",
            body=inbound.body,
            media_urls=inbound.media_urls,
            from_address=from_address,
            to_address=to_address,
            status=MessageStatus.RECEIVED.value,
            is_read=False,
            delivered_at=now,
            now=now,
        )
        if not created:
            # Lost an insert race with a concurrent delivery of the same webhook
            result = await self._apply(inbound.message_sid, MessageStatus.RECEIVED)
            return result.message, False

        snapshot = MessageSnapshot.model_validate(record)
        logger.info(f"Incoming message saved: {inbound.message_sid}", extra={"conversation_id": conversation_id})
        await self._notify(conversation_id, EVENT_NEW_MESSAGE, snapshot.to_event())
        return snapshot, True

    async def mark_read(
        self,
        message_ids: Optional[Sequence[str]] = None,
        conversation_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Idempotently mark messages read and notify each affected conversation.

        Raises:
            ValidationError: neither message ids nor a conversation were given
        """
        if not message_ids and not conversation_id:
            raise ValidationError("messageIds or conversationId required")

        result = await self.store.run(
            storage.mark_read, message_ids=message_ids, conversation_id=conversation_id
        )
        conversations: Dict[str, List[str]] = result["conversations"]
        for conversation, ids in conversations.items():
            await self._notify(conversation, EVENT_MESSAGES_READ, {"conversationId": conversation, "messageIds": ids})
        return result

    async def refresh(self, identifier: str) -> ReconcileResult:
        """
        Ask the gateway for a message's current status and reconcile it.

        Raises:
            MessageNotFound: the message is unknown locally
        """
        record = await self.store.run(storage.get_message, identifier)
        if record is None:
            raise MessageNotFound(f"Message not found: {identifier}")
        snapshot = MessageSnapshot.model_validate(record)
        if self.gateway is None or storage.is_interim_id(snapshot.gateway_message_id):
            return ReconcileResult(ReconcileOutcome.IGNORED, message=snapshot)

        remote = await self.gateway.fetch_message(snapshot.gateway_message_id)
        if not remote.status:
            return ReconcileResult(ReconcileOutcome.IGNORED, message=snapshot)
        return await self.reconcile(
            StatusCallbackPayload.model_validate({
                "MessageSid": remote.sid,
                "MessageStatus": remote.status,
                "ErrorCode": remote.error_code,
                "ErrorMessage": remote.error_message,
            })
        )

    async def _notify(self, conversation_id: str, event: str, payload: Any) -> None:
        try:
            await self.broadcaster.broadcast(conversation_id, event, payload)
        except Exception as e:
            logger.warning(f"Realtime notification {event} for room {conversation_id} failed: {e}")
