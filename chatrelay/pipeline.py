"""
Outbound delivery pipeline.

    validate -> normalize addresses -> persist queued record
             -> submit through the Retry Scheduler -> record sent/failed
             -> notify subscribers

Failures before the record exists are caller errors and come back as a
rejected SubmissionResult. Failures after it exists are absorbed into the
record's state; submit() never raises.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from pydantic import HttpUrl, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from chatrelay import storage
from chatrelay.errors import (
    GatewayError,
    MessageNotFound,
    RelayError,
    RetryNotAllowed,
    SubmissionFailed,
    ValidationError,
    is_retryable,
)
from chatrelay.gateway import GatewayClient, GatewaySubmission
from chatrelay.logging_utils import bind_message_context
from chatrelay.metrics import record_gateway_submission
from chatrelay.phone import DEFAULT_CHANNEL_PREFIX, to_storage_address
from chatrelay.realtime import EVENT_NEW_MESSAGE, EVENT_STATUS_UPDATE, Broadcaster
from chatrelay.retry import RetryScheduler
from chatrelay.schemas import MessageSnapshot
from chatrelay.status import Direction, MessageStatus

logger = logging.getLogger(__name__)

_http_url = TypeAdapter(HttpUrl)


@dataclass
class OutboundRequest:
    """What a caller asks the pipeline to send."""

    conversation_id: Optional[str]
    to: Optional[str]
    body: Optional[str] = None
    template_id: Optional[str] = None
    template_variables: Optional[Dict[str, Any]] = None
    media_urls: List[str] = field(default_factory=list)
    contact_name: Optional[str] = None
    from_name: str = "System"

    @property
    def message_type(self) -> str:
        if self.template_id:
            return "template"
        if self.media_urls:
            return "media"
        return "text"


@dataclass
class SubmissionResult:
    """
    Outcome of a submission.

    `accepted` is False only for caller errors, in which case no record
    was created. `success` reports whether the gateway took the message.
    """

    accepted: bool
    success: bool
    message: Optional[MessageSnapshot] = None
    error: Optional[RelayError] = None
    task: Optional["asyncio.Task[SubmissionResult]"] = field(default=None, repr=False, compare=False)

    @property
    def message_id(self) -> Optional[str]:
        return self.message.id if self.message else None

    @property
    def gateway_message_id(self) -> Optional[str]:
        return self.message.gateway_message_id if self.message else None

    @property
    def status(self) -> Optional[str]:
        return self.message.status if self.message else None

    @property
    def error_code(self) -> Optional[str]:
        if isinstance(self.error, GatewayError):
            return self.error.error_code
        return self.error.code if self.error else None

    @classmethod
    def rejected(cls, error: RelayError) -> "SubmissionResult":
        return cls(accepted=False, success=False, error=error)


class DeliveryPipeline:
    """
    Orchestrates outbound sends.

    Background submissions started by accept() or retry() are owned here:
    their handles are tracked until they finish and drain() awaits them.
    """

    def __init__(
        self,
        store: storage.MessageStore,
        gateway: GatewayClient,
        scheduler: RetryScheduler,
        broadcaster: Broadcaster,
        from_number: str,
        status_callback_url: Optional[str] = None,
        default_country_code: Optional[str] = None,
        channel_prefix: str = DEFAULT_CHANNEL_PREFIX,
        on_submitted: Optional[Callable[[str], Awaitable[Optional[MessageSnapshot]]]] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.scheduler = scheduler
        self.broadcaster = broadcaster
        self.from_number = from_number
        self.status_callback_url = status_callback_url
        self.default_country_code = default_country_code
        self.channel_prefix = channel_prefix
        self.on_submitted = on_submitted
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    async def submit(self, request: OutboundRequest) -> SubmissionResult:
        """Run the whole pipeline and return its structured outcome."""
        prepared = await self._prepare(request)
        if not prepared.accepted:
            return prepared
        return await self._deliver(prepared.message)

    async def accept(self, request: OutboundRequest) -> SubmissionResult:
        """
        Persist the queued record and hand the gateway submission to a
        background task. The returned result carries the task handle.
        """
        prepared = await self._prepare(request)
        if not prepared.accepted:
            return prepared
        prepared.task = self._spawn(prepared.message)
        return prepared

    async def retry(self, message_id: str) -> SubmissionResult:
        """
        Manually resubmit a failed outbound message.

        The record is reset to queued under a fresh interim id, then
        submitted in the background like a new message.

        Raises:
            MessageNotFound: no such message
            RetryNotAllowed: the message is inbound or not in a failed state
        """
        record = await self.store.run(storage.reset_for_retry, message_id)
        if record is None:
            existing = await self.store.run(storage.get_message, message_id)
            if existing is None:
                raise MessageNotFound(f"Message not found: {message_id}")
            raise RetryNotAllowed(
                f"Message {message_id} is {existing.direction}/{existing.status}; "
                "only failed outbound messages can be retried"
            )

        snapshot = MessageSnapshot.model_validate(record)
        logger.info(f"Manual retry queued for message {snapshot.id}")
        await self._notify(snapshot, EVENT_STATUS_UPDATE)
        result = SubmissionResult(accepted=True, success=False, message=snapshot)
        result.task = self._spawn(snapshot)
        return result

    async def drain(self) -> None:
        """Wait for every background submission started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def _validate(self, request: OutboundRequest) -> None:
        missing = [
            name for name, value in (("conversationId", request.conversation_id), ("to", request.to))
            if not value or not str(value).strip()
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}", details={"missing": missing})

        has_body = bool(request.body and request.body.strip())
        if request.template_id:
            if has_body or request.media_urls:
                raise ValidationError("Template messages cannot include body text or media")
        elif not has_body and not request.media_urls:
            raise ValidationError("body, templateId or mediaUrl is required")

        for url in request.media_urls:
            try:
                _http_url.validate_python(url)
            except PydanticValidationError:
                raise ValidationError(f"Invalid media URL: {url!r}", details={"mediaUrl": url})

    async def _prepare(self, request: OutboundRequest) -> SubmissionResult:
        """Validate, normalize and persist the queued record."""
        try:
            self._validate(request)
            to_address = to_storage_address(request.to, self.default_country_code, self.channel_prefix)
            from_address = to_storage_address(self.from_number, self.default_country_code, self.channel_prefix)
        except ValidationError as e:
            logger.info(f"Submission rejected: {e.code}: {e.message}")
            return SubmissionResult.rejected(e)

        record, _ = await self.store.run(
            storage.create_message,
            gateway_message_id=storage.new_interim_id(),
            conversation_id=request.conversation_id,
            contact_name=request.contact_name or "Unknown",
            from_name=request.from_name,
            direction=Direction.OUTBOUND.value,
            message_type=request.message_type,
            body=request.body,
            template_id=request.template_id,
            template_variables=request.template_variables,
            media_urls=list(request.media_urls),
            from_address=from_address,
            to_address=to_address,
            status=MessageStatus.QUEUED.value,
        )
        snapshot = MessageSnapshot.model_validate(record)
        logger.info(
            f"Outbound message queued: {snapshot.id}",
            extra={"conversation_id": snapshot.conversation_id, "message_type": snapshot.message_type},
        )
        return SubmissionResult(accepted=True, success=False, message=snapshot)

    def _build_submission(self, message: MessageSnapshot) -> GatewaySubmission:
        return GatewaySubmission(
            from_address=f"{self.channel_prefix}{message.from_address}",
            to_address=f"{self.channel_prefix}{message.to_address}",
            body=message.body,
            media_urls=list(message.media_urls),
            template_id=message.template_id,
            template_variables=message.template_variables,
            status_callback=self.status_callback_url,
        )

    async def _deliver(self, message: MessageSnapshot) -> SubmissionResult:
        """Submit through the Retry Scheduler and record the outcome."""
        with bind_message_context(message_id=message.id, conversation_id=message.conversation_id):
            return await self._submit_and_record(message)

    async def _submit_and_record(self, message: MessageSnapshot) -> SubmissionResult:
        submission = self._build_submission(message)
        retries = 0

        def count_retry(retry_number: int, error: Exception, delay: float) -> None:
            nonlocal retries
            retries = retry_number
            logger.info(f"Submission of {message.id} failed ({error}); retry {retry_number} in {delay}s")

        try:
            accepted = await self.scheduler.run(
                lambda: self.gateway.submit_message(submission),
                is_retryable,
                on_retry=count_retry,
            )
        except Exception as e:
            if isinstance(e, GatewayError):
                error, error_code = e, e.error_code
            else:
                error = SubmissionFailed(str(e) or type(e).__name__)
                error_code = error.code
            logger.error(f"Submission of {message.id} failed: {error_code}: {error.message}")
            record_gateway_submission("failed")
            try:
                record = await self.store.run(
                    storage.mark_submission_failed, message.id, error_code, error.message, retries
                )
            except Exception:
                logger.exception(f"Could not record failure for message {message.id}")
                return SubmissionResult(accepted=True, success=False, message=message, error=error)
            snapshot = MessageSnapshot.model_validate(record)
            await self._notify(snapshot, EVENT_STATUS_UPDATE)
            return SubmissionResult(accepted=True, success=False, message=snapshot, error=error)

        record_gateway_submission("sent")
        try:
            record = await self.store.run(storage.mark_submitted, message.id, accepted.sid, retries)
        except Exception:
            logger.exception(f"Could not record gateway id {accepted.sid} for message {message.id}")
            return SubmissionResult(accepted=True, success=True, message=message)
        snapshot = MessageSnapshot.model_validate(record)
        logger.info(f"Message {snapshot.id} sent with gateway id {snapshot.gateway_message_id}")
        await self._notify(snapshot, EVENT_NEW_MESSAGE)
        if self.on_submitted is not None:
            try:
                replayed = await self.on_submitted(snapshot.gateway_message_id)
            except Exception:
                logger.exception(f"Could not replay early reports for {snapshot.gateway_message_id}")
            else:
                snapshot = replayed or snapshot
        return SubmissionResult(accepted=True, success=True, message=snapshot)

    async def _notify(self, message: MessageSnapshot, event: str) -> None:
        try:
            await self.broadcaster.broadcast(message.conversation_id, event, message.to_event())
        except Exception as e:
            logger.warning(f"Realtime notification {event} for {message.id} failed: {e}")

    def _spawn(self, message: MessageSnapshot) -> asyncio.Task:
        task = asyncio.create_task(self._deliver(message), name=f"deliver-{message.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
