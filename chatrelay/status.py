"""
Message status state machine.

    queued < sending < sent < delivered < read
    received              (inbound-only initial state, ranked with delivered)
    failed, undelivered   (absorbing, reachable from any other state)

A status report is applied only when it moves the message forward.
Timestamps are additive: a stale report may fill its own timestamp if it
is still empty, but never clears or overwrites one.
"""

import logging
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

logger = logging.getLogger(__name__)


class MessageStatus(str, Enum):
    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    RECEIVED = "received"
    FAILED = "failed"
    UNDELIVERED = "undelivered"


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


STATUS_RANK: Dict[MessageStatus, int] = {
    MessageStatus.QUEUED: 0,
    MessageStatus.SENDING: 1,
    MessageStatus.SENT: 2,
    MessageStatus.DELIVERED: 3,
    MessageStatus.RECEIVED: 3,
    MessageStatus.READ: 4,
}

ABSORBING_STATUSES: FrozenSet[MessageStatus] = frozenset({
    MessageStatus.FAILED,
    MessageStatus.UNDELIVERED,
})

# Lifecycle timestamp stamped when a status is reported
STATUS_TIMESTAMP_FIELD: Dict[MessageStatus, str] = {
    MessageStatus.SENT: "sent_at",
    MessageStatus.DELIVERED: "delivered_at",
    MessageStatus.READ: "read_at",
    MessageStatus.FAILED: "failed_at",
    MessageStatus.UNDELIVERED: "failed_at",
}

# Only inbound records may be in these states
INBOUND_ONLY_STATUSES: FrozenSet[MessageStatus] = frozenset({MessageStatus.RECEIVED})

DEFAULT_FAILURE_CODE = "UNKNOWN"
DEFAULT_FAILURE_MESSAGE = "Delivery failed"

# Gateway status vocabulary -> internal state machine
GATEWAY_STATUS_MAP: Dict[str, MessageStatus] = {
    "accepted": MessageStatus.QUEUED,
    "scheduled": MessageStatus.QUEUED,
    "queued": MessageStatus.QUEUED,
    "sending": MessageStatus.SENDING,
    "sent": MessageStatus.SENT,
    "delivered": MessageStatus.DELIVERED,
    "read": MessageStatus.READ,
    "receiving": MessageStatus.RECEIVED,
    "received": MessageStatus.RECEIVED,
    "failed": MessageStatus.FAILED,
    "undelivered": MessageStatus.UNDELIVERED,
    "canceled": MessageStatus.FAILED,
}


def map_gateway_status(raw: Optional[str]) -> Optional[MessageStatus]:
    """Translate a gateway status string; unknown values map to None."""
    if not raw:
        return None
    status = GATEWAY_STATUS_MAP.get(raw.strip().lower())
    if status is None:
        logger.warning(f"Unrecognized gateway status: {raw!r}")
    return status


def is_failure(status: MessageStatus) -> bool:
    return status in ABSORBING_STATUSES


def can_transition(
    current: MessageStatus,
    new: MessageStatus,
    direction: Optional[Direction] = None,
) -> bool:
    """Return True if a report of `new` may replace `current` on a record with `direction`."""
    if new in INBOUND_ONLY_STATUSES and direction is not None and direction != Direction.INBOUND:
        return False
    if current in ABSORBING_STATUSES:
        return False
    if new in ABSORBING_STATUSES:
        return True
    return STATUS_RANK[new] > STATUS_RANK[current]


def statuses_advancing_to(new: MessageStatus) -> List[MessageStatus]:
    """Every current status from which `new` is an accepted transition."""
    return [status for status in MessageStatus if can_transition(status, new)]
