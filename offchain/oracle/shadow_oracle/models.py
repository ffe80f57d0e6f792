"""
Payout intent ("swipe") data model.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional


class SwipeStatus(str, Enum):
    """Swipe lifecycle status."""

    PENDING = "PENDING"
    ATTESTED = "ATTESTED"
    BROADCAST = "BROADCAST"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {SwipeStatus.CONFIRMED, SwipeStatus.FAILED, SwipeStatus.EXPIRED}
)

# Allowed forward transitions. Anything else is rejected by the store.
# Rows may carry BROADCAST; the pipeline itself confirms straight from ATTESTED.
TRANSITIONS: dict[SwipeStatus, frozenset[SwipeStatus]] = {
    SwipeStatus.PENDING: frozenset(
        {SwipeStatus.ATTESTED, SwipeStatus.FAILED, SwipeStatus.EXPIRED}
    ),
    SwipeStatus.ATTESTED: frozenset(
        {SwipeStatus.BROADCAST, SwipeStatus.CONFIRMED, SwipeStatus.EXPIRED}
    ),
    SwipeStatus.BROADCAST: frozenset({SwipeStatus.CONFIRMED, SwipeStatus.EXPIRED}),
    SwipeStatus.CONFIRMED: frozenset(),
    SwipeStatus.FAILED: frozenset(),
    SwipeStatus.EXPIRED: frozenset(),
}


def can_transition(current: SwipeStatus, target: SwipeStatus) -> bool:
    """Check whether a status change moves strictly forward."""
    return target in TRANSITIONS[current]


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in the swipes table."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class SwipeSnapshot:
    """Fields of a newly observed PENDING intent needed downstream."""

    id: str
    bch_recipient: str
    amount_usd: Decimal
    nonce: int
    amount_bch: Optional[Decimal] = None
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at


@dataclass
class PayoutIntent:
    """Full persisted record of a swipe."""

    id: str
    user_id: str
    nonce: int
    amount_usd: Decimal
    bch_recipient: str
    status: SwipeStatus
    starknet_tx_hash: str
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    amount_bch: Optional[Decimal] = None
    amount_sats: Optional[int] = None
    destination_hash: Optional[str] = None
    nl_input: Optional[str] = None
    ai_confidence: Optional[float] = None
    starknet_block: Optional[int] = None
    oracle_signature: Optional[str] = None
    oracle_message: Optional[str] = None
    oracle_public_key: Optional[str] = None
    attested_at: Optional[datetime] = None
    bch_tx_hash: Optional[str] = None
    bch_confirmed_at: Optional[datetime] = None
    broadcast_attempts: int = 0
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None

    def snapshot(self) -> SwipeSnapshot:
        return SwipeSnapshot(
            id=self.id,
            bch_recipient=self.bch_recipient,
            amount_usd=self.amount_usd,
            nonce=self.nonce,
            amount_bch=self.amount_bch,
            expires_at=self.expires_at,
            created_at=self.created_at,
        )

    @property
    def is_attested(self) -> bool:
        return (
            self.oracle_signature is not None
            and self.oracle_message is not None
            and self.amount_sats is not None
        )
