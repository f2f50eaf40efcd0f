"""
Invoice data model and state machine.

An Invoice is a requested XRP payment correlated to a ledger payment by
its correlation tag. It is created ``pending`` and reaches exactly one
terminal status.

State machine:
    pending → paid      (matching payment observed before expires_at)
    pending → expired   (expiry sweep, now >= expires_at)
    paid    → (terminal; minting sets mint_tx_hash, never changes status)
    expired → (terminal)

``orphaned`` never appears on an invoice: unmatched payments become
Orphan records keyed by transaction hash. ``failed`` is reserved and
has no inbound edge.

Invariants:
    - correlation_tag is unique across all invoices (store-enforced).
    - observed_tx_hash is set once, on the transition into paid.
    - mint_tx_hash is set once, only when status == paid and
      destination is non-empty.
    - Amounts are integer drops, never floats.
    - All timestamps are timezone-aware UTC datetimes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from fassets_pay.amounts import format_xrp


class InvoiceStatus(StrEnum):
    """Lifecycle status of an invoice."""

    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"
    FAILED = "failed"
    ORPHANED = "orphaned"


# The only edges of the state machine.
ALLOWED_TRANSITIONS: frozenset[tuple[InvoiceStatus, InvoiceStatus]] = frozenset({
    (InvoiceStatus.PENDING, InvoiceStatus.PAID),
    (InvoiceStatus.PENDING, InvoiceStatus.EXPIRED),
})

TERMINAL_STATUSES: frozenset[InvoiceStatus] = frozenset({
    InvoiceStatus.PAID,
    InvoiceStatus.EXPIRED,
    InvoiceStatus.FAILED,
    InvoiceStatus.ORPHANED,
})


def is_allowed_transition(from_status: str, to_status: str) -> bool:
    """Check whether from_status → to_status is an edge of the state machine."""
    try:
        edge = (InvoiceStatus(from_status), InvoiceStatus(to_status))
    except ValueError:
        return False
    return edge in ALLOWED_TRANSITIONS


# =========================================================================
# Timestamps
# =========================================================================


def utc_now() -> datetime:
    """Current time, UTC, second precision."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def format_ts(value: datetime) -> str:
    """RFC3339 UTC string with fixed width, so stored values sort lexically."""
    if value.tzinfo is None:
        raise ValueError("timestamps must be timezone-aware")
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S+00:00")


def parse_ts(value: str) -> datetime:
    """Parse a timestamp produced by format_ts()."""
    return datetime.fromisoformat(value).astimezone(timezone.utc)


# =========================================================================
# Invoice
# =========================================================================


@dataclass(frozen=True)
class Invoice:
    """A stored invoice.

    Attributes:
        id: Caller-visible identifier, used for status polling.
        owner: Reference to the requesting principal.
        amount_drops: Requested amount in drops.
        deposit_address: XRPL r-address funds must be sent to.
        correlation_tag: Token the payment memo must carry.
        destination: Optional second-ledger address to mint to.
        status: Current lifecycle status.
        created_at: Creation time.
        expires_at: Time after which an unpaid invoice expires.
        observed_tx_hash: Hash of the satisfying XRPL payment.
        observed_amount_drops: Amount actually delivered (audit only).
        source_address: Payer address of the satisfying payment.
        mint_tx_hash: Hash of the confirmed mint transaction.
        mint_block: Block number of the confirmed mint.
        mint_submitted_tx_hash: Hash of a broadcast mint whose receipt
            was not seen; looked up before any new submission.
        mint_claimed_at: Set while a mint submission is in flight.
        mint_attempts: Number of mint submissions claimed so far.
        last_mint_error: Detail of the most recent mint failure.
        updated_at: Last mutation time.
    """

    id: str
    owner: str
    amount_drops: int
    deposit_address: str
    correlation_tag: str
    destination: str | None
    status: InvoiceStatus
    created_at: datetime
    expires_at: datetime
    observed_tx_hash: str | None = None
    observed_amount_drops: int | None = None
    source_address: str | None = None
    mint_tx_hash: str | None = None
    mint_block: int | None = None
    mint_submitted_tx_hash: str | None = None
    mint_claimed_at: datetime | None = None
    mint_attempts: int = 0
    last_mint_error: str | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def needs_mint(self) -> bool:
        """Paid, has a destination, and no confirmed mint yet."""
        return (
            self.status == InvoiceStatus.PAID
            and bool(self.destination)
            and self.mint_tx_hash is None
        )

    def is_expired_at(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner": self.owner,
            "amount_drops": self.amount_drops,
            "amount_xrp": format_xrp(self.amount_drops),
            "deposit_address": self.deposit_address,
            "correlation_tag": self.correlation_tag,
            "destination": self.destination,
            "status": self.status.value,
            "created_at": format_ts(self.created_at),
            "expires_at": format_ts(self.expires_at),
            "observed_tx_hash": self.observed_tx_hash,
            "observed_amount_drops": self.observed_amount_drops,
            "source_address": self.source_address,
            "mint_tx_hash": self.mint_tx_hash,
            "mint_block": self.mint_block,
            "mint_submitted_tx_hash": self.mint_submitted_tx_hash,
            "mint_attempts": self.mint_attempts,
            "last_mint_error": self.last_mint_error,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Invoice:
        claimed = row.get("mint_claimed_at")
        updated = row.get("updated_at")
        return cls(
            id=row["id"],
            owner=row["owner"],
            amount_drops=row["amount_drops"],
            deposit_address=row["deposit_address"],
            correlation_tag=row["correlation_tag"],
            destination=row["destination"],
            status=InvoiceStatus(row["status"]),
            created_at=parse_ts(row["created_at"]),
            expires_at=parse_ts(row["expires_at"]),
            observed_tx_hash=row["observed_tx_hash"],
            observed_amount_drops=row["observed_amount_drops"],
            source_address=row["source_address"],
            mint_tx_hash=row["mint_tx_hash"],
            mint_block=row["mint_block"],
            mint_submitted_tx_hash=row.get("mint_submitted_tx_hash"),
            mint_claimed_at=parse_ts(claimed) if claimed else None,
            mint_attempts=row["mint_attempts"],
            last_mint_error=row["last_mint_error"],
            updated_at=parse_ts(updated) if updated else None,
        )


# =========================================================================
# Observed transaction / Orphan
# =========================================================================


@dataclass(frozen=True)
class ObservedTransaction:
    """A payment read from the XRPL, by poll or subscription.

    Ephemeral: only ever an input to reconciliation.

    Attributes:
        tx_hash: Transaction hash (64 hex chars).
        source_address: Sending account.
        destination_address: Receiving account.
        amount_drops: Delivered native amount, None if non-native.
        memo_text: Decoded memo, None if absent or undecodable.
        success: tesSUCCESS in a validated ledger.
        transaction_type: Ledger transaction type ("Payment", ...).
    """

    tx_hash: str
    source_address: str
    destination_address: str
    amount_drops: int | None
    memo_text: str | None
    success: bool
    transaction_type: str = "Payment"


@dataclass(frozen=True)
class Orphan:
    """A successful payment to the deposit address that no invoice absorbed.

    Keyed by tx_hash; recorded at most once per transaction.

    Attributes:
        tx_hash: Transaction hash (primary key).
        source_address: Sending account.
        destination_address: Receiving (deposit) account.
        amount_drops: Delivered amount in drops.
        memo_text: Decoded memo, if any.
        reason: Why it could not be matched ("no_memo", "unknown_tag",
            "invoice_paid", "invoice_expired", ...).
        invoice_id: Invoice the memo pointed at, if it resolved to one.
        observed_at: When the orphan was recorded.
    """

    tx_hash: str
    source_address: str
    destination_address: str
    amount_drops: int | None
    memo_text: str | None
    reason: str
    invoice_id: str | None
    observed_at: datetime
    status: InvoiceStatus = InvoiceStatus.ORPHANED

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Orphan:
        return cls(
            tx_hash=row["tx_hash"],
            source_address=row["source_address"],
            destination_address=row["destination_address"],
            amount_drops=row["amount_drops"],
            memo_text=row["memo_text"],
            reason=row["reason"],
            invoice_id=row["invoice_id"],
            observed_at=parse_ts(row["observed_at"]),
        )
