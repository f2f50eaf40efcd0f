"""
Invoice expiry.

pending → expired happens when now >= expires_at and no payment has
been accepted. The transition is the store's compare-and-swap, so an
expiry racing a payment acceptance has exactly one winner; the loser
here is logged and skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from fassets_pay.errors import ConflictError
from fassets_pay.invoice import Invoice, InvoiceStatus
from fassets_pay.storage import InvoiceStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepResult:
    """Outcome of one expiry sweep.

    Attributes:
        expired: Ids of invoices this sweep moved to expired.
        conflicts: Ids whose compare-and-swap was lost (already paid or
            expired by someone else).
    """

    expired: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)


def expire_invoice(store: InvoiceStore, invoice: Invoice) -> bool:
    """Try to move one pending invoice to expired.

    Returns:
        True if this call expired it, False if another writer won or the
        invoice is not yet due.
    """
    try:
        store.transition(invoice.id, InvoiceStatus.PENDING, InvoiceStatus.EXPIRED)
    except ConflictError as exc:
        logger.warning(
            f"Expiry of invoice {invoice.id} suppressed: status is {exc.actual}"
        )
        return False
    logger.info(f"Invoice {invoice.id} expired (expires_at {invoice.expires_at.isoformat()})")
    return True


def sweep_expired(store: InvoiceStore, limit: int = 500) -> SweepResult:
    """Expire every pending invoice whose expires_at has passed."""
    result = SweepResult()
    for invoice in store.list_pending(older_than=store.now(), limit=limit):
        if expire_invoice(store, invoice):
            result.expired.append(invoice.id)
        else:
            result.conflicts.append(invoice.id)
    return result
