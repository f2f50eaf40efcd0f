"""
Reconciliation engine — matches observed payments to invoices.

Input is one ObservedTransaction, from either observer, possibly a
duplicate, possibly out of order. Output is at most one state change.

Algorithm:
    1. Reject unless success, destination == watch address, and the
       delivered amount is native XRP.
    2. No memo, or a memo that is not shaped like a correlation tag →
       orphan.
    3. Look up the invoice by tag.
        - pending and not yet due: compare-and-swap pending → paid with
          observed_tx_hash. A lost compare-and-swap is logged and
          re-read: the same tx_hash won (another observer got there
          first) → duplicate, no orphan; a different payment won →
          treated as below.
        - pending but due: expire it first (compare-and-swap), then
          treat as below.
        - paid by this same tx_hash: duplicate.
        - paid by another payment, or expired: the funds are not
          absorbed by any invoice → orphan linked to the invoice.
    4. Orphans are insert-if-absent by tx_hash.

Amounts are recorded, not validated: any successful payment carrying
the right tag satisfies the invoice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum

from fassets_pay.errors import ConflictError, InvoiceNotFound
from fassets_pay.expiry import expire_invoice
from fassets_pay.invoice import Invoice, InvoiceStatus, ObservedTransaction
from fassets_pay.storage import InvoiceStore
from fassets_pay.tags import is_correlation_tag

logger = logging.getLogger(__name__)


class ReconcileOutcome(StrEnum):
    """What reconciliation did with one observed transaction."""

    PAID = "PAID"
    DUPLICATE = "DUPLICATE"
    ORPHANED = "ORPHANED"
    ORPHAN_DUPLICATE = "ORPHAN_DUPLICATE"
    REJECTED = "REJECTED"


class OrphanReason(StrEnum):
    NO_MEMO = "no_memo"
    UNPARSEABLE_MEMO = "unparseable_memo"
    UNKNOWN_TAG = "unknown_tag"
    INVOICE_PAID = "invoice_paid"
    INVOICE_EXPIRED = "invoice_expired"
    INVOICE_TERMINAL = "invoice_terminal"


@dataclass(frozen=True)
class ReconcileResult:
    """Result of reconciling one observed transaction.

    Attributes:
        outcome: What happened.
        tx_hash: The transaction reconciled.
        invoice: The invoice the memo resolved to, if any (post-update
            snapshot when outcome is PAID).
        reason: Orphan reason or rejection detail.
    """

    outcome: ReconcileOutcome
    tx_hash: str
    invoice: Invoice | None = None
    reason: str | None = None

    @property
    def newly_paid(self) -> bool:
        return self.outcome == ReconcileOutcome.PAID


class ReconciliationEngine:
    """Decides what an observed payment means for invoice state.

    Stateless apart from the store; safe to share between observers and
    to run in several processes against one database.

    Args:
        store: The invoice store.
        watch_address: The deposit address payments must go to.
    """

    def __init__(self, store: InvoiceStore, watch_address: str) -> None:
        self._store = store
        self._watch_address = watch_address

    @property
    def watch_address(self) -> str:
        return self._watch_address

    def reconcile(self, tx: ObservedTransaction) -> ReconcileResult:
        """Reconcile one observed transaction. Idempotent per tx_hash."""
        logger.debug(
            f"Observed payment {tx.tx_hash}: {tx.source_address} -> "
            f"{tx.destination_address} drops={tx.amount_drops} memo={tx.memo_text!r} "
            f"success={tx.success}"
        )

        # 1. Reject
        if not tx.success:
            return self._reject(tx, "transaction not successful in a validated ledger")
        if tx.destination_address != self._watch_address:
            return self._reject(tx, f"destination {tx.destination_address} is not watched")
        if tx.amount_drops is None:
            return self._reject(tx, "delivered amount is not native XRP")

        # 2. Memo
        memo = tx.memo_text
        if not memo:
            return self._orphan(tx, OrphanReason.NO_MEMO)
        if not is_correlation_tag(memo):
            return self._orphan(tx, OrphanReason.UNPARSEABLE_MEMO)

        # 3. Invoice lookup
        try:
            invoice = self._store.find_by_correlation_tag(memo)
        except InvoiceNotFound:
            return self._orphan(tx, OrphanReason.UNKNOWN_TAG)

        if invoice.status == InvoiceStatus.PENDING:
            if not invoice.is_expired_at(self._store.now()):
                return self._mark_paid(invoice, tx)
            expire_invoice(self._store, invoice)
            invoice = self._store.get(invoice.id)

        return self._settle_terminal(invoice, tx)

    # -----------------------------------------------------------------
    # Paths
    # -----------------------------------------------------------------

    def _mark_paid(self, invoice: Invoice, tx: ObservedTransaction) -> ReconcileResult:
        try:
            paid = self._store.transition(
                invoice.id,
                InvoiceStatus.PENDING,
                InvoiceStatus.PAID,
                {
                    "observed_tx_hash": tx.tx_hash,
                    "observed_amount_drops": tx.amount_drops,
                    "source_address": tx.source_address,
                },
            )
        except ConflictError as exc:
            if exc.actual == InvoiceStatus.PENDING.value:
                # Still pending: the expiry guard failed, it fell due meanwhile
                expire_invoice(self._store, invoice)
                return self._settle_terminal(self._store.get(invoice.id), tx)
            logger.warning(
                f"Payment {tx.tx_hash} for invoice {invoice.id}: "
                f"compare-and-swap lost, status is {exc.actual}"
            )
            self._store.append_event(
                invoice.id,
                "payment_conflict",
                {"tx_hash": tx.tx_hash, "status": exc.actual},
                dedup_key=f"payment_conflict:{tx.tx_hash}",
            )
            current = self._store.get(invoice.id)
            if current.observed_tx_hash != tx.tx_hash:
                # A different payment won; this one is kept as an orphan
                return self._settle_terminal(current, tx)
            return ReconcileResult(
                outcome=ReconcileOutcome.DUPLICATE,
                tx_hash=tx.tx_hash,
                invoice=current,
                reason=f"compare-and-swap lost ({exc.actual})",
            )

        if paid.observed_amount_drops != paid.amount_drops:
            logger.warning(
                f"Invoice {paid.id} paid with {paid.observed_amount_drops} drops, "
                f"requested {paid.amount_drops}"
            )
        logger.info(f"Invoice {paid.id} marked paid by {tx.tx_hash}")
        return ReconcileResult(
            outcome=ReconcileOutcome.PAID,
            tx_hash=tx.tx_hash,
            invoice=paid,
        )

    def _settle_terminal(
        self,
        invoice: Invoice,
        tx: ObservedTransaction,
    ) -> ReconcileResult:
        if invoice.status == InvoiceStatus.PAID and invoice.observed_tx_hash == tx.tx_hash:
            logger.debug(f"Duplicate observation of {tx.tx_hash} for invoice {invoice.id}")
            return ReconcileResult(
                outcome=ReconcileOutcome.DUPLICATE,
                tx_hash=tx.tx_hash,
                invoice=invoice,
            )

        if invoice.status == InvoiceStatus.EXPIRED:
            if self._store.append_event(
                invoice.id,
                "late_payment",
                {"tx_hash": tx.tx_hash, "amount_drops": tx.amount_drops},
                dedup_key=f"late_payment:{tx.tx_hash}",
            ):
                logger.warning(
                    f"Payment {tx.tx_hash} arrived after invoice {invoice.id} expired; "
                    f"recorded as orphan"
                )
            reason = OrphanReason.INVOICE_EXPIRED
        elif invoice.status == InvoiceStatus.PAID:
            reason = OrphanReason.INVOICE_PAID
        else:
            reason = OrphanReason.INVOICE_TERMINAL

        return self._orphan(tx, reason, invoice)

    def _orphan(
        self,
        tx: ObservedTransaction,
        reason: OrphanReason,
        invoice: Invoice | None = None,
    ) -> ReconcileResult:
        invoice_id = invoice.id if invoice is not None else None
        inserted = self._store.insert_orphan(tx, reason.value, invoice_id)
        if inserted:
            logger.info(
                f"Orphan payment recorded: {tx.tx_hash} ({reason.value}, "
                f"{tx.amount_drops} drops from {tx.source_address})"
            )
            outcome = ReconcileOutcome.ORPHANED
        else:
            logger.debug(f"Orphan already recorded: {tx.tx_hash}")
            outcome = ReconcileOutcome.ORPHAN_DUPLICATE
        return ReconcileResult(
            outcome=outcome,
            tx_hash=tx.tx_hash,
            invoice=invoice,
            reason=reason.value,
        )

    def _reject(self, tx: ObservedTransaction, detail: str) -> ReconcileResult:
        logger.debug(f"Rejected {tx.tx_hash}: {detail}")
        return ReconcileResult(
            outcome=ReconcileOutcome.REJECTED,
            tx_hash=tx.tx_hash,
            reason=detail,
        )
