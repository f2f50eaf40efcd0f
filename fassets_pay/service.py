"""
Invoice service — the interface the thin HTTP layer calls.

    create_invoice()            validate, store a pending invoice, start
                                watching it
    get_invoice_status()        last-committed state plus payment
                                instructions; never waits on observation
    on_observed_transaction()   the hook every observer feeds; reconciles
                                and fires the mint for a fresh payment

The owner reference is trusted: authentication happens upstream.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Protocol

from fassets_pay.amounts import format_xrp, xrp_to_drops
from fassets_pay.errors import ConfigurationError, DuplicateTag
from fassets_pay.evm import is_evm_address
from fassets_pay.invoice import Invoice, InvoiceStatus, ObservedTransaction
from fassets_pay.mint import MintTrigger
from fassets_pay.reconcile import ReconcileResult, ReconciliationEngine
from fassets_pay.storage import InvoiceStore
from fassets_pay.xrpl.memo import MEMO_TYPE_HEX, encode_memo_hex

logger = logging.getLogger(__name__)

PAYMENT_URI_BASE = "https://xrpl.org/"


class TaskScheduler(Protocol):
    """What the service needs from the supervisor."""

    def watch(self, invoice_id: str) -> bool: ...

    def spawn_mint(self, invoice_id: str) -> bool: ...


def settlement_state(invoice: Invoice) -> str:
    """Client-facing mint state: none, not_applicable, pending or settled."""
    if invoice.status != InvoiceStatus.PAID:
        return "none"
    if not invoice.destination:
        return "not_applicable"
    if invoice.mint_tx_hash is None:
        return "pending"
    return "settled"


def payment_uri(invoice: Invoice) -> str:
    return (
        f"{PAYMENT_URI_BASE}?to={invoice.deposit_address}"
        f"&amount={format_xrp(invoice.amount_drops)}&dt={invoice.correlation_tag}"
    )


class InvoiceService:
    """Creates invoices, reports their status, and consumes observations.

    Args:
        store: The invoice store.
        deposit_address: Watch address every invoice is paid to.
        mint_trigger: Mint trigger, or None when minting is disabled.
        scheduler: Supervisor to hand new invoices and mints to. Without
            one, new invoices are not watched and mints run inline.
    """

    def __init__(
        self,
        store: InvoiceStore,
        deposit_address: str,
        *,
        mint_trigger: MintTrigger | None = None,
        scheduler: TaskScheduler | None = None,
    ) -> None:
        if not deposit_address:
            raise ConfigurationError("a deposit address is required")
        self._store = store
        self._deposit_address = deposit_address
        self._engine = ReconciliationEngine(store, deposit_address)
        self._mint_trigger = mint_trigger
        self._scheduler = scheduler

    @property
    def engine(self) -> ReconciliationEngine:
        return self._engine

    def attach_scheduler(self, scheduler: TaskScheduler) -> None:
        """Set the supervisor (it is built after the service's hook)."""
        self._scheduler = scheduler

    # -----------------------------------------------------------------
    # createInvoice
    # -----------------------------------------------------------------

    def create_invoice(
        self,
        owner: str,
        amount_xrp: Decimal | str | int,
        destination: str | None = None,
    ) -> Invoice:
        """Create a pending invoice for ``amount_xrp``.

        Raises:
            ValueError: Bad amount, empty owner, or malformed destination.
            DuplicateTag: If two consecutive tags collided.
        """
        amount_drops = xrp_to_drops(amount_xrp)
        if destination and not is_evm_address(destination):
            raise ValueError(f"invalid destination address: {destination!r}")
        if destination and self._mint_trigger is None:
            logger.warning(
                f"Invoice for {owner} has destination {destination} but minting is disabled"
            )

        try:
            invoice = self._store.create(owner, amount_drops, self._deposit_address, destination)
        except DuplicateTag as exc:
            logger.warning(f"Correlation tag collision ({exc.tag}); regenerating")
            invoice = self._store.create(owner, amount_drops, self._deposit_address, destination)

        logger.info(
            f"Invoice {invoice.id} created: {format_xrp(amount_drops)} XRP for {owner}, "
            f"expires {invoice.expires_at.isoformat()}"
        )
        if self._scheduler is not None:
            self._scheduler.watch(invoice.id)
        return invoice

    # -----------------------------------------------------------------
    # getInvoiceStatus
    # -----------------------------------------------------------------

    def get_invoice_status(self, invoice_id: str) -> dict[str, Any]:
        """Status view of an invoice.

        Raises:
            InvoiceNotFound: If the invoice does not exist.
        """
        invoice = self._store.get(invoice_id)
        view = invoice.to_dict()
        view["settlement"] = settlement_state(invoice)
        view["memo_type_hex"] = MEMO_TYPE_HEX
        view["memo_hex"] = encode_memo_hex(invoice.correlation_tag)
        view["payment_uri"] = payment_uri(invoice)
        return view

    # -----------------------------------------------------------------
    # onObservedTransaction
    # -----------------------------------------------------------------

    async def on_observed_transaction(self, tx: ObservedTransaction) -> ReconcileResult:
        """Reconcile one observation; mint if it just paid an invoice."""
        result = self._engine.reconcile(tx)
        invoice = result.invoice
        if not result.newly_paid or invoice is None or not invoice.needs_mint:
            return result
        if self._mint_trigger is None:
            return result

        if self._scheduler is not None:
            self._scheduler.spawn_mint(invoice.id)
        else:
            await self._mint_trigger.mint(invoice.id)
        return result
