"""
Ledger observers — producers of ObservedTransactions.

Two interchangeable strategies feed one handler (the service's
on_observed_transaction hook). Either or both may run; the
reconciliation engine's compare-and-swap makes duplicate and
concurrent delivery harmless.

PollObserver:
    One check per call: stop if the invoice is no longer pending,
    expire it if due, otherwise list recent transactions for the watch
    address and hand every Payment to the handler. The poll loop
    (run_invoice) repeats this on a fixed period until the invoice
    leaves pending or the stop event is set.

SubscribeObserver:
    One long-lived subscription for the watch address. Every delivered
    transaction goes to the handler as it arrives. On connection loss
    it reconnects and re-subscribes with exponential backoff;
    reconnects may redeliver transactions already seen.

TransientLedgerError never reaches invoice state: it is logged
(rate-limited) and retried here.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any

from fassets_pay.errors import InvoiceNotFound, TransientLedgerError
from fassets_pay.expiry import expire_invoice
from fassets_pay.invoice import InvoiceStatus, ObservedTransaction
from fassets_pay.log import rate_limited_log
from fassets_pay.storage import InvoiceStore
from fassets_pay.xrpl.client import LedgerSubscription, XRPLClient
from fassets_pay.xrpl.parse import parse_stream_message

logger = logging.getLogger(__name__)

TransactionHandler = Callable[[ObservedTransaction], Awaitable[Any]]

BACKOFF_BASE = 1.0
BACKOFF_FACTOR = 2.0
BACKOFF_CAP = 60.0


def backoff_delay(
    attempt: int,
    base: float = BACKOFF_BASE,
    factor: float = BACKOFF_FACTOR,
    cap: float = BACKOFF_CAP,
    jitter: float = 0.1,
) -> float:
    """Delay before retry number ``attempt`` (1-based), capped, with jitter."""
    delay = min(cap, base * (factor ** max(0, attempt - 1)))
    return delay + delay * random.uniform(0, jitter)


async def wait_or_stop(stop: asyncio.Event, timeout: float) -> bool:
    """Sleep up to ``timeout`` seconds. Returns True if ``stop`` was set."""
    try:
        await asyncio.wait_for(stop.wait(), timeout)
    except asyncio.TimeoutError:
        return False
    return True


# =========================================================================
# Poll
# =========================================================================


class PollObserver:
    """Polls account_tx for the watch address on behalf of pending invoices.

    Args:
        store: The invoice store (read for the pending pre-check).
        client: Ledger query capability.
        on_transaction: Handler every observed Payment is fed to.
        watch_address: The deposit address.
        limit: account_tx page size.
    """

    def __init__(
        self,
        store: InvoiceStore,
        client: XRPLClient,
        on_transaction: TransactionHandler,
        watch_address: str,
        *,
        limit: int = 20,
    ) -> None:
        self._store = store
        self._client = client
        self._on_transaction = on_transaction
        self._watch_address = watch_address
        self._limit = limit

    async def check_invoice(self, invoice_id: str) -> bool:
        """Run one poll cycle for an invoice.

        Returns:
            True if the invoice is still pending afterwards (keep polling).

        Raises:
            TransientLedgerError: If the ledger query failed.
        """
        try:
            invoice = self._store.get(invoice_id)
        except InvoiceNotFound:
            logger.warning(f"Poll for unknown invoice {invoice_id} stopped")
            return False

        if invoice.status != InvoiceStatus.PENDING:
            return False
        if invoice.is_expired_at(self._store.now()):
            expire_invoice(self._store, invoice)
            return False

        result = await self._client.account_tx(self._watch_address, limit=self._limit)
        for tx in result.transactions:
            await self._on_transaction(tx)

        return self._store.get(invoice_id).status == InvoiceStatus.PENDING

    async def run_invoice(
        self,
        invoice_id: str,
        interval: float,
        stop: asyncio.Event,
    ) -> None:
        """Poll for one invoice until it leaves pending or ``stop`` is set."""
        failures = 0
        while not stop.is_set():
            try:
                pending = await self.check_invoice(invoice_id)
            except TransientLedgerError as exc:
                failures += 1
                rate_limited_log(
                    f"Poll of {self._watch_address} failed: {exc}",
                    logger_instance=logger,
                )
                if await wait_or_stop(stop, max(interval, backoff_delay(failures))):
                    return
                continue
            except Exception:
                logger.exception(f"Poll cycle for invoice {invoice_id} crashed")
                pending = True

            failures = 0
            if not pending:
                logger.debug(f"Stopped polling for invoice {invoice_id}")
                return
            if await wait_or_stop(stop, interval):
                return


# =========================================================================
# Subscribe
# =========================================================================


class SubscribeObserver:
    """Feeds every transaction pushed for the watch address to the handler.

    Args:
        subscription: Ledger push capability.
        on_transaction: Handler every observed Payment is fed to.
        watch_address: The deposit address.
    """

    def __init__(
        self,
        subscription: LedgerSubscription,
        on_transaction: TransactionHandler,
        watch_address: str,
    ) -> None:
        self._subscription = subscription
        self._on_transaction = on_transaction
        self._watch_address = watch_address
        self._connections = 0

    @property
    def connections(self) -> int:
        """Number of stream connections opened so far."""
        return self._connections

    async def consume(self, stop: asyncio.Event | None = None) -> int:
        """Consume one stream connection until it ends.

        Returns:
            Number of transactions handed to the handler.

        Raises:
            TransientLedgerError: If the connection failed or dropped.
        """
        delivered = 0
        self._connections += 1
        async for message in self._subscription.stream(self._watch_address):
            tx = parse_stream_message(message)
            if tx is None:
                continue
            try:
                await self._on_transaction(tx)
            except Exception:
                logger.exception(f"Handler failed for streamed transaction {tx.tx_hash}")
            delivered += 1
            if stop is not None and stop.is_set():
                break
        return delivered

    async def run(self, stop: asyncio.Event) -> None:
        """Keep the subscription alive until ``stop`` is set."""
        failures = 0
        while not stop.is_set():
            try:
                delivered = await self.consume(stop)
            except TransientLedgerError as exc:
                failures += 1
                rate_limited_log(
                    f"Subscription for {self._watch_address} lost: {exc}",
                    logger_instance=logger,
                )
            except Exception:
                failures += 1
                logger.exception(f"Subscription for {self._watch_address} crashed")
            else:
                if stop.is_set():
                    return
                failures = 0 if delivered else failures + 1
                logger.warning(f"Subscription stream for {self._watch_address} ended; reconnecting")

            delay = backoff_delay(max(1, failures))
            logger.debug(f"Resubscribing in {delay:.2f}s")
            if await wait_or_stop(stop, delay):
                return
