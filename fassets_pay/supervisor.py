"""
Supervisor — the explicit registry of background tasks.

Owns every task the watcher runs:
    poll:<invoice_id>   one PollObserver loop per pending invoice
    subscribe           at most one SubscribeObserver connection
    expiry-sweep        periodic sweep_expired()
    mint-sweep          periodic MintTrigger.retry_pending()
    mint:<invoice_id>   one-off mint right after a payment is accepted

Lifecycle:
    start()     resume a poll loop for every invoice still pending in
                the store, then start subscribe and the sweeps.
    shutdown()  set the stop event, give in-flight iterations ``grace``
                seconds to finish, cancel the rest.

Abandoning an in-flight mint on shutdown is safe: the invoice is
already persisted as paid and the next mint sweep retries it once the
claim lease runs out.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

from fassets_pay.expiry import sweep_expired
from fassets_pay.mint import MintTrigger
from fassets_pay.observers import PollObserver, SubscribeObserver, wait_or_stop
from fassets_pay.storage import InvoiceStore

logger = logging.getLogger(__name__)


class Supervisor:
    """Starts, tracks and stops the watcher's background tasks.

    Args:
        store: The invoice store.
        poll_observer: Per-invoice poller, or None to disable polling.
        subscribe_observer: Push observer, or None to disable it.
        mint_trigger: Mint trigger, or None when minting is disabled.
        poll_interval: Seconds between poll cycles for one invoice.
        expiry_interval: Seconds between expiry sweeps.
        mint_interval: Seconds between mint retry sweeps.
    """

    def __init__(
        self,
        store: InvoiceStore,
        *,
        poll_observer: PollObserver | None = None,
        subscribe_observer: SubscribeObserver | None = None,
        mint_trigger: MintTrigger | None = None,
        poll_interval: float = 5.0,
        expiry_interval: float = 30.0,
        mint_interval: float = 60.0,
    ) -> None:
        self._store = store
        self._poll_observer = poll_observer
        self._subscribe_observer = subscribe_observer
        self._mint_trigger = mint_trigger
        self._poll_interval = poll_interval
        self._expiry_interval = expiry_interval
        self._mint_interval = mint_interval

        self._tasks: dict[str, asyncio.Task[Any]] = {}
        self._stop = asyncio.Event()
        self._started = False

    @property
    def running(self) -> bool:
        return self._started and not self._stop.is_set()

    def task_names(self) -> list[str]:
        """Names of live tasks, sorted."""
        return sorted(name for name, task in self._tasks.items() if not task.done())

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    async def start(self) -> None:
        """Resume monitoring and start the long-lived tasks. Idempotent."""
        if self._started:
            return
        self._started = True

        resumed = 0
        for invoice in self._store.list_pending():
            if self.watch(invoice.id):
                resumed += 1

        if self._subscribe_observer is not None:
            self._spawn("subscribe", self._subscribe_observer.run(self._stop))
        self._spawn("expiry-sweep", self._expiry_loop())
        if self._mint_trigger is not None:
            self._spawn("mint-sweep", self._mint_loop(self._mint_trigger))

        logger.info(
            f"Supervisor started: {resumed} pending invoice(s) resumed, "
            f"tasks={self.task_names()}"
        )

    async def shutdown(self, grace: float = 5.0) -> None:
        """Stop every task; in-flight work gets ``grace`` seconds."""
        self._stop.set()
        tasks = [task for task in self._tasks.values() if not task.done()]
        if not tasks:
            logger.info("Supervisor stopped")
            return

        _, pending = await asyncio.wait(tasks, timeout=grace)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        if pending:
            logger.warning(f"Cancelled {len(pending)} task(s) on shutdown")
        logger.info("Supervisor stopped")

    # -----------------------------------------------------------------
    # Registration
    # -----------------------------------------------------------------

    def watch(self, invoice_id: str) -> bool:
        """Start a poll loop for an invoice.

        Returns:
            False if polling is disabled, the supervisor is stopping, or
            the invoice is already watched.
        """
        if self._poll_observer is None or self._stop.is_set():
            return False
        return self._spawn(
            f"poll:{invoice_id}",
            self._poll_observer.run_invoice(invoice_id, self._poll_interval, self._stop),
        )

    def spawn_mint(self, invoice_id: str) -> bool:
        """Mint for a freshly paid invoice without blocking the observer."""
        if self._mint_trigger is None or self._stop.is_set():
            return False
        return self._spawn(f"mint:{invoice_id}", self._mint_trigger.mint(invoice_id))

    def _spawn(self, name: str, coro: Coroutine[Any, Any, Any]) -> bool:
        existing = self._tasks.get(name)
        if existing is not None and not existing.done():
            coro.close()
            return False
        task = asyncio.create_task(coro, name=name)
        self._tasks[name] = task
        task.add_done_callback(self._reap)
        return True

    def _reap(self, task: asyncio.Task[Any]) -> None:
        name = task.get_name()
        if self._tasks.get(name) is task:
            del self._tasks[name]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Task {name} failed: {exc!r}")

    # -----------------------------------------------------------------
    # Sweeps
    # -----------------------------------------------------------------

    async def _expiry_loop(self) -> None:
        while not self._stop.is_set():
            try:
                result = sweep_expired(self._store)
                if result.expired:
                    logger.info(f"Expiry sweep expired {len(result.expired)} invoice(s)")
            except Exception:
                logger.exception("Expiry sweep failed")
            if await wait_or_stop(self._stop, self._expiry_interval):
                return

    async def _mint_loop(self, trigger: MintTrigger) -> None:
        while not self._stop.is_set():
            try:
                attempts = await trigger.retry_pending()
                if attempts:
                    summary = ", ".join(f"{a.invoice_id}={a.outcome}" for a in attempts)
                    logger.info(f"Mint sweep: {summary}")
            except Exception:
                logger.exception("Mint sweep failed")
            if await wait_or_stop(self._stop, self._mint_interval):
                return
