"""
Mint trigger — second-ledger side effect of a paid invoice.

Once an invoice is paid and carries a destination, one mint of the
invoice's amount (scaled to the token's decimals) is submitted to the
destination, confirmed, and its hash recorded.

One call to MintTrigger.mint() does:
    1. Re-read the invoice; skip unless paid, destination set, and no
       mint hash yet.
    2. claim_mint() — compare-and-swap on the mint-in-progress marker.
       A lost claim means another task is minting: skip.
    3. If an earlier mint was broadcast but never confirmed, look that
       hash up instead of submitting. Otherwise submit via the
       MintClient and await confirmation.
    4. record_mint() on success. A failure before broadcast, or a
       mined revert, goes to release_mint() with the error. A broadcast
       with no receipt goes to hold_mint(): the claim stays, along with
       the hash.

No loops, no scheduling. The supervisor runs retry_pending() on a
timer; that is the retry path for failures, which never touch the
invoice's paid status.

A claim older than the lease is reclaimed by the sweep. A held claim
is reclaimed only to look its hash up again, so a mint that timed out
waiting for its receipt is never broadcast a second time. A process
that dies between broadcast and hold_mint() leaves no hash behind;
keep the lease well above the client's confirmation timeout.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Protocol, runtime_checkable

from fassets_pay.amounts import drops_to_token_units
from fassets_pay.errors import ConflictError, MintFailure, MintUnconfirmed
from fassets_pay.invoice import Invoice
from fassets_pay.storage import InvoiceStore

logger = logging.getLogger(__name__)

DEFAULT_LEASE = timedelta(minutes=10)


@dataclass(frozen=True)
class MintResult:
    """A confirmed mint transaction.

    Attributes:
        tx_hash: Transaction hash ("0x" + 64 hex).
        block_number: Block the transaction was included in.
    """

    tx_hash: str
    block_number: int | None = None


@runtime_checkable
class MintClient(Protocol):
    """Submission side of the second ledger."""

    async def mint(self, to_address: str, amount: int) -> MintResult:
        """Call mint(to_address, amount) and wait for confirmation.

        Raises:
            MintUnconfirmed: If the transaction was broadcast but no
                receipt was seen.
            MintFailure: If the call fails before broadcast or reverts.
        """
        ...

    async def confirm(self, tx_hash: str) -> MintResult | None:
        """Look up a broadcast mint by hash.

        Returns:
            The result if it was mined successfully, None if not mined yet.

        Raises:
            MintUnconfirmed: If the lookup itself failed.
            MintFailure: If it was mined and reverted.
        """
        ...


class MintOutcome(StrEnum):
    MINTED = "MINTED"
    SKIPPED = "SKIPPED"
    IN_PROGRESS = "IN_PROGRESS"
    UNCONFIRMED = "UNCONFIRMED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class MintAttempt:
    """Outcome of one MintTrigger.mint() call."""

    invoice_id: str
    outcome: MintOutcome
    tx_hash: str | None = None
    error: str | None = None


class MintTrigger:
    """Drives the one-time mint for paid invoices.

    Args:
        store: The invoice store.
        client: Second-ledger mint client.
        token_decimals: Decimals of the minted token.
        lease: Age after which an in-flight claim counts as abandoned.
    """

    def __init__(
        self,
        store: InvoiceStore,
        client: MintClient,
        *,
        token_decimals: int = 18,
        lease: timedelta = DEFAULT_LEASE,
    ) -> None:
        self._store = store
        self._client = client
        self._token_decimals = token_decimals
        self._lease = lease

    def mint_amount(self, invoice: Invoice) -> int:
        """Token amount to mint for an invoice (requested, not observed, amount)."""
        return drops_to_token_units(invoice.amount_drops, self._token_decimals)

    def _stale_before(self) -> datetime:
        return self._store.now() - self._lease

    async def mint(self, invoice_id: str) -> MintAttempt:
        """Mint for one invoice if it still needs it."""
        invoice = self._store.get(invoice_id)
        if not invoice.needs_mint:
            return MintAttempt(invoice_id=invoice_id, outcome=MintOutcome.SKIPPED)

        try:
            invoice = self._store.claim_mint(invoice_id, stale_before=self._stale_before())
        except ConflictError as exc:
            logger.debug(f"Mint for invoice {invoice_id} not claimed: {exc.actual}")
            return MintAttempt(invoice_id=invoice_id, outcome=MintOutcome.IN_PROGRESS)

        if invoice.mint_submitted_tx_hash is not None:
            return await self._resolve_submitted(invoice_id, invoice.mint_submitted_tx_hash)

        destination = invoice.destination or ""
        amount = self.mint_amount(invoice)
        logger.info(
            f"Minting {amount} to {destination} for invoice {invoice_id} "
            f"(attempt {invoice.mint_attempts})"
        )

        try:
            result = await self._client.mint(destination, amount)
        except MintUnconfirmed as exc:
            return self._hold(invoice_id, exc.tx_hash or "", str(exc))
        except MintFailure as exc:
            return self._fail(invoice_id, str(exc))
        except Exception as exc:
            return self._fail(invoice_id, f"unexpected mint error: {exc}")

        return self._record(invoice_id, result)

    async def retry_pending(self, limit: int = 20) -> list[MintAttempt]:
        """Retry sweep: mint for every paid invoice still missing a mint hash."""
        attempts: list[MintAttempt] = []
        for invoice in self._store.list_unminted(stale_before=self._stale_before(), limit=limit):
            attempts.append(await self.mint(invoice.id))
        return attempts

    async def _resolve_submitted(self, invoice_id: str, tx_hash: str) -> MintAttempt:
        """Look up a mint broadcast earlier instead of submitting another."""
        logger.info(f"Checking earlier mint {tx_hash} for invoice {invoice_id}")
        try:
            result = await self._client.confirm(tx_hash)
        except MintUnconfirmed as exc:
            return self._hold(invoice_id, tx_hash, str(exc))
        except MintFailure as exc:
            # Mined and reverted: nothing was issued, a new submission is safe
            return self._fail(invoice_id, str(exc))
        except Exception as exc:
            return self._hold(invoice_id, tx_hash, f"mint lookup failed: {exc}")

        if result is None:
            return self._hold(invoice_id, tx_hash, f"mint {tx_hash} not yet mined")
        return self._record(invoice_id, result)

    def _record(self, invoice_id: str, result: MintResult) -> MintAttempt:
        try:
            self._store.record_mint(invoice_id, result.tx_hash, result.block_number)
        except ConflictError as exc:
            logger.error(
                f"Mint {result.tx_hash} for invoice {invoice_id} confirmed but not "
                f"recorded: {exc.actual}"
            )
            return MintAttempt(
                invoice_id=invoice_id,
                outcome=MintOutcome.FAILED,
                tx_hash=result.tx_hash,
                error=f"record conflict: {exc.actual}",
            )

        logger.info(f"Minted for invoice {invoice_id}: tx {result.tx_hash}")
        return MintAttempt(
            invoice_id=invoice_id,
            outcome=MintOutcome.MINTED,
            tx_hash=result.tx_hash,
        )

    def _hold(self, invoice_id: str, tx_hash: str, error: str) -> MintAttempt:
        logger.warning(
            f"Mint {tx_hash} for invoice {invoice_id} unconfirmed, claim kept: {error}"
        )
        self._store.hold_mint(invoice_id, tx_hash, error)
        return MintAttempt(
            invoice_id=invoice_id,
            outcome=MintOutcome.UNCONFIRMED,
            tx_hash=tx_hash,
            error=error,
        )

    def _fail(self, invoice_id: str, error: str) -> MintAttempt:
        logger.warning(f"Mint for invoice {invoice_id} failed: {error}")
        self._store.release_mint(invoice_id, error)
        return MintAttempt(invoice_id=invoice_id, outcome=MintOutcome.FAILED, error=error)
