"""
XRPL client protocols — the ledger boundary.

Defines the interfaces the observers depend on, not concrete
implementations. This keeps the observers testable and keeps HTTP and
websocket code out of reconciliation.

Concrete implementations:
    - JsonRpcClient (account_tx over JSON-RPC)
    - WebSocketSubscription (subscribe over websocket)
    - Fakes (tests)

Failures the node could recover from (connection refused, timeout,
websocket closed, rippled ``status: error``) raise TransientLedgerError.
The observers own retry and backoff.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from fassets_pay.invoice import ObservedTransaction


@dataclass(frozen=True)
class AccountTxResult:
    """Result of listing recent transactions for an account.

    Attributes:
        account: The queried address.
        transactions: Payment transactions found, newest first (ledger order).
        ledger_index_min: Lowest ledger the node searched.
        ledger_index_max: Highest ledger the node searched.
        marker: Pagination marker, present if more results exist.
    """

    account: str
    transactions: list[ObservedTransaction] = field(default_factory=list)
    ledger_index_min: int | None = None
    ledger_index_max: int | None = None
    marker: Any = None


@runtime_checkable
class XRPLClient(Protocol):
    """Query side of the ledger: list recent transactions for an address."""

    async def account_tx(self, account: str, limit: int = 20) -> AccountTxResult:
        """List recent transactions touching ``account``.

        Raises:
            TransientLedgerError: If the node could not answer.
        """
        ...


@runtime_checkable
class LedgerSubscription(Protocol):
    """Push side of the ledger: a stream of transaction messages."""

    def stream(self, account: str) -> AsyncIterator[dict[str, Any]]:
        """Connect, subscribe to ``account``, and yield raw stream messages.

        The iterator ends or raises TransientLedgerError when the
        connection drops; callers reconnect by calling stream() again.
        """
        ...
