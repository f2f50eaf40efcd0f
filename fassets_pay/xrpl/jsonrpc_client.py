"""
XRPL JSON-RPC client — the poll side of the ledger capability.

Translates rippled ``account_tx`` responses into AccountTxResult. Uses
an injectable transport (JsonRpcTransport) so the HTTP layer can be
swapped for test fakes without changing parsing logic.

No retry loops. No secrets. No reconciliation logic.

Response parsing targets rippled JSON-RPC conventions:
    - Successful responses: {"result": {"status": "success", ...}}
    - Error responses: {"result": {"status": "error", "error": "...", ...}}
    - account_tx: {"result": {"account", "transactions": [...],
      "ledger_index_min", "ledger_index_max", "marker"?}}
"""

from __future__ import annotations

import itertools
import logging
from typing import Any

from fassets_pay.errors import TransientLedgerError
from fassets_pay.xrpl.client import AccountTxResult
from fassets_pay.xrpl.parse import parse_account_tx
from fassets_pay.xrpl.transport import HttpxTransport, JsonRpcTransport

logger = logging.getLogger(__name__)

# JSON-RPC request ids, unique per process.
_REQUEST_IDS = itertools.count(1)


class JsonRpcClient:
    """XRPL JSON-RPC client implementing the XRPLClient protocol.

    Args:
        url: The rippled JSON-RPC endpoint URL (e.g. "http://localhost:5005").
        transport: Injectable transport for HTTP POST. Defaults to
            HttpxTransport. Pass a FakeTransport for testing.
    """

    def __init__(
        self,
        url: str,
        transport: JsonRpcTransport | None = None,
    ) -> None:
        self._url = url
        self._transport = transport or HttpxTransport()

    @property
    def url(self) -> str:
        """The JSON-RPC endpoint URL."""
        return self._url

    async def account_tx(self, account: str, limit: int = 20) -> AccountTxResult:
        """List the most recent transactions for ``account``.

        Queries the full validated range (ledger_index_min/max = -1),
        newest first, as the poll observer re-reads the same window every
        cycle and relies on reconciliation to drop what it has seen.

        Raises:
            TransientLedgerError: On transport failure or a server error.
        """
        payload = {
            "method": "account_tx",
            "params": [{
                "account": account,
                "ledger_index_min": -1,
                "ledger_index_max": -1,
                "limit": limit,
                "forward": False,
            }],
            "id": next(_REQUEST_IDS),
        }

        try:
            response = await self._transport.post_json(self._url, payload)
        except Exception as exc:
            raise TransientLedgerError(f"account_tx request failed: {exc}") from exc

        return _parse_account_tx_response(account, response)

    async def aclose(self) -> None:
        close = getattr(self._transport, "aclose", None)
        if close is not None:
            await close()


# =====================================================================
# Response parsing (pure functions, no I/O)
# =====================================================================


def _parse_account_tx_response(
    account: str,
    response: dict[str, Any],
) -> AccountTxResult:
    """Parse a rippled account_tx JSON-RPC response into AccountTxResult.

    Handles:
        - Successful query (transactions list present)
        - Server-level errors (status == "error"), including actNotFound
          for an unfunded deposit address
        - Missing/malformed fields (empty result)
    """
    result = response.get("result")
    if not isinstance(result, dict):
        raise TransientLedgerError("account_tx response has no result object")

    if result.get("status") == "error":
        error = result.get("error", "unknown")
        detail = result.get("error_message") or error
        raise TransientLedgerError(f"account_tx server error: {detail}")

    transactions = parse_account_tx(result)
    logger.debug(
        f"account_tx {account}: {len(transactions)} payments "
        f"in ledgers {result.get('ledger_index_min')}..{result.get('ledger_index_max')}"
    )
    return AccountTxResult(
        account=result.get("account", account),
        transactions=transactions,
        ledger_index_min=result.get("ledger_index_min"),
        ledger_index_max=result.get("ledger_index_max"),
        marker=result.get("marker"),
    )
