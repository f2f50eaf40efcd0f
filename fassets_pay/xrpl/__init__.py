"""
XRPL ledger capability for fassets-pay.

Public API:

    Pure layer (no I/O):
        - Memo codec: encode, decode, select the correlation memo.
        - ``parse_transaction()`` / ``parse_account_tx()`` /
          ``parse_stream_message()`` — raw ledger JSON → ObservedTransaction.

    Protocols (for dependency injection):
        - ``XRPLClient`` — poll side (account_tx).
        - ``LedgerSubscription`` — push side (subscribe stream).

    Concrete clients:
        - ``JsonRpcClient`` — JSON-RPC implementation of XRPLClient.
        - ``WebSocketSubscription`` — aiohttp implementation of LedgerSubscription.

    Transport:
        - ``JsonRpcTransport`` — injectable transport protocol for JSON-RPC.
        - ``HttpxTransport`` — default httpx-based transport.
"""

from fassets_pay.xrpl.client import AccountTxResult, LedgerSubscription, XRPLClient
from fassets_pay.xrpl.jsonrpc_client import JsonRpcClient
from fassets_pay.xrpl.memo import (
    MAX_MEMO_BYTES,
    MEMO_TYPE,
    MEMO_TYPE_HEX,
    build_payment_memos,
    decode_memo_hex,
    encode_memo_hex,
    memo_texts,
    select_memo,
)
from fassets_pay.xrpl.parse import (
    parse_account_tx,
    parse_stream_message,
    parse_transaction,
)
from fassets_pay.xrpl.subscription import WebSocketSubscription
from fassets_pay.xrpl.transport import HttpxTransport, JsonRpcTransport

__all__ = [
    "AccountTxResult",
    "HttpxTransport",
    "JsonRpcClient",
    "JsonRpcTransport",
    "LedgerSubscription",
    "MAX_MEMO_BYTES",
    "MEMO_TYPE",
    "MEMO_TYPE_HEX",
    "WebSocketSubscription",
    "XRPLClient",
    "build_payment_memos",
    "decode_memo_hex",
    "encode_memo_hex",
    "memo_texts",
    "parse_account_tx",
    "parse_stream_message",
    "parse_transaction",
    "select_memo",
]
