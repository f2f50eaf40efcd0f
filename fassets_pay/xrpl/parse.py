"""
Raw XRPL JSON → ObservedTransaction.

Both observation paths see the same transaction shape, just wrapped
differently:

    account_tx (JSON-RPC, API v1):
        {"tx": {...}, "meta": {...}, "validated": true}
    account_tx (API v2):
        {"tx_json": {...}, "hash": "...", "meta": {...}, "validated": true}
    subscribe stream:
        {"type": "transaction", "transaction": {...} | "tx_json": {...},
         "hash": "...", "meta": {...}, "validated": true,
         "engine_result": "tesSUCCESS"}

success is tesSUCCESS (from meta.TransactionResult, falling back to the
stream's engine_result) AND validated. The delivered amount comes from
meta.delivered_amount when present (partial payments deliver less than
Amount), else from Amount.
"""

from __future__ import annotations

from typing import Any

from fassets_pay.amounts import parse_native_amount
from fassets_pay.invoice import ObservedTransaction
from fassets_pay.xrpl.memo import select_memo

SUCCESS_RESULT = "tesSUCCESS"


def parse_transaction(entry: dict[str, Any]) -> ObservedTransaction | None:
    """Parse one ledger transaction entry.

    Returns:
        ObservedTransaction for Payment transactions, None for any other
        type or for entries too malformed to carry a hash and accounts.
    """
    tx_json = entry.get("tx_json")
    if not isinstance(tx_json, dict):
        tx_json = entry.get("tx")
    if not isinstance(tx_json, dict):
        tx_json = entry.get("transaction")
    if not isinstance(tx_json, dict):
        return None

    if tx_json.get("TransactionType") != "Payment":
        return None

    tx_hash = entry.get("hash") or tx_json.get("hash")
    account = tx_json.get("Account")
    destination = tx_json.get("Destination")
    if not isinstance(tx_hash, str) or not tx_hash:
        return None
    if not isinstance(account, str) or not isinstance(destination, str):
        return None

    meta = entry.get("meta")
    if not isinstance(meta, dict):
        meta = {}

    engine_result = meta.get("TransactionResult") or entry.get("engine_result")
    validated = bool(entry.get("validated", False))

    raw_amount = meta.get("delivered_amount")
    if raw_amount is None or raw_amount == "unavailable":
        raw_amount = tx_json.get("DeliverMax", tx_json.get("Amount"))

    return ObservedTransaction(
        tx_hash=tx_hash.upper(),
        source_address=account,
        destination_address=destination,
        amount_drops=parse_native_amount(raw_amount),
        memo_text=select_memo(tx_json),
        success=engine_result == SUCCESS_RESULT and validated,
        transaction_type="Payment",
    )


def parse_account_tx(result: dict[str, Any]) -> list[ObservedTransaction]:
    """Parse an account_tx result body into payments, skipping everything else."""
    entries = result.get("transactions")
    if not isinstance(entries, list):
        return []
    observed: list[ObservedTransaction] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        tx = parse_transaction(entry)
        if tx is not None:
            observed.append(tx)
    return observed


def parse_stream_message(message: dict[str, Any]) -> ObservedTransaction | None:
    """Parse a subscription stream message; None unless it is a Payment."""
    if message.get("type") != "transaction":
        return None
    return parse_transaction(message)
