"""
XRPL payment memo codec.

The payer puts the invoice's correlation tag in the payment memo:

    "Memos": [
      {"Memo": {"MemoType": hex("fassets.invoice"), "MemoData": hex(tag)}}
    ]

MemoData is hex of the UTF-8 tag. Wallets differ in whether they set
MemoType, so decoding looks only at MemoData and tolerates missing or
malformed entries.

Rules:
    - Decoding is strict UTF-8; invalid hex or invalid UTF-8 → None.
    - Surrounding whitespace is stripped (some wallets pad the memo).
    - Empty memos decode to None.
    - Memos over MAX_MEMO_BYTES (decoded) are ignored.
"""

from __future__ import annotations

from typing import Any

from fassets_pay.tags import is_correlation_tag

# Memo type identifier.
MEMO_TYPE = "fassets.invoice"

# Hex-encoded memo type for XRPL MemoType field.
MEMO_TYPE_HEX = MEMO_TYPE.encode("utf-8").hex().upper()

# Maximum decoded memo size in bytes. XRPL caps a memo field at 1KB.
MAX_MEMO_BYTES = 1024


def encode_memo_hex(text: str) -> str:
    """Hex-encode memo text for the XRPL MemoData field (uppercase, as rippled renders it)."""
    return text.encode("utf-8").hex().upper()


def decode_memo_hex(memo_hex: Any) -> str | None:
    """Decode a MemoData hex string to text.

    Returns:
        Decoded, stripped text, or None if absent, malformed, oversized,
        or empty.
    """
    if not isinstance(memo_hex, str) or not memo_hex:
        return None
    try:
        raw = bytes.fromhex(memo_hex)
    except ValueError:
        return None
    if len(raw) > MAX_MEMO_BYTES:
        return None
    try:
        text = raw.decode("utf-8").strip()
    except UnicodeDecodeError:
        return None
    return text or None


def memo_texts(tx_json: dict[str, Any]) -> list[str]:
    """Decode every MemoData in a transaction, skipping undecodable ones."""
    memos = tx_json.get("Memos")
    if not isinstance(memos, list):
        return []
    texts: list[str] = []
    for entry in memos:
        if not isinstance(entry, dict):
            continue
        memo = entry.get("Memo")
        if not isinstance(memo, dict):
            continue
        text = decode_memo_hex(memo.get("MemoData"))
        if text is not None:
            texts.append(text)
    return texts


def select_memo(tx_json: dict[str, Any]) -> str | None:
    """Pick the memo used for correlation.

    The first memo shaped like a correlation tag wins; otherwise the
    first decodable memo (so the orphan record keeps what the payer
    wrote); None if there is none.
    """
    texts = memo_texts(tx_json)
    for text in texts:
        if is_correlation_tag(text.lower()):
            return text.lower()
    return texts[0] if texts else None


def build_payment_memos(tag: str) -> list[dict[str, Any]]:
    """Build the Memos array a payer should attach for an invoice."""
    return [
        {
            "Memo": {
                "MemoType": MEMO_TYPE_HEX,
                "MemoData": encode_memo_hex(tag),
            }
        }
    ]
