"""
Correlation tag generation.

A correlation tag is embedded in the payment memo and is the only link
between a ledger payment and an invoice. It is 16 random bytes from the
OS CSPRNG rendered as 32 lowercase hex chars: nothing about it derives
from the invoice id, owner, or creation time.
"""

from __future__ import annotations

import os
import re
import secrets

from fassets_pay.errors import ConfigurationError

TAG_BYTES = 16

_TAG_RE = re.compile(r"^[0-9a-f]{32}$")


def generate_tag() -> str:
    """Return a fresh correlation tag (32 lowercase hex chars)."""
    return secrets.token_hex(TAG_BYTES)


def is_correlation_tag(text: str | None) -> bool:
    """Check whether text has the shape of a correlation tag."""
    return text is not None and _TAG_RE.match(text) is not None


def ensure_randomness() -> None:
    """Fail fast if the OS randomness source is unavailable.

    Raises:
        ConfigurationError: If os.urandom cannot produce bytes.
    """
    try:
        os.urandom(TAG_BYTES)
    except NotImplementedError as exc:
        raise ConfigurationError(f"no randomness source available: {exc}") from exc
