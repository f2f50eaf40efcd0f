"""
Exceptions for fassets-pay.

Taxonomy:
    - ConfigurationError: fatal at startup (missing deposit address,
      missing signing key, no randomness source).
    - InvoiceNotFound: lookup by id or correlation tag found nothing.
    - ConflictError: a compare-and-swap update lost. Expected under
      concurrent observers; callers log and discard.
    - InvalidTransition: an edge outside the invoice state machine.
    - DuplicateTag: correlation tag unique constraint hit.
    - TransientLedgerError: XRPL RPC/websocket failure. Retried by the
      owning observer, never surfaced to invoice state.
    - MintFailure: second-ledger mint failed. Recorded, retried by sweep,
      never reverts ``paid``.
    - MintUnconfirmed: a MintFailure after broadcast. The claim stays
      held and the sweep looks the hash up instead of resubmitting.
"""

from __future__ import annotations


class FassetsPayError(Exception):
    """Base exception for fassets-pay errors."""
    pass


class ConfigurationError(FassetsPayError):
    """Raised when required configuration is missing or malformed."""
    pass


class InvoiceNotFound(FassetsPayError):
    """Raised when an invoice lookup finds nothing."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"invoice not found: {key}")


class ConflictError(FassetsPayError):
    """Raised when a compare-and-swap update loses to a concurrent writer."""

    def __init__(
        self,
        invoice_id: str,
        expected: str,
        actual: str | None = None,
    ) -> None:
        self.invoice_id = invoice_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"conflict on invoice {invoice_id}: expected {expected}, found {actual}"
        )


class InvalidTransition(FassetsPayError, ValueError):
    """Raised when a transition is not an edge of the state machine."""

    def __init__(self, from_status: str, to_status: str) -> None:
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"invalid transition: {from_status} -> {to_status}")


class DuplicateTag(FassetsPayError):
    """Raised when a generated correlation tag already exists."""

    def __init__(self, tag: str) -> None:
        self.tag = tag
        super().__init__(f"correlation tag already in use: {tag}")


class TransientLedgerError(FassetsPayError):
    """Raised when the XRPL node could not be reached or answered with an error."""
    pass


class MintFailure(FassetsPayError):
    """Raised when a mint on the second ledger fails or reverts."""

    def __init__(self, message: str, tx_hash: str | None = None) -> None:
        self.tx_hash = tx_hash
        super().__init__(message)


class MintUnconfirmed(MintFailure):
    """Raised when a mint was broadcast but its outcome is unknown.

    The transaction may still be mined; it must be looked up by tx_hash,
    never submitted again.
    """

    def __init__(self, message: str, tx_hash: str) -> None:
        super().__init__(message, tx_hash=tx_hash)
