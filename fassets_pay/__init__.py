"""
fassets-pay: XRPL invoice payment reconciliation with a second-ledger mint.

A payer sends XRP to a shared deposit address with the invoice's
correlation tag in the memo. Observers (poll and/or subscribe) feed
every payment to the reconciliation engine, which moves the invoice
pending → paid exactly once; a paid invoice with a destination then
gets one mint on the second ledger.
"""

from __future__ import annotations

from fassets_pay.errors import (
    ConfigurationError,
    ConflictError,
    DuplicateTag,
    FassetsPayError,
    InvalidTransition,
    InvoiceNotFound,
    MintFailure,
    MintUnconfirmed,
    TransientLedgerError,
)
from fassets_pay.invoice import Invoice, InvoiceStatus, ObservedTransaction, Orphan
from fassets_pay.mint import MintClient, MintResult, MintTrigger
from fassets_pay.reconcile import ReconcileOutcome, ReconcileResult, ReconciliationEngine
from fassets_pay.service import InvoiceService
from fassets_pay.storage import InvoiceStore

__all__ = [
    "ConfigurationError",
    "ConflictError",
    "DuplicateTag",
    "FassetsPayError",
    "InvalidTransition",
    "Invoice",
    "InvoiceNotFound",
    "InvoiceService",
    "InvoiceStatus",
    "InvoiceStore",
    "MintClient",
    "MintFailure",
    "MintResult",
    "MintTrigger",
    "MintUnconfirmed",
    "ObservedTransaction",
    "Orphan",
    "ReconcileOutcome",
    "ReconcileResult",
    "ReconciliationEngine",
    "TransientLedgerError",
]
__version__ = "0.1.0"
