"""
Tests for the reconciliation engine.

Test plan:
- Rejects: failed / unvalidated, wrong destination, non-native amount
  → REJECTED, no state change, no orphan
- Match: pending invoice → PAID with observed hash, amount and source;
  amount mismatch still pays (recorded for audit)
- Idempotence: same tx twice → one transition, DUPLICATE, no orphan
- Orphans: no memo, unparseable memo, unknown tag → one orphan per
  tx_hash across redeliveries
- Terminal invoices: another payment to a paid invoice → orphan
  (invoice_paid) linked to the invoice
- Expiry: one second before expiry pays; a match at/after expiry
  expires the invoice, orphans the payment (invoice_expired) and
  appends one late_payment event; after the sweep a match is discarded
  the same way
- Lost compare-and-swap: stale lookup that still says pending; the
  same tx_hash → DUPLICATE, no orphan; a different payment → orphan
  (invoice_paid), same outcome as arriving after the winner; one
  payment_conflict event per tx_hash
- Two engines on one store deliver the same match → exactly one PAID
"""

from datetime import datetime, timedelta, timezone

from fassets_pay.expiry import sweep_expired
from fassets_pay.invoice import Invoice, InvoiceStatus, ObservedTransaction
from fassets_pay.reconcile import OrphanReason, ReconcileOutcome, ReconciliationEngine
from fassets_pay.storage import InvoiceStore

DEPOSIT = "rHb9CJAWyB4rj91VRWn96DkukG4bwdtyTh"
OTHER = "rLHzPsX6oXkzU2qL12kHCH8G8cnZv1rBJh"
PAYER = "rPT1Sjq2YGrBMTttX4GZHjKu9dyfzbpAYe"
T0 = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now


def _setup(clock: FakeClock | None = None) -> tuple[InvoiceStore, ReconciliationEngine]:
    store = InvoiceStore(":memory:", now_fn=clock or FakeClock())
    return store, ReconciliationEngine(store, DEPOSIT)


def _tx(
    memo: str | None,
    tx_hash: str = "H1" + "0" * 62,
    **overrides: object,
) -> ObservedTransaction:
    kwargs: dict[str, object] = {
        "tx_hash": tx_hash,
        "source_address": PAYER,
        "destination_address": DEPOSIT,
        "amount_drops": 5_000_000,
        "memo_text": memo,
        "success": True,
    }
    kwargs.update(overrides)
    return ObservedTransaction(**kwargs)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Rejects
# ---------------------------------------------------------------------------


class TestReject:
    def test_not_success(self) -> None:
        store, engine = _setup()
        invoice = store.create("user-1", 5_000_000, DEPOSIT)
        result = engine.reconcile(_tx(invoice.correlation_tag, success=False))
        assert result.outcome == ReconcileOutcome.REJECTED
        assert store.get(invoice.id).status == InvoiceStatus.PENDING
        assert store.count_orphans() == 0

    def test_wrong_destination(self) -> None:
        store, engine = _setup()
        invoice = store.create("user-1", 5_000_000, DEPOSIT)
        result = engine.reconcile(_tx(invoice.correlation_tag, destination_address=OTHER))
        assert result.outcome == ReconcileOutcome.REJECTED
        assert store.get(invoice.id).status == InvoiceStatus.PENDING

    def test_non_native_amount(self) -> None:
        store, engine = _setup()
        invoice = store.create("user-1", 5_000_000, DEPOSIT)
        result = engine.reconcile(_tx(invoice.correlation_tag, amount_drops=None))
        assert result.outcome == ReconcileOutcome.REJECTED
        assert store.count_orphans() == 0


# ---------------------------------------------------------------------------
# Match
# ---------------------------------------------------------------------------


class TestMatch:
    def test_scenario_paid_then_redelivered(self) -> None:
        store, engine = _setup()
        invoice = store.create("user-1", 5_000_000, DEPOSIT)
        tx = _tx(invoice.correlation_tag, tx_hash="H1")

        first = engine.reconcile(tx)
        assert first.outcome == ReconcileOutcome.PAID
        assert first.newly_paid
        assert first.invoice is not None
        assert first.invoice.observed_tx_hash == "H1"

        second = engine.reconcile(tx)
        assert second.outcome == ReconcileOutcome.DUPLICATE
        assert not second.newly_paid

        stored = store.get(invoice.id)
        assert stored.status == InvoiceStatus.PAID
        assert stored.observed_tx_hash == "H1"
        assert store.count_orphans() == 0
        events = [e["event"] for e in store.list_events(invoice.id)]
        assert events.count("paid") == 1

    def test_records_observed_amount_and_source(self) -> None:
        store, engine = _setup()
        invoice = store.create("user-1", 5_000_000, DEPOSIT)
        result = engine.reconcile(_tx(invoice.correlation_tag, amount_drops=4_000_000))
        assert result.outcome == ReconcileOutcome.PAID
        stored = store.get(invoice.id)
        assert stored.observed_amount_drops == 4_000_000
        assert stored.amount_drops == 5_000_000
        assert stored.source_address == PAYER


# ---------------------------------------------------------------------------
# Orphans
# ---------------------------------------------------------------------------


class TestOrphan:
    def test_scenario_unknown_tag(self) -> None:
        store, engine = _setup()
        first = engine.reconcile(_tx("unknown-tag", tx_hash="H2"))
        assert first.outcome == ReconcileOutcome.ORPHANED
        assert first.reason == OrphanReason.UNPARSEABLE_MEMO
        second = engine.reconcile(_tx("unknown-tag", tx_hash="H2"))
        assert second.outcome == ReconcileOutcome.ORPHAN_DUPLICATE
        assert store.count_orphans() == 1
        orphan = store.get_orphan("H2")
        assert orphan is not None
        assert orphan.memo_text == "unknown-tag"

    def test_well_formed_unknown_tag(self) -> None:
        store, engine = _setup()
        result = engine.reconcile(_tx("ee" * 16, tx_hash="H3"))
        assert result.outcome == ReconcileOutcome.ORPHANED
        assert result.reason == OrphanReason.UNKNOWN_TAG
        orphan = store.get_orphan("H3")
        assert orphan is not None
        assert orphan.invoice_id is None

    def test_no_memo(self) -> None:
        store, engine = _setup()
        result = engine.reconcile(_tx(None, tx_hash="H4"))
        assert result.outcome == ReconcileOutcome.ORPHANED
        assert result.reason == OrphanReason.NO_MEMO

    def test_second_payment_to_paid_invoice(self) -> None:
        store, engine = _setup()
        invoice = store.create("user-1", 5_000_000, DEPOSIT)
        engine.reconcile(_tx(invoice.correlation_tag, tx_hash="H1"))
        result = engine.reconcile(_tx(invoice.correlation_tag, tx_hash="H5"))
        assert result.outcome == ReconcileOutcome.ORPHANED
        assert result.reason == OrphanReason.INVOICE_PAID
        orphan = store.get_orphan("H5")
        assert orphan is not None
        assert orphan.invoice_id == invoice.id
        assert store.get(invoice.id).observed_tx_hash == "H1"


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------


class TestExpiry:
    def test_one_second_before_expiry_pays(self) -> None:
        clock = FakeClock()
        store, engine = _setup(clock)
        invoice = store.create("user-1", 5_000_000, DEPOSIT)
        clock.now = invoice.expires_at - timedelta(seconds=1)
        result = engine.reconcile(_tx(invoice.correlation_tag))
        assert result.outcome == ReconcileOutcome.PAID

    def test_match_after_expiry_before_sweep(self) -> None:
        clock = FakeClock()
        store, engine = _setup(clock)
        invoice = store.create("user-1", 5_000_000, DEPOSIT)
        clock.now = invoice.expires_at
        result = engine.reconcile(_tx(invoice.correlation_tag, tx_hash="H6"))
        assert result.outcome == ReconcileOutcome.ORPHANED
        assert result.reason == OrphanReason.INVOICE_EXPIRED
        assert store.get(invoice.id).status == InvoiceStatus.EXPIRED
        assert store.get(invoice.id).observed_tx_hash is None

    def test_scenario_sweep_then_late_match(self) -> None:
        clock = FakeClock()
        store, engine = _setup(clock)
        invoice = store.create("user-1", 5_000_000, DEPOSIT)
        clock.now = invoice.expires_at + timedelta(minutes=1)

        sweep = sweep_expired(store)
        assert sweep.expired == [invoice.id]

        tx = _tx(invoice.correlation_tag, tx_hash="H7")
        first = engine.reconcile(tx)
        second = engine.reconcile(tx)
        assert first.outcome == ReconcileOutcome.ORPHANED
        assert second.outcome == ReconcileOutcome.ORPHAN_DUPLICATE
        assert store.get(invoice.id).status == InvoiceStatus.EXPIRED
        events = [e["event"] for e in store.list_events(invoice.id)]
        assert events == ["created", "expired", "late_payment"]


# ---------------------------------------------------------------------------
# Lost compare-and-swap
# ---------------------------------------------------------------------------


class StaleLookupStore(InvoiceStore):
    """Returns the invoice as first seen, as a concurrent observer would."""

    def __init__(self) -> None:
        super().__init__(":memory:", now_fn=FakeClock())
        self.snapshot: Invoice | None = None

    def find_by_correlation_tag(self, tag: str) -> Invoice:
        if self.snapshot is not None:
            return self.snapshot
        return super().find_by_correlation_tag(tag)


class TestLostCompareAndSwap:
    def test_same_payment_lost_is_duplicate_without_orphan(self) -> None:
        store = StaleLookupStore()
        engine = ReconciliationEngine(store, DEPOSIT)
        invoice = store.create("user-1", 5_000_000, DEPOSIT)
        store.snapshot = invoice
        tx = _tx(invoice.correlation_tag, tx_hash="H8")

        winner = engine.reconcile(tx)
        loser = engine.reconcile(tx)
        assert winner.outcome == ReconcileOutcome.PAID
        assert loser.outcome == ReconcileOutcome.DUPLICATE
        assert loser.invoice is not None
        assert loser.invoice.status == InvoiceStatus.PAID
        assert store.count_orphans() == 0
        events = [e["event"] for e in store.list_events(invoice.id)]
        assert events == ["created", "paid", "payment_conflict"]

    def test_other_payment_lost_is_orphaned(self) -> None:
        store = StaleLookupStore()
        engine = ReconciliationEngine(store, DEPOSIT)
        invoice = store.create("user-1", 5_000_000, DEPOSIT)
        store.snapshot = invoice

        winner = engine.reconcile(_tx(invoice.correlation_tag, tx_hash="H8"))
        loser = engine.reconcile(_tx(invoice.correlation_tag, tx_hash="H9"))
        assert winner.outcome == ReconcileOutcome.PAID
        assert loser.outcome == ReconcileOutcome.ORPHANED
        assert loser.reason == OrphanReason.INVOICE_PAID
        assert store.get(invoice.id).observed_tx_hash == "H8"
        orphan = store.get_orphan("H9")
        assert orphan is not None
        assert orphan.invoice_id == invoice.id

    def test_lost_race_matches_sequential_outcome(self) -> None:
        raced = StaleLookupStore()
        raced_engine = ReconciliationEngine(raced, DEPOSIT)
        a = raced.create("user-1", 5_000_000, DEPOSIT)
        raced.snapshot = a
        raced_engine.reconcile(_tx(a.correlation_tag, tx_hash="H8"))
        raced_result = raced_engine.reconcile(_tx(a.correlation_tag, tx_hash="H9"))

        store, engine = _setup()
        b = store.create("user-1", 5_000_000, DEPOSIT)
        engine.reconcile(_tx(b.correlation_tag, tx_hash="H8"))
        sequential_result = engine.reconcile(_tx(b.correlation_tag, tx_hash="H9"))

        assert raced_result.outcome == sequential_result.outcome
        assert raced_result.reason == sequential_result.reason

    def test_conflict_event_deduplicated(self) -> None:
        store = StaleLookupStore()
        engine = ReconciliationEngine(store, DEPOSIT)
        invoice = store.create("user-1", 5_000_000, DEPOSIT)
        store.snapshot = invoice
        engine.reconcile(_tx(invoice.correlation_tag, tx_hash="H8"))
        first = engine.reconcile(_tx(invoice.correlation_tag, tx_hash="H9"))
        second = engine.reconcile(_tx(invoice.correlation_tag, tx_hash="H9"))
        assert first.outcome == ReconcileOutcome.ORPHANED
        assert second.outcome == ReconcileOutcome.ORPHAN_DUPLICATE
        assert store.count_orphans() == 1
        events = [e["event"] for e in store.list_events(invoice.id)]
        assert events.count("payment_conflict") == 1


class TestTwoObservers:
    def test_same_match_from_two_engines(self) -> None:
        store = InvoiceStore(":memory:", now_fn=FakeClock())
        poll_engine = ReconciliationEngine(store, DEPOSIT)
        push_engine = ReconciliationEngine(store, DEPOSIT)
        invoice = store.create("user-1", 5_000_000, DEPOSIT)
        tx = _tx(invoice.correlation_tag, tx_hash="H1")

        outcomes = [poll_engine.reconcile(tx).outcome, push_engine.reconcile(tx).outcome]
        assert outcomes.count(ReconcileOutcome.PAID) == 1
        assert outcomes.count(ReconcileOutcome.DUPLICATE) == 1
