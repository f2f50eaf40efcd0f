"""
SQLite invoice store.

Three tables:
    - invoices: one row per invoice, status + hash fields.
    - orphans: unmatched payments, keyed by tx_hash (insert-if-absent).
    - invoice_events: append-only audit log of state changes and of
      suppressed effects (late payments, lost compare-and-swaps).

Invariants:
    - correlation_tag is UNIQUE; a collision raises DuplicateTag.
    - transition() is the only status mutation. It is a compare-and-swap:
      the UPDATE carries ``WHERE status = :expected`` and succeeds only if
      no other writer got there first. That is the serialization point
      for every observer, sweep and process sharing the database.
    - pending → paid additionally requires expires_at > now, and
      pending → expired requires expires_at <= now, both inside the same
      UPDATE, so a late payment and an expiry sweep can never both win.
    - Orphans and dedup-keyed events are insert-if-absent: redelivery of
      the same transaction never creates a second row.
    - mint_claimed_at is a compare-and-swap marker: at most one mint
      submission per invoice is in flight.
    - A mint broadcast without a seen receipt keeps its claim and its
      hash (mint_submitted_tx_hash) until the hash is resolved.
    - Rows are never deleted.

SQLite patterns:
    - _get_conn() with persistent connection for :memory:
    - _transaction() context manager with commit/rollback
    - _init_schema() via executescript
    - sqlite3.Row row factory
    - WAL mode for file-backed databases
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from fassets_pay.errors import (
    ConflictError,
    DuplicateTag,
    InvalidTransition,
    InvoiceNotFound,
)
from fassets_pay.invoice import (
    Invoice,
    InvoiceStatus,
    ObservedTransaction,
    Orphan,
    format_ts,
    is_allowed_transition,
    utc_now,
)
from fassets_pay.tags import generate_tag

DEFAULT_TTL = timedelta(minutes=30)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS invoices (
    id TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    amount_drops INTEGER NOT NULL,
    deposit_address TEXT NOT NULL,
    correlation_tag TEXT NOT NULL UNIQUE,
    destination TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    observed_tx_hash TEXT,
    observed_amount_drops INTEGER,
    source_address TEXT,
    mint_tx_hash TEXT,
    mint_block INTEGER,
    mint_submitted_tx_hash TEXT,
    mint_claimed_at TEXT,
    mint_attempts INTEGER NOT NULL DEFAULT 0,
    last_mint_error TEXT,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_invoices_status_expires
ON invoices(status, expires_at);

CREATE TABLE IF NOT EXISTS orphans (
    tx_hash TEXT PRIMARY KEY,
    source_address TEXT NOT NULL,
    destination_address TEXT NOT NULL,
    amount_drops INTEGER,
    memo_text TEXT,
    reason TEXT NOT NULL,
    invoice_id TEXT,
    observed_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS invoice_events (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    invoice_id TEXT NOT NULL,
    event TEXT NOT NULL,
    detail_json TEXT NOT NULL,
    dedup_key TEXT UNIQUE,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_events_invoice
ON invoice_events(invoice_id, seq);
"""

# Fields transition() may set, per target status.
_TRANSITION_FIELDS: dict[InvoiceStatus, frozenset[str]] = {
    InvoiceStatus.PAID: frozenset({
        "observed_tx_hash",
        "observed_amount_drops",
        "source_address",
    }),
    InvoiceStatus.EXPIRED: frozenset(),
}


def _dump_detail(detail: dict[str, Any] | None) -> str:
    return json.dumps(detail or {}, sort_keys=True, separators=(",", ":"))


class InvoiceStore:
    """SQLite-backed storage for invoices, orphans and the audit log.

    Thread-safe via SQLite's built-in locking for file databases; an
    in-memory database is a single shared connection.

    Args:
        db_path: Path to SQLite database file, or ":memory:" for in-memory.
        ttl: Lifetime of a new invoice before it expires.
        tag_fn: Correlation tag generator. Inject for collision tests.
        now_fn: Clock returning aware UTC datetimes. Inject for tests.
    """

    def __init__(
        self,
        db_path: str | Path = ":memory:",
        *,
        ttl: timedelta = DEFAULT_TTL,
        tag_fn: Callable[[], str] = generate_tag,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self._db_path = str(db_path)
        self._is_memory = self._db_path == ":memory:"
        self._ttl = ttl
        self._tag_fn = tag_fn
        self._now_fn = now_fn

        if self._is_memory:
            self._persistent_conn = sqlite3.connect(":memory:", check_same_thread=False)
            self._persistent_conn.row_factory = sqlite3.Row
        else:
            self._persistent_conn = None

        self._init_schema()

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def now(self) -> datetime:
        """The store's clock."""
        return self._now_fn()

    def _get_conn(self) -> sqlite3.Connection:
        """Get a database connection with proper settings."""
        if self._persistent_conn is not None:
            return self._persistent_conn

        conn = sqlite3.connect(self._db_path, timeout=10.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for a database transaction."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            if self._persistent_conn is None:
                conn.close()

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        with self._transaction() as conn:
            conn.executescript(_SCHEMA)

    # -----------------------------------------------------------------
    # Invoice operations
    # -----------------------------------------------------------------

    def create(
        self,
        owner: str,
        amount_drops: int,
        deposit_address: str,
        destination: str | None = None,
    ) -> Invoice:
        """Create a pending invoice with a fresh correlation tag.

        Args:
            owner: Reference to the requesting principal.
            amount_drops: Requested amount in drops (> 0).
            deposit_address: XRPL address payments go to.
            destination: Optional second-ledger mint recipient.

        Returns:
            The stored Invoice.

        Raises:
            ValueError: If amount_drops is not positive or owner is empty.
            DuplicateTag: If the generated tag collides with an existing one.
        """
        if amount_drops <= 0:
            raise ValueError(f"amount_drops must be positive, got: {amount_drops}")
        if not owner:
            raise ValueError("owner must be non-empty")

        now = self._now_fn()
        invoice_id = uuid.uuid4().hex
        tag = self._tag_fn()
        expires_at = now + self._ttl

        with self._transaction() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO invoices
                    (id, owner, amount_drops, deposit_address, correlation_tag,
                     destination, status, created_at, expires_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, 'pending', ?, ?, ?)
                    """,
                    (
                        invoice_id,
                        owner,
                        amount_drops,
                        deposit_address,
                        tag,
                        destination or None,
                        format_ts(now),
                        format_ts(expires_at),
                        format_ts(now),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                if "correlation_tag" in str(exc):
                    raise DuplicateTag(tag) from exc
                raise
            self._insert_event(
                conn, invoice_id, "created",
                {"amount_drops": amount_drops, "destination": destination or None},
                now,
            )

        return self.get(invoice_id)

    def get(self, invoice_id: str) -> Invoice:
        """Get an invoice by id.

        Raises:
            InvoiceNotFound: If no such invoice exists.
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM invoices WHERE id = ?",
                (invoice_id,),
            ).fetchone()
        if row is None:
            raise InvoiceNotFound(invoice_id)
        return Invoice.from_row(dict(row))

    def find_by_correlation_tag(self, tag: str) -> Invoice:
        """Get an invoice by correlation tag.

        Raises:
            InvoiceNotFound: If no invoice carries this tag.
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM invoices WHERE correlation_tag = ?",
                (tag,),
            ).fetchone()
        if row is None:
            raise InvoiceNotFound(tag)
        return Invoice.from_row(dict(row))

    def transition(
        self,
        invoice_id: str,
        expected_status: InvoiceStatus,
        new_status: InvoiceStatus,
        fields: dict[str, Any] | None = None,
    ) -> Invoice:
        """Compare-and-swap a status change.

        Succeeds only if the stored status still equals expected_status
        at commit time (and, for paid/expired, the expiry guard holds).

        Args:
            invoice_id: Invoice to update.
            expected_status: Status the caller last observed.
            new_status: Target status.
            fields: Extra columns to set; allowed keys depend on the target.

        Returns:
            The updated Invoice.

        Raises:
            InvalidTransition: If the edge is not in the state machine.
            ValueError: If fields contains a key the target does not allow.
            InvoiceNotFound: If the invoice does not exist.
            ConflictError: If another writer changed the status first or
                the expiry guard failed.
        """
        expected_status = InvoiceStatus(expected_status)
        new_status = InvoiceStatus(new_status)
        if not is_allowed_transition(expected_status, new_status):
            raise InvalidTransition(expected_status.value, new_status.value)

        fields = dict(fields or {})
        unknown = set(fields) - _TRANSITION_FIELDS[new_status]
        if unknown:
            raise ValueError(
                f"fields not settable on {new_status.value}: {sorted(unknown)}"
            )
        if new_status == InvoiceStatus.PAID and not fields.get("observed_tx_hash"):
            raise ValueError("observed_tx_hash is required to mark an invoice paid")

        now = self._now_fn()
        now_str = format_ts(now)
        assignments = ["status = ?", "updated_at = ?"]
        params: list[Any] = [new_status.value, now_str]
        for column in sorted(fields):
            assignments.append(f"{column} = ?")
            params.append(fields[column])

        if new_status == InvoiceStatus.PAID:
            guard = "expires_at > ?"
        else:
            guard = "expires_at <= ?"
        params.extend([invoice_id, expected_status.value, now_str])

        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE invoices
                SET {", ".join(assignments)}
                WHERE id = ? AND status = ? AND {guard}
                """,
                params,
            )
            if cursor.rowcount == 1:
                detail: dict[str, Any] = {"from": expected_status.value}
                detail.update(fields)
                self._insert_event(conn, invoice_id, new_status.value, detail, now)

        if cursor.rowcount != 1:
            current = self.get(invoice_id)
            raise ConflictError(invoice_id, expected_status.value, current.status.value)
        return self.get(invoice_id)

    def list_pending(
        self,
        older_than: datetime | None = None,
        limit: int | None = None,
    ) -> list[Invoice]:
        """List pending invoices, oldest first.

        Args:
            older_than: If given, only invoices whose expires_at is at or
                before this time (the expiry sweep's candidates).
            limit: Maximum number to return.
        """
        query = "SELECT * FROM invoices WHERE status = 'pending'"
        params: list[Any] = []
        if older_than is not None:
            query += " AND expires_at <= ?"
            params.append(format_ts(older_than))
        query += " ORDER BY created_at, id"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
        return [Invoice.from_row(dict(row)) for row in rows]

    # -----------------------------------------------------------------
    # Mint operations
    # -----------------------------------------------------------------

    def list_unminted(
        self,
        stale_before: datetime | None = None,
        limit: int = 50,
    ) -> list[Invoice]:
        """List paid invoices with a destination and no confirmed mint.

        Invoices with a mint claim in flight are excluded unless the claim
        is older than stale_before (an abandoned claim).
        """
        query = """
            SELECT * FROM invoices
            WHERE status = 'paid'
              AND destination IS NOT NULL AND destination != ''
              AND mint_tx_hash IS NULL
              AND (mint_claimed_at IS NULL
        """
        params: list[Any] = []
        if stale_before is not None:
            query += " OR mint_claimed_at <= ?"
            params.append(format_ts(stale_before))
        query += ") ORDER BY updated_at, id LIMIT ?"
        params.append(limit)

        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
        return [Invoice.from_row(dict(row)) for row in rows]

    def claim_mint(
        self,
        invoice_id: str,
        stale_before: datetime | None = None,
    ) -> Invoice:
        """Set the mint-in-progress marker by compare-and-swap.

        Raises:
            InvoiceNotFound: If the invoice does not exist.
            ConflictError: If the invoice is not mintable or another
                submission holds a live claim.
        """
        now = self._now_fn()
        stale = format_ts(stale_before) if stale_before is not None else None
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE invoices
                SET mint_claimed_at = ?, mint_attempts = mint_attempts + 1,
                    updated_at = ?
                WHERE id = ?
                  AND status = 'paid'
                  AND destination IS NOT NULL AND destination != ''
                  AND mint_tx_hash IS NULL
                  AND (mint_claimed_at IS NULL
                       OR (? IS NOT NULL AND mint_claimed_at <= ?))
                """,
                (format_ts(now), format_ts(now), invoice_id, stale, stale),
            )
            if cursor.rowcount == 1:
                self._insert_event(conn, invoice_id, "mint_claimed", {}, now)

        if cursor.rowcount != 1:
            current = self.get(invoice_id)
            raise ConflictError(invoice_id, "mint_unclaimed", _mint_state(current))
        return self.get(invoice_id)

    def record_mint(
        self,
        invoice_id: str,
        mint_tx_hash: str,
        mint_block: int | None = None,
    ) -> Invoice:
        """Persist a confirmed mint and clear the marker.

        Raises:
            ConflictError: If a mint hash is already recorded.
        """
        now = self._now_fn()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE invoices
                SET mint_tx_hash = ?, mint_block = ?, mint_claimed_at = NULL,
                    mint_submitted_tx_hash = NULL, last_mint_error = NULL,
                    updated_at = ?
                WHERE id = ? AND status = 'paid' AND mint_tx_hash IS NULL
                """,
                (mint_tx_hash, mint_block, format_ts(now), invoice_id),
            )
            if cursor.rowcount == 1:
                self._insert_event(
                    conn, invoice_id, "minted",
                    {"mint_tx_hash": mint_tx_hash, "mint_block": mint_block},
                    now,
                )

        if cursor.rowcount != 1:
            current = self.get(invoice_id)
            raise ConflictError(invoice_id, "mint_unrecorded", _mint_state(current))
        return self.get(invoice_id)

    def release_mint(self, invoice_id: str, error: str) -> None:
        """Clear the marker after a failed submission, keeping the error."""
        now = self._now_fn()
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE invoices
                SET mint_claimed_at = NULL, mint_submitted_tx_hash = NULL,
                    last_mint_error = ?, updated_at = ?
                WHERE id = ? AND mint_tx_hash IS NULL
                """,
                (error, format_ts(now), invoice_id),
            )
            self._insert_event(conn, invoice_id, "mint_failed", {"error": error}, now)

    def hold_mint(self, invoice_id: str, submitted_tx_hash: str, error: str) -> None:
        """Keep the marker for a broadcast mint whose outcome is unknown.

        mint_claimed_at is left as claimed, so the invoice is reconsidered
        only once the claim is older than the lease, and then by looking
        up submitted_tx_hash rather than submitting again.
        """
        now = self._now_fn()
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE invoices
                SET mint_submitted_tx_hash = ?, last_mint_error = ?, updated_at = ?
                WHERE id = ? AND mint_tx_hash IS NULL
                """,
                (submitted_tx_hash, error, format_ts(now), invoice_id),
            )
            self._insert_event(
                conn, invoice_id, "mint_unconfirmed",
                {"mint_tx_hash": submitted_tx_hash, "error": error},
                now,
            )

    # -----------------------------------------------------------------
    # Orphan operations
    # -----------------------------------------------------------------

    def insert_orphan(
        self,
        tx: ObservedTransaction,
        reason: str,
        invoice_id: str | None = None,
    ) -> bool:
        """Record an unmatched payment. Returns True if inserted, False if already recorded."""
        with self._transaction() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO orphans
                    (tx_hash, source_address, destination_address, amount_drops,
                     memo_text, reason, invoice_id, observed_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        tx.tx_hash,
                        tx.source_address,
                        tx.destination_address,
                        tx.amount_drops,
                        tx.memo_text,
                        reason,
                        invoice_id,
                        format_ts(self._now_fn()),
                    ),
                )
                return True
            except sqlite3.IntegrityError:
                return False

    def get_orphan(self, tx_hash: str) -> Orphan | None:
        """Get an orphan by transaction hash, None if not recorded."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM orphans WHERE tx_hash = ?",
                (tx_hash,),
            ).fetchone()
        if row is None:
            return None
        return Orphan.from_row(dict(row))

    def list_orphans(self) -> list[Orphan]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM orphans ORDER BY observed_at, tx_hash"
            ).fetchall()
        return [Orphan.from_row(dict(row)) for row in rows]

    def count_orphans(self) -> int:
        with self._transaction() as conn:
            row = conn.execute("SELECT COUNT(*) FROM orphans").fetchone()
        return row[0] if row else 0

    # -----------------------------------------------------------------
    # Audit events
    # -----------------------------------------------------------------

    def append_event(
        self,
        invoice_id: str,
        event: str,
        detail: dict[str, Any] | None = None,
        *,
        dedup_key: str | None = None,
    ) -> bool:
        """Append an audit event. Returns False if dedup_key was already used."""
        with self._transaction() as conn:
            return self._insert_event(
                conn, invoice_id, event, detail, self._now_fn(), dedup_key=dedup_key,
            )

    def list_events(self, invoice_id: str) -> list[dict[str, Any]]:
        """List all events for an invoice, in append order."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT seq, invoice_id, event, detail_json, created_at
                FROM invoice_events
                WHERE invoice_id = ?
                ORDER BY seq
                """,
                (invoice_id,),
            ).fetchall()
        return [
            {
                "seq": row["seq"],
                "invoice_id": row["invoice_id"],
                "event": row["event"],
                "detail": json.loads(row["detail_json"]),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    def _insert_event(
        self,
        conn: sqlite3.Connection,
        invoice_id: str,
        event: str,
        detail: dict[str, Any] | None,
        now: datetime,
        *,
        dedup_key: str | None = None,
    ) -> bool:
        try:
            conn.execute(
                """
                INSERT INTO invoice_events
                (invoice_id, event, detail_json, dedup_key, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (invoice_id, event, _dump_detail(detail), dedup_key, format_ts(now)),
            )
            return True
        except sqlite3.IntegrityError:
            return False


def _mint_state(invoice: Invoice) -> str:
    if invoice.status != InvoiceStatus.PAID:
        return invoice.status.value
    if not invoice.destination:
        return "no_destination"
    if invoice.mint_tx_hash is not None:
        return "minted"
    if invoice.mint_submitted_tx_hash is not None:
        return "mint_unconfirmed"
    if invoice.mint_claimed_at is not None:
        return "mint_in_progress"
    return "mint_unclaimed"
