"""Database abstractions using SQLite."""
from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
import weakref
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional, Sequence

import pandas as pd

from .config import AppConfig
from .models import Opportunity, OpportunityNotFoundError, digits_only

logger = logging.getLogger(__name__)


SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    user_id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL UNIQUE,
    pass_hash TEXT NOT NULL,
    display_name TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);
CREATE TABLE IF NOT EXISTS login_events (
    event_id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL,
    success INTEGER NOT NULL,
    occurred_at TEXT NOT NULL DEFAULT (datetime('now'))
);
CREATE TABLE IF NOT EXISTS opportunities (
    id TEXT PRIMARY KEY,
    customer_name TEXT NOT NULL,
    customer_phone TEXT,
    phone_digits TEXT,
    customer_email TEXT,
    customer_city TEXT,
    customer_state TEXT,
    customer_type TEXT,
    shop_name TEXT,
    shop_focus TEXT,
    part_sought TEXT,
    vehicle_model TEXT,
    source TEXT,
    sale_made INTEGER NOT NULL,
    sale_amount TEXT,
    payment_method TEXT,
    sales_channel TEXT,
    loss_reason TEXT,
    missing_part TEXT,
    notes TEXT,
    salesperson_email TEXT,
    salesperson_id INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_opportunities_created_at ON opportunities(created_at);
CREATE INDEX IF NOT EXISTS idx_opportunities_phone ON opportunities(phone_digits);
"""

OPPORTUNITY_COLUMNS: tuple[str, ...] = (
    "id",
    "customer_name",
    "customer_phone",
    "customer_email",
    "customer_city",
    "customer_state",
    "customer_type",
    "shop_name",
    "shop_focus",
    "part_sought",
    "vehicle_model",
    "source",
    "sale_made",
    "sale_amount",
    "payment_method",
    "sales_channel",
    "loss_reason",
    "missing_part",
    "notes",
    "salesperson_email",
    "salesperson_id",
    "created_at",
    "updated_at",
)


@dataclass
class Database:
    config: AppConfig
    db_path: Path

    @classmethod
    def from_config(cls, config: AppConfig) -> "Database":
        if not config.db_url.startswith("sqlite://"):
            raise ValueError("Only SQLite URLs are supported in the bundled runtime.")
        path_str = config.db_url.split("sqlite:///")[-1]
        db_path = Path(path_str).expanduser()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return cls(config=config, db_path=db_path)

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def begin(self) -> Iterator[sqlite3.Connection]:
        with self.connect() as conn:
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def init_schema(self) -> None:
        with self.connect() as conn:
            conn.executescript(SCHEMA)
            conn.commit()


class UserRepository:
    """Encapsulate CRUD logic for user accounts."""

    def __init__(self, db: Database):
        self._db = db

    def fetch_by_email(self, email: str) -> Optional[dict]:
        with self._db.connect() as conn:
            row = conn.execute(
                "SELECT user_id, email, pass_hash, display_name FROM users WHERE email=?",
                (email.strip().lower(),),
            ).fetchone()
            return dict(row) if row else None

    def list_users(self) -> list[dict]:
        with self._db.connect() as conn:
            rows = conn.execute(
                "SELECT user_id, email, display_name, created_at FROM users ORDER BY email"
            ).fetchall()
            return [dict(row) for row in rows]

    def count(self) -> int:
        with self._db.connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]

    def create(self, email: str, pass_hash: str, display_name: Optional[str] = None) -> int:
        with self._db.begin() as conn:
            cur = conn.execute(
                "INSERT INTO users(email, pass_hash, display_name) VALUES (?, ?, ?)",
                (email.strip().lower(), pass_hash, display_name),
            )
            return int(cur.lastrowid)

    def create_login_event(self, email: str, success: bool) -> None:
        with self._db.begin() as conn:
            conn.execute(
                """
                INSERT INTO login_events(email, success, occurred_at)
                VALUES (?, ?, datetime('now'))
                """,
                (email, int(success)),
            )

    def count_recent_failures(self, email: str, minutes: int) -> int:
        with self._db.connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS failures
                FROM login_events
                WHERE email=? AND success=0
                  AND occurred_at >= datetime('now', ?)
                """,
                (email, f"-{minutes} minutes"),
            ).fetchone()
            return row[0] if row else 0

    def latest_failure_time(self, email: str) -> Optional[str]:
        with self._db.connect() as conn:
            row = conn.execute(
                """
                SELECT occurred_at
                FROM login_events
                WHERE email=? AND success=0
                ORDER BY occurred_at DESC
                LIMIT 1
                """,
                (email,),
            ).fetchone()
            return row[0] if row else None

    def purge_login_history(self, minutes: int) -> None:
        with self._db.begin() as conn:
            conn.execute(
                "DELETE FROM login_events WHERE occurred_at < datetime('now', ?)",
                (f"-{minutes} minutes",),
            )

    def clear_login_events(self, email: str) -> None:
        with self._db.begin() as conn:
            conn.execute("DELETE FROM login_events WHERE email=?", (email,))


Listener = Callable[[list[Opportunity]], None]


@dataclass(eq=False)
class _Subscription:
    callback: Listener
    limit: Optional[int]
    phone: Optional[str]


class OpportunityRepository:
    """The ``opportunities`` collection with a live query on top of SQLite.

    Subscribers get the full result of their query right away and again
    after every committed write, replacing whatever they held before.
    """

    def __init__(self, db: Database):
        self._db = db
        self._subscriptions: list[_Subscription] = []
        self._lock = threading.Lock()

    def create(self, opportunity: Opportunity) -> str:
        doc_id = opportunity.id or uuid.uuid4().hex
        created_at = opportunity.created_at or datetime.now().isoformat(timespec="seconds")
        record = replace(opportunity, id=doc_id, created_at=created_at)
        values = self._row_values(record)
        placeholders = ", ".join("?" for _ in values)
        columns = ", ".join([*OPPORTUNITY_COLUMNS, "phone_digits"])
        with self._db.begin() as conn:
            conn.execute(
                f"INSERT INTO opportunities({columns}) VALUES ({placeholders})",
                values,
            )
        logger.info("Created opportunity %s for %s", doc_id, record.salesperson_email)
        self._notify()
        return doc_id

    def update(self, doc_id: str, opportunity: Opportunity) -> None:
        record = replace(opportunity, id=doc_id)
        values = self._row_values(record)
        assignments = ", ".join(
            f"{column}=?" for column in [*OPPORTUNITY_COLUMNS, "phone_digits"] if column != "id"
        )
        params = [value for column, value in zip([*OPPORTUNITY_COLUMNS, "phone_digits"], values) if column != "id"]
        with self._db.begin() as conn:
            cur = conn.execute(
                f"UPDATE opportunities SET {assignments} WHERE id=?",
                (*params, doc_id),
            )
            if cur.rowcount == 0:
                raise OpportunityNotFoundError(doc_id)
        logger.info("Updated opportunity %s", doc_id)
        self._notify()

    def delete(self, doc_id: str) -> None:
        with self._db.begin() as conn:
            cur = conn.execute("DELETE FROM opportunities WHERE id=?", (doc_id,))
            if cur.rowcount == 0:
                raise OpportunityNotFoundError(doc_id)
        logger.info("Deleted opportunity %s", doc_id)
        self._notify()

    def get(self, doc_id: str) -> Opportunity:
        with self._db.connect() as conn:
            row = conn.execute("SELECT * FROM opportunities WHERE id=?", (doc_id,)).fetchone()
        if row is None:
            raise OpportunityNotFoundError(doc_id)
        return Opportunity.from_row(row)

    def query(self, limit: Optional[int] = None, phone: Optional[str] = None) -> list[Opportunity]:
        """Return records newest first, optionally capped and filtered by phone."""

        query = "SELECT * FROM opportunities"
        params: list = []
        if phone is not None:
            query += " WHERE phone_digits=?"
            params.append(digits_only(phone))
        query += " ORDER BY created_at DESC, rowid DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        with self._db.connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [Opportunity.from_row(row) for row in rows]

    def latest_by_phone(self, phone: str, exclude_id: Optional[str] = None) -> Optional[Opportunity]:
        """Return the newest record for ``phone``, skipping ``exclude_id``."""

        digits = digits_only(phone)
        if not digits:
            return None
        with self._db.connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM opportunities
                WHERE phone_digits=? AND id<>?
                ORDER BY created_at DESC, rowid DESC
                LIMIT 1
                """,
                (digits, exclude_id or ""),
            ).fetchone()
        return Opportunity.from_row(row) if row else None

    def subscribe(
        self,
        callback: Listener,
        limit: Optional[int] = None,
        phone: Optional[str] = None,
    ) -> Callable[[], None]:
        subscription = _Subscription(callback=callback, limit=limit, phone=phone)
        with self._lock:
            self._subscriptions.append(subscription)
        callback(self.query(limit=limit, phone=phone))

        def unsubscribe() -> None:
            with self._lock:
                if subscription in self._subscriptions:
                    self._subscriptions.remove(subscription)

        return unsubscribe

    def _notify(self) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            try:
                subscription.callback(self.query(limit=subscription.limit, phone=subscription.phone))
            except Exception:
                logger.exception("Opportunity subscriber failed")

    @staticmethod
    def _row_values(record: Opportunity) -> tuple:
        data = record.to_dict()
        values = [data[column] for column in OPPORTUNITY_COLUMNS]
        values[OPPORTUNITY_COLUMNS.index("sale_made")] = int(record.sale_made)
        return (*values, digits_only(record.customer_phone))


class LiveQuery:
    """Keep the latest result of a subscribed query for a UI session.

    The repository only holds a weak reference back to this object, so a
    discarded session drops its subscription when it is garbage collected.
    """

    def __init__(
        self,
        repository: OpportunityRepository,
        limit: Optional[int] = None,
        phone: Optional[str] = None,
    ):
        self._records: list[Opportunity] = []
        ref = weakref.ref(self)

        def deliver(records: list[Opportunity]) -> None:
            live = ref()
            if live is not None:
                live._records = records

        unsubscribe = repository.subscribe(deliver, limit=limit, phone=phone)
        self._finalizer = weakref.finalize(self, unsubscribe)

    @property
    def records(self) -> list[Opportunity]:
        return list(self._records)

    @property
    def active(self) -> bool:
        return self._finalizer.alive

    def close(self) -> None:
        self._finalizer()


DATAFRAME_LABELS: dict[str, str] = {
    "created_at": "Created",
    "salesperson_email": "Salesperson",
    "customer_name": "Customer",
    "customer_phone": "Phone",
    "customer_city": "City",
    "customer_state": "State",
    "customer_type": "Type",
    "part_sought": "Part",
    "vehicle_model": "Vehicle",
    "source": "Source",
    "sales_channel": "Channel",
    "outcome": "Outcome",
    "sale_amount": "Amount",
    "payment_method": "Payment",
    "loss_reason": "Loss reason",
    "notes": "Notes",
    "id": "ID",
}


def to_dataframe(records: Iterable[Opportunity], columns: Optional[Sequence[str]] = None) -> pd.DataFrame:
    """Tabulate records for display with friendly column labels."""

    rows = []
    for record in records:
        data = record.to_dict()
        data["outcome"] = record.outcome_label
        rows.append(data)
    keys = list(columns or DATAFRAME_LABELS.keys())
    df = pd.DataFrame(rows, columns=keys)
    return df.rename(columns=DATAFRAME_LABELS)
