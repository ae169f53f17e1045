"""
Ledger Store — persisted local entitlement state.
=================================================

PURPOSE:
    Holds the append-only transaction log, the current SubscriptionState
    and the PurchaseRecords still awaiting receipt validation (the offline
    retry queue). Three interchangeable backends:

    MemoryLedgerStore   process-local, for tests and ephemeral sessions
    JsonLedgerStore     one JSON document, atomic writes (tmp + fsync + rename),
                        chmod 600
    SqlLedgerStore      SQLAlchemy Core tables; txn_id UNIQUE, so a replayed
                        transaction is rejected by the database itself

INVARIANT:
    append_transaction() never overwrites; it returns False when the txn_id
    is already present.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional, Protocol

import sqlalchemy as sa
from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, Text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from photoledger.config import settings
from photoledger.models.entitlement import LedgerTransaction, PurchaseRecord, SubscriptionState

logger = logging.getLogger(__name__)


class LedgerStore(Protocol):
    def load_transactions(self) -> List[LedgerTransaction]: ...

    def append_transaction(self, txn: LedgerTransaction) -> bool: ...

    def load_subscription(self) -> Optional[SubscriptionState]: ...

    def save_subscription(self, state: SubscriptionState) -> None: ...

    def load_purchases(self) -> List[PurchaseRecord]: ...

    def save_purchase(self, record: PurchaseRecord) -> None: ...


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

class MemoryLedgerStore:
    def __init__(self) -> None:
        self._transactions: Dict[str, LedgerTransaction] = {}
        self._subscription: Optional[SubscriptionState] = None
        self._purchases: Dict[str, PurchaseRecord] = {}

    def load_transactions(self) -> List[LedgerTransaction]:
        return list(self._transactions.values())

    def append_transaction(self, txn: LedgerTransaction) -> bool:
        if txn.txn_id in self._transactions:
            return False
        self._transactions[txn.txn_id] = txn
        return True

    def load_subscription(self) -> Optional[SubscriptionState]:
        return self._subscription.model_copy() if self._subscription else None

    def save_subscription(self, state: SubscriptionState) -> None:
        self._subscription = state.model_copy()

    def load_purchases(self) -> List[PurchaseRecord]:
        return [r.model_copy() for r in self._purchases.values()]

    def save_purchase(self, record: PurchaseRecord) -> None:
        self._purchases[record.purchase_id] = record.model_copy()


# ---------------------------------------------------------------------------
# JSON file
# ---------------------------------------------------------------------------

class JsonLedgerStore:
    """Ledger state backed by a single JSON file with atomic writes."""

    def __init__(self, path: Optional[str] = None):
        self._path = Path(path or os.path.join(settings.data_directory, "ledger.json"))
        self._lock = threading.Lock()
        self._transactions: Dict[str, LedgerTransaction] = {}
        self._subscription: Optional[SubscriptionState] = None
        self._purchases: Dict[str, PurchaseRecord] = {}
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        if not self._path.exists():
            logger.info("No ledger.json found at %s, starting empty", self._path)
            return
        # A corrupt ledger must not be silently replaced by an empty one
        raw = json.loads(self._path.read_text())
        for item in raw.get("transactions", []):
            txn = LedgerTransaction.model_validate(item)
            self._transactions[txn.txn_id] = txn
        if raw.get("subscription"):
            self._subscription = SubscriptionState.model_validate(raw["subscription"])
        for item in raw.get("purchases", []):
            record = PurchaseRecord.model_validate(item)
            self._purchases[record.purchase_id] = record
        logger.info(
            "Loaded ledger state: transactions=%d purchases=%d",
            len(self._transactions), len(self._purchases),
        )

    def _save(self) -> None:
        """Atomic write: tmp → fsync → rename. chmod 600."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "transactions": [t.model_dump(mode="json") for t in self._transactions.values()],
            "subscription": self._subscription.model_dump(mode="json") if self._subscription else None,
            "purchases": [p.model_dump(mode="json") for p in self._purchases.values()],
        }
        fd, tmp_path = tempfile.mkstemp(dir=str(self._path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, str(self._path))
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def load_transactions(self) -> List[LedgerTransaction]:
        with self._lock:
            return list(self._transactions.values())

    def append_transaction(self, txn: LedgerTransaction) -> bool:
        with self._lock:
            if txn.txn_id in self._transactions:
                return False
            self._transactions[txn.txn_id] = txn
            try:
                self._save()
            except Exception:
                del self._transactions[txn.txn_id]
                raise
            return True

    def load_subscription(self) -> Optional[SubscriptionState]:
        with self._lock:
            return self._subscription.model_copy() if self._subscription else None

    def save_subscription(self, state: SubscriptionState) -> None:
        with self._lock:
            self._subscription = state.model_copy()
            self._save()

    def load_purchases(self) -> List[PurchaseRecord]:
        with self._lock:
            return [r.model_copy() for r in self._purchases.values()]

    def save_purchase(self, record: PurchaseRecord) -> None:
        with self._lock:
            self._purchases[record.purchase_id] = record.model_copy()
            self._save()


# ---------------------------------------------------------------------------
# SQL (SQLAlchemy Core)
# ---------------------------------------------------------------------------
ledger_metadata = MetaData()

ledger_transactions_table = Table(
    "ledger_transactions",
    ledger_metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("txn_id", String(255), nullable=False, unique=True),
    Column("type", String(32), nullable=False),
    Column("occurred_at", DateTime, nullable=False),
    Column("payload", Text, nullable=False),
)

subscription_state_table = Table(
    "subscription_state",
    ledger_metadata,
    Column("id", Integer, primary_key=True),
    Column("payload", Text, nullable=False),
    Column("updated_at", DateTime, nullable=True),
)

purchase_records_table = Table(
    "purchase_records",
    ledger_metadata,
    Column("purchase_id", String(64), primary_key=True),
    Column("status", String(32), nullable=False),
    Column("payload", Text, nullable=False),
    Column("updated_at", DateTime, nullable=False),
)

sa.Index("idx_purchase_status", purchase_records_table.c.status)


class SqlLedgerStore:
    """
    Ledger state backed by SQLAlchemy Core.

    Each public method acquires its own connection (per-operation isolation).
    Payloads are the pydantic JSON dump; only lookup columns are broken out.
    """

    _SUBSCRIPTION_ROW_ID = 1

    def __init__(self, engine: Optional[Engine] = None) -> None:
        if engine is None:
            from photoledger.core.database import get_engine

            engine = get_engine()
        self._engine = engine
        ledger_metadata.create_all(self._engine)

    def load_transactions(self) -> List[LedgerTransaction]:
        t = ledger_transactions_table
        with self._engine.connect() as conn:
            rows = conn.execute(sa.select(t.c.payload).order_by(t.c.id.asc())).fetchall()
        return [LedgerTransaction.model_validate_json(row.payload) for row in rows]

    def append_transaction(self, txn: LedgerTransaction) -> bool:
        try:
            with self._engine.begin() as conn:
                conn.execute(
                    ledger_transactions_table.insert().values(
                        txn_id=txn.txn_id,
                        type=txn.type.value,
                        occurred_at=txn.occurred_at,
                        payload=txn.model_dump_json(),
                    )
                )
        except IntegrityError:
            logger.info("Duplicate ledger transaction: %s", txn.txn_id)
            return False
        return True

    def load_subscription(self) -> Optional[SubscriptionState]:
        t = subscription_state_table
        with self._engine.connect() as conn:
            row = conn.execute(
                sa.select(t.c.payload).where(t.c.id == self._SUBSCRIPTION_ROW_ID)
            ).fetchone()
        return SubscriptionState.model_validate_json(row.payload) if row else None

    def save_subscription(self, state: SubscriptionState) -> None:
        t = subscription_state_table
        with self._engine.begin() as conn:
            updated = conn.execute(
                t.update()
                .where(t.c.id == self._SUBSCRIPTION_ROW_ID)
                .values(payload=state.model_dump_json(), updated_at=state.updated_at)
            )
            if updated.rowcount == 0:
                conn.execute(
                    t.insert().values(
                        id=self._SUBSCRIPTION_ROW_ID,
                        payload=state.model_dump_json(),
                        updated_at=state.updated_at,
                    )
                )

    def load_purchases(self) -> List[PurchaseRecord]:
        t = purchase_records_table
        with self._engine.connect() as conn:
            rows = conn.execute(sa.select(t.c.payload)).fetchall()
        records = [PurchaseRecord.model_validate_json(row.payload) for row in rows]
        return sorted(records, key=lambda r: r.created_at)

    def save_purchase(self, record: PurchaseRecord) -> None:
        t = purchase_records_table
        with self._engine.begin() as conn:
            updated = conn.execute(
                t.update()
                .where(t.c.purchase_id == record.purchase_id)
                .values(
                    status=record.status.value,
                    payload=record.model_dump_json(),
                    updated_at=record.updated_at,
                )
            )
            if updated.rowcount == 0:
                conn.execute(
                    t.insert().values(
                        purchase_id=record.purchase_id,
                        status=record.status.value,
                        payload=record.model_dump_json(),
                        updated_at=record.updated_at,
                    )
                )


def create_ledger_store(backend: Optional[str] = None) -> LedgerStore:
    """Build the store selected by PHOTOLEDGER_STORAGE_BACKEND."""
    backend = backend or settings.storage_backend
    if backend == "memory":
        return MemoryLedgerStore()
    if backend == "json":
        return JsonLedgerStore()
    if backend == "sql":
        return SqlLedgerStore()
    raise ValueError(f"Unknown storage backend: {backend!r}")
