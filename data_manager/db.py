# data_manager/db.py
"""
Record store: an in-memory SQLite database mirrored to a single backing file.

The backing file is copied into memory once by ``init()`` and rewritten in
full after every mutation (SQLite online backup into a temp file, then an
atomic rename). Reads never touch the disk.

Env vars:
- DB_PATH (default: ./data.db)
"""

import os
import time
import pathlib
import sqlite3
import datetime
import threading
from typing import Optional, Dict, Any, List

from sqlalchemy import create_engine, select, update, delete, func, or_
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool
from sqlalchemy.exc import SQLAlchemyError

from data_manager import monitoring
from data_manager.models import Base, DataEntry

DB_PATH = os.getenv("DB_PATH", "./data.db")

DEFAULT_LIMIT = 100
DEFAULT_OFFSET = 0

logger = monitoring.logger


class StoreLoadError(RuntimeError):
    """The backing file exists but cannot be loaded. Fatal at startup."""


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


class RecordStore:
    """Sole owner and writer of the ``data_entries`` table and its backing file."""

    def __init__(self, path: str = DB_PATH):
        self.path = str(path)
        self.engine: Engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        # every session shares the single in-memory connection, so reads
        # are serialized with mutations on the same lock
        self._lock = threading.RLock()

    def _session(self) -> Session:
        return Session(bind=self.engine, expire_on_commit=False)

    # ---- lifecycle ------------------------------------------------------
    def init(self) -> None:
        """
        Load the backing file if present, else start from an empty table.
        Raises StoreLoadError if the file exists but is unreadable or corrupt.
        """
        with self._lock:
            if os.path.exists(self.path):
                self._load()
            Base.metadata.create_all(bind=self.engine)
            self._persist()
            total = self._count()
        monitoring.set_record_count(total)
        logger.info("Database initialized", extra={"db_path": self.path, "records": total})

    def _load(self) -> None:
        uri = pathlib.Path(self.path).resolve().as_uri() + "?mode=ro"
        raw = self.engine.raw_connection()
        try:
            src = sqlite3.connect(uri, uri=True)
            try:
                src.backup(raw.driver_connection)
                status = raw.driver_connection.execute("PRAGMA quick_check").fetchone()
            finally:
                src.close()
        except sqlite3.Error as e:
            raise StoreLoadError(f"Cannot load database file {self.path}: {e}") from e
        finally:
            raw.close()
        if not status or status[0] != "ok":
            raise StoreLoadError(f"Database file {self.path} failed integrity check: {status}")

    def _persist(self) -> None:
        """Rewrite the whole backing file from the in-memory database."""
        start = time.time()
        tmp_path = self.path + ".tmp"
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raw = self.engine.raw_connection()
        try:
            dest = sqlite3.connect(tmp_path)
            try:
                raw.driver_connection.backup(dest)
            finally:
                dest.close()
        finally:
            raw.close()
        os.replace(tmp_path, self.path)
        monitoring.observe_persist(start)

    def close(self) -> None:
        self.engine.dispose()

    # ---- reads ----------------------------------------------------------
    def list(self, limit: int = DEFAULT_LIMIT, offset: int = DEFAULT_OFFSET) -> List[Dict[str, Any]]:
        q = (
            select(DataEntry)
            .order_by(DataEntry.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        with self._lock, self._session() as s:
            return [row.to_dict() for row in s.scalars(q)]

    def get_by_id(self, entry_id: str) -> Optional[Dict[str, Any]]:
        with self._lock, self._session() as s:
            row = s.get(DataEntry, entry_id)
            return row.to_dict() if row else None

    def search(self, query: str) -> List[Dict[str, Any]]:
        """Case-insensitive substring match on name or value, newest first."""
        q = (
            select(DataEntry)
            .where(or_(
                DataEntry.name.icontains(query, autoescape=True),
                DataEntry.value.icontains(query, autoescape=True),
            ))
            .order_by(DataEntry.created_at.desc())
        )
        with self._lock, self._session() as s:
            return [row.to_dict() for row in s.scalars(q)]

    def count(self) -> int:
        with self._lock:
            return self._count()

    def _count(self) -> int:
        with self._session() as s:
            return s.scalar(select(func.count()).select_from(DataEntry)) or 0

    # ---- writes ---------------------------------------------------------
    def create(self, record: Dict[str, Any]) -> bool:
        """
        Insert a new row. ``record`` carries id, name, value and metadata
        (already JSON-encoded text or None). Returns False on any storage error.
        """
        now = _utcnow()
        entry = DataEntry(
            id=record["id"],
            name=record["name"],
            value=record.get("value"),
            metadata_json=record.get("metadata"),
            created_at=now,
            updated_at=now,
        )
        return self._mutate("create", lambda s: s.add(entry))

    def update(self, entry_id: str, fields: Dict[str, Any]) -> bool:
        """
        Replace name, value and metadata and refresh updated_at.
        A missing row is not an error; callers check existence first.
        """
        stmt = (
            update(DataEntry)
            .where(DataEntry.id == entry_id)
            .values(
                name=fields["name"],
                value=fields.get("value"),
                metadata_json=fields.get("metadata"),
                updated_at=_utcnow(),
            )
        )
        return self._mutate("update", lambda s: s.execute(stmt))

    def delete_by_id(self, entry_id: str) -> bool:
        stmt = delete(DataEntry).where(DataEntry.id == entry_id)
        return self._mutate("delete", lambda s: s.execute(stmt))

    def _mutate(self, op: str, apply) -> bool:
        with self._lock:
            try:
                with self._session() as s:
                    apply(s)
                    s.commit()
                self._persist()
                total = self._count()
            except (SQLAlchemyError, sqlite3.Error, OSError) as e:
                logger.error("%s error: %s", op.capitalize(), e)
                monitoring.inc_store_op(op, "error")
                return False
        monitoring.inc_store_op(op, "ok")
        monitoring.set_record_count(total)
        return True
