"""Best-effort progress snapshots for resumable multi-step workflows."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, select

from job_recovery.orchestrator.models import SessionProgress
from job_recovery.storage.common import (
    build_sqlite_engine,
    from_iso,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from job_recovery.storage.sqlmodel_models import SessionProgressRecord

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE = timedelta(hours=24)


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemoryKeyValueStore:
    """Process-local store, used by tests and short-lived sessions."""

    def __init__(self) -> None:
        self._items: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            return self._items.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._items[key] = value

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)


class SqliteKeyValueStore:
    """Durable store on the ``session_progress`` table."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def get(self, key: str) -> str | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(SessionProgressRecord).where(SessionProgressRecord.storage_key == key),
            ).one_or_none()
            return row.payload_json if row is not None else None

    def set(self, key: str, value: str) -> None:
        now = to_db_datetime(utc_now())
        statement = (
            sqlite_insert(SessionProgressRecord)
            .values(storage_key=key, payload_json=value, updated_at=now)
            .on_conflict_do_update(
                index_elements=["storage_key"],
                set_={"payload_json": value, "updated_at": now},
            )
        )
        with Session(self.engine) as session:
            session.exec(statement)
            session.commit()

    def delete(self, key: str) -> None:
        with Session(self.engine) as session:
            row = session.get(SessionProgressRecord, key)
            if row is None:
                return
            session.delete(row)
            session.commit()


def progress_storage_key(job_id: str, workflow_type: str) -> str:
    return f"progress-{job_id}-{workflow_type}"


class ProgressStore:
    """Save/load/clear ``SessionProgress`` keyed by (job_id, workflow_type).

    Persistence here only supports resuming client-visible progress, so
    storage failures are logged and swallowed rather than raised.
    """

    def __init__(
        self,
        storage: KeyValueStore,
        *,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.storage = storage
        self._now = now

    def save_progress(self, job_id: str, workflow_type: str, data: dict[str, Any]) -> None:
        key = progress_storage_key(job_id, workflow_type)
        try:
            payload = json.dumps(
                {
                    "job_id": job_id,
                    "workflow_type": workflow_type,
                    "last_updated": self._now().isoformat(),
                    "data": data,
                },
                ensure_ascii=False,
                sort_keys=True,
            )
            self.storage.set(key, payload)
        except Exception:  # noqa: BLE001
            logger.warning("Failed to save progress for %s", key, exc_info=True)

    def load_progress(self, job_id: str, workflow_type: str) -> SessionProgress | None:
        key = progress_storage_key(job_id, workflow_type)
        try:
            stored = self.storage.get(key)
            if not stored:
                return None
            parsed = json.loads(stored)
            return SessionProgress(
                job_id=str(parsed["job_id"]),
                workflow_type=str(parsed["workflow_type"]),
                last_updated=from_iso(str(parsed["last_updated"])),
                data=parsed.get("data", {}),
            )
        except Exception:  # noqa: BLE001
            logger.warning("Failed to load progress for %s", key, exc_info=True)
            return None

    def has_recent_progress(
        self,
        job_id: str,
        workflow_type: str,
        max_age: timedelta = DEFAULT_MAX_AGE,
    ) -> bool:
        progress = self.load_progress(job_id, workflow_type)
        if progress is None:
            return False
        return to_utc_aware_datetime(self._now()) - progress.last_updated < max_age

    def clear_progress(self, job_id: str, workflow_type: str) -> None:
        key = progress_storage_key(job_id, workflow_type)
        try:
            self.storage.delete(key)
        except Exception:  # noqa: BLE001
            logger.warning("Failed to clear progress for %s", key, exc_info=True)
