"""Durable build records: one row per request id in the ``builds`` table."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, event, insert, select, update
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .config import Settings
from .errors import FailureCause, StorageError
from .models import BuildRequest, BuildState
from .schema import builds, metadata

logger = logging.getLogger("apk_orchestrator.records")


# --- Engine / Session helpers ---


def build_engine(settings: Settings) -> Engine:
    url = make_url(settings.sqlalchemy_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(url, echo=settings.database_echo, pool_pre_ping=True)

    if url.database and url.database != ":memory:":
        Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        url,
        echo=settings.database_echo,
        connect_args={"check_same_thread": False},
    )
    busy_timeout = int(settings.database_sqlite_busy_timeout_ms)

    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_conn, _conn_rec) -> None:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=FULL")
        cursor.execute(f"PRAGMA busy_timeout={busy_timeout}")
        cursor.close()

    return engine


def build_sessionmaker(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, expire_on_commit=False)


# --- Row mapping ---


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands timestamps back without tzinfo; everything here is UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _to_row(request: BuildRequest) -> dict[str, Any]:
    return {
        "request_id": request.request_id,
        "tenant_id": request.tenant_id,
        "source_key": request.source_key,
        "variant": request.variant,
        "state": request.state.value,
        "retry_count": request.retry_count,
        "last_error": request.last_error,
        "failure_cause": request.failure_cause.value if request.failure_cause else None,
        "output_key": request.output_key,
        "worker_id": request.worker_id,
        "cancel_requested": request.cancel_requested,
        "progress": request.progress,
        "message": request.message,
        "history": [[state.value, at.isoformat()] for state, at in request.history],
        "submitted_at": request.submitted_at,
        "started_at": request.started_at,
        "finished_at": request.finished_at,
        "available_at": request.available_at,
    }


def _from_row(row: Any) -> BuildRequest:
    cause = row["failure_cause"]
    return BuildRequest(
        request_id=row["request_id"],
        tenant_id=row["tenant_id"],
        source_key=row["source_key"],
        variant=row["variant"],
        submitted_at=_aware(row["submitted_at"]),
        state=BuildState(row["state"]),
        retry_count=int(row["retry_count"] or 0),
        last_error=row["last_error"],
        failure_cause=FailureCause(cause) if cause else None,
        output_key=row["output_key"],
        worker_id=row["worker_id"],
        started_at=_aware(row["started_at"]),
        finished_at=_aware(row["finished_at"]),
        available_at=_aware(row["available_at"]),
        cancel_requested=bool(row["cancel_requested"]),
        progress=int(row["progress"] or 0),
        message=row["message"] or "",
        history=[(BuildState(state), datetime.fromisoformat(at)) for state, at in row["history"] or []],
    )


class RecordStore:
    def __init__(self, SessionLocal: sessionmaker[Session]) -> None:
        self._SessionLocal = SessionLocal

    @classmethod
    def from_settings(cls, settings: Settings) -> "RecordStore":
        engine = build_engine(settings)
        metadata.create_all(engine)
        return cls(build_sessionmaker(engine))

    def save(self, request: BuildRequest) -> None:
        """Insert or overwrite the row for ``request``. Raises :class:`StorageError`."""
        row = _to_row(request)
        values = {k: v for k, v in row.items() if k != "request_id"}
        try:
            with self._SessionLocal.begin() as session:
                result = session.execute(
                    update(builds).where(builds.c.request_id == request.request_id).values(**values)
                )
                if result.rowcount == 0:
                    session.execute(insert(builds).values(**row))
        except SQLAlchemyError as exc:
            raise StorageError(f"cannot persist build record {request.request_id}: {exc}") from exc

    def load_all(self) -> list[BuildRequest]:
        try:
            with self._SessionLocal() as session:
                rows = session.execute(select(builds).order_by(builds.c.submitted_at)).mappings().all()
        except SQLAlchemyError as exc:
            raise StorageError(f"cannot read build records: {exc}") from exc

        loaded: list[BuildRequest] = []
        for row in rows:
            try:
                loaded.append(_from_row(row))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("skipping unreadable build record %s: %s", row["request_id"], exc)
        return loaded

    def dispose(self) -> None:
        bind = self._SessionLocal.kw.get("bind")
        if bind is not None:
            bind.dispose()


__all__ = ["RecordStore", "build_engine", "build_sessionmaker"]
