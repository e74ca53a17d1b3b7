from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

from watchtower_monitor.models import WRITABLE_FIELDS, ServerRecord, ServerStatus
from watchtower_monitor.settings import StoreSettings


LOGGER = logging.getLogger("watchtower.db")

SCHEMA_VERSION = 1


def _utc_ts() -> float:
    return float(time.time())


def _uuid() -> str:
    return str(uuid.uuid4())


def _ts_to_dt(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


def _dt_to_ts(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return float(value.timestamp())


def _connect(settings: StoreSettings) -> sqlite3.Connection:
    p = settings.db_path
    Path(p).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(p, timeout=settings.timeout_seconds, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout = {int(settings.timeout_seconds * 1000)};")
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except sqlite3.DatabaseError:
        LOGGER.debug("WAL journal mode unavailable path=%s", p)
    return conn


def ensure_schema(settings: StoreSettings) -> None:
    conn = _connect(settings)
    try:
        _ensure_schema_conn(conn)
    finally:
        conn.close()


def _ensure_schema_conn(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);")
    row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
    cur = int(row["v"]) if row and row["v"] else 0
    if cur >= SCHEMA_VERSION:
        return

    if cur == 0:
        _apply_v1(conn)
        conn.execute("INSERT OR REPLACE INTO schema_meta (k, v) VALUES ('version', ?)", (str(SCHEMA_VERSION),))
        return

    raise RuntimeError(f"Unsupported schema version upgrade path cur={cur} target={SCHEMA_VERSION}")


def _apply_v1(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS servers (
          id TEXT PRIMARY KEY,
          user_email TEXT NOT NULL,
          url TEXT NOT NULL,
          status TEXT NOT NULL DEFAULT 'checking', -- online|offline|checking
          response_time INTEGER NOT NULL DEFAULT 0,
          last_check_ts REAL,
          consecutive_failures INTEGER NOT NULL DEFAULT 0,
          alert_enabled INTEGER NOT NULL DEFAULT 1,
          alert_sent INTEGER NOT NULL DEFAULT 0,
          created_at_ts REAL NOT NULL,
          updated_at_ts REAL NOT NULL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_servers_user_email ON servers(user_email);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_servers_created ON servers(created_at_ts, id);")


def _row_to_server(row: sqlite3.Row) -> ServerRecord:
    return ServerRecord(
        id=str(row["id"]),
        user_email=str(row["user_email"]),
        url=str(row["url"]),
        status=ServerStatus(str(row["status"])),
        response_time=int(row["response_time"] or 0),
        last_check=_ts_to_dt(row["last_check_ts"]),
        consecutive_failures=int(row["consecutive_failures"] or 0),
        alert_enabled=bool(row["alert_enabled"]),
        alert_sent=bool(row["alert_sent"]),
        created_at=_ts_to_dt(row["created_at_ts"]),
        updated_at=_ts_to_dt(row["updated_at_ts"]),
    )


def _field_to_column(name: str, value: Any) -> tuple[str, Any]:
    if name == "status":
        return "status", ServerStatus(value).value
    if name == "response_time":
        return "response_time", int(value)
    if name == "last_check":
        return "last_check_ts", _dt_to_ts(value) if value is not None else None
    if name == "consecutive_failures":
        return "consecutive_failures", max(0, int(value))
    if name == "alert_sent":
        return "alert_sent", 1 if value else 0
    raise ValueError(f"Field is not writable: {name!r}")


def insert_server(
    settings: StoreSettings,
    *,
    user_email: str,
    url: str,
    alert_enabled: bool = True,
    server_id: str | None = None,
) -> ServerRecord:
    email = str(user_email or "").strip().lower()
    target = str(url or "").strip()
    if not email:
        raise ValueError("user_email is required")
    if not target:
        raise ValueError("url is required")

    conn = _connect(settings)
    try:
        _ensure_schema_conn(conn)
        now = _utc_ts()
        sid = str(server_id).strip() if server_id else _uuid()
        conn.execute(
            """
            INSERT INTO servers (
              id, user_email, url, status, response_time, last_check_ts, consecutive_failures,
              alert_enabled, alert_sent, created_at_ts, updated_at_ts
            ) VALUES (?, ?, ?, 'checking', 0, ?, 0, ?, 0, ?, ?)
            """,
            (sid, email, target, now, 1 if alert_enabled else 0, now, now),
        )
        row = conn.execute("SELECT * FROM servers WHERE id=?", (sid,)).fetchone()
        return _row_to_server(row)
    finally:
        conn.close()


def get_server(settings: StoreSettings, server_id: str) -> ServerRecord | None:
    conn = _connect(settings)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute("SELECT * FROM servers WHERE id=?", (server_id,)).fetchone()
        return _row_to_server(row) if row else None
    finally:
        conn.close()


def count_servers(settings: StoreSettings) -> int:
    conn = _connect(settings)
    try:
        _ensure_schema_conn(conn)
        row = conn.execute("SELECT COUNT(*) AS n FROM servers").fetchone()
        return int(row["n"] or 0)
    finally:
        conn.close()


def fetch_servers_page(settings: StoreSettings, *, offset: int, limit: int) -> list[ServerRecord]:
    conn = _connect(settings)
    try:
        _ensure_schema_conn(conn)
        rows = conn.execute(
            "SELECT * FROM servers ORDER BY created_at_ts ASC, id ASC LIMIT ? OFFSET ?",
            (max(0, int(limit)), max(0, int(offset))),
        ).fetchall()
        return [_row_to_server(r) for r in rows]
    finally:
        conn.close()


def update_server(settings: StoreSettings, server_id: str, fields: Mapping[str, Any]) -> bool:
    unknown = set(fields) - WRITABLE_FIELDS
    if unknown:
        raise ValueError(f"Field(s) are not writable: {sorted(unknown)}")
    if not fields:
        return False

    assignments: list[str] = []
    params: list[Any] = []
    for name, value in fields.items():
        column, db_value = _field_to_column(name, value)
        assignments.append(f"{column}=?")
        params.append(db_value)
    assignments.append("updated_at_ts=?")
    params.append(_utc_ts())
    params.append(server_id)

    conn = _connect(settings)
    try:
        _ensure_schema_conn(conn)
        cur = conn.execute(f"UPDATE servers SET {', '.join(assignments)} WHERE id=?", tuple(params))
        return int(cur.rowcount or 0) > 0
    finally:
        conn.close()


class SqliteServerStore:
    """
    Async facade over the SQLite helpers. Each call opens its own connection in a
    worker thread; the store itself holds no connection between calls.
    """

    def __init__(self, settings: StoreSettings):
        self.settings = settings

    async def open(self) -> None:
        await asyncio.to_thread(ensure_schema, self.settings)
        LOGGER.info("Store ready path=%s", self.settings.db_path)

    async def close(self) -> None:
        """No-op: connections are opened and closed per call."""
        return None

    async def __aenter__(self) -> SqliteServerStore:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def count(self) -> int:
        return await asyncio.to_thread(count_servers, self.settings)

    async def fetch_page(self, offset: int, limit: int) -> list[ServerRecord]:
        return await asyncio.to_thread(fetch_servers_page, self.settings, offset=offset, limit=limit)

    async def update_by_id(self, server_id: str, fields: Mapping[str, Any]) -> bool:
        return await asyncio.to_thread(update_server, self.settings, server_id, dict(fields))

    async def get(self, server_id: str) -> ServerRecord | None:
        return await asyncio.to_thread(get_server, self.settings, server_id)

    async def insert(self, *, user_email: str, url: str, alert_enabled: bool = True) -> ServerRecord:
        return await asyncio.to_thread(
            insert_server, self.settings, user_email=user_email, url=url, alert_enabled=alert_enabled
        )
