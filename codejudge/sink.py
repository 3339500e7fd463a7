"""Result sinks: where terminal submission records are handed off."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

import httpx

from codejudge.models import SubmissionRecord

logger = logging.getLogger(__name__)


@runtime_checkable
class ResultSink(Protocol):
    """Receives exactly one record per submission that reaches a terminal state."""

    def emit(self, record: SubmissionRecord) -> None: ...


@runtime_checkable
class QueryableSink(ResultSink, Protocol):
    """A sink that can also answer queries for finished submissions."""

    def get(self, submission_id: str) -> SubmissionRecord | None: ...

    def list_for_user(
        self, user_id: str, challenge_id: str | None = None
    ) -> list[SubmissionRecord]: ...


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemoryResultSink:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, SubmissionRecord] = {}

    def emit(self, record: SubmissionRecord) -> None:
        with self._lock:
            self._records[record.submission.id] = record

    def get(self, submission_id: str) -> SubmissionRecord | None:
        with self._lock:
            return self._records.get(submission_id)

    def list_for_user(self, user_id: str, challenge_id: str | None = None) -> list[SubmissionRecord]:
        with self._lock:
            records = [
                r
                for r in self._records.values()
                if r.submission.user_id == user_id
                and (challenge_id is None or r.submission.challenge_id == challenge_id)
            ]
        return sorted(records, key=lambda r: r.submission.submitted_at, reverse=True)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


# ---------------------------------------------------------------------------
# SQLite
# ---------------------------------------------------------------------------

SCHEMA = """
CREATE TABLE IF NOT EXISTS code_submissions (
    id TEXT PRIMARY KEY,
    challenge_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    language TEXT NOT NULL,
    code TEXT NOT NULL,
    status TEXT NOT NULL,
    passed_count INTEGER NOT NULL DEFAULT 0,
    total_count INTEGER NOT NULL DEFAULT 0,
    execution_time_ms INTEGER NOT NULL DEFAULT 0,
    peak_memory_kb INTEGER NOT NULL DEFAULT 0,
    record_json TEXT NOT NULL,
    submitted_at TEXT NOT NULL,
    completed_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_code_submissions_user
    ON code_submissions (user_id, challenge_id);
"""

# Migrations for databases created before these columns existed
MIGRATIONS = [
    "ALTER TABLE code_submissions ADD COLUMN peak_memory_kb INTEGER NOT NULL DEFAULT 0",
]


class SqliteResultSink:
    """Persists records to a ``code_submissions`` table, one connection per call."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self.init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.path))
        conn.row_factory = sqlite3.Row
        return conn

    def init_db(self) -> None:
        """Create tables if they don't exist, then run migrations for new columns."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            conn = self._connect()
            try:
                conn.executescript(SCHEMA)
                conn.commit()
                for sql in MIGRATIONS:
                    try:
                        conn.execute(sql)
                        conn.commit()
                    except sqlite3.OperationalError:
                        pass  # Column already exists
            finally:
                conn.close()

    def emit(self, record: SubmissionRecord) -> None:
        sub = record.submission
        verdict = record.verdict
        row = (
            sub.id,
            sub.challenge_id,
            sub.user_id,
            sub.language,
            sub.source_code,
            sub.status.value,
            verdict.passed_count if verdict else 0,
            verdict.total_count if verdict else 0,
            verdict.total_time_ms if verdict else 0,
            verdict.peak_memory_kb if verdict else 0,
            json.dumps(record.to_dict()),
            sub.submitted_at.isoformat(),
            record.completed_at.isoformat(),
        )
        with self._lock:
            conn = self._connect()
            try:
                conn.execute(
                    "INSERT OR REPLACE INTO code_submissions"
                    " (id, challenge_id, user_id, language, code, status, passed_count,"
                    "  total_count, execution_time_ms, peak_memory_kb, record_json,"
                    "  submitted_at, completed_at)"
                    " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    row,
                )
                conn.commit()
            finally:
                conn.close()

    def get(self, submission_id: str) -> SubmissionRecord | None:
        with self._lock:
            conn = self._connect()
            try:
                row = conn.execute(
                    "SELECT record_json FROM code_submissions WHERE id = ?", (submission_id,)
                ).fetchone()
            finally:
                conn.close()
        if row is None:
            return None
        return SubmissionRecord.from_dict(json.loads(row["record_json"]))

    def list_for_user(self, user_id: str, challenge_id: str | None = None) -> list[SubmissionRecord]:
        sql = "SELECT record_json FROM code_submissions WHERE user_id = ?"
        params: list[str] = [user_id]
        if challenge_id is not None:
            sql += " AND challenge_id = ?"
            params.append(challenge_id)
        sql += " ORDER BY submitted_at DESC"
        with self._lock:
            conn = self._connect()
            try:
                rows = conn.execute(sql, params).fetchall()
            finally:
                conn.close()
        return [SubmissionRecord.from_dict(json.loads(r["record_json"])) for r in rows]


# ---------------------------------------------------------------------------
# HTTP webhook
# ---------------------------------------------------------------------------


class HttpResultSink:
    """POSTs each record as JSON to a webhook (e.g. the platform's results API)."""

    def __init__(
        self,
        url: str,
        api_token: str = "",
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.url = url
        self._headers: dict[str, str] = {"Content-Type": "application/json"}
        if api_token:
            self._headers["Authorization"] = f"Bearer {api_token}"
        self._client = client or httpx.Client(timeout=timeout)

    def emit(self, record: SubmissionRecord) -> None:
        resp = self._client.post(self.url, json=record.to_dict(), headers=self._headers)
        resp.raise_for_status()
        logger.debug("Delivered record %s to %s", record.submission.id, self.url)

    def close(self) -> None:
        self._client.close()
