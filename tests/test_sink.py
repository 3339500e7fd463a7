"""Tests for result sinks."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from codejudge.models import (
    CaseResult,
    ExecutionOutcome,
    Submission,
    SubmissionRecord,
    SubmissionStatus,
    TestCase,
    Verdict,
    VerdictStatus,
)
from codejudge.sink import (
    HttpResultSink,
    InMemoryResultSink,
    QueryableSink,
    ResultSink,
    SqliteResultSink,
)


def _record(sid: str, user: str = "u1", challenge: str = "c1", minutes: int = 0) -> SubmissionRecord:
    submitted = datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(minutes=minutes)
    sub = Submission(challenge, user, "python", "print(5)", id=sid, submitted_at=submitted)
    sub = sub.advance(SubmissionStatus.RUNNING)
    outcome = ExecutionOutcome(stdout="5\n", stderr="", exit_code=0, wall_time_ms=12, peak_memory_kb=900)
    verdict = Verdict.from_cases([CaseResult(0, TestCase("", "5"), outcome, VerdictStatus.SUCCESS)], 1)
    return SubmissionRecord(sub.advance(SubmissionStatus.SUCCESS, verdict))


def test_protocols():
    assert isinstance(InMemoryResultSink(), QueryableSink)
    assert isinstance(HttpResultSink("http://x", client=httpx.Client()), ResultSink)
    assert not isinstance(HttpResultSink("http://x", client=httpx.Client()), QueryableSink)


class TestInMemory:
    def test_emit_and_get(self):
        sink = InMemoryResultSink()
        sink.emit(_record("a"))
        assert sink.get("a").verdict.status is VerdictStatus.SUCCESS
        assert sink.get("b") is None

    def test_list_for_user_newest_first(self):
        sink = InMemoryResultSink()
        sink.emit(_record("a", minutes=1))
        sink.emit(_record("b", minutes=5))
        sink.emit(_record("c", challenge="c2", minutes=3))
        sink.emit(_record("d", user="u2"))
        assert [r.submission.id for r in sink.list_for_user("u1")] == ["b", "c", "a"]
        assert [r.submission.id for r in sink.list_for_user("u1", "c1")] == ["b", "a"]


class TestSqlite:
    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "db" / "judge.db"
        SqliteResultSink(path).emit(_record("a"))
        record = SqliteResultSink(path).get("a")
        assert record.submission.status is SubmissionStatus.SUCCESS
        assert record.verdict.passed_count == 1
        assert record.verdict.per_case_results[0].outcome.stdout == "5\n"

    def test_columns(self, tmp_path):
        path = tmp_path / "judge.db"
        SqliteResultSink(path).emit(_record("a"))
        conn = sqlite3.connect(str(path))
        try:
            row = conn.execute(
                "SELECT status, passed_count, total_count, execution_time_ms, code FROM code_submissions"
            ).fetchone()
        finally:
            conn.close()
        assert row == ("SUCCESS", 1, 1, 12, "print(5)")

    def test_cancelled_record_without_verdict(self, tmp_path):
        sink = SqliteResultSink(tmp_path / "judge.db")
        sub = Submission("c1", "u1", "python", "x", id="z").advance(SubmissionStatus.CANCELLED)
        sink.emit(SubmissionRecord(sub))
        record = sink.get("z")
        assert record.submission.status is SubmissionStatus.CANCELLED
        assert record.verdict is None

    def test_list_for_user(self, tmp_path):
        sink = SqliteResultSink(tmp_path / "judge.db")
        sink.emit(_record("a", minutes=1))
        sink.emit(_record("b", minutes=2, challenge="c2"))
        assert [r.submission.id for r in sink.list_for_user("u1")] == ["b", "a"]
        assert [r.submission.id for r in sink.list_for_user("u1", "c2")] == ["b"]
        assert sink.list_for_user("nobody") == []

    def test_init_is_idempotent(self, tmp_path):
        path = tmp_path / "judge.db"
        SqliteResultSink(path)
        SqliteResultSink(path).emit(_record("a"))
        assert SqliteResultSink(path).get("a") is not None


class TestHttp:
    def test_posts_record(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201)

        sink = HttpResultSink(
            "http://results.test/api/submissions",
            api_token="tok",
            client=httpx.Client(transport=httpx.MockTransport(handler)),
        )
        sink.emit(_record("a"))
        assert len(seen) == 1
        assert seen[0].method == "POST"
        assert seen[0].headers["Authorization"] == "Bearer tok"
        body = json.loads(seen[0].content)
        assert body["submission"]["id"] == "a"
        assert body["submission"]["verdict"]["status"] == "SUCCESS"

    def test_server_error_raises(self):
        sink = HttpResultSink(
            "http://results.test/hook",
            client=httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(500))),
        )
        with pytest.raises(httpx.HTTPStatusError):
            sink.emit(_record("a"))
