"""
Postgres result store against a scripted fake connection
"""

import json

import psycopg
import pytest

from db import results_store
from db.config import build_dsn
from db.health_check import missing_tables
from db.results_store import PostgresDocumentStore, _as_dict, create_scan_job, upsert_scan_point
from scanner_errors import TransportError


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.conn.executed.append((sql, params))
        if self.conn.fail_on_execute is not None:
            raise self.conn.fail_on_execute

    def fetchall(self):
        return self.conn.pages.pop(0) if self.conn.pages else []

    def fetchone(self):
        return (self.conn.next_rev,)


class FakeConnection:
    def __init__(self, pages=None, fail_on_execute=None):
        self.pages = list(pages or [])
        self.fail_on_execute = fail_on_execute
        self.executed = []
        self.next_rev = 7
        self.closed = False

    def cursor(self):
        return FakeCursor(self)

    def close(self):
        self.closed = True


class TestWrites:

    def test_upsert_returns_rev_and_sends_json(self):
        conn = FakeConnection()
        rev = upsert_scan_point(conn, job_id="j1", pano_id="p1", data={"status": "done"})
        assert rev == 7
        sql, params = conn.executed[0]
        assert "ON CONFLICT (job_id, pano_id)" in sql
        assert params[:2] == ("j1", "p1")
        assert json.loads(params[2]) == {"status": "done"}

    def test_create_job_wraps_query_text(self):
        conn = FakeConnection()
        create_scan_job(conn, job_id="j1", region={"north": 1}, total_points=3, search_query="bench")
        _, params = conn.executed[0]
        assert params[0] == "j1"
        assert json.loads(params[2]) == {"text": "bench"}
        assert params[4] == 3


class TestChanges:

    @pytest.mark.asyncio
    async def test_first_sight_added_then_modified(self):
        conn = FakeConnection(pages=[
            [(1, "p1", {"status": "analyzing"}), (2, "p2", '{"status": "ready"}')],
            [(3, "p1", {"status": "done"})],
        ])
        store = PostgresDocumentStore(connect_fn=lambda: conn, poll_interval_s=0, lookback_revs=0, resync_every=100)
        stream = store.changes("j1")
        first = await stream.__anext__()
        second = await stream.__anext__()
        await stream.aclose()
        assert [(c.doc_id, c.change_type) for c in first] == [("p1", "added"), ("p2", "added")]
        assert first[1].data == {"status": "ready"}
        assert [(c.doc_id, c.change_type) for c in second] == [("p1", "modified")]
        # cursor advances past the highest rev seen
        assert conn.executed[1][1] == ("j1", 2, 500)
        assert conn.closed

    @pytest.mark.asyncio
    async def test_late_commit_below_cursor_is_delivered(self):
        # rev 11 commits before rev 10; the lookback re-read picks up rev 10
        conn = FakeConnection(pages=[
            [(11, "p2", {"status": "done"})],
            [(10, "p1", {"status": "done"}), (11, "p2", {"status": "done"})],
        ])
        store = PostgresDocumentStore(connect_fn=lambda: conn, poll_interval_s=0, lookback_revs=50)
        stream = store.changes("j1")
        first = await stream.__anext__()
        second = await stream.__anext__()
        await stream.aclose()
        assert [c.doc_id for c in first] == ["p2"]
        assert [(c.doc_id, c.change_type) for c in second] == [("p1", "added")]
        assert [params[1] for _, params in conn.executed] == [0, 0]

    @pytest.mark.asyncio
    async def test_periodic_resync_recovers_rows_outside_lookback(self):
        conn = FakeConnection(pages=[
            [(11, "p2", {"status": "done"})],
            [],
            [(10, "p1", {"status": "analyzing"}), (11, "p2", {"status": "done"})],
        ])
        store = PostgresDocumentStore(connect_fn=lambda: conn, poll_interval_s=0, lookback_revs=0, resync_every=2)
        stream = store.changes("j1")
        await stream.__anext__()
        second = await stream.__anext__()
        await stream.aclose()
        assert [(c.doc_id, c.change_type) for c in second] == [("p1", "added")]
        assert [params[1] for _, params in conn.executed] == [0, 11, 0]

    @pytest.mark.asyncio
    async def test_full_pages_are_read_in_one_poll(self, monkeypatch):
        monkeypatch.setattr(results_store, "FETCH_LIMIT", 2)
        conn = FakeConnection(pages=[
            [(1, "a", {}), (2, "b", {})],
            [(3, "c", {})],
        ])
        store = PostgresDocumentStore(connect_fn=lambda: conn, poll_interval_s=0)
        stream = store.changes("j1")
        batch = await stream.__anext__()
        await stream.aclose()
        assert [c.doc_id for c in batch] == ["a", "b", "c"]
        assert [params[1] for _, params in conn.executed] == [0, 2]

    @pytest.mark.asyncio
    async def test_connect_failure_is_transport_error(self):
        def refuse():
            raise psycopg.OperationalError("connection refused")

        store = PostgresDocumentStore(connect_fn=refuse)
        with pytest.raises(TransportError):
            await store.changes("j1").__anext__()

    @pytest.mark.asyncio
    async def test_poll_failure_is_transport_error(self):
        conn = FakeConnection(fail_on_execute=psycopg.OperationalError("server closed"))
        store = PostgresDocumentStore(connect_fn=lambda: conn)
        with pytest.raises(TransportError):
            await store.changes("j1").__anext__()
        assert conn.closed


def test_as_dict_tolerates_bad_json():
    assert _as_dict("{not json") == {}
    assert _as_dict("[1, 2]") == {}
    assert _as_dict(None) == {}


def test_build_dsn_strips_quotes(monkeypatch):
    monkeypatch.setenv("DB_PASS", "'s3cret'")
    monkeypatch.delenv("DB_DIALECT", raising=False)
    dsn = build_dsn(host="db.local", user="scanner", dbname="scans")
    assert "password=s3cret" in dsn
    assert "host=db.local" in dsn and "dbname=scans" in dsn


def test_missing_tables():
    assert missing_tables(["scan_jobs"]) == ["scan_points"]
    assert missing_tables(["scan_points", "scan_jobs", "other"]) == []
