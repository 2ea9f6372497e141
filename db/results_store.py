from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

import psycopg

from realtime_results import CHANGE_ADDED, CHANGE_MODIFIED, DocumentChange
from scanner_errors import TransportError

from .config import connect

logger = logging.getLogger(__name__)

FETCH_LIMIT = 500
LOOKBACK_REVS = 1000
RESYNC_EVERY = 30


def _as_dict(data: Any) -> Dict[str, Any]:
    if isinstance(data, dict):
        return data
    if isinstance(data, (str, bytes)):
        try:
            obj = json.loads(data)
        except ValueError:
            logger.warning("Unreadable JSON document: %.80r", data)
            return {}
        return obj if isinstance(obj, dict) else {}
    return {}


def create_scan_job(
    conn,
    *,
    job_id: str,
    region: Optional[dict],
    total_points: int,
    search_query: Optional[str] = None,
    status: str = "processing",
) -> None:
    sql = (
        "INSERT INTO scan_jobs (id, status, search_query, region, total_points)\n"
        "VALUES (%s, %s, %s::jsonb, %s::jsonb, %s)\n"
        "ON CONFLICT (id) DO UPDATE SET status = EXCLUDED.status;"
    )
    query_json = json.dumps({"text": search_query}) if search_query else None
    with conn.cursor() as cur:
        cur.execute(sql, (job_id, status, query_json, json.dumps(region or {}), int(total_points)))


def upsert_scan_point(conn, *, job_id: str, pano_id: str, data: Dict[str, Any]) -> int:
    """Insert or replace one point document; returns its new rev."""
    sql = (
        "INSERT INTO scan_points (job_id, pano_id, data)\n"
        "VALUES (%s, %s, %s::jsonb)\n"
        "ON CONFLICT (job_id, pano_id) DO UPDATE SET data = EXCLUDED.data,\n"
        "    updated_at = now(), rev = nextval('scan_points_rev_seq')\n"
        "RETURNING rev;"
    )
    with conn.cursor() as cur:
        cur.execute(sql, (job_id, pano_id, json.dumps(data, ensure_ascii=False)))
        return int(cur.fetchone()[0])


def fetch_changes(conn, job_id: str, after_rev: int, limit: int = FETCH_LIMIT) -> List[Tuple[int, str, Any]]:
    sql = (
        "SELECT rev, pano_id, data FROM scan_points\n"
        "WHERE job_id = %s AND rev > %s\n"
        "ORDER BY rev\n"
        "LIMIT %s;"
    )
    with conn.cursor() as cur:
        cur.execute(sql, (job_id, after_rev, limit))
        return list(cur.fetchall())


class PostgresDocumentStore:
    """Document store over the scan_points table.

    changes(job_id) polls for rows whose rev moved past the last one seen and
    yields them as one batch of DocumentChange per poll.

    rev comes from a sequence, so a writer that commits late can land a row
    below revs already read. Each poll therefore re-reads the last
    lookback_revs revs, and every resync_every polls the whole job is re-read.
    A row is delivered only when its rev is newer than the last rev delivered
    for that panorama.
    """

    def __init__(
        self,
        dsn: Optional[str] = None,
        *,
        poll_interval_s: float = 2.0,
        lookback_revs: int = LOOKBACK_REVS,
        resync_every: int = RESYNC_EVERY,
        connect_fn: Optional[Callable[[], Any]] = None,
    ) -> None:
        self.dsn = dsn
        self.poll_interval_s = poll_interval_s
        self.lookback_revs = max(0, lookback_revs)
        self.resync_every = max(1, resync_every)
        self._connect_fn = connect_fn or (lambda: connect(self.dsn))

    def _open(self):
        try:
            return self._connect_fn()
        except psycopg.Error as e:
            raise TransportError(f"Cannot connect to result store: {e}") from e

    async def _read_from(self, conn, job_id: str, after_rev: int) -> List[Tuple[int, str, Any]]:
        """Every row past after_rev, paging through full pages."""
        rows: List[Tuple[int, str, Any]] = []
        while True:
            try:
                page = await asyncio.to_thread(fetch_changes, conn, job_id, after_rev)
            except psycopg.Error as e:
                raise TransportError(f"Result poll failed for job {job_id}: {e}") from e
            rows.extend(page)
            if len(page) < FETCH_LIMIT:
                return rows
            after_rev = int(page[-1][0])

    async def changes(self, job_id: str) -> AsyncIterator[List[DocumentChange]]:
        conn = await asyncio.to_thread(self._open)
        delivered: Dict[str, int] = {}
        cursor = 0
        polls = 0
        try:
            while True:
                if polls % self.resync_every == 0:
                    start = 0
                else:
                    start = max(0, cursor - self.lookback_revs)
                polls += 1
                rows = await self._read_from(conn, job_id, start)
                batch: List[DocumentChange] = []
                for rev, pano_id, data in rows:
                    rev = int(rev)
                    cursor = max(cursor, rev)
                    last = delivered.get(pano_id)
                    if last is not None and rev <= last:
                        continue
                    delivered[pano_id] = rev
                    change_type = CHANGE_ADDED if last is None else CHANGE_MODIFIED
                    batch.append(DocumentChange(doc_id=pano_id, change_type=change_type, data=_as_dict(data)))
                if batch:
                    logger.debug("job %s: %d changes, cursor at rev %d", job_id, len(batch), cursor)
                    yield batch
                await asyncio.sleep(self.poll_interval_s)
        finally:
            try:
                conn.close()
            except psycopg.Error as e:
                logger.warning("Closing result store connection failed: %s", e)
