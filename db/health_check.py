#!/usr/bin/env python3
"""Quick health check for the scan result store.

Prints the tables present, verifies the expected ones, and reports point counts
per job.
"""

from __future__ import annotations

from typing import List

from .config import connect

EXPECTED_TABLES = ["scan_jobs", "scan_points"]


def missing_tables(tables: List[str]) -> List[str]:
    return [t for t in EXPECTED_TABLES if t not in tables]


def main():
    conn = connect()
    try:
        with conn.cursor() as cur:
            print("Tables present:")
            cur.execute(
                """
                SELECT tablename
                FROM pg_tables
                WHERE schemaname='public'
                ORDER BY tablename
                """
            )
            tables = [r[0] for r in cur.fetchall()]
            for t in tables:
                print(" -", t)

            missing = missing_tables(tables)
            if missing:
                print("\nMissing tables:", ", ".join(missing))
                return
            print("\nAll expected tables are present.")

            cur.execute(
                """
                SELECT j.id, j.status, j.total_points, count(p.pano_id)
                FROM scan_jobs j LEFT JOIN scan_points p ON p.job_id = j.id
                GROUP BY j.id ORDER BY j.created_at DESC LIMIT 10
                """
            )
            rows = cur.fetchall()
            if rows:
                print("\nRecent jobs:")
                for job_id, status, total, reported in rows:
                    print(f" - {job_id}: {status} ({reported}/{total} points reported)")
    finally:
        conn.close()


if __name__ == "__main__":
    main()
