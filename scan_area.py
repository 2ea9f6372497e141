#!/usr/bin/env python3
"""
Headless scan: discover every street-level panorama inside one or more
rectangles, optionally submit them as an analysis job and stream the results.

Examples:
  python scan_area.py --bbox 49.2840,49.2800,-122.8850,-122.8900 --out panos.jsonl
  python scan_area.py --kml area.kml --submit --query "fire hydrant" --follow
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import List, Optional

from db.results_store import PostgresDocumentStore
from geom.grid_math import Bounds, cell_size_m
from job_client import JOB_COMPLETED, CallableJobService
from kml_utils import bbox_area_sqmi, regions_from_kml
from scan_session import ScanSession
from scanner_config import ScannerSettings, configure_logging
from scanner_errors import ScannerError
from streetview import StreetViewMetadataClient

logger = logging.getLogger("scan_area")


def parse_bbox(text: str) -> Bounds:
    parts = [p.strip() for p in text.split(",")]
    if len(parts) != 4:
        raise argparse.ArgumentTypeError("bbox must be north,south,east,west")
    try:
        north, south, east, west = (float(p) for p in parts)
    except ValueError:
        raise argparse.ArgumentTypeError(f"bbox values must be numbers: {text}")
    if north < south or east < west:
        raise argparse.ArgumentTypeError(f"inverted bbox: {text}")
    return Bounds(north=north, south=south, east=east, west=west)


def collect_regions(args) -> List[Bounds]:
    boxes: List[Bounds] = list(args.bbox or [])
    if args.kml:
        boxes.extend(regions_from_kml(args.kml, merge=args.merge_kml))
    return boxes


def write_jsonl(path: str, rows) -> int:
    os.makedirs(os.path.dirname(os.path.abspath(path)) or ".", exist_ok=True)
    n = 0
    with open(path, "w", encoding="utf-8") as f:
        for row in rows:
            f.write(json.dumps(row, ensure_ascii=False) + "\n")
            n += 1
    return n


def _print_points(points) -> None:
    for p in points:
        print(json.dumps(p.to_dict(), ensure_ascii=False), flush=True)


async def run(args, settings: ScannerSettings, boxes: List[Bounds]) -> int:
    provider = StreetViewMetadataClient(settings.google_maps_api_key, timeout=settings.lookup_timeout_s)
    job_service = None
    store = None
    if args.submit:
        job_service = CallableJobService(settings.job_service_url, settings.job_service_token)
    if args.follow:
        store = PostgresDocumentStore(args.db_dsn, poll_interval_s=settings.results_poll_interval_s)

    session = ScanSession(provider, job_service, store, settings=settings)
    try:
        for b in boxes:
            region = session.start_scan(b)
            ns, _ = cell_size_m(b.center[0], b.lat_span / region.grid.rows)
            logger.info("%s: %.3f sq mi, %dx%d grid (~%.0f m cells)",
                        region.label, bbox_area_sqmi(b), region.grid.rows, region.grid.cols, ns)
        await session.wait_for_scans()
        logger.info("Discovered %d panoramas", len(session.discovered))

        if args.out:
            n = write_jsonl(args.out, (p.to_dict() for p in session.discovered.values()))
            logger.info("Wrote %d panoramas to %s", n, args.out)

        if not args.submit:
            return 0
        job_id = await session.submit_job(args.query)
        print(json.dumps({"jobId": job_id, "points": len(session.discovered)}), flush=True)

        if not args.follow:
            session.results.unsubscribe()
            return 0
        session.results.add_listener(_print_points)
        while session.results.active:
            job = session.jobs.active
            if job is not None and job.status == JOB_COMPLETED:
                logger.info("Job %s finished", job_id)
                break
            await asyncio.sleep(1.0)
        if session.results.last_error is not None:
            logger.error("%s", session.results.last_error)
            return 1
        return 0
    finally:
        await session.close()


def main(argv: Optional[List[str]] = None) -> None:
    ap = argparse.ArgumentParser(description="Discover street-level panoramas inside rectangles and submit them for analysis.")
    ap.add_argument("--bbox", type=parse_bbox, action="append", help="north,south,east,west (repeatable)")
    ap.add_argument("--kml", type=str, default=None, help="KML file; each polygon's bounding box becomes a region")
    ap.add_argument("--merge_kml", action="store_true", help="Use one bounding box over all KML polygons.")
    ap.add_argument("--out", type=str, default=None, help="JSONL of discovered panoramas.")
    ap.add_argument("--submit", action="store_true", help="Submit the discovered panoramas as one analysis job.")
    ap.add_argument("--query", type=str, default=None, help="Search text sent with the job.")
    ap.add_argument("--follow", action="store_true", help="Stream normalized results to stdout until the job finishes.")
    ap.add_argument("--db_dsn", type=str, default=None, help="Optional DSN override for the result store.")
    ap.add_argument("--batch_size", type=int, default=None, help="Concurrent lookups per batch.")
    ap.add_argument("--radius", type=int, default=None, help="Lookup radius in meters.")
    ap.add_argument("--events_log", type=str, default=None, help="Optional JSONL to log scan events.")
    ap.add_argument("--debug", action="store_true", help="Enable verbose debug logging to console.")
    args = ap.parse_args(argv)

    configure_logging(args.debug)

    if args.follow and not args.submit:
        ap.error("--follow requires --submit")

    try:
        settings = ScannerSettings.from_env()
        if args.batch_size is not None:
            settings.batch_size = args.batch_size
        if args.radius is not None:
            settings.radius_m = args.radius
        if args.events_log:
            settings.events_log = args.events_log
        settings.validate()
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    if not settings.google_maps_api_key:
        print("Missing GOOGLE_MAPS_API_KEY in environment", file=sys.stderr)
        sys.exit(1)
    if args.submit and not settings.job_service_url:
        print("Missing JOB_SERVICE_URL in environment", file=sys.stderr)
        sys.exit(1)

    boxes = collect_regions(args)
    if not boxes:
        ap.error("at least one --bbox or a --kml with polygons is required")

    try:
        code = asyncio.run(run(args, settings, boxes))
    except KeyboardInterrupt:
        code = 130
    except ScannerError as e:
        print(f"Error: {e}", file=sys.stderr)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
