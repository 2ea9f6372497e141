import argparse
import asyncio
import json
import logging
import os
import threading
import time
import xml.etree.ElementTree as ET
from typing import Callable, List, Optional

from flask import Flask, Response, jsonify, request, stream_with_context

from db.results_store import PostgresDocumentStore
from detection_types import describe_point
from geom.grid_math import Bounds, bounds_from_corners
from job_client import CallableJobService
from kml_utils import regions_from_kml
from scan_session import ScanSession
from scanner_config import ScannerSettings, configure_logging
from scanner_errors import StateGuardViolation, TransportError
from streetview import StreetViewMetadataClient

logger = logging.getLogger(__name__)

CALL_TIMEOUT_S = 30.0
SUBMIT_TIMEOUT_S = 120.0

app = Flask(__name__)


# Reduce noisy request logs for status polling endpoints to keep console readable.
def _configure_request_logging():
    wl = logging.getLogger('werkzeug')
    if os.getenv('REVIEW_SILENCE_POLL_LOGS', '1') == '1':
        class _StatusEndpointFilter(logging.Filter):
            def filter(self, record):
                msg = record.getMessage()
                if ('/scan/status' in msg) or ('/map/features' in msg) or ('/scan/events/stream' in msg):
                    return 0
                return 1
        wl.addFilter(_StatusEndpointFilter())
    # Optionally suppress all werkzeug request logs below WARNING
    if os.getenv('REVIEW_SILENCE_REQUEST_LOGS', '0') == '1':
        wl.setLevel(logging.WARNING)
        wl.propagate = False


_configure_request_logging()


class LoopRunner:
    """Owns the session's event loop on a daemon thread.

    Request threads never touch session state directly; every call is shipped to
    the loop and its result (or exception) is handed back.
    """

    def __init__(self) -> None:
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self.loop.run_forever, name="scan-loop", daemon=True)
        self.thread.start()

    def run(self, coro, timeout: float = CALL_TIMEOUT_S):
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout)

    def call(self, fn: Callable, *args, timeout: float = CALL_TIMEOUT_S):
        async def _invoke():
            return fn(*args)
        return self.run(_invoke(), timeout)

    def stop(self) -> None:
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=5)


STATE = {"runner": None, "session": None}
STATE_LOCK = threading.Lock()


def default_session(settings: ScannerSettings) -> ScanSession:
    provider = StreetViewMetadataClient(settings.google_maps_api_key, timeout=settings.lookup_timeout_s)
    job_service = CallableJobService(settings.job_service_url, settings.job_service_token)
    store = PostgresDocumentStore(poll_interval_s=settings.results_poll_interval_s)
    return ScanSession(provider, job_service, store, settings=settings)


def init_session(factory: Optional[Callable[[], ScanSession]] = None, *, replace: bool = True) -> ScanSession:
    """Create the session on the background loop.

    With replace=False an existing session is kept and returned; the check runs
    under STATE_LOCK so concurrent first requests build only one session.
    """
    with STATE_LOCK:
        if not replace and STATE["session"] is not None:
            return STATE["session"]
        runner = STATE["runner"]
        if runner is None:
            runner = LoopRunner()
            STATE["runner"] = runner
        if factory is None:
            settings = ScannerSettings.from_env()
            factory = lambda: default_session(settings)  # noqa: E731
        old = STATE["session"]
        if old is not None:
            runner.run(old.close())
        STATE["session"] = runner.call(factory)
        return STATE["session"]


def _session() -> ScanSession:
    session = STATE["session"]
    if session is None:
        session = init_session(replace=False)
    return session


def _call(fn: Callable, *args, timeout: float = CALL_TIMEOUT_S):
    _session()
    return STATE["runner"].call(fn, *args, timeout=timeout)


@app.errorhandler(StateGuardViolation)
def _state_guard(e: StateGuardViolation):
    return jsonify({"error": str(e), **e.context}), 409


@app.errorhandler(TransportError)
def _transport_error(e: TransportError):
    logger.warning("Upstream failure: %s", e)
    return jsonify({"error": str(e)}), 502


def _bounds_from_payload(payload: dict) -> Bounds:
    if "bounds" in payload:
        return Bounds.from_dict(payload["bounds"])
    if "start" in payload and "end" in payload:
        s, e = payload["start"], payload["end"]
        return bounds_from_corners((float(s["lat"]), float(s["lng"])), (float(e["lat"]), float(e["lng"])))
    return Bounds.from_dict(payload)


@app.route("/regions", methods=["GET"])
def list_regions():
    return jsonify(_call(_session().region_views))


@app.route("/regions", methods=["POST"])
def create_region():
    payload = request.get_json(force=True, silent=True) or {}
    try:
        bounds = _bounds_from_payload(payload)
    except (KeyError, TypeError, ValueError) as e:
        return jsonify({"error": f"bounds {{north,south,east,west}} or start/end corners required: {e}"}), 400
    label = (payload.get("label") or "").strip() or None
    try:
        region = _call(_session().start_scan, bounds, label)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"region_id": region.id, "region": region.to_dict()}), 201


@app.route("/regions/import_kml", methods=["POST"])
def import_kml_regions():
    f = request.files.get("kml") or request.files.get("file")
    if not f:
        return jsonify({"error": "missing file 'kml'"}), 400
    merge = (request.form.get("merge") or "0") == "1"
    try:
        boxes = regions_from_kml(f.read(), merge=merge)
    except ET.ParseError as e:
        return jsonify({"error": f"invalid KML: {e}"}), 400
    if not boxes:
        return jsonify({"error": "no polygons found in KML"}), 400
    name = (request.form.get("name") or "").strip() or None
    created = []
    for i, bounds in enumerate(boxes):
        label = f"{name} {i + 1}" if name and len(boxes) > 1 else name
        created.append(_call(_session().start_scan, bounds, label).to_dict())
    return jsonify({"regions": created}), 201


@app.route("/regions/<region_id>", methods=["DELETE"])
def delete_region(region_id: str):
    removed = _call(_session().remove_region, region_id)
    if removed is None:
        return jsonify({"error": "region not found"}), 404
    return jsonify({"removed": region_id, "panoramas": sorted(removed.pano_ids)})


@app.route("/regions/<region_id>/focus")
def focus_region(region_id: str):
    target = _call(_session().focus, region_id)
    if target is None:
        return jsonify({"error": "region not found"}), 404
    return jsonify(target.to_dict())


@app.route("/scan/refresh", methods=["POST"])
def scan_refresh():
    session = _session()
    _call(session.refresh_all)
    return jsonify({"status": "started", **_call(session.status)}), 202


@app.route("/scan/status")
def scan_status():
    return jsonify(_call(_session().status))


@app.route("/jobs", methods=["POST"])
def submit_job():
    payload = request.get_json(force=True, silent=True) or {}
    query = (payload.get("query") or "").strip() or None
    session = _session()
    job_id = STATE["runner"].run(session.submit_job(query), timeout=SUBMIT_TIMEOUT_S)
    return jsonify({"jobId": job_id}), 201


@app.route("/jobs/current")
def current_job():
    job = _call(lambda: _session().jobs.active)
    return jsonify({"job": job.to_dict() if job else None})


@app.route("/points")
def list_points():
    status = request.args.get("status")
    points = _call(_session().point_views)
    if status:
        points = [p for p in points if p["status"] == status]
    return jsonify(points)


@app.route("/points/<pano_id>")
def get_point(pano_id: str):
    point = _call(lambda: _session().points.get(pano_id))
    if point is None:
        return jsonify({"error": "point not found"}), 404
    return jsonify(describe_point(point))


@app.route("/points/<pano_id>/select", methods=["POST"])
def select_point(pano_id: str):
    detail = _call(_session().select_point, pano_id)
    if detail is None:
        return jsonify({"error": "point not found"}), 404
    return jsonify(detail)


@app.route("/map/click/<handle>", methods=["POST"])
def map_click(handle: str):
    surface = _session().surface
    if not hasattr(surface, "click"):
        return jsonify({"error": "map surface does not accept clicks"}), 400
    if not _call(surface.click, handle):
        return jsonify({"error": "no click target"}), 404
    return jsonify({"status": "ok", **_call(_session().status)})


@app.route("/map/features")
def map_features():
    surface = _session().surface
    if not hasattr(surface, "feature_collection"):
        return jsonify({"type": "FeatureCollection", "features": []})
    return jsonify(_call(surface.feature_collection))


def sse_format(ev: dict) -> str:
    # Send id for reconnection, and a single-line JSON in data
    ev_id = ev.get("seq")
    payload = json.dumps(ev, ensure_ascii=False)
    parts = []
    if isinstance(ev_id, int):
        parts.append(f"id: {ev_id}")
    parts.append(f"data: {payload}")
    return "\n".join(parts) + "\n\n"


def events_to_replay(lines: List[str], last_event_id: Optional[str], tail_n: int) -> List[dict]:
    """Events to send before following the file: those after Last-Event-ID, else the last tail_n."""
    events: List[dict] = []
    for ln in lines:
        try:
            events.append(json.loads(ln))
        except ValueError:
            continue
    if last_event_id:
        try:
            last = int(last_event_id)
        except ValueError:
            last = None
        if last is not None:
            return [ev for ev in events if int(ev.get("seq") or 0) > last]
    if tail_n >= 0 and len(events) > tail_n:
        return events[len(events) - tail_n:]
    return events


@app.route("/scan/events/stream")
def scan_events_stream():
    """Server-Sent Events (SSE) stream of scan events.

    Query params:
      - tail: int (optional) number of most recent events to preload (default: 200)
    Respects Last-Event-ID header to avoid re-sending events on reconnect (expects seq values).
    """
    try:
        tail_n = max(0, min(int(request.args.get("tail", 200)), 2000))
    except ValueError:
        tail_n = 200
    last_event_id = request.headers.get("Last-Event-ID")
    path = _session().events.path

    @stream_with_context
    def generate():
        # keep heartbeating until the first event is written
        while not path or not os.path.exists(path):
            yield ": waiting for events...\n\n"
            time.sleep(1.0)

        with open(path, "r", encoding="utf-8", errors="ignore") as f:
            lines = f.readlines()
            for ev in events_to_replay(lines, last_event_id, tail_n):
                yield sse_format(ev)
            # Follow the file for new lines
            while True:
                where = f.tell()
                line = f.readline()
                if not line:
                    time.sleep(0.5)
                    f.seek(where)
                    # heartbeat keeps proxies from closing the stream
                    yield ": hb\n\n"
                    continue
                try:
                    yield sse_format(json.loads(line))
                except ValueError:
                    continue

    headers = {
        "Content-Type": "text/event-stream",
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",
    }
    return Response(generate(), headers=headers)


def main(argv: Optional[List[str]] = None) -> None:
    ap = argparse.ArgumentParser(description="Serve the scan session over HTTP")
    ap.add_argument("--host", default="127.0.0.1")
    ap.add_argument("--port", type=int, default=5001)
    ap.add_argument("--events-log", default=None, help="JSONL scan event log streamed over SSE")
    ap.add_argument("--debug", action="store_true")
    args = ap.parse_args(argv)

    configure_logging(args.debug)
    settings = ScannerSettings.from_env()
    settings.events_log = args.events_log or settings.events_log or os.path.abspath("scan_events.jsonl")
    init_session(lambda: default_session(settings))
    # reloader would start a second loop thread
    app.run(host=args.host, port=args.port, debug=args.debug, use_reloader=False, threaded=True)


if __name__ == "__main__":
    main()
