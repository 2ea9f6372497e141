"""
Realtime result normalization.

Per-point result documents arrive from the document store in whatever shape the
analysis pipeline wrote at the time (several status spellings, string encoded
coordinates, object lists under different names, a bare "found" flag). Each
document is normalized into a canonical ScanPoint and upserted into the shared
panoId -> ScanPoint map.

Malformed documents are logged and degraded to defaults; they never end a
subscription.
"""

import asyncio
import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Mapping, Optional, Protocol

from detection_types import (
    STATUS_ANALYZING,
    STATUS_DONE,
    STATUS_ERROR,
    STATUS_READY,
    AiResult,
    DetectedObject,
    LatLngPoint,
    ScanPoint,
    SpatialInfo,
)
from scanner_errors import SchemaAnomaly, TransportError

logger = logging.getLogger(__name__)

CHANGE_ADDED = "added"
CHANGE_MODIFIED = "modified"
CHANGE_REMOVED = "removed"

ORIGIN = LatLngPoint(0.0, 0.0)

_DONE_STATUSES = {"done", "completed"}
_ERROR_STATUSES = {"error", "failed"}
_TRUTHY = {"true", "yes", "1", "y"}
_COORD_RE = re.compile(r"^\s*([-+]?\d+(?:\.\d+)?)\s*°?\s*([NSEWnsew])?\s*$")


@dataclass(frozen=True)
class DocumentChange:
    doc_id: str
    change_type: str
    data: Dict[str, Any]


class DocumentStore(Protocol):
    def changes(self, job_id: str) -> AsyncIterator[List[DocumentChange]]:
        ...


def map_status(raw: Any) -> str:
    """Collapse upstream status spellings into ready/analyzing/done/error."""
    if raw is None:
        return STATUS_READY
    if not isinstance(raw, str):
        logger.warning("Non-string status %r; treating as ready", raw)
        return STATUS_READY
    s = raw.strip().lower()
    if s in _DONE_STATUSES:
        return STATUS_DONE
    if s in _ERROR_STATUSES:
        return STATUS_ERROR
    # versioned in-progress states, e.g. 'analyzing-v2'
    if "analyzing" in s:
        return STATUS_ANALYZING
    if s and s != STATUS_READY:
        logger.info("Unrecognized status %r; treating as ready", raw)
    return STATUS_READY


def _coerce_float(v: Any) -> Optional[float]:
    if isinstance(v, bool) or v is None:
        return None
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    # nan and inf are treated as missing
    return f if math.isfinite(f) else None


def _valid(lat: Optional[float], lng: Optional[float]) -> bool:
    return lat is not None and lng is not None and -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0


def _parse_location_string(text: str) -> Optional[LatLngPoint]:
    parts = text.strip().strip("[]()").split(",")
    if len(parts) != 2:
        return None
    lat = lng = None
    plain: List[float] = []
    for part in parts:
        m = _COORD_RE.match(part)
        if not m:
            return None
        value = float(m.group(1))
        cardinal = (m.group(2) or "").upper()
        if cardinal in ("S", "W"):
            value = -abs(value)
        if cardinal in ("N", "S"):
            lat = value
        elif cardinal in ("E", "W"):
            lng = value
        else:
            plain.append(value)
    # unsuffixed values fill whichever axis is still open, lat first
    for value in plain:
        if lat is None:
            lat = value
        elif lng is None:
            lng = value
    if not _valid(lat, lng):
        return None
    return LatLngPoint(lat, lng)


def _parse_location(raw: Any) -> Optional[LatLngPoint]:
    if isinstance(raw, Mapping):
        lat = _coerce_float(raw.get("lat", raw.get("latitude")))
        lng = _coerce_float(raw.get("lng", raw.get("longitude", raw.get("lon"))))
        return LatLngPoint(lat, lng) if _valid(lat, lng) else None
    if isinstance(raw, (list, tuple)) and len(raw) == 2:
        lat, lng = _coerce_float(raw[0]), _coerce_float(raw[1])
        return LatLngPoint(lat, lng) if _valid(lat, lng) else None
    if isinstance(raw, str):
        return _parse_location_string(raw)
    return None


def parse_location(raw: Any) -> LatLngPoint:
    """Best-effort location: structured pairs or strings like '[49.2827 N, 122.8890 W]'.

    Anything unreadable becomes (0, 0) with a warning.
    """
    loc = _parse_location(raw)
    if loc is None:
        logger.warning("Unparseable location %r; defaulting to (0, 0)", raw)
        return ORIGIN
    return loc


def _is_found(v: Any) -> bool:
    if isinstance(v, bool):
        return v
    if isinstance(v, (int, float)):
        return v != 0
    if isinstance(v, str):
        return v.strip().lower() in _TRUTHY
    return False


def _confidence(v: Any) -> float:
    c = _coerce_float(v)
    if c is None:
        return 0.0
    if 1.0 < c <= 100.0:
        # percent scale
        c = c / 100.0
    return max(0.0, min(1.0, c))


def _spatial(obj: Mapping[str, Any]) -> Optional[SpatialInfo]:
    raw = obj.get("spatial")
    src = raw if isinstance(raw, Mapping) else obj
    heading = _coerce_float(src.get("heading"))
    distance = _coerce_float(src.get("distance", src.get("distance_m")))
    if heading is None and distance is None:
        return None
    loc_raw = src.get("location")
    location = _parse_location(loc_raw) if loc_raw is not None else None
    return SpatialInfo(heading=heading or 0.0, distance=distance or 0.0, location=location)


def _normalize_object(obj: Any, idx: int, default_label: str) -> Optional[DetectedObject]:
    if not isinstance(obj, Mapping):
        logger.debug("Skipping non-object detection entry %r", obj)
        return None
    label = obj.get("label") or obj.get("keyword") or obj.get("name") or obj.get("type") or default_label
    description = obj.get("description")
    crop = obj.get("image_crop_url") or obj.get("imageCropUrl")
    return DetectedObject(
        id=str(obj.get("id") or f"{default_label}-{idx}"),
        label=str(label),
        confidence=_confidence(obj.get("confidence")),
        description=str(description) if description is not None else None,
        spatial=_spatial(obj),
        image_crop_url=str(crop) if crop else None,
    )


def _objects_list(raw: Mapping[str, Any]):
    for key, default_label in (("detected_objects", "object"), ("objects", "object"), ("poles", "pole")):
        value = raw.get(key)
        if isinstance(value, list):
            return value, default_label
    return None, None


def normalize_ai_result(raw: Any) -> AiResult:
    """Convert any known result shape into an AiResult.

    Shapes: a detected_objects/objects list, a poles list, or a flat found flag
    with keyword/label and confidence. A found flag without a list becomes one
    placeholder object. Anything else is an empty result.
    """
    if raw is None:
        return AiResult()
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            # free text from the model
            return AiResult(summary=raw.strip() or None)
    if not isinstance(raw, Mapping):
        logger.warning("Unexpected aiResult type %s; using empty result", type(raw).__name__)
        return AiResult()

    summary = raw.get("summary") or raw.get("description")
    summary = str(summary) if summary else None

    items, default_label = _objects_list(raw)
    if items is not None:
        objects = []
        for i, item in enumerate(items):
            o = _normalize_object(item, i, default_label)
            if o is not None:
                objects.append(o)
        return AiResult(summary=summary, detected_objects=tuple(objects))

    if _is_found(raw.get("found")):
        label = raw.get("keyword") or raw.get("label") or "match"
        placeholder = DetectedObject(
            id="found-0",
            label=str(label),
            confidence=_confidence(raw.get("confidence")),
            description=str(raw["description"]) if raw.get("description") else None,
            spatial=_spatial(raw) if isinstance(raw.get("spatial"), Mapping) else None,
        )
        return AiResult(summary=summary, detected_objects=(placeholder,))

    return AiResult(summary=summary)


_LEGACY_RESULT_KEYS = ("found", "poles", "objects", "detected_objects")


def normalize_document(doc_id: str, data: Mapping[str, Any]) -> ScanPoint:
    if not isinstance(data, Mapping):
        raise SchemaAnomaly(f"Document {doc_id} is not an object", context={"docId": doc_id})
    ai_raw = data.get("aiResult")
    if ai_raw is None:
        ai_raw = data.get("aiResultRaw")
    if ai_raw is None and any(k in data for k in _LEGACY_RESULT_KEYS):
        # oldest pipeline wrote result fields on the document itself
        ai_raw = data
    heading = _coerce_float(data.get("heading"))
    error = data.get("error")
    return ScanPoint(
        pano_id=str(data.get("panoId") or doc_id),
        status=map_status(data.get("status")),
        location=parse_location(data.get("location")),
        heading=heading if heading is not None else 0.0,
        ai_result=normalize_ai_result(ai_raw),
        error=str(error) if error else None,
    )


def merge_point(existing: Optional[ScanPoint], incoming: ScanPoint) -> ScanPoint:
    """Terminal statuses never go back to ready/analyzing; terminal may replace terminal."""
    if existing is not None and existing.is_terminal and not incoming.is_terminal:
        logger.warning(
            "Ignoring %s update for %s after terminal %s",
            incoming.status, incoming.pano_id, existing.status,
        )
        return existing
    return incoming


class ResultSubscription:
    """Streams one job's documents into the shared ScanPoint map.

    points is owned by the session and mutated in place. accept filters out
    documents for panoramas that are no longer part of the session.
    """

    def __init__(
        self,
        store: DocumentStore,
        points: Dict[str, ScanPoint],
        *,
        accept: Optional[Callable[[str], bool]] = None,
        on_failure: Optional[Callable[[TransportError], None]] = None,
        events=None,
    ) -> None:
        self.store = store
        self.points = points
        self.accept = accept
        self.on_failure = on_failure
        self.events = events
        self.job_id: Optional[str] = None
        self.last_error: Optional[TransportError] = None
        self._task: Optional[asyncio.Task] = None
        self._listeners: List[Callable[[List[ScanPoint]], None]] = []

    def add_listener(self, fn: Callable[[List[ScanPoint]], None]) -> None:
        self._listeners.append(fn)

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def subscribe(self, job_id: str) -> asyncio.Task:
        """Start following job_id; any previous subscription is dropped first."""
        self.unsubscribe()
        self.job_id = job_id
        self.last_error = None
        self._task = asyncio.get_running_loop().create_task(self._run(job_id), name=f"results-{job_id}")
        return self._task

    def unsubscribe(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self.job_id = None

    async def _run(self, job_id: str) -> None:
        try:
            async for batch in self.store.changes(job_id):
                if self.job_id != job_id:
                    return
                self.apply(batch)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.last_error = TransportError(f"Result stream for job {job_id} failed: {e}", context={"jobId": job_id})
            logger.error("Result stream for job %s failed: %s", job_id, e)
            if self.on_failure is not None:
                self.on_failure(self.last_error)

    def apply(self, changes: List[DocumentChange]) -> List[ScanPoint]:
        """Normalize and upsert a batch of changes in order; returns the points that changed."""
        updated: Dict[str, ScanPoint] = {}
        for change in changes:
            if change.change_type == CHANGE_REMOVED:
                # ownership follows regions, not the store
                logger.debug("Ignoring removal of document %s", change.doc_id)
                continue
            try:
                point = normalize_document(change.doc_id, change.data)
            except (SchemaAnomaly, TypeError, ValueError, AttributeError) as e:
                logger.warning("Skipping malformed document %s: %s", change.doc_id, e)
                continue
            if self.accept is not None and not self.accept(point.pano_id):
                logger.debug("Dropping result for unknown panorama %s", point.pano_id)
                continue
            existing = self.points.get(point.pano_id)
            merged = merge_point(existing, point)
            if merged is existing or merged == existing:
                continue
            self.points[point.pano_id] = merged
            updated[point.pano_id] = merged
            if self.events is not None:
                self.events.emit({"type": "point_updated", "panoId": point.pano_id, "status": merged.status,
                                  "matches": merged.match_count})
        changed = list(updated.values())
        if changed:
            for fn in self._listeners:
                fn(changed)
        return changed
