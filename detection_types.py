"""
Canonical scan-point and detection model.
Every upstream result schema is normalized into these types (see realtime_results.py);
they are the only shapes the marker layer and the review app read.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

STATUS_READY = "ready"
STATUS_ANALYZING = "analyzing"
STATUS_DONE = "done"
STATUS_ERROR = "error"

TERMINAL_STATUSES = frozenset({STATUS_DONE, STATUS_ERROR})


@dataclass(frozen=True)
class LatLngPoint:
    lat: float
    lng: float

    def to_dict(self) -> Dict[str, float]:
        return {"lat": self.lat, "lng": self.lng}


@dataclass(frozen=True)
class SpatialInfo:
    heading: float  # degrees relative to north
    distance: float  # meters from the camera
    location: Optional[LatLngPoint] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"heading": self.heading, "distance": self.distance}
        if self.location is not None:
            out["location"] = self.location.to_dict()
        return out


@dataclass(frozen=True)
class DetectedObject:
    id: str
    label: str
    confidence: float
    description: Optional[str] = None
    spatial: Optional[SpatialInfo] = None
    image_crop_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"id": self.id, "label": self.label, "confidence": self.confidence}
        if self.description is not None:
            out["description"] = self.description
        if self.spatial is not None:
            out["spatial"] = self.spatial.to_dict()
        if self.image_crop_url is not None:
            out["image_crop_url"] = self.image_crop_url
        return out


@dataclass(frozen=True)
class AiResult:
    summary: Optional[str] = None
    detected_objects: tuple = ()

    @property
    def total_count(self) -> int:
        # derived, never taken from an upstream count field
        return len(self.detected_objects)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary,
            "detected_objects": [o.to_dict() for o in self.detected_objects],
            "total_count": self.total_count,
        }


@dataclass(frozen=True)
class ScanPoint:
    pano_id: str
    status: str = STATUS_READY
    location: LatLngPoint = field(default_factory=lambda: LatLngPoint(0.0, 0.0))
    heading: float = 0.0
    ai_result: AiResult = field(default_factory=AiResult)
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def match_count(self) -> int:
        return self.ai_result.total_count

    @property
    def has_match(self) -> bool:
        return self.status == STATUS_DONE and self.match_count > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "panoId": self.pano_id,
            "status": self.status,
            "location": self.location.to_dict(),
            "heading": self.heading,
            "aiResult": self.ai_result.to_dict(),
            "error": self.error,
        }


def max_confidence(point: ScanPoint) -> float:
    return max((o.confidence for o in point.ai_result.detected_objects), default=0.0)


def describe_point(point: ScanPoint) -> Dict[str, Any]:
    """
    Read model for the point detail panel.

    Returns:
        Dictionary with headline, match count, confidence percent, summary and
        per-object spatial hints (distance in meters, heading in degrees or None)
    """
    objects: List[DetectedObject] = list(point.ai_result.detected_objects)
    if point.status == STATUS_DONE:
        headline = "Found" if objects else "No Match"
    else:
        headline = point.status
    summary = point.ai_result.summary
    if not summary and objects and point.status == STATUS_DONE:
        summary = objects[0].description
    return {
        "panoId": point.pano_id,
        "shortId": point.pano_id[:8],
        "status": point.status,
        "headline": headline,
        "matchCount": len(objects),
        "confidencePercent": int(round(max_confidence(point) * 100)),
        "summary": summary,
        "error": point.error,
        "objects": [
            {
                "label": o.label,
                "confidence": o.confidence,
                "distance": o.spatial.distance if o.spatial else None,
                "heading": o.spatial.heading if o.spatial else None,
            }
            for o in objects
        ],
    }
