import logging
from typing import Callable, Dict, Iterable, Mapping, Optional, Tuple

from detection_types import STATUS_ANALYZING, STATUS_DONE, STATUS_ERROR, ScanPoint
from map_surface import MapSurface

logger = logging.getLogger(__name__)

MARKER_READY = "ready"
MARKER_ANALYZING = "analyzing"
MARKER_DONE_EMPTY = "done-empty"
MARKER_DONE_FOUND = "done-found"
MARKER_ERROR = "error"

PROBE_STYLES = {
    MARKER_READY: {"fillColor": "#8b5cf6", "size": 10, "zIndex": 1},
    MARKER_ANALYZING: {"fillColor": "#8b5cf6", "size": 10, "pulse": True, "zIndex": 1},
    MARKER_DONE_EMPTY: {"fillColor": "#cbd5e1", "size": 10, "opacity": 0.4, "zIndex": 1},
    MARKER_DONE_FOUND: {"fillColor": "#3b82f6", "strokeColor": "#93c5fd", "size": 10, "zIndex": 1},
    MARKER_ERROR: {"fillColor": "#64748b", "size": 10, "zIndex": 1},
}

MATCH_STYLE = {"fillColor": "#3b82f6", "strokeColor": "#ffffff", "size": 16, "zIndex": 10}


def marker_state(point: Optional[ScanPoint]) -> str:
    """Visual state of a probe marker; panoramas without a result yet are 'ready'."""
    if point is None:
        return MARKER_READY
    if point.status == STATUS_ANALYZING:
        return MARKER_ANALYZING
    if point.status == STATUS_DONE:
        return MARKER_DONE_FOUND if point.match_count > 0 else MARKER_DONE_EMPTY
    if point.status == STATUS_ERROR:
        return MARKER_ERROR
    return MARKER_READY


class MarkerSync:
    """Keeps one probe marker per discovered panorama and one match marker per hit."""

    def __init__(self, surface: MapSurface, on_select: Optional[Callable[[str], None]] = None) -> None:
        self.surface = surface
        self.on_select = on_select
        # pano_id -> (handle, state)
        self.probe_markers: Dict[str, Tuple[str, str]] = {}
        self.match_markers: Dict[str, str] = {}

    def _select(self, pano_id: str) -> None:
        if self.on_select is not None:
            self.on_select(pano_id)

    @staticmethod
    def _probe_style(state: str, pano_id: str) -> dict:
        # restyle replaces every property
        return {**PROBE_STYLES[state], "state": state, "title": f"Pano: {pano_id}", "panoId": pano_id}

    def sync(self, discovered: Iterable, scan_points: Mapping[str, ScanPoint]) -> None:
        """Reconcile markers with the discovered panoramas and their latest results.

        discovered holds objects with pano_id, lat and lng. Calling twice with the
        same inputs changes nothing.
        """
        live = {}
        for pano in discovered:
            live[pano.pano_id] = pano

        for pano_id in [pid for pid in self.probe_markers if pid not in live]:
            handle, _ = self.probe_markers.pop(pano_id)
            self.surface.remove(handle)

        for pano_id, pano in live.items():
            state = marker_state(scan_points.get(pano_id))
            current = self.probe_markers.get(pano_id)
            if current is None:
                handle = self.surface.place_marker(
                    pano.lat,
                    pano.lng,
                    self._probe_style(state, pano_id),
                    on_click=lambda pid=pano_id: self._select(pid),
                )
                self.probe_markers[pano_id] = (handle, state)
            elif current[1] != state:
                self.surface.restyle(current[0], self._probe_style(state, pano_id))
                self.probe_markers[pano_id] = (current[0], state)

        for pano_id in list(self.match_markers):
            point = scan_points.get(pano_id)
            if pano_id not in live or point is None or not point.has_match:
                self.surface.remove(self.match_markers.pop(pano_id))

        for pano_id, pano in live.items():
            point = scan_points.get(pano_id)
            if point is None or not point.has_match or pano_id in self.match_markers:
                continue
            self.match_markers[pano_id] = self.surface.place_marker(
                pano.lat,
                pano.lng,
                {**MATCH_STYLE, "state": "match", "count": point.match_count, "panoId": pano_id},
                on_click=lambda pid=pano_id: self._select(pid),
            )

    def clear(self) -> None:
        for handle, _ in self.probe_markers.values():
            self.surface.remove(handle)
        for handle in self.match_markers.values():
            self.surface.remove(handle)
        self.probe_markers.clear()
        self.match_markers.clear()
        logger.debug("Cleared all scan markers")
