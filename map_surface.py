"""Map overlay surface.

Region and marker layers draw through the MapSurface protocol and keep only the
opaque handles it returns. GeoJsonMapSurface keeps every overlay as a GeoJSON
feature so the browser client can render the current map from /map/features and
post clicks back to /map/click/<handle>.
"""

import itertools
import logging
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from geom.grid_math import Bounds

logger = logging.getLogger(__name__)

Style = Dict[str, Any]
ClickHandler = Callable[[], None]


class MapSurface(Protocol):
    def draw_rectangle(self, bounds: Bounds, style: Style) -> str:
        ...

    def draw_polyline(self, path: Sequence[Tuple[float, float]], style: Style) -> str:
        ...

    def place_marker(
        self,
        lat: float,
        lng: float,
        style: Style,
        on_click: Optional[ClickHandler] = None,
    ) -> str:
        ...

    def restyle(self, handle: str, style: Style) -> None:
        ...

    def remove(self, handle: str) -> None:
        ...


class GeoJsonMapSurface:
    def __init__(self) -> None:
        self.features: Dict[str, Dict[str, Any]] = {}
        self._handlers: Dict[str, ClickHandler] = {}
        self._ids = itertools.count(1)

    def _add(self, kind: str, geometry: Dict[str, Any], style: Style) -> str:
        handle = f"{kind}-{next(self._ids)}"
        self.features[handle] = {
            "type": "Feature",
            "id": handle,
            "geometry": geometry,
            "properties": {"kind": kind, **style},
        }
        return handle

    def draw_rectangle(self, bounds: Bounds, style: Style) -> str:
        # GeoJSON positions are [lng, lat]; rings are closed
        ring = [
            [bounds.west, bounds.south],
            [bounds.east, bounds.south],
            [bounds.east, bounds.north],
            [bounds.west, bounds.north],
            [bounds.west, bounds.south],
        ]
        return self._add("rectangle", {"type": "Polygon", "coordinates": [ring]}, style)

    def draw_polyline(self, path: Sequence[Tuple[float, float]], style: Style) -> str:
        coords = [[lng, lat] for lat, lng in path]
        return self._add("polyline", {"type": "LineString", "coordinates": coords}, style)

    def place_marker(self, lat: float, lng: float, style: Style, on_click: Optional[ClickHandler] = None) -> str:
        handle = self._add("marker", {"type": "Point", "coordinates": [lng, lat]}, style)
        if on_click is not None:
            self._handlers[handle] = on_click
        return handle

    def restyle(self, handle: str, style: Style) -> None:
        feat = self.features.get(handle)
        if feat is None:
            logger.debug("restyle of unknown overlay %s", handle)
            return
        feat["properties"] = {"kind": feat["properties"]["kind"], **style}

    def remove(self, handle: str) -> None:
        self.features.pop(handle, None)
        self._handlers.pop(handle, None)

    def click(self, handle: str) -> bool:
        """Dispatch a click on an overlay; False when nothing is listening."""
        handler = self._handlers.get(handle)
        if handler is None:
            return False
        handler()
        return True

    def feature_collection(self) -> Dict[str, Any]:
        feats: List[Dict[str, Any]] = list(self.features.values())
        return {"type": "FeatureCollection", "features": feats}
