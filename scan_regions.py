"""
Region and overlay state.

RegionManager owns the user's scan regions, which panoramas each region
discovered, and the overlays (border, grid lines, label, close button) drawn for
each region on the map surface.
"""

import itertools
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

from geom.grid_math import Bounds, GridConfig, derive_grid_config, grid_line_paths
from map_surface import MapSurface
from scanner_config import FOCUS_ZOOM, MAX_GRID, MIN_CELL_SIZE_DEG

logger = logging.getLogger(__name__)

REGION_COLORS = (
    "#ef4444",  # red
    "#f97316",  # orange
    "#f59e0b",  # amber
    "#84cc16",  # lime
    "#10b981",  # emerald
    "#06b6d4",  # cyan
    "#3b82f6",  # blue
    "#8b5cf6",  # violet
    "#d946ef",  # fuchsia
    "#f43f5e",  # rose
)


@dataclass(frozen=True)
class Region:
    id: str
    bounds: Bounds
    center: Tuple[float, float]
    label: str
    color: str
    grid: GridConfig
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "bounds": self.bounds.to_dict(),
            "center": {"lat": self.center[0], "lng": self.center[1]},
            "label": self.label,
            "color": self.color,
            "grid": {"rows": self.grid.rows, "cols": self.grid.cols},
            "probes": self.grid.point_count,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class RemovedRegion:
    region: Region
    pano_ids: FrozenSet[str]


@dataclass(frozen=True)
class FocusTarget:
    lat: float
    lng: float
    zoom: int = FOCUS_ZOOM

    def to_dict(self) -> dict:
        return {"lat": self.lat, "lng": self.lng, "zoom": self.zoom}


@dataclass
class RegionOverlay:
    rect: str
    grid_lines: List[str]
    label_marker: str
    close_marker: str

    def handles(self) -> List[str]:
        return [self.rect, *self.grid_lines, self.label_marker, self.close_marker]


_id_counter = itertools.count(1)


def _generate_region_id() -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return f"area_{ts}_{next(_id_counter)}"


class RegionManager:
    def __init__(
        self,
        surface: Optional[MapSurface] = None,
        *,
        rng: Optional[random.Random] = None,
        min_cell_size: float = MIN_CELL_SIZE_DEG,
        max_grid: int = MAX_GRID,
        on_close: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.surface = surface
        self.rng = rng or random.Random()
        self.min_cell_size = min_cell_size
        self.max_grid = max_grid
        # close-button clicks are routed here; the session wires its own removal
        self.on_close = on_close
        self.regions: Dict[str, Region] = {}
        self._owned: Dict[str, set] = {}
        self._overlays: Dict[str, RegionOverlay] = {}

    def add_region(self, bounds: Bounds, label: Optional[str] = None) -> Region:
        if bounds.north < bounds.south or bounds.east < bounds.west:
            raise ValueError(f"Inverted bounds: {bounds}")
        region = Region(
            id=_generate_region_id(),
            bounds=bounds,
            center=bounds.center,
            label=label or f"Area {len(self.regions) + 1}",
            color=self.rng.choice(REGION_COLORS),
            grid=derive_grid_config(bounds, self.min_cell_size, self.max_grid),
        )
        self.regions[region.id] = region
        self._owned[region.id] = set()
        logger.info("Added %s (%s) grid %dx%d", region.id, region.label, region.grid.rows, region.grid.cols)
        return region

    def get(self, region_id: str) -> Optional[Region]:
        return self.regions.get(region_id)

    def list_regions(self) -> List[Region]:
        return list(self.regions.values())

    def is_active(self, region_id: str) -> bool:
        return region_id in self.regions

    def remove_region(self, region_id: str) -> Optional[RemovedRegion]:
        """Drop a region and hand back the panorama ids it owned. Unknown ids are a no-op."""
        region = self.regions.pop(region_id, None)
        if region is None:
            return None
        owned = self._owned.pop(region_id, set())
        logger.info("Removed %s (%d panoramas)", region_id, len(owned))
        return RemovedRegion(region=region, pano_ids=frozenset(owned))

    def focus(self, region_id: str) -> Optional[FocusTarget]:
        region = self.regions.get(region_id)
        if region is None:
            return None
        lat, lng = region.center
        return FocusTarget(lat=lat, lng=lng)

    def attach_panorama(self, pano) -> bool:
        """Record that pano (anything with pano_id and region_id) belongs to its region."""
        owned = self._owned.get(pano.region_id)
        if owned is None:
            return False
        owned.add(pano.pano_id)
        return True

    def owned_panoramas(self, region_id: str) -> FrozenSet[str]:
        return frozenset(self._owned.get(region_id, ()))

    def clear_panoramas(self) -> None:
        for owned in self._owned.values():
            owned.clear()

    def reconcile_overlays(self) -> None:
        """Bring the map overlays in line with the current regions. Safe to call repeatedly."""
        if self.surface is None:
            return
        for region_id in [rid for rid in self._overlays if rid not in self.regions]:
            overlay = self._overlays.pop(region_id)
            for handle in overlay.handles():
                self.surface.remove(handle)
        for region in self.regions.values():
            if region.id not in self._overlays:
                self._overlays[region.id] = self._draw(region)

    def overlay_for(self, region_id: str) -> Optional[RegionOverlay]:
        return self._overlays.get(region_id)

    def _draw(self, region: Region) -> RegionOverlay:
        surface = self.surface
        b = region.bounds
        rect = surface.draw_rectangle(b, {
            "strokeColor": region.color,
            "strokeWeight": 2,
            "fillColor": region.color,
            "fillOpacity": 0.1,
            "regionId": region.id,
        })
        lines = [
            surface.draw_polyline(path, {
                "strokeColor": region.color,
                "strokeOpacity": 0.5,
                "strokeWeight": 1,
                "regionId": region.id,
            })
            for path in grid_line_paths(b, region.grid)
        ]
        # label inside the NW corner, close button inside the NE corner
        label = surface.place_marker(b.north, b.west, {
            "role": "label",
            "text": region.label,
            "color": region.color,
            "regionId": region.id,
        })
        close = surface.place_marker(
            b.north,
            b.east,
            {"role": "close", "title": "Remove Area", "regionId": region.id},
            on_click=lambda rid=region.id: self._close_clicked(rid),
        )
        return RegionOverlay(rect=rect, grid_lines=lines, label_marker=label, close_marker=close)

    def _close_clicked(self, region_id: str) -> None:
        if self.on_close is not None:
            self.on_close(region_id)
        else:
            self.remove_region(region_id)
            self.reconcile_overlays()
