import math
from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple

R_M = 6378137.0  # WGS84 equatorial radius (meters)

MIN_CELL_SIZE_DEG = 0.0005
MAX_GRID = 8
MAX_POINTS = 1000

LatLng = Tuple[float, float]


@dataclass(frozen=True)
class Bounds:
    north: float
    south: float
    east: float
    west: float

    @property
    def center(self) -> LatLng:
        return (self.north + self.south) / 2.0, (self.east + self.west) / 2.0

    @property
    def lat_span(self) -> float:
        return self.north - self.south

    @property
    def lng_span(self) -> float:
        return self.east - self.west

    def to_dict(self) -> dict:
        return {"north": self.north, "south": self.south, "east": self.east, "west": self.west}

    @classmethod
    def from_dict(cls, obj: dict) -> "Bounds":
        b = cls(
            north=float(obj["north"]),
            south=float(obj["south"]),
            east=float(obj["east"]),
            west=float(obj["west"]),
        )
        if b.north < b.south or b.east < b.west:
            raise ValueError(f"Inverted bounds: {obj}")
        return b


@dataclass(frozen=True)
class GridConfig:
    rows: int
    cols: int

    @property
    def point_count(self) -> int:
        return (self.rows + 1) * (self.cols + 1)


@dataclass(frozen=True)
class ProbeCoordinate:
    lat: float
    lng: float
    region_id: str


def bounds_from_corners(start: LatLng, end: LatLng) -> Bounds:
    """Normalize the two corners of a drag gesture into N/S/E/W bounds."""
    (lat0, lng0), (lat1, lng1) = start, end
    return Bounds(
        north=max(lat0, lat1),
        south=min(lat0, lat1),
        east=max(lng0, lng1),
        west=min(lng0, lng1),
    )


def _clamp_cells(span: float, min_cell: float, max_grid: int) -> int:
    return max(1, min(max_grid, int(math.floor(span / min_cell))))


def derive_grid_config(
    bounds: Bounds,
    min_cell_size: float = MIN_CELL_SIZE_DEG,
    max_grid: int = MAX_GRID,
) -> GridConfig:
    """Rows/cols from the physical span, clamped to [1, max_grid].

    Very large areas still get a bounded grid rather than an ever finer one.
    """
    return GridConfig(
        rows=_clamp_cells(bounds.lat_span, min_cell_size, max_grid),
        cols=_clamp_cells(bounds.lng_span, min_cell_size, max_grid),
    )


def _axis_values(lo: float, hi: float, cells: int) -> List[float]:
    step = (hi - lo) / cells
    # pin the last line to the edge so float error never leaves the bounds
    return [hi if i == cells else min(hi, lo + step * i) for i in range(cells + 1)]


def plan_grid(bounds: Bounds, grid: GridConfig, region_id: str) -> List[ProbeCoordinate]:
    """Grid intersections, row-major from the south-west corner, edges included."""
    lats = _axis_values(bounds.south, bounds.north, grid.rows)
    lngs = _axis_values(bounds.west, bounds.east, grid.cols)
    return [ProbeCoordinate(lat=lat, lng=lng, region_id=region_id) for lat in lats for lng in lngs]


def plan_region(region) -> List[ProbeCoordinate]:
    """Probe coordinates for a region (anything with id, bounds and grid)."""
    return plan_grid(region.bounds, region.grid, region.id)


def plan_regions(regions: Iterable, max_points: int = MAX_POINTS) -> List[ProbeCoordinate]:
    """Concatenate region plans in order and keep the first max_points."""
    points: List[ProbeCoordinate] = []
    for region in regions:
        points.extend(plan_region(region))
    if len(points) > max_points:
        return points[:max_points]
    return points


def grid_line_paths(bounds: Bounds, grid: GridConfig) -> List[List[LatLng]]:
    """Interior grid lines (cols-1 vertical, rows-1 horizontal) as [(lat, lng), ...] paths."""
    paths: List[List[LatLng]] = []
    lng_step = bounds.lng_span / grid.cols
    lat_step = bounds.lat_span / grid.rows
    for i in range(1, grid.cols):
        lng = bounds.west + lng_step * i
        paths.append([(bounds.south, lng), (bounds.north, lng)])
    for i in range(1, grid.rows):
        lat = bounds.south + lat_step * i
        paths.append([(lat, bounds.west), (lat, bounds.east)])
    return paths


def envelope(points: Sequence[LatLng]) -> Bounds:
    """Bounding envelope (min/max lat/lng) over a non-empty list of (lat, lng)."""
    if not points:
        raise ValueError("No points for envelope")
    lats = [p[0] for p in points]
    lngs = [p[1] for p in points]
    return Bounds(north=max(lats), south=min(lats), east=max(lngs), west=min(lngs))


def cell_size_m(lat_deg: float, span_deg: float) -> Tuple[float, float]:
    """Approximate (north-south, east-west) meters covered by span_deg at a latitude."""
    ns = math.radians(span_deg) * R_M
    ew = ns * math.cos(math.radians(lat_deg))
    return ns, ew
