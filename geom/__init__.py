"""Pure coordinate helpers: bounds, scan grids and probe planning."""

from .grid_math import Bounds, GridConfig, ProbeCoordinate, derive_grid_config, plan_region, plan_regions

__all__ = [
    "Bounds",
    "GridConfig",
    "ProbeCoordinate",
    "derive_grid_config",
    "plan_region",
    "plan_regions",
]
