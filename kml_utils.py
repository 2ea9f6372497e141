import math
import xml.etree.ElementTree as ET
from typing import List, Tuple, Union

from geom.grid_math import Bounds, envelope

LatLng = Tuple[float, float]
Polygon = List[LatLng]


def _tag_name(tag: str) -> str:
    """Return the local tag name without namespace."""
    if '}' in tag:
        return tag.split('}', 1)[1]
    return tag


def _parse_coordinates(text: str) -> List[LatLng]:
    """Parse a KML <coordinates> block (lon,lat[,alt] tuples) into (lat, lng) pairs."""
    pts: List[LatLng] = []
    for token in (text or '').split():
        parts = token.split(',')
        if len(parts) < 2:
            continue
        try:
            lng = float(parts[0])
            lat = float(parts[1])
        except ValueError:
            continue
        pts.append((lat, lng))
    return pts


def _first_coordinates(elem: ET.Element) -> str:
    for child in elem.iter():
        if _tag_name(child.tag) == 'coordinates':
            return child.text or ''
    return ''


def _outer_ring(polygon: ET.Element) -> List[LatLng]:
    for child in polygon.iter():
        if _tag_name(child.tag) == 'outerBoundaryIs':
            return _parse_coordinates(_first_coordinates(child))
    # no outer boundary element: take whatever coordinates the polygon has
    return _parse_coordinates(_first_coordinates(polygon))


def parse_kml_polygons(source: Union[str, bytes]) -> List[Polygon]:
    """Extract outer rings of every Polygon (including inside MultiGeometry).

    source is a file path, or the KML document itself as bytes. Holes are
    ignored; rings with fewer than three vertices are skipped.
    """
    if isinstance(source, bytes):
        root = ET.fromstring(source)
    else:
        root = ET.parse(source).getroot()

    polygons: List[Polygon] = []
    for elem in root.iter():
        if _tag_name(elem.tag) != 'Polygon':
            continue
        pts = _outer_ring(elem)
        if len(pts) >= 3:
            polygons.append(pts)
    return polygons


def bbox_of_polygons(polys: List[Polygon]) -> Bounds:
    pts = [pt for poly in polys for pt in poly]
    if not pts:
        raise ValueError('No coordinates in polygons')
    return envelope(pts)


def regions_from_kml(source: Union[str, bytes], merge: bool = False) -> List[Bounds]:
    """Scan regions for a KML file: one bounding box per polygon, or one overall when merge is set."""
    polys = parse_kml_polygons(source)
    if not polys:
        return []
    if merge:
        return [bbox_of_polygons(polys)]
    return [envelope(poly) for poly in polys]


def bbox_area_sqmi(bounds: Bounds) -> float:
    """Approximate area in square miles for a lat/lng-aligned bounding box."""
    miles_per_deg_lat = 69.0
    mid_lat = (bounds.north + bounds.south) / 2.0
    miles_per_deg_lng = 69.0 * max(0.000001, math.cos(math.radians(mid_lat)))
    return max(0.0, bounds.lat_span * miles_per_deg_lat * bounds.lng_span * miles_per_deg_lng)
