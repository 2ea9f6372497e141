import pytest

from kml_utils import bbox_area_sqmi, bbox_of_polygons, parse_kml_polygons, regions_from_kml

KML = b"""<?xml version="1.0" encoding="UTF-8"?>
<kml xmlns="http://www.opengis.net/kml/2.2">
  <Document>
    <Placemark>
      <name>Downtown</name>
      <Polygon>
        <outerBoundaryIs><LinearRing><coordinates>
          -122.89,49.28,0 -122.88,49.28,0 -122.88,49.29,0 -122.89,49.29,0 -122.89,49.28,0
        </coordinates></LinearRing></outerBoundaryIs>
        <innerBoundaryIs><LinearRing><coordinates>
          -150,10 -150,11 -151,11
        </coordinates></LinearRing></innerBoundaryIs>
      </Polygon>
    </Placemark>
    <Placemark>
      <MultiGeometry>
        <Polygon><outerBoundaryIs><LinearRing><coordinates>
          -122.80,49.30 -122.79,49.30 -122.79,49.31
        </coordinates></LinearRing></outerBoundaryIs></Polygon>
        <Polygon><outerBoundaryIs><LinearRing><coordinates>
          -1,1 -2,2
        </coordinates></LinearRing></outerBoundaryIs></Polygon>
      </MultiGeometry>
    </Placemark>
  </Document>
</kml>
"""


def test_parse_outer_rings_only():
    polys = parse_kml_polygons(KML)
    assert len(polys) == 2
    assert polys[0][0] == (49.28, -122.89)
    assert all(lat > 40 for poly in polys for lat, _ in poly)


def test_parse_from_path(tmp_path):
    path = tmp_path / "areas.kml"
    path.write_bytes(KML)
    assert len(parse_kml_polygons(str(path))) == 2


def test_one_region_per_polygon():
    first, second = regions_from_kml(KML)
    assert (first.north, first.south, first.east, first.west) == (49.29, 49.28, -122.88, -122.89)
    assert (second.north, second.south, second.east, second.west) == (49.31, 49.30, -122.79, -122.80)


def test_merged_region_covers_everything():
    (merged,) = regions_from_kml(KML, merge=True)
    assert (merged.north, merged.south, merged.east, merged.west) == (49.31, 49.28, -122.79, -122.89)


def test_no_polygons():
    assert regions_from_kml(b"<kml xmlns='http://www.opengis.net/kml/2.2'/>") == []
    with pytest.raises(ValueError):
        bbox_of_polygons([])


def test_area_estimate():
    (region,) = regions_from_kml(KML, merge=True)
    assert 8.0 < bbox_area_sqmi(region) < 11.0
