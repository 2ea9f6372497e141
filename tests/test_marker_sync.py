from detection_types import AiResult, DetectedObject, ScanPoint
from map_surface import GeoJsonMapSurface
from marker_sync import MATCH_STYLE, PROBE_STYLES, MarkerSync, marker_state
from scan_panoramas import DiscoveredPanorama


def pano(pid, lat=1.0, lng=2.0):
    return DiscoveredPanorama(pano_id=pid, lat=lat, lng=lng, heading=0.0, region_id="r1")


def point(pid, status="ready", n_objects=0):
    objs = tuple(DetectedObject(id=f"o{i}", label="hydrant", confidence=0.9) for i in range(n_objects))
    return ScanPoint(pano_id=pid, status=status, ai_result=AiResult(detected_objects=objs))


def states(surface):
    return {f["properties"]["panoId"]: f["properties"]["state"] for f in surface.features.values()
            if f["properties"]["state"] != "match"}


def test_marker_state_by_status():
    assert marker_state(None) == "ready"
    assert marker_state(point("a", "analyzing")) == "analyzing"
    assert marker_state(point("a", "done")) == "done-empty"
    assert marker_state(point("a", "done", 2)) == "done-found"
    assert marker_state(point("a", "error")) == "error"


def test_one_probe_marker_per_panorama():
    surface = GeoJsonMapSurface()
    sync = MarkerSync(surface)
    discovered = [pano("a"), pano("b")]
    sync.sync(discovered, {})
    sync.sync(discovered, {})
    assert len(surface.features) == 2
    assert states(surface) == {"a": "ready", "b": "ready"}


def test_restyles_on_status_change_without_recreating():
    surface = GeoJsonMapSurface()
    sync = MarkerSync(surface)
    discovered = [pano("a"), pano("b")]
    sync.sync(discovered, {})
    handles = {pid: h for pid, (h, _) in sync.probe_markers.items()}
    sync.sync(discovered, {"a": point("a", "analyzing"), "b": point("b", "done")})
    assert {pid: h for pid, (h, _) in sync.probe_markers.items()} == handles
    assert states(surface) == {"a": "analyzing", "b": "done-empty"}
    assert surface.features[handles["b"]]["properties"]["opacity"] == PROBE_STYLES["done-empty"]["opacity"]


def test_restyle_keeps_title():
    surface = GeoJsonMapSurface()
    sync = MarkerSync(surface)
    sync.sync([pano("a")], {})
    handle, _ = sync.probe_markers["a"]
    assert surface.features[handle]["properties"]["title"] == "Pano: a"
    sync.sync([pano("a")], {"a": point("a", "error")})
    assert surface.features[handle]["properties"]["title"] == "Pano: a"
    assert surface.features[handle]["properties"]["state"] == "error"


def test_match_marker_only_for_terminal_hits():
    surface = GeoJsonMapSurface()
    sync = MarkerSync(surface)
    discovered = [pano("a"), pano("b"), pano("c")]
    sync.sync(discovered, {
        "a": point("a", "done", 2),
        "b": point("b", "done", 0),
        "c": point("c", "analyzing", 1),
    })
    assert list(sync.match_markers) == ["a"]
    match = surface.features[sync.match_markers["a"]]["properties"]
    assert match["zIndex"] > PROBE_STYLES["done-found"]["zIndex"]
    assert match["zIndex"] == MATCH_STYLE["zIndex"]
    assert match["count"] == 2


def test_vanished_points_lose_both_markers():
    surface = GeoJsonMapSurface()
    sync = MarkerSync(surface)
    points = {"a": point("a", "done", 1), "b": point("b", "done", 1)}
    sync.sync([pano("a"), pano("b")], points)
    assert len(surface.features) == 4
    sync.sync([pano("b")], {"b": points["b"]})
    assert set(sync.probe_markers) == {"b"}
    assert set(sync.match_markers) == {"b"}
    assert len(surface.features) == 2


def test_clicks_route_to_selection():
    surface = GeoJsonMapSurface()
    selected = []
    sync = MarkerSync(surface, on_select=selected.append)
    sync.sync([pano("a")], {"a": point("a", "done", 1)})
    surface.click(sync.probe_markers["a"][0])
    surface.click(sync.match_markers["a"])
    assert selected == ["a", "a"]


def test_clear_removes_everything():
    surface = GeoJsonMapSurface()
    sync = MarkerSync(surface)
    sync.sync([pano("a"), pano("b")], {"a": point("a", "done", 1)})
    sync.clear()
    assert surface.features == {}
    assert sync.probe_markers == {} and sync.match_markers == {}
