import argparse
import json

import pytest

from scan_area import parse_bbox, write_jsonl


def test_parse_bbox():
    b = parse_bbox("49.284, 49.28, -122.885, -122.89")
    assert (b.north, b.south, b.east, b.west) == (49.284, 49.28, -122.885, -122.89)


@pytest.mark.parametrize("text", ["1,2,3", "a,b,c,d", "1,2,0,1"])
def test_parse_bbox_rejects(text):
    with pytest.raises(argparse.ArgumentTypeError):
        parse_bbox(text)


def test_write_jsonl(tmp_path):
    path = tmp_path / "out" / "panos.jsonl"
    assert write_jsonl(str(path), [{"panoId": "a"}, {"panoId": "b"}]) == 2
    assert [json.loads(ln)["panoId"] for ln in path.read_text().splitlines()] == ["a", "b"]
