import pytest

from scanner_config import DEFAULT_BATCH_SIZE, ScannerSettings


def test_from_env_reads_overrides(monkeypatch):
    monkeypatch.setenv("GOOGLE_MAPS_API_KEY", "'abc'")
    monkeypatch.setenv("SCAN_BATCH_SIZE", "4")
    monkeypatch.setenv("SCAN_BATCH_DELAY_MS", "250")
    monkeypatch.setenv("SCAN_MIN_CELL_DEG", "0.001")
    monkeypatch.delenv("SCAN_MAX_GRID", raising=False)
    s = ScannerSettings.from_env()
    assert s.google_maps_api_key == "abc"
    assert s.batch_size == 4
    assert s.batch_delay_s == 0.25
    assert s.min_cell_size_deg == 0.001
    assert s.max_grid == 8


def test_blank_values_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("SCAN_BATCH_SIZE", "  ")
    assert ScannerSettings.from_env().batch_size == DEFAULT_BATCH_SIZE


@pytest.mark.parametrize("name,value", [
    ("SCAN_BATCH_SIZE", "ten"),
    ("SCAN_BATCH_SIZE", "0"),
    ("SCAN_MAX_GRID", "0"),
    ("SCAN_MIN_CELL_DEG", "-1"),
])
def test_invalid_values_rejected(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        ScannerSettings.from_env()
