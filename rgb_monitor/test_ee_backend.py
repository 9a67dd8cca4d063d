import pytest
from shapely.geometry import box

from rgb_monitor import ee_backend
from rgb_monitor.ee_backend import EarthEngineBackend, initialize_earth_engine


def test_unknown_reducer_rejected_before_earth_engine_is_touched(monkeypatch):
    def fail(*args, **kwargs):
        raise AssertionError("Earth Engine should not be initialized")

    monkeypatch.setattr(ee_backend, "initialize_earth_engine", fail)
    with pytest.raises(ValueError, match="mode"):
        EarthEngineBackend().reduce_region(None, box(0, 0, 1, 1), ["B8"], reducer="mode")


def test_initialize_authenticates_once_when_credentials_missing(monkeypatch):
    calls = []

    def fake_initialize(project=None):
        calls.append(("initialize", project))
        if len(calls) == 1:
            raise RuntimeError("Please authorize access to your Earth Engine account")

    monkeypatch.setattr(ee_backend, "_INITIALIZED", False)
    monkeypatch.setattr(ee_backend.ee, "Initialize", fake_initialize)
    monkeypatch.setattr(ee_backend.ee, "Authenticate", lambda: calls.append(("authenticate", None)))

    initialize_earth_engine("demo-project")
    initialize_earth_engine("demo-project")

    assert calls == [("initialize", "demo-project"), ("authenticate", None), ("initialize", "demo-project")]
