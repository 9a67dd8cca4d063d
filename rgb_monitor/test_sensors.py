import pytest

from rgb_monitor.sensors import (
    DEFAULT_INDEX,
    DEFAULT_RGB,
    DEFAULT_SENSOR,
    HLS_ASSETS,
    INDEX_NAMES,
    RGB_PRESETS,
    SENSORS,
    get_sensor,
    sensors_for_backend,
)


def test_defaults_are_valid_choices():
    assert DEFAULT_SENSOR in SENSORS
    assert DEFAULT_INDEX in INDEX_NAMES
    assert DEFAULT_RGB in RGB_PRESETS


def test_band_for_maps_indices_to_sensor_bands():
    s2 = get_sensor("Sentinel-2 SR")
    assert s2.band_for("NIR") == "B8"
    assert s2.band_for("NBR") == "NBR"
    assert get_sensor("Landsat-8 TOA").band_for("SWIR1") == "B6"
    with pytest.raises(KeyError, match="NBR"):
        s2.band_for("EVI")


def test_vis_params_scale_with_reflectance():
    l8 = get_sensor("Landsat-8 TOA").vis_params("SWIR1/NIR/GREEN")
    assert l8.bands == ("B6", "B5", "B3")
    assert l8.max[0] == pytest.approx(0.45)
    hls = get_sensor("HLS (both)").vis_params("RED/GREEN/BLUE")
    assert hls.bands == ("Red", "Green", "Blue")
    assert hls.gamma == (1.2, 1.2, 1.2)


def test_unknown_names_list_choices():
    with pytest.raises(KeyError, match="HLS"):
        get_sensor("MODIS")
    with pytest.raises(KeyError, match="SWIR1/NIR/GREEN"):
        get_sensor("HLS Landsat").vis_params("TRUE")


def test_backend_grouping_and_hls_assets():
    assert sensors_for_backend("hls") == ["HLS (both)", "HLS Sentinel-2", "HLS Landsat"]
    assert set(sensors_for_backend("earthengine")) == {"Sentinel-2 SR", "Sentinel-2 TOA", "Landsat-8 TOA"}
    for sensor in SENSORS.values():
        if sensor.backend == "hls":
            for collection in sensor.collections:
                assert set(HLS_ASSETS[collection]) == set(sensor.spectral_bands())
