from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .rgb_timeseries import VisParams

INDEX_NAMES = ["NBR", "NDVI", "Blue", "Green", "Red", "NIR", "SWIR1", "SWIR2"]

# Normalized differences computed from the spectral bands of each image.
DERIVED_BANDS: Dict[str, Tuple[str, str]] = {
    "NBR": ("NIR", "SWIR2"),
    "NDVI": ("NIR", "Red"),
}

# Stretch ranges are surface reflectance scaled by 10000.
RGB_PRESETS: Dict[str, Dict[str, Tuple]] = {
    "SWIR1/NIR/GREEN": {
        "bands": ("SWIR1", "NIR", "Green"),
        "min": (100, 151, 50),
        "max": (4500, 4951, 2500),
        "gamma": (1, 1, 1),
    },
    "RED/GREEN/BLUE": {
        "bands": ("Red", "Green", "Blue"),
        "min": (0, 50, 50),
        "max": (2500, 2500, 2500),
        "gamma": (1.2, 1.2, 1.2),
    },
    "NIR/RED/GREEN": {
        "bands": ("NIR", "Red", "Green"),
        "min": (151, 0, 50),
        "max": (4951, 2500, 2500),
        "gamma": (1, 1, 1),
    },
    "NIR/SWIR1/RED": {
        "bands": ("NIR", "SWIR1", "Red"),
        "min": (151, 100, 50),
        "max": (4951, 4500, 2500),
        "gamma": (1, 1, 1),
    },
}

_SPECTRAL = ("Blue", "Green", "Red", "NIR", "SWIR1", "SWIR2")


@dataclass(frozen=True)
class SensorInfo:
    name: str
    backend: str
    collections: Tuple[str, ...]
    scale: float
    bands: Dict[str, str]
    cloud_property: str
    reflectance_scale: float = 1.0
    crs: Optional[str] = None

    def band_for(self, index: str) -> str:
        if index in DERIVED_BANDS:
            return index
        try:
            return self.bands[index]
        except KeyError:
            raise KeyError(f"Unknown index {index!r}; choose one of {', '.join(INDEX_NAMES)}") from None

    def spectral_bands(self) -> List[str]:
        return [self.bands[name] for name in _SPECTRAL]

    def vis_params(self, preset: str) -> VisParams:
        try:
            preset_values = RGB_PRESETS[preset]
        except KeyError:
            raise KeyError(f"Unknown RGB preset {preset!r}; choose one of {', '.join(RGB_PRESETS)}") from None
        return VisParams(
            bands=tuple(self.bands[name] for name in preset_values["bands"]),
            min=tuple(value * self.reflectance_scale for value in preset_values["min"]),
            max=tuple(value * self.reflectance_scale for value in preset_values["max"]),
            gamma=tuple(preset_values["gamma"]),
        )


# HLS bands are exposed under their common names; the backend maps them to
# the per-collection asset keys.
_HLS_BANDS = {name: name for name in _SPECTRAL}

HLS_ASSETS: Dict[str, Dict[str, str]] = {
    "HLSS30.v2.0": {
        "Blue": "B02",
        "Green": "B03",
        "Red": "B04",
        "NIR": "B8A",
        "SWIR1": "B11",
        "SWIR2": "B12",
    },
    "HLSL30.v2.0": {
        "Blue": "B02",
        "Green": "B03",
        "Red": "B04",
        "NIR": "B05",
        "SWIR1": "B06",
        "SWIR2": "B07",
    },
}

_S2_BANDS = {
    "Blue": "B2",
    "Green": "B3",
    "Red": "B4",
    "NIR": "B8",
    "SWIR1": "B11",
    "SWIR2": "B12",
}

_L8_BANDS = {
    "Blue": "B2",
    "Green": "B3",
    "Red": "B4",
    "NIR": "B5",
    "SWIR1": "B6",
    "SWIR2": "B7",
}

SENSORS: Dict[str, SensorInfo] = {
    sensor.name: sensor
    for sensor in (
        SensorInfo(
            name="HLS (both)",
            backend="hls",
            collections=("HLSS30.v2.0", "HLSL30.v2.0"),
            scale=30,
            bands=_HLS_BANDS,
            cloud_property="eo:cloud_cover",
        ),
        SensorInfo(
            name="HLS Sentinel-2",
            backend="hls",
            collections=("HLSS30.v2.0",),
            scale=30,
            bands=_HLS_BANDS,
            cloud_property="eo:cloud_cover",
        ),
        SensorInfo(
            name="HLS Landsat",
            backend="hls",
            collections=("HLSL30.v2.0",),
            scale=30,
            bands=_HLS_BANDS,
            cloud_property="eo:cloud_cover",
        ),
        SensorInfo(
            name="Sentinel-2 SR",
            backend="earthengine",
            collections=("COPERNICUS/S2_SR_HARMONIZED",),
            scale=20,
            bands=_S2_BANDS,
            cloud_property="CLOUDY_PIXEL_PERCENTAGE",
            crs="EPSG:4326",
        ),
        SensorInfo(
            name="Sentinel-2 TOA",
            backend="earthengine",
            collections=("COPERNICUS/S2_HARMONIZED",),
            scale=20,
            bands=_S2_BANDS,
            cloud_property="CLOUDY_PIXEL_PERCENTAGE",
            crs="EPSG:4326",
        ),
        SensorInfo(
            name="Landsat-8 TOA",
            backend="earthengine",
            collections=("LANDSAT/LC08/C02/T1_TOA",),
            scale=30,
            bands=_L8_BANDS,
            cloud_property="CLOUD_COVER",
            reflectance_scale=0.0001,
            crs="EPSG:4326",
        ),
    )
}

DEFAULT_SENSOR = "HLS (both)"
DEFAULT_INDEX = "NBR"
DEFAULT_RGB = "SWIR1/NIR/GREEN"


def get_sensor(name: str) -> SensorInfo:
    try:
        return SENSORS[name]
    except KeyError:
        raise KeyError(f"Unknown sensor {name!r}; choose one of {', '.join(SENSORS)}") from None


def sensors_for_backend(backend: str) -> List[str]:
    return [name for name, sensor in SENSORS.items() if sensor.backend == backend]
