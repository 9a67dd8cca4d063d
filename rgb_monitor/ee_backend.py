from __future__ import annotations

import threading
from datetime import date
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import ee
import requests
from shapely.geometry import mapping
from shapely.geometry.base import BaseGeometry

from .chips import AOI_COLOR, CHIP_DIMENSIONS, Chip
from .config import EE_PROJECT, logger
from .rgb_timeseries import Observation, VisParams
from .sensors import DERIVED_BANDS, SensorInfo

_REDUCERS = ("first", "mean", "median", "min", "max", "sum", "count")

_INIT_LOCK = threading.Lock()
_INITIALIZED = False


def initialize_earth_engine(project: Optional[str] = EE_PROJECT) -> None:
    """Initialize Earth Engine once per process, authenticating if needed."""

    global _INITIALIZED
    with _INIT_LOCK:
        if _INITIALIZED:
            return
        try:
            ee.Initialize(project=project)
        except Exception:
            logger.info("Earth Engine not initialized; authenticating")
            ee.Authenticate()
            ee.Initialize(project=project)
        _INITIALIZED = True
        logger.info("Earth Engine initialized (project=%s)", project)


def to_ee_geometry(region: BaseGeometry) -> ee.Geometry:
    return ee.Geometry(mapping(region))


def _add_derived_bands(sensor: SensorInfo):
    def add_bands(img):
        derived = [
            img.normalizedDifference([sensor.bands[first], sensor.bands[second]]).rename(name)
            for name, (first, second) in DERIVED_BANDS.items()
        ]
        return img.addBands(ee.Image.cat(derived))

    return add_bands


def _add_date(img):
    return img.set("date", img.date().format("YYYY-MM-dd"))


class EarthEngineBackend:
    """Server-side region reduction through the Earth Engine Python API."""

    def __init__(self, project: Optional[str] = EE_PROJECT, http_timeout: int = 30) -> None:
        self.project = project
        self.http_timeout = http_timeout

    def build_collection(self, sensor: SensorInfo, region: BaseGeometry, start: Union[str, date],
                         end: Union[str, date], max_cloud: float) -> ee.ImageCollection:
        initialize_earth_engine(self.project)
        geometry = to_ee_geometry(region)
        start_str = start.strftime("%Y-%m-%d") if isinstance(start, date) else str(start)
        end_str = end.strftime("%Y-%m-%d") if isinstance(end, date) else str(end)
        logger.info(
            "build_collection: dataset=%s start=%s end=%s max_cloud=%s",
            sensor.collections[0],
            start_str,
            end_str,
            max_cloud,
        )
        col = (
            ee.ImageCollection(sensor.collections[0])
            .filterBounds(geometry)
            .filterDate(start_str, end_str)
            .filter(ee.Filter.lt(sensor.cloud_property, max_cloud))
            .select(sensor.spectral_bands())
            .map(_add_derived_bands(sensor))
            .map(_add_date)
        )
        return ee.ImageCollection(col.distinct("date")).sort("system:time_start")

    def native_projection(self, collection: ee.ImageCollection) -> Tuple[Optional[str], Optional[float]]:
        initialize_earth_engine(self.project)
        if collection.size().getInfo() == 0:
            return None, None
        proj = collection.first().select(0).projection()
        return proj.crs().getInfo(), float(proj.nominalScale().getInfo())

    def reduce_region(self, collection: ee.ImageCollection, region: BaseGeometry, bands: Sequence[str], *,
                      reducer: str = "first", crs: Optional[str] = None, scale: Optional[float] = None,
                      best_effort: bool = True, max_pixels: Optional[float] = None) -> List[Observation]:
        if reducer not in _REDUCERS:
            raise ValueError(f"Unsupported reducer {reducer!r}; choose one of {', '.join(_REDUCERS)}")
        initialize_earth_engine(self.project)
        ee_reducer = getattr(ee.Reducer, reducer)()
        geometry = to_ee_geometry(region)
        band_list = list(dict.fromkeys(bands))

        def reduce_image(img):
            reduction = img.select(band_list).reduceRegion(
                reducer=ee_reducer,
                geometry=geometry,
                scale=scale,
                crs=crs,
                bestEffort=best_effort,
                maxPixels=max_pixels,
            )
            return ee.Feature(None, reduction).set("system:time_start", img.get("system:time_start"))

        info = ee.FeatureCollection(collection.map(reduce_image)).getInfo()
        observations: List[Observation] = []
        for feature in info.get("features", []):
            props: Dict[str, Any] = feature.get("properties") or {}
            observations.append(
                Observation(
                    timestamp=int(props.get("system:time_start")),
                    values={band: props.get(band) for band in band_list},
                )
            )
        logger.info("reduce_region: %s features returned", len(observations))
        return observations

    def chips(self, collection: ee.ImageCollection, chip_region: BaseGeometry, aoi: BaseGeometry,
              vis_params: VisParams, dimensions: int = CHIP_DIMENSIONS) -> List[Chip]:
        initialize_earth_engine(self.project)
        dates = collection.aggregate_array("date").sort().getInfo()
        aoi_img = (
            ee.Image()
            .byte()
            .paint(ee.FeatureCollection([ee.Feature(to_ee_geometry(aoi))]), 1, 2)
            .visualize(palette=["%02x%02x%02x" % AOI_COLOR])
        )
        region = to_ee_geometry(chip_region)
        visualize_args = vis_params.to_dict()

        chips: List[Chip] = []
        for chip_date in dates:
            img = collection.filter(ee.Filter.eq("date", chip_date)).first()
            url = img.visualize(**visualize_args).blend(aoi_img).getThumbURL(
                {
                    "region": region,
                    "dimensions": dimensions,
                    "crs": "EPSG:3857",
                    "format": "png",
                }
            )
            try:
                response = requests.get(url, timeout=self.http_timeout)
                response.raise_for_status()
            except Exception:
                logger.exception("Thumbnail download failed for %s", chip_date)
                continue
            chips.append(Chip(date=chip_date, image=response.content))
        return chips
