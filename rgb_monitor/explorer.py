from __future__ import annotations

import concurrent.futures
import math
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from shapely import affinity
from shapely.geometry import Point, box
from shapely.geometry.base import BaseGeometry

from .chips import CHIP_DIMENSIONS, Chip
from .config import GDAL_HTTP_TIMEOUT, MAX_PIXELS, WORKER_CAP, load_token_from_env, logger
from .rgb_timeseries import BackendUnavailableError, ChartSink, RenderJob, render_time_series
from .sensors import get_sensor
from .session import ExplorerSession

AOI_RADIUS_METERS = 45
METERS_PER_DEGREE = 111320.0


def buffer_point(lon: float, lat: float, meters: float) -> BaseGeometry:
    """Approximate a metric circle around a lon/lat point as an EPSG:4326 polygon."""

    radius_deg = meters / METERS_PER_DEGREE
    circle = Point(lon, lat).buffer(radius_deg, 32)
    lon_factor = 1.0 / max(math.cos(math.radians(lat)), 1e-6)
    return affinity.scale(circle, xfact=lon_factor, yfact=1.0, origin=(lon, lat))


def chip_box(lon: float, lat: float, width_km: float) -> BaseGeometry:
    half_lat = (width_km * 1000.0 / 2.0) / METERS_PER_DEGREE
    half_lon = half_lat / max(math.cos(math.radians(lat)), 1e-6)
    return box(lon - half_lon, lat - half_lat, lon + half_lon, lat + half_lat)


def create_backend(name: str) -> Any:
    if name == "hls":
        from .hls_backend import HlsBackend

        return HlsBackend(token=load_token_from_env() or None, worker_cap=WORKER_CAP,
                          http_timeout=GDAL_HTTP_TIMEOUT)
    if name == "earthengine":
        from .ee_backend import EarthEngineBackend

        return EarthEngineBackend(http_timeout=GDAL_HTTP_TIMEOUT)
    raise KeyError(f"Unknown backend {name!r}")


@dataclass
class GraphicsJob:
    chart: RenderJob
    chips: concurrent.futures.Future
    aoi: BaseGeometry
    chip_region: BaseGeometry
    start: date
    end: date

    def chip_results(self, timeout: Optional[float] = None) -> List[Chip]:
        try:
            return self.chips.result(timeout=timeout)
        except concurrent.futures.CancelledError:
            return []

    def wait(self, timeout: Optional[float] = None) -> Tuple[List[Chip], Optional[str]]:
        """Wait for the chart, then the chips.

        Chart failures are already shown by the chart sink. Only a chip
        failure comes back, as a notice for the page.
        """

        try:
            self.chart.result(timeout=timeout)
        except concurrent.futures.CancelledError:
            logger.info("Chart render was superseded")
        except Exception as exc:
            logger.warning("Chart render failed: %s", exc)
        try:
            return self.chip_results(timeout=timeout), None
        except Exception as exc:
            logger.exception("Image chips failed")
            return [], f"Image chips unavailable: {exc}"


class Explorer:
    """Turns a map click plus sidebar options into a chart render and image chips."""

    def __init__(self, chart_sink: ChartSink, backends: Optional[Mapping[str, Any]] = None,
                 backend_factory: Callable[[str], Any] = create_backend,
                 executor: Optional[concurrent.futures.Executor] = None) -> None:
        self.chart_sink = chart_sink
        self._backends: Dict[str, Any] = dict(backends or {})
        self._backend_factory = backend_factory
        self._executor = executor
        self._chips_future: Optional[concurrent.futures.Future] = None

    def backend(self, name: str) -> Any:
        if name not in self._backends:
            logger.info("Creating %s backend", name)
            self._backends[name] = self._backend_factory(name)
        return self._backends[name]

    def _pool(self) -> concurrent.futures.Executor:
        if self._executor is None:
            self._executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=max(2, WORKER_CAP), thread_name_prefix="rgb-explorer"
            )
        return self._executor

    def render_graphics(self, session: ExplorerSession, today: Optional[date] = None) -> GraphicsJob:
        sensor = get_sensor(session.sensor)
        y_band = sensor.band_for(session.index)
        vis_params = sensor.vis_params(session.rgb)
        aoi = buffer_point(session.lon, session.lat, AOI_RADIUS_METERS)
        chip_region = chip_box(session.lon, session.lat, session.chip_width)
        start, end = session.date_range(today)
        logger.info(
            "render_graphics: sensor=%s index=%s rgb=%s lon=%.5f lat=%.5f %s..%s cloud<%s",
            sensor.name,
            session.index,
            session.rgb,
            session.lon,
            session.lat,
            start,
            end,
            session.cloud,
        )

        backend = self.backend(sensor.backend)
        try:
            collection = backend.build_collection(sensor, chip_region, start, end, session.cloud)
        except Exception as exc:
            logger.exception("Collection build failed for %s", sensor.name)
            message = f"Could not load {sensor.name} imagery: {exc}"
            token = self.chart_sink.begin()
            self.chart_sink.fail(token, f"❌ {message}")
            raise BackendUnavailableError(message) from exc

        options = {
            "reducer": "mean",
            "crs": sensor.crs,
            "scale": sensor.scale,
            "maxPixels": MAX_PIXELS,
            "chartParams": {
                "pointSize": 11,
                "legend": "none",
                "vAxis": {"title": session.index, "titleTextStyle": {"bold": True}},
                "explorer": {"axis": "horizontal"},
            },
        }
        pool = self._pool()
        chart_job = render_time_series(
            collection,
            aoi,
            y_band,
            vis_params,
            self.chart_sink,
            options,
            backend=backend,
            executor=pool,
        )

        if self._chips_future is not None:
            self._chips_future.cancel()
        chips_future = pool.submit(backend.chips, collection, chip_region, aoi, vis_params, CHIP_DIMENSIONS)
        self._chips_future = chips_future
        session.submit()
        return GraphicsJob(chart=chart_job, chips=chips_future, aoi=aoi, chip_region=chip_region,
                           start=start, end=end)
