from __future__ import annotations

import concurrent.futures
import hashlib
import math
import threading
from collections import OrderedDict
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import rasterio
from affine import Affine
from pystac_client import Client
from rasterio.crs import CRS
from rasterio.enums import Resampling
from rasterio.features import geometry_mask
from rasterio.vrt import WarpedVRT
from rasterio.warp import transform_geom
from rasterio.windows import Window
from shapely.geometry import mapping, shape
from shapely.geometry.base import BaseGeometry

from .chips import CHIP_DIMENSIONS, Chip, compose_rgb, encode_png
from .config import GDAL_HTTP_TIMEOUT, WORKER_CAP, load_token_from_env, logger
from .rgb_timeseries import Observation, VisParams
from .sensors import DERIVED_BANDS, HLS_ASSETS, SensorInfo

STAC_URL = "https://cmr.earthdata.nasa.gov/stac/LPCLOUD"
STAC_PAGE_SIZE = 200
STAC_MAX_ITEMS = 2000
_STAC_MEMORY_CACHE_MAX_ENTRIES = 32
_STAC_RESULTS_CACHE: "OrderedDict[Tuple[Any, ...], Tuple[Dict[str, Any], ...]]" = OrderedDict()
_STAC_CACHE_LOCK = threading.Lock()

METERS_PER_DEGREE = 111320.0


def _stac_token_fingerprint(token: str) -> str:
    if not token:
        return "anon"
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _make_stac_memory_cache_key(
    bbox: Tuple[float, float, float, float],
    start: str,
    end: str,
    max_cc: float,
    collections: Tuple[str, ...],
    token: str,
) -> Tuple[Any, ...]:
    rounded_bbox = tuple(round(float(coord), 6) for coord in bbox)
    return (rounded_bbox, start, end, float(max_cc), collections, _stac_token_fingerprint(token))


def _get_stac_records_from_memory(cache_key: Tuple[Any, ...]) -> Optional[List[Dict[str, Any]]]:
    with _STAC_CACHE_LOCK:
        cached = _STAC_RESULTS_CACHE.get(cache_key)
        if cached is None:
            return None
        _STAC_RESULTS_CACHE.move_to_end(cache_key)
    return [dict(record) for record in cached]


def _set_stac_records_in_memory(cache_key: Tuple[Any, ...], records: List[Dict[str, Any]]) -> None:
    frozen = tuple(dict(record) for record in records)
    with _STAC_CACHE_LOCK:
        _STAC_RESULTS_CACHE[cache_key] = frozen
        _STAC_RESULTS_CACHE.move_to_end(cache_key)
        while len(_STAC_RESULTS_CACHE) > _STAC_MEMORY_CACHE_MAX_ENTRIES:
            _STAC_RESULTS_CACHE.popitem(last=False)


def _fetch_stac_records(
    bbox: Tuple[float, float, float, float],
    start: str,
    end: str,
    max_cc: float,
    collections: Tuple[str, ...],
    token: str,
) -> List[Dict[str, Any]]:
    cache_key = _make_stac_memory_cache_key(bbox, start, end, max_cc, collections, token)
    cached_records = _get_stac_records_from_memory(cache_key)
    if cached_records is not None:
        logger.debug("STAC in-memory cache hit: bbox=%s start=%s end=%s collections=%s", bbox, start, end, collections)
        return cached_records

    logger.debug("STAC in-memory cache miss: bbox=%s start=%s end=%s collections=%s", bbox, start, end, collections)

    catalog = Client.open(
        STAC_URL,
        headers={"Authorization": f"Bearer {token}"} if token else {},
    )

    records: List[Dict[str, Any]] = []
    for collection in collections:
        asset_keys = HLS_ASSETS[collection]
        search = catalog.search(
            collections=[collection],
            bbox=list(bbox),
            datetime=f"{start}/{end}",
            max_items=STAC_MAX_ITEMS,
            limit=STAC_PAGE_SIZE,
        )
        collected: List[Any] = []
        for item in search.items():
            collected.append(item)
            if len(collected) >= STAC_MAX_ITEMS:
                logger.warning(
                    "Reached STAC max items (%s) for %s; results truncated",
                    STAC_MAX_ITEMS,
                    collection,
                )
                break
        logger.debug("Collection %s returned %s items before filtering", collection, len(collected))

        for item in collected:
            props = item.properties
            cloud_cover = props.get("eo:cloud_cover", 100)
            if cloud_cover > max_cc:
                logger.debug(
                    "Skipping item %s: cloud cover %.2f exceeds threshold %s",
                    item.id,
                    cloud_cover,
                    max_cc,
                )
                continue

            assets = {
                band: getattr(item.assets.get(key), "href", None)
                for band, key in asset_keys.items()
            }
            missing = [band for band, href in assets.items() if not href]
            if missing:
                logger.debug("Skipping item %s: missing bands %s", item.id, missing)
                continue

            records.append(
                {
                    "id": item.id,
                    "datetime": pd.to_datetime(props["datetime"], utc=True),
                    "cloud_cover": float(cloud_cover),
                    "collection": collection,
                    "assets": assets,
                }
            )

    _set_stac_records_in_memory(cache_key, records)
    return records


def _as_date_string(value: Union[str, date, datetime]) -> str:
    if isinstance(value, (date, datetime)):
        return value.strftime("%Y-%m-%d")
    return str(value)


def search_scenes(region: BaseGeometry, start: Union[str, date], end: Union[str, date], max_cc: float,
                  collections: Sequence[str], token: str) -> pd.DataFrame:
    """Search HLS scenes via the STAC API, one scene per acquisition date."""

    bbox = tuple(float(coord) for coord in region.bounds)
    start_str, end_str = _as_date_string(start), _as_date_string(end)
    logger.info(
        "search_scenes: bbox=%s start=%s end=%s max_cc=%s collections=%s token_provided=%s",
        bbox,
        start_str,
        end_str,
        max_cc,
        list(collections),
        bool(token),
    )
    records = _fetch_stac_records(bbox, start_str, end_str, max_cc, tuple(collections), token)  # type: ignore[arg-type]
    columns = ["id", "datetime", "cloud_cover", "collection", "assets", "date"]
    if not records:
        return pd.DataFrame(columns=columns)

    df = pd.DataFrame(records)
    df["date"] = df["datetime"].dt.strftime("%Y-%m-%d")
    df = (
        df.sort_values("datetime", kind="stable")
        .drop_duplicates(subset=["date"], keep="first")
        .reset_index(drop=True)
    )
    logger.info("search_scenes: %s scenes after filtering", len(df))
    return df[columns]


REDUCERS: Dict[str, Callable[[np.ndarray], float]] = {
    "first": lambda values: values[0],
    "mean": np.mean,
    "median": np.median,
    "min": np.min,
    "max": np.max,
    "sum": np.sum,
    "count": lambda values: values.size,
}


def apply_reducer(reducer: str, data: np.ma.MaskedArray) -> Optional[float]:
    try:
        func = REDUCERS[reducer]
    except KeyError:
        raise ValueError(f"Unsupported reducer {reducer!r}; choose one of {', '.join(REDUCERS)}") from None
    valid = np.ma.compressed(data)
    valid = valid[np.isfinite(valid)]
    if reducer == "count":
        return float(valid.size)
    if valid.size == 0:
        return None
    return float(func(valid))


def _snap_window(window: Window, width: int, height: int) -> Optional[Window]:
    col_off = max(0, math.floor(window.col_off))
    row_off = max(0, math.floor(window.row_off))
    col_end = min(width, math.ceil(window.col_off + window.width))
    row_end = min(height, math.ceil(window.row_off + window.height))
    if col_end <= col_off or row_end <= row_off:
        return None
    return Window(col_off, row_off, col_end - col_off, row_end - row_off)


def _target_shape(window: Window, resolution: float, geographic: bool, scale: Optional[float],
                  best_effort: bool, max_pixels: Optional[float],
                  dimensions: Optional[int] = None) -> Tuple[int, int]:
    height, width = int(window.height), int(window.width)
    factor = 1.0
    if dimensions:
        factor = dimensions / max(height, width)
    elif scale:
        target = scale / METERS_PER_DEGREE if geographic else float(scale)
        if target > resolution:
            factor = resolution / target
    out_height = max(1, int(math.ceil(height * factor)))
    out_width = max(1, int(math.ceil(width * factor)))

    if max_pixels and out_height * out_width > max_pixels:
        if not best_effort:
            raise ValueError(
                f"Region covers {out_height * out_width} pixels, more than maxPixels={max_pixels:g}"
            )
        shrink = math.sqrt(max_pixels / float(out_height * out_width))
        logger.warning(
            "Region covers %s pixels; sampling at %.3f of the requested resolution",
            out_height * out_width,
            shrink,
        )
        out_height = max(1, int(out_height * shrink))
        out_width = max(1, int(out_width * shrink))
    return out_height, out_width


def _read_from_dataset(dataset: Any, region: BaseGeometry, scale: Optional[float], best_effort: bool,
                       max_pixels: Optional[float], mask_outside: bool,
                       dimensions: Optional[int]) -> Optional[Tuple[np.ma.MaskedArray, Affine, CRS]]:
    geometry = shape(transform_geom("EPSG:4326", dataset.crs, mapping(region)))
    left, bottom, right, top = geometry.bounds
    left = max(left, dataset.bounds.left)
    right = min(right, dataset.bounds.right)
    bottom = max(bottom, dataset.bounds.bottom)
    top = min(top, dataset.bounds.top)
    if not (left < right and bottom < top):
        logger.warning("Region %s does not intersect raster bounds %s for %s", region.bounds, dataset.bounds, dataset.name)
        return None

    window = _snap_window(dataset.window(left, bottom, right, top), dataset.width, dataset.height)
    if window is None:
        logger.warning("Region %s produced empty window against raster %s", region.bounds, dataset.name)
        return None

    out_shape = _target_shape(
        window,
        abs(dataset.res[0]),
        bool(dataset.crs and dataset.crs.is_geographic),
        scale,
        best_effort,
        max_pixels,
        dimensions,
    )
    resampling = Resampling.nearest
    if out_shape[0] < window.height or out_shape[1] < window.width:
        resampling = Resampling.average
    data = dataset.read(1, window=window, out_shape=out_shape, masked=True, resampling=resampling)
    transform = dataset.window_transform(window) * Affine.scale(
        window.width / out_shape[1], window.height / out_shape[0]
    )

    if mask_outside:
        inside = geometry_mask(
            [mapping(geometry)],
            out_shape=out_shape,
            transform=transform,
            invert=True,
            all_touched=True,
        )
        data = np.ma.array(data, mask=np.ma.getmaskarray(data) | ~inside)
    return data, transform, dataset.crs


def read_region(href: str, region: BaseGeometry, *, crs: Optional[str] = None, scale: Optional[float] = None,
                best_effort: bool = True, max_pixels: Optional[float] = None, mask_outside: bool = True,
                dimensions: Optional[int] = None) -> Optional[Tuple[np.ma.MaskedArray, Affine, CRS]]:
    """Read one band over a WGS84 region, optionally warped into a working CRS.

    Returns the masked pixels, their affine transform and the pixel CRS, or
    None when the region misses the raster.
    """

    logger.debug("Opening %s", href)
    with rasterio.open(href) as src:
        if crs is not None and CRS.from_user_input(crs) != src.crs:
            with WarpedVRT(src, crs=CRS.from_user_input(crs), resampling=Resampling.bilinear) as vrt:
                return _read_from_dataset(vrt, region, scale, best_effort, max_pixels, mask_outside, dimensions)
        return _read_from_dataset(src, region, scale, best_effort, max_pixels, mask_outside, dimensions)


def _normalized_difference(first: np.ma.MaskedArray, second: np.ma.MaskedArray) -> np.ma.MaskedArray:
    first_data = first.astype("float32")
    second_data = second.astype("float32")
    with np.errstate(divide="ignore", invalid="ignore"):
        index = (first_data - second_data) / (first_data + second_data)
    combined_mask = np.ma.getmaskarray(first) | np.ma.getmaskarray(second) | ~np.isfinite(np.ma.getdata(index))
    return np.ma.array(np.ma.getdata(index), mask=combined_mask)


def _timestamp_millis(value: Any) -> int:
    return int(pd.Timestamp(value).value // 1_000_000)


class HlsBackend:
    """Region reduction over HLS v2.0 Cloud Optimized GeoTIFFs."""

    def __init__(self, token: Optional[str] = None, worker_cap: int = WORKER_CAP,
                 http_timeout: int = GDAL_HTTP_TIMEOUT) -> None:
        self.token = token if token is not None else load_token_from_env()
        self.worker_cap = max(1, int(worker_cap))
        self.http_timeout = http_timeout

    def _env_kwargs(self) -> Dict[str, object]:
        env_kwargs: Dict[str, object] = {
            "GDAL_DISABLE_READDIR_ON_OPEN": "EMPTY_DIR",
            "GDAL_HTTP_MULTIRANGE": "YES",
            "GDAL_HTTP_TIMEOUT": str(self.http_timeout),
            "GDAL_HTTP_MAX_RETRY": "3",
            "GDAL_HTTP_RETRY_DELAY": "1",
        }
        if self.token:
            env_kwargs["GDAL_HTTP_HEADERS"] = f"Authorization: Bearer {self.token}"
        else:
            logger.debug("No NASA token supplied; using default rasterio session")
        return env_kwargs

    def build_collection(self, sensor: SensorInfo, region: BaseGeometry, start: Union[str, date],
                         end: Union[str, date], max_cloud: float) -> pd.DataFrame:
        return search_scenes(region, start, end, max_cloud, sensor.collections, self.token)

    def native_projection(self, collection: pd.DataFrame) -> Tuple[Optional[str], Optional[float]]:
        if collection is None or collection.empty:
            return None, None
        assets = collection.iloc[0]["assets"]
        href = next(iter(assets.values()))
        with rasterio.Env(**self._env_kwargs()):
            with rasterio.open(href) as src:
                return src.crs.to_string(), float(abs(src.res[0]))

    def _reduce_scene(self, row: Dict[str, Any], region: BaseGeometry, bands: Sequence[str], reducer: str,
                      crs: Optional[str], scale: Optional[float], best_effort: bool,
                      max_pixels: Optional[float]) -> Observation:
        timestamp = _timestamp_millis(row["datetime"])
        assets: Dict[str, str] = row["assets"]

        needed: List[str] = []
        for band in bands:
            for source in DERIVED_BANDS.get(band, (band,)):
                if source not in needed:
                    needed.append(source)
        unknown = [band for band in needed if band not in assets]
        if unknown:
            raise ValueError(f"Scene {row.get('id')} has no bands {unknown}")

        pixels: Dict[str, np.ma.MaskedArray] = {}
        with rasterio.Env(**self._env_kwargs()):
            for band in needed:
                read = read_region(
                    assets[band],
                    region,
                    crs=crs,
                    scale=scale,
                    best_effort=best_effort,
                    max_pixels=max_pixels,
                )
                if read is None:
                    return Observation(timestamp=timestamp, values={band: None for band in bands})
                pixels[band] = read[0]

        shapes = {array.shape for array in pixels.values()}
        if len(shapes) > 1:
            logger.warning("Band windows differ in shape for scene %s: %s", row.get("id"), shapes)
            return Observation(timestamp=timestamp, values={band: None for band in bands})

        for band in bands:
            if band in DERIVED_BANDS and band not in pixels:
                first, second = DERIVED_BANDS[band]
                pixels[band] = _normalized_difference(pixels[first], pixels[second])

        values = {band: apply_reducer(reducer, pixels[band]) for band in bands}
        logger.debug("Reduced scene %s: %s", row.get("id"), values)
        return Observation(timestamp=timestamp, values=values)

    def reduce_region(self, collection: pd.DataFrame, region: BaseGeometry, bands: Sequence[str], *,
                      reducer: str = "first", crs: Optional[str] = None, scale: Optional[float] = None,
                      best_effort: bool = True, max_pixels: Optional[float] = None) -> List[Observation]:
        if reducer not in REDUCERS:
            raise ValueError(f"Unsupported reducer {reducer!r}; choose one of {', '.join(REDUCERS)}")
        if collection is None or collection.empty:
            return []

        rows = collection.to_dict("records")
        results: List[Optional[Observation]] = [None] * len(rows)
        failures = 0
        max_workers = max(1, min(self.worker_cap, len(rows)))
        logger.debug("Region reduction worker pool size=%s", max_workers)
        with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
            future_to_index = {
                executor.submit(
                    self._reduce_scene, row, region, bands, reducer, crs, scale, best_effort, max_pixels
                ): idx
                for idx, row in enumerate(rows)
            }
            completed = 0
            for future in concurrent.futures.as_completed(future_to_index):
                idx = future_to_index[future]
                completed += 1
                try:
                    results[idx] = future.result()
                except Exception:
                    failures += 1
                    logger.exception("Region reduction failed for scene %s", rows[idx].get("id"))
                    results[idx] = Observation(
                        timestamp=_timestamp_millis(rows[idx]["datetime"]),
                        values={band: None for band in bands},
                    )
                logger.info("Processing scene %s/%s (%s)", completed, len(rows), rows[idx].get("date"))

        if failures == len(rows):
            raise RuntimeError(f"Region reduction failed for all {failures} scenes")
        return [result for result in results if result is not None]

    def _render_chip(self, row: Dict[str, Any], chip_region: BaseGeometry, aoi: BaseGeometry,
                     vis_params: VisParams, dimensions: int) -> Optional[Chip]:
        assets: Dict[str, str] = row["assets"]
        channels: List[np.ma.MaskedArray] = []
        transform: Optional[Affine] = None
        pixel_crs = None
        with rasterio.Env(**self._env_kwargs()):
            for band in vis_params.bands:
                read = read_region(assets[band], chip_region, mask_outside=False, dimensions=dimensions)
                if read is None:
                    return None
                channels.append(read[0])
                transform = read[1]
                pixel_crs = read[2]

        if len({channel.shape for channel in channels}) > 1 or transform is None:
            logger.warning("Chip channels differ in shape for scene %s", row.get("id"))
            return None

        outline = None
        if aoi is not None and aoi.geom_type == "Polygon" and not aoi.is_empty:
            ring = shape(transform_geom("EPSG:4326", pixel_crs, mapping(aoi)))
            inverse = ~transform
            outline = [inverse * (x, y) for x, y in list(ring.exterior.coords)[:-1]]
        rgb = compose_rgb(channels, vis_params)
        return Chip(date=row["date"], image=encode_png(rgb, outline))

    def chips(self, collection: pd.DataFrame, chip_region: BaseGeometry, aoi: BaseGeometry,
              vis_params: VisParams, dimensions: int = CHIP_DIMENSIONS) -> List[Chip]:
        if collection is None or collection.empty:
            return []
        rows = sorted(collection.to_dict("records"), key=lambda record: record["date"])
        chips: List[Optional[Chip]] = [None] * len(rows)
        max_workers = max(1, min(self.worker_cap, len(rows)))
        with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
            future_to_index = {
                executor.submit(self._render_chip, row, chip_region, aoi, vis_params, dimensions): idx
                for idx, row in enumerate(rows)
            }
            for future in concurrent.futures.as_completed(future_to_index):
                idx = future_to_index[future]
                try:
                    chips[idx] = future.result()
                except Exception:
                    logger.exception("Chip rendering failed for scene %s", rows[idx].get("id"))
        return [chip for chip in chips if chip is not None]
