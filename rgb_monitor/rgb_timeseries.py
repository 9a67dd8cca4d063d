from __future__ import annotations

import concurrent.futures
import math
import numbers
import threading
import warnings
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from functools import partial
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd
import plotly.graph_objects as go

from .config import MAX_PIXELS, RENDER_TIMEOUT_SECONDS, WORKER_CAP, logger

PROCESSING_MESSAGE = "⚙️ Processing, please wait."
DEFAULT_REDUCER = "first"


class InvalidVisParamsError(ValueError):
    """Raised when RGB visualization parameters cannot be used for color scaling."""


class BackendUnavailableError(RuntimeError):
    """Raised when the region reduction round trip fails or times out."""


class EmptyResultWarning(UserWarning):
    """Issued when no observation survives filtering; the chart is rendered empty."""


@dataclass(frozen=True)
class Observation:
    timestamp: int
    values: Mapping[str, Optional[float]]
    label: str = ""

    def labelled(self, band: str) -> "Observation":
        return replace(self, label=compose_label(band, self.timestamp))


@dataclass(frozen=True)
class VisParams:
    """Band-to-channel assignment and stretch range for RGB color encoding.

    ``gamma`` is accepted so that dataset presets can be passed through
    unchanged, but chart colors are a linear stretch and never use it.
    """

    bands: Tuple[str, str, str]
    min: Tuple[float, float, float]
    max: Tuple[float, float, float]
    gamma: Optional[Tuple[float, ...]] = None

    def __post_init__(self) -> None:
        if len(self.bands) != 3 or not all(isinstance(b, str) and b for b in self.bands):
            raise InvalidVisParamsError(f"Expected three band names, got {list(self.bands)!r}")
        for name in ("min", "max"):
            values = getattr(self, name)
            if len(values) != 3:
                raise InvalidVisParamsError(f"Expected three {name} values, got {list(values)!r}")
            for value in values:
                if isinstance(value, bool) or not isinstance(value, numbers.Real) or not math.isfinite(value):
                    raise InvalidVisParamsError(f"{name} values must be finite numbers, got {value!r}")
        for band, lo, hi in zip(self.bands, self.min, self.max):
            if lo >= hi:
                raise InvalidVisParamsError(
                    f"min must be less than max for band {band!r} (min={lo}, max={hi})"
                )

    @classmethod
    def from_mapping(cls, params: Mapping[str, Any]) -> "VisParams":
        if not isinstance(params, Mapping):
            raise InvalidVisParamsError("Visualization parameters must be a mapping")
        try:
            bands = params["bands"]
            minimum = params["min"]
            maximum = params["max"]
        except KeyError as exc:
            raise InvalidVisParamsError(f"Visualization parameters missing {exc.args[0]!r}") from exc
        if isinstance(bands, str):
            bands = [b.strip() for b in bands.split(",")]
        gamma = params.get("gamma")
        return cls(
            bands=tuple(bands),
            min=_triple(minimum, "min"),
            max=_triple(maximum, "max"),
            gamma=_triple(gamma, "gamma") if gamma is not None else None,
        )

    @classmethod
    def coerce(cls, params: Union["VisParams", Mapping[str, Any]]) -> "VisParams":
        if isinstance(params, cls):
            return params
        return cls.from_mapping(params)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "bands": list(self.bands),
            "min": list(self.min),
            "max": list(self.max),
        }
        if self.gamma is not None:
            payload["gamma"] = list(self.gamma)
        return payload


def _triple(value: Any, name: str) -> Tuple[Any, ...]:
    # A scalar stretches all three channels alike.
    if isinstance(value, numbers.Real) and not isinstance(value, bool):
        return (value, value, value)
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        raise InvalidVisParamsError(f"{name} must be a number or a sequence of three numbers")
    return tuple(value)


def scale_to_byte(value: float, minimum: float, maximum: float) -> int:
    if not (math.isfinite(minimum) and math.isfinite(maximum)):
        raise InvalidVisParamsError(f"Stretch bounds must be finite, got [{minimum}, {maximum}]")
    if maximum <= minimum:
        raise InvalidVisParamsError(f"Cannot stretch over an empty range [{minimum}, {maximum}]")
    clamped = min(max(value, minimum), maximum)
    return int(math.floor((clamped - minimum) / (maximum - minimum) * 255 + 0.5))


def rgb_to_hex(rgb: Sequence[int]) -> str:
    if len(rgb) != 3:
        raise ValueError(f"Expected an RGB triple, got {list(rgb)!r}")
    for component in rgb:
        if not 0 <= int(component) <= 255:
            raise ValueError(f"RGB component out of range: {component!r}")
    return "#" + "".join(f"{int(component):02x}" for component in rgb)


def hex_to_rgb(color: str) -> Tuple[int, int, int]:
    text = color.strip().lstrip("#")
    if len(text) != 6:
        raise ValueError(f"Expected a #rrggbb color, got {color!r}")
    return int(text[0:2], 16), int(text[2:4], 16), int(text[4:6], 16)


def compose_label(band: str, timestamp: int) -> str:
    date_value = datetime.fromtimestamp(timestamp / 1000.0, tz=timezone.utc)
    return f"{band} {date_value.strftime('%Y-%m-%d')}"


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    try:
        return math.isnan(float(value))
    except (TypeError, ValueError):
        return True


@dataclass(frozen=True)
class ChartPoint:
    timestamp: int
    value: float
    label: str
    color: str
    rgb: Tuple[int, int, int]


@dataclass(frozen=True)
class ChartData:
    y_axis_band: str
    points: Tuple[ChartPoint, ...] = ()

    @property
    def colors(self) -> List[str]:
        return [point.color for point in self.points]

    def __len__(self) -> int:
        return len(self.points)

    def to_frame(self) -> pd.DataFrame:
        columns = ["date", "timestamp", self.y_axis_band, "label", "color", "red", "green", "blue"]
        if not self.points:
            return pd.DataFrame(columns=columns)
        rows = [
            {
                "date": pd.to_datetime(point.timestamp, unit="ms", utc=True),
                "timestamp": point.timestamp,
                self.y_axis_band: point.value,
                "label": point.label,
                "color": point.color,
                "red": point.rgb[0],
                "green": point.rgb[1],
                "blue": point.rgb[2],
            }
            for point in self.points
        ]
        return pd.DataFrame(rows, columns=columns)

    def to_records(self) -> List[Dict[str, Any]]:
        return [
            {
                "timestamp": point.timestamp,
                "date": datetime.fromtimestamp(point.timestamp / 1000.0, tz=timezone.utc)
                .isoformat()
                .replace("+00:00", "Z"),
                "value": point.value,
                "label": point.label,
                "color": point.color,
                "rgb": list(point.rgb),
            }
            for point in self.points
        ]


def build_chart_data(observations: Iterable[Observation], y_axis_band: str,
                     vis_params: Union[VisParams, Mapping[str, Any]]) -> ChartData:
    """Filter, scale and color observations; points and colors come from one pass."""

    vis = VisParams.coerce(vis_params)
    required = (y_axis_band,) + tuple(vis.bands)

    points: List[ChartPoint] = []
    skipped = 0
    for observation in observations:
        values = [observation.values.get(band) for band in required]
        if any(_is_missing(value) for value in values):
            skipped += 1
            continue
        rgb = tuple(
            scale_to_byte(float(value), lo, hi)
            for value, lo, hi in zip(values[1:], vis.min, vis.max)
        )
        points.append(
            ChartPoint(
                timestamp=int(observation.timestamp),
                value=float(values[0]),
                label=observation.label or compose_label(y_axis_band, observation.timestamp),
                color=rgb_to_hex(rgb),
                rgb=rgb,  # type: ignore[arg-type]
            )
        )

    if skipped:
        logger.debug("Dropped %s observations with missing %s values", skipped, list(required))
    if not points:
        warnings.warn(
            f"No observations with values for {list(required)}; chart will be empty",
            EmptyResultWarning,
            stacklevel=2,
        )
    return ChartData(y_axis_band=y_axis_band, points=tuple(points))


_CHART_KEYS = {
    "pointSize": "point_size",
    "legend": "legend",
    "hAxis": "h_axis",
    "vAxis": "v_axis",
    "explorer": "explorer",
    "interpolateNulls": "interpolate_nulls",
    "colors": "colors",
}


@dataclass
class ChartOptions:
    point_size: Optional[int] = None
    legend: Optional[Union[bool, str, Dict[str, Any]]] = None
    h_axis: Optional[Dict[str, Any]] = None
    v_axis: Optional[Dict[str, Any]] = None
    explorer: Optional[Dict[str, Any]] = None
    interpolate_nulls: Optional[bool] = None
    colors: Optional[List[str]] = None

    @classmethod
    def defaults(cls, y_axis_band: str) -> "ChartOptions":
        return cls(
            point_size=10,
            legend={"position": "none"},
            h_axis={"title": "Date", "titleTextStyle": {"italic": False, "bold": True}},
            v_axis={"title": y_axis_band, "titleTextStyle": {"italic": False, "bold": True}},
            interpolate_nulls=True,
        )

    @classmethod
    def from_mapping(cls, params: Optional[Mapping[str, Any]]) -> "ChartOptions":
        if not params:
            return cls()
        kwargs: Dict[str, Any] = {}
        for key, value in params.items():
            attribute = _CHART_KEYS.get(key)
            if attribute is None and key in _CHART_KEYS.values():
                attribute = key
            if attribute is None:
                logger.debug("Ignoring unsupported chart option %s", key)
                continue
            kwargs[attribute] = value
        return cls(**kwargs)

    def overlay(self, overrides: Optional["ChartOptions"]) -> "ChartOptions":
        if overrides is None:
            return replace(self)
        merged = {
            item.name: getattr(overrides, item.name)
            if getattr(overrides, item.name) is not None
            else getattr(self, item.name)
            for item in fields(self)
        }
        return ChartOptions(**merged)


@dataclass
class RenderOptions:
    reducer: Optional[str] = None
    crs: Optional[str] = None
    scale: Optional[float] = None
    max_pixels: Optional[float] = None
    chart: Optional[ChartOptions] = None

    @classmethod
    def from_mapping(cls, params: Optional[Mapping[str, Any]]) -> "RenderOptions":
        if not params:
            return cls()
        chart_params = params.get("chartParams", params.get("chart"))
        if isinstance(chart_params, ChartOptions):
            chart = chart_params
        else:
            chart = ChartOptions.from_mapping(chart_params) if chart_params is not None else None
        return cls(
            reducer=params.get("reducer"),
            crs=params.get("crs"),
            scale=params.get("scale"),
            max_pixels=params.get("maxPixels", params.get("max_pixels")),
            chart=chart,
        )

    @classmethod
    def coerce(cls, params: Union["RenderOptions", Mapping[str, Any], None]) -> "RenderOptions":
        if isinstance(params, cls):
            return params
        return cls.from_mapping(params)

    def resolve(self, y_axis_band: str) -> "RenderOptions":
        """Overlay these options onto the defaults; crs and scale may stay unset."""

        return RenderOptions(
            reducer=self.reducer if self.reducer is not None else DEFAULT_REDUCER,
            crs=self.crs,
            scale=self.scale,
            max_pixels=self.max_pixels if self.max_pixels is not None else MAX_PIXELS,
            chart=ChartOptions.defaults(y_axis_band).overlay(self.chart),
        )


def _axis_title(axis: Optional[Dict[str, Any]]) -> Optional[str]:
    if not axis or axis.get("title") is None:
        return None
    title = str(axis["title"])
    style = axis.get("titleTextStyle") or {}
    if style.get("bold"):
        title = f"<b>{title}</b>"
    if style.get("italic"):
        title = f"<i>{title}</i>"
    return title


def _legend_position(legend: Union[bool, str, Dict[str, Any], None]) -> str:
    if legend is None or legend is False:
        return "none"
    if legend is True:
        return "right"
    if isinstance(legend, str):
        return legend
    return legend.get("position", "right")


def build_figure(chart_data: ChartData, chart_options: Optional[ChartOptions] = None) -> go.Figure:
    """Scatter chart with one trace per label group and per-point palette colors."""

    options = ChartOptions.defaults(chart_data.y_axis_band).overlay(chart_options)
    # Caller-supplied colors never apply; the palette is derived from the points.
    options = replace(options, colors=chart_data.colors)

    groups: Dict[str, List[ChartPoint]] = {}
    for point in chart_data.points:
        groups.setdefault(point.label, []).append(point)

    fig = go.Figure()
    for label, group in groups.items():
        fig.add_trace(
            go.Scatter(
                x=[pd.to_datetime(point.timestamp, unit="ms", utc=True) for point in group],
                y=[point.value for point in group],
                mode="markers",
                name=label,
                connectgaps=bool(options.interpolate_nulls),
                marker=dict(
                    size=options.point_size,
                    color=[point.color for point in group],
                    line=dict(width=0),
                ),
                customdata=[[point.color] for point in group],
                hovertemplate=(
                    f"<b>{label}</b><br><b>{chart_data.y_axis_band}:</b> %{{y:.3f}}"
                    "<br><b>RGB:</b> %{customdata[0]}<extra></extra>"
                ),
            )
        )

    legend_position = _legend_position(options.legend)
    fig.update_layout(
        showlegend=legend_position != "none",
        xaxis_title=_axis_title(options.h_axis),
        yaxis_title=_axis_title(options.v_axis),
        hovermode="closest",
        height=360,
        margin=dict(l=60, r=20, t=30, b=50),
    )
    if legend_position in {"top", "bottom"}:
        fig.update_layout(
            legend=dict(
                orientation="h",
                yanchor="bottom" if legend_position == "top" else "top",
                y=1.02 if legend_position == "top" else -0.2,
            )
        )
    if options.explorer is not None:
        fig.update_layout(dragmode="pan")
        if options.explorer.get("axis") == "horizontal":
            fig.update_yaxes(fixedrange=True)
        elif options.explorer.get("axis") == "vertical":
            fig.update_xaxes(fixedrange=True)
    else:
        fig.update_xaxes(fixedrange=True)
        fig.update_yaxes(fixedrange=True)
    return fig


@dataclass
class RenderResult:
    chart: ChartData
    figure: go.Figure
    options: RenderOptions = field(repr=False, default_factory=RenderOptions)


class ChartSink:
    """Display target shared by successive renders.

    Every render claims a new generation; results and errors from an older
    generation are dropped so the last render started is the one displayed.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._generation = 0
        self._pending: Optional[concurrent.futures.Future] = None

    @property
    def generation(self) -> int:
        return self._generation

    def begin(self, message: str = PROCESSING_MESSAGE) -> int:
        with self._lock:
            self._generation += 1
            if self._pending is not None and self._pending.cancel():
                logger.debug("Cancelled superseded render before it started")
            self._pending = None
            self.clear()
            self.show_message(message)
            return self._generation

    def attach(self, token: int, future: concurrent.futures.Future) -> None:
        with self._lock:
            if token == self._generation:
                self._pending = future

    def is_current(self, token: int) -> bool:
        with self._lock:
            return token == self._generation

    def deliver(self, token: int, result: RenderResult) -> bool:
        with self._lock:
            if token != self._generation:
                logger.debug("Discarding stale render result (generation %s < %s)", token, self._generation)
                return False
            self._pending = None
            self.clear()
            self.show_chart(result)
            return True

    def fail(self, token: int, message: str) -> bool:
        with self._lock:
            if token != self._generation:
                logger.debug("Discarding stale render error (generation %s < %s)", token, self._generation)
                return False
            self._pending = None
            self.clear()
            self.show_error(message)
            return True

    def clear(self) -> None:
        raise NotImplementedError

    def show_message(self, message: str) -> None:
        raise NotImplementedError

    def show_chart(self, result: RenderResult) -> None:
        raise NotImplementedError

    def show_error(self, message: str) -> None:
        raise NotImplementedError


class RenderJob:
    """Handle on one render; `result` returns once the sink has been updated."""

    def __init__(self, sink: ChartSink, token: int, future: concurrent.futures.Future) -> None:
        self.sink = sink
        self.token = token
        self.future = future
        self.settled = threading.Event()

    @property
    def superseded(self) -> bool:
        return not self.sink.is_current(self.token)

    def done(self) -> bool:
        return self.future.done()

    def cancel(self) -> bool:
        return self.future.cancel()

    def result(self, timeout: Optional[float] = RENDER_TIMEOUT_SECONDS) -> RenderResult:
        try:
            value = self.future.result(timeout=timeout)
        except concurrent.futures.CancelledError:
            raise
        except concurrent.futures.TimeoutError as exc:
            message = f"Region reduction timed out after {timeout} seconds"
            logger.warning(message)
            self.sink.fail(self.token, f"❌ {message}")
            raise BackendUnavailableError(message) from exc
        except Exception:
            self.settled.wait(timeout)
            raise
        self.settled.wait(timeout)
        return value


_EXECUTOR: Optional[concurrent.futures.ThreadPoolExecutor] = None
_EXECUTOR_LOCK = threading.Lock()


def _default_executor() -> concurrent.futures.ThreadPoolExecutor:
    global _EXECUTOR
    with _EXECUTOR_LOCK:
        if _EXECUTOR is None:
            _EXECUTOR = concurrent.futures.ThreadPoolExecutor(
                max_workers=WORKER_CAP, thread_name_prefix="rgb-render"
            )
        return _EXECUTOR


def _reduce_and_build(backend: Any, collection: Any, region: Any, y_axis_band: str,
                      vis: VisParams, options: RenderOptions) -> RenderResult:
    bands = [y_axis_band] + [band for band in vis.bands if band != y_axis_band]
    try:
        crs, scale = options.crs, options.scale
        if crs is None or scale is None:
            native_crs, native_scale = backend.native_projection(collection)
            crs = crs if crs is not None else native_crs
            scale = scale if scale is not None else native_scale
        options = replace(options, crs=crs, scale=scale)
        logger.info(
            "Reducing collection over region: bands=%s reducer=%s crs=%s scale=%s",
            bands,
            options.reducer,
            crs,
            scale,
        )
        observations = backend.reduce_region(
            collection,
            region,
            bands,
            reducer=options.reducer,
            crs=crs,
            scale=scale,
            best_effort=True,
            max_pixels=options.max_pixels,
        )
    except BackendUnavailableError:
        raise
    except Exception as exc:
        logger.exception("Region reduction failed")
        raise BackendUnavailableError(f"Region reduction failed: {exc}") from exc

    labelled = [observation.labelled(y_axis_band) for observation in observations]
    chart = build_chart_data(labelled, y_axis_band, vis)
    logger.info("Chart built with %s of %s observations", len(chart), len(labelled))
    return RenderResult(chart=chart, figure=build_figure(chart, options.chart), options=options)


def _complete_render(future: concurrent.futures.Future, job: RenderJob) -> None:
    try:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            job.sink.fail(job.token, f"❌ {exc}")
            return
        job.sink.deliver(job.token, future.result())
    finally:
        job.settled.set()


def render_time_series(collection: Any, region: Any, y_axis_band: str,
                       vis_params: Union[VisParams, Mapping[str, Any]], sink: ChartSink,
                       options: Union[RenderOptions, Mapping[str, Any], None] = None, *,
                       backend: Any,
                       executor: Optional[concurrent.futures.Executor] = None) -> RenderJob:
    """Chart a multi-band image time series with points colored by an RGB band stretch.

    Visualization parameters are validated before the sink or the backend is
    touched. The sink shows a processing message right away and receives the
    chart (or an error message) when the backend reduction completes, unless
    another render on the same sink started in the meantime.
    """

    if not y_axis_band:
        raise ValueError("A Y-axis band name is required")
    vis = VisParams.coerce(vis_params)
    resolved = RenderOptions.coerce(options).resolve(y_axis_band)

    token = sink.begin(PROCESSING_MESSAGE)
    pool = executor or _default_executor()
    future = pool.submit(_reduce_and_build, backend, collection, region, y_axis_band, vis, resolved)
    sink.attach(token, future)
    job = RenderJob(sink, token, future)
    future.add_done_callback(partial(_complete_render, job=job))
    return job
