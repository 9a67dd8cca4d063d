"""Tests for the RGB-colored time series renderer using in-process fake backends."""

import concurrent.futures
import math
import threading

import pytest

from rgb_monitor.rgb_timeseries import (
    BackendUnavailableError,
    ChartOptions,
    EmptyResultWarning,
    InvalidVisParamsError,
    Observation,
    RenderOptions,
    VisParams,
    build_chart_data,
    build_figure,
    compose_label,
    hex_to_rgb,
    render_time_series,
    rgb_to_hex,
    scale_to_byte,
)
from rgb_monitor.sinks import ConsoleSink, PanelSink

DAY_MS = 86_400_000
GRAY_VIS = {"bands": ["R", "G", "B"], "min": [0, 0, 0], "max": [255, 255, 255]}


class FakeBackend:
    def __init__(self, observations=None, error=None, started=None, release=None):
        self.observations = observations or []
        self.error = error
        self.started = started
        self.release = release
        self.calls = []

    def native_projection(self, collection):
        return "EPSG:32610", 30.0

    def reduce_region(self, collection, region, bands, **kwargs):
        self.calls.append((list(bands), kwargs))
        if self.started is not None:
            self.started.set()
        if self.release is not None:
            assert self.release.wait(5)
        if self.error is not None:
            raise self.error
        return list(self.observations)


def _obs(day, **values):
    return Observation(timestamp=day * DAY_MS, values=values)


@pytest.fixture
def executor():
    pool = concurrent.futures.ThreadPoolExecutor(max_workers=2)
    yield pool
    pool.shutdown(wait=True)


def test_scale_to_byte_bounds_and_clamping():
    assert scale_to_byte(0, 0, 255) == 0
    assert scale_to_byte(255, 0, 255) == 255
    assert scale_to_byte(-10, 0, 255) == 0
    assert scale_to_byte(1000, 0, 255) == 255
    assert scale_to_byte(0.5, 0, 1) == 128
    assert scale_to_byte(2500, 100, 4500) == 139


def test_scale_to_byte_rejects_empty_range():
    with pytest.raises(InvalidVisParamsError):
        scale_to_byte(5, 10, 10)
    with pytest.raises(InvalidVisParamsError):
        scale_to_byte(0.5, -math.inf, 1)


def test_hex_encoding():
    assert rgb_to_hex((0, 128, 255)) == "#0080ff"
    assert rgb_to_hex((255, 255, 255)) == "#ffffff"
    assert hex_to_rgb("#0080ff") == (0, 128, 255)
    with pytest.raises(ValueError):
        rgb_to_hex((0, 256, 0))


def test_compose_label_uses_utc_date():
    assert compose_label("NBR", 0) == "NBR 1970-01-01"
    assert compose_label("B8", 1_600_000_000_000) == "B8 2020-09-13"


def test_vis_params_validation():
    vis = VisParams.from_mapping({"bands": "R, G, B", "min": 0, "max": 1})
    assert vis.bands == ("R", "G", "B")
    assert vis.min == (0, 0, 0)
    with pytest.raises(InvalidVisParamsError):
        VisParams.from_mapping({"bands": ["R", "G"], "min": 0, "max": 1})
    with pytest.raises(InvalidVisParamsError):
        VisParams.from_mapping({"bands": ["R", "G", "B"], "min": [0, 0, 5], "max": [1, 1, 5]})
    with pytest.raises(InvalidVisParamsError):
        VisParams.from_mapping({"bands": ["R", "G", "B"], "min": ["a", 0, 0], "max": 1})
    with pytest.raises(InvalidVisParamsError):
        VisParams.from_mapping({"bands": ["R", "G", "B"], "max": 1})
    with pytest.raises(InvalidVisParamsError, match="finite"):
        VisParams(bands=("R", "G", "B"), min=(-math.inf, 0, 0), max=(1, 1, 1))
    with pytest.raises(InvalidVisParamsError, match="finite"):
        VisParams.from_mapping({"bands": ["R", "G", "B"], "min": 0, "max": float("inf")})


def test_null_in_any_band_drops_point_and_color_together():
    observations = [
        _obs(1, Y=0.1, R=10, G=20, B=30),
        _obs(2, Y=0.2, R=None, G=20, B=30),
        _obs(3, Y=float("nan"), R=10, G=20, B=30),
        _obs(4, Y=0.4, R=255, G=0, B=0),
    ]
    chart = build_chart_data(observations, "Y", GRAY_VIS)

    assert [point.value for point in chart.points] == [0.1, 0.4]
    assert chart.colors == ["#0a141e", "#ff0000"]
    assert len(chart.colors) == len(chart)


def test_empty_input_warns_and_returns_empty_chart():
    with pytest.warns(EmptyResultWarning):
        chart = build_chart_data([], "Y", GRAY_VIS)
    assert len(chart) == 0
    assert chart.to_frame().empty


def test_y_band_may_also_be_a_color_band():
    chart = build_chart_data([_obs(1, R=255, G=0, B=0)], "R", GRAY_VIS)
    assert chart.points[0].value == 255
    assert chart.colors == ["#ff0000"]


def test_chart_options_falsy_override_applies():
    defaults = ChartOptions.defaults("NBR")
    merged = defaults.overlay(ChartOptions.from_mapping({"legend": False, "pointSize": 0}))
    assert merged.legend is False
    assert merged.point_size == 0
    assert merged.interpolate_nulls is True

    resolved = RenderOptions.from_mapping({"chartParams": {"legend": False}}).resolve("NBR")
    assert resolved.chart.legend is False
    assert resolved.reducer == "first"


def test_figure_colors_follow_points_not_caller_palette():
    chart = build_chart_data([_obs(1, Y=1, R=0, G=0, B=0), _obs(2, Y=2, R=255, G=255, B=255)], "Y", GRAY_VIS)
    options = ChartOptions.from_mapping({"colors": ["#123456"], "legend": {"position": "none"}})
    fig = build_figure(chart, options)

    colors = [color for trace in fig.data for color in trace.marker.color]
    assert colors == ["#000000", "#ffffff"]
    assert fig.layout.showlegend is False
    assert fig.layout.yaxis.title.text == "<b>Y</b>"


def test_explorer_horizontal_fixes_vertical_axis():
    chart = build_chart_data([_obs(1, Y=1, R=0, G=0, B=0)], "Y", GRAY_VIS)
    fig = build_figure(chart, ChartOptions(explorer={"axis": "horizontal"}, legend="none"))
    assert fig.layout.dragmode == "pan"
    assert fig.layout.yaxis.fixedrange is True
    assert not fig.layout.xaxis.fixedrange


def test_render_end_to_end_gray_ramp(executor):
    backend = FakeBackend([
        _obs(0, Y=0.1, R=0, G=0, B=0),
        _obs(1, Y=0.2, R=128, G=128, B=128),
        _obs(2, Y=0.3, R=255, G=255, B=255),
    ])
    sink = PanelSink()
    job = render_time_series("collection", "region", "Y", GRAY_VIS, sink, backend=backend, executor=executor)
    result = job.result(timeout=5)

    assert result.chart.colors == ["#000000", "#808080", "#ffffff"]
    assert [point.label for point in result.chart.points] == ["Y 1970-01-01", "Y 1970-01-02", "Y 1970-01-03"]
    assert sink.state == "ready"
    assert len(sink.widgets) == 1
    bands, kwargs = backend.calls[0]
    assert bands == ["Y", "R", "G", "B"]
    assert kwargs["crs"] == "EPSG:32610"
    assert kwargs["scale"] == 30.0
    assert kwargs["best_effort"] is True
    assert kwargs["reducer"] == "first"


def test_render_keeps_caller_crs_and_scale(executor):
    backend = FakeBackend([_obs(0, Y=1, R=1, G=1, B=1)])
    options = {"reducer": "mean", "crs": "EPSG:4326", "scale": 20, "maxPixels": 1e6}
    render_time_series("c", "r", "Y", GRAY_VIS, PanelSink(), options, backend=backend,
                       executor=executor).result(timeout=5)
    kwargs = backend.calls[0][1]
    assert (kwargs["crs"], kwargs["scale"], kwargs["reducer"], kwargs["max_pixels"]) == ("EPSG:4326", 20, "mean", 1e6)


def test_degenerate_vis_params_fail_before_backend_call(executor):
    backend = FakeBackend([_obs(0, Y=1, R=1, G=1, B=1)])
    sink = PanelSink()
    with pytest.raises(InvalidVisParamsError):
        render_time_series("c", "r", "Y", {"bands": ["R", "G", "B"], "min": 3, "max": 3}, sink,
                           backend=backend, executor=executor)
    assert backend.calls == []
    assert sink.state == "empty"


def test_backend_error_surfaces_on_sink(executor):
    backend = FakeBackend(error=RuntimeError("quota exceeded"))
    sink = PanelSink()
    job = render_time_series("c", "r", "Y", GRAY_VIS, sink, backend=backend, executor=executor)
    with pytest.raises(BackendUnavailableError):
        job.result(timeout=5)
    assert sink.state == "error"
    assert "quota exceeded" in sink.message


def test_processing_message_shown_while_running(executor):
    started, release = threading.Event(), threading.Event()
    sink = PanelSink()
    job = render_time_series("c", "r", "Y", GRAY_VIS, sink,
                             backend=FakeBackend([_obs(0, Y=1, R=1, G=1, B=1)], started=started, release=release),
                             executor=executor)
    assert started.wait(5)
    assert sink.state == "processing"
    assert sink.message.startswith("⚙️")
    release.set()
    job.result(timeout=5)
    assert sink.state == "ready"


@pytest.mark.parametrize("release_first_render_first", [True, False])
def test_superseded_render_never_reaches_sink(executor, release_first_render_first):
    first_started, first_release = threading.Event(), threading.Event()
    second_started, second_release = threading.Event(), threading.Event()
    first = FakeBackend([_obs(0, Y=1, R=0, G=0, B=0)], started=first_started, release=first_release)
    second = FakeBackend([_obs(0, Y=2, R=255, G=255, B=255)], started=second_started, release=second_release)
    sink = PanelSink()

    first_job = render_time_series("c", "r", "Y", GRAY_VIS, sink, backend=first, executor=executor)
    assert first_started.wait(5)
    second_job = render_time_series("c", "r", "Y", GRAY_VIS, sink, backend=second, executor=executor)
    assert second_started.wait(5)

    releases = [first_release, second_release] if release_first_render_first else [second_release, first_release]
    for event in releases:
        event.set()
    first_job.result(timeout=5)
    second_job.result(timeout=5)

    assert first_job.superseded
    assert not second_job.superseded
    assert sink.state == "ready"
    assert sink.chart.colors == ["#ffffff"]
    assert [point.value for point in sink.chart.points] == [2]


def test_superseded_render_is_cancelled_before_it_starts():
    pool = concurrent.futures.ThreadPoolExecutor(max_workers=1)
    gate = threading.Event()
    try:
        blocker = pool.submit(gate.wait, 5)
        sink = PanelSink()
        first_backend = FakeBackend([_obs(0, Y=1, R=0, G=0, B=0)])
        first_job = render_time_series("c", "r", "Y", GRAY_VIS, sink, backend=first_backend, executor=pool)
        second_job = render_time_series("c", "r", "Y", GRAY_VIS, sink,
                                        backend=FakeBackend([_obs(0, Y=2, R=9, G=9, B=9)]), executor=pool)
        assert first_job.future.cancelled()
        gate.set()
        blocker.result(timeout=5)
        result = second_job.result(timeout=5)
    finally:
        gate.set()
        pool.shutdown(wait=True)

    assert first_backend.calls == []
    assert result.chart.colors == ["#090909"]


def test_timeout_marks_sink_failed():
    release = threading.Event()
    pool = concurrent.futures.ThreadPoolExecutor(max_workers=1)
    sink = PanelSink()
    try:
        job = render_time_series("c", "r", "Y", GRAY_VIS, sink,
                                 backend=FakeBackend([_obs(0, Y=1, R=1, G=1, B=1)], release=release), executor=pool)
        with pytest.raises(BackendUnavailableError):
            job.result(timeout=0.05)
        assert sink.state == "error"
        assert "timed out" in sink.message
    finally:
        release.set()
        pool.shutdown(wait=True)


def test_console_sink_prints_table(executor, capsys):
    sink = ConsoleSink()
    render_time_series("c", "r", "Y", GRAY_VIS, sink,
                       backend=FakeBackend([_obs(0, Y=0.5, R=255, G=0, B=0)]), executor=executor).result(timeout=5)
    out = capsys.readouterr().out
    assert "Processing" in out
    assert "1970-01-01" in out
    assert "#ff0000" in out


def test_chart_records_carry_iso_dates():
    chart = build_chart_data([_obs(1, Y=0.25, R=0, G=0, B=0)], "Y", GRAY_VIS)
    record = chart.to_records()[0]
    assert record["date"] == "1970-01-02T00:00:00Z"
    assert record["color"] == "#000000"
    assert math.isclose(record["value"], 0.25)
