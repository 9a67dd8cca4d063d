"""Point-driven spectral index time series colored by each observation's RGB composite."""

from .rgb_timeseries import (
    BackendUnavailableError,
    ChartData,
    ChartOptions,
    EmptyResultWarning,
    InvalidVisParamsError,
    Observation,
    RenderJob,
    RenderOptions,
    VisParams,
    build_chart_data,
    build_figure,
    render_time_series,
)
from .sinks import ConsoleSink, PanelSink

__all__ = [
    "BackendUnavailableError",
    "ChartData",
    "ChartOptions",
    "ConsoleSink",
    "EmptyResultWarning",
    "InvalidVisParamsError",
    "Observation",
    "PanelSink",
    "RenderJob",
    "RenderOptions",
    "VisParams",
    "build_chart_data",
    "build_figure",
    "render_time_series",
]
