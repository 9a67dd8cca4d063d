from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Any, List, Optional, TextIO

import plotly.graph_objects as go

from .config import logger
from .rgb_timeseries import ChartData, ChartSink, RenderResult


@dataclass(frozen=True)
class Label:
    text: str
    kind: str = "info"


@dataclass(frozen=True)
class ChartWidget:
    result: RenderResult


class PanelSink(ChartSink):
    """Container holding at most one widget: a status label or a chart."""

    def __init__(self) -> None:
        super().__init__()
        self.widgets: List[Any] = []

    def clear(self) -> None:
        self.widgets = []

    def add(self, widget: Any) -> None:
        self.widgets.append(widget)

    def show_message(self, message: str) -> None:
        self.add(Label(message, kind="processing"))

    def show_chart(self, result: RenderResult) -> None:
        self.add(ChartWidget(result))

    def show_error(self, message: str) -> None:
        self.add(Label(message, kind="error"))

    @property
    def state(self) -> str:
        with self._lock:
            if not self.widgets:
                return "empty"
            widget = self.widgets[-1]
            if isinstance(widget, ChartWidget):
                return "ready"
            return widget.kind

    @property
    def message(self) -> Optional[str]:
        with self._lock:
            for widget in self.widgets:
                if isinstance(widget, Label):
                    return widget.text
            return None

    @property
    def result(self) -> Optional[RenderResult]:
        with self._lock:
            for widget in self.widgets:
                if isinstance(widget, ChartWidget):
                    return widget.result
            return None

    @property
    def chart(self) -> Optional[ChartData]:
        result = self.result
        return result.chart if result is not None else None

    @property
    def figure(self) -> Optional[go.Figure]:
        result = self.result
        return result.figure if result is not None else None


class ConsoleSink(ChartSink):
    """Prints status messages and a table of chart points to a text stream."""

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        super().__init__()
        self.stream = stream

    def _write(self, text: str) -> None:
        print(text, file=self.stream or sys.stdout, flush=True)

    def clear(self) -> None:
        pass

    def show_message(self, message: str) -> None:
        self._write(message)

    def show_chart(self, result: RenderResult) -> None:
        chart = result.chart
        if not chart.points:
            self._write(f"{chart.y_axis_band}: no observations to chart")
            return
        frame = chart.to_frame()
        frame["date"] = frame["date"].dt.strftime("%Y-%m-%d")
        self._write(frame[["date", chart.y_axis_band, "color"]].to_string(index=False))

    def show_error(self, message: str) -> None:
        logger.error("Render failed: %s", message)
        self._write(message)
