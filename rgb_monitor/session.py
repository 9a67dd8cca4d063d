from __future__ import annotations

import math
from dataclasses import asdict, dataclass, fields
from datetime import date
from typing import Any, Dict, Mapping, Optional, Tuple

import pandas as pd

from .config import logger
from .sensors import DEFAULT_INDEX, DEFAULT_RGB, DEFAULT_SENSOR, INDEX_NAMES, RGB_PRESETS, SENSORS

DEFAULT_LON = -121.68804
DEFAULT_LAT = 36.46517

_RANGES: Dict[str, Tuple[int, int]] = {
    "duration": (1, 24),
    "cloud": (0, 100),
    "chip_width": (1, 10),
}

_CHOICES = {
    "sensor": SENSORS,
    "index": INDEX_NAMES,
    "rgb": RGB_PRESETS,
}

# Session field -> URL query parameter.
_QUERY_KEYS = {
    "run": "run",
    "sensor": "sensor",
    "lon": "lon",
    "lat": "lat",
    "index": "index",
    "rgb": "rgb",
    "duration": "duration",
    "cloud": "cloud",
    "chip_width": "chipwidth",
}


@dataclass
class ExplorerSession:
    """Per-user explorer state: the clicked point and the chart options."""

    run: bool = False
    sensor: str = DEFAULT_SENSOR
    lon: float = DEFAULT_LON
    lat: float = DEFAULT_LAT
    index: str = DEFAULT_INDEX
    rgb: str = DEFAULT_RGB
    duration: int = 12
    cloud: int = 30
    chip_width: int = 2
    clicked: bool = False
    needs_submit: bool = False

    @classmethod
    def from_query_params(cls, params: Mapping[str, Any]) -> "ExplorerSession":
        session = cls()
        for name, key in _QUERY_KEYS.items():
            raw = params.get(key)
            if isinstance(raw, (list, tuple)):
                raw = raw[-1] if raw else None
            if raw is None or raw == "":
                continue
            try:
                setattr(session, name, _parse(name, str(raw)))
            except ValueError:
                logger.warning("Invalid query parameter %s=%s; keeping default", key, raw)
        # A shared link with run=true reopens the chart at its point.
        session.clicked = session.run
        return session

    def to_query_params(self) -> Dict[str, str]:
        values = asdict(self)
        params: Dict[str, str] = {}
        for name, key in _QUERY_KEYS.items():
            value = values[name]
            if isinstance(value, bool):
                params[key] = "true" if value else "false"
            elif isinstance(value, float):
                params[key] = f"{value:.5f}"
            else:
                params[key] = str(value)
        return params

    def handle_map_click(self, lon: float, lat: float) -> None:
        self.lon = _parse("lon", str(lon))
        self.lat = _parse("lat", str(lat))
        self.clicked = True
        self.run = True
        self.needs_submit = False

    def update_options(self, **changes: Any) -> bool:
        """Apply option changes; returns True when anything changed."""

        changed = False
        option_names = {item.name for item in fields(self)} - {"run", "lon", "lat", "clicked", "needs_submit"}
        for name, value in changes.items():
            if name not in option_names:
                raise AttributeError(f"Unknown explorer option {name!r}")
            parsed = _parse(name, str(value))
            if getattr(self, name) != parsed:
                setattr(self, name, parsed)
                changed = True
        if changed and self.clicked:
            self.needs_submit = True
        return changed

    def submit(self) -> None:
        self.needs_submit = False

    def date_range(self, today: Optional[date] = None) -> Tuple[date, date]:
        end = today or date.today()
        start = (pd.Timestamp(end) - pd.DateOffset(months=int(self.duration))).date()
        return start, end


def _parse(name: str, raw: str) -> Any:
    if name == "run":
        lowered = raw.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
        raise ValueError(f"Invalid boolean {raw!r}")
    if name == "lon":
        value = float(raw)
        if not -180.0 <= value <= 180.0:
            raise ValueError("Longitude values must fall between -180 and 180 degrees.")
        return value
    if name == "lat":
        value = float(raw)
        if not -90.0 <= value <= 90.0:
            raise ValueError("Latitude values must fall between -90 and 90 degrees.")
        return value
    if name in _RANGES:
        lower, upper = _RANGES[name]
        value = float(raw)
        if not math.isfinite(value):
            raise ValueError(f"Invalid {name} {raw!r}")
        return max(lower, min(upper, int(value)))
    if name in _CHOICES:
        if raw not in _CHOICES[name]:
            raise ValueError(f"Unknown {name} {raw!r}")
        return raw
    raise ValueError(f"Unknown session field {name!r}")
