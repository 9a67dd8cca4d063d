from __future__ import annotations

import base64
import io
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
from PIL import Image, ImageDraw

from .rgb_timeseries import VisParams

AOI_COLOR = (255, 255, 255)
CHIP_DIMENSIONS = 200


@dataclass(frozen=True)
class Chip:
    date: str
    image: bytes
    mime: str = "image/png"

    def data_uri(self) -> str:
        return f"data:{self.mime};base64,{base64.b64encode(self.image).decode('utf-8')}"


def stretch_to_bytes(band: np.ndarray, minimum: float, maximum: float,
                     gamma: float = 1.0) -> np.ma.MaskedArray:
    """Linear stretch of one band into 0-255 with optional gamma, masked where input is."""

    if maximum <= minimum:
        raise ValueError(f"Cannot stretch over an empty range [{minimum}, {maximum}]")
    data = np.ma.masked_invalid(np.ma.asarray(band, dtype="float64"))
    normalised = (np.ma.clip(data, minimum, maximum) - minimum) / (maximum - minimum)
    if gamma and gamma != 1:
        normalised = normalised ** (1.0 / gamma)
    return np.ma.floor(normalised * 255 + 0.5).astype("uint8")


def compose_rgb(channels: Sequence[np.ndarray], vis_params: VisParams) -> np.ndarray:
    """Stack three bands into an RGB byte image; masked pixels become black."""

    gammas = vis_params.gamma or (1.0, 1.0, 1.0)
    stretched = [
        stretch_to_bytes(channel, lo, hi, gamma)
        for channel, lo, hi, gamma in zip(channels, vis_params.min, vis_params.max, gammas)
    ]
    return np.dstack([np.ma.filled(channel, 0) for channel in stretched]).astype("uint8")


def encode_png(rgb: np.ndarray, outline: Optional[List[Tuple[float, float]]] = None,
               outline_width: int = 2) -> bytes:
    image = Image.fromarray(np.ascontiguousarray(rgb, dtype="uint8"))
    if outline and len(outline) > 1:
        draw = ImageDraw.Draw(image)
        draw.line(list(outline) + [outline[0]], fill=AOI_COLOR, width=outline_width)
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()
