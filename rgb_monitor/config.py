import logging
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)

# Configure logger
logger = logging.getLogger('rgb_monitor')
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter('%(levelname)s:%(name)s:%(message)s'))
    logger.addHandler(handler)

_CLOUD_RUN_SERVICE = os.getenv('K_SERVICE') or os.getenv('GOOGLE_CLOUD_PROJECT')
logger.setLevel(logging.INFO if _CLOUD_RUN_SERVICE else logging.DEBUG)

APP_NAME = "RGB Time Series Explorer"


def _int_from_env(name: str, default: int, lower: int, upper: int) -> int:
    raw = os.getenv(name, "").strip()
    value = default
    if raw:
        try:
            value = int(raw)
        except ValueError:
            logger.warning("Invalid %s=%s; falling back to default", name, raw)
            value = default
    return max(lower, min(upper, value))


def _float_from_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid %s=%s; falling back to default", name, raw)
        return default
    if value <= 0:
        logger.warning("Non-positive %s=%s; falling back to default", name, raw)
        return default
    return value


WORKER_CAP = _int_from_env("WORKER_CAP", 1 if _CLOUD_RUN_SERVICE else 8, 1, 64)

# Upper bound on pixels per region reduction; best-effort reductions coarsen
# the sampling grid instead of failing once it is exceeded.
MAX_PIXELS = _float_from_env("MAX_PIXELS", 1e13)

RENDER_TIMEOUT_SECONDS = _float_from_env("RENDER_TIMEOUT_SECONDS", 300.0)
GDAL_HTTP_TIMEOUT = _int_from_env("GDAL_HTTP_TIMEOUT", 30, 1, 600)

EE_PROJECT = os.getenv("EE_PROJECT", "").strip() or None

DEFAULT_BACKEND = os.getenv("DEFAULT_BACKEND", "hls").strip().lower() or "hls"
if DEFAULT_BACKEND not in {"hls", "earthengine"}:
    logger.warning("Invalid DEFAULT_BACKEND=%s; falling back to hls", DEFAULT_BACKEND)
    DEFAULT_BACKEND = "hls"


def load_token_from_env() -> str:
    token = os.getenv("EARTHDATA_BEARER_TOKEN")
    if token:
        return token.strip()
    return ""
