"""
config_manager.py — Typed, validated configuration for the alarm recorder.

The recorder is configured from one JSON object.  When the object wraps its
settings in a nested ``"configure"`` block (the pipeline element layout),
the inner block is used.

.. code-block:: json

    {
      "server_url": "http://10.0.0.5:8080/api/alarm",
      "save_dir": "/data/alarms",
      "base_file_url": "http://10.0.0.5/static",
      "record_seconds": 10,
      "trigger_classes": [0, 2],
      "min_trigger_frames": {"0": 3, "2": 5},
      "retention_days": 7,
      "retention_max_gb": 20,
      "cleanup_interval_seconds": 300,
      "deviceId": "cam-01",
      "deviceIp": "10.0.0.21",
      "safetyId": "S-1",
      "safetyName": "Gate",
      "warning": "intrusion",
      "type": {"0": 10, "2": 12},
      "video_url_field": "safetyUrl",
      "timezone": "Asia/Shanghai"
    }

Field reference
~~~~~~~~~~~~~~~
``server_url``                str   — ``http(s)://host[:port]/path`` alarm endpoint.
``save_dir``                  str   — Storage root (required).
``base_file_url``             str   — Public prefix for file URLs; empty = local paths.
``record_seconds``            int   — Segment length, minimum 1.
``trigger_classes``           list  — Class ids that may trigger; empty = any.
``min_trigger_frames``        int | object — Consecutive-frame threshold,
                                      global or per class id, minimum 1.
``retention_days``            int   — Delete media older than N days; 0 = off.
``retention_max_gb``          float — Cap on total media size; 0 = off.
``cleanup_interval_seconds``  int   — Retention poll interval, minimum 30.
``type``                      int | object | "class_id" — Report type policy.
``video_url_field``           str   — ``"safetyUrl"`` or ``"brakeUrl"``.
``fourcc``                    str   — OpenCV FourCC for segment video.
``timezone``                  str   — IANA zone for file names and report times.
``http_timeout_sec``          float — Alarm POST timeout.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import tzinfo
from pathlib import Path
from typing import Any, Dict, FrozenSet, Mapping, Optional, Union

import pytz

from .errors import ConfigError
from .json_logging import get_logger

log = get_logger("config")

# ---------------------------------------------------------------------------
# Keys and limits
# ---------------------------------------------------------------------------

CONFIG_NESTED = "configure"
CONFIG_SERVER_URL = "server_url"
CONFIG_SAVE_DIR = "save_dir"
CONFIG_BASE_FILE_URL = "base_file_url"
CONFIG_RECORD_SECONDS = "record_seconds"
CONFIG_TRIGGER_CLASSES = "trigger_classes"
CONFIG_MIN_TRIGGER_FRAMES = "min_trigger_frames"
CONFIG_RETENTION_DAYS = "retention_days"
CONFIG_RETENTION_MAX_GB = "retention_max_gb"
CONFIG_CLEANUP_INTERVAL_SECONDS = "cleanup_interval_seconds"
CONFIG_DEVICE_ID = "deviceId"
CONFIG_DEVICE_IP = "deviceIp"
CONFIG_SAFETY_ID = "safetyId"
CONFIG_SAFETY_NAME = "safetyName"
CONFIG_WARNING = "warning"
CONFIG_TYPE = "type"
CONFIG_VIDEO_URL_FIELD = "video_url_field"
CONFIG_FOURCC = "fourcc"
CONFIG_TIMEZONE = "timezone"
CONFIG_HTTP_TIMEOUT = "http_timeout_sec"
CONFIG_LOG_LEVEL = "log_level"

VIDEO_URL_FIELDS = ("safetyUrl", "brakeUrl")
CLASS_ID_TYPE_MARKERS = {"class_id", "classid", "label"}

DEFAULT_RECORD_SECONDS = 10
DEFAULT_CLEANUP_INTERVAL_SEC = 300
MIN_CLEANUP_INTERVAL_SEC = 30
DEFAULT_HTTP_TIMEOUT_SEC = 10.0
BYTES_PER_GB = 1024 ** 3

_URL_RE = re.compile(r"(http|https)://([^/:]+)(?::(\d+))?(/.*)")


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ServerEndpoint:
    """Parsed alarm endpoint."""

    scheme: str
    host: str
    port: int
    path: str

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}{self.path}"


@dataclass(frozen=True)
class RetentionPolicy:
    """Age and capacity limits for stored media.

    Attributes:
        max_age_days: Delete media older than this many days; 0 disables.
        max_total_bytes: Delete oldest media while the total exceeds this;
            0 disables.
        poll_interval_sec: Seconds between cleanup cycles.
    """

    max_age_days: int = 0
    max_total_bytes: int = 0
    poll_interval_sec: int = DEFAULT_CLEANUP_INTERVAL_SEC

    @property
    def enabled(self) -> bool:
        return self.max_age_days > 0 or self.max_total_bytes > 0


@dataclass(frozen=True)
class FixedType:
    """Always report ``value``."""

    value: int


@dataclass(frozen=True)
class DetectedClassType:
    """Report the class id of the first valid detection."""


@dataclass(frozen=True)
class ClassMapType:
    """Report the type mapped from the first mapped detection class."""

    mapping: Mapping[int, int] = field(default_factory=dict)


@dataclass(frozen=True)
class DefaultType:
    """No policy configured; behaves like the detected class id."""


TypePolicy = Union[FixedType, DetectedClassType, ClassMapType, DefaultType]


@dataclass(frozen=True)
class ReportFields:
    """Static fields copied into every alarm payload."""

    device_id: str = ""
    device_ip: str = ""
    safety_id: str = ""
    safety_name: str = ""
    warning: str = ""


@dataclass(frozen=True)
class RecorderConfig:
    """Fully validated recorder configuration."""

    save_dir: str
    server_url: str = ""
    endpoint: Optional[ServerEndpoint] = None
    base_file_url: str = ""
    record_seconds: int = DEFAULT_RECORD_SECONDS
    trigger_classes: FrozenSet[int] = frozenset()
    global_min_trigger_frames: int = 1
    per_class_min_trigger_frames: Mapping[int, int] = field(default_factory=dict)
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    report: ReportFields = field(default_factory=ReportFields)
    type_policy: TypePolicy = field(default_factory=DefaultType)
    video_url_field: str = "safetyUrl"
    fourcc: str = "mp4v"
    timezone: Optional[tzinfo] = None
    http_timeout_sec: float = DEFAULT_HTTP_TIMEOUT_SEC
    log_level: str = "INFO"

    def threshold_for(self, class_id: int) -> int:
        """Consecutive-frame threshold for ``class_id``."""
        return self.per_class_min_trigger_frames.get(class_id, self.global_min_trigger_frames)


# ---------------------------------------------------------------------------
# Endpoint parsing
# ---------------------------------------------------------------------------

def parse_server_url(url: str) -> Optional[ServerEndpoint]:
    """Parse ``scheme://host[:port]/path`` into a :class:`ServerEndpoint`.

    Args:
        url: Full URL string.  The path is mandatory.

    Returns:
        The parsed endpoint, or ``None`` if ``url`` does not match.
    """
    m = _URL_RE.fullmatch(url or "")
    if m is None:
        return None
    scheme = m.group(1)
    port = int(m.group(3)) if m.group(3) else (443 if scheme == "https" else 80)
    return ServerEndpoint(scheme=scheme, host=m.group(2), port=port, path=m.group(4))


# ---------------------------------------------------------------------------
# Timezone resolution helper
# ---------------------------------------------------------------------------

def resolve_timezone(tz_name: str, fallback_log: logging.Logger = log) -> tzinfo:
    """Resolve an IANA timezone name to a :mod:`pytz` timezone object.

    Falls back to ``pytz.utc`` and emits a structured warning when the name
    is not present in pytz's bundled database.

    Args:
        tz_name: IANA timezone name string (e.g. ``"Asia/Shanghai"``).
        fallback_log: Logger used to emit the warning on failure.

    Returns:
        A :mod:`pytz` timezone object.  Never raises.
    """
    try:
        return pytz.timezone(tz_name)
    except pytz.exceptions.UnknownTimeZoneError:
        fallback_log.warning(
            "Unknown IANA timezone name; falling back to UTC",
            extra={"timezone": tz_name},
        )
        return pytz.utc


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _get_str(cfg: Mapping[str, Any], key: str, default: str = "") -> str:
    value = cfg.get(key, default)
    if not isinstance(value, str):
        raise ConfigError(f"'{key}' must be a string, got {type(value).__name__}")
    return value


def _get_int(cfg: Mapping[str, Any], key: str, default: int) -> int:
    value = cfg.get(key, default)
    if not _is_int(value):
        raise ConfigError(f"'{key}' must be an integer, got {value!r}")
    return value


def _get_number(cfg: Mapping[str, Any], key: str, default: float) -> float:
    value = cfg.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"'{key}' must be a number, got {value!r}")
    return float(value)


def _parse_int_keyed_map(raw: Mapping[str, Any], key: str) -> Dict[int, int]:
    """Parse ``{"<class id>": <int>}``; entries with bad keys or values are skipped."""
    result: Dict[int, int] = {}
    for k, v in raw.items():
        try:
            class_id = int(k)
        except (TypeError, ValueError):
            log.warning("Ignoring non-integer class key", extra={"key": key, "class_key": k})
            continue
        if _is_int(v):
            result[class_id] = v
    return result


def _parse_trigger_classes(cfg: Mapping[str, Any]) -> FrozenSet[int]:
    raw = cfg.get(CONFIG_TRIGGER_CLASSES, [])
    if not isinstance(raw, list):
        raise ConfigError(f"'{CONFIG_TRIGGER_CLASSES}' must be a list of integers")
    classes = frozenset(item for item in raw if _is_int(item))
    if classes:
        log.info("trigger_classes loaded", extra={"trigger_classes": sorted(classes)})
    return classes


def _parse_min_trigger_frames(cfg: Mapping[str, Any]) -> tuple[int, Dict[int, int]]:
    raw = cfg.get(CONFIG_MIN_TRIGGER_FRAMES)
    if raw is None:
        return 1, {}
    if _is_int(raw):
        global_min = max(1, raw)
        log.info("global min_trigger_frames", extra={"min_trigger_frames": global_min})
        return global_min, {}
    if isinstance(raw, dict):
        per_class = {
            cid: max(1, thr)
            for cid, thr in _parse_int_keyed_map(raw, CONFIG_MIN_TRIGGER_FRAMES).items()
        }
        if per_class:
            log.info(
                "per-class min_trigger_frames",
                extra={"min_trigger_frames": per_class, "default": 1},
            )
        return 1, per_class
    raise ConfigError(f"'{CONFIG_MIN_TRIGGER_FRAMES}' must be an integer or an object")


def _parse_type_policy(cfg: Mapping[str, Any]) -> TypePolicy:
    if CONFIG_TYPE not in cfg:
        log.info("No type field; reporting detected class_id")
        return DefaultType()
    raw = cfg[CONFIG_TYPE]
    if _is_int(raw):
        log.info("Configured fixed type", extra={"fixed_type": raw})
        return FixedType(raw)
    if isinstance(raw, dict):
        mapping = _parse_int_keyed_map(raw, CONFIG_TYPE)
        log.info("type_map loaded", extra={"type_map": mapping})
        if not mapping:
            return DefaultType()
        return ClassMapType(mapping)
    if isinstance(raw, str) and raw in CLASS_ID_TYPE_MARKERS:
        log.info("Configured use_class_id_type")
        return DetectedClassType()
    log.warning("Unsupported type field format", extra={"type": raw})
    return DefaultType()


def _parse_video_url_field(cfg: Mapping[str, Any]) -> str:
    value = _get_str(cfg, CONFIG_VIDEO_URL_FIELD, "safetyUrl")
    if value not in VIDEO_URL_FIELDS:
        log.warning(
            "Unknown video_url_field; using safetyUrl",
            extra={"video_url_field": value},
        )
        return "safetyUrl"
    return value


# ---------------------------------------------------------------------------
# Public loaders
# ---------------------------------------------------------------------------

def load_config(raw: Mapping[str, Any]) -> RecorderConfig:
    """Validate a configuration mapping and return a :class:`RecorderConfig`.

    Args:
        raw: Parsed JSON object, optionally wrapping its settings in a
            ``"configure"`` block.

    Returns:
        The validated, immutable configuration.

    Raises:
        ConfigError: If ``save_dir`` is absent or any known key has the
            wrong type.
    """
    if not isinstance(raw, Mapping):
        raise ConfigError("Configuration must be a JSON object")

    cfg = raw
    nested = raw.get(CONFIG_NESTED)
    if isinstance(nested, Mapping):
        log.info("Using nested 'configure' object")
        cfg = nested

    if CONFIG_SAVE_DIR not in cfg:
        raise ConfigError(f"Missing required field '{CONFIG_SAVE_DIR}'")
    save_dir = _get_str(cfg, CONFIG_SAVE_DIR)
    if not save_dir:
        raise ConfigError(f"'{CONFIG_SAVE_DIR}' must not be empty")

    server_url = _get_str(cfg, CONFIG_SERVER_URL)
    endpoint = parse_server_url(server_url)
    if endpoint is None and server_url:
        log.warning("Unparsable server_url; alarms disabled", extra={"server_url": server_url})

    fourcc = _get_str(cfg, CONFIG_FOURCC, "mp4v")
    if len(fourcc) != 4:
        raise ConfigError(f"'{CONFIG_FOURCC}' must be exactly 4 characters, got {fourcc!r}")

    http_timeout = _get_number(cfg, CONFIG_HTTP_TIMEOUT, DEFAULT_HTTP_TIMEOUT_SEC)
    if http_timeout <= 0:
        raise ConfigError(f"'{CONFIG_HTTP_TIMEOUT}' must be positive")

    tz_name = _get_str(cfg, CONFIG_TIMEZONE) if CONFIG_TIMEZONE in cfg else ""
    timezone = resolve_timezone(tz_name) if tz_name else None

    global_min, per_class_min = _parse_min_trigger_frames(cfg)

    retention = RetentionPolicy(
        max_age_days=max(0, _get_int(cfg, CONFIG_RETENTION_DAYS, 0)),
        max_total_bytes=int(max(0.0, _get_number(cfg, CONFIG_RETENTION_MAX_GB, 0.0)) * BYTES_PER_GB),
        poll_interval_sec=max(
            MIN_CLEANUP_INTERVAL_SEC,
            _get_int(cfg, CONFIG_CLEANUP_INTERVAL_SECONDS, DEFAULT_CLEANUP_INTERVAL_SEC),
        ),
    )

    return RecorderConfig(
        save_dir=save_dir,
        server_url=server_url,
        endpoint=endpoint,
        base_file_url=_get_str(cfg, CONFIG_BASE_FILE_URL),
        record_seconds=max(1, _get_int(cfg, CONFIG_RECORD_SECONDS, DEFAULT_RECORD_SECONDS)),
        trigger_classes=_parse_trigger_classes(cfg),
        global_min_trigger_frames=global_min,
        per_class_min_trigger_frames=per_class_min,
        retention=retention,
        report=ReportFields(
            device_id=_get_str(cfg, CONFIG_DEVICE_ID),
            device_ip=_get_str(cfg, CONFIG_DEVICE_IP),
            safety_id=_get_str(cfg, CONFIG_SAFETY_ID),
            safety_name=_get_str(cfg, CONFIG_SAFETY_NAME),
            warning=_get_str(cfg, CONFIG_WARNING),
        ),
        type_policy=_parse_type_policy(cfg),
        video_url_field=_parse_video_url_field(cfg),
        fourcc=fourcc,
        timezone=timezone,
        http_timeout_sec=http_timeout,
        log_level=_get_str(cfg, CONFIG_LOG_LEVEL, "INFO"),
    )


def load_config_file(config_path: str | Path) -> RecorderConfig:
    """Read a JSON configuration file and validate it.

    Args:
        config_path: Path to the JSON file.

    Returns:
        The validated :class:`RecorderConfig`.

    Raises:
        ConfigError: On a missing or unreadable file, invalid JSON, or any
            validation failure.
    """
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: '{path}'")
    try:
        raw_text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigError(f"Cannot read configuration file '{path}': {exc}", cause=exc) from exc
    try:
        parsed = json.loads(raw_text)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in configuration file '{path}': {exc}", cause=exc) from exc

    config = load_config(parsed)
    log.info("Configuration loaded", extra={"path": str(path), "save_dir": config.save_dir})
    return config
