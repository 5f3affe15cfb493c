"""Configuration loading for the generation pipeline.

Settings live in ``~/.assetsmith/config.yaml`` (override the location
with ``ASSETSMITH_CONFIG``)::

    meshy:
      api_key: msy_...
      base_url: https://api.meshy.ai
    image:
      api_key: sk-...
      base_url: https://api.openai.com/v1
      model: dall-e-3
    cache:
      enabled: true
      ttl: 3600
      max_bytes: 524288000
      db_path: ~/.assetsmith/cache.db
    output:
      directory: ./assets
      format: glb
    settings:
      batch_size: 5
      poll_interval: 5
      max_wait: 300

Precedence (highest first):
    1. Explicit keyword overrides passed to :func:`load_config`
    2. Environment variables (``ASSETSMITH_MESHY_API_KEY``, etc.)
    3. Config file
    4. Defaults
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from assetsmith import parse_bool_env, parse_float_env, parse_int_env
from assetsmith.errors import ValidationError

logger = logging.getLogger(__name__)

_KNOWN_KEYS: set[str] = {"meshy", "image", "cache", "output", "settings"}

OUTPUT_FORMATS: tuple[str, ...] = ("glb", "fbx", "obj", "usdz")

# (section, key in file) -> PipelineConfig field
_FILE_FIELDS: Dict[tuple[str, str], str] = {
    ("meshy", "api_key"): "meshy_api_key",
    ("meshy", "base_url"): "meshy_base_url",
    ("image", "api_key"): "image_api_key",
    ("image", "base_url"): "image_base_url",
    ("image", "model"): "image_model",
    ("cache", "enabled"): "cache_enabled",
    ("cache", "ttl"): "cache_ttl",
    ("cache", "max_bytes"): "cache_max_bytes",
    ("cache", "db_path"): "cache_db_path",
    ("output", "directory"): "output_dir",
    ("output", "format"): "output_format",
    ("settings", "batch_size"): "batch_size",
    ("settings", "poll_interval"): "poll_interval",
    ("settings", "max_wait"): "max_wait",
    ("settings", "request_timeout"): "request_timeout",
    ("settings", "max_retries"): "max_retries",
    ("settings", "retry_delay"): "retry_delay",
    ("settings", "model_polycount"): "model_polycount",
}

_SECRET_FIELDS = ("meshy_api_key", "image_api_key")


@dataclass
class PipelineConfig:
    """Resolved pipeline settings.

    :param meshy_api_key: Key for the mesh service.
    :param meshy_base_url: Mesh service root URL.
    :param image_api_key: Key for the image service.
    :param image_base_url: Image service root URL.
    :param image_model: Image model name.
    :param cache_enabled: Turn the stage cache on or off.
    :param cache_ttl: Stage cache TTL in seconds.
    :param cache_max_bytes: Approximate stage cache budget.
    :param cache_db_path: SQLite file for a persistent cache, or ``None``.
    :param output_dir: Root directory for finished assets.
    :param output_format: Model file format to download.
    :param batch_size: Requests in flight per batch window.
    :param poll_interval: Seconds between remote task polls.
    :param max_wait: Seconds to wait for one remote task.
    :param request_timeout: Socket timeout for each HTTP request.
    :param max_retries: Attempts per remote call.
    :param retry_delay: Initial backoff delay in seconds.
    :param model_polycount: Polycount requested from image-to-3D.
    """

    meshy_api_key: str = ""
    meshy_base_url: str = "https://api.meshy.ai"
    image_api_key: str = ""
    image_base_url: str = "https://api.openai.com/v1"
    image_model: str = "dall-e-3"
    cache_enabled: bool = True
    cache_ttl: float = 3600.0
    cache_max_bytes: int = 500 * 1024 * 1024
    cache_db_path: Optional[str] = None
    output_dir: str = "assets"
    output_format: str = "glb"
    batch_size: int = 5
    poll_interval: float = 5.0
    max_wait: float = 300.0
    request_timeout: float = 60.0
    max_retries: int = 3
    retry_delay: float = 1.0
    model_polycount: int = 10000

    def validate(self) -> None:
        """Raise :class:`ValidationError` for values the pipeline cannot use."""
        if self.output_format not in OUTPUT_FORMATS:
            raise ValidationError(
                f"Unsupported output format {self.output_format!r} "
                f"(expected one of: {', '.join(OUTPUT_FORMATS)})."
            )
        for name in ("batch_size", "max_retries", "model_polycount", "cache_max_bytes"):
            if getattr(self, name) < 1:
                raise ValidationError(f"{name} must be at least 1, got {getattr(self, name)}.")
        for name in ("cache_ttl", "poll_interval", "max_wait", "request_timeout"):
            if getattr(self, name) <= 0:
                raise ValidationError(f"{name} must be positive, got {getattr(self, name)}.")
        if self.retry_delay < 0:
            raise ValidationError(f"retry_delay must not be negative, got {self.retry_delay}.")

    def to_dict(self, *, redact: bool = True) -> Dict[str, Any]:
        data = asdict(self)
        if redact:
            for name in _SECRET_FIELDS:
                if data[name]:
                    data[name] = data[name][:4] + "***"
        return data


def get_config_path() -> Path:
    """Return the config file path (``ASSETSMITH_CONFIG`` or ``~/.assetsmith/config.yaml``)."""
    override = os.environ.get("ASSETSMITH_CONFIG", "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".assetsmith" / "config.yaml"


def _validate_config_schema(data: Dict[str, Any], path: Path) -> None:
    """Log warnings for unknown keys in the config file."""
    unknown = set(data.keys()) - _KNOWN_KEYS
    for key in sorted(unknown):
        logger.warning(
            "Config file %s contains unknown key %r (expected one of: %s)",
            path,
            key,
            ", ".join(sorted(_KNOWN_KEYS)),
        )


def _read_config_file(path: Path) -> Dict[str, Any]:
    """Read and parse the YAML config file; return ``{}`` on any failure."""
    if not path.is_file():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
        if not isinstance(data, dict):
            return {}
        _validate_config_schema(data, path)
        return data
    except yaml.YAMLError as exc:
        logger.warning("Config file %s has invalid YAML: %s", path, exc)
        return {}
    except OSError as exc:
        logger.warning("Could not read config file %s: %s", path, exc)
        return {}


def _coerce(field_name: str, value: Any, default: Any) -> Any:
    """Convert a file value to the type of the field's default."""
    if value is None:
        return default
    target = type(default) if default is not None else str
    try:
        if target is bool:
            if isinstance(value, bool):
                return value
            return str(value).strip().lower() in ("1", "true", "yes", "on")
        return target(value)
    except (TypeError, ValueError):
        logger.warning(
            "Config value %s=%r is not a valid %s, using default %r",
            field_name,
            value,
            target.__name__,
            default,
        )
        return default


def _apply_file(config: PipelineConfig, data: Dict[str, Any]) -> None:
    for (section, key), field_name in _FILE_FIELDS.items():
        block = data.get(section)
        if not isinstance(block, dict) or key not in block:
            continue
        current = getattr(config, field_name)
        setattr(config, field_name, _coerce(field_name, block[key], current))


def _apply_env(config: PipelineConfig) -> None:
    for name, field_name in (
        ("ASSETSMITH_MESHY_API_KEY", "meshy_api_key"),
        ("ASSETSMITH_MESHY_BASE_URL", "meshy_base_url"),
        ("ASSETSMITH_IMAGE_API_KEY", "image_api_key"),
        ("ASSETSMITH_IMAGE_BASE_URL", "image_base_url"),
        ("ASSETSMITH_IMAGE_MODEL", "image_model"),
        ("ASSETSMITH_OUTPUT_DIR", "output_dir"),
        ("ASSETSMITH_OUTPUT_FORMAT", "output_format"),
        ("ASSETSMITH_CACHE_DB", "cache_db_path"),
    ):
        raw = os.environ.get(name, "").strip()
        if raw:
            setattr(config, field_name, raw)

    config.cache_enabled = parse_bool_env("ASSETSMITH_CACHE_ENABLED", config.cache_enabled)
    config.cache_ttl = parse_float_env("ASSETSMITH_CACHE_TTL", config.cache_ttl)
    config.cache_max_bytes = parse_int_env("ASSETSMITH_CACHE_MAX_BYTES", config.cache_max_bytes)
    config.batch_size = parse_int_env("ASSETSMITH_BATCH_SIZE", config.batch_size)
    config.poll_interval = parse_float_env("ASSETSMITH_POLL_INTERVAL", config.poll_interval)
    config.max_wait = parse_float_env("ASSETSMITH_MAX_WAIT", config.max_wait)
    config.request_timeout = parse_float_env("ASSETSMITH_REQUEST_TIMEOUT", config.request_timeout)


def load_config(config_path: Optional[Path | str] = None, **overrides: Any) -> PipelineConfig:
    """Resolve a :class:`PipelineConfig` from file, environment and overrides.

    :param config_path: Explicit YAML file; defaults to :func:`get_config_path`.
    :param overrides: Field values that win over everything else.  ``None``
        values are ignored so CLI options can be passed straight through.
    :raises ValidationError: If an override names an unknown field or the
        resolved values are unusable.
    """
    path = Path(config_path).expanduser() if config_path else get_config_path()
    config = PipelineConfig()
    _apply_file(config, _read_config_file(path))
    _apply_env(config)

    known = {f.name for f in fields(PipelineConfig)}
    for name, value in overrides.items():
        if name not in known:
            raise ValidationError(f"Unknown config option {name!r}.")
        if value is not None:
            setattr(config, name, value)

    if config.cache_db_path:
        config.cache_db_path = str(Path(config.cache_db_path).expanduser())
    config.output_dir = str(Path(config.output_dir).expanduser())

    config.validate()
    logger.debug("Loaded config from %s: %s", path, config.to_dict())
    return config


__all__ = [
    "OUTPUT_FORMATS",
    "PipelineConfig",
    "get_config_path",
    "load_config",
]
