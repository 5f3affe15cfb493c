"""Log rotation and secret scrubbing.

API keys for the image and mesh services travel in headers and request
bodies, both of which show up in debug logs.  :class:`ScrubFilter`
redacts them before any handler writes a line, and
:func:`configure_logging` installs a rotating file under
``~/.assetsmith/logs`` with the filter on every root handler.
"""

from __future__ import annotations

import logging
import os
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

_DEFAULT_LOG_DIR = os.path.join(str(Path.home()), ".assetsmith", "logs")
_LOG_FILENAME = "assetsmith.log"
_LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s [%(threadName)s] %(message)s"

_MASK = r"\1***REDACTED***"

# ``key=value``, ``key: value`` and ``"key": "value"`` for each secret-ish key.
_KEYED = r'({key}["\x27]?\s*[:=]\s*["\x27]?{prefix})([^"\x27\s,}}{{\]]+)'

_SCRUB_PATTERNS: list[re.Pattern[str]] = [
    re.compile(_KEYED.format(key=key, prefix=""), re.IGNORECASE)
    for key in ("api_key", "token", "password", "secret")
] + [
    re.compile(_KEYED.format(key="Authorization", prefix=r"Bearer\s+"), re.IGNORECASE),
    re.compile(r"(Bearer\s+)([A-Za-z0-9._~+/=-]{8,})"),
    # Bare OpenAI-style and Meshy keys.
    re.compile(r"\b(sk-|msy_)([A-Za-z0-9_-]{8,})"),
]


def scrub(text: str) -> str:
    """Return *text* with every recognised secret masked."""
    for pattern in _SCRUB_PATTERNS:
        text = pattern.sub(_MASK, text)
    return text


def _scrub_arg(value: Any) -> Any:
    return scrub(value) if isinstance(value, str) else value


class ScrubFilter(logging.Filter):
    """Redact secrets from a record's message and its ``%`` arguments."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = scrub(record.msg)
        if isinstance(record.args, dict):
            record.args = {key: _scrub_arg(val) for key, val in record.args.items()}
        elif isinstance(record.args, tuple) and record.args:
            record.args = tuple(_scrub_arg(val) for val in record.args)
        return True


def configure_logging(
    log_dir: Optional[str] = None,
    *,
    max_bytes: int = 10_000_000,
    backup_count: int = 5,
    level: Optional[str] = None,
) -> str:
    """Send root logging to a rotating file and scrub every handler.

    Safe to call more than once: a second call only adjusts the level.

    :param log_dir: Directory for the log file.  Defaults to
        ``ASSETSMITH_LOG_DIR``, then ``~/.assetsmith/logs/``.
    :param max_bytes: Size at which the file is rotated.
    :param backup_count: Rotated files to keep.
    :param level: Level name.  Defaults to ``ASSETSMITH_LOG_LEVEL``, then
        ``"INFO"``.
    :returns: Path of the log file.
    """
    log_dir = log_dir or os.environ.get("ASSETSMITH_LOG_DIR") or _DEFAULT_LOG_DIR
    level_name = (level or os.environ.get("ASSETSMITH_LOG_LEVEL") or "INFO").upper()
    numeric_level = getattr(logging, level_name, logging.INFO)

    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, _LOG_FILENAME)

    root = logging.getLogger()
    root.setLevel(numeric_level)

    file_handlers = [h for h in root.handlers if isinstance(h, RotatingFileHandler)]
    if file_handlers:
        for handler in file_handlers:
            handler.setLevel(numeric_level)
    else:
        handler = RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
        handler.setLevel(numeric_level)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        root.addHandler(handler)

    for handler in root.handlers:
        if not any(isinstance(f, ScrubFilter) for f in handler.filters):
            handler.addFilter(ScrubFilter())

    return log_path
