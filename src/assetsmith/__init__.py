"""Assetsmith - staged text-to-3D generation pipeline for game assets."""

from __future__ import annotations

import logging
import os
from importlib.metadata import PackageNotFoundError, version
from typing import Callable, TypeVar

_logger = logging.getLogger(__name__)

_T = TypeVar("_T")

try:
    __version__ = version("assetsmith")
except PackageNotFoundError:
    # Running from a source checkout that was never installed.
    __version__ = "0.3.0"

_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off"})


def _parse_env(name: str, default: _T, convert: Callable[[str], _T], kind: str) -> _T:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return convert(raw)
    except ValueError:
        _logger.warning("Ignoring %s=%r: not a valid %s, using %r", name, raw, kind, default)
        return default


def parse_int_env(name: str, default: int) -> int:
    """Integer from the environment; *default* when unset or malformed."""
    return _parse_env(name, default, int, "integer")


def parse_float_env(name: str, default: float) -> float:
    """Float from the environment; *default* when unset or malformed."""
    return _parse_env(name, default, float, "number")


def _to_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ValueError(raw)


def parse_bool_env(name: str, default: bool) -> bool:
    """Flag from the environment (``1/true/yes/on`` or ``0/false/no/off``)."""
    return _parse_env(name, default, _to_bool, "boolean")
