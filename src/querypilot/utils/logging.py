"""Logging setup for querypilot services."""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path

__all__ = ["setup_logging", "get_log_path", "resolve_level"]

LOG_DIR_ENV = "QUERYPILOT_LOG_DIR"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

_DEFAULT_LOG_DIR = Path.home() / ".querypilot" / "logs"
_THIRD_PARTY_LOGGERS = ("asyncio", "httpx", "httpcore", "openai")
_CONFIGURED = False
_LOG_PATH: Path | None = None


def setup_logging(
    level: int | str = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Route root logging to ``querypilot.log`` (rotating) and optionally stderr.

    Repeated calls return the existing path unless ``force`` is set. Without
    ``log_dir`` the ``QUERYPILOT_LOG_DIR`` environment variable is consulted
    before falling back to ``~/.querypilot/logs``.
    """

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and _LOG_PATH is not None and not force:
        return _LOG_PATH

    numeric_level = resolve_level(level)
    directory = Path(log_dir or os.environ.get(LOG_DIR_ENV) or _DEFAULT_LOG_DIR).expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / "querypilot.log"

    handlers = _build_handlers(path, console=console, max_bytes=max_bytes, backup_count=backup_count)
    formatter = logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)
    logging.captureWarnings(True)

    # Client libraries log every request at INFO/DEBUG.
    third_party_level = max(numeric_level, logging.WARNING)
    for name in _THIRD_PARTY_LOGGERS:
        logging.getLogger(name).setLevel(third_party_level)

    _CONFIGURED = True
    _LOG_PATH = path
    return path


def _build_handlers(path: Path, *, console: bool, max_bytes: int, backup_count: int) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    ]
    if console:
        handlers.append(logging.StreamHandler())
    return handlers


def get_log_path() -> Path | None:
    return _LOG_PATH


def resolve_level(level: int | str) -> int:
    """Accept ``logging`` constants or case-insensitive names such as ``"debug"``."""

    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return resolved
