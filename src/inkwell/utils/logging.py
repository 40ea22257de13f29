"""Logging setup for the Inkwell engine.

Every handler installed here carries a :class:`SecretFilter`, so provider
keys that end up in a message (usually inside a request URL or an echoed
error body) are masked before they reach the log file or the console.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
from pathlib import Path

__all__ = ["setup_logging", "get_log_path", "redact_url", "redact_secrets", "SecretFilter"]

_DEFAULT_LOG_DIR = Path.home() / ".inkwell" / "logs"
_LOG_FILE_NAME = "inkwell.log"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_KEY_PARAM = re.compile(r"([?&](?:key|api_key)=)[^&#\s]+", re.IGNORECASE)
_BEARER = re.compile(r"(Bearer\s+)[A-Za-z0-9._\-]{8,}")
_LOG_PATH: Path | None = None


def redact_url(url: str) -> str:
    """Mask credential query parameters so URLs can be logged."""

    return _KEY_PARAM.sub(r"\1***", url)


def redact_secrets(text: str) -> str:
    """Mask query-string keys and bearer tokens anywhere in ``text``."""

    return _BEARER.sub(r"\1***", redact_url(text))


class SecretFilter(logging.Filter):
    """Rewrites each record's message with :func:`redact_secrets`."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        cleaned = redact_secrets(message)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        return True


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install a rotating file handler (and optionally the console) on the root logger.

    Repeated calls are no-ops unless ``force`` is set, which is how the CLI
    switches to debug output once the settings file has been read.
    """

    global _LOG_PATH
    if _LOG_PATH is not None and not force:
        return _LOG_PATH

    target_dir = Path(log_dir or os.environ.get("INKWELL_LOG_DIR") or _DEFAULT_LOG_DIR).expanduser()
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / _LOG_FILE_NAME

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    secret_filter = SecretFilter()

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    ]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(secret_filter)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)

    # Transport libraries log full URLs at DEBUG; keep them at WARNING or above.
    quiet_level = max(level, logging.WARNING)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)

    _LOG_PATH = log_path
    return log_path


def get_log_path() -> Path | None:
    """Return the file the last :func:`setup_logging` call writes to."""

    return _LOG_PATH
