"""
Structured JSON Logging.

Every flow controller receives a ``StructuredLogger`` by constructor
injection.  Records are written as one JSON object per line, to stdout
and to a size-rotated file, with the shape::

    {"timestamp": ..., "level": ..., "logger_name": ..., "message": ...,
     "extra": {...}, "exception": ...}

Values of ``extra`` keys that name a secret (passwords, OTP codes,
CAPTCHA tokens, verification proofs, bearer tokens) are replaced by
``***`` before the line is rendered, including inside nested mappings.
"""

import json
import logging
import sys
from collections.abc import Mapping
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional, TextIO

REDACTED: str = "***"

_SECRET_NAMES: frozenset[str] = frozenset({
    "code",
    "otp",
    "password",
    "proof",
    "secret",
    "token",
})
_SECRET_SUFFIXES: tuple[str, ...] = ("_password", "_proof", "_secret", "_token")

# Attributes every LogRecord carries; anything else came in via ``extra``.
_RECORD_ATTRS: frozenset[str] = frozenset(
    vars(logging.makeLogRecord({})).keys()
) | {"asctime", "message", "taskName"}


def is_secret_key(key: str) -> bool:
    name = key.lower()
    return name in _SECRET_NAMES or name.endswith(_SECRET_SUFFIXES)


def mask_secrets(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Copy *fields* with every secret-named value masked."""
    masked: dict[str, Any] = {}
    for key, value in fields.items():
        if is_secret_key(key):
            masked[key] = REDACTED
        elif isinstance(value, Mapping):
            masked[key] = mask_secrets(value)
        else:
            masked[key] = str(value)
    return masked


class JSONFormatter(logging.Formatter):
    """Render a LogRecord as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger_name": record.name,
            "message": record.getMessage(),
        }

        extra = {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS}
        if extra:
            entry["extra"] = mask_secrets(extra)

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            entry["exception"] = record.exc_text

        return json.dumps(entry, ensure_ascii=False)


def _file_handler(
    log_file: str, max_bytes: int, backup_count: int,
) -> Optional[RotatingFileHandler]:
    path = Path(log_file)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        return RotatingFileHandler(
            filename=str(path),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
    except OSError:
        return None


class StructuredLogger:
    """Injectable wrapper around a ``logging.Logger``.

    Handlers are attached once per logger name, so constructing several
    ``StructuredLogger`` objects with the same name shares one set of
    handlers.  Rotation limits default to ``LOG_MAX_BYTES`` and
    ``LOG_BACKUP_COUNT`` from the application config.

    Usage::

        log = StructuredLogger(name="authflow.otp")
        log.info("OTP sent.", extra={"flow_key": "sign-in-otp"})
    """

    DEFAULT_LOG_FILE: str = "authflow.log"

    def __init__(
        self,
        name: str = "authflow",
        level: int = logging.INFO,
        stream: Optional[TextIO] = None,
        log_file: Optional[str] = None,
        max_bytes: Optional[int] = None,
        backup_count: Optional[int] = None,
    ) -> None:
        self._logger: logging.Logger = logging.getLogger(name)
        self._logger.setLevel(level)
        if self._logger.handlers:
            return

        if max_bytes is None or backup_count is None:
            # Imported here: config validation itself logs.
            from authflow.config import get_config

            config = get_config()
            max_bytes = config.LOG_MAX_BYTES if max_bytes is None else max_bytes
            backup_count = config.LOG_BACKUP_COUNT if backup_count is None else backup_count

        formatter = JSONFormatter()
        console = logging.StreamHandler(stream or sys.stdout)
        console.setFormatter(formatter)
        self._logger.addHandler(console)

        target = log_file or self.DEFAULT_LOG_FILE
        rotating = _file_handler(target, max_bytes, backup_count)
        if rotating is None:
            self._logger.warning(
                "Log file %s is not writable; logging to console only.", target,
            )
            return
        rotating.setFormatter(formatter)
        self._logger.addHandler(rotating)

    @property
    def logger(self) -> logging.Logger:
        return self._logger

    def debug(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.debug(msg, *args, **kwargs)

    def info(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.info(msg, *args, **kwargs)

    def warning(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.error(msg, *args, **kwargs)

    def critical(self, msg: str, *args: object, **kwargs: Any) -> None:
        self._logger.critical(msg, *args, **kwargs)


def get_logger(name: str = "authflow") -> StructuredLogger:
    """Return a ``StructuredLogger`` named *name* with default settings."""
    return StructuredLogger(name=name)
