from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOGGER_NAMESPACE = "hsm_signing"
ENV_PREFIX = "HSM_SIGNING_LOG_"

DEFAULT_LOG_FILE = "logs/hsm-signing.log"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_LOG_BACKUP_COUNT = 5

_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _env(name: str, default: str) -> str:
    return os.environ.get(f"{ENV_PREFIX}{name}", default)


def _parse_non_negative(value: str | int, name: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {value}") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be >= 0, got: {value}")
    return parsed


def resolve_level(level: str | int) -> int:
    """Accept a level name ("debug"), a numeric string ("10") or an int."""
    if isinstance(level, int):
        return level
    normalized = level.strip().upper()
    if normalized.isdigit():
        return int(normalized)
    numeric = logging.getLevelName(normalized)
    if not isinstance(numeric, int):
        raise ValueError(f"Invalid log level: {level}")
    return numeric


def configure_logging(
    *,
    log_file: str | Path | None = None,
    level: str | int | None = None,
    max_bytes: int | None = None,
    backup_count: int | None = None,
    console: bool = False,
) -> logging.Logger:
    """
    Configure logging for the hsm_signing namespace.

    Records go to a rotating file; ``console=True`` mirrors them to stderr so
    they do not interleave with the diagnostic report on stdout.

    Environment variable overrides:
    - HSM_SIGNING_LOG_FILE
    - HSM_SIGNING_LOG_LEVEL
    - HSM_SIGNING_LOG_MAX_BYTES
    - HSM_SIGNING_LOG_BACKUP_COUNT
    """

    path = Path(str(log_file or _env("FILE", DEFAULT_LOG_FILE)))
    numeric_level = resolve_level(level if level is not None else _env("LEVEL", DEFAULT_LOG_LEVEL))
    max_bytes = _parse_non_negative(
        max_bytes if max_bytes is not None else _env("MAX_BYTES", str(DEFAULT_LOG_MAX_BYTES)),
        f"{ENV_PREFIX}MAX_BYTES",
    )
    backup_count = _parse_non_negative(
        backup_count
        if backup_count is not None
        else _env("BACKUP_COUNT", str(DEFAULT_LOG_BACKUP_COUNT)),
        f"{ENV_PREFIX}BACKUP_COUNT",
    )

    logger = logging.getLogger(LOGGER_NAMESPACE)
    logger.setLevel(numeric_level)
    logger.propagate = False

    resolved_path = path.resolve()
    file_handler = next(
        (
            handler
            for handler in logger.handlers
            if isinstance(handler, RotatingFileHandler)
            and Path(handler.baseFilename).resolve() == resolved_path
        ),
        None,
    )
    if file_handler is None:
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(_FORMAT))
        logger.addHandler(file_handler)

    if console and not any(
        type(handler) is logging.StreamHandler for handler in logger.handlers
    ):
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(logging.Formatter(_FORMAT))
        logger.addHandler(stream_handler)
    for handler in logger.handlers:
        handler.setLevel(numeric_level)

    logger.debug(
        "Logging configured (path=%s, level=%s, max_bytes=%d, backup_count=%d, console=%s)",
        path,
        logging.getLevelName(numeric_level),
        max_bytes,
        backup_count,
        console,
    )
    return logger
