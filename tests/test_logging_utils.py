from __future__ import annotations

import logging
from pathlib import Path

import pytest

from hsm_signing import configure_logging
from hsm_signing.logging_utils import resolve_level


def test_configure_logging_creates_rotating_log_file(tmp_path: Path) -> None:
    log_file = tmp_path / "hsm-signing.log"
    logger = configure_logging(
        log_file=log_file,
        level="INFO",
        max_bytes=1024,
        backup_count=2,
    )
    logging.getLogger("hsm_signing.workflow").info("logging test message")

    for handler in logger.handlers:
        handler.flush()

    assert log_file.exists()
    contents = log_file.read_text(encoding="utf-8")
    assert "logging test message" in contents
    assert "hsm_signing.workflow" in contents


def test_configure_logging_is_idempotent(tmp_path: Path) -> None:
    log_file = tmp_path / "hsm-signing.log"

    configure_logging(log_file=log_file, console=True)
    logger = configure_logging(log_file=log_file, console=True, level="DEBUG")

    assert len(logger.handlers) == 2
    assert logger.level == logging.DEBUG
    assert all(handler.level == logging.DEBUG for handler in logger.handlers)


def test_configure_logging_reads_environment(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    log_file = tmp_path / "nested" / "env.log"
    monkeypatch.setenv("HSM_SIGNING_LOG_FILE", str(log_file))
    monkeypatch.setenv("HSM_SIGNING_LOG_LEVEL", "warning")

    logger = configure_logging()

    assert logger.level == logging.WARNING
    assert log_file.parent.is_dir()


def test_configure_logging_rejects_negative_sizes(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("HSM_SIGNING_LOG_MAX_BYTES", "-5")

    with pytest.raises(ValueError, match="MAX_BYTES"):
        configure_logging(log_file=tmp_path / "x.log")


@pytest.mark.parametrize(
    ("value", "expected"),
    [("debug", logging.DEBUG), (" Error ", logging.ERROR), ("15", 15), (logging.INFO, logging.INFO)],
)
def test_resolve_level(value: str | int, expected: int) -> None:
    assert resolve_level(value) == expected


def test_resolve_level_rejects_unknown_name() -> None:
    with pytest.raises(ValueError, match="Invalid log level"):
        resolve_level("chatty")
