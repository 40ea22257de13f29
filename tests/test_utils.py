"""Tests covering the utilities modules."""

from __future__ import annotations

import logging
from pathlib import Path

from inkwell.utils import logging as logging_utils


def _flush() -> None:
    for handler in logging.getLogger().handlers:
        handler.flush()


def test_setup_logging_creates_rotating_file(tmp_path: Path) -> None:
    log_dir = tmp_path / "logs"

    log_path = logging_utils.setup_logging(
        level=logging.INFO,
        log_dir=log_dir,
        console=False,
        force=True,
    )

    logging.getLogger("inkwell.tests").info("Logging smoke test")
    _flush()

    assert log_path == log_dir / "inkwell.log"
    assert logging_utils.get_log_path() == log_path
    contents = log_path.read_text(encoding="utf-8")
    assert "Logging smoke test" in contents
    assert logging.getLogger("httpx").level == logging.WARNING


def test_setup_logging_is_sticky_without_force(tmp_path: Path) -> None:
    first = logging_utils.setup_logging(log_dir=tmp_path / "a", console=False, force=True)

    second = logging_utils.setup_logging(log_dir=tmp_path / "b", console=False)

    assert second == first
    assert not (tmp_path / "b").exists()


def test_secrets_are_masked_in_log_file(tmp_path: Path) -> None:
    log_path = logging_utils.setup_logging(log_dir=tmp_path, console=False, force=True)

    logger = logging.getLogger("inkwell.tests.secrets")
    logger.warning("POST %s", "https://example.com/v1beta/models/g:generateContent?key=AIza-secret")
    logger.warning("Echoed header: Authorization: Bearer sk-live-1234567890")
    _flush()

    contents = log_path.read_text(encoding="utf-8")
    assert "AIza-secret" not in contents
    assert "sk-live-1234567890" not in contents
    assert "?key=***" in contents
    assert "Bearer ***" in contents


def test_redact_url_masks_key_parameter() -> None:
    url = "https://generativelanguage.googleapis.com/v1beta/models/g:generateContent?key=AIza-secret&alt=sse"

    assert logging_utils.redact_url(url) == (
        "https://generativelanguage.googleapis.com/v1beta/models/g:generateContent?key=***&alt=sse"
    )
    assert logging_utils.redact_url("https://api.example.com/v1") == "https://api.example.com/v1"


def test_secret_filter_leaves_clean_records_alone() -> None:
    record = logging.LogRecord("inkwell", logging.INFO, __file__, 1, "Round %d of %d", (1, 10), None)

    assert logging_utils.SecretFilter().filter(record)
    assert record.args == (1, 10)
    assert record.getMessage() == "Round 1 of 10"
