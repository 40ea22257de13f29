"""Tests for the read-only settings loader."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from inkwell.ai.ai_types import ProviderKind
from inkwell.services.settings import EngineLimits, Settings, SettingsLoader, provider_kind_names


def _write(path: Path, payload: dict) -> Path:
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_load_returns_defaults_when_file_missing(tmp_path: Path) -> None:
    settings = SettingsLoader(tmp_path / "settings.json").load()

    assert settings == Settings()
    assert settings.limits.max_rounds == 10
    assert settings.limits.max_truncation_retries == 2
    assert settings.limits.tool_timeout_seconds == 20.0
    assert settings.limits.stream_idle_timeout_seconds == 30.0


def test_load_reads_providers_and_limits(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "settings.json",
        {
            "providers": [
                {"id": "main", "provider_kind": "claude", "model": "claude-sonnet", "credential_ref": "anthropic"},
                {"id": "local", "provider_kind": "ollama", "model": "llama3"},
            ],
            "active_provider_id": "local",
            "limits": {"max_rounds": 4, "history_window": 12},
            "unknown_field": True,
        },
    )

    settings = SettingsLoader(path).load()

    assert settings.limits.max_rounds == 4
    assert settings.limits.history_window == 12
    active = settings.active_provider()
    assert active is not None
    assert active.id == "local"
    assert active.provider_kind is ProviderKind.OLLAMA
    assert [config.id for config in settings.provider_configs()] == ["main", "local"]


def test_invalid_provider_entries_are_skipped(tmp_path: Path) -> None:
    path = _write(
        tmp_path / "settings.json",
        {
            "providers": [
                {"id": "bad", "provider_kind": "nonexistent", "model": "x"},
                {"id": "empty-model", "provider_kind": "openai", "model": " "},
                {"id": "good", "provider_kind": "openai", "model": "gpt-4o"},
            ],
            "active_provider_id": "missing",
        },
    )

    settings = SettingsLoader(path).load()

    assert [config.id for config in settings.provider_configs()] == ["good"]
    active = settings.active_provider()
    assert active is not None and active.id == "good"


def test_invalid_json_falls_back_to_defaults(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text("{not json", encoding="utf-8")

    assert SettingsLoader(path).load() == Settings()


def test_cli_overrides_target_limits_and_settings(tmp_path: Path) -> None:
    settings = SettingsLoader(tmp_path / "settings.json").load(
        overrides={"max_rounds": 3, "debug_logging": True, "streaming_enabled": False}
    )

    assert settings.limits.max_rounds == 3
    assert settings.limits.streaming_enabled is False
    assert settings.debug_logging is True


def test_env_overrides_take_precedence(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    path = _write(tmp_path / "settings.json", {"limits": {"max_rounds": 6}, "active_provider_id": "a"})
    monkeypatch.setenv("INKWELL_MAX_ROUNDS", "2")
    monkeypatch.setenv("INKWELL_TOOL_TIMEOUT", "1.5")
    monkeypatch.setenv("INKWELL_STREAMING", "off")
    monkeypatch.setenv("INKWELL_ACTIVE_PROVIDER", "b")

    settings = SettingsLoader(path).load()

    assert settings.limits.max_rounds == 2
    assert settings.limits.tool_timeout_seconds == 1.5
    assert settings.limits.streaming_enabled is False
    assert settings.active_provider_id == "b"


def test_invalid_env_numbers_are_ignored(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("INKWELL_MAX_ROUNDS", "many")

    settings = SettingsLoader(tmp_path / "settings.json").load()

    assert settings.limits.max_rounds == 10


def test_limits_are_clamped() -> None:
    limits = EngineLimits(
        max_rounds=0,
        max_truncation_retries=-1,
        history_window=0,
        default_max_tokens=10,
        max_tokens_ceiling=5,
    ).clamp()

    assert limits.max_rounds == 1
    assert limits.max_truncation_retries == 0
    assert limits.history_window == 2
    assert limits.default_max_tokens == 256
    assert limits.max_tokens_ceiling == 256


def test_provider_kind_names_cover_every_backend() -> None:
    names = provider_kind_names()

    assert "claude" in names and "ollama" in names and "custom" in names
    assert len(names) == len(ProviderKind)
