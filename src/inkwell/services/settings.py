"""Settings dataclasses and loading helpers.

The engine only ever *reads* configuration: provider entries and tuning
limits come from a JSON document maintained by the host application, with
CLI and environment overrides layered on top.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping

from ..ai.ai_types import ProviderConfig, ProviderKind

__all__ = ["EngineLimits", "Settings", "SettingsLoader", "DEFAULT_SETTINGS_PATH", "provider_kind_names"]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".inkwell"
DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_ENV_OVERRIDES: Mapping[str, str] = {
    "INKWELL_ACTIVE_PROVIDER": "active_provider_id",
    "INKWELL_LOG_DIR": "log_dir",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "INKWELL_DEBUG_LOGGING": "debug_logging",
}
_LIMIT_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "INKWELL_STREAMING": "streaming_enabled",
}
_LIMIT_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "INKWELL_MAX_ROUNDS": "max_rounds",
    "INKWELL_MAX_TRUNCATION_RETRIES": "max_truncation_retries",
    "INKWELL_HISTORY_WINDOW": "history_window",
    "INKWELL_DEFAULT_MAX_TOKENS": "default_max_tokens",
}
_LIMIT_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "INKWELL_TOOL_TIMEOUT": "tool_timeout_seconds",
    "INKWELL_STREAM_IDLE_TIMEOUT": "stream_idle_timeout_seconds",
    "INKWELL_REQUEST_TIMEOUT": "request_timeout_seconds",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


@dataclass(slots=True)
class EngineLimits:
    """Bounds and ceilings applied by the conversation engine."""

    max_rounds: int = 10
    max_truncation_retries: int = 2
    tool_timeout_seconds: float = 20.0
    stream_idle_timeout_seconds: float = 30.0
    request_timeout_seconds: float = 180.0
    history_window: int = 20
    tool_result_max_chars: int = 50_000
    prior_tool_result_max_chars: int = 4_000
    prior_tool_arguments_max_chars: int = 1_000
    image_turns_kept: int = 2
    default_max_tokens: int = 8_192
    max_tokens_ceiling: int = 131_072
    continuation_budget_multiplier: float = 2.0
    streaming_enabled: bool = True
    document_context_chars: int = 1_000

    def clamp(self) -> "EngineLimits":
        """Return a copy with every value forced into a workable range."""

        default_max_tokens = max(256, int(self.default_max_tokens))
        return EngineLimits(
            max_rounds=max(1, int(self.max_rounds)),
            max_truncation_retries=max(0, int(self.max_truncation_retries)),
            tool_timeout_seconds=max(0.01, float(self.tool_timeout_seconds)),
            stream_idle_timeout_seconds=max(0.01, float(self.stream_idle_timeout_seconds)),
            request_timeout_seconds=max(1.0, float(self.request_timeout_seconds)),
            history_window=max(2, int(self.history_window)),
            tool_result_max_chars=max(1_000, int(self.tool_result_max_chars)),
            prior_tool_result_max_chars=max(200, int(self.prior_tool_result_max_chars)),
            prior_tool_arguments_max_chars=max(200, int(self.prior_tool_arguments_max_chars)),
            image_turns_kept=max(0, int(self.image_turns_kept)),
            default_max_tokens=default_max_tokens,
            max_tokens_ceiling=max(default_max_tokens, int(self.max_tokens_ceiling)),
            continuation_budget_multiplier=max(1.0, float(self.continuation_budget_multiplier)),
            streaming_enabled=bool(self.streaming_enabled),
            document_context_chars=max(0, int(self.document_context_chars)),
        )


@dataclass(slots=True)
class Settings:
    """Configuration snapshot handed to the engine at startup."""

    providers: list[dict[str, Any]] = field(default_factory=list)
    active_provider_id: str | None = None
    limits: EngineLimits = field(default_factory=EngineLimits)
    debug_logging: bool = False
    log_dir: str | None = None

    def provider_configs(self) -> list[ProviderConfig]:
        """Parse the provider entries, skipping those that are unusable."""

        configs: list[ProviderConfig] = []
        for entry in self.providers:
            try:
                configs.append(ProviderConfig.from_dict(entry))
            except (KeyError, TypeError, ValueError) as exc:
                LOGGER.warning("Ignoring provider entry %r: %s", entry.get("id"), exc)
        return configs

    def active_provider(self) -> ProviderConfig | None:
        """Return the selected provider, falling back to the first entry."""

        configs = self.provider_configs()
        if not configs:
            return None
        if self.active_provider_id:
            for config in configs:
                if config.id == self.active_provider_id:
                    return config
            LOGGER.warning("Active provider %s not found; using %s", self.active_provider_id, configs[0].id)
        return configs[0]


class SettingsLoader:
    """Read-only loader for :class:`Settings`."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or DEFAULT_SETTINGS_PATH

    @property
    def path(self) -> Path:
        """Return the resolved path backing this loader."""

        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying CLI/environment overrides when present."""

        payload = self._read_payload()
        settings = Settings()
        if payload:
            data = _filter_fields(payload)
            limits_payload = data.get("limits")
            if isinstance(limits_payload, Mapping):
                data["limits"] = _build_limits(limits_payload)
            else:
                data.pop("limits", None)
            providers = data.get("providers")
            if not isinstance(providers, list):
                data.pop("providers", None)
            else:
                data["providers"] = [dict(entry) for entry in providers if isinstance(entry, Mapping)]
            try:
                settings = Settings(**data)
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = Settings()
            LOGGER.debug(
                "Settings loaded from %s: %d providers, active=%s",
                self._path,
                len(settings.providers),
                settings.active_provider_id,
            )

        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")

        settings = self._apply_env_overrides(settings)
        return replace(settings, limits=settings.limits.clamp())

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8")
            payload = json.loads(text)
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(payload, dict):
            LOGGER.warning("Settings file %s does not contain an object", self._path)
            return {}
        return payload

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        allowed = {item.name for item in fields(Settings)} - {"limits"}
        limit_names = {item.name for item in fields(EngineLimits)}
        filtered: Dict[str, Any] = {}
        limit_overrides: Dict[str, Any] = {}
        for key, value in overrides.items():
            if value is None:
                continue
            if key in limit_names:
                limit_overrides[key] = value
            elif key in allowed:
                filtered[key] = value
        if limit_overrides:
            nested = overrides.get("limits")
            if isinstance(nested, Mapping):
                limit_overrides = {**nested, **limit_overrides}
            filtered["limits"] = _build_limits(limit_overrides, base=settings.limits)
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in {**_BOOL_ENV_OVERRIDES, **_LIMIT_BOOL_ENV_OVERRIDES}.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _LIMIT_INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning(
                    "Environment override %s=%s is not a valid integer",
                    env_name,
                    value,
                )
        for env_name, field_name in _LIMIT_FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning(
                    "Environment override %s=%s is not a valid float", env_name, value
                )
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {item.name for item in fields(Settings)}
    return {key: value for key, value in payload.items() if key in allowed}


def _build_limits(payload: Mapping[str, Any], *, base: EngineLimits | None = None) -> EngineLimits:
    allowed = {item.name for item in fields(EngineLimits)}
    values: Dict[str, Any] = {}
    for key, value in payload.items():
        if key not in allowed:
            LOGGER.warning("Unknown engine limit %s ignored", key)
            continue
        values[key] = value
    try:
        return replace(base or EngineLimits(), **values).clamp()
    except (TypeError, ValueError) as exc:
        LOGGER.warning("Engine limits payload is invalid (%s); using defaults", exc)
        return base or EngineLimits()


def provider_kind_names() -> tuple[str, ...]:
    return tuple(kind.value for kind in ProviderKind)
