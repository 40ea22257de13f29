"""Configuration and credential services consumed by the engine."""

from .credentials import CredentialVault, redact_secret
from .settings import EngineLimits, Settings, SettingsLoader

__all__ = ["CredentialVault", "EngineLimits", "Settings", "SettingsLoader", "redact_secret"]
