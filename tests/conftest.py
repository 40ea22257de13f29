"""Shared pytest fixtures."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from inkwell.ai.orchestration.cancellation import CancellationCoordinator
from inkwell.ai.orchestration.state import ConversationState
from inkwell.services.credentials import CredentialVault
from inkwell.services.settings import EngineLimits


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("INKWELL_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def vault(tmp_path: Path) -> CredentialVault:
    return CredentialVault(tmp_path / "credentials.json")


@pytest.fixture
def limits() -> EngineLimits:
    return EngineLimits()


@pytest.fixture
def coordinator() -> CancellationCoordinator:
    return CancellationCoordinator()


@pytest.fixture
def state(coordinator: CancellationCoordinator) -> ConversationState:
    return ConversationState(coordinator)
