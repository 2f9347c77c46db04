"""Pytest configuration helpers for the speedtestctl suite."""

from __future__ import annotations

import os

import pytest

from speedtestctl.config import ENV_PREFIX, LEGACY_ENV_KEYS


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the caller's DEBUG/VERBOSE/PORT and SPEEDTESTCTL_* out of every test."""
    for key in list(os.environ):
        if key.startswith(ENV_PREFIX) or key in LEGACY_ENV_KEYS:
            monkeypatch.delenv(key, raising=False)


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip the end-to-end flows during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)
