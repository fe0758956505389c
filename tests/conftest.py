from __future__ import annotations

import pytest

from copytrader.common import secrets


@pytest.fixture(autouse=True)
def _isolate_secret_env(monkeypatch):
    """
    Test hygiene: never pick up a developer's shell exports or a cached secret.
    """
    monkeypatch.delenv("ALLOW_ENV_SECRET_FALLBACK", raising=False)
    secrets._access_secret_version.cache_clear()
