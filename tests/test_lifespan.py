"""
tests/test_lifespan.py -- Startup behaviour of the real application lifespan.

Covers:
  - the API refuses to start without an API key
  - the app's lifespan is the production one again once an api_client
    module has finished (this module never requests api_client)
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from core.config import get_settings


def test_startup_refuses_without_api_key(monkeypatch):
    monkeypatch.setattr(get_settings(), "api_key", "")
    with pytest.raises(RuntimeError, match="API_KEY"):
        with TestClient(app, base_url="http://localhost"):
            pass


def test_limiter_enabled_outside_api_modules():
    assert limiter.enabled is True
