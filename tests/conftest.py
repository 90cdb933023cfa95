"""
tests/conftest.py -- Shared test fixtures for authgraph.

This module provides:
  - graph / stores / append_stores: in-memory graph store and identity stores
    for unit tests (union and append edge policies)
  - account: entity, email identifier, system and email_password
    authenticator built through the public store API
  - api_client: TestClient over the real app with an isolated graph store

Design: the API fixture uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs sync route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. Unit tests run on one thread, so plain :memory: is enough.

DEBUG and BCRYPT_ROUNDS must be set before any authgraph import: DEBUG makes
get_settings() generate an API key, and cost 4 keeps bcrypt fast.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from types import SimpleNamespace

# CRITICAL: Set before any core/identity/api import so the cached Settings
# pick them up.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from core.config import Settings, get_settings
from graph.store import GraphStore
from identity.models import Authenticator, AuthenticatorType, Entity, Identifier, IdentifierType, System
from identity.passwords import hash_password
from identity.store import IdentityStores
from identity.verifier import CredentialVerifier

TEST_PASSWORD = "test123"

# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def graph() -> Generator[GraphStore, None, None]:
    g = GraphStore("sqlite:///:memory:")
    yield g
    g.close()


@pytest.fixture
def stores(graph: GraphStore) -> IdentityStores:
    """Identity stores with the default union edge policy."""
    return IdentityStores(graph, Settings(edge_policy="union"))


@pytest.fixture
def append_stores(graph: GraphStore) -> IdentityStores:
    """Identity stores over the same graph with the append edge policy."""
    return IdentityStores(graph, Settings(edge_policy="append"))


@pytest.fixture
def account(stores: IdentityStores) -> SimpleNamespace:
    """The account used across store and verifier tests.

    Entity "testy", identifier email test@test.com, system "test" and an
    email_password authenticator for TEST_PASSWORD scoped to that system.
    """
    entity = stores.entities.create(
        Entity.new(sid="testy", display_name="Test Testy"), ("uid", "guid", "sid", "display_name")
    )
    identifier = stores.identifiers.create(
        Identifier(identifier_type=IdentifierType.email, value="test@test.com").add_entity(entity),
        ("uid", "identifier_type", "value"),
    )
    system = stores.systems.create(System.new(name="test"), ("uid", "guid", "name"))
    authenticator = stores.authenticators.create(
        Authenticator(authenticator_type=AuthenticatorType.email_password, value=hash_password(TEST_PASSWORD))
        .add_entity(entity)
        .add_system(system)
        .add_identifier(identifier),
        ("uid", "authenticator_type"),
    )
    return SimpleNamespace(
        entity=entity,
        identifier=identifier,
        system=system,
        authenticator=authenticator,
    )


@pytest.fixture
def verifier(stores: IdentityStores) -> CredentialVerifier:
    return CredentialVerifier(stores)


# ---------------------------------------------------------------------------
# API fixture
# ---------------------------------------------------------------------------


def _patch_lifespan(stores: IdentityStores):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state so TestClient routes see an
    isolated graph rather than the configured database.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.stores = stores
        app.state.verifier = CredentialVerifier(stores)
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, dict[str, str]], None, None]:
    """Yield (client, headers) for API integration tests.

    headers carries the X-API-Key. Rate limiting is switched off so modules
    can make as many requests as they need; tests that exercise the limiter
    turn it back on themselves.
    """
    db_url = f"sqlite:///file:test_graph_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    stores = IdentityStores(GraphStore(db_url))
    headers = {"X-API-Key": get_settings().api_key}

    # Both patches are undone at module teardown.
    with pytest.MonkeyPatch.context() as mp:
        mp.setattr(app.router, "lifespan_context", _patch_lifespan(stores))
        mp.setattr(limiter, "enabled", False)
        with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
            yield client, headers

    stores.close()
