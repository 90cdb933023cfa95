"""Unit tests for identity/models.py and identity/passwords.py.

Covers:
- add_<edge>() returns a new record with prior edges plus the new one
- guid generation on Record.new()
- the closed authenticator -> identifier policy table
- Authenticator repr never shows the stored value
- bcrypt hash / verify, and CorruptData for malformed hashes
- secrets over 72 UTF-8 bytes: ValidationFailed to hash, False to verify
"""

import dataclasses

import pytest

from core.errors import CorruptData, ValidationFailed
from identity.models import (
    GRAPH_SCHEMA,
    Authenticator,
    AuthenticatorType,
    Entity,
    Identifier,
    IdentifierType,
    Namespace,
    System,
    add_edge,
    edge_attribute,
    pairing_is_valid,
)
from identity.passwords import dummy_hash, hash_password, is_password_hash, secret_fits, verify_password


def test_add_edge_is_copy_on_write():
    entity = Entity.new(sid="testy", display_name="Test Testy")
    s1, s2 = System(uid="0x1"), System(uid="0x2")
    one = entity.add_system(s1)
    two = one.add_system(s2)
    assert entity.systems == ()
    assert one.systems == (s1,)
    assert two.systems == (s1, s2)
    assert two.guid == entity.guid


def test_records_are_frozen():
    with pytest.raises(dataclasses.FrozenInstanceError):
        Entity().sid = "changed"


def test_new_generates_distinct_guids():
    assert Entity.new().guid != Entity.new().guid
    assert System.new(name="test").guid


def test_add_edge_rejects_unrelated_types():
    with pytest.raises(TypeError):
        add_edge(Entity(), Namespace())
    assert edge_attribute(Entity, Namespace) is None
    assert edge_attribute(Authenticator, System) == "systems"


def test_policy_table():
    assert pairing_is_valid(AuthenticatorType.email_password, IdentifierType.email)
    assert pairing_is_valid(AuthenticatorType.phone_password, IdentifierType.phone)
    assert pairing_is_valid(AuthenticatorType.username_password, IdentifierType.username)
    assert pairing_is_valid(AuthenticatorType.public_key_authentication, IdentifierType.public_key)
    assert not pairing_is_valid(AuthenticatorType.email_password, IdentifierType.phone)


def test_authenticator_cascade_order():
    assert list(Authenticator.EDGES) == ["entities", "systems", "identifiers"]


def test_authenticator_repr_masks_value():
    text = repr(Authenticator(authenticator_type=AuthenticatorType.email_password, value="hunter2"))
    assert "hunter2" not in text
    assert "***" in text


def test_schema_edges_point_at_known_types():
    for schema in GRAPH_SCHEMA.values():
        for target in schema.edges.values():
            assert target in GRAPH_SCHEMA
    assert GRAPH_SCHEMA["Identifier"].edges == {"entity": "Entity", "authenticator": "Authenticator"}
    assert "value" in GRAPH_SCHEMA["Identifier"].scalars


def test_identifier_defaults():
    identifier = Identifier(identifier_type=IdentifierType.email, value="a@b.c")
    assert identifier.uid is None
    assert identifier.entities == ()


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


def test_hash_and_verify():
    hashed = hash_password("test123")
    assert hashed != "test123"
    assert is_password_hash(hashed)
    assert verify_password("test123", hashed) is True
    assert verify_password("wrongpass", hashed) is False


def test_hash_uses_configured_cost():
    assert hash_password("x").startswith("$2b$04$")
    assert hash_password("x", rounds=5).startswith("$2b$05$")


@pytest.mark.parametrize("value", ["", "test123", "$2b$04$short", "$argon2id$v=19$m=4096,t=3,p=1$abc$def"])
def test_malformed_hash_is_corrupt(value):
    assert not is_password_hash(value)
    with pytest.raises(CorruptData):
        verify_password("test123", value)


def test_dummy_hash_is_stable():
    assert dummy_hash() == dummy_hash()
    assert verify_password("anything", dummy_hash()) is False


def test_verify_secret_over_72_bytes_is_false():
    hashed = hash_password("test123")
    assert verify_password("é" * 72, hashed) is False
    assert verify_password("x" * 100, dummy_hash()) is False


def test_verify_malformed_hash_with_long_secret_is_corrupt():
    with pytest.raises(CorruptData):
        verify_password("x" * 100, "not-a-bcrypt-hash")


@pytest.mark.parametrize("secret", ["é" * 37, "x" * 73])
def test_hash_secret_over_72_bytes_fails_validation(secret):
    assert not secret_fits(secret)
    with pytest.raises(ValidationFailed) as excinfo:
        hash_password(secret)
    assert excinfo.value.details == {"fields": ["secret"]}


def test_hash_accepts_exactly_72_bytes():
    assert secret_fits("é" * 36)
    assert verify_password("é" * 36, hash_password("é" * 36)) is True
