"""Unit tests for identity/verifier.py -- the login algorithm.

Covers:
- login: correct secret True, wrong secret False, foreign system False
- unknown identifier and missing authenticator type are False, not errors
- secrets over 72 bytes and public key authenticators are False, not errors
- a damaged stored hash raises CorruptData instead of returning False
- every authenticator / identifier pairing outside the policy is TypeMismatch
- early rejections still spend one bcrypt verification
"""

from __future__ import annotations

import itertools

import pytest

from core.errors import CorruptData, TypeMismatch, ValidationFailed
from identity import verifier as verifier_module
from identity.models import (
    AUTHENTICATOR_IDENTIFIER_POLICY,
    Authenticator,
    AuthenticatorType,
    Entity,
    Identifier,
    IdentifierType,
    System,
)
from identity.passwords import hash_password
from identity.store import IdentityStores
from identity.verifier import CredentialVerifier

TEST_PASSWORD = "test123"
PUBLIC_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIOMqqnkVzrm0SdG6UOoqKLsabgH5C9okWi0dh2l9GKJl"


def _candidate(secret: str, authenticator_type=AuthenticatorType.email_password) -> Authenticator:
    return Authenticator(authenticator_type=authenticator_type, value=secret)


EMAIL = Identifier(identifier_type=IdentifierType.email, value="test@test.com")

# ---------------------------------------------------------------------------
# Login against a linked, system-scoped authenticator
# ---------------------------------------------------------------------------


def test_correct_secret(verifier: CredentialVerifier, account):
    assert verifier.login(_candidate(TEST_PASSWORD), EMAIL, System(guid=account.system.guid)) is True


def test_wrong_secret(verifier: CredentialVerifier, account):
    assert verifier.login(_candidate("wrongpass"), EMAIL, System(guid=account.system.guid)) is False


def test_foreign_system(verifier: CredentialVerifier, account, stores: IdentityStores):
    other = stores.systems.create(System.new(name="S2"), ("guid",))
    assert verifier.login(_candidate(TEST_PASSWORD), EMAIL, System(guid=other.guid)) is False
    assert verifier.login(_candidate(TEST_PASSWORD), EMAIL, System(guid="S2")) is False


# ---------------------------------------------------------------------------
# Rejections and faults
# ---------------------------------------------------------------------------


def test_unknown_identifier(verifier: CredentialVerifier, account):
    nobody = Identifier(identifier_type=IdentifierType.email, value="nobody@test.com")
    assert verifier.login(_candidate(TEST_PASSWORD), nobody, System(guid=account.system.guid)) is False


def test_identifier_value_is_exact_match(verifier: CredentialVerifier, account):
    shouty = Identifier(identifier_type=IdentifierType.email, value="TEST@test.com")
    assert verifier.login(_candidate(TEST_PASSWORD), shouty, System(guid=account.system.guid)) is False


def test_no_authenticator_of_that_type(verifier: CredentialVerifier, account):
    candidate = _candidate(TEST_PASSWORD, AuthenticatorType.username_password)
    assert verifier.login(candidate, EMAIL, System(guid=account.system.guid)) is False


def test_missing_candidate_fields(verifier: CredentialVerifier, account):
    with pytest.raises(ValidationFailed) as excinfo:
        verifier.login(_candidate(""), EMAIL, System())
    assert excinfo.value.details["fields"] == ["secret", "system_guid"]


def test_corrupt_hash(verifier: CredentialVerifier, account, stores: IdentityStores):
    stores.graph.mutate({"uid": account.authenticator.uid, "value": "not-a-bcrypt-hash"})
    with pytest.raises(CorruptData) as excinfo:
        verifier.login(_candidate(TEST_PASSWORD), EMAIL, System(guid=account.system.guid))
    assert excinfo.value.details == {"uid": account.authenticator.uid}


@pytest.mark.parametrize("secret", ["é" * 72, "x" * 100])
def test_secret_over_72_bytes_is_rejected(verifier: CredentialVerifier, account, secret):
    assert verifier.login(_candidate(secret), EMAIL, System(guid=account.system.guid)) is False


def test_secret_over_72_bytes_for_unknown_identifier(verifier: CredentialVerifier, account):
    nobody = Identifier(identifier_type=IdentifierType.email, value="nobody@test.com")
    assert verifier.login(_candidate("x" * 100), nobody, System(guid=account.system.guid)) is False


def test_public_key_login_is_rejected(verifier: CredentialVerifier, stores: IdentityStores):
    entity = stores.entities.create(Entity.new(sid="keyholder", display_name="Key Holder"))
    key_id = stores.identifiers.create(
        Identifier(identifier_type=IdentifierType.public_key, value="k1").add_entity(entity)
    )
    system = stores.systems.create(System.new(name="ssh"), ("uid", "guid"))
    stores.authenticators.create(
        Authenticator(authenticator_type=AuthenticatorType.public_key_authentication, value=PUBLIC_KEY)
        .add_entity(entity)
        .add_system(system)
        .add_identifier(key_id)
    )
    candidate = _candidate(PUBLIC_KEY, AuthenticatorType.public_key_authentication)
    claim = Identifier(identifier_type=IdentifierType.public_key, value="k1")
    assert verifier.login(candidate, claim, System(guid=system.guid)) is False


def test_early_rejection_still_hashes(verifier: CredentialVerifier, account, monkeypatch):
    checked = []
    real = verifier_module.verify_password

    def counting(plain, hashed):
        checked.append(hashed)
        return real(plain, hashed)

    monkeypatch.setattr(verifier_module, "verify_password", counting)
    nobody = Identifier(identifier_type=IdentifierType.email, value="nobody@test.com")
    verifier.login(_candidate(TEST_PASSWORD), nobody, System(guid=account.system.guid))
    verifier.login(_candidate(TEST_PASSWORD), EMAIL, System(guid="elsewhere"))
    verifier.login(_candidate(TEST_PASSWORD), EMAIL, System(guid=account.system.guid))
    assert len(checked) == 3


# ---------------------------------------------------------------------------
# Type pairing policy
# ---------------------------------------------------------------------------

_MISMATCHED = [
    (a, i)
    for a, i in itertools.product(AuthenticatorType, IdentifierType)
    if AUTHENTICATOR_IDENTIFIER_POLICY[a] != i
]


def test_every_pair_is_classified():
    assert len(_MISMATCHED) == len(AuthenticatorType) * len(IdentifierType) - len(AUTHENTICATOR_IDENTIFIER_POLICY)


def _pairing_authenticator(stores: IdentityStores, authenticator_type, identifier_type) -> Authenticator:
    """Persist an entity and identifier, return an unsaved authenticator for them."""
    entity = stores.entities.create(Entity.new(sid="pairing", display_name="Pairing"))
    identifier = stores.identifiers.create(
        Identifier(identifier_type=identifier_type, value="claim").add_entity(entity)
    )
    if authenticator_type is AuthenticatorType.public_key_authentication:
        value = PUBLIC_KEY
    else:
        value = hash_password("secret")
    return Authenticator(authenticator_type=authenticator_type, value=value).add_entity(entity).add_identifier(identifier)


@pytest.mark.parametrize("authenticator_type,identifier_type", _MISMATCHED)
def test_mismatched_pairs(stores: IdentityStores, authenticator_type, identifier_type):
    authenticator = _pairing_authenticator(stores, authenticator_type, identifier_type)
    with pytest.raises(TypeMismatch):
        stores.authenticators.create(authenticator)
    assert stores.authenticators.find_by_type_identifier(authenticator_type, authenticator.identifiers[0]) is None


@pytest.mark.parametrize("authenticator_type,identifier_type", list(AUTHENTICATOR_IDENTIFIER_POLICY.items()))
def test_policy_pairs_accepted(stores: IdentityStores, authenticator_type, identifier_type):
    authenticator = _pairing_authenticator(stores, authenticator_type, identifier_type)
    assert stores.authenticators.create(authenticator).uid
