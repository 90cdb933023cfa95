"""
identity/verifier.py -- The login algorithm.

CredentialVerifier.login(authenticator, identifier, system) answers one
question: does the supplied secret match a stored credential that belongs to
this identifier AND is scoped to this system?

    1. Identifier with exactly (identifier_type, value)      none -> False
    2. its Authenticator of the candidate's type             none -> False
    3. that Authenticator linked to a System with the guid   no   -> False
    4. bcrypt check of the secret against the stored hash    -> result
    5. stored value not a bcrypt hash                        -> CorruptData

Only password authenticator types are verified here. Any other type (a
public key, say) has nothing to compare a secret against and is rejected
with False before the graph is read.

Security design decisions:
  A rejected login is False, never an exception, so callers cannot mistake a
  data fault for a bad password or vice versa.

  Timing equalization: every early False still runs one bcrypt verification
  against dummy_hash(), so an unknown identifier and a wrong tenant take as
  long as a wrong password.

  One graph read fetches everything steps 1-3 need. The connection is back in
  the pool before bcrypt runs.
"""

from __future__ import annotations

import logging

from core.errors import CorruptData, ValidationFailed
from identity.models import PASSWORD_AUTHENTICATOR_TYPES, Authenticator, Identifier, System
from identity.passwords import dummy_hash, verify_password
from identity.store import IdentityStores

logger = logging.getLogger("authgraph.identity.verifier")

_LOGIN_FIELDS = ("uid", "authenticator { uid authenticator_type value system { guid } }")


class CredentialVerifier:
    def __init__(self, stores: IdentityStores) -> None:
        self._stores = stores

    def login(self, authenticator: Authenticator, identifier: Identifier, system: System) -> bool:
        """Return True if authenticator.value is the secret for identifier within system.

        Raises ValidationFailed if a candidate field is missing, CorruptData
        if the stored credential is not a valid hash, TransportError if the
        graph store is unreachable.
        """
        missing = [
            name
            for name, value in (
                ("authenticator_type", authenticator.authenticator_type),
                ("secret", authenticator.value),
                ("identifier_type", identifier.identifier_type),
                ("identifier", identifier.value),
                ("system_guid", system.guid),
            )
            if not value
        ]
        if missing:
            raise ValidationFailed(f"Login requires {', '.join(missing)}", details={"fields": missing})

        secret = authenticator.value
        if authenticator.authenticator_type not in PASSWORD_AUTHENTICATOR_TYPES:
            logger.info("Login rejected: %s has no password comparison", authenticator.authenticator_type)
            return self._reject(secret)

        stored = self._stores.identifiers.find_by_type_value(
            identifier.identifier_type, identifier.value, _LOGIN_FIELDS
        )
        if stored is None:
            logger.info("Login rejected: unknown identifier")
            return self._reject(secret)

        candidate = next(
            (a for a in stored.authenticators if a.authenticator_type == authenticator.authenticator_type),
            None,
        )
        if candidate is None:
            logger.info("Login rejected: identifier %s has no %s authenticator", stored.uid, authenticator.authenticator_type)
            return self._reject(secret)

        if not any(s.guid == system.guid for s in candidate.systems):
            logger.info("Login rejected: authenticator %s is not scoped to system %s", candidate.uid, system.guid)
            return self._reject(secret)

        if not candidate.value:
            raise CorruptData(
                f"Authenticator {candidate.uid} has no stored credential",
                details={"uid": candidate.uid},
            )
        try:
            verified = verify_password(secret, candidate.value)
        except CorruptData as exc:
            logger.error("Authenticator %s holds a malformed credential", candidate.uid)
            raise CorruptData(exc.message, details={"uid": candidate.uid}) from exc
        if not verified:
            logger.info("Login rejected: wrong secret for authenticator %s", candidate.uid)
        return verified

    @staticmethod
    def _reject(secret: str) -> bool:
        verify_password(secret, dummy_hash())
        return False
