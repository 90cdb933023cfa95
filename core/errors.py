"""
core/errors.py -- Error taxonomy shared by the graph store and identity stores.

Every failure the core reports is an IdentityError subclass carrying a
machine-readable `code` (used verbatim by the API error envelope) and a
`details` dict for debugging. Errors are raised to the immediate caller and
never retried inside the core.

A rejected login is NOT an error: the credential verifier returns False for
a wrong secret, an unknown identifier or a foreign tenant. Only genuine
system or data faults are raised.

Layer rule: core/ is the kernel. No imports from api/, graph/ or identity/.
"""

from __future__ import annotations

from typing import Any, Optional


class IdentityError(Exception):
    """Base exception for the identity core."""

    code = "identity_error"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationFailed(IdentityError):
    """A required field is missing or a caller-supplied value is not allowed."""

    code = "validation_failed"


class NotFound(IdentityError):
    """A referenced record does not exist."""

    code = "not_found"


class AlreadyExists(IdentityError):
    """The uniqueness lookup found a record with the same key."""

    code = "already_exists"


class TypeMismatch(IdentityError):
    """Authenticator type does not pair with the identifier type."""

    code = "type_mismatch"


class EmptyResult(IdentityError):
    """A value was extracted from an empty or absent result."""

    code = "empty_result"


class TransportError(IdentityError):
    """The graph database could not be reached or rejected the request."""

    code = "transport_error"


class CorruptData(IdentityError):
    """A stored record violates an invariant, e.g. an unparsable password hash."""

    code = "corrupt_data"


class AssociationIncomplete(IdentityError):
    """A record was persisted but some of its reverse edges were not written.

    The record exists under `uid`. `linked` and `failed` list the related
    records (as "Type:key" strings) whose adjacency was and was not updated.
    Nothing is rolled back; reconciling the missing edges is the caller's job.
    """

    code = "association_incomplete"

    def __init__(self, uid: str, linked: list[str], failed: list[str]) -> None:
        super().__init__(
            f"Record {uid} persisted but {len(failed)} of {len(linked) + len(failed)} reverse edges failed",
            details={"uid": uid, "linked": linked, "failed": failed},
        )
        self.uid = uid
        self.linked = linked
        self.failed = failed
