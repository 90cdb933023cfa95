"""
API request and response models for the authgraph management API.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the frozen dataclasses in
identity/models.py, which own the internal domain representation. Route
handlers map between the two; dump_record() maps records back out.

Separation of concerns: identity/ models = domain truth; api/ models = API contract.
"""

from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from identity.models import PASSWORD_AUTHENTICATOR_TYPES, Authenticator, AuthenticatorType, IdentifierType, ScopeType
from identity.passwords import MAX_SECRET_BYTES, secret_fits

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Graph uids as rendered by graph.store.format_uid().
UID_PATTERN = r"^0x[0-9a-f]+$"

_Uid = Annotated[str, Field(pattern=UID_PATTERN)]
_Guid = Annotated[str, Field(min_length=1, max_length=64)]
_Name = Annotated[str, Field(min_length=1, max_length=128)]
# Public keys are stored as given and can run to a few KB.
_Secret = Annotated[str, Field(min_length=1, max_length=8192)]


def _check_password_secret(authenticator_type: AuthenticatorType, secret: str) -> None:
    """Reject a password secret bcrypt cannot take whole (72 bytes, not characters)."""
    if authenticator_type in PASSWORD_AUTHENTICATOR_TYPES and not secret_fits(secret):
        raise ValueError(f"secret must be at most {MAX_SECRET_BYTES} bytes for password authenticators")


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class EntityCreate(BaseModel):
    """Request body for POST /api/v1/entities. guid is generated server-side."""

    model_config = ConfigDict(str_strip_whitespace=True)

    sid: _Name
    display_name: str = Field(min_length=1, max_length=256)


class IdentifierCreate(BaseModel):
    """Request body for POST /api/v1/identifiers."""

    model_config = ConfigDict(str_strip_whitespace=True)

    identifier_type: IdentifierType
    value: str = Field(min_length=1, max_length=320)
    entity_uids: list[_Uid] = Field(min_length=1)


class AuthenticatorCreate(BaseModel):
    """Request body for POST /api/v1/authenticators.

    secret is plaintext. Password types are bcrypt-hashed before they reach
    the store; bcrypt reads at most 72 bytes, hence the cap on those types.
    Public keys are stored as given.
    """

    authenticator_type: AuthenticatorType
    secret: _Secret
    entity_uids: list[_Uid] = Field(min_length=1)
    identifier_uids: list[_Uid] = Field(min_length=1)
    system_guids: list[_Guid] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_secret_length(self) -> "AuthenticatorCreate":
        _check_password_secret(self.authenticator_type, self.secret)
        return self


class SystemCreate(BaseModel):
    """Request body for POST /api/v1/systems."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: _Name


class NamespaceCreate(BaseModel):
    """Request body for POST /api/v1/namespaces."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: _Name
    system_guids: list[_Guid] = Field(min_length=1)


class ScopeCreate(BaseModel):
    """Request body for POST /api/v1/scopes."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: _Name
    scope_type: ScopeType
    namespace_guids: list[_Guid] = Field(min_length=1)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/login."""

    authenticator_type: AuthenticatorType
    secret: _Secret
    identifier_type: IdentifierType
    identifier: str = Field(min_length=1, max_length=320)
    system_guid: _Guid

    @model_validator(mode="after")
    def check_secret_length(self) -> "LoginRequest":
        _check_password_secret(self.authenticator_type, self.secret)
        return self


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class LoginResponse(BaseModel):
    """Response for POST /api/v1/login. A rejected login is 200 with False."""

    model_config = ConfigDict(frozen=True)

    authenticated: bool


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    context: Optional[dict[str, Any]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]


# ---------------------------------------------------------------------------
# Record serialization
# ---------------------------------------------------------------------------


def dump_record(record: Any) -> dict[str, Any]:
    """Return a JSON-ready dict of the fields a record was hydrated with.

    Unprojected (None / empty) fields are omitted. Authenticator.value is
    never returned: it is a password hash or a public key, and neither
    belongs in a management response.
    """
    out: dict[str, Any] = {}
    if record.uid:
        out["uid"] = record.uid
    for name in record.SCALARS:
        if isinstance(record, Authenticator) and name == "value":
            continue
        value = getattr(record, name)
        if value is None:
            continue
        out[name] = value.value if isinstance(value, Enum) else value
    for attr in record.EDGES:
        related = getattr(record, attr)
        if related:
            out[attr] = [dump_record(r) for r in related]
    return out
