"""
identity/models.py -- Domain dataclasses for the identity graph.

Pattern: Data class (pure value types, no I/O). Stores do the work; these
records only describe shape.

Every record is a frozen dataclass. Edges are tuples, and add_<edge>() returns
a NEW record with the related record appended after the existing ones:

    entity = Entity.new(sid="testy", display_name="Test Testy")
    ident = Identifier(identifier_type=IdentifierType.email, value="a@b.c").add_entity(entity)

uid is None until the graph store assigns one on first save. guid is
generated by Record.new() for the guid-bearing types (Entity, System,
Namespace, Scope) and never reassigned. Records read back from the store carry
only the fields their projection asked for; the rest stay None / empty.

Class-level metadata drives the generic store and the projection allow-list:
  NODE_TYPE -- node type name in the graph
  SCALARS   -- scalar predicates, in display order
  EDGES     -- attribute name -> edge predicate, in association cascade order
  ENUMS     -- scalar predicates whose stored string maps onto an Enum

Layer rule: imports only stdlib and graph.projection (for TypeSchema).
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, replace
from enum import Enum
from typing import ClassVar, Optional, Union

from graph.projection import TypeSchema

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class IdentifierType(str, Enum):
    email = "email"
    phone = "phone"
    username = "username"
    public_key = "public_key"


class AuthenticatorType(str, Enum):
    username_password = "username_password"
    phone_password = "phone_password"
    email_password = "email_password"
    public_key_authentication = "public_key_authentication"


class ScopeType(str, Enum):
    group = "group"
    action = "action"


# Closed 1:1 policy: which identifier type each authenticator type may prove.
AUTHENTICATOR_IDENTIFIER_POLICY: dict[AuthenticatorType, IdentifierType] = {
    AuthenticatorType.username_password: IdentifierType.username,
    AuthenticatorType.phone_password: IdentifierType.phone,
    AuthenticatorType.email_password: IdentifierType.email,
    AuthenticatorType.public_key_authentication: IdentifierType.public_key,
}

# Authenticator types whose stored value is a password hash.
PASSWORD_AUTHENTICATOR_TYPES = frozenset(
    {
        AuthenticatorType.username_password,
        AuthenticatorType.phone_password,
        AuthenticatorType.email_password,
    }
)


def pairing_is_valid(authenticator_type: AuthenticatorType, identifier_type: IdentifierType) -> bool:
    """Return True if authenticator_type may be attached to an identifier of identifier_type."""
    return AUTHENTICATOR_IDENTIFIER_POLICY.get(authenticator_type) == identifier_type


def new_guid() -> str:
    """Return a fresh client-side stable identifier (URL-safe, 128 bits)."""
    return secrets.token_urlsafe(16)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Entity:
    """An account. sid is the unique human-facing key; display_name is free text."""

    NODE_TYPE: ClassVar[str] = "Entity"
    SCALARS: ClassVar[tuple[str, ...]] = ("guid", "sid", "display_name")
    EDGES: ClassVar[dict[str, str]] = {
        "identifiers": "identifier",
        "authenticators": "authenticator",
        "systems": "system",
        "scopes": "scope",
    }
    ENUMS: ClassVar[dict[str, type[Enum]]] = {}

    uid: Optional[str] = None
    guid: Optional[str] = None
    sid: Optional[str] = None
    display_name: Optional[str] = None
    identifiers: tuple["Identifier", ...] = ()
    authenticators: tuple["Authenticator", ...] = ()
    systems: tuple["System", ...] = ()
    scopes: tuple["Scope", ...] = ()

    @classmethod
    def new(cls, sid: Optional[str] = None, display_name: Optional[str] = None) -> "Entity":
        return cls(guid=new_guid(), sid=sid, display_name=display_name)

    def add_identifier(self, identifier: "Identifier") -> "Entity":
        return add_edge(self, identifier)

    def add_authenticator(self, authenticator: "Authenticator") -> "Entity":
        return add_edge(self, authenticator)

    def add_system(self, system: "System") -> "Entity":
        return add_edge(self, system)

    def add_scope(self, scope: "Scope") -> "Entity":
        return add_edge(self, scope)


@dataclass(frozen=True)
class Identifier:
    """A claim naming an Entity: (identifier_type, value) is unique across the graph."""

    NODE_TYPE: ClassVar[str] = "Identifier"
    SCALARS: ClassVar[tuple[str, ...]] = ("identifier_type", "value")
    EDGES: ClassVar[dict[str, str]] = {
        "entities": "entity",
        "authenticators": "authenticator",
    }
    ENUMS: ClassVar[dict[str, type[Enum]]] = {"identifier_type": IdentifierType}

    uid: Optional[str] = None
    identifier_type: Optional[IdentifierType] = None
    value: Optional[str] = None
    entities: tuple[Entity, ...] = ()
    authenticators: tuple["Authenticator", ...] = ()

    def add_entity(self, entity: Entity) -> "Identifier":
        return add_edge(self, entity)

    def add_authenticator(self, authenticator: "Authenticator") -> "Identifier":
        return add_edge(self, authenticator)


@dataclass(frozen=True)
class Authenticator:
    """A credential proving control of an Identifier, scoped to Systems.

    value holds the bcrypt hash once persisted. A candidate Authenticator
    handed to the credential verifier carries the plaintext secret in value
    instead; it is never saved.
    """

    NODE_TYPE: ClassVar[str] = "Authenticator"
    SCALARS: ClassVar[tuple[str, ...]] = ("authenticator_type", "value")
    # Cascade order: entity, then system, then identifier.
    EDGES: ClassVar[dict[str, str]] = {
        "entities": "entity",
        "systems": "system",
        "identifiers": "identifier",
    }
    ENUMS: ClassVar[dict[str, type[Enum]]] = {"authenticator_type": AuthenticatorType}

    uid: Optional[str] = None
    authenticator_type: Optional[AuthenticatorType] = None
    value: Optional[str] = None
    entities: tuple[Entity, ...] = ()
    systems: tuple["System", ...] = ()
    identifiers: tuple[Identifier, ...] = ()

    def add_entity(self, entity: Entity) -> "Authenticator":
        return add_edge(self, entity)

    def add_system(self, system: "System") -> "Authenticator":
        return add_edge(self, system)

    def add_identifier(self, identifier: Identifier) -> "Authenticator":
        return add_edge(self, identifier)

    def __repr__(self) -> str:
        # Keep hashes and candidate secrets out of logs and tracebacks.
        return (
            f"Authenticator(uid={self.uid!r}, authenticator_type={self.authenticator_type!r}, "
            f"value={'***' if self.value else None})"
        )


@dataclass(frozen=True)
class System:
    """A tenant / relying party that credentials are scoped to."""

    NODE_TYPE: ClassVar[str] = "System"
    SCALARS: ClassVar[tuple[str, ...]] = ("guid", "name")
    EDGES: ClassVar[dict[str, str]] = {
        "entities": "entity",
        "authenticators": "authenticator",
        "namespaces": "namespace",
    }
    ENUMS: ClassVar[dict[str, type[Enum]]] = {}

    uid: Optional[str] = None
    guid: Optional[str] = None
    name: Optional[str] = None
    entities: tuple[Entity, ...] = ()
    authenticators: tuple[Authenticator, ...] = ()
    namespaces: tuple["Namespace", ...] = ()

    @classmethod
    def new(cls, name: Optional[str] = None) -> "System":
        return cls(guid=new_guid(), name=name)

    def add_entity(self, entity: Entity) -> "System":
        return add_edge(self, entity)

    def add_authenticator(self, authenticator: Authenticator) -> "System":
        return add_edge(self, authenticator)

    def add_namespace(self, namespace: "Namespace") -> "System":
        return add_edge(self, namespace)


@dataclass(frozen=True)
class Namespace:
    """A subdivision of a System that groups Scopes. name is unique per System."""

    NODE_TYPE: ClassVar[str] = "Namespace"
    SCALARS: ClassVar[tuple[str, ...]] = ("guid", "name")
    EDGES: ClassVar[dict[str, str]] = {
        "systems": "system",
        "scopes": "scope",
    }
    ENUMS: ClassVar[dict[str, type[Enum]]] = {}

    uid: Optional[str] = None
    guid: Optional[str] = None
    name: Optional[str] = None
    systems: tuple[System, ...] = ()
    scopes: tuple["Scope", ...] = ()

    @classmethod
    def new(cls, name: Optional[str] = None) -> "Namespace":
        return cls(guid=new_guid(), name=name)

    def add_system(self, system: System) -> "Namespace":
        return add_edge(self, system)

    def add_scope(self, scope: "Scope") -> "Namespace":
        return add_edge(self, scope)


@dataclass(frozen=True)
class Scope:
    """A permission grouping (group or action). name is unique per Namespace."""

    NODE_TYPE: ClassVar[str] = "Scope"
    SCALARS: ClassVar[tuple[str, ...]] = ("guid", "name", "scope_type")
    EDGES: ClassVar[dict[str, str]] = {
        "namespaces": "namespace",
        "entities": "entity",
    }
    ENUMS: ClassVar[dict[str, type[Enum]]] = {"scope_type": ScopeType}

    uid: Optional[str] = None
    guid: Optional[str] = None
    name: Optional[str] = None
    scope_type: Optional[ScopeType] = None
    namespaces: tuple[Namespace, ...] = ()
    entities: tuple[Entity, ...] = ()

    @classmethod
    def new(cls, name: Optional[str] = None, scope_type: Optional[ScopeType] = None) -> "Scope":
        return cls(guid=new_guid(), name=name, scope_type=scope_type)

    def add_namespace(self, namespace: Namespace) -> "Scope":
        return add_edge(self, namespace)

    def add_entity(self, entity: Entity) -> "Scope":
        return add_edge(self, entity)


Record = Union[Entity, Identifier, Authenticator, System, Namespace, Scope]

RECORD_TYPES: dict[str, type] = {
    cls.NODE_TYPE: cls for cls in (Entity, Identifier, Authenticator, System, Namespace, Scope)
}

# Edge predicates are named after the node type they point at.
PREDICATE_TYPES: dict[str, str] = {name.lower(): name for name in RECORD_TYPES}


def predicate_for(record_type: type) -> str:
    return record_type.NODE_TYPE.lower()


def edge_attribute(record_type: type, related_type: type) -> Optional[str]:
    """Return the attribute of record_type that holds edges to related_type, if any."""
    predicate = predicate_for(related_type)
    for attr, edge_predicate in record_type.EDGES.items():
        if edge_predicate == predicate:
            return attr
    return None


def add_edge(record: Record, related: Record) -> Record:
    """Return a copy of record with related appended to the matching adjacency tuple."""
    attr = edge_attribute(type(record), type(related))
    if attr is None:
        raise TypeError(f"{record.NODE_TYPE} has no edge to {related.NODE_TYPE}")
    return replace(record, **{attr: getattr(record, attr) + (related,)})


GRAPH_SCHEMA: dict[str, TypeSchema] = {
    name: TypeSchema(
        name=name,
        scalars=frozenset(cls.SCALARS),
        edges={predicate: PREDICATE_TYPES[predicate] for predicate in cls.EDGES.values()},
    )
    for name, cls in RECORD_TYPES.items()
}
