"""
identity/store.py -- Persistence layer for the six identity record types.

Pattern: Repository + Data Mapper (same shape as a classic row store, over a
graph). RecordStore is the generic repository; each record type gets a thin
subclass that only declares its policy:

  record_type       -- the dataclass it owns
  key_field         -- "uid" or "guid": what find_by_key() looks up
  required_scalars  -- scalar fields create() refuses to persist without
  required_edges    -- edge attributes that need at least one reference
  reference_fields  -- projection fetched when another record references it
  _find_duplicate() -- the pre-create uniqueness lookup
  _check_pairing()  -- extra create-time invariants (Authenticator only)

_record_to_payload / _node_to_record are the mappers between dataclasses and
graph store payloads.

create() flow:
  validate -> resolve references (NotFound) -> pairing (TypeMismatch)
  -> uniqueness (AlreadyExists) -> persist -> association cascade -> re-read

Known consistency gaps (deliberate, see DESIGN.md):
  - Uniqueness is a lookup before the write, not a database constraint. Two
    concurrent creates with the same key can both pass the check.
  - associate() is read-append-write without compare-and-swap. Concurrent
    associates on the same node can lose one of the appended edges.

IdentityStores is the process-scoped context: it owns the single GraphStore
and one instance of every store, and is passed explicitly to anything that
needs them. There is no module-level connection or cache.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import replace
from enum import Enum
from typing import Any, Generic, Optional, TypeVar, Union

from core.config import Settings, get_settings
from core.errors import (
    AlreadyExists,
    CorruptData,
    EmptyResult,
    NotFound,
    TransportError,
    TypeMismatch,
    ValidationFailed,
)
from graph.projection import Projection, Query, build_projection
from graph.store import GraphStore
from identity.association import cascade_links
from identity.models import (
    GRAPH_SCHEMA,
    PASSWORD_AUTHENTICATOR_TYPES,
    PREDICATE_TYPES,
    RECORD_TYPES,
    Authenticator,
    AuthenticatorType,
    Entity,
    Identifier,
    IdentifierType,
    Namespace,
    Record,
    Scope,
    System,
    add_edge,
    edge_attribute,
    pairing_is_valid,
    predicate_for,
)
from identity.passwords import is_password_hash

logger = logging.getLogger("authgraph.identity")

R = TypeVar("R")

Fields = Sequence[str]
DEFAULT_FIELDS: tuple[str, ...] = ("uid",)


# ---------------------------------------------------------------------------
# Mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _record_to_payload(record: Record) -> dict[str, Any]:
    """Serialize a record for GraphStore.mutate(): scalars plus edges by uid."""
    payload: dict[str, Any] = {"node_type": record.NODE_TYPE}
    if record.uid:
        payload["uid"] = record.uid
    for name in record.SCALARS:
        value = getattr(record, name)
        if value is not None:
            payload[name] = value.value if isinstance(value, Enum) else value
    for attr, predicate in record.EDGES.items():
        related = getattr(record, attr)
        if related:
            payload[predicate] = [{"uid": r.uid} for r in related]
    return payload


def _node_to_record(record_type: type, node: Mapping[str, Any]) -> Record:
    """Build a record from a hydrated graph node. Unprojected fields stay empty."""
    kwargs: dict[str, Any] = {"uid": node.get("uid")}
    for name in record_type.SCALARS:
        if name not in node:
            continue
        value = node[name]
        enum_type = record_type.ENUMS.get(name)
        if enum_type is not None:
            try:
                value = enum_type(value)
            except ValueError as exc:
                raise CorruptData(
                    f"{record_type.NODE_TYPE} {node.get('uid')} has invalid {name} {value!r}",
                    details={"uid": node.get("uid"), "field": name},
                ) from exc
        kwargs[name] = value
    for attr, predicate in record_type.EDGES.items():
        if predicate in node:
            target = RECORD_TYPES[PREDICATE_TYPES[predicate]]
            kwargs[attr] = tuple(_node_to_record(target, child) for child in node[predicate])
    return record_type(**kwargs)


def _enum_value(enum_type: type[Enum], value: Union[Enum, str, None], field: str) -> str:
    try:
        return enum_type(value).value
    except ValueError as exc:
        raise ValidationFailed(f"Invalid {field} {value!r}", details={"field": field}) from exc


# ---------------------------------------------------------------------------
# Generic repository
# ---------------------------------------------------------------------------


class RecordStore(Generic[R]):
    """CRUD + lookup for one record type. Subclasses declare policy only."""

    record_type: type
    key_field: str = "uid"
    required_scalars: tuple[str, ...] = ()
    required_edges: tuple[str, ...] = ()
    reference_fields: tuple[str, ...] = ("uid", "guid")

    def __init__(self, stores: "IdentityStores") -> None:
        self._stores = stores
        self._graph: GraphStore = stores.graph
        self._settings: Settings = stores.settings

    @property
    def node_type(self) -> str:
        return self.record_type.NODE_TYPE

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def projection(self, fields: Optional[Fields] = None) -> Projection:
        return build_projection(GRAPH_SCHEMA, self.node_type, list(fields or DEFAULT_FIELDS))

    def _fetch_one(self, query: Query) -> Optional[R]:
        logger.debug("Graph query:\n%s", query.render())
        nodes = self._graph.query(replace(query, first=1))
        if not nodes:
            return None
        return _node_to_record(self.record_type, nodes[0])

    def find_by_uid(self, uid: str, fields: Optional[Fields] = None) -> Optional[R]:
        """Look up a record by store-assigned uid. Returns None if not found or malformed."""
        return self._fetch_one(Query(self.projection(fields), uid=uid))

    def find_by_guid(self, guid: str, fields: Optional[Fields] = None) -> Optional[R]:
        """Look up a record by client-generated guid. Returns None if not found."""
        return self._fetch_one(Query(self.projection(fields), eq=(("guid", guid),)))

    def find_by_key(self, key: str, fields: Optional[Fields] = None) -> Optional[R]:
        """Look up a record by this store's primary key (uid or guid). Returns None if not found."""
        if self.key_field == "guid":
            return self.find_by_guid(key, fields)
        return self.find_by_uid(key, fields)

    def key_of(self, record: Any) -> Optional[str]:
        return getattr(record, self.key_field)

    def exists(self, key: str) -> bool:
        """Return True if a record with this key exists.

        Fail-closed by default: a TransportError propagates to the caller.
        With EXISTS_FAIL_OPEN=true a transport error is reported as "exists".
        """
        try:
            return self.find_by_key(key, DEFAULT_FIELDS) is not None
        except TransportError:
            if not self._settings.exists_fail_open:
                raise
            logger.warning("exists(%s %s) assumed True after transport error (EXISTS_FAIL_OPEN)", self.node_type, key)
            return True

    def resolve(self, record: Any, fields: Optional[Fields] = None) -> R:
        """Re-read a referenced record by uid (preferred) or key; NotFound if absent."""
        fields = fields or self.reference_fields
        if record.uid:
            found = self.find_by_uid(record.uid, fields)
            key = record.uid
        elif self.key_of(record):
            key = self.key_of(record)
            found = self.find_by_key(key, fields)
        else:
            raise ValidationFailed(
                f"{self.node_type} reference has neither uid nor {self.key_field}",
                details={"node_type": self.node_type},
            )
        if found is None:
            raise NotFound(f"{self.node_type} {key} does not exist", details={"node_type": self.node_type, "key": key})
        return found

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def create(self, record: R, fields: Optional[Fields] = None) -> R:
        """Validate, persist and link a new record; return it re-read per fields.

        Raises ValidationFailed, NotFound, TypeMismatch, AlreadyExists,
        TransportError, EmptyResult, or AssociationIncomplete (persisted, but
        some reverse edges are missing).
        """
        self._validate(record)
        record = self._resolve_references(record)
        self._check_pairing(record)
        duplicate = self._find_duplicate(record)
        if duplicate is not None:
            raise AlreadyExists(
                f"{self.node_type} already exists",
                details={"node_type": self.node_type, "uid": duplicate.uid},
            )
        assigned = self._graph.mutate(_record_to_payload(record))
        if not assigned:
            raise EmptyResult(f"Graph store assigned no uid to the new {self.node_type}")
        persisted = replace(record, uid=next(iter(assigned.values())))
        logger.info("Created %s %s", self.node_type, persisted.uid)

        cascade_links(self._stores, persisted)

        created = self.find_by_key(self.key_of(persisted), fields)
        if created is None:
            raise EmptyResult(f"{self.node_type} {persisted.uid} vanished after create")
        return created

    def _validate(self, record: Any) -> None:
        if not isinstance(record, self.record_type):
            raise ValidationFailed(f"{type(record).__name__} cannot be stored as {self.node_type}")
        if record.uid:
            raise ValidationFailed(
                f"{self.node_type} {record.uid} is already persisted",
                details={"uid": record.uid},
            )
        missing = [name for name in self.required_scalars if getattr(record, name) in (None, "")]
        missing += [attr for attr in self.required_edges if not getattr(record, attr)]
        if missing:
            raise ValidationFailed(
                f"{self.node_type} cannot have empty {', '.join(missing)}",
                details={"node_type": self.node_type, "fields": missing},
            )
        for name, enum_type in record.ENUMS.items():
            _enum_value(enum_type, getattr(record, name), name)

    def _resolve_references(self, record: Any) -> Any:
        """Replace every referenced record with a freshly read one (uid, key, type fields)."""
        changes = {}
        for attr in record.EDGES:
            related = getattr(record, attr)
            if related:
                changes[attr] = tuple(self._stores.store_for(type(r)).resolve(r) for r in related)
        return replace(record, **changes)

    def _check_pairing(self, record: Any) -> None:
        return None

    def _find_duplicate(self, record: Any) -> Optional[R]:
        return None

    # ------------------------------------------------------------------
    # Associate
    # ------------------------------------------------------------------

    def associate(self, key: str, related: Any, fields: Optional[Fields] = None) -> R:
        """Append related to this record's adjacency and re-persist it.

        One side only: the association cascade (identity.association) is what
        keeps both endpoints in agreement. With the "union" edge policy a
        related record that is already linked (same uid) is not appended
        again; with "append" every call adds the edge.
        """
        attr = edge_attribute(self.record_type, type(related))
        if attr is None:
            raise ValidationFailed(f"{self.node_type} has no edge to {type(related).__name__}")
        if not related.uid:
            raise ValidationFailed(f"Cannot associate an unpersisted {related.NODE_TYPE}")
        predicate = predicate_for(type(related))
        current = self.find_by_key(key, ("uid", f"{predicate} {{ uid }}"))
        if current is None:
            raise NotFound(f"{self.node_type} {key} does not exist", details={"node_type": self.node_type, "key": key})

        adjacency = getattr(current, attr)
        if self._settings.edge_policy == "union" and any(r.uid == related.uid for r in adjacency):
            logger.debug("%s %s already linked to %s %s", self.node_type, current.uid, related.NODE_TYPE, related.uid)
        else:
            update = add_edge(current, related)
            self._graph.mutate({"uid": update.uid, predicate: [{"uid": r.uid} for r in getattr(update, attr)]})
            logger.info("Associated %s %s -> %s %s", self.node_type, current.uid, related.NODE_TYPE, related.uid)

        updated = self.find_by_key(key, fields)
        if updated is None:
            raise EmptyResult(f"{self.node_type} {key} vanished after associate")
        return updated


# ---------------------------------------------------------------------------
# Per-type stores
# ---------------------------------------------------------------------------


class EntityStore(RecordStore[Entity]):
    record_type = Entity
    required_scalars = ("guid", "sid", "display_name")

    def _find_duplicate(self, record: Entity) -> Optional[Entity]:
        return self.find_by_sid(record.sid)

    def find_by_sid(self, sid: str, fields: Optional[Fields] = None) -> Optional[Entity]:
        """Look up an entity by its unique sid. Returns None if not found."""
        return self._fetch_one(Query(self.projection(fields), eq=(("sid", sid),)))

    def find_by_identifier(
        self,
        identifier_type: Union[IdentifierType, str],
        value: str,
        fields: Optional[Fields] = None,
    ) -> Optional[Entity]:
        """Return the entity named by an exact (identifier_type, value) claim, if any."""
        identifier = self._stores.identifiers.find_by_type_value(identifier_type, value, ("uid", "entity { uid }"))
        if identifier is None or not identifier.entities:
            return None
        return self.find_by_uid(identifier.entities[0].uid, fields)

    def associate_identifier(self, uid: str, identifier: Identifier, fields: Optional[Fields] = None) -> Entity:
        return self.associate(uid, identifier, fields)

    def associate_authenticator(self, uid: str, authenticator: Authenticator, fields: Optional[Fields] = None) -> Entity:
        return self.associate(uid, authenticator, fields)

    def associate_system(self, uid: str, system: System, fields: Optional[Fields] = None) -> Entity:
        return self.associate(uid, system, fields)

    def associate_scope(self, uid: str, scope: Scope, fields: Optional[Fields] = None) -> Entity:
        return self.associate(uid, scope, fields)


class IdentifierStore(RecordStore[Identifier]):
    record_type = Identifier
    required_scalars = ("identifier_type", "value")
    required_edges = ("entities",)
    reference_fields = ("uid", "identifier_type")

    def _find_duplicate(self, record: Identifier) -> Optional[Identifier]:
        return self.find_by_type_value(record.identifier_type, record.value)

    def find_by_type_value(
        self,
        identifier_type: Union[IdentifierType, str],
        value: str,
        fields: Optional[Fields] = None,
    ) -> Optional[Identifier]:
        """Look up an identifier by exact (identifier_type, value). Returns None if not found."""
        type_value = _enum_value(IdentifierType, identifier_type, "identifier_type")
        return self._fetch_one(
            Query(self.projection(fields), eq=(("identifier_type", type_value), ("value", value)))
        )

    def associate_entity(self, uid: str, entity: Entity, fields: Optional[Fields] = None) -> Identifier:
        return self.associate(uid, entity, fields)

    def associate_authenticator(
        self, uid: str, authenticator: Authenticator, fields: Optional[Fields] = None
    ) -> Identifier:
        return self.associate(uid, authenticator, fields)


class AuthenticatorStore(RecordStore[Authenticator]):
    record_type = Authenticator
    required_scalars = ("authenticator_type", "value")
    required_edges = ("entities", "identifiers")
    reference_fields = ("uid", "authenticator_type")

    def _check_pairing(self, record: Authenticator) -> None:
        for identifier in record.identifiers:
            if not pairing_is_valid(record.authenticator_type, identifier.identifier_type):
                raise TypeMismatch(
                    "Authenticator type does not match the identifier type being associated",
                    details={
                        "authenticator_type": _enum_value(AuthenticatorType, record.authenticator_type, "authenticator_type"),
                        "identifier_type": getattr(identifier.identifier_type, "value", identifier.identifier_type),
                    },
                )
        if record.authenticator_type in PASSWORD_AUTHENTICATOR_TYPES and not is_password_hash(record.value):
            raise ValidationFailed(
                "Password authenticators must store a bcrypt hash, not a plaintext secret",
                details={"field": "value"},
            )

    def _find_duplicate(self, record: Authenticator) -> Optional[Authenticator]:
        for identifier in record.identifiers:
            found = self.find_by_type_identifier(record.authenticator_type, identifier)
            if found is not None:
                return found
        return None

    def find_by_type_identifier(
        self,
        authenticator_type: Union[AuthenticatorType, str],
        identifier: Identifier,
        fields: Optional[Fields] = None,
    ) -> Optional[Authenticator]:
        """Return the authenticator of this type linked to the identifier, if any."""
        if not identifier.uid:
            raise ValidationFailed("Identifier uid is required", details={"field": "uid"})
        type_value = _enum_value(AuthenticatorType, authenticator_type, "authenticator_type")
        return self._fetch_one(
            Query(
                self.projection(fields),
                eq=(("authenticator_type", type_value),),
                has_edge=(("identifier", identifier.uid),),
            )
        )

    def associate_identifier(
        self, uid: str, identifier: Identifier, fields: Optional[Fields] = None
    ) -> Authenticator:
        return self.associate(uid, identifier, fields)

    def associate_entity(self, uid: str, entity: Entity, fields: Optional[Fields] = None) -> Authenticator:
        return self.associate(uid, entity, fields)

    def associate_system(self, uid: str, system: System, fields: Optional[Fields] = None) -> Authenticator:
        return self.associate(uid, system, fields)


class SystemStore(RecordStore[System]):
    record_type = System
    key_field = "guid"
    required_scalars = ("guid", "name")

    def associate_entity(self, guid: str, entity: Entity, fields: Optional[Fields] = None) -> System:
        return self.associate(guid, entity, fields)

    def associate_authenticator(self, guid: str, authenticator: Authenticator, fields: Optional[Fields] = None) -> System:
        return self.associate(guid, authenticator, fields)

    def associate_namespace(self, guid: str, namespace: Namespace, fields: Optional[Fields] = None) -> System:
        return self.associate(guid, namespace, fields)


class NamespaceStore(RecordStore[Namespace]):
    record_type = Namespace
    key_field = "guid"
    required_scalars = ("guid", "name")
    required_edges = ("systems",)

    def _find_duplicate(self, record: Namespace) -> Optional[Namespace]:
        for system in record.systems:
            found = self.find_by_system_name(record.name, system.uid)
            if found is not None:
                return found
        return None

    def find_by_system_name(self, name: str, system_uid: str, fields: Optional[Fields] = None) -> Optional[Namespace]:
        """Return the namespace called name within the system, if any."""
        return self._fetch_one(
            Query(self.projection(fields), eq=(("name", name),), has_edge=(("system", system_uid),))
        )

    def associate_system(self, guid: str, system: System, fields: Optional[Fields] = None) -> Namespace:
        return self.associate(guid, system, fields)

    def associate_scope(self, guid: str, scope: Scope, fields: Optional[Fields] = None) -> Namespace:
        return self.associate(guid, scope, fields)


class ScopeStore(RecordStore[Scope]):
    record_type = Scope
    key_field = "guid"
    required_scalars = ("guid", "name", "scope_type")
    required_edges = ("namespaces",)

    def _find_duplicate(self, record: Scope) -> Optional[Scope]:
        for namespace in record.namespaces:
            found = self.find_by_namespace_name(record.name, namespace.uid)
            if found is not None:
                return found
        return None

    def find_by_namespace_name(
        self, name: str, namespace_uid: str, fields: Optional[Fields] = None
    ) -> Optional[Scope]:
        """Return the scope called name within the namespace, if any."""
        return self._fetch_one(
            Query(self.projection(fields), eq=(("name", name),), has_edge=(("namespace", namespace_uid),))
        )

    def associate_namespace(self, guid: str, namespace: Namespace, fields: Optional[Fields] = None) -> Scope:
        return self.associate(guid, namespace, fields)

    def associate_entity(self, guid: str, entity: Entity, fields: Optional[Fields] = None) -> Scope:
        return self.associate(guid, entity, fields)


# ---------------------------------------------------------------------------
# Process-scoped context
# ---------------------------------------------------------------------------


class IdentityStores:
    """One GraphStore plus one store per record type, shared by every caller.

    Usage:
        stores = IdentityStores(GraphStore())
        entity = stores.entities.create(Entity.new(sid="testy", display_name="Test Testy"))
        stores.close()
    """

    def __init__(self, graph: GraphStore, settings: Optional[Settings] = None) -> None:
        self.graph = graph
        self.settings = settings or get_settings()
        self.entities = EntityStore(self)
        self.identifiers = IdentifierStore(self)
        self.authenticators = AuthenticatorStore(self)
        self.systems = SystemStore(self)
        self.namespaces = NamespaceStore(self)
        self.scopes = ScopeStore(self)
        self._by_type: dict[type, RecordStore] = {
            store.record_type: store
            for store in (
                self.entities,
                self.identifiers,
                self.authenticators,
                self.systems,
                self.namespaces,
                self.scopes,
            )
        }

    def store_for(self, record_type: type) -> RecordStore:
        try:
            return self._by_type[record_type]
        except KeyError:
            raise ValidationFailed(f"No store for {record_type.__name__}") from None

    def close(self) -> None:
        self.graph.close()
