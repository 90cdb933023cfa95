"""
api/routes/v1/records.py -- Create / read / link routes for the identity graph.

Routes (in registration order to avoid FastAPI path capture conflicts):
  POST   /entities                                  -- create entity
  GET    /entities/by-sid/{sid}                     -- entity by sid
  GET    /entities/{uid}                            -- entity by uid
  POST   /identifiers                               -- create identifier
  GET    /identifiers/{uid}
  POST   /authenticators                            -- create authenticator
  GET    /authenticators/{uid}
  POST   /systems                                   -- create system
  GET    /systems/{guid}
  POST   /systems/{guid}/entities/{entity_uid}      -- link system <-> entity
  POST   /namespaces                                -- create namespace
  GET    /namespaces/{guid}
  POST   /scopes                                    -- create scope
  GET    /scopes/{guid}
  POST   /scopes/{guid}/entities/{entity_uid}       -- link scope <-> entity

Projection:
  Every route takes repeated ?fields= query parameters, e.g.
  ?fields=uid&fields=sid&fields=identifier%20%7B%20uid%20value%20%7D
  Without them a record comes back with its uid and scalars. Field names are
  checked against the record schema (422 on anything unknown).

Errors are domain exceptions (core.errors) and are rendered by the
IdentityError handler in api/main.py. Routes do not catch them.
"""

from typing import Annotated, Any, Optional

from fastapi import APIRouter, Depends, Query, Request

from api.dependencies import get_stores, require_api_key
from api.limiter import limiter
from api.models import (
    AuthenticatorCreate,
    EntityCreate,
    IdentifierCreate,
    NamespaceCreate,
    ScopeCreate,
    SystemCreate,
    dump_record,
)
from core.errors import NotFound
from identity.association import link
from identity.models import (
    PASSWORD_AUTHENTICATOR_TYPES,
    Authenticator,
    Entity,
    Identifier,
    Namespace,
    Scope,
    System,
)
from identity.passwords import hash_password
from identity.store import IdentityStores, RecordStore

router = APIRouter(dependencies=[Depends(require_api_key)])

FieldsParam = Annotated[Optional[list[str]], Query()]
Stores = Annotated[IdentityStores, Depends(get_stores)]


def _default_fields(record_type: type) -> tuple[str, ...]:
    scalars = tuple(name for name in record_type.SCALARS if not (record_type is Authenticator and name == "value"))
    return ("uid",) + scalars


def _read(store: RecordStore, key: str, fields: Optional[list[str]]) -> dict[str, Any]:
    record = store.find_by_key(key, fields or _default_fields(store.record_type))
    if record is None:
        raise NotFound(f"{store.node_type} {key} does not exist", details={"key": key})
    return dump_record(record)


def _create(store: RecordStore, record: Any, fields: Optional[list[str]]) -> dict[str, Any]:
    return dump_record(store.create(record, fields or _default_fields(store.record_type)))


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


@limiter.limit("30/minute")
@router.post("/entities", status_code=201)
def create_entity(request: Request, body: EntityCreate, stores: Stores, fields: FieldsParam = None) -> dict:
    """Create an entity. 409 if the sid is taken."""
    return _create(stores.entities, Entity.new(sid=body.sid, display_name=body.display_name), fields)


@limiter.limit("60/minute")
@router.get("/entities/by-sid/{sid}")
def get_entity_by_sid(request: Request, sid: str, stores: Stores, fields: FieldsParam = None) -> dict:
    entity = stores.entities.find_by_sid(sid, fields or _default_fields(Entity))
    if entity is None:
        raise NotFound(f"Entity with sid {sid} does not exist", details={"sid": sid})
    return dump_record(entity)


@limiter.limit("60/minute")
@router.get("/entities/{uid}")
def get_entity(request: Request, uid: str, stores: Stores, fields: FieldsParam = None) -> dict:
    return _read(stores.entities, uid, fields)


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------


@limiter.limit("30/minute")
@router.post("/identifiers", status_code=201)
def create_identifier(request: Request, body: IdentifierCreate, stores: Stores, fields: FieldsParam = None) -> dict:
    """Create an identifier owned by the given entities. 409 if (type, value) is taken."""
    identifier = Identifier(
        identifier_type=body.identifier_type,
        value=body.value,
        entities=tuple(Entity(uid=uid) for uid in body.entity_uids),
    )
    return _create(stores.identifiers, identifier, fields)


@limiter.limit("60/minute")
@router.get("/identifiers/{uid}")
def get_identifier(request: Request, uid: str, stores: Stores, fields: FieldsParam = None) -> dict:
    return _read(stores.identifiers, uid, fields)


# ---------------------------------------------------------------------------
# Authenticators
# ---------------------------------------------------------------------------


@limiter.limit("30/minute")
@router.post("/authenticators", status_code=201)
def create_authenticator(
    request: Request, body: AuthenticatorCreate, stores: Stores, fields: FieldsParam = None
) -> dict:
    """Create a credential for an identifier, scoped to the given systems.

    422 if the authenticator type does not pair with every identifier's type.
    """
    if body.authenticator_type in PASSWORD_AUTHENTICATOR_TYPES:
        value = hash_password(body.secret)
    else:
        value = body.secret
    authenticator = Authenticator(
        authenticator_type=body.authenticator_type,
        value=value,
        entities=tuple(Entity(uid=uid) for uid in body.entity_uids),
        systems=tuple(System(guid=guid) for guid in body.system_guids),
        identifiers=tuple(Identifier(uid=uid) for uid in body.identifier_uids),
    )
    return _create(stores.authenticators, authenticator, fields)


@limiter.limit("60/minute")
@router.get("/authenticators/{uid}")
def get_authenticator(request: Request, uid: str, stores: Stores, fields: FieldsParam = None) -> dict:
    return _read(stores.authenticators, uid, fields)


# ---------------------------------------------------------------------------
# Systems
# ---------------------------------------------------------------------------


@limiter.limit("30/minute")
@router.post("/systems", status_code=201)
def create_system(request: Request, body: SystemCreate, stores: Stores, fields: FieldsParam = None) -> dict:
    return _create(stores.systems, System.new(name=body.name), fields)


@limiter.limit("60/minute")
@router.get("/systems/{guid}")
def get_system(request: Request, guid: str, stores: Stores, fields: FieldsParam = None) -> dict:
    return _read(stores.systems, guid, fields)


@limiter.limit("30/minute")
@router.post("/systems/{guid}/entities/{entity_uid}")
def link_system_entity(
    request: Request, guid: str, entity_uid: str, stores: Stores, fields: FieldsParam = None
) -> dict:
    """Record that the entity has an account in the system (both sides)."""
    return dump_record(link(stores, System(guid=guid), Entity(uid=entity_uid), fields or _default_fields(System)))


# ---------------------------------------------------------------------------
# Namespaces
# ---------------------------------------------------------------------------


@limiter.limit("30/minute")
@router.post("/namespaces", status_code=201)
def create_namespace(request: Request, body: NamespaceCreate, stores: Stores, fields: FieldsParam = None) -> dict:
    """Create a namespace inside the given systems. 409 if the name is taken in one of them."""
    namespace = Namespace.new(name=body.name)
    for guid in body.system_guids:
        namespace = namespace.add_system(System(guid=guid))
    return _create(stores.namespaces, namespace, fields)


@limiter.limit("60/minute")
@router.get("/namespaces/{guid}")
def get_namespace(request: Request, guid: str, stores: Stores, fields: FieldsParam = None) -> dict:
    return _read(stores.namespaces, guid, fields)


# ---------------------------------------------------------------------------
# Scopes
# ---------------------------------------------------------------------------


@limiter.limit("30/minute")
@router.post("/scopes", status_code=201)
def create_scope(request: Request, body: ScopeCreate, stores: Stores, fields: FieldsParam = None) -> dict:
    """Create a scope inside the given namespaces. 409 if the name is taken in one of them."""
    scope = Scope.new(name=body.name, scope_type=body.scope_type)
    for guid in body.namespace_guids:
        scope = scope.add_namespace(Namespace(guid=guid))
    return _create(stores.scopes, scope, fields)


@limiter.limit("60/minute")
@router.get("/scopes/{guid}")
def get_scope(request: Request, guid: str, stores: Stores, fields: FieldsParam = None) -> dict:
    return _read(stores.scopes, guid, fields)


@limiter.limit("30/minute")
@router.post("/scopes/{guid}/entities/{entity_uid}")
def link_scope_entity(request: Request, guid: str, entity_uid: str, stores: Stores, fields: FieldsParam = None) -> dict:
    """Grant the scope to the entity (both sides)."""
    return dump_record(link(stores, Scope(guid=guid), Entity(uid=entity_uid), fields or _default_fields(Scope)))
