"""
graph/store.py -- SQLAlchemy Core graph store for authgraph.

The identity core treats its database as an opaque capability offering
parameterized queries and upsert-by-merge mutations. GraphStore provides that
capability on top of any SQLAlchemy URL using three tables:

  nodes    -- one row per node: integer id, node type, creation timestamp
  scalars  -- (node_id, predicate, value) triples for scalar predicates
  edges    -- ordered (src_id, predicate, dst_id) adjacency rows

uids are rendered as lowercase hex strings ("0x1a") and parsed back on the
way in; a malformed uid simply matches nothing.

Mutation semantics (JSON merge):
  - a payload without "uid" creates a node and returns {"blank-0": <uid>}
  - scalar predicates in the payload overwrite the stored value
  - an edge predicate in the payload (a list of {"uid": ...}) replaces that
    predicate's adjacency list, in the given order
  - predicates absent from the payload are left untouched
  One mutate() call is one database transaction. Nothing spans calls.

Security: all queries use bound parameters. Predicate names reach SQL only as
bound values too, never as identifiers.

Errors: any SQLAlchemyError is re-raised as core.errors.TransportError so
callers never depend on driver exceptions.

Layer rule: no imports from identity/ or api/.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from core.config import get_settings
from core.errors import NotFound, TransportError, ValidationFailed
from graph.projection import Field, Query

logger = logging.getLogger("authgraph.graph")

_UID_RE = re.compile(r"^0x[0-9a-f]+$")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_nodes = Table(
    "nodes",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("node_type", String(50), nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
)

_scalars = Table(
    "scalars",
    metadata,
    Column("node_id", Integer, nullable=False),
    Column("predicate", String(50), nullable=False),
    Column("value", Text, nullable=False),
    PrimaryKeyConstraint("node_id", "predicate", name="pk_scalars"),
    Index("ix_scalars_predicate_value", "predicate", "value"),
)

_edges = Table(
    "edges",
    metadata,
    # Surrogate key keeps insertion order and allows duplicate edges when the
    # caller writes them (append edge policy).
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("src_id", Integer, nullable=False, index=True),
    Column("predicate", String(50), nullable=False),
    Column("dst_id", Integer, nullable=False, index=True),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def format_uid(node_id: int) -> str:
    return f"0x{node_id:x}"


def parse_uid(uid: Any) -> Optional[int]:
    """Return the integer node id for a uid string, or None if malformed."""
    if not isinstance(uid, str) or not _UID_RE.match(uid):
        return None
    return int(uid, 16)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class GraphStore:
    """Parameterized query + merge-mutation store over SQLAlchemy Core.

    One GraphStore (one engine, one connection pool) is created per process
    and shared by every identity store.

    Usage:
        graph = GraphStore("sqlite:///graph.db")
        uids = graph.mutate({"node_type": "System", "guid": "S1", "name": "test"})
        nodes = graph.query(Query(projection, eq=(("guid", "S1"),)))
        graph.close()
    """

    def __init__(self, db_url: Optional[str] = None, timeout_seconds: Optional[float] = None) -> None:
        settings = get_settings()
        db_url = db_url or settings.graph_db_url
        timeout = timeout_seconds or settings.graph_timeout_seconds
        connect_args: dict = {}
        engine_kwargs: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = timeout
        else:
            engine_kwargs["pool_timeout"] = timeout
            engine_kwargs["pool_pre_ping"] = True
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        self.migrate_schema()

    # ------------------------------------------------------------------
    # Schema management
    # ------------------------------------------------------------------

    def migrate_schema(self) -> None:
        """Create any missing tables. Idempotent -- safe on every startup."""
        with self._transport("schema migration"):
            metadata.create_all(self.engine)

    def drop_all(self) -> None:
        """Drop every node, scalar and edge, then recreate empty tables."""
        with self._transport("drop"):
            metadata.drop_all(self.engine)
            metadata.create_all(self.engine)
        logger.warning("Graph store dropped and recreated")

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.debug("Graph ping failed", exc_info=True)
            return False
        return True

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def mutate(self, payload: Mapping[str, Any]) -> dict[str, str]:
        """Merge payload into the graph and return the uids of created nodes.

        A payload without "uid" must carry "node_type" and creates a node.
        Every edge target must already exist; NotFound is raised otherwise and
        the whole mutation is rolled back.
        """
        body = dict(payload)
        uid = body.pop("uid", None)
        node_type = body.pop("node_type", None)
        assigned: dict[str, str] = {}
        with self._transport("mutate"), self.engine.begin() as conn:
            if uid is None:
                if not node_type:
                    raise ValidationFailed("node_type is required to create a node")
                result = conn.execute(_nodes.insert().values(node_type=node_type, created_at=_now_iso()))
                node_id = result.inserted_primary_key[0]
                assigned["blank-0"] = format_uid(node_id)
            else:
                node_id = parse_uid(uid)
                if node_id is None or not self._node_exists(conn, node_id):
                    raise NotFound(f"Node {uid} does not exist", details={"uid": uid})
            for predicate, value in body.items():
                if value is None:
                    continue
                if isinstance(value, (list, tuple)):
                    self._write_edges(conn, node_id, predicate, value)
                else:
                    self._write_scalar(conn, node_id, predicate, value)
        return assigned

    def _write_scalar(self, conn: Connection, node_id: int, predicate: str, value: Any) -> None:
        conn.execute(_scalars.delete().where((_scalars.c.node_id == node_id) & (_scalars.c.predicate == predicate)))
        conn.execute(_scalars.insert().values(node_id=node_id, predicate=predicate, value=str(value)))

    def _write_edges(self, conn: Connection, node_id: int, predicate: str, targets: Sequence[Any]) -> None:
        target_ids = []
        for target in targets:
            target_uid = target.get("uid") if isinstance(target, Mapping) else None
            target_id = parse_uid(target_uid)
            if target_id is None:
                raise ValidationFailed(
                    f"Edge {predicate!r} targets must be persisted nodes given as {{'uid': ...}}",
                    details={"predicate": predicate},
                )
            target_ids.append(target_id)
        distinct = set(target_ids)
        if distinct:
            found = conn.execute(select(func.count()).select_from(_nodes).where(_nodes.c.id.in_(distinct))).scalar()
            if found != len(distinct):
                raise NotFound(f"Edge {predicate!r} targets a node that does not exist", details={"predicate": predicate})
        conn.execute(_edges.delete().where((_edges.c.src_id == node_id) & (_edges.c.predicate == predicate)))
        for target_id in target_ids:
            conn.execute(_edges.insert().values(src_id=node_id, predicate=predicate, dst_id=target_id))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def query(self, query: Query) -> list[dict[str, Any]]:
        """Return every node matching the query's selector, hydrated per its projection.

        Edge fields come back as lists of child dicts in insertion order.
        Scalars that were never written are omitted from the node dict.
        """
        with self._transport("query"), self.engine.connect() as conn:
            node_ids = self._select_roots(conn, query)
            return [self._hydrate(conn, node_id, query.projection.fields) for node_id in node_ids]

    def _select_roots(self, conn: Connection, query: Query) -> list[int]:
        stmt = select(_nodes.c.id).where(_nodes.c.node_type == query.projection.node_type)
        if query.uid is not None:
            node_id = parse_uid(query.uid)
            if node_id is None:
                return []
            stmt = stmt.where(_nodes.c.id == node_id)
        for predicate, value in query.eq:
            matching = select(_scalars.c.node_id).where(
                (_scalars.c.predicate == predicate) & (_scalars.c.value == str(value))
            )
            stmt = stmt.where(_nodes.c.id.in_(matching))
        for predicate, target_uid in query.has_edge:
            target_id = parse_uid(target_uid)
            if target_id is None:
                return []
            linked = select(_edges.c.src_id).where((_edges.c.predicate == predicate) & (_edges.c.dst_id == target_id))
            stmt = stmt.where(_nodes.c.id.in_(linked))
        stmt = stmt.order_by(_nodes.c.id)
        if query.first is not None:
            stmt = stmt.limit(query.first)
        return [row.id for row in conn.execute(stmt)]

    def _hydrate(self, conn: Connection, node_id: int, fields: Sequence[Field]) -> dict[str, Any]:
        node: dict[str, Any] = {}
        scalar_names = [f.name for f in fields if not f.is_edge and f.name != "uid"]
        if any(f.name == "uid" for f in fields):
            node["uid"] = format_uid(node_id)
        if scalar_names:
            rows = conn.execute(
                select(_scalars.c.predicate, _scalars.c.value).where(
                    (_scalars.c.node_id == node_id) & (_scalars.c.predicate.in_(scalar_names))
                )
            )
            for row in rows:
                node[row.predicate] = row.value
        for edge in (f for f in fields if f.is_edge):
            rows = conn.execute(
                select(_edges.c.dst_id)
                .where((_edges.c.src_id == node_id) & (_edges.c.predicate == edge.name))
                .order_by(_edges.c.id)
            ).fetchall()
            node[edge.name] = [self._hydrate(conn, row.dst_id, edge.children) for row in rows]
        return node

    def _node_exists(self, conn: Connection, node_id: int) -> bool:
        return conn.execute(select(_nodes.c.id).where(_nodes.c.id == node_id)).first() is not None

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def _transport(self, action: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            logger.warning("Graph %s failed: %s", action, exc.__class__.__name__)
            raise TransportError(f"Graph {action} failed", details={"error": exc.__class__.__name__}) from exc

    def close(self) -> None:
        self.engine.dispose()
