"""
graph/projection.py -- Typed, allow-listed query projections.

Callers describe which fields they want back with short strings such as
"uid", "sid" or "identifier { uid value }". build_projection() parses those
strings into a Projection tree, checking every name against the schema of the
node type at that nesting level. Nothing a caller supplies is ever spliced
into query text: the graph store walks the Projection tree and binds every
value as a parameter.

Query.render() produces a DQL-like text form of a query for debug logging.
It contains variable names only, never variable values.

Layer rule: no imports from identity/ or api/.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Optional

from core.errors import ValidationFailed

# Deep projections fan out one query per edge per level.
MAX_DEPTH = 4

_ALLOWED_CHARS = re.compile(r"^[a-z_{}\s]*$")
_TOKEN = re.compile(r"[a-z_]+|[{}]")


@dataclass(frozen=True)
class TypeSchema:
    """Predicates a node type carries: scalar names and edge -> target type."""

    name: str
    scalars: frozenset[str]
    edges: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Field:
    """One requested field. Edge fields carry the projection of their targets."""

    name: str
    children: tuple["Field", ...] = ()

    @property
    def is_edge(self) -> bool:
        return bool(self.children)


@dataclass(frozen=True)
class Projection:
    node_type: str
    fields: tuple[Field, ...]


@dataclass(frozen=True)
class Query:
    """A root selector plus the projection to hydrate for every match.

    uid       -- select a single node by uid
    eq        -- (predicate, value) pairs that must all match
    has_edge  -- (predicate, uid) pairs: the node must link to that uid
    first     -- cap on the number of root nodes returned
    """

    projection: Projection
    uid: Optional[str] = None
    eq: tuple[tuple[str, str], ...] = ()
    has_edge: tuple[tuple[str, str], ...] = ()
    first: Optional[int] = None

    def render(self) -> str:
        root = self.projection.node_type.lower()
        params = []
        filters = [f"type({self.projection.node_type})"]
        if self.uid is not None:
            params.append("$uid: string")
            func = "uid($uid)"
        else:
            func = ""
        for predicate, _ in self.eq:
            params.append(f"${predicate}: string")
            clause = f"eq({predicate}, ${predicate})"
            if not func:
                func = clause
            else:
                filters.append(clause)
        for predicate, _ in self.has_edge:
            params.append(f"${predicate}_uid: string")
            filters.append(f"uid_in({predicate}, ${predicate}_uid)")
        if not func:
            func = f"type({self.projection.node_type})"
        if self.first is not None:
            func += f", first: {self.first}"
        lines = [f"query {root}({', '.join(params)}) {{"]
        lines.append(f"  {root}(func: {func}) @filter({' AND '.join(filters)}) {{")
        lines.extend(_render_fields(self.projection.fields, indent=4))
        lines.append("  }")
        lines.append("}")
        return "\n".join(lines)


def _render_fields(fields: Sequence[Field], indent: int) -> list[str]:
    pad = " " * indent
    lines = []
    for f in fields:
        if f.is_edge:
            lines.append(f"{pad}{f.name} {{")
            lines.extend(_render_fields(f.children, indent + 2))
            lines.append(f"{pad}}}")
        else:
            lines.append(f"{pad}{f.name}")
    return lines


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def build_projection(
    schema: Mapping[str, TypeSchema],
    node_type: str,
    fields: Sequence[str],
) -> Projection:
    """Parse requested field strings into a Projection for node_type.

    Raises ValidationFailed on unknown names, malformed braces, forbidden
    characters, or nesting deeper than MAX_DEPTH. Repeated fields are merged,
    so ["uid", "uid", "system { uid }", "system { guid }"] yields uid once and
    a single system edge projecting uid and guid.
    """
    if node_type not in schema:
        raise ValidationFailed(f"Unknown node type {node_type!r}")
    if not fields:
        raise ValidationFailed("At least one field must be requested", details={"node_type": node_type})
    parsed: list[Field] = []
    for raw in fields:
        if not isinstance(raw, str) or not _ALLOWED_CHARS.match(raw):
            raise ValidationFailed("Field names may contain only a-z, '_', braces and spaces", details={"field": raw})
        tokens = _TOKEN.findall(raw)
        if not tokens:
            raise ValidationFailed("Empty field name", details={"field": raw})
        items, pos = _parse_fields(tokens, 0, schema, schema[node_type], depth=1)
        if pos != len(tokens):
            raise ValidationFailed("Unbalanced braces in field", details={"field": raw})
        parsed.extend(items)
    return Projection(node_type=node_type, fields=_merge(parsed))


def _parse_fields(
    tokens: list[str],
    pos: int,
    schema: Mapping[str, TypeSchema],
    type_schema: TypeSchema,
    depth: int,
) -> tuple[list[Field], int]:
    if depth > MAX_DEPTH:
        raise ValidationFailed(f"Projection nests deeper than {MAX_DEPTH} levels")
    fields: list[Field] = []
    while pos < len(tokens) and tokens[pos] != "}":
        name = tokens[pos]
        pos += 1
        if name == "{":
            raise ValidationFailed("Opening brace without an edge name")
        if name in type_schema.edges:
            target = schema[type_schema.edges[name]]
            if pos < len(tokens) and tokens[pos] == "{":
                children, pos = _parse_fields(tokens, pos + 1, schema, target, depth + 1)
                if pos >= len(tokens) or tokens[pos] != "}":
                    raise ValidationFailed(f"Unclosed projection for edge {name!r}")
                pos += 1
                if not children:
                    raise ValidationFailed(f"Empty projection for edge {name!r}")
            else:
                children = [Field("uid")]
            fields.append(Field(name, tuple(children)))
            continue
        if name != "uid" and name not in type_schema.scalars:
            raise ValidationFailed(
                f"Unknown field {name!r} for {type_schema.name}",
                details={"node_type": type_schema.name, "field": name},
            )
        if pos < len(tokens) and tokens[pos] == "{":
            raise ValidationFailed(f"Scalar field {name!r} cannot take a sub-projection")
        fields.append(Field(name))
    return fields, pos


def _merge(fields: Sequence[Field]) -> tuple[Field, ...]:
    merged: dict[str, list[Field]] = {}
    for f in fields:
        merged.setdefault(f.name, []).append(f)
    result = []
    for name, group in merged.items():
        if group[0].is_edge:
            children = [child for g in group for child in g.children]
            result.append(Field(name, _merge(children)))
        else:
            result.append(Field(name))
    return tuple(result)
