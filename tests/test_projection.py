"""Unit tests for graph/projection.py -- allow-listed field projections.

Covers:
- plain scalars, uid and nested edge projections parse into a Field tree
- a bare edge name defaults to { uid }
- repeated fields are merged
- unknown names, injection characters, bad braces and deep nesting are rejected
- Query.render() carries variable names, never values
"""

import pytest

from core.errors import ValidationFailed
from graph.projection import MAX_DEPTH, Field, Query, build_projection
from identity.models import GRAPH_SCHEMA


def test_scalars_and_uid():
    projection = build_projection(GRAPH_SCHEMA, "Entity", ["uid", "sid", "display_name"])
    assert projection.node_type == "Entity"
    assert [f.name for f in projection.fields] == ["uid", "sid", "display_name"]
    assert not any(f.is_edge for f in projection.fields)


def test_nested_edge_projection():
    projection = build_projection(GRAPH_SCHEMA, "Identifier", ["authenticator { uid system { guid } }"])
    (edge,) = projection.fields
    assert edge.name == "authenticator"
    assert edge.children == (Field("uid"), Field("system", (Field("guid"),)))


def test_bare_edge_defaults_to_uid():
    projection = build_projection(GRAPH_SCHEMA, "Entity", ["identifier"])
    assert projection.fields == (Field("identifier", (Field("uid"),)),)


def test_repeated_fields_are_merged():
    projection = build_projection(GRAPH_SCHEMA, "Entity", ["uid", "uid", "system { uid }", "system { guid }"])
    assert projection.fields == (Field("uid"), Field("system", (Field("uid"), Field("guid"))))


def test_several_names_in_one_string():
    projection = build_projection(GRAPH_SCHEMA, "System", ["uid guid name"])
    assert [f.name for f in projection.fields] == ["uid", "guid", "name"]


@pytest.mark.parametrize(
    "field",
    [
        "password",  # not a predicate of Entity
        "sid) { secret }",  # characters outside the allow-list
        "sid\n}\nq(func: has(value)) {",
        "SID",
        "identifier { uid",
        "identifier { }",
        "sid { uid }",
        "}",
        "{ uid }",
        "identifier { nope }",
    ],
)
def test_rejected_fields(field):
    with pytest.raises(ValidationFailed):
        build_projection(GRAPH_SCHEMA, "Entity", [field])


def test_empty_field_list_rejected():
    with pytest.raises(ValidationFailed):
        build_projection(GRAPH_SCHEMA, "Entity", [])


def test_unknown_node_type_rejected():
    with pytest.raises(ValidationFailed):
        build_projection(GRAPH_SCHEMA, "Account", ["uid"])


def test_depth_limit():
    ok = "authenticator { system { namespace { uid } } }"
    build_projection(GRAPH_SCHEMA, "Entity", [ok])
    too_deep = "authenticator { system { namespace { scope { uid } } } }"
    assert MAX_DEPTH == 4
    with pytest.raises(ValidationFailed):
        build_projection(GRAPH_SCHEMA, "Entity", [too_deep])


def test_render_uses_variables_only():
    projection = build_projection(GRAPH_SCHEMA, "Identifier", ["uid", "entity { uid }"])
    query = Query(projection, eq=(("identifier_type", "email"), ("value", "secret@example.com")), first=1)
    text = query.render()
    assert "eq(identifier_type, $identifier_type)" in text
    assert "$value" in text
    assert "secret@example.com" not in text
    assert "entity {" in text
