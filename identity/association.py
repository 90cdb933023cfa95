"""
identity/association.py -- Keeps both endpoints of an edge in agreement.

Every edge is stored on both of its endpoints. When a record is created with
references (an Authenticator naming its Entity, Systems and Identifiers, say),
the new record is persisted first with its outgoing edges, then every related
record gets the reverse edge through its own store's associate():

    1. persist the new record                          (RecordStore.create)
    2. for each reference, in the record's EDGES order:
           related_store.associate(related_key, new_record)

This is a saga, not a transaction. Each associate() is an independent
read-modify-write. If one fails the others are still attempted, nothing is
rolled back, and AssociationIncomplete reports which reverse edges were and
were not written. With the default "union" edge policy a retry of the same
link is idempotent, so reconciling is just calling link() again.

Layer rule: imports core/ and identity.models only. The stores are passed in.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from core.errors import AssociationIncomplete, IdentityError, ValidationFailed
from identity.models import Record, edge_attribute

if TYPE_CHECKING:
    from collections.abc import Sequence

    from identity.store import IdentityStores

logger = logging.getLogger("authgraph.identity")


def _label(store, record: Record) -> str:
    return f"{record.NODE_TYPE}:{store.key_of(record) or record.uid}"


def cascade_links(stores: "IdentityStores", record: Record) -> list[str]:
    """Write the reverse edge on every record the persisted record points at.

    Returns the "Type:key" labels that were linked. Raises
    AssociationIncomplete if any reverse edge could not be written.
    """
    linked: list[str] = []
    failed: list[str] = []
    for attr in record.EDGES:
        for related in getattr(record, attr):
            store = stores.store_for(type(related))
            label = _label(store, related)
            try:
                store.associate(store.key_of(related), record)
            except IdentityError as exc:
                logger.warning(
                    "Reverse edge %s -> %s %s failed: %s",
                    label,
                    record.NODE_TYPE,
                    record.uid,
                    exc.code,
                )
                failed.append(label)
            else:
                linked.append(label)
    if failed:
        raise AssociationIncomplete(record.uid, linked, failed)
    return linked


def link(
    stores: "IdentityStores",
    record: Record,
    related: Record,
    fields: Optional["Sequence[str]"] = None,
) -> Record:
    """Link two already-persisted records on both sides; return record re-read per fields.

    Both records are resolved first (NotFound if either is missing). The
    record's side is written first; if the related side then fails,
    AssociationIncomplete is raised with the record's side counted as linked.
    """
    if edge_attribute(type(record), type(related)) is None or edge_attribute(type(related), type(record)) is None:
        raise ValidationFailed(f"{record.NODE_TYPE} cannot be linked to {related.NODE_TYPE}")
    store = stores.store_for(type(record))
    related_store = stores.store_for(type(related))
    record = store.resolve(record)
    related = related_store.resolve(related)

    updated = store.associate(store.key_of(record), related, fields)
    try:
        related_store.associate(related_store.key_of(related), record)
    except IdentityError as exc:
        logger.warning("Reverse edge %s -> %s failed: %s", _label(related_store, related), _label(store, record), exc.code)
        raise AssociationIncomplete(record.uid, [_label(store, record)], [_label(related_store, related)]) from exc
    return updated
