"""graph/ -- Graph storage capability for authgraph.

Exposes a parameterized query + upsert-by-merge store over SQLAlchemy Core
and the typed projection builder that shapes what a query returns.

Layer rule: graph/ imports only stdlib, third-party libraries and core/.
It does NOT import from identity/ or api/.
"""
