"""
identity -- Records, stores, association cascade and credential verifier.

Layer rule: identity/ may import from core/ and graph/. It may not import
from api/. The API layer calls into identity/, never the other way around.
"""
