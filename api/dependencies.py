"""
api/dependencies.py -- FastAPI Depends() helpers for the management API.

require_api_key() guards every route except health. The key is compared with
hmac.compare_digest so the comparison time does not leak how many leading
characters of a guess were right.

get_stores() / get_verifier() hand out the process-scoped objects the
lifespan put on app.state. Routes never construct stores themselves.

Layer rule: api/ may import from core/ and identity/. Nothing imports api/.
"""

from __future__ import annotations

import hmac

from fastapi import HTTPException, Request

from api.models import ErrorDetail
from core.config import get_settings
from identity.store import IdentityStores
from identity.verifier import CredentialVerifier


def require_api_key(request: Request) -> None:
    """Raise HTTP 401 unless the X-API-Key header matches API_KEY.

    Use as a router-level dependency:
        router = APIRouter(dependencies=[Depends(require_api_key)])
    """
    expected = get_settings().api_key
    supplied = request.headers.get("X-API-Key", "")
    if not expected or not hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(
            status_code=401,
            detail=ErrorDetail(code="unauthorized", message="A valid X-API-Key header is required.").model_dump(),
        )


def get_stores(request: Request) -> IdentityStores:
    return request.app.state.stores


def get_verifier(request: Request) -> CredentialVerifier:
    return request.app.state.verifier
