"""
api/routes/v1/login.py -- Credential verification route.

POST /login answers whether a secret authenticates an identifier within one
system. It is called by the login front end, not by end users directly, so it
sits behind the same X-API-Key as the record routes.

Response contract:
  200 {"authenticated": true}   -- secret matches, credential scoped to system
  200 {"authenticated": false}  -- anything else a user could get wrong
  500 corrupt_data              -- the stored credential is damaged
  503 transport_error           -- the graph store is unreachable
A rejected login is never a 4xx, so callers cannot tell an unknown
identifier from a wrong secret.

Security:
  Rate limited per client address (LOGIN_RATE_LIMIT, default 10/minute).
  Cache-Control: no-store so no intermediary keeps an auth decision.
  The handler is a sync def: FastAPI runs it in its threadpool, so the bcrypt
  check never blocks the event loop.
"""

import logging

from fastapi import APIRouter, Depends, Request, Response

from api.dependencies import get_verifier, require_api_key
from api.limiter import limiter, login_limit
from api.models import LoginRequest, LoginResponse
from identity.models import Authenticator, Identifier, System
from identity.verifier import CredentialVerifier

logger = logging.getLogger("authgraph.api")

router = APIRouter(dependencies=[Depends(require_api_key)])


@limiter.limit(login_limit)
@router.post("/login", response_model=LoginResponse)
def login(
    request: Request,
    response: Response,
    body: LoginRequest,
    verifier: CredentialVerifier = Depends(get_verifier),
) -> LoginResponse:
    """Verify a secret for an identifier within a system."""
    response.headers["Cache-Control"] = "no-store"
    authenticated = verifier.login(
        Authenticator(authenticator_type=body.authenticator_type, value=body.secret),
        Identifier(identifier_type=body.identifier_type, value=body.identifier),
        System(guid=body.system_guid),
    )
    logger.info("Login for system %s: %s", body.system_guid, "accepted" if authenticated else "rejected")
    return LoginResponse(authenticated=authenticated)
