"""
JWT Token Verification — OIDC-Compatible

Admin and reader requests carry a Bearer JWT issued by the platform's
identity provider (Cognito, Auth0 or any OIDC issuer):

    Issuer:   settings.auth_issuer
    JWKS URI: <issuer>/.well-known/jwks.json
    Claims:   sub, email, role | custom:role | cognito:groups

Tokens are signed with RS256 using rotating key sets. The public JWKS is
fetched once and cached (TTL: 1 hour). If a kid is missing we force-refresh,
which handles key rotation transparently.

Roles (embedded in JWT, enforced in rbac.require_role):
  super_admin  - platform operators
  admin        - trigger and retry processing, write content
  user         - read overviews and chat context
"""

from __future__ import annotations

import logging
import time
from typing import Annotated

import httpx
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt
from pydantic import BaseModel

from book_pipeline.core.config import settings
from book_pipeline.core.errors import Unauthorized

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# HTTP Bearer extractor
# Missing headers are reported as Unauthorized (401) by get_current_user.
# ---------------------------------------------------------------------------

bearer_scheme = HTTPBearer(auto_error=False)

VALID_ROLES = frozenset({"user", "admin", "super_admin"})


# ---------------------------------------------------------------------------
# Verified token payload
# ---------------------------------------------------------------------------

class TokenPayload(BaseModel):
    """Parsed, validated JWT claims — passed to route handlers."""
    sub:   str          # provider user ID
    email: str
    role:  str          # user | admin | super_admin
    exp:   int
    iss:   str


# ---------------------------------------------------------------------------
# JWKS cache (in-memory, TTL-based)
# ---------------------------------------------------------------------------

_JWKS_CACHE: dict[str, tuple[dict, float]] = {}   # issuer → (jwks, fetched_at)
_JWKS_TTL   = 3600   # 1 hour


async def _fetch_jwks(issuer: str) -> dict:
    """Fetch JWKS from the provider's well-known endpoint with TTL caching."""
    now = time.monotonic()
    cached = _JWKS_CACHE.get(issuer)
    if cached and (now - cached[1]) < _JWKS_TTL:
        return cached[0]

    jwks_uri = f"{issuer.rstrip('/')}/.well-known/jwks.json"
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            resp = await client.get(jwks_uri)
            resp.raise_for_status()
            jwks = resp.json()
    except httpx.HTTPError as exc:
        logger.error("JWKS fetch failed | issuer=%s error=%s", issuer, exc)
        raise Unauthorized("Unable to verify token: signing keys unavailable") from exc

    _JWKS_CACHE[issuer] = (jwks, now)
    logger.debug("JWKS refreshed for issuer: %s", issuer)
    return jwks


async def _get_signing_key(token: str) -> dict:
    """
    Extract kid from token header, fetch the matching JWK.
    Force-refreshes the cache if the kid is not found (handles key rotation).
    """
    try:
        header = jwt.get_unverified_header(token)
    except JWTError as exc:
        raise Unauthorized("Invalid token header") from exc

    kid = header.get("kid")
    issuer = settings.auth_issuer

    for attempt in range(2):   # 0 = cached, 1 = force refresh
        if attempt == 1:
            _JWKS_CACHE.pop(issuer, None)

        jwks = await _fetch_jwks(issuer)
        for key_data in jwks.get("keys", []):
            if key_data.get("kid") == kid:
                return key_data

    raise Unauthorized(f"Unable to find signing key for kid={kid}")


# ---------------------------------------------------------------------------
# Claim extractors
# ---------------------------------------------------------------------------

def _extract_role(claims: dict) -> str:
    """
    Extract the role from JWT claims.
    Generic: role   Cognito: custom:role OR cognito:groups[0]
    """
    role = claims.get("role") or claims.get("custom:role")
    if not role and "cognito:groups" in claims:
        groups = claims["cognito:groups"]
        role = groups[0] if groups else None

    if role not in VALID_ROLES:
        logger.warning("Unknown role '%s' in token, defaulting to 'user'", role)
        role = "user"

    return role


# ---------------------------------------------------------------------------
# Main verification function
# ---------------------------------------------------------------------------

async def verify_token(token: str) -> TokenPayload:
    """
    Verify a JWT token:
      1. Fetch matching public key from JWKS (cached).
      2. Verify signature, expiry, issuer, audience.
      3. Return a typed TokenPayload.
    """
    signing_key = await _get_signing_key(token)

    try:
        claims = jwt.decode(
            token,
            signing_key,
            algorithms=["RS256"],
            audience=settings.auth_audience,
            issuer=settings.auth_issuer,
            options={"verify_exp": True},
        )
    except ExpiredSignatureError as exc:
        raise Unauthorized("Token has expired") from exc
    except JWTError as exc:
        raise Unauthorized(f"Invalid token: {exc}") from exc

    if "sub" not in claims:
        raise Unauthorized("Token missing sub claim")

    return TokenPayload(
        sub=claims["sub"],
        email=claims.get("email", ""),
        role=_extract_role(claims),
        exp=claims["exp"],
        iss=claims["iss"],
    )


# ---------------------------------------------------------------------------
# FastAPI dependency
# ---------------------------------------------------------------------------

async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> TokenPayload:
    """
    FastAPI dependency that extracts and validates the Bearer token.

        @router.get("/books/{book_id}/overview")
        async def overview(user: TokenPayload = Depends(get_current_user)):
            ...
    """
    if credentials is None:
        raise Unauthorized("Missing or invalid Authorization header")
    return await verify_token(credentials.credentials)
