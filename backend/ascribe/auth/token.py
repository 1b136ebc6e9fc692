"""
Cognito JWT verification.

    issuer     https://cognito-idp.<region>.amazonaws.com/<user_pool_id>
    key set    <issuer>/.well-known/jwks.json
    id token   aud == app client id
    access     client_id == app client id (no aud claim)

Signing keys are held per issuer, indexed by kid, for an hour. A token
whose kid is not in the held set triggers one refetch, so a user pool key
rotation needs no restart.

The verified ``sub`` is the userId every handler works with; nothing
downstream re-validates it.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Annotated, Any

import httpx
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwk, jwt
from pydantic import BaseModel

from ascribe.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

KEY_SET_TTL_SECONDS = 3600
KEY_SET_TIMEOUT_SECONDS = 10.0

bearer_scheme = HTTPBearer(auto_error=True)


class TokenPayload(BaseModel):
    """Claims of a verified token."""
    sub:       str          # Cognito user id → userId
    email:     str = ""
    token_use: str = "id"   # id | access
    exp:       int
    iss:       str

    @property
    def user_id(self) -> str:
        return self.sub


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status.HTTP_401_UNAUTHORIZED, detail=detail)


# ---------------------------------------------------------------------------
# Signing keys
# ---------------------------------------------------------------------------

@dataclass
class KeySet:
    keys:       dict[str, dict[str, Any]]   # kid → JWK
    fetched_at: float

    @property
    def fresh(self) -> bool:
        return time.monotonic() - self.fetched_at < KEY_SET_TTL_SECONDS


_KEY_SETS: dict[str, KeySet] = {}


async def _download_key_set(issuer: str) -> dict[str, Any]:
    url = f"{issuer.rstrip('/')}/.well-known/jwks.json"
    try:
        async with httpx.AsyncClient(timeout=KEY_SET_TIMEOUT_SECONDS) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            return resp.json()
    except httpx.HTTPError as exc:
        logger.error("Key set download failed | issuer=%s error=%s", issuer, exc)
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail="Identity provider unavailable") from exc


async def signing_keys(issuer: str, refresh: bool = False) -> dict[str, dict[str, Any]]:
    held = _KEY_SETS.get(issuer)
    if held is not None and held.fresh and not refresh:
        return held.keys

    document = await _download_key_set(issuer)
    keys = {k["kid"]: k for k in document.get("keys", []) if k.get("kid")}
    _KEY_SETS[issuer] = KeySet(keys=keys, fetched_at=time.monotonic())
    logger.debug("Key set loaded | issuer=%s kids=%d", issuer, len(keys))
    return keys


async def public_key_for(token: str, issuer: str):
    try:
        kid = jwt.get_unverified_header(token).get("kid")
    except JWTError as exc:
        raise _unauthorized("Invalid token header") from exc

    keys = await signing_keys(issuer)
    if kid not in keys:
        logger.info("Unknown kid, reloading key set | issuer=%s kid=%s", issuer, kid)
        keys = await signing_keys(issuer, refresh=True)
    if kid not in keys:
        raise _unauthorized(f"No signing key matches kid '{kid}'")
    return jwk.construct(keys[kid]).public_key()


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

async def verify_token(token: str, settings: Settings) -> TokenPayload:
    """
    Signature, expiry and issuer are checked by jose. The app client is
    checked through ``aud`` on id tokens and ``client_id`` on access tokens,
    since Cognito access tokens carry no ``aud``.

    Raises:
        HTTPException 401: any verification failure, or no issuer configured
        HTTPException 503: the key set could not be downloaded
    """
    if not settings.auth_issuer:
        raise _unauthorized("Authentication is not configured")

    key = await public_key_for(token, settings.auth_issuer)

    try:
        token_use = jwt.get_unverified_claims(token).get("token_use", "id")
        check_aud = token_use == "id" and bool(settings.auth_audience)
        claims = jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            audience=settings.auth_audience if check_aud else None,
            issuer=settings.auth_issuer,
            options={"verify_exp": True, "verify_aud": check_aud},
        )
    except ExpiredSignatureError as exc:
        raise _unauthorized("Token has expired") from exc
    except JWTError as exc:
        raise _unauthorized(f"Invalid token: {exc}") from exc

    if token_use == "access" and settings.auth_audience and claims.get("client_id") != settings.auth_audience:
        raise _unauthorized("Invalid token: client_id mismatch")
    if not claims.get("sub"):
        raise _unauthorized("Token missing sub claim")

    return TokenPayload(
        sub=claims["sub"],
        email=claims.get("email", ""),
        token_use=token_use,
        exp=claims["exp"],
        iss=claims["iss"],
    )


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
    settings:    Annotated[Settings, Depends(get_settings)],
) -> TokenPayload:
    return await verify_token(credentials.credentials, settings)
