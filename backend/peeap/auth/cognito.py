from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx
from cachetools import TTLCache
from jose import JWTError, jwt

from ..modules.identity.roles import normalize_roles
from ..settings import settings


class CognitoAuthError(Exception):
    def __init__(self, message: str, *, status_code: int = 401):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class VerifiedUser:
    sub: str
    username: str
    email: str | None
    claims: dict[str, Any]
    roles: list[str] = field(default_factory=list)


_JWKS_CACHE: TTLCache[str, dict[str, Any]] = TTLCache(maxsize=4, ttl=60 * 60)


def _issuer() -> str:
    if not settings.cognito_user_pool_id:
        raise CognitoAuthError("COGNITO_USER_POOL_ID is not set", status_code=500)
    region = settings.cognito_region or settings.aws_region
    return f"https://cognito-idp.{region}.amazonaws.com/{settings.cognito_user_pool_id}"


def _get_jwks() -> dict[str, Any]:
    url = f"{_issuer()}/.well-known/jwks.json"
    cached = _JWKS_CACHE.get(url)
    if cached:
        return cached

    with httpx.Client(timeout=10.0) as client:
        resp = client.get(url)
        resp.raise_for_status()
        jwks = resp.json()

    _JWKS_CACHE[url] = jwks
    return jwks


def user_from_claims(claims: dict[str, Any]) -> VerifiedUser:
    sub = str(claims.get("sub") or "")
    if not sub:
        raise CognitoAuthError("missing sub")

    email = claims.get("email")
    if email is not None:
        email = str(email)

    username = (
        str(claims.get("preferred_username") or "").strip()
        or str(claims.get("cognito:username") or "").strip()
        or (email or "")
    )
    # Portal roles are Cognito groups (admin, merchant, developer, school_admin, ...).
    roles = normalize_roles(claims.get("cognito:groups") or claims.get("custom:role"))
    return VerifiedUser(sub=sub, username=username, email=email, claims=claims, roles=roles)


def verify_bearer_token(token: str) -> VerifiedUser:
    if not token:
        raise CognitoAuthError("missing token")
    if not settings.cognito_client_id:
        raise CognitoAuthError("COGNITO_CLIENT_ID is not set", status_code=500)

    jwks = _get_jwks()
    try:
        token_use = str(jwt.get_unverified_claims(token).get("token_use") or "")
    except JWTError as e:
        raise CognitoAuthError("malformed token") from e
    if token_use not in ("id", "access"):
        raise CognitoAuthError("invalid token_use")

    try:
        claims = jwt.decode(
            token,
            jwks,
            algorithms=["RS256"],
            # Access tokens carry client_id instead of aud.
            audience=settings.cognito_client_id if token_use == "id" else None,
            issuer=_issuer(),
            options={"verify_aud": token_use == "id", "verify_iss": True, "verify_exp": True},
        )
    except JWTError as e:
        raise CognitoAuthError("invalid token") from e

    if token_use == "access" and claims.get("client_id") != settings.cognito_client_id:
        raise CognitoAuthError("invalid client_id")

    return user_from_claims(claims)
