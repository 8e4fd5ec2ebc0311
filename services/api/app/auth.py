"""
Bearer-token authentication shared by REST routes and the WebSocket handshake.

Tokens are HS256 JWTs whose ``sub`` claim is the user id. Issuing tokens
(login, OAuth) lives elsewhere; ``create_access_token`` exists for tooling
and tests.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from app.config import settings
from app.errors import AuthenticationError, ValidationError, parse_id

auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    username: Optional[str] = None


def create_access_token(
    user_id: str,
    username: Optional[str] = None,
    expires_hours: Optional[int] = None,
) -> str:
    now = datetime.now(timezone.utc)
    ttl = expires_hours or settings.jwt_expiration_hours
    claims: Dict[str, Any] = {
        "sub": user_id,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(hours=ttl)).timestamp()),
    }
    if username:
        claims["username"] = username
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> AuthContext:
    """Validate a token and return its subject, raising AuthenticationError."""
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise AuthenticationError("Token Unauthorized") from exc

    # Older tokens nest the identity under a `user` claim
    nested = payload.get("user") if isinstance(payload.get("user"), dict) else {}
    subject = str(payload.get("sub") or nested.get("id") or "").strip()
    # Ids are compared as canonical lowercase UUID strings everywhere
    try:
        user_id = parse_id(subject, "Token Unauthorized")
    except ValidationError as exc:
        raise AuthenticationError(exc.message) from exc
    return AuthContext(
        user_id=user_id,
        username=payload.get("username") or nested.get("username"),
    )


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the authenticated user from the Authorization header."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise AuthenticationError("Token Not Provided!")
    return decode_access_token(credentials.credentials)
