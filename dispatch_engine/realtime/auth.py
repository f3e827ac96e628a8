"""
Bearer-token verification for HTTP requests and WebSocket handshakes.

Tokens are issued by the auth service; here we only check the signature
and read the ``sub`` claim as the user id.
"""

from __future__ import annotations

from typing import Mapping, Optional

import jwt

from dispatch_engine.config import Settings
from dispatch_engine.domain.errors import NotAuthorized


def token_from_handshake(
    headers: Mapping[str, str], query_params: Mapping[str, str]
) -> Optional[str]:
    """Authorization header first, then ``?token=``."""
    auth_header = headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[len("Bearer "):].strip() or None
    token = query_params.get("token")
    return token or None


def decode_user_id(token: str, settings: Settings) -> int:
    try:
        payload = jwt.decode(
            token, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
        return int(payload["sub"])
    except (jwt.PyJWTError, KeyError, TypeError, ValueError) as exc:
        raise NotAuthorized("Authentication failed") from exc


def issue_token(user_id: int, settings: Settings, **claims) -> str:
    """Mint a token.  Used by tests and the seed script only."""
    return jwt.encode(
        {"sub": str(user_id), **claims},
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )
