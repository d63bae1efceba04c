"""Bearer JWT auth middleware for the reference server."""

from __future__ import annotations

import logging
import time
from typing import Optional

from jose import jwt
from jose.exceptions import JWTError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse


ALGORITHM = "HS256"
_PUBLIC_PATHS = {"/health"}

logger = logging.getLogger("tpsync.auth")


def issue_token(secret: str, subject: str, ttl_seconds: int = 3600, **claims) -> str:
    now = int(time.time())
    payload = {"sub": subject, "iat": now, "exp": now + ttl_seconds, **claims}
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def _get_bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.split(" ", 1)[1].strip() or None


def _unauthorized(code: str, message: str, detail: dict | None = None) -> JSONResponse:
    return JSONResponse(
        {
            "ok": False,
            "errors": [{"code": code, "message": message, "path": "Authorization", "detail": detail}],
            "warnings": [],
        },
        status_code=401,
    )


class BearerAuthMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, secret: str) -> None:
        super().__init__(app)
        self._secret = secret

    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS" or request.url.path in _PUBLIC_PATHS:
            return await call_next(request)

        token = _get_bearer_token(request)
        if not token:
            logger.warning("auth_missing_token path=%s", request.url.path)
            return _unauthorized("AUTH_MISSING_TOKEN", "Missing bearer token")

        try:
            claims = jwt.decode(token, self._secret, algorithms=[ALGORITHM])
        except JWTError as exc:
            logger.warning("auth_invalid_token path=%s error=%s", request.url.path, exc)
            return _unauthorized("AUTH_INVALID_TOKEN", "Invalid bearer token", {"error": str(exc)})

        request.state.user = {
            "id": claims.get("sub"),
            "email": claims.get("email"),
            "name": claims.get("name"),
            "claims": claims,
        }
        return await call_next(request)
