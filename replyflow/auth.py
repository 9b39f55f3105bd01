import hmac
from typing import Iterable, Optional, Set

import jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from replyflow.config import Settings


def _deny(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse({"detail": detail}, status_code=status_code)


class PipelineAuthMiddleware(BaseHTTPMiddleware):
    """Shared-secret auth for pipeline triggers, bearer JWT for review actions."""

    def __init__(
        self,
        app,
        internal_prefixes: Iterable[str] = ("/pipeline",),
        exempt_paths: Optional[Iterable[str]] = None,
        exempt_prefixes: Optional[Iterable[str]] = None,
    ):
        super().__init__(app)
        self.internal_prefixes: Set[str] = set(internal_prefixes)
        self.exempt_paths: Set[str] = set(exempt_paths or [])
        self.exempt_prefixes: Set[str] = set(exempt_prefixes or [])

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        if (
            request.method == "OPTIONS"
            or path in self.exempt_paths
            or any(path.startswith(prefix) for prefix in self.exempt_prefixes)
        ):
            return await call_next(request)

        if any(path.startswith(prefix) for prefix in self.internal_prefixes):
            return await self._internal(request, call_next)
        return await self._bearer(request, call_next)

    @staticmethod
    def _settings(request: Request) -> Settings:
        return request.app.state.settings

    async def _internal(self, request: Request, call_next) -> Response:
        expected = self._settings(request).internal_secret
        if not expected:
            return _deny(500, "Internal secret not configured")
        provided = request.headers.get("x-internal-secret") or ""
        if not hmac.compare_digest(provided.encode(), expected.encode()):
            return _deny(401, "Unauthorized")
        request.state.internal = True
        return await call_next(request)

    async def _bearer(self, request: Request, call_next) -> Response:
        secret = self._settings(request).jwt_secret
        if not secret:
            return _deny(500, "Auth secret not configured")

        auth_header = request.headers.get("Authorization") or ""
        if not auth_header.lower().startswith("bearer "):
            return _deny(401, "Missing bearer token")
        token = auth_header.split(" ", 1)[1].strip()
        if not token:
            return _deny(401, "Missing bearer token")

        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=["HS256"],
                options={"verify_aud": False},
            )
        except jwt.PyJWTError:
            return _deny(401, "Invalid token")

        agent_id = payload.get("sub") or payload.get("agent_id")
        if not agent_id:
            return _deny(401, "Token missing agent identifier")

        request.state.agent_id = str(agent_id)
        request.state.jwt_payload = payload
        return await call_next(request)
