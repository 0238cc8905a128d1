"""Auth guard middleware and the route-level identity dependency.

Sets ``request.state.auth_identity`` from a verified bearer token. In local
development (no verifier configured) the ``X-User-ID`` header is accepted
instead so the API can be exercised without Supabase.

Exempt paths (never require auth): ``/health``, ``/metrics``, ``/docs``,
``/openapi.json``.
"""

from __future__ import annotations

from fastapi import HTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from .token_verify import (
    AuthIdentity,
    TokenVerificationError,
    TokenVerifier,
    extract_bearer_token,
)

DEFAULT_EXEMPT_PATHS: tuple[str, ...] = (
    '/health',
    '/metrics',
    '/docs',
    '/openapi.json',
)
DEV_USER_HEADER = 'x-user-id'


def _unauthorized(code: str, detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={'error': 'unauthorized', 'code': code, 'detail': detail},
        headers={'WWW-Authenticate': 'Bearer'},
    )


class AuthGuardMiddleware(BaseHTTPMiddleware):
    """Reject unauthenticated requests to protected routes.

    Args:
        app: The ASGI application.
        token_verifier: Verifier for bearer tokens; None disables bearer auth.
        allow_dev_user_header: Accept ``X-User-ID`` as the identity (local only).
        exempt_paths: Paths that skip auth.
    """

    def __init__(
        self,
        app,
        token_verifier: TokenVerifier | None = None,
        *,
        allow_dev_user_header: bool = False,
        exempt_paths: tuple[str, ...] = DEFAULT_EXEMPT_PATHS,
    ) -> None:
        super().__init__(app)
        self._verifier = token_verifier
        self._allow_dev_user_header = allow_dev_user_header
        self._exempt_paths = exempt_paths

    def _is_exempt(self, path: str) -> bool:
        return any(path == p or path.startswith(p + '/') for p in self._exempt_paths)

    async def dispatch(self, request: Request, call_next) -> Response:
        request.state.auth_identity = None

        if request.method == 'OPTIONS' or self._is_exempt(request.url.path):
            return await call_next(request)

        token = extract_bearer_token(request)
        if token and self._verifier is not None:
            try:
                request.state.auth_identity = self._verifier.verify(token)
            except TokenVerificationError as exc:
                return _unauthorized(exc.code, exc.detail)
            return await call_next(request)

        if self._allow_dev_user_header:
            user_id = request.headers.get(DEV_USER_HEADER, '').strip()
            if user_id:
                request.state.auth_identity = AuthIdentity(user_id=user_id)
                return await call_next(request)

        return _unauthorized('no_credentials', 'Authentication required')


def get_auth_identity(request: Request) -> AuthIdentity:
    """FastAPI dependency returning the authenticated identity.

    Raises:
        HTTPException: 401 if no authenticated identity on the request.
    """
    identity: AuthIdentity | None = getattr(request.state, 'auth_identity', None)
    if identity is None:
        raise HTTPException(
            status_code=401,
            detail={
                'error': 'unauthorized',
                'code': 'no_credentials',
                'detail': 'Authentication required',
            },
            headers={'WWW-Authenticate': 'Bearer'},
        )
    return identity
