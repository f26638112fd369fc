import logging
from typing import Optional

from fastapi import Request
from starlette.datastructures import Headers
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from ..core.errors import ApiError
from ..core.security import TokenError

logger = logging.getLogger(__name__)


def extract_bearer_token(headers: Headers) -> Optional[str]:
    """Token from ``Authorization: Bearer <token>``; None when not a bearer header."""
    raw = headers.get("authorization")
    if raw is None:
        return None
    scheme, _, token = raw.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip()


def error_response(exc: ApiError, **extra) -> JSONResponse:
    content = exc.to_dict()
    content.update(extra)
    response = JSONResponse(status_code=exc.status_code, content=content)
    if exc.status_code == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


class AuthMiddleware(BaseHTTPMiddleware):
    """Attach verified claims to ``request.state``; reject bad bearer tokens.

    Requests without a bearer token pass through anonymously. A token that
    is present but malformed, expired, forged or revoked is answered with
    401 right here, and an unreachable revocation store with 503.
    """

    async def dispatch(self, request: Request, call_next):
        request.state.claims = None
        request.state.token = None
        if request.method == "OPTIONS":
            return await call_next(request)

        token = extract_bearer_token(request.headers)
        if token is None:
            return await call_next(request)

        tokens = request.app.state.token_service
        try:
            claims = await tokens.verify(token)
        except TokenError as exc:
            logger.info(
                "Rejected bearer token on %s %s: %s", request.method, request.url.path, exc.reason
            )
            return error_response(exc, reason=exc.reason)
        except ApiError as exc:
            logger.error("Token verification unavailable: %s", exc)
            return error_response(exc)

        request.state.claims = claims
        request.state.token = token
        return await call_next(request)
