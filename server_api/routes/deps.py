import secrets
from typing import Optional

from fastapi import Depends, Header, Request

from ..core.config import ADMIN_API_KEY
from ..core.errors import AuthenticationError, AuthorizationError
from ..core.security import Claims, TokenService
from ..services.email import EmailCodeService
from ..services.search import SearchClient
from ..services.servers import ServerService
from ..services.store import ServerStore


def get_token_service(request: Request) -> TokenService:
    return request.app.state.token_service


def get_store(request: Request) -> ServerStore:
    return request.app.state.store


def get_server_service(request: Request) -> ServerService:
    return request.app.state.server_service


def get_search_client(request: Request) -> SearchClient:
    return request.app.state.search_client


def get_email_service(request: Request) -> EmailCodeService:
    return request.app.state.email_service


def get_current_claims_optional(request: Request) -> Optional[Claims]:
    return getattr(request.state, "claims", None)


def get_current_claims(claims: Optional[Claims] = Depends(get_current_claims_optional)) -> Claims:
    if claims is None:
        raise AuthenticationError("Not logged in")
    return claims


def get_current_token(request: Request, claims: Claims = Depends(get_current_claims)) -> str:
    return request.state.token


def require_admin_key(x_admin_key: Optional[str] = Header(None)) -> None:
    if not ADMIN_API_KEY:
        raise AuthorizationError("Admin API is disabled")
    if not x_admin_key or not secrets.compare_digest(x_admin_key, ADMIN_API_KEY):
        raise AuthorizationError("Invalid admin key")
