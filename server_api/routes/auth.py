import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request

from ..core.errors import ApiError, AuthenticationError, ConflictError, ValidationError
from ..core.security import TokenService, verify_password
from ..middleware.logging import get_client_ip
from ..schemas import (
    AuthToken,
    EmailCodeRequest,
    RevocationStatusRequest,
    RevocationStatusResponse,
    SuccessResponse,
    UserLoginData,
)
from ..services.email import EmailCodeService
from ..services.store import ServerStore
from .deps import (
    get_current_token,
    get_email_service,
    get_store,
    get_token_service,
    require_admin_key,
)

logger = logging.getLogger(__name__)

router = APIRouter()


async def _record_login(store: ServerStore, user_id: int, ip: Optional[str]) -> None:
    try:
        await store.record_login(user_id, ip)
    except ApiError as exc:
        logger.warning("Failed to record last login for user %s: %s", user_id, exc)


@router.post("/login", response_model=AuthToken)
async def login(
    payload: UserLoginData,
    request: Request,
    background_tasks: BackgroundTasks,
    store: ServerStore = Depends(get_store),
    tokens: TokenService = Depends(get_token_service),
):
    if not payload.username_or_email or not payload.password:
        raise ValidationError("Username and password must not be empty")

    user = await store.find_user(payload.username_or_email)
    if user is None:
        raise AuthenticationError("Invalid username or password")
    valid = await asyncio.to_thread(verify_password, payload.password, user.hashed_password)
    if not valid:
        raise AuthenticationError("Invalid username or password")
    if not user.is_active:
        raise AuthenticationError("Account is disabled")

    token = tokens.issue(user.id, user.username)
    background_tasks.add_task(_record_login, store, user.id, get_client_ip(request))
    logger.info("User %s logged in", user.id)
    return AuthToken(access_token=token, expires_in=tokens.expire_seconds)


@router.post("/logout", response_model=SuccessResponse)
async def logout(
    token: str = Depends(get_current_token),
    tokens: TokenService = Depends(get_token_service),
):
    await tokens.revoke(token)
    return SuccessResponse(message="Logged out")


@router.post("/register/email-code", response_model=SuccessResponse)
async def register_email_code(
    payload: EmailCodeRequest,
    store: ServerStore = Depends(get_store),
    email_service: EmailCodeService = Depends(get_email_service),
):
    email = str(payload.email)
    if await store.email_exists(email):
        raise ConflictError("Email is already registered")
    await email_service.send_code(email)
    return SuccessResponse(message=f"Verification code sent to {email}")


@router.post(
    "/tokens/revocation-status",
    response_model=RevocationStatusResponse,
    dependencies=[Depends(require_admin_key)],
)
async def revocation_status(
    payload: RevocationStatusRequest,
    tokens: TokenService = Depends(get_token_service),
):
    return RevocationStatusResponse(revoked=await tokens.batch_verify_revocation(payload.tokens))
