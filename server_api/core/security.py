from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable

from jose import JWTError, jwt
from jose.exceptions import JWTClaimsError
from passlib.context import CryptContext

from .cache import CacheClient, CacheUnavailableError
from .config import (
    ACCESS_TOKEN_EXPIRE_DAYS,
    ALGORITHM,
    SECRET_KEY,
    TOKEN_REVOCATION_DEFAULT_TTL_SECONDS,
    TOKEN_REVOCATION_FAIL_OPEN,
)
from .errors import AuthenticationError

logger = logging.getLogger(__name__)

REVOKED_KEY_PREFIX = "token:revoked:"

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        # Unknown or corrupt hash format in the users table.
        return False


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


class TokenError(AuthenticationError):
    reason = "invalid"


class TokenMalformedError(TokenError):
    reason = "malformed"


class TokenSignatureError(TokenError):
    reason = "bad_signature"


class TokenExpiredError(TokenError):
    reason = "expired"


class TokenRevokedError(TokenError):
    reason = "revoked"


class RevocationStoreUnavailableError(CacheUnavailableError):
    reason = "store_unavailable"
    public_message = "Session service unavailable"


@dataclass(frozen=True)
class Claims:
    sub: str
    id: int
    exp: int

    @property
    def username(self) -> str:
        return self.sub

    @property
    def user_id(self) -> int:
        return self.id

    def to_payload(self) -> dict:
        return {"sub": self.sub, "id": self.id, "exp": self.exp}


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def revocation_key(token: str) -> str:
    return f"{REVOKED_KEY_PREFIX}{hash_token(token)}"


def _claims_from_payload(payload: dict) -> Claims:
    sub = payload.get("sub")
    user_id = payload.get("id")
    exp = payload.get("exp")
    if not isinstance(sub, str) or isinstance(user_id, bool) or not isinstance(user_id, int):
        raise TokenMalformedError("Invalid token")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        raise TokenMalformedError("Invalid token")
    return Claims(sub=sub, id=user_id, exp=int(exp))


class TokenService:
    """Issues signed session tokens and tracks their revocation in Redis.

    Revocation markers are keyed by the SHA-256 of the token so raw bearer
    tokens never land in the store, and each marker expires together with
    the token it blocks.
    """

    def __init__(
        self,
        cache: CacheClient,
        secret_key: str = SECRET_KEY,
        algorithm: str = ALGORITHM,
        expire_days: int = ACCESS_TOKEN_EXPIRE_DAYS,
        default_revocation_ttl: int = TOKEN_REVOCATION_DEFAULT_TTL_SECONDS,
        fail_open: bool = TOKEN_REVOCATION_FAIL_OPEN,
        clock: Callable[[], float] = time.time,
    ):
        self.cache = cache
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.expire_seconds = expire_days * 24 * 60 * 60
        self.default_revocation_ttl = default_revocation_ttl
        self.fail_open = fail_open
        self._clock = clock

    def issue(self, user_id: int, username: str) -> str:
        claims = Claims(
            sub=username,
            id=int(user_id),
            exp=int(self._clock()) + self.expire_seconds,
        )
        return jwt.encode(claims.to_payload(), self.secret_key, algorithm=self.algorithm)

    def decode(self, token: str) -> Claims:
        """Signature and expiry checks only; no revocation lookup."""
        try:
            jwt.get_unverified_header(token)
            jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise TokenMalformedError("Invalid token") from exc
        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                options={"verify_exp": False},
            )
        except JWTClaimsError as exc:
            raise TokenMalformedError("Invalid token") from exc
        except JWTError as exc:
            raise TokenSignatureError("Invalid token signature") from exc

        claims = _claims_from_payload(payload)
        if claims.exp <= self._clock():
            raise TokenExpiredError("Token has expired")
        return claims

    async def verify(self, token: str) -> Claims:
        claims = self.decode(token)
        try:
            revoked = await self.cache.exists(revocation_key(token))
        except CacheUnavailableError as exc:
            if self.fail_open:
                logger.warning(
                    "Revocation store unavailable; accepting token for user %s (fail-open)",
                    claims.id,
                )
                return claims
            raise RevocationStoreUnavailableError(str(exc)) from exc
        if revoked:
            raise TokenRevokedError("Token has been revoked")
        return claims

    def remaining_lifetime(self, token: str) -> int | None:
        try:
            payload = jwt.get_unverified_claims(token)
        except JWTError:
            return None
        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return None
        return int(exp - self._clock())

    async def revoke(self, token: str) -> None:
        ttl = self.remaining_lifetime(token)
        if ttl is None:
            ttl = self.default_revocation_ttl
        elif ttl <= 0:
            logger.info("Skipping revocation of an already expired token")
            return
        try:
            await self.cache.set(revocation_key(token), "1", ttl=ttl)
        except CacheUnavailableError as exc:
            raise RevocationStoreUnavailableError(str(exc)) from exc
        logger.info("Token added to revocation list with TTL %s seconds", ttl)

    async def batch_verify_revocation(self, tokens: Iterable[str]) -> list[bool]:
        """Return ``True`` for each token that is revoked, in input order."""
        keys = [revocation_key(token) for token in tokens]
        try:
            return await self.cache.exists_many(keys)
        except CacheUnavailableError as exc:
            raise RevocationStoreUnavailableError(str(exc)) from exc
