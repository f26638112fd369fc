import pytest
from jose import jwt

from server_api.core.security import (
    RevocationStoreUnavailableError,
    TokenExpiredError,
    TokenMalformedError,
    TokenRevokedError,
    TokenService,
    TokenSignatureError,
    hash_token,
    revocation_key,
    verify_password,
)

from conftest import PASSWORD, PASSWORD_HASH, SECRET


async def test_issued_token_verifies(tokens, clock):
    token = tokens.issue(7, "alice")

    claims = await tokens.verify(token)

    assert claims.user_id == 7
    assert claims.username == "alice"
    assert claims.exp == int(clock.now) + 30 * 24 * 60 * 60


async def test_revoked_token_fails_and_marker_never_outlives_token(tokens, fake_redis, clock):
    token = tokens.issue(7, "alice")
    clock.now += 3600
    remaining = tokens.remaining_lifetime(token)

    await tokens.revoke(token)

    with pytest.raises(TokenRevokedError):
        await tokens.verify(token)
    key = revocation_key(token)
    assert fake_redis.expirations[key] <= remaining
    assert fake_redis.expirations[key] > 0


async def test_revocation_key_does_not_contain_raw_token(tokens, fake_redis):
    token = tokens.issue(1, "bob")

    await tokens.revoke(token)

    (key,) = fake_redis.data.keys()
    assert token not in key
    assert key.endswith(hash_token(token))


async def test_expired_token_is_rejected_and_not_stored(tokens, fake_redis, clock):
    token = tokens.issue(7, "alice")
    clock.now += 31 * 24 * 60 * 60

    with pytest.raises(TokenExpiredError):
        await tokens.verify(token)
    await tokens.revoke(token)

    assert fake_redis.data == {}


async def test_undecodable_token_revocation_uses_default_ttl(cache, fake_redis, clock):
    service = TokenService(cache, secret_key=SECRET, default_revocation_ttl=123, clock=clock)

    await service.revoke("not-a-jwt")

    assert fake_redis.expirations[revocation_key("not-a-jwt")] == 123


async def test_forged_and_malformed_tokens(tokens, clock):
    forged = jwt.encode({"sub": "alice", "id": 7, "exp": int(clock.now) + 60}, "other", algorithm="HS256")

    with pytest.raises(TokenSignatureError):
        await tokens.verify(forged)
    with pytest.raises(TokenMalformedError):
        await tokens.verify("garbage")


async def test_token_with_wrong_claim_types_is_malformed(tokens, clock):
    token = jwt.encode({"sub": "alice", "id": "7", "exp": int(clock.now) + 60}, SECRET, algorithm="HS256")

    with pytest.raises(TokenMalformedError):
        await tokens.verify(token)


async def test_signed_token_with_non_string_subject_is_malformed(tokens, clock):
    token = jwt.encode({"sub": 123, "id": 7, "exp": int(clock.now) + 60}, SECRET, algorithm="HS256")

    with pytest.raises(TokenMalformedError):
        await tokens.verify(token)


async def test_store_outage_fails_closed_by_default(tokens, fake_redis):
    token = tokens.issue(7, "alice")
    fake_redis.down = True

    with pytest.raises(RevocationStoreUnavailableError) as excinfo:
        await tokens.verify(token)
    assert excinfo.value.status_code == 503


async def test_store_outage_can_fail_open(cache, fake_redis, clock):
    service = TokenService(cache, secret_key=SECRET, fail_open=True, clock=clock)
    token = service.issue(7, "alice")
    fake_redis.down = True

    claims = await service.verify(token)

    assert claims.user_id == 7


async def test_revoke_during_outage_raises(tokens, fake_redis):
    token = tokens.issue(7, "alice")
    fake_redis.down = True

    with pytest.raises(RevocationStoreUnavailableError):
        await tokens.revoke(token)


async def test_batch_verify_preserves_order(tokens):
    first = tokens.issue(1, "a")
    second = tokens.issue(2, "b")
    third = tokens.issue(3, "c")
    await tokens.revoke(second)

    assert await tokens.batch_verify_revocation([first, second, third]) == [False, True, False]
    assert await tokens.batch_verify_revocation([]) == []


def test_password_hashing():
    assert verify_password(PASSWORD, PASSWORD_HASH)
    assert not verify_password("wrong", PASSWORD_HASH)
    assert not verify_password(PASSWORD, "not-a-bcrypt-hash")
