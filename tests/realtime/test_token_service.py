from datetime import datetime, timedelta, timezone

import jwt
import pytest

from application.services.token_service import TokenService
from domain.realtime.exceptions import AuthErrorKind, RealtimeAuthException


async def _kind(service: TokenService, credential: str) -> AuthErrorKind:
    with pytest.raises(RealtimeAuthException) as exc_info:
        await service.verify(credential)
    return exc_info.value.kind


@pytest.mark.asyncio
async def test_round_trip_and_bearer_prefix(token_service):
    token = token_service.create_access_token(42)
    assert await token_service.verify(token) == 42
    assert await token_service.verify(f"Bearer {token}") == 42


@pytest.mark.asyncio
async def test_expired_token(token_service):
    token = token_service.create_access_token(1, expires_delta=timedelta(seconds=-5))
    assert await _kind(token_service, token) is AuthErrorKind.EXPIRED


@pytest.mark.asyncio
@pytest.mark.parametrize("credential", ["", "abc", "a.b", "a..c", "a.b.c"])
async def test_malformed_tokens(token_service, credential):
    assert await _kind(token_service, credential) is AuthErrorKind.MALFORMED


@pytest.mark.asyncio
async def test_wrong_signature_is_invalid(token_service):
    other = TokenService(secret_key="someone-else-secret-key-0123456789abcdef", algorithm="HS256")
    assert await _kind(token_service, other.create_access_token(1)) is AuthErrorKind.INVALID


@pytest.mark.asyncio
async def test_wrong_type_or_subject_is_invalid(token_service):
    exp = datetime.now(timezone.utc) + timedelta(minutes=5)
    refresh = jwt.encode({"sub": "1", "exp": exp, "type": "refresh"}, "unit-test-secret-key-0123456789abcdef", algorithm="HS256")
    bad_sub = jwt.encode({"sub": "alice", "exp": exp, "type": "access"}, "unit-test-secret-key-0123456789abcdef", algorithm="HS256")
    assert await _kind(token_service, refresh) is AuthErrorKind.INVALID
    assert await _kind(token_service, bad_sub) is AuthErrorKind.INVALID


@pytest.mark.asyncio
async def test_unknown_user_looks_like_a_bad_token():
    async def user_exists(user_id: int) -> bool:
        return user_id == 1

    service = TokenService(secret_key="unit-test-secret-key-0123456789abcdef", algorithm="HS256", user_exists=user_exists)
    assert await service.verify(service.create_access_token(1)) == 1
    with pytest.raises(RealtimeAuthException) as exc_info:
        await service.verify(service.create_access_token(2))
    assert exc_info.value.kind is AuthErrorKind.INVALID
    assert exc_info.value.message == "Authentication failed: invalid"
