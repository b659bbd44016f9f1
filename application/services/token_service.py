"""
令牌服务 - 签发与校验访问令牌（JWT）

Token issuance itself belongs to the auth subsystem; this service only
mints access tokens for local tooling/tests and classifies validation
failures so that realtime clients know whether a retry can help.
"""
from typing import Awaitable, Callable, Optional
from datetime import datetime, timedelta, timezone
import jwt
import uuid

from core.config import settings
from core.logging_config import get_logger
from domain.realtime.exceptions import AuthErrorKind, RealtimeAuthException


logger = get_logger(__name__)

UserExists = Callable[[int], Awaitable[bool]]


class TokenService:
    """
    令牌服务

    校验失败分为三类：
    1. malformed - 不是三段式 JWT 或无法解码（不要重试）
    2. invalid   - 签名错误、类型错误、用户不存在（不要重试）
    3. expired   - 过期（刷新凭据后可重试）
    """

    def __init__(
        self,
        *,
        secret_key: Optional[str] = None,
        algorithm: Optional[str] = None,
        user_exists: Optional[UserExists] = None,
    ):
        self._secret = secret_key or settings.SECRET_KEY
        self._algorithm = algorithm or settings.ALGORITHM
        self._user_exists = user_exists

    def create_access_token(self, user_id: int, *, expires_delta: Optional[timedelta] = None) -> str:
        """创建访问令牌"""
        expire = datetime.now(timezone.utc) + (
            expires_delta if expires_delta is not None
            else timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
        )
        to_encode = {
            "sub": str(user_id),
            "exp": expire,
            "type": "access",
            "jti": str(uuid.uuid4()),
        }
        return jwt.encode(to_encode, self._secret, algorithm=self._algorithm)

    async def verify(self, credential: str) -> int:
        """Verify an access JWT and return the user id.

        Raises RealtimeAuthException with kind expired / malformed / invalid.
        """
        token = (credential or "").strip()
        if token.lower().startswith("bearer "):
            token = token[7:].strip()
        if token.count(".") != 2 or not all(token.split(".")):
            raise RealtimeAuthException(AuthErrorKind.MALFORMED)

        try:
            payload = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError:
            raise RealtimeAuthException(AuthErrorKind.EXPIRED)
        except jwt.InvalidSignatureError:
            raise RealtimeAuthException(AuthErrorKind.INVALID)
        except jwt.DecodeError:
            raise RealtimeAuthException(AuthErrorKind.MALFORMED)
        except jwt.InvalidTokenError as e:
            logger.warning("invalid_access_token", error=str(e))
            raise RealtimeAuthException(AuthErrorKind.INVALID)

        if payload.get("type") != "access":
            raise RealtimeAuthException(AuthErrorKind.INVALID)
        sub = payload.get("sub")
        try:
            user_id = int(sub)
        except (TypeError, ValueError):
            raise RealtimeAuthException(AuthErrorKind.INVALID)

        # 用户不存在与签名错误对外表现一致，避免枚举
        if self._user_exists is not None and not await self._user_exists(user_id):
            logger.info("access_token_user_missing", user_id=user_id)
            raise RealtimeAuthException(AuthErrorKind.INVALID)
        return user_id
