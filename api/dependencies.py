"""
API依赖项 - 认证与服务注入
"""
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional

from application.services.realtime_service import RealtimeService
from application.services.token_service import TokenService

# HTTP Bearer for direct API calls
http_bearer = HTTPBearer(
    scheme_name="Bearer",
    description="JWT Bearer token authentication",
    auto_error=False,
)


async def get_token(
    bearer_token: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer),
) -> str:
    """从Bearer token中提取token"""
    if bearer_token and bearer_token.credentials:
        return bearer_token.credentials

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="未提供认证凭据",
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_token_service(request: Request) -> TokenService:
    svc = getattr(request.app.state, "token_service", None)
    if svc is None:
        svc = TokenService()
    return svc


def get_realtime_service(request: Request) -> RealtimeService:
    svc = getattr(request.app.state, "realtime_service", None)
    if svc is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Realtime service not initialized",
        )
    return svc


async def get_current_user_id(
    token: str = Depends(get_token),
    tokens: TokenService = Depends(get_token_service),
) -> int:
    """获取当前登录用户ID；凭据错误抛出 RealtimeAuthException（401）"""
    return await tokens.verify(token)
