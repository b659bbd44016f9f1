"""
Request ID 中间件

HTTP 请求透传或生成 X-Request-ID，写入 request.state 并绑定到日志上下文；
异常处理器从 request.state 读取它填入错误响应。WebSocket 连接不经过这里，
其日志上下文由 connection_id 标识。
"""
import uuid

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from core.logging_config import bind_request_context


HEADER_NAME = "X-Request-ID"


def resolve_client_ip(request: Request) -> str:
    """代理头优先（X-Forwarded-For 取第一个地址），否则使用对端地址。"""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("X-Real-IP") or (request.client.host if request.client else "unknown")


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(HEADER_NAME) or str(uuid.uuid4())
        request.state.request_id = request_id
        bind_request_context(
            request_id,
            client_ip=resolve_client_ip(request),
            method=request.method,
            path=request.url.path,
        )
        response = await call_next(request)
        response.headers[HEADER_NAME] = request_id
        return response
