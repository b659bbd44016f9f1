"""
FastAPI应用主入口
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import realtime as realtime_routes
from api.routes import ws as ws_routes
from api.middleware import RequestIDMiddleware, LoggingMiddleware
from application.ports.realtime import RealtimeBrokerPort
from application.services.channel_authorization import ChannelAuthorizationService
from application.services.event_publisher import RealtimeEventPublisher
from application.services.realtime_service import RealtimeService
from application.services.token_service import TokenService
from core.config import Settings, settings
from core.exceptions import register_exception_handlers
from core.response import success_response
from core.logging_config import get_logger, configure_logging
from domain.realtime.participants import ConversationParticipants
from infrastructure.realtime.brokers import InMemoryRealtimeBroker, RedisRealtimeBroker
from infrastructure.realtime.delivery import DeliveryTracker
from infrastructure.realtime.dispatcher import EventDispatcher
from infrastructure.realtime.participants import InMemoryConversationParticipants
from infrastructure.realtime.rate_limit import ConnectionRateLimiter
from infrastructure.realtime.registry import ConnectionRegistry
from infrastructure.realtime.router import ChannelRouter


# 初始化日志：在入口处显式配置，避免模块导入时的副作用
configure_logging()
logger = get_logger(__name__)


def select_broker(cfg: Settings) -> RealtimeBrokerPort:
    """根据 REALTIME_BROKER 选择 Broker，默认 auto -> redis(if url) else inmemory"""
    provider = (cfg.REALTIME_BROKER or "auto").lower()
    if provider in ("redis", "auto"):
        if cfg.redis.url:
            logger.info("realtime_broker_selected", provider="redis")
            return RedisRealtimeBroker(cfg.redis.url, namespace=cfg.redis.namespace)
        if provider == "redis":
            logger.warning("realtime_broker_redis_missing_url", message="REDIS__URL not set, falling back to in-memory broker")
    elif provider != "inmemory":
        logger.warning("realtime_broker_unknown", provider=provider)
    logger.info("realtime_broker_selected", provider="inmemory")
    return InMemoryRealtimeBroker()


def build_realtime_service(
    cfg: Settings,
    *,
    token_service: TokenService,
    participants: ConversationParticipants,
    broker: Optional[RealtimeBrokerPort] = None,
) -> RealtimeService:
    authorizer = ChannelAuthorizationService(participants)
    registry = ConnectionRegistry(
        token_service,
        send_queue_max=cfg.REALTIME_WS_SEND_QUEUE_MAX,
        overflow_policy=cfg.REALTIME_WS_SEND_OVERFLOW_POLICY,
    )
    tracker = DeliveryTracker(retention_seconds=cfg.REALTIME_DELIVERY_RETENTION_S)
    return RealtimeService(
        registry=registry,
        router=ChannelRouter(registry, authorizer),
        dispatcher=EventDispatcher(registry, tracker),
        tracker=tracker,
        broker=broker if broker is not None else select_broker(cfg),
        authorizer=authorizer,
        rate_limiter=ConnectionRateLimiter(
            limit=cfg.REALTIME_CONNECT_RATE_LIMIT,
            window_seconds=cfg.REALTIME_CONNECT_RATE_WINDOW_S,
        ),
        catch_up_limit=cfg.REALTIME_CATCH_UP_LIMIT,
        stale_after_s=cfg.REALTIME_STALE_CONNECTION_S,
        sweep_interval_s=cfg.REALTIME_SWEEP_INTERVAL_S,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    token_service = TokenService()
    # 会话成员由消息模块维护；这里默认内存实现，可在启动前替换 app.state.conversation_participants
    participants = getattr(app.state, "conversation_participants", None) or InMemoryConversationParticipants()
    realtime = build_realtime_service(settings, token_service=token_service, participants=participants)
    await realtime.start()
    app.state.token_service = token_service
    app.state.conversation_participants = participants
    app.state.realtime_service = realtime
    app.state.event_publisher = RealtimeEventPublisher(realtime)
    logger.info("realtime_initialized")

    yield

    try:
        await realtime.stop()
    except Exception as exc:
        logger.error("realtime_shutdown_failed", error=str(exc))
    logger.info("application_shutdown", message="Application shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="实时事件投递网关（WebSocket）",
)

# 添加中间件（注意顺序：从下往上执行）
# 1. Request ID中间件（最先执行，为后续中间件提供request_id）
app.add_middleware(RequestIDMiddleware)

# 2. 日志中间件（依赖request_id）
app.add_middleware(LoggingMiddleware)

# 3. CORS中间件
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册全局异常处理器
register_exception_handlers(app)


# 注册路由
app.include_router(realtime_routes.router, prefix="/api/v1")
app.include_router(ws_routes.router, prefix="/api/v1")


# 根路径
@app.get("/", tags=["Root"])
async def root():
    """API根路径"""
    return success_response(
        data={
            "name": settings.PROJECT_NAME,
            "version": settings.VERSION,
            "docs": "/docs",
            "websocket": "/api/v1/ws",
        },
        message="Welcome",
    )


# 健康检查
@app.get("/health", tags=["Health"])
async def health_check():
    """健康检查端点"""
    realtime = getattr(app.state, "realtime_service", None)
    connections = len(realtime.registry) if realtime is not None else 0
    return success_response(data={"status": "healthy", "connections": connections}, message="OK")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info"
    )
