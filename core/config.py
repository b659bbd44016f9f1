"""
配置文件 - 项目配置管理
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field, field_validator
from typing import Optional
from pydantic import model_validator


class RedisSettings(BaseModel):
    url: Optional[str] = None
    namespace: str = "pulse"


class Settings(BaseSettings):
    """项目配置"""

    # 基础配置
    PROJECT_NAME: str = Field(default="Pulse Realtime Gateway", env=["PROJECT_NAME", "APP_NAME"])
    VERSION: str = Field(default="1.0.0", env=["VERSION", "APP_VERSION"])
    DEBUG: bool = Field(default=True, env="DEBUG")
    ENVIRONMENT: str = Field(default="development", env="ENVIRONMENT")

    redis: RedisSettings = Field(default_factory=RedisSettings)

    # 安全配置
    SECRET_KEY: Optional[str] = Field(
        default=None,
        env=["SECRET_KEY", "JWT_SECRET_KEY"],
        description="JWT签名密钥，生产环境必须设置"
    )
    ALGORITHM: str = Field(default="HS256", env=["ALGORITHM", "JWT_ALGORITHM"])
    ACCESS_TOKEN_EXPIRE_MINUTES: int = Field(default=30, env=["ACCESS_TOKEN_EXPIRE_MINUTES", "JWT_EXPIRATION_MINUTES"])

    # CORS配置
    CORS_ORIGINS: list = Field(
        default=["http://localhost:3000", "http://localhost:8000"],
        env="CORS_ORIGINS"
    )

    # Realtime/WebSocket 配置
    REALTIME_BROKER: str = Field(default="auto", env="REALTIME_BROKER", description="auto | inmemory | redis")
    REALTIME_WS_SEND_QUEUE_MAX: int = Field(default=100, env="REALTIME_WS_SEND_QUEUE_MAX")
    REALTIME_WS_SEND_OVERFLOW_POLICY: str = Field(
        default="drop_oldest", env="REALTIME_WS_SEND_OVERFLOW_POLICY",
        description="队列溢出策略: drop_oldest | drop_new | disconnect"
    )
    REALTIME_WS_IDLE_PING_INTERVAL_S: float = Field(default=25.0, env="REALTIME_WS_IDLE_PING_INTERVAL_S")
    REALTIME_WS_PONG_GRACE_S: float = Field(default=10.0, env="REALTIME_WS_PONG_GRACE_S")
    REALTIME_WS_MISSED_PING_LIMIT: int = Field(default=2, env="REALTIME_WS_MISSED_PING_LIMIT")
    REALTIME_WS_AUTH_TIMEOUT_S: float = Field(default=10.0, env="REALTIME_WS_AUTH_TIMEOUT_S")

    # 投递记录保留时长（秒），与 24 小时过期内容保持一致
    REALTIME_DELIVERY_RETENTION_S: float = Field(default=86400.0, env="REALTIME_DELIVERY_RETENTION_S")
    REALTIME_SWEEP_INTERVAL_S: float = Field(default=60.0, env="REALTIME_SWEEP_INTERVAL_S")
    REALTIME_STALE_CONNECTION_S: float = Field(default=900.0, env="REALTIME_STALE_CONNECTION_S")
    REALTIME_CATCH_UP_LIMIT: int = Field(default=500, env="REALTIME_CATCH_UP_LIMIT")

    # 每个用户在窗口期内允许的连接次数
    REALTIME_CONNECT_RATE_LIMIT: int = Field(default=20, env="REALTIME_CONNECT_RATE_LIMIT")
    REALTIME_CONNECT_RATE_WINDOW_S: float = Field(default=60.0, env="REALTIME_CONNECT_RATE_WINDOW_S")

    # pydantic-settings v2 configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )

    @model_validator(mode="after")
    def _validate_secret_key(self):
        # 所有环境均要求显式配置 SECRET_KEY（或 JWT_SECRET_KEY），避免热重载导致 Token 失效
        if not self.SECRET_KEY:
            raise ValueError(
                "SECRET_KEY 未配置。请在环境变量或 .env 中设置 SECRET_KEY（或 JWT_SECRET_KEY）"
            )
        return self

    @field_validator("REALTIME_WS_SEND_OVERFLOW_POLICY")
    @classmethod
    def _normalize_overflow_policy(cls, v: str) -> str:
        return (v or "drop_oldest").strip().lower()

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def _parse_cors_origins(cls, v):
        """允许 JSON 字符串或逗号分隔字符串两种格式。"""
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            s = v.strip()
            if s.startswith("[") and s.endswith("]"):
                import json
                try:
                    arr = json.loads(s)
                    if isinstance(arr, list):
                        return arr
                except ValueError:
                    pass
            if "," in s:
                return [item.strip() for item in s.split(",") if item.strip()]
            return [s]
        return v


settings = Settings()
