"""
应用配置模块

使用 Pydantic Settings 管理所有环境变量和配置。
配置从项目根目录的 .env 文件读取，支持类型验证和默认值。

配置分组：
- 数据库（PostgreSQL，测试/本地可用 DATABASE_URL 覆盖）
- Stripe 支付网关（webhook 签名密钥、API 密钥）
- 跨应用共享密钥（产品上报 / 同步推送都使用 X-Admin-Api-Key）
- 同步推送超时、领取令牌有效期
- SMTP 邮件、Redis 分布式锁
"""
import secrets  # 用于生成安全的随机字符串
import warnings  # 用于发出警告
from typing import Annotated, Any, Literal

from pydantic import (
    AnyUrl,
    BeforeValidator,
    HttpUrl,
    PostgresDsn,
    computed_field,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing_extensions import Self


def parse_list(v: Any) -> list[str] | str:
    """
    解析逗号分隔的列表配置

    支持两种格式：
    1. 逗号分隔的字符串："a@example.com,b@example.com"
    2. JSON 列表格式：["a@example.com", "b@example.com"]
    """
    if isinstance(v, str) and not v.startswith("["):
        return [i.strip() for i in v.split(",") if i.strip()]
    elif isinstance(v, list | str):
        return v
    raise ValueError(v)


class Settings(BaseSettings):
    """
    应用配置类

    配置来源优先级：
    1. 环境变量（最高优先级）
    2. .env 文件
    3. 代码中的默认值（最低优先级）
    """
    model_config = SettingsConfigDict(
        env_file="../.env",
        env_ignore_empty=True,
        extra="ignore",
    )
    API_V1_STR: str = "/api/v1"
    SECRET_KEY: str = secrets.token_urlsafe(32)  # 管理端 JWT 签名密钥
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"

    BACKEND_CORS_ORIGINS: Annotated[
        list[AnyUrl] | str, BeforeValidator(parse_list)
    ] = []

    @computed_field  # type: ignore[prop-decorator]
    @property
    def all_cors_origins(self) -> list[str]:
        return [str(origin).rstrip("/") for origin in self.BACKEND_CORS_ORIGINS]

    PROJECT_NAME: str = "Central Dashboard"
    SENTRY_DSN: HttpUrl | None = None

    # 管理员邮箱白名单（JWT sub 必须在列表中）
    ADMIN_EMAILS: Annotated[list[str] | str, BeforeValidator(parse_list)] = []

    # Snowflake
    SNOWFLAKE_NODE_ID: int = 0

    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = ""
    # 直接指定数据库连接串（如 sqlite 本地调试），优先于 POSTGRES_* 配置
    DATABASE_URL: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return str(
            PostgresDsn.build(
                scheme="postgresql+psycopg",
                username=self.POSTGRES_USER,
                password=self.POSTGRES_PASSWORD,
                host=self.POSTGRES_SERVER,
                port=self.POSTGRES_PORT,
                path=self.POSTGRES_DB,
            )
        )

    # Stripe 支付网关
    STRIPE_SECRET_KEY: str | None = None  # API 密钥（查询订单明细、创建结账会话）
    STRIPE_WEBHOOK_SECRET: str | None = None  # Webhook 签名密钥
    STRIPE_SIGNATURE_TOLERANCE_SECONDS: int = 300  # 签名时间戳允许的偏差
    CHECKOUT_SUCCESS_URL: str = "http://localhost:3000/checkout/success"
    CHECKOUT_CANCEL_URL: str = "http://localhost:3000/checkout/cancelled"

    # 各产品与中心之间的共享密钥（上报接口校验、同步推送携带）
    CENTRAL_API_KEY: str | None = None
    SYNC_TIMEOUT_SECONDS: float = 10.0  # 单个产品同步推送超时（秒）

    # 领取令牌
    CLAIM_TOKEN_TTL_DAYS: int = 30
    CLAIM_PORTAL_URL: str = "http://localhost:3000/claim"

    # SMTP 邮件服务器配置（购买确认、领取链接邮件）
    SMTP_TLS: bool = True
    SMTP_SSL: bool = False
    SMTP_PORT: int = 587
    SMTP_HOST: str | None = None
    SMTP_USER: str | None = None
    SMTP_PASSWORD: str | None = None
    EMAILS_FROM_EMAIL: str = "noreply@example.com"
    EMAILS_FROM_NAME: str = "Central Dashboard"

    # Redis（定时任务分布式锁）
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str | None = None

    # 表单转发重试任务
    FORWARD_RETRY_INTERVAL_MINUTES: int = 15
    FORWARD_TIMEOUT_SECONDS: float = 30.0

    # 初始产品/套餐数据（JSON 文件路径）
    SEED_CATALOG_PATH: str | None = None

    def _check_default_secret(self, var_name: str, value: str | None) -> None:
        """
        检查敏感配置是否使用了默认值 "changethis"

        本地环境只警告，其他环境直接报错。
        """
        if value == "changethis":
            message = (
                f'The value of {var_name} is "changethis", '
                "for security, please change it, at least for deployments."
            )
            if self.ENVIRONMENT == "local":
                warnings.warn(message, stacklevel=1)
            else:
                raise ValueError(message)

    @model_validator(mode="after")
    def _enforce_non_default_secrets(self) -> Self:
        self._check_default_secret("SECRET_KEY", self.SECRET_KEY)
        self._check_default_secret("POSTGRES_PASSWORD", self.POSTGRES_PASSWORD)
        self._check_default_secret("CENTRAL_API_KEY", self.CENTRAL_API_KEY)
        self._check_default_secret("STRIPE_WEBHOOK_SECRET", self.STRIPE_WEBHOOK_SECRET)

        return self


# 创建全局配置实例，整个应用共享
settings = Settings()  # type: ignore
