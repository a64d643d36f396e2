"""
应用配置模块

使用 Pydantic Settings 管理所有环境变量和配置。
配置从项目根目录的 .env 文件读取，支持类型验证和默认值。

配置分组：
- 通用配置（项目名、JWT、环境、Sentry、CORS）
- 数据库 / Redis
- 支付通道：卡支付网关（Stripe）、移动端应用内购买（App Store）
- 外部调用的超时与重试
- 宽限期、逾期确认、收据重试、定时任务
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
    1. 逗号分隔的字符串："a,b,c"
    2. 列表格式：["a", "b", "c"]

    Raises:
        ValueError: 当输入格式不正确时
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
        env_file=".env",
        env_ignore_empty=True,  # 忽略空的环境变量
        extra="ignore",  # 忽略未定义的额外字段
    )
    API_V1_STR: str = "/api/v1"
    SECRET_KEY: str = secrets.token_urlsafe(32)  # JWT 签名密钥（默认随机生成）
    ACCESS_TOKEN_EXPIRE_DAYS: int = 7
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"

    BACKEND_CORS_ORIGINS: Annotated[
        list[AnyUrl] | str, BeforeValidator(parse_list)
    ] = []

    @computed_field  # type: ignore[prop-decorator]
    @property
    def all_cors_origins(self) -> list[str]:
        """CORS 允许的源（去除尾部斜杠）"""
        return [str(origin).rstrip("/") for origin in self.BACKEND_CORS_ORIGINS]

    PROJECT_NAME: str = "renvo-billing"
    SENTRY_DSN: HttpUrl | None = None

    POSTGRES_SERVER: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = ""

    @computed_field  # type: ignore[prop-decorator]
    @property
    def SQLALCHEMY_DATABASE_URI(self) -> PostgresDsn:
        return PostgresDsn.build(
            scheme="postgresql+psycopg",
            username=self.POSTGRES_USER,
            password=self.POSTGRES_PASSWORD,
            host=self.POSTGRES_SERVER,
            port=self.POSTGRES_PORT,
            path=self.POSTGRES_DB,
        )

    # Redis（定时任务分布式锁）
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: str | None = None

    # 卡支付网关（Stripe）
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300  # 签名时间戳允许的偏差（秒）

    # 移动端应用内购买（App Store）
    APPLE_BUNDLE_ID: str = "com.ronnie39.renvo"
    APPLE_SHARED_SECRET: str | None = None  # verifyReceipt 共享密钥
    APPLE_VERIFY_RECEIPT_URL: str = "https://buy.itunes.apple.com/verifyReceipt"
    APPLE_VERIFY_RECEIPT_SANDBOX_URL: str = "https://sandbox.itunes.apple.com/verifyReceipt"
    # 受信任根证书的 SHA-256 指纹（十六进制），用于校验通知 JWS 的 x5c 证书链
    APPLE_ROOT_CERT_FINGERPRINTS: Annotated[
        list[str] | str, BeforeValidator(parse_list)
    ] = []
    APPLE_ISSUER_ID: str | None = None  # App Store Server API 签发者
    APPLE_KEY_ID: str | None = None
    APPLE_PRIVATE_KEY: str | None = None  # PEM 格式的 ES256 私钥
    APPLE_SERVER_API_URL: str = "https://api.storekit.itunes.apple.com"
    APPLE_SERVER_API_SANDBOX_URL: str = "https://api.storekit-sandbox.itunes.apple.com"

    # 外部调用（收据校验 / 对账）
    PROVIDER_TIMEOUT_SECONDS: float = 10.0
    PROVIDER_MAX_ATTEMPTS: int = 4  # 包含第一次调用，即瞬时故障最多重试 3 次
    PROVIDER_BACKOFF_SECONDS: float = 0.5  # 指数退避的初始间隔
    PROVIDER_BACKOFF_MAX_SECONDS: float = 8.0

    # Webhook 处理中事件的租约时间，超过后允许下一次投递接管
    EVENT_PROCESSING_LEASE_SECONDS: int = 300

    # 宽限期
    PAYMENT_GRACE_PERIOD_DAYS: int = 7  # 扣款失败后的宽限期
    ACCOUNT_DELETION_GRACE_DAYS: int = 30  # 注销账号的恢复期
    GRACE_ENDING_SOON_DAYS: int = 3  # 宽限期即将结束的提醒窗口

    # 逾期确认弹窗之间的固定间隔（毫秒）
    PAST_DUE_PROMPT_DELAY_MS: int = 400

    # 校验失败（可重试）的收据
    RECEIPT_RETRY_MAX_ATTEMPTS: int = 5
    RECEIPT_RETRY_BASE_SECONDS: int = 60

    # 定时任务
    JOBS_SECRET: str | None = None  # 外部调度器调用任务接口时携带的 Bearer token
    RECONCILIATION_INTERVAL_MINUTES: int = 60
    GRACE_SWEEP_HOUR_UTC: int = 3

    def _check_default_secret(self, var_name: str, value: str | None) -> None:
        """
        检查敏感配置是否使用了默认值

        本地环境只发出警告，其他环境直接报错。

        Raises:
            ValueError: 在非本地环境使用默认值时
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
        self._check_default_secret("STRIPE_WEBHOOK_SECRET", self.STRIPE_WEBHOOK_SECRET)
        self._check_default_secret("JOBS_SECRET", self.JOBS_SECRET)

        return self


# 创建全局配置实例，整个应用共享
settings = Settings()  # type: ignore
