"""Runtime settings."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


ZERO_WALLET_ADDRESS = "0x0000000000000000000000000000000000000000"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", protected_namespaces=())

    app_name: str = "SessionGate"
    log_level: str = "info"
    # DEBUG 下是否打印完整请求正文；False 时只打 method/path/headers + body_size
    log_full_request_body: bool = False
    # 轮转日志文件路径；置空则只输出到 stderr
    log_file: str = "logs/sessiongate.log"
    host: str = "0.0.0.0"
    port: int = 8080

    model_id: str = ""
    wallet_address: str = ""
    # 聊天补全地址，形如 http://marketplace:9000/v1/chat/completions
    marketplace_url: str = ""
    # 会话与健康检查所在的 marketplace API 根地址
    marketplace_api_url: str = "http://marketplace:9000"

    session_ttl_seconds: float = Field(default=1800.0, gt=0)
    session_duration_seconds: int = 3600
    session_failover: bool = False
    session_id_header: str = "Session_id"

    upstream_timeout_seconds: float = 30.0
    check_timeout_seconds: float = 5.0
    upstream_max_connections: int = 100
    upstream_max_keepalive_connections: int = 20
    # 部署在会整体缓冲响应的前置层之后时关闭，流式请求直接返回 500
    streaming_enabled: bool = True


settings = Settings()
