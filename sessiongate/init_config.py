"""
启动前校验必需的环境配置：MODEL_ID 与 WALLET_ADDRESS 缺失或非法时拒绝启动。
可在应用 startup 时调用，也可单独执行：python -m sessiongate.init_config
"""

from __future__ import annotations

import sys

from sessiongate.config.settings import ZERO_WALLET_ADDRESS, settings
from sessiongate.core.errors import ConfigurationError
from sessiongate.util.logger import logger


def missing_required_settings() -> list[str]:
    missing: list[str] = []
    wallet = settings.wallet_address.strip()
    if not wallet or wallet.lower() == ZERO_WALLET_ADDRESS:
        missing.append("WALLET_ADDRESS")
    if not settings.model_id.strip():
        missing.append("MODEL_ID")
    return missing


def validate_startup_config() -> None:
    missing = missing_required_settings()
    if "WALLET_ADDRESS" in missing:
        raise ConfigurationError("WALLET_ADDRESS environment variable must be set to a valid address")
    if "MODEL_ID" in missing:
        raise ConfigurationError("MODEL_ID environment variable must be set")
    if not settings.marketplace_url.strip():
        # 转发时才会用到，这里只提示
        logger.warning("MARKETPLACE_URL is not set; chat requests will fail until it is configured")
    logger.info("starting proxy server with model id: %s", settings.model_id.strip())


def main() -> None:
    """命令行或 one-off 容器执行时调用。"""
    try:
        validate_startup_config()
    except ConfigurationError as exc:
        logger.error("init_config: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
