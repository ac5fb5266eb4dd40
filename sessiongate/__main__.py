"""Run the proxy with uvicorn: python -m sessiongate"""

from __future__ import annotations

import uvicorn

from sessiongate.config.settings import settings
from sessiongate.util.logger import logger


def run() -> None:
    logger.info("proxy server is running on %s:%s", settings.host, settings.port)
    # 使用项目自己的 logger 配置
    uvicorn.run("sessiongate.core.gateway:app", host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    run()
