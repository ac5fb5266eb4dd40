"""Project logger: stderr always, plus a rotating file when LOG_FILE is set."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from sessiongate.config.settings import settings


LOGGER_NAMESPACE = "sessiongate"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_BYTES = 10 * 1024 * 1024
BACKUP_COUNT = 5


def _normalize_level(raw: str) -> int:
    candidate = str(raw or "INFO").strip().upper()
    level = logging.getLevelName(candidate)
    # 未知级别名 getLevelName 返回 "Level X" 字符串
    return level if isinstance(level, int) else logging.INFO


def _build_file_handler(log_file: str, level: int, formatter: logging.Formatter) -> logging.Handler | None:
    path_text = (log_file or "").strip()
    if not path_text:
        return None
    path = Path(path_text)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(path, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8")
    except OSError as exc:
        # 容器内目录只读时退回仅 stderr
        logging.getLogger(LOGGER_NAMESPACE).warning("log file disabled path=%s error=%s", path, exc)
        return None
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _build_logger() -> logging.Logger:
    configured_logger = logging.getLogger(LOGGER_NAMESPACE)
    if configured_logger.handlers:
        return configured_logger

    resolved_level = _normalize_level(settings.log_level)
    configured_logger.setLevel(resolved_level)
    configured_logger.propagate = False
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(resolved_level)
    stream_handler.setFormatter(formatter)
    configured_logger.addHandler(stream_handler)

    file_handler = _build_file_handler(settings.log_file, resolved_level, formatter)
    if file_handler is not None:
        configured_logger.addHandler(file_handler)
    return configured_logger


logger = _build_logger()


def get_logger(name: str) -> logging.Logger:
    return logger.getChild(name)
