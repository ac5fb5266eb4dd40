"""Session lifecycle events as single ``event=... key=value`` log lines."""

from __future__ import annotations

import logging

from sessiongate.util.logger import get_logger

events_logger = get_logger("events")


def _format_fields(payload: dict[str, object]) -> str:
    # 键排序，便于 grep 与对比；空字符串显式写成 ""
    parts = []
    for key in sorted(payload):
        value = payload[key]
        text = str(value)
        if text == "" or any(ch.isspace() for ch in text):
            text = repr(text)
        parts.append(f"{key}={text}")
    return " ".join(parts)


def log_event(event: str, *, level: int = logging.INFO, **payload: object) -> None:
    if not events_logger.isEnabledFor(level):
        return
    fields = _format_fields(payload)
    if fields:
        events_logger.log(level, "event=%s %s", event, fields)
    else:
        events_logger.log(level, "event=%s", event)
