"""Session record, chat payload wrapper and marketplace wire models."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Iterator

from pydantic import BaseModel, ConfigDict, Field

from sessiongate.core.errors import BadRequestError


@dataclass(slots=True, frozen=True)
class Session:
    session_id: str
    model_id: str
    last_used: float

    def is_fresh(self, now: float, ttl_seconds: float) -> bool:
        return bool(self.session_id) and (now - self.last_used) < ttl_seconds


class SessionCreateRequest(BaseModel):
    session_duration: int = Field(default=3600, serialization_alias="sessionDuration")
    failover: bool = False

    def to_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")


class SessionCreateResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    session_id: str = Field(default="", alias="sessionID")


def _reject_non_standard_constant(name: str) -> Any:
    # NaN / Infinity / -Infinity 不是合法 JSON，转发后上游无法解析
    raise ValueError(f"non-standard json constant: {name}")


class ChatPayload:
    """Open JSON object from the client.

    Only ``model`` and ``stream`` are interpreted; every other key is kept
    as-is and in its original order when the payload is re-serialized.
    """

    __slots__ = ("_data",)

    def __init__(self, data: dict[str, Any]) -> None:
        self._data = data

    @classmethod
    def from_bytes(cls, body: bytes) -> "ChatPayload":
        try:
            parsed = json.loads(body, parse_constant=_reject_non_standard_constant)
        except (UnicodeDecodeError, ValueError) as exc:
            raise BadRequestError("request body is not valid json") from exc
        except RecursionError as exc:
            raise BadRequestError("request body is nested too deeply") from exc
        if not isinstance(parsed, dict):
            raise BadRequestError("request body must be a json object")
        return cls(parsed)

    @property
    def model(self) -> Any:
        return self._data.get("model")

    @model.setter
    def model(self, value: str) -> None:
        self._data["model"] = value

    @property
    def stream(self) -> bool:
        # 非布尔值（如 "true"、1）一律视为非流式
        return self._data.get("stream") is True

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def to_dict(self) -> dict[str, Any]:
        return dict(self._data)

    def to_bytes(self) -> bytes:
        return json.dumps(self._data, ensure_ascii=False).encode("utf-8")
