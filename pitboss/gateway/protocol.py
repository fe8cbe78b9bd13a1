"""
PitBoss — Wire Protocol

Newline-delimited JSON, one object per line, both directions.

    → {"command": "detect-issue", "args": ["[12:00:01] [ERROR] ..."], "id": 7}
    ← {"id": 7, "result": {...}, "timestamp": 1718000000000}
    ← {"id": 7, "error": {"message": "...", "code": "NOT_FOUND"}, "timestamp": ...}

Request ids are opaque and echoed back untouched; responses may arrive
out of order, so callers correlate on them.
"""

from __future__ import annotations

from typing import Any

import orjson
from pydantic import Field, ValidationError

from pitboss.primitives.common import PitBossBaseModel, epoch_ms

PARSE_ERROR = "PARSE_ERROR"
INVALID_REQUEST = "INVALID_REQUEST"
UNKNOWN_COMMAND = "UNKNOWN_COMMAND"
TIMEOUT = "TIMEOUT"
INTERNAL_ERROR = "INTERNAL_ERROR"


class ProtocolError(ValueError):
    """A line could not be turned into a Request."""

    def __init__(self, message: str, code: str = PARSE_ERROR, request_id: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.request_id = request_id


class Request(PitBossBaseModel):
    command: str = Field(min_length=1)
    args: list[Any] = Field(default_factory=list)
    id: Any = None

    def arg(self, index: int, default: str | None = None) -> str | None:
        if index < len(self.args) and self.args[index] is not None:
            return str(self.args[index])
        return default

    def joined(self) -> str:
        """All arguments as one space-separated string (free-text commands)."""
        return " ".join(str(a) for a in self.args if a is not None).strip()


def parse_request(line: str | bytes) -> Request:
    try:
        raw = orjson.loads(line)
    except orjson.JSONDecodeError as exc:
        raise ProtocolError(f"Invalid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise ProtocolError("Request must be a JSON object", code=INVALID_REQUEST)
    request_id = raw.get("id")
    if isinstance(raw.get("args"), str):
        raw["args"] = [raw["args"]]
    try:
        return Request.model_validate(raw)
    except ValidationError as exc:
        raise ProtocolError(
            f"Invalid request: {exc.errors()[0]['msg']}",
            code=INVALID_REQUEST,
            request_id=request_id,
        ) from exc


def ok_response(request_id: Any, result: Any) -> dict[str, Any]:
    return {"id": request_id, "result": result, "timestamp": epoch_ms()}


def error_response(request_id: Any, message: str, code: str) -> dict[str, Any]:
    return {
        "id": request_id,
        "error": {"message": message, "code": code},
        "timestamp": epoch_ms(),
    }


def ready_message(pid: int) -> dict[str, Any]:
    return {"type": "ready", "pid": pid, "timestamp": epoch_ms()}


def encode(message: dict[str, Any]) -> bytes:
    """One protocol line, newline included."""
    return orjson.dumps(message, default=str) + b"\n"


class LineBuffer:
    """Accumulates raw chunks and yields complete lines."""

    def __init__(self) -> None:
        self._pending = b""

    def feed(self, chunk: bytes) -> list[str]:
        data = self._pending + chunk
        *lines, self._pending = data.split(b"\n")
        out: list[str] = []
        for line in lines:
            text = line.decode("utf-8", errors="replace").strip()
            if text:
                out.append(text)
        return out

    def flush(self) -> list[str]:
        """Whatever is left once input has ended."""
        return self.feed(b"\n") if self._pending.strip() else []

    @property
    def pending(self) -> int:
        return len(self._pending)
