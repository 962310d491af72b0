"""Incremental parser for the agent CLI's NDJSON ``stream-json`` output."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .constants import MAX_CONTEXT_TOKENS
from .models import TokenUsage


VALID_MESSAGE_TYPES = ("init", "message", "tool_use", "tool_result", "result")


# ---------------------------------------------------------------------------
# Message models
# ---------------------------------------------------------------------------

class UsagePayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0


class InitMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["init"] = "init"
    session_id: str
    timestamp: Optional[str] = None
    tools: list[str] = Field(default_factory=list)


class ResultMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["result"] = "result"
    status: str = "success"
    duration_ms: Optional[int] = None
    num_turns: Optional[int] = None
    session_id: Optional[str] = None
    usage: Optional[UsagePayload] = None
    error: Optional[str] = None


@dataclass
class ParseResult:
    success: bool
    raw_line: str
    message: Optional[Any] = None  # InitMessage, ResultMessage or a plain dict
    error: Optional[str] = None
    error_type: Optional[str] = None  # json_parse_error | empty_line | missing_type | unknown_type


@dataclass
class ParsedTokenUsage:
    input_tokens: int
    output_tokens: int
    cache_creation_tokens: int
    cache_read_tokens: int
    total_context: int
    percent_used: float

    def to_token_usage(self) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cache_creation_tokens=self.cache_creation_tokens,
            cache_read_tokens=self.cache_read_tokens,
            context_percentage=self.percent_used,
        )


def calculate_token_usage(usage: UsagePayload | dict[str, Any]) -> ParsedTokenUsage:
    """Summarize a usage block against the model's context window.

    Cache reads stand in for input tokens, so both count toward context.
    """
    if isinstance(usage, dict):
        usage = UsagePayload.model_validate(usage)
    total_context = usage.input_tokens + usage.cache_read_input_tokens
    return ParsedTokenUsage(
        input_tokens=usage.input_tokens,
        output_tokens=usage.output_tokens,
        cache_creation_tokens=usage.cache_creation_input_tokens,
        cache_read_tokens=usage.cache_read_input_tokens,
        total_context=total_context,
        percent_used=round(total_context / MAX_CONTEXT_TOKENS * 100, 2),
    )


def parse_stream_line(line: str) -> ParseResult:
    """Parse one NDJSON line into a typed message."""
    stripped = line.strip()
    if not stripped:
        return ParseResult(success=False, raw_line=line, error="Empty line", error_type="empty_line")
    try:
        data = json.loads(stripped)
    except json.JSONDecodeError as exc:
        return ParseResult(success=False, raw_line=line, error=str(exc), error_type="json_parse_error")
    if not isinstance(data, dict) or "type" not in data:
        return ParseResult(success=False, raw_line=line, error="Missing type field", error_type="missing_type")
    msg_type = data.get("type")
    if msg_type not in VALID_MESSAGE_TYPES:
        return ParseResult(
            success=False,
            raw_line=line,
            error=f"Unknown message type: {msg_type}",
            error_type="unknown_type",
        )
    try:
        if msg_type == "init":
            message: Any = InitMessage.model_validate(data)
        elif msg_type == "result":
            message = ResultMessage.model_validate(data)
        else:
            message = data
    except ValidationError as exc:
        return ParseResult(success=False, raw_line=line, error=str(exc), error_type="json_parse_error")
    return ParseResult(success=True, raw_line=line, message=message)


# ---------------------------------------------------------------------------
# Stateful parser
# ---------------------------------------------------------------------------

class StreamParser:
    """Buffers partial chunks and yields one result per complete line."""

    def __init__(self) -> None:
        self._buffer = ""
        self.messages: list[Any] = []
        self.session_id: Optional[str] = None
        self.token_usage: Optional[ParsedTokenUsage] = None

    def parse_chunk(self, chunk: str) -> list[ParseResult]:
        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return [self._record(parse_stream_line(line)) for line in lines]

    def parse_line(self, line: str) -> ParseResult:
        return parse_stream_line(line)

    def flush(self) -> Optional[ParseResult]:
        """Parse whatever is left in the buffer (a final unterminated line)."""
        remaining, self._buffer = self._buffer, ""
        if not remaining.strip():
            return None
        return self._record(parse_stream_line(remaining))

    def reset(self) -> None:
        self._buffer = ""
        self.messages = []
        self.session_id = None
        self.token_usage = None

    def _record(self, result: ParseResult) -> ParseResult:
        if result.success:
            self.messages.append(result.message)
            if isinstance(result.message, InitMessage):
                self.session_id = result.message.session_id
            elif isinstance(result.message, ResultMessage) and result.message.usage:
                self.token_usage = calculate_token_usage(result.message.usage)
        return result
