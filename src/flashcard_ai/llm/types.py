"""Shared chat-completion data structures and errors."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    API_ERROR = "API_ERROR"


class ServiceError(RuntimeError):
    """Chat-completion client failure tagged with a machine-readable kind."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        status: int | None = None,
        detail: Any = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = ErrorKind(kind)
        self.status = status
        self.detail = detail
        if cause is not None:
            self.__cause__ = cause

    @property
    def cause(self) -> BaseException | None:
        return self.__cause__

    def __repr__(self) -> str:
        return f"ServiceError(kind={self.kind.value}, status={self.status}, message={str(self)!r})"


class SchemaViolation(ServiceError):
    """Value or schema rejected at a JSON-Pointer location."""

    def __init__(self, message: str, pointer: str, detail: Any = None) -> None:
        super().__init__(message, ErrorKind.VALIDATION_ERROR, detail=detail)
        self.pointer = pointer


@dataclass
class ModelParameters:
    temperature: Optional[float] = 0.7
    top_p: Optional[float] = 1
    frequency_penalty: Optional[float] = 0
    presence_penalty: Optional[float] = 0
    max_tokens: Optional[int] = None


@dataclass(frozen=True)
class ResponseFormatConfig:
    schema: Dict[str, Any]
    parsed_schema: Any
    name: str
    strict: bool = True

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": "json_schema",
            "json_schema": {
                "name": self.name,
                "schema": self.schema,
                "strict": self.strict,
            },
        }


@dataclass(frozen=True)
class ChatUsage:
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None


@dataclass(frozen=True)
class ChatResult:
    id: str
    model: str
    content: str
    parsed: Any = None
    usage: ChatUsage = field(default_factory=ChatUsage)
    finish_reason: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)
