"""Shared types for the LLM gateway and its connectors."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class Provider(StrEnum):
    """Supported LLM providers."""

    OLLAMA = "ollama"
    GEMINI = "gemini"


class Role(StrEnum):
    """Chat message roles."""

    USER = "user"
    ASSISTANT = "assistant"


class LLMErrorReason(StrEnum):
    """Failure categories reported by connectors."""

    INVALID_PROVIDER = "invalid_provider"
    CONFIG_ERROR = "config_error"
    API_ERROR = "api_error"
    CONNECTION_ERROR = "connection_error"
    TIMEOUT = "timeout"
    PARSE_ERROR = "parse_error"


class LLMError(Exception):
    """Raised when an LLM completion cannot be obtained."""

    def __init__(
        self,
        reason: LLMErrorReason,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return f"{self.reason.value}: {self.message}"


@dataclass
class Message:
    """A single chat turn."""

    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass
class CompletionOptions:
    """Sampling options; ``None`` values are left to the provider default."""

    model: str | None = None
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    max_tokens: int | None = None


@dataclass
class CompletionRequest:
    """A provider-agnostic completion request."""

    messages: list[Message]
    system_prompt: str | None = None
    options: CompletionOptions = field(default_factory=CompletionOptions)


@dataclass
class CompletionResponse:
    """The text returned by a provider plus usage metadata."""

    content: str
    model: str
    metadata: dict[str, Any] = field(default_factory=dict)
