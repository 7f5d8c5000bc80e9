"""Abstract base class for LLM provider connectors."""

from __future__ import annotations

from abc import ABC, abstractmethod

from flow_overview.llm.types import CompletionRequest, CompletionResponse


class LLMConnector(ABC):
    """Interface every provider connector implements.

    ``complete`` raises :class:`~flow_overview.llm.types.LLMError` on any
    failure; the two diagnostic methods never raise and report problems as
    ``(False, reason)`` / an empty list instead.
    """

    name: str = "base"

    @abstractmethod
    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """Run a single chat completion."""
        raise NotImplementedError

    @abstractmethod
    async def health_check(self) -> tuple[bool, str]:
        """Check connectivity and configuration."""
        raise NotImplementedError

    @abstractmethod
    async def list_models(self) -> list[str]:
        """List the model names the provider currently serves."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release connector resources (no-op by default)."""
        return
