"""Main interface for LLM completions.

``LLMGateway`` selects a connector by provider name and hands it a
provider-agnostic request::

    gateway = LLMGateway.from_settings(get_settings())
    response = await gateway.complete(
        "You are a CRM analyst.",
        [Message(role=Role.USER, content="Summarize these deals")],
        provider="ollama",
        temperature=0.3,
    )
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from flow_overview.llm.connectors import GeminiConnector, LLMConnector, OllamaConnector
from flow_overview.llm.types import (
    CompletionOptions,
    CompletionRequest,
    CompletionResponse,
    LLMError,
    LLMErrorReason,
    Message,
    Provider,
    Role,
)
from flow_overview.logging import get_logger

if TYPE_CHECKING:
    from flow_overview.config import Settings

log = get_logger("flow_overview.llm.provider")


class LLMGateway:
    """Routes completion requests to the configured provider connectors."""

    def __init__(
        self,
        connectors: dict[str, LLMConnector],
        *,
        default_provider: str = Provider.OLLAMA.value,
    ) -> None:
        self._connectors = dict(connectors)
        self._default_provider = default_provider

    @classmethod
    def from_settings(cls, settings: Settings) -> LLMGateway:
        """Build a gateway with an Ollama and a Gemini connector."""
        gemini_key = (
            settings.gemini_api_key.get_secret_value() if settings.gemini_api_key else None
        )
        connectors: dict[str, LLMConnector] = {
            Provider.OLLAMA.value: OllamaConnector(
                settings.ollama_url,
                settings.ollama_model,
                timeout=settings.llm_timeout_seconds,
            ),
            Provider.GEMINI.value: GeminiConnector(
                gemini_key,
                settings.gemini_model,
                timeout=settings.llm_timeout_seconds,
            ),
        }
        log.info(
            "llm_gateway_initialized",
            providers=sorted(connectors),
            default_provider=settings.llm_default_provider,
        )
        return cls(connectors, default_provider=settings.llm_default_provider)

    @property
    def default_provider(self) -> str:
        return self._default_provider

    def get_connector(self, provider: str | None = None) -> LLMConnector:
        """Return the connector for ``provider`` (or the default)."""
        name = provider or self._default_provider
        connector = self._connectors.get(name)
        if connector is None:
            raise LLMError(
                LLMErrorReason.INVALID_PROVIDER,
                f"Invalid provider: {name}",
                {"provider": name},
            )
        return connector

    async def complete(
        self,
        system_prompt: str | None,
        messages: list[Message],
        *,
        provider: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
        top_p: float | None = None,
        top_k: int | None = None,
        max_tokens: int | None = None,
    ) -> CompletionResponse:
        """Send a completion request.

        Raises:
            LLMError: When the provider is unknown or the call fails.
        """
        connector = self.get_connector(provider)
        request = CompletionRequest(
            messages=messages,
            system_prompt=system_prompt,
            options=CompletionOptions(
                model=model,
                temperature=temperature,
                top_p=top_p,
                top_k=top_k,
                max_tokens=max_tokens,
            ),
        )
        log.info(
            "llm_request",
            provider=connector.name,
            model=model,
            message_count=len(messages),
        )
        return await connector.complete(request)

    async def ask(self, question: str, **options: object) -> CompletionResponse:
        """Single user-message completion without a system prompt."""
        return await self.complete(
            None,
            [Message(role=Role.USER, content=question)],
            **options,  # type: ignore[arg-type]
        )

    async def health_check(self, provider: str | None = None) -> tuple[bool, str]:
        """Check a provider's connectivity.  Never raises."""
        try:
            connector = self.get_connector(provider)
        except LLMError as exc:
            return False, exc.message
        return await connector.health_check()

    async def close(self) -> None:
        for connector in self._connectors.values():
            await connector.close()
