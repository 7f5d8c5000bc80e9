"""Google Gemini connector.

The google-genai client is synchronous, so calls run in a worker thread and
are bounded by ``asyncio.wait_for``.
"""

from __future__ import annotations

import asyncio
from typing import Any

from google import genai  # type: ignore[attr-defined]
from google.genai import errors as genai_errors

from flow_overview.constants import HEALTH_CHECK_TIMEOUT
from flow_overview.llm.connectors.base import LLMConnector
from flow_overview.llm.types import (
    CompletionOptions,
    CompletionRequest,
    CompletionResponse,
    LLMError,
    LLMErrorReason,
    Role,
)
from flow_overview.logging import get_logger

log = get_logger("flow_overview.llm.connectors.gemini")


class GeminiConnector(LLMConnector):
    """Chat completions against the Gemini API."""

    name = "gemini"

    def __init__(
        self,
        api_key: str | None,
        default_model: str,
        *,
        timeout: float = 60.0,
    ) -> None:
        self._api_key = api_key
        self._default_model = default_model
        self._timeout = timeout
        self._client: genai.Client | None = None

    def _get_client(self) -> genai.Client:
        if not self._api_key:
            raise LLMError(LLMErrorReason.CONFIG_ERROR, "Gemini API key not configured")
        if self._client is None:
            self._client = genai.Client(api_key=self._api_key)
        return self._client

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        client = self._get_client()
        model = request.options.model or self._default_model

        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(
                    client.models.generate_content,
                    model=model,
                    contents=self._build_contents(request),
                    config=self._build_config(request),
                ),
                timeout=self._timeout,
            )
        except TimeoutError as exc:
            log.error("gemini_timeout", model=model, timeout=self._timeout)
            raise LLMError(
                LLMErrorReason.TIMEOUT,
                f"Gemini did not respond within {self._timeout}s",
                {"model": model},
            ) from exc
        except genai_errors.APIError as exc:
            log.error("gemini_api_error", status=exc.code, error=str(exc))
            raise LLMError(
                LLMErrorReason.API_ERROR,
                f"Gemini API returned status {exc.code}",
                {"status": exc.code},
            ) from exc
        except Exception as exc:
            log.error("gemini_connection_error", error=str(exc))
            raise LLMError(
                LLMErrorReason.CONNECTION_ERROR,
                "Failed to connect to Gemini API",
                {"error": str(exc)},
            ) from exc

        text = getattr(response, "text", None)
        if not isinstance(text, str):
            raise LLMError(LLMErrorReason.PARSE_ERROR, "Gemini response contained no text")

        usage = getattr(response, "usage_metadata", None)
        return CompletionResponse(
            content=text,
            model=model,
            metadata={"usage": usage.model_dump() if hasattr(usage, "model_dump") else None},
        )

    async def health_check(self) -> tuple[bool, str]:
        try:
            await asyncio.wait_for(self._fetch_model_names(), timeout=HEALTH_CHECK_TIMEOUT)
        except LLMError as exc:
            return False, exc.message
        except Exception as exc:
            return False, f"Connection failed: {exc}"
        return True, "ok"

    async def list_models(self) -> list[str]:
        try:
            return await self._fetch_model_names()
        except Exception as exc:
            log.warning("gemini_list_models_failed", error=str(exc))
            return []

    async def _fetch_model_names(self) -> list[str]:
        client = self._get_client()
        models = await asyncio.to_thread(lambda: list(client.models.list()))
        names = [str(getattr(m, "name", "")) for m in models]
        return [n.removeprefix("models/") for n in names if "gemini" in n]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _build_contents(request: CompletionRequest) -> list[dict[str, Any]]:
        return [
            {
                "role": "model" if m.role == Role.ASSISTANT else "user",
                "parts": [{"text": m.content}],
            }
            for m in request.messages
        ]

    @staticmethod
    def _build_config(request: CompletionRequest) -> dict[str, Any]:
        options: CompletionOptions = request.options
        config: dict[str, Any] = {
            "system_instruction": request.system_prompt,
            "temperature": options.temperature,
            "top_p": options.top_p,
            "top_k": options.top_k,
            "max_output_tokens": options.max_tokens,
        }
        return {k: v for k, v in config.items() if v is not None}
