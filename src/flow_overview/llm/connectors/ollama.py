"""Ollama connector for local/self-hosted inference.

Uses the ``/api/chat`` endpoint with streaming disabled.
"""

from __future__ import annotations

from typing import Any

import httpx

from flow_overview.constants import HEALTH_CHECK_TIMEOUT
from flow_overview.llm.connectors.base import LLMConnector
from flow_overview.llm.types import (
    CompletionOptions,
    CompletionRequest,
    CompletionResponse,
    LLMError,
    LLMErrorReason,
)
from flow_overview.logging import get_logger

log = get_logger("flow_overview.llm.connectors.ollama")


class OllamaConnector(LLMConnector):
    """Chat completions against an Ollama server."""

    name = "ollama"

    def __init__(self, base_url: str, default_model: str, *, timeout: float = 60.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._default_model = default_model
        self._timeout = timeout

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        model = request.options.model or self._default_model
        body: dict[str, Any] = {
            "model": model,
            "messages": self._build_messages(request),
            "stream": False,
            "options": self._build_options(request.options),
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(f"{self._base_url}/api/chat", json=body)
        except httpx.TimeoutException as exc:
            log.error("ollama_timeout", model=model, timeout=self._timeout)
            raise LLMError(
                LLMErrorReason.TIMEOUT,
                f"Ollama did not respond within {self._timeout}s",
                {"model": model},
            ) from exc
        except httpx.RequestError as exc:
            log.error("ollama_connection_error", error=str(exc))
            raise LLMError(
                LLMErrorReason.CONNECTION_ERROR,
                "Failed to connect to Ollama",
                {"error": str(exc)},
            ) from exc

        if resp.status_code != 200:
            log.error("ollama_api_error", status=resp.status_code, body=resp.text[:200])
            raise LLMError(
                LLMErrorReason.API_ERROR,
                f"Ollama API returned status {resp.status_code}",
                {"status": resp.status_code, "body": resp.text[:500]},
            )

        return self._parse_response(resp, model)

    async def health_check(self) -> tuple[bool, str]:
        try:
            async with httpx.AsyncClient(timeout=HEALTH_CHECK_TIMEOUT) as client:
                resp = await client.get(f"{self._base_url}/api/tags")
        except httpx.RequestError as exc:
            return False, f"Connection failed: {exc}"
        if resp.status_code == 200:
            return True, "ok"
        return False, f"Ollama returned status {resp.status_code}"

    async def list_models(self) -> list[str]:
        try:
            async with httpx.AsyncClient(timeout=HEALTH_CHECK_TIMEOUT) as client:
                resp = await client.get(f"{self._base_url}/api/tags")
            if resp.status_code != 200:
                return []
            models = resp.json().get("models", [])
        except (httpx.RequestError, ValueError) as exc:
            log.warning("ollama_list_models_failed", error=str(exc))
            return []
        return [m["name"] for m in models if isinstance(m, dict) and m.get("name")]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _build_messages(request: CompletionRequest) -> list[dict[str, str]]:
        messages = [m.to_dict() for m in request.messages]
        if request.system_prompt:
            messages.insert(0, {"role": "system", "content": request.system_prompt})
        return messages

    @staticmethod
    def _build_options(options: CompletionOptions) -> dict[str, Any]:
        mapped = {
            "temperature": options.temperature,
            "top_p": options.top_p,
            "top_k": options.top_k,
            "num_predict": options.max_tokens,
        }
        return {k: v for k, v in mapped.items() if v is not None}

    @staticmethod
    def _parse_response(resp: httpx.Response, model: str) -> CompletionResponse:
        try:
            data = resp.json()
        except ValueError as exc:
            raise LLMError(
                LLMErrorReason.PARSE_ERROR, "Failed to decode Ollama JSON response"
            ) from exc

        message = data.get("message") if isinstance(data, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            log.warning("ollama_unexpected_response", body=resp.text[:200])
            raise LLMError(LLMErrorReason.PARSE_ERROR, "Unexpected Ollama response format")

        return CompletionResponse(
            content=content,
            model=model,
            metadata={
                "total_duration": data.get("total_duration"),
                "load_duration": data.get("load_duration"),
                "prompt_eval_count": data.get("prompt_eval_count"),
                "eval_count": data.get("eval_count"),
            },
        )
