"""Provider connectors for the LLM gateway."""

from flow_overview.llm.connectors.base import LLMConnector
from flow_overview.llm.connectors.gemini import GeminiConnector
from flow_overview.llm.connectors.ollama import OllamaConnector

__all__ = ["GeminiConnector", "LLMConnector", "OllamaConnector"]
