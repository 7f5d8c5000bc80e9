"""LLM gateway, provider connectors, and response parsing."""
