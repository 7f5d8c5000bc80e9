"""Per-user overview worker: detect CRM changes, analyze them with an LLM, act on the result."""

__version__ = "0.1.0"
