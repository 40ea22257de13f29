"""Provider adapters; importing this package registers every wire family."""

from .anthropic import AnthropicAdapter
from .base import ProviderAdapter, create_adapter, response_to_events
from .gemini import GeminiAdapter
from .ollama import OllamaAdapter
from .openai_compat import OpenAICompatibleAdapter, openai_endpoint

__all__ = [
    "ProviderAdapter",
    "AnthropicAdapter",
    "OpenAICompatibleAdapter",
    "GeminiAdapter",
    "OllamaAdapter",
    "create_adapter",
    "response_to_events",
    "openai_endpoint",
]
