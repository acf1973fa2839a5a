"""Model provider boundary and the OpenAI-compatible client."""

from .client import AIClient, ClientSettings
from .provider import DEFAULT_SYSTEM_PROMPT, ModelProvider, OpenAIProvider, translate_provider_error

__all__ = [
    "AIClient",
    "ClientSettings",
    "ModelProvider",
    "OpenAIProvider",
    "DEFAULT_SYSTEM_PROMPT",
    "translate_provider_error",
]
