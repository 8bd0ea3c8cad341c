"""OpenRouter HTTP adapter."""
from typing import Tuple

from adapters.openai import OpenAIAdapter


class OpenRouterAdapter(OpenAIAdapter):
    """
    Adapter for OpenRouter API.

    OpenRouter provides access to multiple LLM providers through a unified
    OpenAI-compatible API with authentication.

    API Reference: https://openrouter.ai/docs
    Default endpoint: https://openrouter.ai/api/v1
    """

    provider_name = "openrouter"
    app_title = "council-consensus"

    def build_request(
        self, model: str, prompt: str
    ) -> Tuple[str, dict[str, str], dict]:
        """
        Chat completions request plus OpenRouter's attribution header.

        Args:
            model: Model identifier (e.g., "anthropic/claude-3.5-sonnet", "openai/gpt-4o")
            prompt: The prompt to send
        """
        endpoint, headers, body = super().build_request(model, prompt)
        headers["X-Title"] = self.app_title
        return (endpoint, headers, body)
