"""Ollama HTTP adapter."""
from typing import Tuple

from adapters.base_http import BaseHTTPAdapter
from models.schema import TokenUsage


class OllamaAdapter(BaseHTTPAdapter):
    """
    Adapter for Ollama local API.

    API reference: https://github.com/ollama/ollama/blob/main/docs/api.md
    Default endpoint: http://localhost:11434
    """

    provider_name = "ollama"

    def build_request(
        self, model: str, prompt: str
    ) -> Tuple[str, dict[str, str], dict]:
        """
        Build Ollama API request.

        Args:
            model: Ollama model name (e.g., "llama3", "mistral")
                  Run 'ollama list' to see available models
            prompt: The prompt to send

        Returns:
            Tuple of (endpoint, headers, body)
        """
        endpoint = "/api/generate"

        headers = {"Content-Type": "application/json"}

        body = {
            "model": model,
            "prompt": prompt,
            "stream": False,
        }

        return (endpoint, headers, body)

    def parse_response(self, response_json: dict) -> Tuple[str, TokenUsage]:
        """
        Parse Ollama API response.

        Ollama response format (non-streaming):
        {
          "model": "llama3",
          "response": "The model's response text",
          "done": true,
          "prompt_eval_count": 26,
          "eval_count": 298
        }

        Raises:
            KeyError: If response doesn't contain 'response' field
        """
        if "response" not in response_json:
            raise KeyError(
                f"Ollama response missing 'response' field. "
                f"Received keys: {list(response_json.keys())}"
            )

        prompt_tokens = response_json.get("prompt_eval_count", 0) or 0
        completion_tokens = response_json.get("eval_count", 0) or 0
        usage = TokenUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )
        return response_json["response"], usage
