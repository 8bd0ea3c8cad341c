"""OpenAI-compatible chat completions adapter."""
from typing import Tuple

from adapters.base_http import BaseHTTPAdapter
from models.schema import TokenUsage


def usage_from_openai(response_json: dict) -> TokenUsage:
    """Token usage from an OpenAI-format ``usage`` object (zeros when absent)."""
    usage = response_json.get("usage") or {}
    prompt_tokens = usage.get("prompt_tokens", 0) or 0
    completion_tokens = usage.get("completion_tokens", 0) or 0
    return TokenUsage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=usage.get("total_tokens") or prompt_tokens + completion_tokens,
    )


class OpenAIAdapter(BaseHTTPAdapter):
    """
    Adapter for the OpenAI chat completions API and compatible servers.

    API Reference: https://platform.openai.com/docs/api-reference/chat
    Default endpoint: https://api.openai.com/v1
    """

    provider_name = "openai"

    def build_request(
        self, model: str, prompt: str
    ) -> Tuple[str, dict[str, str], dict]:
        """
        Build a chat completions request with Bearer auth.

        POST /chat/completions
        Authorization: Bearer <api_key>
        """
        endpoint = "/chat/completions"

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        body = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "stream": False,
        }

        return (endpoint, headers, body)

    def parse_response(self, response_json: dict) -> Tuple[str, TokenUsage]:
        """
        Parse a chat completions response.

        Format:
        {
          "id": "chatcmpl-abc123",
          "choices": [{
            "index": 0,
            "message": {"role": "assistant", "content": "The model's response"},
            "finish_reason": "stop"
          }],
          "usage": {"prompt_tokens": 12, "completion_tokens": 40, "total_tokens": 52}
        }

        Raises:
            KeyError: If response doesn't contain expected fields
            IndexError: If choices array is empty
        """
        label = self.provider_name
        if "choices" not in response_json:
            raise KeyError(
                f"{label} response missing 'choices' field. "
                f"Received keys: {list(response_json.keys())}"
            )

        if len(response_json["choices"]) == 0:
            raise IndexError(f"{label} response has empty 'choices' array")

        choice = response_json["choices"][0]
        message = choice.get("message")
        if message is None or "content" not in message:
            raise KeyError(
                f"{label} choice missing 'message.content'. "
                f"Received keys: {list(choice.keys())}"
            )

        return message["content"] or "", usage_from_openai(response_json)
