"""Unit tests for Ollama adapter."""
from unittest.mock import AsyncMock, Mock, patch

import pytest

from adapters.ollama import OllamaAdapter
from models.schema import CouncilMember, RetryPolicy


class TestOllamaAdapter:
    """Tests for Ollama HTTP adapter."""

    def test_adapter_initialization(self):
        """Test adapter initializes with correct base_url and defaults."""
        adapter = OllamaAdapter(base_url="http://localhost:11434/", timeout=60)
        assert adapter.base_url == "http://localhost:11434"
        assert adapter.timeout == 60
        assert adapter.health.provider_id == "ollama"

    def test_build_request_structure(self):
        """Test build_request returns correct endpoint, headers, body."""
        adapter = OllamaAdapter(base_url="http://localhost:11434")

        endpoint, headers, body = adapter.build_request(model="llama2", prompt="What is 2+2?")

        assert endpoint == "/api/generate"
        assert headers["Content-Type"] == "application/json"
        assert body == {"model": "llama2", "prompt": "What is 2+2?", "stream": False}

    def test_parse_response_extracts_content_and_usage(self):
        """Test parse_response extracts 'response' and eval counts."""
        adapter = OllamaAdapter(base_url="http://localhost:11434")

        content, usage = adapter.parse_response(
            {
                "model": "llama2",
                "response": "The answer is 4.",
                "done": True,
                "prompt_eval_count": 26,
                "eval_count": 298,
            }
        )

        assert content == "The answer is 4."
        assert usage.prompt_tokens == 26
        assert usage.completion_tokens == 298
        assert usage.total_tokens == 324

    def test_parse_response_without_counts(self):
        adapter = OllamaAdapter(base_url="http://localhost:11434")
        content, usage = adapter.parse_response({"response": "hi"})
        assert content == "hi"
        assert usage.total_tokens == 0

    def test_parse_response_missing_field_raises(self):
        """Test parse_response raises KeyError when 'response' is missing."""
        adapter = OllamaAdapter(base_url="http://localhost:11434")
        with pytest.raises(KeyError, match="response"):
            adapter.parse_response({"model": "llama2", "done": True})

    @pytest.mark.asyncio
    @patch("httpx.AsyncClient")
    async def test_send_request_end_to_end(self, mock_client_class):
        mock_response = Mock()
        mock_response.status_code = 200
        mock_response.json.return_value = {"response": "Four.", "eval_count": 2}
        mock_response.raise_for_status = Mock()

        mock_client = AsyncMock()
        mock_client.post = AsyncMock(return_value=mock_response)
        mock_client.__aenter__ = AsyncMock(return_value=mock_client)
        mock_client.__aexit__ = AsyncMock(return_value=None)
        mock_client_class.return_value = mock_client

        adapter = OllamaAdapter(base_url="http://localhost:11434")
        member = CouncilMember(
            id="llama", provider="ollama", model="llama3", retry_policy=RetryPolicy(initial_delay_ms=0)
        )
        result = await adapter.send_request(member, "What is 2+2?")

        assert result.success is True
        assert result.content == "Four."
        assert result.token_usage.completion_tokens == 2
        assert mock_client.post.call_args.args[0] == "http://localhost:11434/api/generate"
