"""
Unit tests for SDK layer.

Tests the OpenAI completion client wrapper.
"""

from unittest.mock import Mock, patch

import pytest

from subscription_lifecycle.sdk.openai_client import OpenAICompletionClient


class TestOpenAICompletionClient:
    """Test OpenAICompletionClient wrapper."""

    @patch('subscription_lifecycle.sdk.openai_client.OpenAI')
    def test_init_configures_timeout_without_retries(self, mock_openai_class):
        """Test the SDK client is bounded and never retries."""
        client = OpenAICompletionClient(timeout_seconds=3.0, api_key="sk-test")

        mock_openai_class.assert_called_once_with(api_key="sk-test", timeout=3.0, max_retries=0)
        assert client.timeout_seconds == 3.0

    def test_init_invalid_timeout(self):
        with pytest.raises(ValueError, match="timeout_seconds"):
            OpenAICompletionClient(timeout_seconds=0)

    @patch('subscription_lifecycle.sdk.openai_client.OpenAI')
    def test_complete_returns_text(self, mock_openai_class):
        """Test the request shape and returned completion text."""
        mock_response = Mock()
        mock_response.choices = [Mock(text=' {"suggestedPrice": 1, "reason": "r"} ')]
        mock_client = Mock()
        mock_client.completions.create.return_value = mock_response
        mock_openai_class.return_value = mock_client

        client = OpenAICompletionClient()
        text = client.complete("Price a 5 seat plan", model="gpt-3.5-turbo-instruct", max_tokens=300)

        mock_client.completions.create.assert_called_once_with(
            model="gpt-3.5-turbo-instruct",
            max_tokens=300,
            prompt="Price a 5 seat plan"
        )
        assert text == ' {"suggestedPrice": 1, "reason": "r"} '

    @patch('subscription_lifecycle.sdk.openai_client.OpenAI')
    def test_complete_propagates_api_errors(self, mock_openai_class):
        """Test API failures are raised for the gateway to absorb."""
        mock_client = Mock()
        mock_client.completions.create.side_effect = Exception("API Error")
        mock_openai_class.return_value = mock_client

        with pytest.raises(Exception, match="API Error"):
            OpenAICompletionClient().complete("prompt", model="m", max_tokens=10)

    @patch('subscription_lifecycle.sdk.openai_client.OpenAI')
    def test_complete_missing_choices(self, mock_openai_class):
        mock_response = Mock()
        mock_response.choices = []
        mock_client = Mock()
        mock_client.completions.create.return_value = mock_response
        mock_openai_class.return_value = mock_client

        with pytest.raises(ValueError, match="choices"):
            OpenAICompletionClient().complete("prompt", model="m", max_tokens=10)

    @patch('subscription_lifecycle.sdk.openai_client.OpenAI')
    def test_complete_empty_prompt(self, mock_openai_class):
        with pytest.raises(ValueError, match="prompt is required"):
            OpenAICompletionClient().complete("", model="m", max_tokens=10)
