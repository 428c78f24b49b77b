"""
OpenAI completion client for price recommendations.

Sends a single non-streaming completion request and returns the raw
completion text; parsing and fallback are the gateway's job.
"""

from abc import ABC, abstractmethod
from typing import Optional

from openai import OpenAI


class CompletionClient(ABC):
    """Prompt-in, text-out interface to an external language model."""

    @abstractmethod
    def complete(self, prompt: str, model: str, max_tokens: int) -> str:
        """Return the completion text for a prompt.

        Raises:
            Any transport or API error, unmodified
        """


class OpenAICompletionClient(CompletionClient):
    """CompletionClient backed by the OpenAI completions endpoint.

    Retries are disabled: a slow or failing upstream must resolve to the
    fallback price quickly rather than being retried inside checkout.
    """

    def __init__(self, timeout_seconds: float = 10.0, api_key: Optional[str] = None):
        """Initialize the OpenAI client.

        Args:
            timeout_seconds: Per-request timeout enforced by the SDK
            api_key: API key; the SDK reads OPENAI_API_KEY when omitted

        Raises:
            ValueError: If timeout_seconds is not positive
        """
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")

        self.timeout_seconds = timeout_seconds
        self.client = OpenAI(api_key=api_key, timeout=timeout_seconds, max_retries=0)

    def complete(self, prompt: str, model: str, max_tokens: int) -> str:
        if not prompt:
            raise ValueError("prompt is required and cannot be empty")

        response = self.client.completions.create(
            model=model,
            max_tokens=max_tokens,
            prompt=prompt
        )

        if not response.choices:
            raise ValueError("OpenAI response missing completion choices")
        return response.choices[0].text or ""
