"""
SDK for the subscription lifecycle core.

Provides clients for the external AI capability.
"""

from .openai_client import CompletionClient, OpenAICompletionClient

__all__ = ["CompletionClient", "OpenAICompletionClient"]
