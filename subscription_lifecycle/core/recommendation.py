"""
Price recommendation gateway.

Resolves a prompt to a suggested price through the cache, the external
recommender, or the configured fallback. Upstream failures never reach the
caller: checkout always receives a price.
"""

import json
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime, timezone
from typing import Optional, Tuple

from subscription_lifecycle.config.loader import RecommendationConfig
from subscription_lifecycle.sdk.openai_client import CompletionClient
from subscription_lifecycle.storage.models import (
    Recommendation,
    RecommendationCacheEntry,
    RecommendationRequestRecord,
    RecommendationSource,
)
from subscription_lifecycle.storage.repository import RecommendationLog

from .cache import PriceRecommendationCache
from .errors import ValidationError

logger = logging.getLogger(__name__)

ANONYMOUS_EMAIL = "unknown@user.com"


def normalize_prompt_key(prompt: str, max_length: int = 200) -> str:
    """Collapse whitespace and truncate a prompt to its cache key.

    Prompts sharing the same leading ``max_length`` characters share a key.
    """
    return " ".join(prompt.split())[:max_length]


def parse_recommendation(text: Optional[str]) -> Tuple[int, str]:
    """Parse completion text as strict JSON ``{suggestedPrice, reason}``.

    Returns:
        Tuple of (suggested price in minor units, reason)

    Raises:
        ValueError: If the text is not a JSON object of the expected shape
    """
    if text is None:
        raise ValueError("completion text is missing")

    payload = json.loads(text.strip())
    if not isinstance(payload, dict):
        raise ValueError("completion must be a JSON object")

    price = payload.get("suggestedPrice")
    if isinstance(price, bool) or not isinstance(price, (int, float)):
        raise ValueError("suggestedPrice must be a number")
    if isinstance(price, float) and not math.isfinite(price):
        raise ValueError("suggestedPrice must be finite")
    if price <= 0:
        raise ValueError("suggestedPrice must be > 0")

    reason = payload.get("reason")
    if not isinstance(reason, str):
        raise ValueError("reason must be a string")

    rounded = int(round(price))
    if rounded <= 0:
        raise ValueError("suggestedPrice rounds to zero")
    return rounded, reason


class RecommendationGateway:
    """Recommends a price for a prompt, caching every resolution.

    The external call runs on a worker pool and is abandoned after
    ``config.timeout_seconds``. Fallback values are cached like live ones so
    a failing upstream is not hit again for the same prompt.

    An abandoned call keeps its worker until the client gives up on its own,
    so the client timeout should not exceed ``config.timeout_seconds``. When
    every worker is stuck, new requests wait in the pool queue and usually
    spend their whole budget there before falling back. Size
    ``config.max_workers`` for the expected concurrency during an outage.
    """

    def __init__(
        self,
        client: CompletionClient,
        cache: PriceRecommendationCache,
        config: Optional[RecommendationConfig] = None,
        request_log: Optional[RecommendationLog] = None
    ):
        self.client = client
        self.cache = cache
        self.config = config or RecommendationConfig()
        self.request_log = request_log
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_workers,
            thread_name_prefix="recommendation"
        )

    def recommend(self, prompt: str, email: Optional[str] = None) -> Recommendation:
        """Return a price recommendation for a prompt.

        Args:
            prompt: Free-text description of the customer and product
            email: Requesting user, recorded in the request log

        Returns:
            Recommendation tagged cache, live or fallback

        Raises:
            ValidationError: If the prompt is missing or blank
        """
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValidationError("Missing prompt")

        email = email or ANONYMOUS_EMAIL
        key = normalize_prompt_key(prompt, self.config.prompt_key_length)

        cached = self.cache.get(key)
        if cached is not None:
            result = Recommendation(cached.suggested_price, cached.reason, RecommendationSource.CACHE)
        else:
            result = self._resolve(prompt)
            self.cache.put(key, RecommendationCacheEntry(
                key=key,
                suggested_price=result.suggested_price,
                reason=result.reason,
                source=result.source,
                created_at=datetime.now(timezone.utc).timestamp()
            ))

        self._record(email, result)
        return result

    def _resolve(self, prompt: str) -> Recommendation:
        future = self._executor.submit(
            self.client.complete,
            prompt,
            self.config.model,
            self.config.max_tokens
        )
        try:
            text = future.result(timeout=self.config.timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            logger.warning(
                "Recommender timed out after %.1fs, applying fallback price",
                self.config.timeout_seconds
            )
            return self._fallback()
        except Exception as e:
            logger.warning("Recommender call failed, applying fallback price: %s", e)
            return self._fallback()

        try:
            price, reason = parse_recommendation(text)
        except (ValueError, OverflowError) as e:
            logger.warning("Recommender response could not be parsed, applying fallback price: %s", e)
            return self._fallback()

        return Recommendation(price, reason, RecommendationSource.LIVE)

    def _fallback(self) -> Recommendation:
        return Recommendation(
            self.config.fallback_price,
            self.config.fallback_reason,
            RecommendationSource.FALLBACK
        )

    def _record(self, email: str, result: Recommendation) -> None:
        if self.request_log is None:
            return
        record = RecommendationRequestRecord(
            timestamp=datetime.now(timezone.utc),
            email=email,
            source=result.source,
            suggested_price=result.suggested_price,
            reason=result.reason
        )
        try:
            self.request_log.append(record)
        except Exception:
            logger.exception("Failed to write recommendation request log for %s", email)

    def close(self) -> None:
        """Stop the worker pool without waiting for abandoned calls."""
        self._executor.shutdown(wait=False)
