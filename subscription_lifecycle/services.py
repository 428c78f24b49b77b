"""
Process-level wiring.

Builds the shared stores and components once at startup; callers pass the
resulting objects to whatever needs them.
"""

from dataclasses import dataclass
from typing import Optional

from subscription_lifecycle.config.loader import AppConfig
from subscription_lifecycle.core.cache import PriceRecommendationCache
from subscription_lifecycle.core.ledger import PlanChangeLedger
from subscription_lifecycle.core.notifications import LoggingNotifier, Notifier
from subscription_lifecycle.core.payments import PaymentEventProcessor
from subscription_lifecycle.core.recommendation import RecommendationGateway
from subscription_lifecycle.core.stripe_events import StripeEventProcessor
from subscription_lifecycle.core.webhook import StripeWebhookIngress, WebhookIngress
from subscription_lifecycle.sdk.openai_client import CompletionClient, OpenAICompletionClient
from subscription_lifecycle.storage.repository import (
    SqliteLedgerStore,
    SqliteRecommendationLog,
    initialize_schema,
)


@dataclass
class PaymentServices:
    """Payment-side components sharing one ledger store."""
    ledger: PlanChangeLedger
    processor: PaymentEventProcessor
    ingress: WebhookIngress
    stripe_processor: StripeEventProcessor
    stripe_ingress: StripeWebhookIngress


def build_payment_services(config: AppConfig, notifier: Optional[Notifier] = None) -> PaymentServices:
    """Create the SQLite-backed ledger with the Toss and Stripe processors.

    Args:
        config: Application configuration
        notifier: Notification sender, defaults to logging only
    """
    db_path = config.storage.database_path
    initialize_schema(db_path)

    ledger = PlanChangeLedger(SqliteLedgerStore(db_path))
    notifier = notifier or LoggingNotifier()
    processor = PaymentEventProcessor(
        ledger,
        notifier,
        thresholds=config.plans,
        payment_method=config.webhook.payment_method
    )
    stripe_processor = StripeEventProcessor(
        ledger,
        notifier,
        price_plans=config.stripe.price_plans,
        default_plan=config.stripe.default_plan
    )
    return PaymentServices(
        ledger=ledger,
        processor=processor,
        ingress=WebhookIngress(processor, signing_secret=config.webhook.signing_secret),
        stripe_processor=stripe_processor,
        stripe_ingress=StripeWebhookIngress(
            stripe_processor,
            signing_secret=config.stripe.signing_secret,
            tolerance_seconds=config.stripe.tolerance_seconds
        )
    )


def build_gateway(config: AppConfig, client: Optional[CompletionClient] = None) -> RecommendationGateway:
    """Create the recommendation gateway with its cache and request log.

    Args:
        config: Application configuration
        client: Completion client, defaults to OpenAI
    """
    db_path = config.storage.database_path
    initialize_schema(db_path)

    cache = PriceRecommendationCache(
        max_entries=config.cache.max_entries,
        ttl_seconds=config.cache.ttl_seconds
    )
    return RecommendationGateway(
        client or OpenAICompletionClient(timeout_seconds=config.recommendation.timeout_seconds),
        cache,
        config=config.recommendation,
        request_log=SqliteRecommendationLog(db_path)
    )
