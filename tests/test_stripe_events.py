"""
Tests for Stripe event processing.

Covers event validation, the Stripe event rules, event-id deduplication and
Stripe-Signature verification at the ingress.
"""
import hashlib
import hmac
import json
import time

import pytest

from subscription_lifecycle.config.loader import DEFAULT_STRIPE_PRICE_PLANS
from subscription_lifecycle.core.errors import ValidationError
from subscription_lifecycle.core.ledger import PlanChangeLedger
from subscription_lifecycle.core.notifications import Notifier
from subscription_lifecycle.core.payments import PaymentEventProcessor, ProcessingOutcome
from subscription_lifecycle.core.stripe_events import (
    StripeEventProcessor,
    StripeEventType,
    parse_stripe_event,
)
from subscription_lifecycle.core.webhook import StripeWebhookIngress
from subscription_lifecycle.storage.models import ChangeType, LedgerStatus, PlanType
from subscription_lifecycle.storage.repository import InMemoryLedgerStore

SECRET = "whsec_stripe_test"
EMAIL = "user1@example.com"


class RecordingNotifier(Notifier):
    """Notifier that keeps every notification."""

    def __init__(self):
        self.sent = []

    def send(self, notification):
        self.sent.append(notification)


def payment_intent_event(event_type="payment_intent.succeeded", event_id="evt_pi_1",
                         intent_id="pi_1", **overrides):
    obj = {
        "id": intent_id,
        "object": "payment_intent",
        "amount": 2900,
        "currency": "usd",
        "status": "succeeded",
        "receipt_email": EMAIL,
        "payment_method": "pm_card_visa",
        "metadata": {},
    }
    obj.update(overrides)
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def subscription_event(event_type="customer.subscription.created", event_id="evt_sub_1",
                       price_id="price_pro_monthly", **overrides):
    obj = {
        "id": "sub_1",
        "object": "subscription",
        "status": "active",
        "currency": "usd",
        "metadata": {"userEmail": EMAIL},
        "items": {"data": [{"price": {"id": price_id, "recurring": {"interval": "month"}}}]},
    }
    obj.update(overrides)
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def invoice_event(event_type="invoice.payment_failed", event_id="evt_in_1", **overrides):
    obj = {
        "id": "in_1",
        "object": "invoice",
        "customer_email": EMAIL,
        "subscription": "sub_1",
        "amount_due": 9900,
        "amount_paid": 0,
        "attempt_count": 2,
        "currency": "usd",
    }
    obj.update(overrides)
    return {"id": event_id, "type": event_type, "data": {"object": obj}}


def stripe_signature(secret, payload, timestamp=None):
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


class TestParseStripeEvent:
    """Test structural validation of Stripe event bodies."""

    def test_valid_event(self):
        event = parse_stripe_event(payment_intent_event())

        assert event.type == StripeEventType.PAYMENT_SUCCEEDED
        assert event.object_id == "pi_1"
        assert event.user_email == EMAIL
        assert event.user_id == EMAIL
        assert event.amount == 2900
        assert event.currency == "USD"

    def test_user_id_from_metadata(self):
        event = parse_stripe_event(payment_intent_event(metadata={"userId": "user_007"}))
        assert event.user_id == "user_007"

    def test_email_from_customer_details(self):
        event = parse_stripe_event(payment_intent_event(
            receipt_email=None,
            customer_details={"email": "details@example.com"}
        ))
        assert event.user_email == "details@example.com"

    def test_unknown_type_kept_raw(self):
        event = parse_stripe_event(payment_intent_event(event_type="charge.dispute.created"))
        assert event.type is None
        assert event.raw_type == "charge.dispute.created"

    @pytest.mark.parametrize("body, message", [
        ("not a dict", "JSON object"),
        ({"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1"}}}, "event id"),
        ({"id": "evt_1", "data": {"object": {"id": "pi_1"}}}, "event type"),
        ({"id": "evt_1", "type": "payment_intent.succeeded", "data": {}}, "data.object"),
        ({"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": {}}}, "data.object.id"),
        (payment_intent_event(amount="2900"), "amount"),
        (payment_intent_event(amount=-5), "amount"),
        (payment_intent_event(amount=float("nan")), "amount"),
    ])
    def test_invalid_events_rejected(self, body, message):
        with pytest.raises(ValidationError, match=message):
            parse_stripe_event(body)


class TestStripeEventProcessor:
    """Test the Stripe event rules against an in-memory ledger."""

    def setup_method(self):
        self.ledger = PlanChangeLedger(InMemoryLedgerStore())
        self.notifier = RecordingNotifier()
        self.processor = StripeEventProcessor(self.ledger, self.notifier,
                                              price_plans=DEFAULT_STRIPE_PRICE_PLANS)

    def test_payment_succeeded_uses_metadata_plan(self):
        result = self.processor.process_payload(payment_intent_event(metadata={"plan": "pro"}))

        assert result.outcome == ProcessingOutcome.RECORDED
        entry = result.entry
        assert entry.status == LedgerStatus.COMPLETED
        assert entry.payment_method == "stripe"
        assert entry.payment_id == "pi_1"
        assert (entry.from_plan, entry.to_plan) == (PlanType.FREE, PlanType.PRO)
        assert entry.metadata["stripeEventId"] == "evt_pi_1"
        assert entry.metadata["amount"] == 2900
        assert self.ledger.current_plan(EMAIL) == PlanType.PRO

        notification = self.notifier.sent[0]
        assert (notification.event_type, notification.plan_name) == ("payment_succeeded", "pro")
        assert (notification.amount, notification.currency) == (2900, "USD")

    def test_one_time_payment_defaults_to_basic(self):
        result = self.processor.process_payload(payment_intent_event())
        assert result.entry.to_plan == PlanType.BASIC

    def test_payment_failed_keeps_plan(self):
        result = self.processor.process_payload(payment_intent_event(
            event_type="payment_intent.payment_failed",
            status="requires_payment_method",
            last_payment_error={"message": "Your card was declined."}
        ))

        assert result.entry.status == LedgerStatus.FAILED
        assert result.entry.to_plan == result.entry.from_plan == PlanType.FREE
        assert result.entry.reason == "Payment failed: Your card was declined."
        assert self.notifier.sent[0].event_type == "payment_failed"

    def test_subscription_created_maps_price_to_plan(self):
        result = self.processor.process_payload(subscription_event())

        entry = result.entry
        assert entry.status == LedgerStatus.COMPLETED
        assert entry.to_plan == PlanType.PRO
        assert entry.change_type == ChangeType.REACTIVATION
        assert entry.metadata["priceId"] == "price_pro_monthly"
        assert entry.metadata["interval"] == "month"
        assert entry.metadata["priceDelta"] == 99
        assert self.notifier.sent[0].event_type == "subscription_created"

    def test_unknown_price_uses_default_plan(self):
        result = self.processor.process_payload(subscription_event(price_id="price_legacy"))
        assert result.entry.to_plan == PlanType.BASIC

    def test_subscription_update_without_plan_change_ignored(self):
        self.processor.process_payload(subscription_event())
        result = self.processor.process_payload(subscription_event(
            event_type="customer.subscription.updated",
            event_id="evt_sub_2"
        ))

        assert result.outcome == ProcessingOutcome.IGNORED
        assert len(self.ledger.find_by_payment("sub_1")) == 1
        assert len(self.notifier.sent) == 1

    def test_subscription_upgrade(self):
        self.processor.process_payload(subscription_event(price_id="price_basic_monthly"))
        result = self.processor.process_payload(subscription_event(
            event_type="customer.subscription.updated",
            event_id="evt_sub_2",
            price_id="price_enterprise_yearly"
        ))

        assert result.entry.change_type == ChangeType.UPGRADE
        assert result.entry.metadata["priceDelta"] == 299 - 29
        assert self.ledger.current_plan(EMAIL) == PlanType.ENTERPRISE

    def test_subscription_deleted_returns_to_free(self):
        self.processor.process_payload(subscription_event())
        result = self.processor.process_payload(subscription_event(
            event_type="customer.subscription.deleted",
            event_id="evt_sub_3",
            status="canceled",
            canceled_at=1720600000,
            cancellation_details={"reason": "cancellation_requested"}
        ))

        assert result.entry.to_plan == PlanType.FREE
        assert result.entry.change_type == ChangeType.CANCELLATION
        assert result.entry.metadata["cancelReason"] == "cancellation_requested"
        assert self.ledger.current_plan(EMAIL) == PlanType.FREE
        assert self.notifier.sent[-1].event_type == "subscription_cancelled"

    def test_invoice_paid_only_notifies(self):
        self.processor.process_payload(subscription_event())
        result = self.processor.process_payload(invoice_event(
            event_type="invoice.payment_succeeded",
            amount_paid=9900
        ))

        assert result.outcome == ProcessingOutcome.NOTIFIED
        assert result.entry is None
        assert self.ledger.find_by_payment("in_1") == []
        notification = self.notifier.sent[-1]
        assert (notification.event_type, notification.plan_name, notification.amount) == (
            "recurring_payment_succeeded", "pro", 9900
        )

    def test_invoice_failed_records_failure(self):
        self.processor.process_payload(subscription_event())
        result = self.processor.process_payload(invoice_event())

        assert result.entry.status == LedgerStatus.FAILED
        assert result.entry.payment_id == "in_1"
        assert result.entry.reason == "Recurring payment failed"
        assert result.entry.metadata["attemptCount"] == 2
        assert self.ledger.current_plan(EMAIL) == PlanType.PRO

    def test_one_off_invoice_failure_ignored(self):
        result = self.processor.process_payload(invoice_event(subscription=None))

        assert result.outcome == ProcessingOutcome.IGNORED
        assert self.ledger.query() == []

    def test_redelivered_event_is_duplicate(self):
        body = subscription_event()

        first = self.processor.process_payload(body)
        second = self.processor.process_payload(body)

        assert first.outcome == ProcessingOutcome.RECORDED
        assert second.outcome == ProcessingOutcome.DUPLICATE
        assert len(self.ledger.find_by_payment("sub_1")) == 1
        assert len(self.notifier.sent) == 1

    def test_unhandled_type_ignored(self):
        result = self.processor.process_payload(payment_intent_event(event_type="charge.refunded"))

        assert result.outcome == ProcessingOutcome.IGNORED
        assert self.ledger.query() == []

    def test_event_without_user_ignored(self):
        body = subscription_event(metadata={})

        result = self.processor.process_payload(body)

        assert result.outcome == ProcessingOutcome.IGNORED
        assert self.ledger.query() == []
        assert self.notifier.sent == []

    def test_subscription_without_price_rejected(self):
        with pytest.raises(ValidationError, match="no items"):
            self.processor.process_payload(subscription_event(items={"data": []}))
        assert self.ledger.query() == []

    def test_shares_ledger_with_toss_processor(self):
        toss = PaymentEventProcessor(self.ledger, self.notifier)
        self.processor.process_payload(subscription_event(price_id="price_basic_monthly"))
        toss.process_payload({
            "eventType": "PAYMENT_STATUS_CHANGED",
            "data": {
                "paymentKey": "pay_001",
                "status": "DONE",
                "totalAmount": 390000,
                "customer": {"email": EMAIL},
            },
        })

        assert self.ledger.current_plan(EMAIL) == PlanType.ENTERPRISE
        assert {entry.payment_method for entry in self.ledger.query()} == {"stripe", "toss"}

    def test_object_locks_released_after_processing(self):
        for index in range(20):
            self.processor.process_payload(payment_intent_event(
                event_id=f"evt_{index}",
                intent_id=f"pi_{index}"
            ))

        assert len(self.ledger.query()) == 20
        assert len(self.processor._object_locks) == 0


class TestStripeWebhookIngress:
    """Test Stripe-Signature verification and status mapping."""

    def setup_method(self):
        self.ledger = PlanChangeLedger(InMemoryLedgerStore())
        self.processor = StripeEventProcessor(self.ledger, RecordingNotifier(),
                                              price_plans=DEFAULT_STRIPE_PRICE_PLANS)
        self.ingress = StripeWebhookIngress(self.processor, signing_secret=SECRET)

    def test_signed_event_processed(self):
        payload = json.dumps(subscription_event())

        response = self.ingress.handle(payload.encode("utf-8"), stripe_signature(SECRET, payload))

        assert response.status_code == 200
        assert response.body["eventType"] == "customer.subscription.created"
        assert response.body["outcome"] == "recorded"
        assert self.ledger.current_plan(EMAIL) == PlanType.PRO

    def test_wrong_secret_rejected(self):
        payload = json.dumps(subscription_event())

        response = self.ingress.handle(payload, stripe_signature("whsec_other", payload))

        assert response.status_code == 401
        assert self.ledger.query() == []

    def test_stale_timestamp_rejected(self):
        payload = json.dumps(subscription_event())
        signature = stripe_signature(SECRET, payload, timestamp=int(time.time()) - 3600)

        assert self.ingress.handle(payload, signature).status_code == 401

    def test_missing_signature_rejected(self):
        assert self.ingress.handle(json.dumps(subscription_event())).status_code == 401

    def test_malformed_event_rejected(self):
        payload = json.dumps({"id": "evt_1", "type": "customer.subscription.created"})

        response = self.ingress.handle(payload, stripe_signature(SECRET, payload))

        assert response.status_code == 400
        assert self.ledger.query() == []

    def test_unsigned_mode_accepts_decoded_body(self):
        ingress = StripeWebhookIngress(self.processor)
        response = ingress.handle(payment_intent_event())

        assert response.status_code == 200
        assert response.body["outcome"] == "recorded"
