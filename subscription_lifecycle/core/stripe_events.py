"""
Stripe event processing.

Turns Stripe webhook events into plan change ledger entries and customer
notifications. Every entry records the Stripe event id, which is the
deduplication key for redelivered events.

Event rules:
1. payment_intent.succeeded - completed entry for the plan named in the
   intent metadata, or the default plan for one-time payments
2. payment_intent.payment_failed - failed entry, plan unchanged
3. customer.subscription.created - completed entry for the subscribed
   price's plan
4. customer.subscription.updated - completed entry only when the price's
   plan differs from the current plan
5. customer.subscription.deleted - completed entry back to free
6. invoice.payment_succeeded - notification only, no entry
7. invoice.payment_failed - failed entry for subscription invoices, plan
   unchanged
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from subscription_lifecycle.storage.models import (
    LedgerStatus,
    NewPlanChangeLogEntry,
    PlanChangeLogEntry,
    PlanType,
)

from .errors import PersistenceError, ValidationError
from .ledger import PlanChangeLedger
from .locks import KeyedLocks
from .notifications import Notification, Notifier
from .payments import ProcessingOutcome, ProcessingResult
from .plans import LIST_PRICE_CURRENCY, list_price_delta

logger = logging.getLogger(__name__)

STRIPE_PAYMENT_METHOD = "stripe"
EVENT_ID_KEY = "stripeEventId"


class StripeEventType(Enum):
    """Stripe event types that affect a user's plan."""
    PAYMENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_FAILED = "payment_intent.payment_failed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAID = "invoice.payment_succeeded"
    INVOICE_FAILED = "invoice.payment_failed"


@dataclass(frozen=True)
class StripeEvent:
    """Validated Stripe event envelope.

    ``type`` is None for event types this processor does not handle.
    ``user_email`` is None when the event object does not identify a user.
    """
    event_id: str
    raw_type: str
    type: Optional[StripeEventType]
    object_id: str
    user_email: Optional[str]
    user_id: Optional[str]
    amount: Optional[int] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def metadata(self) -> Dict[str, Any]:
        metadata = self.data.get("metadata")
        return metadata if isinstance(metadata, dict) else {}

    @property
    def currency(self) -> Optional[str]:
        currency = self.data.get("currency")
        return currency.upper() if isinstance(currency, str) else None


def _amount(value: Any, name: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"data.object.{name} must be a number")
    if isinstance(value, float) and not math.isfinite(value):
        raise ValidationError(f"data.object.{name} must be finite")
    if value < 0:
        raise ValidationError(f"data.object.{name} must be >= 0")
    return int(value)


def _first_email(obj: Dict[str, Any]) -> Optional[str]:
    metadata = obj.get("metadata") if isinstance(obj.get("metadata"), dict) else {}
    details = obj.get("customer_details") if isinstance(obj.get("customer_details"), dict) else {}
    customer = obj.get("customer") if isinstance(obj.get("customer"), dict) else {}
    for candidate in (
        metadata.get("userEmail"),
        obj.get("receipt_email"),
        obj.get("customer_email"),
        details.get("email"),
        customer.get("email"),
    ):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


def parse_stripe_event(body: Any) -> StripeEvent:
    """Validate a Stripe webhook body and build a StripeEvent.

    Raises:
        ValidationError: If the event id, type or data object is missing or
            malformed
    """
    if not isinstance(body, dict):
        raise ValidationError("Webhook body must be a JSON object")

    event_id = body.get("id")
    if not event_id or not isinstance(event_id, str):
        raise ValidationError("Missing event id")

    raw_type = body.get("type")
    if not raw_type or not isinstance(raw_type, str):
        raise ValidationError("Missing event type")

    data = body.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    if not isinstance(obj, dict):
        raise ValidationError("Missing data.object")

    object_id = obj.get("id")
    if not object_id or not isinstance(object_id, str):
        raise ValidationError("Missing data.object.id")

    try:
        event_type: Optional[StripeEventType] = StripeEventType(raw_type)
    except ValueError:
        event_type = None

    user_email = _first_email(obj)
    metadata = obj.get("metadata") if isinstance(obj.get("metadata"), dict) else {}
    user_id = metadata.get("userId") or user_email

    return StripeEvent(
        event_id=event_id,
        raw_type=raw_type,
        type=event_type,
        object_id=object_id,
        user_email=user_email,
        user_id=str(user_id) if user_id else None,
        amount=_amount(obj.get("amount"), "amount"),
        data=obj
    )


class StripeEventProcessor:
    """Drives the plan change ledger from Stripe events.

    Events for the same Stripe object are processed one at a time. An event
    whose id is already recorded on one of the object's ledger entries is a
    redelivery and is acknowledged without a new entry or notification.
    """

    def __init__(
        self,
        ledger: PlanChangeLedger,
        notifier: Notifier,
        price_plans: Optional[Mapping[str, PlanType]] = None,
        default_plan: PlanType = PlanType.BASIC
    ):
        self.ledger = ledger
        self.notifier = notifier
        self.price_plans = dict(price_plans or {})
        self.default_plan = default_plan
        self._object_locks = KeyedLocks()
        self._handlers = {
            StripeEventType.PAYMENT_SUCCEEDED: self._handle_payment_succeeded,
            StripeEventType.PAYMENT_FAILED: self._handle_payment_failed,
            StripeEventType.SUBSCRIPTION_CREATED: self._handle_subscription_created,
            StripeEventType.SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            StripeEventType.SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
            StripeEventType.INVOICE_PAID: self._handle_invoice_paid,
            StripeEventType.INVOICE_FAILED: self._handle_invoice_failed,
        }

    def process_payload(self, body: Any) -> ProcessingResult:
        """Validate a raw Stripe webhook body and process it."""
        return self.process(parse_stripe_event(body))

    def process(self, event: StripeEvent) -> ProcessingResult:
        """Record a Stripe event in the ledger.

        Raises:
            ValidationError: If a subscription event carries no price
            PersistenceError: If the ledger store failed; the event should
                be redelivered
        """
        if event.type is None:
            logger.info("Ignoring unhandled Stripe event type %s (%s)", event.raw_type, event.event_id)
            return self._result(ProcessingOutcome.IGNORED, event)
        if event.user_id is None:
            logger.warning("No user found for Stripe event %s on %s", event.event_id, event.object_id)
            return self._result(ProcessingOutcome.IGNORED, event)

        logger.info("Stripe event %s received for %s", event.raw_type, event.object_id)
        try:
            with self._object_locks.hold(event.object_id):
                if self._already_recorded(event):
                    logger.info("Stripe event %s already recorded, skipping", event.event_id)
                    return self._result(ProcessingOutcome.DUPLICATE, event)
                entry, notification = self._handlers[event.type](event)
        except PersistenceError:
            logger.error("Ledger write failed for Stripe event %s (%s)", event.event_id, event.raw_type)
            raise

        if notification is not None:
            self._notify(notification)
        if entry is not None:
            return self._result(ProcessingOutcome.RECORDED, event, entry)
        if notification is not None:
            return self._result(ProcessingOutcome.NOTIFIED, event)
        return self._result(ProcessingOutcome.IGNORED, event)

    def _already_recorded(self, event: StripeEvent) -> bool:
        return any(
            entry.metadata.get(EVENT_ID_KEY) == event.event_id
            for entry in self.ledger.find_by_payment(event.object_id)
        )

    def _handle_payment_succeeded(self, event: StripeEvent):
        from_plan = self.ledger.current_plan(event.user_id)
        to_plan = self._metadata_plan(event) or self.default_plan
        entry = self._record(event, from_plan, to_plan, "Stripe payment succeeded", {
            "amount": event.amount,
            "currency": event.currency,
            "paymentMethodId": event.data.get("payment_method"),
        })
        entry = self.ledger.update(entry.id, LedgerStatus.COMPLETED)
        return entry, self._notification(event, "payment_succeeded", to_plan, event.amount)

    def _handle_payment_failed(self, event: StripeEvent):
        from_plan = self.ledger.current_plan(event.user_id)
        error = event.data.get("last_payment_error")
        message = error.get("message") if isinstance(error, dict) else None
        entry = self._record(event, from_plan, from_plan, "Stripe payment failed", {
            "amount": event.amount,
            "currency": event.currency,
            "error": message,
        })
        entry = self.ledger.update(
            entry.id,
            LedgerStatus.FAILED,
            reason=f"Payment failed: {message or 'Unknown error'}"
        )
        return entry, self._notification(event, "payment_failed", from_plan, event.amount)

    def _handle_subscription_created(self, event: StripeEvent):
        return self._subscription_change(event, "Stripe subscription created", "subscription_created")

    def _handle_subscription_updated(self, event: StripeEvent):
        if self._subscription_plan(event) == self.ledger.current_plan(event.user_id):
            logger.info("Subscription %s updated without a plan change", event.object_id)
            return None, None
        return self._subscription_change(event, "Stripe subscription updated", "subscription_updated")

    def _handle_subscription_deleted(self, event: StripeEvent):
        from_plan = self.ledger.current_plan(event.user_id)
        details = event.data.get("cancellation_details")
        entry = self._record(event, from_plan, PlanType.FREE, "Stripe subscription cancelled", {
            "subscriptionId": event.object_id,
            "cancelledAt": event.data.get("canceled_at"),
            "cancelReason": details.get("reason") if isinstance(details, dict) else None,
            "priceDelta": list_price_delta(from_plan, PlanType.FREE),
            "priceCurrency": LIST_PRICE_CURRENCY,
        })
        entry = self.ledger.update(entry.id, LedgerStatus.COMPLETED)
        return entry, self._notification(event, "subscription_cancelled", PlanType.FREE)

    def _handle_invoice_paid(self, event: StripeEvent):
        if not event.data.get("subscription"):
            return None, None
        plan = self.ledger.current_plan(event.user_id)
        amount = _amount(event.data.get("amount_paid"), "amount_paid")
        return None, self._notification(event, "recurring_payment_succeeded", plan, amount)

    def _handle_invoice_failed(self, event: StripeEvent):
        subscription_id = event.data.get("subscription")
        if not subscription_id:
            return None, None
        amount = _amount(event.data.get("amount_due"), "amount_due")
        from_plan = self.ledger.current_plan(event.user_id)
        entry = self._record(event, from_plan, from_plan, "Stripe recurring payment failed", {
            "invoiceId": event.object_id,
            "subscriptionId": subscription_id,
            "attemptCount": event.data.get("attempt_count"),
        })
        entry = self.ledger.update(entry.id, LedgerStatus.FAILED, reason="Recurring payment failed")
        return entry, self._notification(event, "recurring_payment_failed", from_plan, amount)

    def _subscription_change(self, event: StripeEvent, reason: str, notification_type: str):
        from_plan = self.ledger.current_plan(event.user_id)
        to_plan = self._subscription_plan(event)
        price = self._subscription_price(event)
        recurring = price.get("recurring") if isinstance(price.get("recurring"), dict) else {}
        entry = self._record(event, from_plan, to_plan, reason, {
            "subscriptionId": event.object_id,
            "priceId": price.get("id"),
            "interval": recurring.get("interval"),
            "subscriptionStatus": event.data.get("status"),
            "priceDelta": list_price_delta(from_plan, to_plan),
            "priceCurrency": LIST_PRICE_CURRENCY,
        })
        entry = self.ledger.update(entry.id, LedgerStatus.COMPLETED)
        return entry, self._notification(event, notification_type, to_plan)

    def _subscription_price(self, event: StripeEvent) -> Dict[str, Any]:
        items = event.data.get("items")
        lines = items.get("data") if isinstance(items, dict) else None
        if not lines or not isinstance(lines, list) or not isinstance(lines[0], dict):
            raise ValidationError(f"Subscription {event.object_id} has no items")
        price = lines[0].get("price")
        if not isinstance(price, dict) or not isinstance(price.get("id"), str):
            raise ValidationError(f"Subscription {event.object_id} has no price id")
        return price

    def _subscription_plan(self, event: StripeEvent) -> PlanType:
        price_id = self._subscription_price(event)["id"]
        plan = self.price_plans.get(price_id)
        if plan is None:
            logger.warning("Unknown Stripe price %s, assuming %s", price_id, self.default_plan.value)
            return self.default_plan
        return plan

    def _metadata_plan(self, event: StripeEvent) -> Optional[PlanType]:
        plan = event.metadata.get("plan")
        if plan is None:
            return None
        try:
            return PlanType.parse(plan)
        except ValueError:
            logger.warning("Ignoring unknown plan %r on %s", plan, event.object_id)
            return None

    def _record(self, event: StripeEvent, from_plan: PlanType, to_plan: PlanType,
                reason: str, metadata: Dict[str, Any]) -> PlanChangeLogEntry:
        context = {EVENT_ID_KEY: event.event_id, "stripeEventType": event.raw_type}
        context.update(metadata)
        return self.ledger.create(NewPlanChangeLogEntry(
            user_id=event.user_id,
            user_email=event.user_email or event.user_id,
            from_plan=from_plan,
            to_plan=to_plan,
            payment_method=STRIPE_PAYMENT_METHOD,
            payment_id=event.object_id,
            reason=reason,
            metadata={key: value for key, value in context.items() if value is not None}
        ))

    def _notification(self, event: StripeEvent, event_type: str, plan: PlanType,
                      amount: Optional[int] = None) -> Optional[Notification]:
        if event.user_email is None:
            return None
        return Notification(event.user_email, event_type, plan.value, amount, event.currency)

    def _notify(self, notification: Notification) -> None:
        try:
            self.notifier.send(notification)
        except Exception:
            logger.exception("Failed to send %s notification to %s",
                             notification.event_type, notification.user_email)

    def _result(self, outcome: ProcessingOutcome, event: StripeEvent,
                entry: Optional[PlanChangeLogEntry] = None) -> ProcessingResult:
        return ProcessingResult(outcome, event.raw_type, str(event.data.get("status") or ""), entry)
