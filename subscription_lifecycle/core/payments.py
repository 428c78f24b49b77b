"""
Payment event processing.

Turns payment-provider status events into plan change ledger entries and
customer notifications.

Transition rules:
1. READY / IN_PROGRESS / WAITING_FOR_DEPOSIT - pending entry for the
   provisionally purchased plan, no notification
2. DONE - entry completed with the purchased plan, success notification
3. CANCELED / ABORTED / EXPIRED - entry failed with the plan unchanged,
   failure notification
4. PARTIAL_CANCELED - entry failed with the plan unchanged, partial
   cancellation notification
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from subscription_lifecycle.config.loader import PlanThresholds
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
from .plans import plan_for_amount

logger = logging.getLogger(__name__)

PAYMENT_STATUS_CHANGED = "PAYMENT_STATUS_CHANGED"


class ProviderStatus(Enum):
    """Lifecycle label the payment provider attaches to a transaction."""
    READY = "READY"
    IN_PROGRESS = "IN_PROGRESS"
    WAITING_FOR_DEPOSIT = "WAITING_FOR_DEPOSIT"
    DONE = "DONE"
    CANCELED = "CANCELED"
    PARTIAL_CANCELED = "PARTIAL_CANCELED"
    ABORTED = "ABORTED"
    EXPIRED = "EXPIRED"


IN_FLIGHT_STATUSES = frozenset({
    ProviderStatus.READY,
    ProviderStatus.IN_PROGRESS,
    ProviderStatus.WAITING_FOR_DEPOSIT,
})
FAILED_STATUSES = frozenset({
    ProviderStatus.CANCELED,
    ProviderStatus.ABORTED,
    ProviderStatus.EXPIRED,
})


@dataclass(frozen=True)
class PaymentEvent:
    """Validated payment status event.

    ``status`` is None when the provider sent a status this processor does
    not know; ``raw_status`` always holds the original label.
    """
    event_type: str
    payment_key: str
    raw_status: str
    status: Optional[ProviderStatus]
    total_amount: int
    user_email: str
    user_id: str
    created_at: Optional[str] = None
    order_id: Optional[str] = None
    currency: Optional[str] = None
    method: Optional[str] = None
    order_name: Optional[str] = None
    approved_at: Optional[str] = None
    receipt_url: Optional[str] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


def parse_payment_event(body: Any) -> PaymentEvent:
    """Validate a webhook body and build a PaymentEvent.

    Raises:
        ValidationError: If eventType or data is missing, the user email
            cannot be resolved, or required payment fields are malformed
    """
    if not isinstance(body, dict):
        raise ValidationError("Webhook body must be a JSON object")

    event_type = body.get("eventType")
    if not event_type or not isinstance(event_type, str):
        raise ValidationError("Missing eventType")

    data = body.get("data")
    if not data or not isinstance(data, dict):
        raise ValidationError("Missing data")

    metadata = data.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise ValidationError("data.metadata must be an object")
    customer = data.get("customer") or {}
    if not isinstance(customer, dict):
        raise ValidationError("data.customer must be an object")

    user_email = customer.get("email") or metadata.get("userEmail")
    if not user_email or not isinstance(user_email, str):
        raise ValidationError("User email required")

    payment_key = data.get("paymentKey")
    if not payment_key or not isinstance(payment_key, str):
        raise ValidationError("Missing data.paymentKey")

    raw_status = data.get("status")
    if not raw_status or not isinstance(raw_status, str):
        raise ValidationError("Missing data.status")

    total_amount = data.get("totalAmount")
    if isinstance(total_amount, bool) or not isinstance(total_amount, (int, float)):
        raise ValidationError("data.totalAmount must be a number")
    if isinstance(total_amount, float) and not math.isfinite(total_amount):
        raise ValidationError("data.totalAmount must be finite")
    if total_amount < 0:
        raise ValidationError("data.totalAmount must be >= 0")

    try:
        status: Optional[ProviderStatus] = ProviderStatus(raw_status)
    except ValueError:
        status = None

    receipt = data.get("receipt") if isinstance(data.get("receipt"), dict) else {}
    failure = data.get("failure") if isinstance(data.get("failure"), dict) else {}

    return PaymentEvent(
        event_type=event_type,
        payment_key=payment_key,
        raw_status=raw_status,
        status=status,
        total_amount=int(total_amount),
        user_email=user_email,
        user_id=str(metadata.get("userId") or user_email),
        created_at=body.get("createdAt"),
        order_id=data.get("orderId"),
        currency=data.get("currency"),
        method=data.get("method"),
        order_name=data.get("orderName"),
        approved_at=data.get("approvedAt"),
        receipt_url=receipt.get("url"),
        failure_code=failure.get("code"),
        failure_message=failure.get("message"),
        metadata=metadata
    )


class ProcessingOutcome(Enum):
    """What the processor did with an event."""
    RECORDED = "recorded"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    NOTIFIED = "notified"


@dataclass(frozen=True)
class ProcessingResult:
    """Result of processing one payment event."""
    outcome: ProcessingOutcome
    event_type: str
    status: str
    entry: Optional[PlanChangeLogEntry] = None


class PaymentEventProcessor:
    """Drives the plan change ledger from payment provider events.

    Events for the same payment are processed one at a time. A terminal
    event for a payment that already has a terminal ledger entry is a
    redelivery: it is acknowledged without a new entry or notification.
    """

    def __init__(
        self,
        ledger: PlanChangeLedger,
        notifier: Notifier,
        thresholds: Optional[PlanThresholds] = None,
        payment_method: str = "toss"
    ):
        self.ledger = ledger
        self.notifier = notifier
        self.thresholds = thresholds or PlanThresholds()
        self.payment_method = payment_method
        self._payment_locks = KeyedLocks()
        self._handlers = {
            ProviderStatus.READY: self._handle_in_flight,
            ProviderStatus.IN_PROGRESS: self._handle_in_flight,
            ProviderStatus.WAITING_FOR_DEPOSIT: self._handle_in_flight,
            ProviderStatus.DONE: self._handle_done,
            ProviderStatus.CANCELED: self._handle_failed,
            ProviderStatus.ABORTED: self._handle_failed,
            ProviderStatus.EXPIRED: self._handle_failed,
            ProviderStatus.PARTIAL_CANCELED: self._handle_partial_cancel,
        }

    def process_payload(self, body: Any) -> ProcessingResult:
        """Validate a raw webhook body and process it."""
        return self.process(parse_payment_event(body))

    def process(self, event: PaymentEvent) -> ProcessingResult:
        """Record a payment event in the ledger.

        Raises:
            PersistenceError: If the ledger store failed; the event should
                be redelivered
        """
        if event.event_type != PAYMENT_STATUS_CHANGED:
            logger.info("Ignoring webhook event type %s for payment %s",
                        event.event_type, event.payment_key)
            return self._result(ProcessingOutcome.IGNORED, event)
        if event.status is None:
            logger.warning("Ignoring unknown payment status %s for payment %s",
                           event.raw_status, event.payment_key)
            return self._result(ProcessingOutcome.IGNORED, event)

        logger.info("Payment %s changed to %s", event.payment_key, event.raw_status)
        try:
            with self._payment_locks.hold(event.payment_key):
                if event.status not in IN_FLIGHT_STATUSES and self.ledger.is_finalized(event.payment_key):
                    logger.info("Payment %s already finalized, skipping redelivered %s event",
                                event.payment_key, event.raw_status)
                    return self._result(ProcessingOutcome.DUPLICATE, event)
                entry, notification = self._handlers[event.status](event)
        except PersistenceError:
            logger.error("Ledger write failed for payment %s (%s %s)",
                         event.payment_key, event.event_type, event.raw_status)
            raise

        if notification is not None:
            self._notify(notification)
        return self._result(ProcessingOutcome.RECORDED, event, entry)

    def _handle_in_flight(self, event: PaymentEvent):
        from_plan = self.ledger.current_plan(event.user_id)
        entry = self.ledger.create(self._new_entry(
            event,
            from_plan=from_plan,
            to_plan=self._purchased_plan(event, from_plan),
            reason=f"Payment {event.raw_status.lower()}",
            metadata={"status": event.raw_status}
        ))
        return entry, None

    def _handle_done(self, event: PaymentEvent):
        from_plan = self.ledger.current_plan(event.user_id)
        to_plan = self._purchased_plan(event, from_plan)
        entry = self.ledger.create(self._new_entry(
            event,
            from_plan=from_plan,
            to_plan=to_plan,
            reason="Payment succeeded",
            metadata={
                "method": event.method,
                "approvedAt": event.approved_at,
                "receiptUrl": event.receipt_url,
            }
        ))
        entry = self.ledger.update(entry.id, LedgerStatus.COMPLETED)
        return entry, Notification(event.user_email, "payment_succeeded", to_plan.value, event.total_amount)

    def _handle_failed(self, event: PaymentEvent):
        from_plan = self.ledger.current_plan(event.user_id)
        entry = self.ledger.create(self._new_entry(
            event,
            from_plan=from_plan,
            to_plan=from_plan,
            reason=f"Payment {event.raw_status.lower()}",
            metadata={
                "status": event.raw_status,
                "failureCode": event.failure_code,
                "failureMessage": event.failure_message,
            }
        ))
        entry = self.ledger.update(
            entry.id,
            LedgerStatus.FAILED,
            reason=event.failure_message or f"Payment {event.raw_status.lower()}"
        )
        return entry, Notification(event.user_email, "payment_failed", from_plan.value, event.total_amount)

    def _handle_partial_cancel(self, event: PaymentEvent):
        from_plan = self.ledger.current_plan(event.user_id)
        entry = self.ledger.create(self._new_entry(
            event,
            from_plan=from_plan,
            to_plan=from_plan,
            reason="Payment partially cancelled",
            metadata={"status": event.raw_status}
        ))
        entry = self.ledger.update(entry.id, LedgerStatus.FAILED, reason="Payment partially cancelled")
        return entry, Notification(event.user_email, "payment_partial_cancel", from_plan.value,
                                   event.total_amount)

    def _purchased_plan(self, event: PaymentEvent, from_plan: PlanType) -> PlanType:
        return plan_for_amount(event.total_amount, self.thresholds) or from_plan

    def _new_entry(self, event: PaymentEvent, from_plan: PlanType, to_plan: PlanType,
                   reason: str, metadata: Dict[str, Any]) -> NewPlanChangeLogEntry:
        context = {
            "orderId": event.order_id,
            "orderName": event.order_name,
            "amount": event.total_amount,
            "currency": event.currency,
        }
        context.update(metadata)
        return NewPlanChangeLogEntry(
            user_id=event.user_id,
            user_email=event.user_email,
            from_plan=from_plan,
            to_plan=to_plan,
            payment_method=self.payment_method,
            payment_id=event.payment_key,
            reason=reason,
            metadata={key: value for key, value in context.items() if value is not None}
        )

    def _notify(self, notification: Notification) -> None:
        try:
            self.notifier.send(notification)
        except Exception:
            logger.exception("Failed to send %s notification to %s",
                             notification.event_type, notification.user_email)

    def _result(self, outcome: ProcessingOutcome, event: PaymentEvent,
                entry: Optional[PlanChangeLogEntry] = None) -> ProcessingResult:
        return ProcessingResult(outcome, event.event_type, event.raw_status, entry)
