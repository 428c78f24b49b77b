"""
Customer notifications for terminal payment outcomes.

Email delivery is an external collaborator; this module defines the payload
and the interface the payment processor calls.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    """Payload handed to the email sender."""
    user_email: str
    event_type: str
    plan_name: str
    amount: Optional[int] = None
    currency: Optional[str] = None


class Notifier(ABC):
    """Sends payment outcome notifications to customers."""

    @abstractmethod
    def send(self, notification: Notification) -> None:
        """Deliver a notification. May raise on delivery failure."""


class LoggingNotifier(Notifier):
    """Notifier that only writes the notification to the log."""

    def send(self, notification: Notification) -> None:
        amount = _format_amount(notification.amount, notification.currency)
        logger.info(
            "Notification to %s: type=%s plan=%s amount=%s",
            notification.user_email,
            notification.event_type,
            notification.plan_name,
            amount
        )


def _format_amount(amount: Optional[int], currency: Optional[str]) -> str:
    if amount is None:
        return "-"
    if currency is None or currency.upper() == "KRW":
        return f"₩{amount:,}"
    return f"{amount:,} {currency.upper()}"
