import os
import smtplib
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol

import structlog

from billing.models import Subscription

logger = structlog.get_logger(__name__)

SUBSCRIPTION_CREATED = "subscription.created"
SUBSCRIPTION_ACTIVATED = "subscription.activated"
SUBSCRIPTION_RENEWED = "subscription.renewed"
SUBSCRIPTION_TIER_CHANGED = "subscription.tier_changed"
SUBSCRIPTION_CANCELLED = "subscription.cancelled"
RENEWAL_REMINDER = "subscription.renewal_reminder"


@dataclass(frozen=True)
class LifecycleEvent:
    name: str
    subscription: Subscription
    data: dict = field(default_factory=dict)


class NotificationDispatcher(Protocol):
    def send_subscription_created(self, subscription: Subscription) -> None: ...

    def send_renewal_reminder(self, subscription: Subscription, days_until: int) -> None: ...

    def send_cancelled(self, subscription: Subscription) -> None: ...


class LogNotificationDispatcher:
    """Records what would have been emailed. Used when SMTP is not configured."""

    def send_subscription_created(self, subscription):
        logger.info("email_subscription_created", subscription_id=subscription.id)

    def send_renewal_reminder(self, subscription, days_until):
        logger.info(
            "email_renewal_reminder",
            subscription_id=subscription.id,
            days_until=days_until,
        )

    def send_cancelled(self, subscription):
        logger.info("email_subscription_cancelled", subscription_id=subscription.id)


class SmtpNotificationDispatcher:
    def __init__(self, host, port, user, password, sender):
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender

    @classmethod
    def from_env(cls):
        return cls(
            host=os.getenv("SMTP_HOST", "smtp.gmail.com"),
            port=int(os.getenv("SMTP_PORT", "587")),
            user=os.getenv("SMTP_USER", ""),
            password=os.getenv("SMTP_PASSWORD", ""),
            sender=os.getenv("EMAIL_FROM", os.getenv("SMTP_USER", "")),
        )

    def _send(self, recipient, subject, body):
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self.sender
        msg["To"] = recipient
        msg.attach(MIMEText(body, "plain"))

        with smtplib.SMTP(self.host, self.port) as server:
            server.starttls()
            server.login(self.user, self.password)
            server.sendmail(self.sender, recipient, msg.as_string())

    def send_subscription_created(self, subscription):
        title = subscription.product.title
        self._send(
            subscription.user.email,
            f"Subscription Activated - {title}",
            f"Your {subscription.tier} subscription to {title} is active.\n"
            f"Reference: {subscription.subscription_reference}\n"
            f"Next billing date: {subscription.next_billing_date:%Y-%m-%d}\n",
        )

    def send_renewal_reminder(self, subscription, days_until):
        title = subscription.product.title
        self._send(
            subscription.user.email,
            f"Subscription Renewal Reminder - {title}",
            f"Your {subscription.tier} subscription to {title} renews in {days_until} days, "
            f"on {subscription.next_billing_date:%Y-%m-%d}.\n"
            f"Amount: {subscription.currency} {subscription.price}\n",
        )

    def send_cancelled(self, subscription):
        title = subscription.product.title
        self._send(
            subscription.user.email,
            f"Subscription Cancelled - {title}",
            f"Your subscription to {title} has been cancelled.\n"
            f"Reference: {subscription.subscription_reference}\n",
        )


def get_dispatcher() -> NotificationDispatcher:
    if os.getenv("SMTP_USER"):
        return SmtpNotificationDispatcher.from_env()
    return LogNotificationDispatcher()


class NotificationSubscriber:
    """Turns lifecycle events into emails. Delivery failures are logged, never raised."""

    def __init__(self, dispatcher: NotificationDispatcher):
        self.dispatcher = dispatcher

    def handle(self, events):
        for event in events:
            try:
                self._dispatch(event)
            except Exception as e:
                logger.error(
                    "notification_failed",
                    event=event.name,
                    subscription_id=event.subscription.id,
                    error=str(e),
                )

    def _dispatch(self, event):
        if event.name in (SUBSCRIPTION_CREATED, SUBSCRIPTION_TIER_CHANGED):
            self.dispatcher.send_subscription_created(event.subscription)
        elif event.name == RENEWAL_REMINDER:
            self.dispatcher.send_renewal_reminder(event.subscription, event.data["days_until"])
        elif event.name == SUBSCRIPTION_CANCELLED:
            self.dispatcher.send_cancelled(event.subscription)
