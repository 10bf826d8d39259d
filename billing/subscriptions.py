"""Subscription lifecycle: create, pay, renew, change tier, cancel, remind.

Transitions persist through a ``SubscriptionStore`` and return a
``TransitionResult`` whose ``events`` are handed to a
``NotificationSubscriber`` by the caller. Nothing in here sends email.
"""

import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

import structlog
from dateutil.relativedelta import relativedelta

from billing.callbacks import CallbackNormalizer
from billing.config import GatewayConfig
from billing.errors import (
    BillingError,
    NotFound,
    PaymentInitiationError,
    PersistenceError,
    SubscriptionConflict,
    ValidationError,
)
from billing.gateway import PesapalClient
from billing.models import Order, Product, Subscription, User, as_utc
from billing.notifications import (
    RENEWAL_REMINDER,
    SUBSCRIPTION_ACTIVATED,
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_RENEWED,
    SUBSCRIPTION_TIER_CHANGED,
    LifecycleEvent,
)
from billing.repository import OrderStore, SubscriptionStore
from billing.schemas import TIERS, BillingAddress, CallbackResult, OrderStatus, PaymentOrder

logger = structlog.get_logger(__name__)

BILLING_PERIOD = relativedelta(months=1)
DEFAULT_ORDER_TIER = "basic"
PAYMENT_START_FAILED_REASON = "payment could not be started"


@dataclass
class TransitionResult:
    subscription: Subscription
    events: List[LifecycleEvent] = field(default_factory=list)
    redirect_url: Optional[str] = None
    order_tracking_id: Optional[str] = None


@dataclass
class ReminderSweepReport:
    three_day: int = 0
    seven_day: int = 0
    skipped: int = 0
    failed: int = 0
    events: List[LifecycleEvent] = field(default_factory=list)


@dataclass
class RenewalRunReport:
    renewed: int = 0
    payments_initiated: int = 0
    pending: int = 0
    failed: int = 0
    events: List[LifecycleEvent] = field(default_factory=list)


@dataclass
class CallbackOutcome:
    result: CallbackResult
    status: OrderStatus
    order_id: Optional[int] = None
    subscription_id: Optional[int] = None
    events: List[LifecycleEvent] = field(default_factory=list)


def generate_reference() -> str:
    alphabet = string.ascii_uppercase + string.digits
    token = "".join(secrets.choice(alphabet) for _ in range(8))
    return f"SUB-{token}-{int(time.time())}"


class SubscriptionLifecycleManager:
    def __init__(
        self,
        store: SubscriptionStore,
        client: PesapalClient,
        config: GatewayConfig,
        normalizer: CallbackNormalizer = None,
        orders: OrderStore = None,
        clock=None,
    ):
        self.store = store
        self.client = client
        self.config = config
        self.normalizer = normalizer or CallbackNormalizer(
            client, trust_confirmation_code=config.trust_confirmation_code
        )
        self.orders = orders
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._clock()

    # creation

    def _tier_price(self, product: Product, tier: str):
        if not product.is_subscription:
            raise ValidationError(
                "Product is not a subscription product", product_id=product.id
            )
        if tier not in TIERS:
            raise ValidationError(f"Unknown tier '{tier}'", tier=tier)
        price = product.tier_price(tier)
        if price is None:
            raise ValidationError(
                f"Tier '{tier}' does not exist for this product",
                product_id=product.id,
                tier=tier,
            )
        return price

    def _unique_reference(self) -> str:
        reference = generate_reference()
        while self.store.reference_exists(reference):
            reference = generate_reference()
        return reference

    def _build(self, user_id, product, tier, price, currency=None, payment_reference=None):
        now = self.now()
        subscription = Subscription(
            user_id=user_id,
            product_id=product.id,
            tier=tier,
            status="active",
            price=price,
            currency=currency or self.config.default_currency,
            subscription_reference=self._unique_reference(),
            payment_reference=payment_reference,
            started_at=now,
            next_billing_date=now + BILLING_PERIOD,
        )
        subscription = self.store.add(subscription)
        logger.info(
            "subscription_created",
            subscription_id=subscription.id,
            user_id=user_id,
            product_id=product.id,
            tier=tier,
            price=str(price),
        )
        return subscription

    def create(self, user: User, product: Product, tier: str) -> TransitionResult:
        price = self._tier_price(product, tier)

        existing = self.store.find_active(user.id, product.id)
        if existing is not None:
            raise SubscriptionConflict(
                "You already have an active subscription to this product",
                subscription_id=existing.id,
            )

        subscription = self._build(user.id, product, tier, price)
        return TransitionResult(
            subscription, [LifecycleEvent(SUBSCRIPTION_CREATED, subscription)]
        )

    # payment

    def _payment_order(self, subscription, reference, description) -> PaymentOrder:
        user = subscription.user
        return PaymentOrder(
            reference=reference,
            amount=subscription.price,
            currency=subscription.currency or self.config.default_currency,
            description=description,
            callback_url=self.config.confirmation_url,
            notification_id=self.config.notification_id,
            redirect_mode=self.config.redirect_mode,
            billing_address=BillingAddress.from_full_name(
                user.name, email=user.email, phone=user.phone
            ) if user is not None else None,
        )

    def initiate_payment(
        self,
        subscription: Subscription,
        reference: str = None,
        description: str = None,
    ) -> TransitionResult:
        if subscription.price == 0:
            return TransitionResult(subscription)

        title = subscription.product.title if subscription.product else subscription.product_id
        order = self._payment_order(
            subscription,
            reference or subscription.subscription_reference,
            description or f"Subscription: {title} ({subscription.tier})",
        )

        try:
            submitted = self.client.submit_order(order)
        except BillingError as e:
            logger.error(
                "subscription_payment_not_started",
                subscription_id=subscription.id,
                reference=order.reference,
                error=e.detail,
                error_type=type(e).__name__,
            )
            raise PaymentInitiationError(
                PaymentInitiationError.public_message,
                subscription_id=subscription.id,
                cause=e.detail,
            ) from e

        subscription.payment_reference = submitted.order_tracking_id
        self.store.save(subscription)
        logger.info(
            "subscription_payment_started",
            subscription_id=subscription.id,
            order_tracking_id=submitted.order_tracking_id,
        )
        return TransitionResult(
            subscription,
            redirect_url=submitted.redirect_url,
            order_tracking_id=submitted.order_tracking_id,
        )

    def subscribe(self, user: User, product: Product, tier: str) -> TransitionResult:
        created = self.create(user, product, tier)
        subscription = created.subscription

        try:
            payment = self.initiate_payment(subscription)
        except PaymentInitiationError:
            subscription.status = "cancelled"
            subscription.cancelled_at = self.now()
            subscription.cancellation_reason = PAYMENT_START_FAILED_REASON
            self.store.save(subscription)
            raise

        return TransitionResult(
            subscription,
            created.events,
            redirect_url=payment.redirect_url,
            order_tracking_id=payment.order_tracking_id,
        )

    # transitions

    def renew(self, subscription: Subscription) -> TransitionResult:
        subscription.next_billing_date = as_utc(subscription.next_billing_date) + BILLING_PERIOD
        subscription.status = "active"
        self.store.save(subscription)
        logger.info(
            "subscription_renewed",
            subscription_id=subscription.id,
            next_billing_date=subscription.next_billing_date.isoformat(),
        )
        return TransitionResult(
            subscription, [LifecycleEvent(SUBSCRIPTION_RENEWED, subscription)]
        )

    def change_tier(self, subscription: Subscription, new_tier: str) -> TransitionResult:
        if not subscription.is_active():
            raise ValidationError(
                "Only active subscriptions can be changed", subscription_id=subscription.id
            )
        if subscription.tier == new_tier:
            raise ValidationError(
                "You are already subscribed to this tier", subscription_id=subscription.id
            )

        new_price = self._tier_price(subscription.product, new_tier)
        old_tier, old_price = subscription.tier, subscription.price

        subscription.tier = new_tier
        subscription.price = new_price
        self.store.save(subscription)

        result = TransitionResult(
            subscription,
            [LifecycleEvent(SUBSCRIPTION_TIER_CHANGED, subscription, {"previous_tier": old_tier})],
        )

        if new_price > 0:
            try:
                payment = self.initiate_payment(
                    subscription,
                    reference=f"{subscription.subscription_reference}-{new_tier.upper()}",
                )
            except PaymentInitiationError:
                subscription.tier = old_tier
                subscription.price = old_price
                self.store.save(subscription)
                raise
            result.redirect_url = payment.redirect_url
            result.order_tracking_id = payment.order_tracking_id

        logger.info(
            "subscription_tier_changed",
            subscription_id=subscription.id,
            previous_tier=old_tier,
            tier=new_tier,
        )
        return result

    def cancel(self, subscription: Subscription, reason: str = "") -> TransitionResult:
        if subscription.status == "cancelled":
            logger.info("subscription_already_cancelled", subscription_id=subscription.id)
            return TransitionResult(subscription)

        subscription.status = "cancelled"
        subscription.cancelled_at = self.now()
        subscription.cancellation_reason = reason
        self.store.save(subscription)
        logger.info("subscription_cancelled", subscription_id=subscription.id, reason=reason)
        return TransitionResult(
            subscription, [LifecycleEvent(SUBSCRIPTION_CANCELLED, subscription)]
        )

    # reminders and renewals

    def _remind(self, subscription, days, now, report):
        subscription.renewal_reminded_at = now
        try:
            self.store.save(subscription)
        except PersistenceError:
            report.failed += 1
            return False
        report.events.append(
            LifecycleEvent(RENEWAL_REMINDER, subscription, {"days_until": days})
        )
        return True

    def check_and_send_reminders(self) -> ReminderSweepReport:
        now = self.now()
        policy = self.config.reminders
        report = ReminderSweepReport()
        reminded = set()
        near, far = policy.thresholds

        for subscription in self.store.find_expiring_within(near, now):
            reminded.add(subscription.id)
            last = as_utc(subscription.renewal_reminded_at)
            if last is not None and now - last < policy.resend_guard:
                report.skipped += 1
                continue
            if self._remind(subscription, near, now, report):
                report.three_day += 1

        for subscription in self.store.find_expiring_within(far, now):
            if subscription.id in reminded:
                continue
            last = as_utc(subscription.renewal_reminded_at)
            if last is not None and last > now - policy.seven_day_resend:
                report.skipped += 1
                continue
            if self._remind(subscription, far, now, report):
                report.seven_day += 1

        logger.info(
            "subscription_reminders_checked",
            three_day=report.three_day,
            seven_day=report.seven_day,
            skipped=report.skipped,
            failed=report.failed,
        )
        return report

    def _settle_open_renewal(self, subscription, report):
        """Check the renewal payment already started for this period."""
        try:
            result = self.normalizer.process_callback(
                {"OrderTrackingId": subscription.payment_reference}
            )
        except BillingError as e:
            logger.warning(
                "subscription_renewal_status_unavailable",
                subscription_id=subscription.id,
                order_tracking_id=subscription.payment_reference,
                error=e.detail,
            )
            report.pending += 1
            return

        status = self.normalizer.resolve_order_status(result)
        if status is OrderStatus.PAID:
            # the IPN for this payment never arrived or was not applied
            report.events.extend(self.apply_subscription_payment(subscription, status))
            report.renewed += 1
        elif status is OrderStatus.PENDING:
            report.pending += 1
        else:
            logger.warning(
                "subscription_renewal_payment_failed",
                subscription_id=subscription.id,
                order_tracking_id=subscription.payment_reference,
                status=status.value,
            )
            subscription.status = "failed"
            self.store.save(subscription)
            report.failed += 1

    def process_renewals(self) -> RenewalRunReport:
        now = self.now()
        report = RenewalRunReport()

        for subscription in self.store.find_needing_renewal(now):
            if subscription.price == 0:
                report.events.extend(self.renew(subscription).events)
                report.renewed += 1
                continue

            due = as_utc(subscription.next_billing_date)
            reference = f"RENEWAL-{subscription.subscription_reference}-{due:%Y%m}"
            if subscription.renewal_reference == reference and subscription.payment_reference:
                # this period was already submitted, the gateway rejects a reused reference
                self._settle_open_renewal(subscription, report)
                continue

            title = subscription.product.title if subscription.product else subscription.product_id
            try:
                self.initiate_payment(
                    subscription,
                    reference=reference,
                    description=f"Subscription Renewal: {title} ({subscription.tier})",
                )
                subscription.renewal_reference = reference
                self.store.save(subscription)
                report.payments_initiated += 1
            except PaymentInitiationError:
                subscription.status = "failed"
                self.store.save(subscription)
                report.failed += 1

        logger.info(
            "subscription_renewals_processed",
            renewed=report.renewed,
            payments_initiated=report.payments_initiated,
            pending=report.pending,
            failed=report.failed,
        )
        return report

    # payment notifications

    def apply_subscription_payment(
        self, subscription: Subscription, status: OrderStatus
    ) -> List[LifecycleEvent]:
        if status is not OrderStatus.PAID:
            logger.warning(
                "subscription_payment_not_confirmed",
                subscription_id=subscription.id,
                status=status.value,
            )
            return []

        if subscription.status == "cancelled":
            logger.warning("subscription_payment_after_cancel", subscription_id=subscription.id)
            return []

        if as_utc(subscription.next_billing_date) <= self.now():
            return self.renew(subscription).events

        if subscription.status != "active":
            subscription.status = "active"
            self.store.save(subscription)
        logger.info("subscription_payment_confirmed", subscription_id=subscription.id)
        return [LifecycleEvent(SUBSCRIPTION_ACTIVATED, subscription)]

    def create_subscriptions_from_order(self, order: Order) -> List[LifecycleEvent]:
        events = []
        for item in order.items:
            product = item.product
            if not product.is_subscription:
                continue

            existing = self.store.find_active(order.user_id, product.id)
            if existing is not None:
                logger.info(
                    "order_subscription_exists",
                    order_id=order.id,
                    subscription_id=existing.id,
                )
                continue

            tier = item.subscription_tier or DEFAULT_ORDER_TIER
            price = product.tier_price(tier) if tier in TIERS else None
            if price is None:
                logger.error(
                    "order_subscription_tier_missing",
                    order_id=order.id,
                    product_id=product.id,
                    tier=tier,
                )
                continue

            subscription = self._build(
                order.user_id,
                product,
                tier,
                price,
                currency=order.currency,
                payment_reference=order.payment_reference,
            )
            events.append(LifecycleEvent(SUBSCRIPTION_CREATED, subscription))
        return events

    def apply_order_payment(self, order: Order, status: OrderStatus) -> List[LifecycleEvent]:
        previous = order.status
        order.status = status.value
        if status is OrderStatus.PAID and order.paid_at is None:
            order.paid_at = self.now()
        self.orders.save(order)

        logger.info(
            "order_status_updated",
            order_id=order.id,
            previous_status=previous,
            status=status.value,
        )
        if status is OrderStatus.PAID and previous != OrderStatus.PAID.value:
            return self.create_subscriptions_from_order(order)
        return []

    def handle_callback(self, payload) -> CallbackOutcome:
        result = self.normalizer.process_callback(payload)
        status = self.normalizer.resolve_order_status(result)
        outcome = CallbackOutcome(result=result, status=status)

        order = self.orders.get_by_payment_reference(result.order_tracking_id) if self.orders else None
        if order is not None:
            outcome.order_id = order.id
            outcome.events = self.apply_order_payment(order, status)
            return outcome

        subscription = self.store.find_by_payment_reference(result.order_tracking_id)
        if subscription is not None:
            outcome.subscription_id = subscription.id
            outcome.events = self.apply_subscription_payment(subscription, status)
            return outcome

        raise NotFound(
            "No order or subscription for tracking id",
            order_tracking_id=result.order_tracking_id,
        )
