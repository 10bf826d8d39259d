from datetime import timedelta
from typing import List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billing.errors import PersistenceError
from billing.models import Order, Product, Subscription, User, utcnow

logger = structlog.get_logger(__name__)


class SubscriptionStore:
    """Narrow persistence interface the lifecycle manager works through."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, subscription_id: int) -> Optional[Subscription]:
        return self.db.get(Subscription, subscription_id)

    def get_for_user(self, subscription_id: int, user_id: int) -> Optional[Subscription]:
        return (
            self.db.query(Subscription)
            .filter_by(id=subscription_id, user_id=user_id)
            .first()
        )

    def get_user(self, user_id: int) -> Optional[User]:
        return self.db.get(User, user_id)

    def get_product(self, product_id: int) -> Optional[Product]:
        return self.db.get(Product, product_id)

    def list_for_user(self, user_id: int, status: str = "active") -> List[Subscription]:
        return (
            self.db.query(Subscription)
            .filter_by(user_id=user_id, status=status)
            .order_by(Subscription.created_at.desc())
            .all()
        )

    def find_active(self, user_id: int, product_id: int) -> Optional[Subscription]:
        return (
            self.db.query(Subscription)
            .filter_by(user_id=user_id, product_id=product_id, status="active")
            .first()
        )

    def find_by_payment_reference(self, reference: str) -> Optional[Subscription]:
        return self.db.query(Subscription).filter_by(payment_reference=reference).first()

    def reference_exists(self, reference: str) -> bool:
        return (
            self.db.query(Subscription.id)
            .filter_by(subscription_reference=reference)
            .first()
            is not None
        )

    def find_expiring_within(self, days: int, now=None) -> List[Subscription]:
        now = now or utcnow()
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.status == "active",
                Subscription.next_billing_date >= now,
                Subscription.next_billing_date <= now + timedelta(days=days),
            )
            .order_by(Subscription.next_billing_date)
            .all()
        )

    def find_needing_renewal(self, now=None) -> List[Subscription]:
        now = now or utcnow()
        return (
            self.db.query(Subscription)
            .filter(
                Subscription.status == "active",
                Subscription.next_billing_date <= now,
            )
            .all()
        )

    def add(self, subscription: Subscription) -> Subscription:
        self.db.add(subscription)
        self._commit("create", subscription)
        self.db.refresh(subscription)
        return subscription

    def save(self, subscription: Subscription) -> Subscription:
        self._commit("update", subscription)
        return subscription

    def _commit(self, action, subscription):
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "subscription_write_failed",
                action=action,
                subscription_reference=subscription.subscription_reference,
                error=str(e),
            )
            raise PersistenceError(
                f"Could not {action} subscription",
                subscription_reference=subscription.subscription_reference,
            ) from e


class OrderStore:
    def __init__(self, db: Session):
        self.db = db

    def get(self, order_id: int) -> Optional[Order]:
        return self.db.get(Order, order_id)

    def get_by_payment_reference(self, reference: str) -> Optional[Order]:
        return self.db.query(Order).filter_by(payment_reference=reference).first()

    def save(self, order: Order) -> Order:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("order_write_failed", order_reference=order.order_reference, error=str(e))
            raise PersistenceError(
                "Could not update order", order_reference=order.order_reference
            ) from e
        return order
