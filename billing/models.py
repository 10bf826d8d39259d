from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from billing.database import Base


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    phone = Column(String)


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True)
    title = Column(String, nullable=False)
    price = Column(Numeric(10, 2), default=0)
    is_subscription = Column(Boolean, default=False)
    subscription_tiers = Column(JSON)              # {"basic": {"price": 2500, "features": "..."}}

    def tier_price(self, tier: str):
        tiers = self.subscription_tiers or {}
        entry = tiers.get(tier)
        if entry is None:
            return None
        price = entry.get("price") if isinstance(entry, dict) else entry
        if price is None:
            return None
        return Decimal(str(price))

    def tiers(self) -> dict:
        return dict(self.subscription_tiers or {})


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"), index=True, nullable=False)
    tier = Column(String, default="free", nullable=False)
    status = Column(String, default="active", index=True)    # active | cancelled | failed
    price = Column(Numeric(10, 2), nullable=False)
    currency = Column(String, default="KES")
    subscription_reference = Column(String, unique=True, index=True, nullable=False)
    payment_reference = Column(String, index=True)           # Pesapal order tracking id
    renewal_reference = Column(String)                      # merchant reference of the open renewal
    started_at = Column(DateTime(timezone=True), nullable=False)
    next_billing_date = Column(DateTime(timezone=True), index=True, nullable=False)
    renewal_reminded_at = Column(DateTime(timezone=True))
    cancelled_at = Column(DateTime(timezone=True))
    cancellation_reason = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    user = relationship("User")
    product = relationship("Product")

    def is_active(self) -> bool:
        return self.status == "active"

    def days_until_renewal(self, now=None) -> int:
        now = now or utcnow()
        return (as_utc(self.next_billing_date) - now).days

    def is_expiring_soon(self, days: int = 7, now=None) -> bool:
        now = now or utcnow()
        due = as_utc(self.next_billing_date)
        return self.is_active() and now <= due <= now + timedelta(days=days)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True)
    order_reference = Column(String, unique=True, index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    status = Column(String, default="pending")               # pending | paid | failed | cancelled
    currency = Column(String, default="KES")
    total_amount = Column(Numeric(10, 2), default=0)
    payment_reference = Column(String, unique=True, index=True)
    paid_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)

    user = relationship("User")
    items = relationship("OrderItem", back_populates="order")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id"), index=True, nullable=False)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False)
    subscription_tier = Column(String)
    unit_price = Column(Numeric(10, 2), default=0)
    quantity = Column(Integer, default=1)

    order = relationship("Order", back_populates="items")
    product = relationship("Product")
