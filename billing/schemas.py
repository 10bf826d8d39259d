from decimal import Decimal
from enum import Enum
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


TIERS = ("free", "basic", "premium")
Tier = Literal["free", "basic", "premium"]


class BillingAddress(BaseModel):
    model_config = ConfigDict(frozen=True)

    email_address: Optional[str] = None
    phone_number: Optional[str] = None
    first_name: str = ""
    last_name: str = ""

    @classmethod
    def from_full_name(cls, name: Optional[str], email=None, phone=None):
        first, _, last = (name or "").strip().partition(" ")
        return cls(
            email_address=email,
            phone_number=phone,
            first_name=first,
            last_name=last.strip(),
        )


class PaymentOrder(BaseModel):
    model_config = ConfigDict(frozen=True)

    reference: str
    amount: Decimal
    currency: str = "KES"
    description: str
    callback_url: str
    notification_id: str
    redirect_mode: str = "PARENT_WINDOW"
    billing_address: Optional[BillingAddress] = None

    def to_payload(self) -> dict:
        payload = {
            "id": self.reference,
            "currency": self.currency,
            "amount": float(self.amount),
            "description": self.description,
            "callback_url": self.callback_url,
            "redirect_mode": self.redirect_mode,
            "notification_id": self.notification_id,
        }
        if self.billing_address is not None:
            payload["billing_address"] = self.billing_address.model_dump()
        return payload


class SubmitOrderResult(BaseModel):
    order_tracking_id: str
    redirect_url: str
    merchant_reference: Optional[str] = None


class TransactionStatus(BaseModel):
    model_config = ConfigDict(extra="ignore")

    payment_status_code: Optional[Union[int, str]] = None
    payment_status_description: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    confirmation_code: Optional[str] = None
    message: Optional[str] = None
    description: Optional[str] = None
    payment_method: Optional[str] = None
    payment_account: Optional[str] = None
    merchant_reference: Optional[str] = None
    created_date: Optional[str] = None
    call_back_url: Optional[str] = None
    status_code: Optional[Union[int, str]] = None


class NotificationRegistration(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    notification_id: str = Field(alias="ipn_id")
    url: Optional[str] = None
    ipn_notification_type: Optional[str] = None
    ipn_status: Optional[Union[int, str]] = None
    created_date: Optional[str] = None


class CallbackResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_tracking_id: str
    internal_status: OrderStatus
    payment_status_code: int
    transaction: TransactionStatus


# API request bodies

class SubscribeRequest(BaseModel):
    product_id: int
    tier: Tier


class ChangeTierRequest(BaseModel):
    tier: Tier


class CancelRequest(BaseModel):
    reason: str = Field(default="", max_length=500)
