from functools import lru_cache
from typing import Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from billing.auth import admin_user_id, current_user_id
from billing.config import GatewayConfig, get_config
from billing.database import get_db
from billing.errors import (
    BillingError,
    MalformedCallback,
    NotFound,
    PaymentInitiationError,
    SubscriptionConflict,
    ValidationError,
)
from billing.gateway import PesapalClient
from billing.notifications import NotificationSubscriber, get_dispatcher
from billing.repository import OrderStore, SubscriptionStore
from billing.schemas import CancelRequest, ChangeTierRequest, SubscribeRequest
from billing.subscriptions import SubscriptionLifecycleManager

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api")


@lru_cache
def get_gateway_config() -> GatewayConfig:
    return get_config()


@lru_cache
def get_client() -> PesapalClient:
    return PesapalClient(get_gateway_config())


def get_subscriber() -> NotificationSubscriber:
    return NotificationSubscriber(get_dispatcher())


def get_manager(
    db: Session = Depends(get_db),
    client: PesapalClient = Depends(get_client),
    config: GatewayConfig = Depends(get_gateway_config),
) -> SubscriptionLifecycleManager:
    return SubscriptionLifecycleManager(
        SubscriptionStore(db), client, config, orders=OrderStore(db)
    )


def http_error(e: BillingError) -> HTTPException:
    if isinstance(e, NotFound):
        return HTTPException(status_code=404, detail=e.detail)
    if isinstance(e, SubscriptionConflict):
        return HTTPException(status_code=409, detail=e.detail)
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail=e.detail)
    if isinstance(e, PaymentInitiationError):
        return HTTPException(status_code=502, detail=PaymentInitiationError.public_message)
    logger.error("billing_request_failed", error=e.detail, error_type=type(e).__name__)
    return HTTPException(status_code=500, detail="Server error")


def preload(events):
    for event in events:
        # load what the emails need while the session is still open
        event.subscription.user, event.subscription.product
    return events


def notify(background_tasks: BackgroundTasks, subscriber, events):
    background_tasks.add_task(subscriber.handle, preload(events))


def handle_callback(manager, payload):
    outcome = manager.handle_callback(payload)
    preload(outcome.events)
    return outcome


def subscription_out(subscription) -> dict:
    def iso(value):
        return value.isoformat() if value else None

    return {
        "id": subscription.id,
        "product_id": subscription.product_id,
        "tier": subscription.tier,
        "status": subscription.status,
        "price": float(subscription.price),
        "currency": subscription.currency,
        "subscription_reference": subscription.subscription_reference,
        "payment_reference": subscription.payment_reference,
        "started_at": iso(subscription.started_at),
        "next_billing_date": iso(subscription.next_billing_date),
        "renewal_reminded_at": iso(subscription.renewal_reminded_at),
        "cancelled_at": iso(subscription.cancelled_at),
        "cancellation_reason": subscription.cancellation_reason,
    }


def _owned_subscription(manager, subscription_id, user_id):
    subscription = manager.store.get_for_user(subscription_id, user_id)
    if subscription is None:
        raise HTTPException(status_code=404, detail="Subscription not found")
    return subscription


@router.get("/products/{product_id}/tiers")
def get_tiers(product_id: int, manager=Depends(get_manager)):
    product = manager.store.get_product(product_id)
    if product is None or not product.is_subscription:
        raise HTTPException(
            status_code=404,
            detail="Product not found or is not a subscription product",
        )
    return {"product_id": product.id, "title": product.title, "tiers": product.tiers()}


@router.post("/subscriptions", status_code=201)
def subscribe(
    request: SubscribeRequest,
    background_tasks: BackgroundTasks,
    user_id: int = Depends(current_user_id),
    manager=Depends(get_manager),
    subscriber=Depends(get_subscriber),
):
    user = manager.store.get_user(user_id)
    product = manager.store.get_product(request.product_id)
    if user is None or product is None:
        raise HTTPException(status_code=404, detail="Product not found")

    try:
        result = manager.subscribe(user, product, request.tier)
    except BillingError as e:
        raise http_error(e)

    notify(background_tasks, subscriber, result.events)
    return {
        "subscription": subscription_out(result.subscription),
        "payment_url": result.redirect_url,
        "order_tracking_id": result.order_tracking_id,
    }


@router.get("/subscriptions")
def list_subscriptions(
    status: str = "active",
    user_id: int = Depends(current_user_id),
    manager=Depends(get_manager),
):
    return [subscription_out(s) for s in manager.store.list_for_user(user_id, status)]


@router.get("/subscriptions/{subscription_id}")
def show_subscription(
    subscription_id: int,
    user_id: int = Depends(current_user_id),
    manager=Depends(get_manager),
):
    subscription = _owned_subscription(manager, subscription_id, user_id)
    now = manager.now()
    return {
        "subscription": subscription_out(subscription),
        "days_until_renewal": subscription.days_until_renewal(now),
        "is_expiring_soon": subscription.is_expiring_soon(now=now),
    }


@router.post("/subscriptions/{subscription_id}/cancel")
def cancel_subscription(
    subscription_id: int,
    background_tasks: BackgroundTasks,
    request: Optional[CancelRequest] = None,
    user_id: int = Depends(current_user_id),
    manager=Depends(get_manager),
    subscriber=Depends(get_subscriber),
):
    subscription = _owned_subscription(manager, subscription_id, user_id)
    try:
        result = manager.cancel(subscription, request.reason if request else "")
    except BillingError as e:
        raise http_error(e)

    notify(background_tasks, subscriber, result.events)
    return {"status": result.subscription.status}


@router.post("/subscriptions/{subscription_id}/change-tier")
def change_tier(
    subscription_id: int,
    request: ChangeTierRequest,
    background_tasks: BackgroundTasks,
    user_id: int = Depends(current_user_id),
    manager=Depends(get_manager),
    subscriber=Depends(get_subscriber),
):
    subscription = _owned_subscription(manager, subscription_id, user_id)
    try:
        result = manager.change_tier(subscription, request.tier)
    except BillingError as e:
        raise http_error(e)

    notify(background_tasks, subscriber, result.events)
    return {
        "subscription": subscription_out(result.subscription),
        "payment_url": result.redirect_url,
    }


async def _callback_payload(request: Request) -> dict:
    payload = dict(request.query_params)
    if request.method == "POST":
        try:
            body = await request.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            payload.update(body)
    return payload


@router.api_route("/pesapal/callback", methods=["GET", "POST"])
async def pesapal_callback(
    request: Request,
    background_tasks: BackgroundTasks,
    manager=Depends(get_manager),
    subscriber=Depends(get_subscriber),
):
    payload = await _callback_payload(request)
    logger.info("pesapal_callback_received", method=request.method, payload=payload)

    ack = {
        "orderNotificationType": payload.get("OrderNotificationType", "IPNCHANGE"),
        "orderTrackingId": payload.get("OrderTrackingId"),
        "orderMerchantReference": payload.get("OrderMerchantReference"),
        "status": 200,
    }

    # always acknowledged, the gateway retries anything that looks like a failure
    try:
        outcome = await run_in_threadpool(handle_callback, manager, payload)
    except MalformedCallback as e:
        logger.error("pesapal_callback_malformed", error=e.detail, **e.context)
        ack["status"] = 500
        return ack
    except BillingError as e:
        logger.error(
            "pesapal_callback_failed",
            error=e.detail,
            error_type=type(e).__name__,
            order_tracking_id=payload.get("OrderTrackingId"),
        )
        ack["status"] = 500
        return ack

    # relationships were loaded on the worker thread
    background_tasks.add_task(subscriber.handle, outcome.events)
    logger.info(
        "pesapal_callback_processed",
        order_tracking_id=outcome.result.order_tracking_id,
        status=outcome.status.value,
        order_id=outcome.order_id,
        subscription_id=outcome.subscription_id,
    )
    return ack


@router.get("/pesapal/confirm")
def pesapal_confirm(
    request: Request,
    background_tasks: BackgroundTasks,
    manager=Depends(get_manager),
    subscriber=Depends(get_subscriber),
):
    base_url = manager.config.app_url.rstrip("/")
    payload = dict(request.query_params)

    try:
        outcome = manager.handle_callback(payload)
    except BillingError as e:
        logger.warning(
            "pesapal_confirm_failed",
            error=e.detail,
            order_tracking_id=payload.get("OrderTrackingId"),
        )
        return RedirectResponse(f"{base_url}/checkout?payment=failed", status_code=302)

    notify(background_tasks, subscriber, outcome.events)
    status = outcome.status.value if outcome.status.value != "paid" else "success"
    if outcome.order_id is not None:
        target = f"{base_url}/orders/{outcome.order_id}?payment={status}"
    else:
        target = f"{base_url}/subscriptions/{outcome.subscription_id}?payment={status}"

    logger.info("pesapal_confirm_redirect", redirect_url=target)
    return RedirectResponse(target, status_code=302)


@router.post("/admin/pesapal/ipn")
def register_ipn(
    admin_id: int = Depends(admin_user_id),
    client: PesapalClient = Depends(get_client),
):
    try:
        registration = client.register_notification_endpoint()
    except BillingError as e:
        logger.error("pesapal_ipn_registration_failed", error=e.detail, admin_id=admin_id)
        raise HTTPException(status_code=502, detail=f"Failed to register IPN: {e.detail}")

    return {
        "notification_id": registration.notification_id,
        "url": registration.url,
    }
