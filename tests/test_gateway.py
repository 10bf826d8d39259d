import json
from dataclasses import replace
from decimal import Decimal

import httpx
import pytest

from billing.config import PRODUCTION_BASE_URL, SANDBOX_BASE_URL
from billing.errors import AuthFailure, InvalidResponse, StatusUnavailable, TransportError
from billing.gateway import PesapalClient
from billing.schemas import BillingAddress, PaymentOrder

SUBMIT = "/api/Transactions/SubmitOrderRequest"
STATUS = "/api/Transactions/GetTransactionStatus"
REGISTER = "/api/URLSetup/RegisterIPN"


@pytest.fixture
def order():
    return PaymentOrder(
        reference="SUB-ABCDEFGH-1768467600",
        amount=Decimal("2500.00"),
        description="Subscription: PayrollPro (basic)",
        callback_url="https://shop.test/api/pesapal/confirm",
        notification_id="ipn-123",
        billing_address=BillingAddress.from_full_name(
            "Wanjiku Mwangi Njeri", email="wanjiku@example.com", phone="254700000001"
        ),
    )


def test_submit_order_returns_tracking_id(client, pesapal, order):
    pesapal.reply(SUBMIT, json={
        "order_tracking_id": "trk-1",
        "merchant_reference": order.reference,
        "redirect_url": "https://pay.test/redirect/trk-1",
        "error": None,
        "status": "200",
    })

    result = client.submit_order(order)

    assert result.order_tracking_id == "trk-1"
    assert result.redirect_url == "https://pay.test/redirect/trk-1"
    assert result.merchant_reference == order.reference


def test_submit_order_payload(client, pesapal, order):
    pesapal.reply(SUBMIT, json={"order_tracking_id": "trk-1", "redirect_url": "https://pay.test/r"})

    client.submit_order(order)

    request = pesapal.calls(SUBMIT)[0]
    body = json.loads(request.content)
    assert request.headers["Authorization"] == "Bearer tok-1"
    assert body["id"] == order.reference
    assert body["currency"] == "KES"
    assert body["amount"] == 2500.0
    assert isinstance(body["amount"], float)
    assert body["callback_url"] == "https://shop.test/api/pesapal/confirm"
    assert body["notification_id"] == "ipn-123"
    assert body["billing_address"]["first_name"] == "Wanjiku"
    assert body["billing_address"]["last_name"] == "Mwangi Njeri"
    assert body["billing_address"]["email_address"] == "wanjiku@example.com"


def test_submit_order_without_redirect_url_is_invalid(client, pesapal, order):
    pesapal.reply(SUBMIT, json={"order_tracking_id": "trk-1", "status": "200"})

    with pytest.raises(InvalidResponse):
        client.submit_order(order)


def test_submit_order_without_tracking_id_is_invalid(client, pesapal, order):
    pesapal.reply(SUBMIT, json={"redirect_url": "https://pay.test/r"})

    with pytest.raises(InvalidResponse):
        client.submit_order(order)


def test_submit_order_rejection_keeps_body_verbatim(client, pesapal, order):
    body = '{"error":{"code":"invalid_amount","message":"Amount must be > 1"}}'
    pesapal.reply(SUBMIT, status=400, text=body)

    with pytest.raises(TransportError) as exc:
        client.submit_order(order)

    assert exc.value.detail == body
    assert exc.value.status_code == 400


def test_submit_order_error_payload_with_200(client, pesapal, order):
    pesapal.reply(SUBMIT, json={
        "order_tracking_id": None,
        "redirect_url": None,
        "error": {"code": "duplicate_merchant_reference", "message": "Duplicate reference"},
        "status": "500",
    })

    with pytest.raises(TransportError) as exc:
        client.submit_order(order)

    assert exc.value.detail == "Duplicate reference"


def test_auth_failure_stops_before_gateway_call(client, pesapal, order):
    pesapal.reply("/api/Auth/RequestToken", status=401, text="nope")

    with pytest.raises(AuthFailure):
        client.submit_order(order)

    assert pesapal.calls(SUBMIT) == []


def test_transport_errors_are_translated(config, token_manager):
    def flaky(request):
        if request.url.path.endswith("RequestToken"):
            return httpx.Response(200, json={"token": "tok-1"})
        raise httpx.ReadTimeout("timed out", request=request)

    http = httpx.Client(transport=httpx.MockTransport(flaky))
    client = PesapalClient(config, tokens=token_manager, http_client=http)
    token_manager.http = http

    with pytest.raises(StatusUnavailable):
        client.get_transaction_status("trk-1")


def test_get_transaction_status(client, pesapal):
    pesapal.reply(STATUS, json={
        "payment_method": "MpesaKE",
        "amount": 2500.0,
        "created_date": "2026-01-15T09:01:00.000",
        "confirmation_code": "QAB12CD34",
        "payment_status_description": "Completed",
        "description": "Payment successful",
        "message": "Request processed successfully",
        "payment_account": "2547xxxxx001",
        "call_back_url": "https://shop.test/api/pesapal/confirm",
        "status_code": 1,
        "merchant_reference": "SUB-ABCDEFGH-1768467600",
        "payment_status_code": "",
        "currency": "KES",
        "error": {"error_type": None, "code": None, "message": None},
        "status": "200",
    })

    status = client.get_transaction_status("trk-1")

    request = pesapal.calls(STATUS)[0]
    assert request.url.params["orderTrackingId"] == "trk-1"
    assert status.confirmation_code == "QAB12CD34"
    assert status.currency == "KES"
    assert status.amount == 2500.0


def test_get_transaction_status_non_2xx(client, pesapal):
    pesapal.reply(STATUS, status=500, text="internal")

    with pytest.raises(StatusUnavailable):
        client.get_transaction_status("trk-1")


def test_register_notification_endpoint(client, pesapal):
    pesapal.reply(REGISTER, json={
        "url": "https://shop.test/api/pesapal/callback",
        "created_date": "2026-01-15T09:00:00",
        "ipn_id": "ipn-new",
        "notification_type": 0,
        "ipn_notification_type_description": "GET",
        "ipn_status": 1,
        "error": None,
        "status": "200",
    })

    registration = client.register_notification_endpoint()

    body = json.loads(pesapal.calls(REGISTER)[0].content)
    assert body == {"url": "https://shop.test/api/pesapal/callback", "ipn_notification_type": "GET"}
    assert registration.notification_id == "ipn-new"


def test_register_with_error_payload_fails(client, pesapal):
    pesapal.reply(REGISTER, json={
        "ipn_id": None,
        "error": {"code": "invalid_url", "message": "URL is not reachable"},
        "status": "400",
    })

    with pytest.raises(TransportError) as exc:
        client.register_notification_endpoint("https://shop.test/ipn")

    assert "not reachable" in exc.value.detail


def test_register_without_ipn_id_is_invalid(client, pesapal):
    pesapal.reply(REGISTER, json={"url": "https://shop.test/ipn", "error": None})

    with pytest.raises(InvalidResponse):
        client.register_notification_endpoint("https://shop.test/ipn")


def test_list_notification_endpoints(client, pesapal):
    pesapal.reply("/api/URLSetup/GetIpnList", json=[
        {"url": "https://shop.test/a", "ipn_id": "ipn-a"},
        {"url": "https://shop.test/b", "ipn_id": "ipn-b"},
    ])

    ids = [r.notification_id for r in client.list_notification_endpoints()]

    assert ids == ["ipn-a", "ipn-b"]


def test_environment_selects_base_url(config):
    assert replace(config, base_url_override="", sandbox=True).base_url == SANDBOX_BASE_URL
    assert replace(config, base_url_override="", sandbox=False).base_url == PRODUCTION_BASE_URL


def test_tls_verification_enabled_by_default():
    from billing.config import GatewayConfig

    assert GatewayConfig().verify_tls is True


def test_rejected_token_is_dropped_from_cache(client, pesapal, token_manager):
    pesapal.reply(STATUS, status=401, text="Unauthorized")

    with pytest.raises(StatusUnavailable):
        client.get_transaction_status("trk-1")
    pesapal.reply(STATUS, json={"payment_status_code": 1})
    client.get_transaction_status("trk-1")

    assert len(pesapal.calls("/api/Auth/RequestToken")) == 2
