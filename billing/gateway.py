from typing import List

import httpx
import structlog
from pydantic import ValidationError as SchemaError

from billing.config import GatewayConfig
from billing.errors import (
    InvalidResponse,
    StatusUnavailable,
    TransportError,
    embedded_error,
)
from billing.schemas import (
    NotificationRegistration,
    PaymentOrder,
    SubmitOrderResult,
    TransactionStatus,
)
from billing.token_cache import TokenCacheManager

logger = structlog.get_logger(__name__)


class PesapalClient:
    def __init__(
        self,
        config: GatewayConfig,
        tokens: TokenCacheManager = None,
        http_client: httpx.Client = None,
    ):
        self.config = config
        self.http = http_client or httpx.Client(
            verify=config.verify_tls, timeout=config.timeout
        )
        self.tokens = tokens or TokenCacheManager(config, http_client=self.http)

    def _headers(self) -> dict:
        # raises AuthFailure before any request is built
        token = self.tokens.get_access_token()
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Authorization": f"Bearer {token}",
        }

    def _request(self, method: str, path: str, error_cls=TransportError, **kwargs):
        headers = self._headers()
        url = f"{self.config.base_url}{path}"

        try:
            response = self.http.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.error("pesapal_request_failed", path=path, error=str(e))
            raise error_cls(f"Request to {path} failed: {e}", path=path) from e

        if not response.is_success:
            logger.error(
                "pesapal_request_rejected",
                path=path,
                status=response.status_code,
                response=response.text,
            )
            if response.status_code == 401:
                # token revoked or expired early, fetch a fresh one next time
                self.tokens.invalidate()
            raise error_cls(response.text, status_code=response.status_code, path=path)

        try:
            data = response.json()
        except ValueError as e:
            raise InvalidResponse(f"Non-JSON response from {path}", path=path) from e

        error = embedded_error(data)
        if error:
            logger.error("pesapal_request_error_payload", path=path, error=error)
            raise error_cls(error, status_code=response.status_code, path=path)

        if not isinstance(data, (dict, list)):
            raise InvalidResponse(f"Unexpected payload from {path}", path=path)
        return data

    def submit_order(self, order: PaymentOrder) -> SubmitOrderResult:
        payload = order.to_payload()
        logger.info(
            "pesapal_order_submitting",
            reference=order.reference,
            amount=payload["amount"],
            currency=order.currency,
        )

        data = self._request(
            "POST", "/api/Transactions/SubmitOrderRequest", json=payload
        )
        if not isinstance(data, dict) or not data.get("order_tracking_id") or not data.get("redirect_url"):
            logger.error("pesapal_order_incomplete_response", reference=order.reference, response=data)
            raise InvalidResponse(
                "Order response missing order_tracking_id or redirect_url",
                reference=order.reference,
            )

        result = SubmitOrderResult(
            order_tracking_id=data["order_tracking_id"],
            redirect_url=data["redirect_url"],
            merchant_reference=data.get("merchant_reference") or order.reference,
        )
        logger.info(
            "pesapal_order_submitted",
            reference=order.reference,
            order_tracking_id=result.order_tracking_id,
        )
        return result

    def get_transaction_status(self, order_tracking_id: str) -> TransactionStatus:
        data = self._request(
            "GET",
            "/api/Transactions/GetTransactionStatus",
            error_cls=StatusUnavailable,
            params={"orderTrackingId": order_tracking_id},
        )
        try:
            return TransactionStatus.model_validate(data)
        except SchemaError as e:
            raise InvalidResponse(
                "Malformed transaction status", order_tracking_id=order_tracking_id
            ) from e

    def register_notification_endpoint(
        self, url: str = None, notification_type: str = "GET"
    ) -> NotificationRegistration:
        url = url or self.config.ipn_url
        data = self._request(
            "POST",
            "/api/URLSetup/RegisterIPN",
            json={"url": url, "ipn_notification_type": notification_type},
        )
        try:
            registration = NotificationRegistration.model_validate(data)
        except SchemaError as e:
            raise InvalidResponse("IPN registration response missing ipn_id", url=url) from e

        logger.info(
            "pesapal_ipn_registered",
            notification_id=registration.notification_id,
            url=registration.url or url,
        )
        return registration

    def list_notification_endpoints(self) -> List[NotificationRegistration]:
        data = self._request("GET", "/api/URLSetup/GetIpnList")
        if not isinstance(data, list):
            raise InvalidResponse("IPN list response is not a list")
        try:
            return [NotificationRegistration.model_validate(item) for item in data]
        except SchemaError as e:
            raise InvalidResponse("IPN list entry missing ipn_id") from e

    def close(self):
        self.http.close()
