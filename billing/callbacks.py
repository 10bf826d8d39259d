from typing import Mapping

import structlog

from billing.errors import MalformedCallback
from billing.gateway import PesapalClient
from billing.schemas import CallbackResult, OrderStatus

logger = structlog.get_logger(__name__)

STATUS_MAPPING = {
    0: OrderStatus.PENDING,
    1: OrderStatus.PAID,
    2: OrderStatus.FAILED,
    3: OrderStatus.CANCELLED,
}


def coerce_status_code(code) -> int:
    """Return the integer gateway code; blank, missing and junk values become 0."""
    if code is None or isinstance(code, bool):
        return 0
    if isinstance(code, int):
        return code
    text = str(code).strip()
    if text == "":
        return 0
    try:
        return int(text)
    except ValueError:
        return 0


def map_status_code(code) -> OrderStatus:
    return STATUS_MAPPING.get(coerce_status_code(code), OrderStatus.PENDING)


class CallbackNormalizer:
    def __init__(self, client: PesapalClient, trust_confirmation_code: bool = True):
        self.client = client
        self.trust_confirmation_code = trust_confirmation_code

    def process_callback(self, payload: Mapping) -> CallbackResult:
        tracking_id = str(payload.get("OrderTrackingId") or "").strip()
        if not tracking_id:
            raise MalformedCallback("Missing OrderTrackingId", payload_keys=sorted(payload))

        # whatever status the payload claims is ignored, the gateway is queried
        transaction = self.client.get_transaction_status(tracking_id)
        code = coerce_status_code(transaction.payment_status_code)

        result = CallbackResult(
            order_tracking_id=tracking_id,
            internal_status=map_status_code(code),
            payment_status_code=code,
            transaction=transaction,
        )
        logger.info(
            "pesapal_callback_normalized",
            order_tracking_id=tracking_id,
            payment_status_code=code,
            internal_status=result.internal_status.value,
            payment_status_description=transaction.payment_status_description,
        )
        return result

    def resolve_order_status(self, result: CallbackResult) -> OrderStatus:
        """Final status after the sandbox completion check.

        The sandbox frequently reports no status code for completed payments,
        so a confirmation code or a "completed"/"paid" description from the
        status query is taken as proof of payment.
        """
        if result.internal_status is OrderStatus.PAID or not self.trust_confirmation_code:
            return result.internal_status
        if result.internal_status in (OrderStatus.FAILED, OrderStatus.CANCELLED):
            return result.internal_status

        transaction = result.transaction
        description = (transaction.payment_status_description or "").lower()
        if transaction.confirmation_code or "completed" in description or "paid" in description:
            logger.info(
                "pesapal_completion_detected",
                order_tracking_id=result.order_tracking_id,
                confirmation_code=transaction.confirmation_code,
            )
            return OrderStatus.PAID
        return result.internal_status
