"""
Normalization of provider payment payloads.

Three channels report payment outcomes in three shapes:

* STK callback   ``{"Body": {"stkCallback": {"CheckoutRequestID", "ResultCode",
                   "CallbackMetadata": {"Item": [{"Name", "Value"}]}}}}``
* C2B confirm    ``{"TransID", "TransAmount", "BillRefNumber", "MSISDN"}``
* Gateway hook   ``{"Type"|"event", "Data": {"checkout_request_id", "ResultCode"}}``
* Status query   ``{"ResultCode", "ResultDesc"}`` (reconciliation)

Each is turned into one frozen ``PaymentEvent`` here, before any business
logic sees it. Missing correlation ids raise ``MalformedPayloadError``.
"""
import enum
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_FLOOR
from typing import Any

from bakery_orders.core.exceptions import MalformedPayloadError
from bakery_orders.core.validation import PhoneNumberValidator
from bakery_orders.db.models.payment_attempt import PaymentSource


class EventOutcome(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


# Daraja answers "still processing" queries with an error body and no code
PENDING_KEYWORDS = (
    "being processed",
    "still processing",
    "in progress",
    "processing request",
    "queued",
)

_GATEWAY_SUCCESS_EVENTS = {"payment.success", "success"}
_GATEWAY_FAILURE_EVENTS = {"payment.failed", "payment.cancelled", "failed", "cancelled"}


@dataclass(frozen=True)
class PaymentEvent:
    source: PaymentSource
    outcome: EventOutcome
    session_id: str | None = None
    merchant_request_id: str | None = None
    result_code: int | None = None
    result_desc: str | None = None
    amount: int | None = None
    receipt: str | None = None
    phone: str | None = None
    bill_reference: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


def parse_amount(value: Any) -> int | None:
    """Whole shillings; None for missing, negative or non-numeric input"""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount < 0:
        return None
    return int(amount.to_integral_value(rounding=ROUND_FLOOR))


def parse_result_code(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if re.fullmatch(r"-?\d+", text):
        return int(text)
    return None


def normalize_bill_reference(value: Any) -> str:
    return str(value or "").strip().upper()


def _clean(value: Any, max_length: int = 100) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text[:max_length] or None


def _normalize_phone(value: Any) -> str | None:
    if value is None:
        return None
    normalized = PhoneNumberValidator.normalize(str(value))
    return normalized if PhoneNumberValidator.validate(normalized) else None


def is_pending_description(text: str | None) -> bool:
    lowered = (text or "").lower()
    return any(keyword in lowered for keyword in PENDING_KEYWORDS)


def normalize_stk_callback(payload: dict[str, Any]) -> PaymentEvent:
    body = payload.get("Body") if isinstance(payload, dict) else None
    callback = body.get("stkCallback") if isinstance(body, dict) else None
    if not isinstance(callback, dict):
        # flat shape used by some proxies and the sandbox simulator
        callback = {
            "CheckoutRequestID": payload.get("checkoutRequestId") or payload.get("CheckoutRequestID"),
            "MerchantRequestID": payload.get("merchantRequestId"),
            "ResultCode": payload.get("resultCode", payload.get("ResultCode")),
            "ResultDesc": payload.get("resultDesc", payload.get("ResultDesc")),
        } if isinstance(payload, dict) else {}

    checkout_request_id = _clean(callback.get("CheckoutRequestID"))
    if not checkout_request_id:
        raise MalformedPayloadError("Missing CheckoutRequestID")

    result_code = parse_result_code(callback.get("ResultCode"))
    if result_code is None:
        raise MalformedPayloadError(
            "Missing ResultCode", details={"checkout_request_id": checkout_request_id}
        )

    metadata: dict[str, Any] = {}
    items = (callback.get("CallbackMetadata") or {}).get("Item") or []
    for item in items:
        if isinstance(item, dict) and item.get("Name"):
            metadata[str(item["Name"])] = item.get("Value")

    if not metadata and isinstance(payload, dict):
        metadata = {
            "MpesaReceiptNumber": payload.get("mpesaReceiptNumber"),
            "Amount": payload.get("amount"),
            "PhoneNumber": payload.get("phoneNumber"),
        }

    success = result_code == 0
    return PaymentEvent(
        source=PaymentSource.STK_CALLBACK,
        outcome=EventOutcome.SUCCESS if success else EventOutcome.FAILED,
        session_id=checkout_request_id,
        merchant_request_id=_clean(callback.get("MerchantRequestID")),
        result_code=result_code,
        result_desc=_clean(callback.get("ResultDesc"), 500),
        amount=parse_amount(metadata.get("Amount")) if success else None,
        receipt=_clean(metadata.get("MpesaReceiptNumber")) if success else None,
        phone=_normalize_phone(metadata.get("PhoneNumber")),
        raw=payload,
    )


def normalize_c2b_confirmation(payload: dict[str, Any]) -> PaymentEvent:
    receipt = _clean(payload.get("TransID"))
    if not receipt:
        raise MalformedPayloadError("Missing TransID")

    bill_reference = normalize_bill_reference(
        payload.get("BillRefNumber") or payload.get("AccountReference")
    )
    return PaymentEvent(
        source=PaymentSource.C2B,
        outcome=EventOutcome.SUCCESS,
        session_id=None,
        merchant_request_id=_clean(payload.get("ThirdPartyTransID")),
        result_code=0,
        result_desc="C2B confirmation",
        amount=parse_amount(payload.get("TransAmount")),
        receipt=receipt,
        phone=_normalize_phone(payload.get("MSISDN") or payload.get("PhoneNumber")),
        bill_reference=bill_reference or None,
        raw=payload,
    )


def normalize_gateway_webhook(payload: dict[str, Any]) -> PaymentEvent:
    event_type = str(payload.get("Type") or payload.get("event") or payload.get("type") or "").strip()
    data = payload.get("Data") or payload.get("data") or {}
    if not isinstance(data, dict):
        data = {}

    checkout_request_id = _clean(
        data.get("checkout_request_id")
        or data.get("checkoutRequestId")
        or data.get("CheckoutRequestID")
        or data.get("checkoutRequestID")
    )
    if not checkout_request_id:
        raise MalformedPayloadError("Missing checkout_request_id")

    result_code = parse_result_code(data.get("ResultCode"))
    event_key = event_type.lower()
    if event_key in _GATEWAY_SUCCESS_EVENTS or result_code == 0:
        outcome = EventOutcome.SUCCESS
    elif event_key in _GATEWAY_FAILURE_EVENTS or (result_code is not None and result_code != 0):
        outcome = EventOutcome.FAILED
    else:
        outcome = EventOutcome.PENDING

    success = outcome == EventOutcome.SUCCESS
    return PaymentEvent(
        source=PaymentSource.GATEWAY,
        outcome=outcome,
        session_id=checkout_request_id,
        result_code=result_code,
        result_desc=_clean(data.get("ResultDesc") or event_type, 500),
        amount=parse_amount(data.get("amount") or data.get("Amount")) if success else None,
        receipt=_clean(data.get("transaction_reference") or data.get("MpesaReceiptNumber")) if success else None,
        phone=_normalize_phone(data.get("phone") or data.get("PhoneNumber")),
        raw=payload,
    )


def classify_status_query(checkout_request_id: str, payload: dict[str, Any]) -> PaymentEvent:
    """
    Daraja STK query result. Code 0 is success; a "still processing" style
    description or a missing code is pending; any other code is a failure.
    """
    result_code = parse_result_code(payload.get("ResultCode"))
    description = _clean(
        payload.get("ResultDesc") or payload.get("errorMessage") or payload.get("ResponseDescription"),
        500,
    )

    if result_code == 0:
        outcome = EventOutcome.SUCCESS
    elif is_pending_description(description):
        outcome = EventOutcome.PENDING
    elif result_code is None:
        outcome = EventOutcome.PENDING
    else:
        outcome = EventOutcome.FAILED

    return PaymentEvent(
        source=PaymentSource.STATUS_QUERY,
        outcome=outcome,
        session_id=checkout_request_id,
        merchant_request_id=_clean(payload.get("MerchantRequestID")),
        result_code=result_code,
        result_desc=description,
        raw=payload,
    )
