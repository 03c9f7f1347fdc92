"""
M-Pesa Daraja API client.

Thin async wrapper over the four Daraja endpoints the shop uses: OAuth,
STK push, STK push query, and C2B URL registration. Every call is bounded
by ``MPESA_HTTP_TIMEOUT_MS``. Network failures, timeouts and 5xx answers
raise a retryable ``PaymentProviderError``; 4xx answers raise a
non-retryable one carrying the provider's message.
"""
import base64
import time
from datetime import datetime
from typing import Any, Optional
from urllib.parse import urlparse
from zoneinfo import ZoneInfo

import httpx

from bakery_orders.core.config import settings
from bakery_orders.core.exceptions import PaymentProviderError
from bakery_orders.core.logging import get_logger
from bakery_orders.core.validation import PhoneNumberValidator

logger = get_logger(__name__)

SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_BASE_URL = "https://api.safaricom.co.ke"

# Daraja validates the password timestamp against Kenyan local time
NAIROBI_TZ = ZoneInfo("Africa/Nairobi")

# refresh the cached token this long before Daraja expires it
_TOKEN_EXPIRY_MARGIN_SECONDS = 60


def get_base_url() -> str:
    return PRODUCTION_BASE_URL if settings.MPESA_ENVIRONMENT == "production" else SANDBOX_BASE_URL


def daraja_timestamp(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(NAIROBI_TZ)
    return now.strftime("%Y%m%d%H%M%S")


def build_password(shortcode: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


def _require_absolute_url(value: str, name: str) -> str:
    parsed = urlparse(value or "")
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise PaymentProviderError(f"Invalid {name}: expected absolute URL", retryable=False)
    return value


def _json_or_text(response: httpx.Response) -> dict[str, Any]:
    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError:
        return {"ResponseDescription": response.text}
    return data if isinstance(data, dict) else {}


class MpesaDarajaClient:
    """Daraja client; pass ``client`` to share a connection pool or to mock transport"""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    @property
    def timeout_seconds(self) -> float:
        return settings.MPESA_HTTP_TIMEOUT_MS / 1000

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        **kwargs,
    ) -> httpx.Response:
        url = f"{get_base_url()}{path}"
        client = self._client or httpx.AsyncClient(timeout=self.timeout_seconds)
        try:
            return await client.request(method, url, timeout=self.timeout_seconds, **kwargs)
        except httpx.TimeoutException:
            logger.warning(
                "Daraja request timed out",
                extra_data={"operation": operation, "timeout_seconds": self.timeout_seconds},
            )
            raise PaymentProviderError(
                f"{operation} timed out after {self.timeout_seconds}s",
                details={"operation": operation, "timeout": True},
            )
        except httpx.RequestError as e:
            logger.warning(
                "Daraja request failed",
                extra_data={"operation": operation, "error": str(e)},
            )
            raise PaymentProviderError(
                f"{operation} network error: {e}",
                details={"operation": operation, "network_error": True},
            )
        finally:
            if self._client is None:
                await client.aclose()

    async def get_access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        key = settings.MPESA_CONSUMER_KEY
        secret = settings.MPESA_CONSUMER_SECRET
        if not key or not secret:
            raise PaymentProviderError(
                "Missing MPESA_CONSUMER_KEY or MPESA_CONSUMER_SECRET", retryable=False
            )

        response = await self._request(
            "oauth",
            "GET",
            "/oauth/v1/generate",
            params={"grant_type": "client_credentials"},
            auth=(key, secret),
        )
        if response.status_code != 200:
            raise PaymentProviderError.from_response("oauth", response)

        data = _json_or_text(response)
        token = data.get("access_token")
        if not token:
            raise PaymentProviderError("oauth returned no access_token")

        try:
            expires_in = int(data.get("expires_in", 3599))
        except (TypeError, ValueError):
            expires_in = 3599
        self._token = token
        self._token_expires_at = time.monotonic() + max(expires_in - _TOKEN_EXPIRY_MARGIN_SECONDS, 0)
        return token

    def _stk_credentials(self) -> tuple[str, str, str]:
        shortcode = settings.MPESA_SHORTCODE
        passkey = settings.MPESA_PASSKEY
        if not shortcode or not passkey:
            raise PaymentProviderError("Missing MPESA_SHORTCODE or MPESA_PASSKEY", retryable=False)
        timestamp = daraja_timestamp()
        return shortcode, timestamp, build_password(shortcode, passkey, timestamp)

    async def _post_json(self, operation: str, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        token = await self.get_access_token()
        response = await self._request(
            operation,
            "POST",
            path,
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
        )
        data = _json_or_text(response)
        if response.status_code >= 400:
            error = PaymentProviderError.from_response(operation, response)
            provider_message = (
                data.get("errorMessage") or data.get("ResultDesc") or data.get("ResponseDescription")
            )
            if provider_message:
                error.details["provider_message"] = str(provider_message)[:300]
            raise error
        return data

    async def stk_push(self, order_reference: str, phone: str, amount: int) -> dict[str, Any]:
        """
        Send the STK prompt to the customer's phone.

        Returns the Daraja body: MerchantRequestID, CheckoutRequestID,
        ResponseCode, ResponseDescription, CustomerMessage.
        """
        msisdn = PhoneNumberValidator.to_msisdn(phone)
        if not msisdn:
            raise PaymentProviderError(
                "Invalid phone format. Use 07XXXXXXXX or 01XXXXXXXX", retryable=False
            )
        callback_url = _require_absolute_url(settings.MPESA_CALLBACK_URL, "MPESA_CALLBACK_URL")
        shortcode, timestamp, password = self._stk_credentials()

        data = await self._post_json(
            "stk_push",
            "/mpesa/stkpush/v1/processrequest",
            {
                "BusinessShortCode": shortcode,
                "Password": password,
                "Timestamp": timestamp,
                "TransactionType": settings.MPESA_TRANSACTION_TYPE,
                "Amount": int(amount),
                "PartyA": msisdn,
                "PartyB": shortcode,
                "PhoneNumber": msisdn,
                "CallBackURL": callback_url,
                "AccountReference": order_reference,
                "TransactionDesc": f"Order {order_reference}",
            },
        )
        if not data.get("CheckoutRequestID"):
            raise PaymentProviderError(
                data.get("ResponseDescription") or "stk_push returned no CheckoutRequestID",
                details={"response_code": data.get("ResponseCode")},
                retryable=False,
            )
        return data

    async def stk_query(self, checkout_request_id: str) -> dict[str, Any]:
        """
        Ask Daraja what happened to a checkout session.

        A 500 with "The transaction is being processed" is a normal answer
        for an unfinished prompt, so that body is returned for
        classification instead of raised.
        """
        checkout_request_id = (checkout_request_id or "").strip()
        if not checkout_request_id:
            raise PaymentProviderError("checkout_request_id is required", retryable=False)
        shortcode, timestamp, password = self._stk_credentials()
        payload = {
            "BusinessShortCode": shortcode,
            "Password": password,
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }

        token = await self.get_access_token()
        response = await self._request(
            "stk_query",
            "POST",
            "/mpesa/stkpushquery/v1/query",
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
        )
        data = _json_or_text(response)
        if response.status_code >= 400:
            description = str(data.get("errorMessage") or data.get("ResultDesc") or "")
            if "processed" in description.lower() or "processing" in description.lower():
                return data
            raise PaymentProviderError.from_response("stk_query", response)
        return data

    async def register_c2b_urls(
        self,
        shortcode: Optional[str] = None,
        confirmation_url: Optional[str] = None,
        validation_url: Optional[str] = None,
        response_type: Optional[str] = None,
    ) -> dict[str, Any]:
        shortcode = (shortcode or settings.MPESA_C2B_SHORTCODE or settings.MPESA_SHORTCODE or "").strip()
        if not shortcode:
            raise PaymentProviderError("Missing MPESA_C2B_SHORTCODE or MPESA_SHORTCODE", retryable=False)

        response_type = response_type or settings.MPESA_C2B_RESPONSE_TYPE
        if response_type not in ("Completed", "Cancelled"):
            response_type = "Completed"

        return await self._post_json(
            "c2b_register",
            "/mpesa/c2b/v1/registerurl",
            {
                "ShortCode": shortcode,
                "ResponseType": response_type,
                "ConfirmationURL": _require_absolute_url(
                    confirmation_url or settings.MPESA_C2B_CONFIRMATION_URL, "MPESA_C2B_CONFIRMATION_URL"
                ),
                "ValidationURL": _require_absolute_url(
                    validation_url or settings.MPESA_C2B_VALIDATION_URL, "MPESA_C2B_VALIDATION_URL"
                ),
            },
        )


_client: Optional[MpesaDarajaClient] = None


def get_mpesa_client() -> MpesaDarajaClient:
    """Process-wide client so the OAuth token is reused"""
    global _client
    if _client is None:
        _client = MpesaDarajaClient()
    return _client
