"""
Tests for the Daraja client against a mocked HTTP transport
"""
import base64
import json
from contextlib import contextmanager
from datetime import datetime
from unittest.mock import patch

import httpx
import pytest

from bakery_orders.core.config import settings
from bakery_orders.core.exceptions import PaymentProviderError
from bakery_orders.domain.services.mpesa_client import (
    NAIROBI_TZ,
    PRODUCTION_BASE_URL,
    SANDBOX_BASE_URL,
    MpesaDarajaClient,
    build_password,
    daraja_timestamp,
    get_base_url,
)

_TOKEN_RESPONSE = {"access_token": "tok-1", "expires_in": "3599"}


@contextmanager
def _daraja_settings(**overrides):
    values = {
        "MPESA_CONSUMER_KEY": "ck",
        "MPESA_CONSUMER_SECRET": "cs",
        "MPESA_SHORTCODE": "174379",
        "MPESA_PASSKEY": "pk",
        "MPESA_CALLBACK_URL": "https://shop.example.com/api/mpesa/callback",
        "MPESA_ENVIRONMENT": "sandbox",
    }
    values.update(overrides)
    patches = [patch.object(settings, name, value) for name, value in values.items()]
    for p in patches:
        p.start()
    try:
        yield
    finally:
        for p in reversed(patches):
            p.stop()


def _client(handler) -> tuple[MpesaDarajaClient, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def recording(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    http = httpx.AsyncClient(transport=httpx.MockTransport(recording))
    return MpesaDarajaClient(client=http), seen


def _route(stk_response: httpx.Response):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/oauth/v1/generate":
            return httpx.Response(200, json=_TOKEN_RESPONSE)
        return stk_response
    return handler


class TestHelpers:

    @pytest.mark.unit
    def test_base_url_follows_environment(self):
        with patch.object(settings, "MPESA_ENVIRONMENT", "production"):
            assert get_base_url() == PRODUCTION_BASE_URL
        with patch.object(settings, "MPESA_ENVIRONMENT", "sandbox"):
            assert get_base_url() == SANDBOX_BASE_URL

    @pytest.mark.unit
    def test_password_and_timestamp(self):
        stamp = daraja_timestamp(datetime(2026, 10, 19, 14, 5, 9, tzinfo=NAIROBI_TZ))
        assert stamp == "20261019140509"
        decoded = base64.b64decode(build_password("174379", "pk", stamp)).decode()
        assert decoded == "174379pk20261019140509"


class TestAccessToken:

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_token_is_cached(self):
        client, seen = _client(lambda request: httpx.Response(200, json=_TOKEN_RESPONSE))

        with _daraja_settings():
            first = await client.get_access_token()
            second = await client.get_access_token()

        assert first == second == "tok-1"
        assert len(seen) == 1
        assert seen[0].method == "GET"
        assert seen[0].url.params["grant_type"] == "client_credentials"
        assert seen[0].headers["authorization"].startswith("Basic ")

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_missing_credentials(self):
        client, seen = _client(lambda request: httpx.Response(200, json=_TOKEN_RESPONSE))

        with _daraja_settings(MPESA_CONSUMER_KEY=""):
            with pytest.raises(PaymentProviderError) as exc_info:
                await client.get_access_token()

        assert exc_info.value.retryable is False
        assert seen == []

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_rejected_credentials_not_retryable(self):
        client, _ = _client(lambda request: httpx.Response(400, json={"errorMessage": "Invalid credentials"}))

        with _daraja_settings():
            with pytest.raises(PaymentProviderError) as exc_info:
                await client.get_access_token()

        assert exc_info.value.retryable is False


class TestStkPush:

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_payload(self):
        client, seen = _client(_route(httpx.Response(200, json={
            "MerchantRequestID": "MR-1",
            "CheckoutRequestID": "ws_CO_NEW",
            "ResponseCode": "0",
            "CustomerMessage": "Success. Request accepted for processing",
        })))

        with _daraja_settings():
            data = await client.stk_push("C4F2K9Q", "0712345678", 2500)

        assert data["CheckoutRequestID"] == "ws_CO_NEW"
        push = seen[-1]
        assert push.url.path == "/mpesa/stkpush/v1/processrequest"
        assert push.headers["authorization"] == "Bearer tok-1"
        body = json.loads(push.content)
        assert body["Amount"] == 2500
        assert body["PartyA"] == body["PhoneNumber"] == "254712345678"
        assert body["AccountReference"] == "C4F2K9Q"
        assert body["CallBackURL"] == "https://shop.example.com/api/mpesa/callback"
        password = base64.b64decode(body["Password"]).decode()
        assert password == f"174379pk{body['Timestamp']}"

    @pytest.mark.asyncio
    @pytest.mark.unit
    @pytest.mark.parametrize("overrides", [
        {"MPESA_CALLBACK_URL": "/api/mpesa/callback"},
        {"MPESA_PASSKEY": ""},
    ])
    async def test_missing_configuration(self, overrides):
        client, seen = _client(_route(httpx.Response(200, json={"CheckoutRequestID": "x"})))

        with _daraja_settings(**overrides):
            with pytest.raises(PaymentProviderError) as exc_info:
                await client.stk_push("C4F2K9Q", "0712345678", 100)

        assert exc_info.value.retryable is False
        assert seen == []

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_invalid_phone(self):
        client, _ = _client(_route(httpx.Response(200, json={})))
        with _daraja_settings():
            with pytest.raises(PaymentProviderError):
                await client.stk_push("C4F2K9Q", "12345", 100)

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_client_error_keeps_provider_message(self):
        client, _ = _client(_route(httpx.Response(400, json={"errorMessage": "Bad Request - Invalid Amount"})))

        with _daraja_settings():
            with pytest.raises(PaymentProviderError) as exc_info:
                await client.stk_push("C4F2K9Q", "0712345678", 100)

        assert exc_info.value.retryable is False
        assert exc_info.value.details["provider_message"] == "Bad Request - Invalid Amount"

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_server_error_is_retryable(self):
        client, _ = _client(_route(httpx.Response(503, text="upstream down")))

        with _daraja_settings():
            with pytest.raises(PaymentProviderError) as exc_info:
                await client.stk_push("C4F2K9Q", "0712345678", 100)

        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_timeout(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/oauth/v1/generate":
                return httpx.Response(200, json=_TOKEN_RESPONSE)
            raise httpx.ReadTimeout("slow", request=request)

        client, _ = _client(handler)
        with _daraja_settings():
            with pytest.raises(PaymentProviderError) as exc_info:
                await client.stk_push("C4F2K9Q", "0712345678", 100)

        assert exc_info.value.details["timeout"] is True
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_missing_checkout_id(self):
        client, _ = _client(_route(httpx.Response(200, json={"ResponseCode": "1", "ResponseDescription": "Rejected"})))

        with _daraja_settings():
            with pytest.raises(PaymentProviderError, match="Rejected"):
                await client.stk_push("C4F2K9Q", "0712345678", 100)


class TestStkQuery:

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_completed_answer(self):
        client, seen = _client(_route(httpx.Response(200, json={"ResultCode": "0", "ResultDesc": "Processed"})))

        with _daraja_settings():
            data = await client.stk_query(" ws_CO_1 ")

        assert data["ResultCode"] == "0"
        assert json.loads(seen[-1].content)["CheckoutRequestID"] == "ws_CO_1"

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_still_processing_is_returned(self):
        body = {"errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"}
        client, _ = _client(_route(httpx.Response(500, json=body)))

        with _daraja_settings():
            data = await client.stk_query("ws_CO_1")

        assert data == body

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_other_errors_raise(self):
        client, _ = _client(_route(httpx.Response(500, json={"errorMessage": "Internal error"})))

        with _daraja_settings():
            with pytest.raises(PaymentProviderError):
                await client.stk_query("ws_CO_1")

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_requires_checkout_id(self):
        client, seen = _client(_route(httpx.Response(200, json={})))
        with _daraja_settings():
            with pytest.raises(PaymentProviderError):
                await client.stk_query("  ")
        assert seen == []


class TestRegisterC2B:

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_registers_urls(self):
        client, seen = _client(_route(httpx.Response(200, json={"ResponseDescription": "success"})))

        with _daraja_settings(
            MPESA_C2B_SHORTCODE="600000",
            MPESA_C2B_CONFIRMATION_URL="https://shop.example.com/api/mpesa/c2b/confirmation",
            MPESA_C2B_VALIDATION_URL="https://shop.example.com/api/mpesa/c2b/validation",
        ):
            data = await client.register_c2b_urls(response_type="Sometimes")

        assert data["ResponseDescription"] == "success"
        body = json.loads(seen[-1].content)
        assert seen[-1].url.path == "/mpesa/c2b/v1/registerurl"
        assert body["ShortCode"] == "600000"
        assert body["ResponseType"] == "Completed"
        assert body["ConfirmationURL"].endswith("/c2b/confirmation")

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_relative_url_rejected(self):
        client, _ = _client(_route(httpx.Response(200, json={})))

        with _daraja_settings(MPESA_C2B_CONFIRMATION_URL="/c2b/confirmation", MPESA_C2B_VALIDATION_URL=""):
            with pytest.raises(PaymentProviderError, match="MPESA_C2B_CONFIRMATION_URL"):
                await client.register_c2b_urls()
