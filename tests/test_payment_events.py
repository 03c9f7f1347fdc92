"""
Tests for provider payload normalization
"""
import pytest

from bakery_orders.core.exceptions import MalformedPayloadError
from bakery_orders.db.models.payment_attempt import PaymentSource
from bakery_orders.domain.services.payment_events import (
    EventOutcome,
    classify_status_query,
    normalize_c2b_confirmation,
    normalize_gateway_webhook,
    normalize_stk_callback,
    parse_amount,
    parse_result_code,
)


class TestStkCallback:

    @pytest.mark.unit
    def test_success_with_metadata(self, stk_payload):
        event = normalize_stk_callback(stk_payload("ws_CO_1", amount=1500, receipt="RKT0000001"))

        assert event.source == PaymentSource.STK_CALLBACK
        assert event.outcome == EventOutcome.SUCCESS
        assert event.session_id == "ws_CO_1"
        assert event.amount == 1500
        assert event.receipt == "RKT0000001"
        assert event.phone == "0712345678"

    @pytest.mark.unit
    def test_cancelled_by_user(self, stk_payload):
        event = normalize_stk_callback(stk_payload("ws_CO_2", result_code=1032))

        assert event.outcome == EventOutcome.FAILED
        assert event.result_code == 1032
        assert event.amount is None
        assert event.receipt is None

    @pytest.mark.unit
    def test_string_result_code(self):
        event = normalize_stk_callback(
            {"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_3", "ResultCode": "0"}}}
        )
        assert event.outcome == EventOutcome.SUCCESS

    @pytest.mark.unit
    def test_flat_shape(self):
        event = normalize_stk_callback({
            "checkoutRequestId": "ws_CO_4",
            "resultCode": 0,
            "amount": "700.00",
            "mpesaReceiptNumber": "RKF0000001",
        })
        assert event.session_id == "ws_CO_4"
        assert event.amount == 700
        assert event.receipt == "RKF0000001"

    @pytest.mark.unit
    @pytest.mark.parametrize("payload", [
        {},
        {"Body": {"stkCallback": {"ResultCode": 0}}},
        {"Body": {"stkCallback": {"CheckoutRequestID": "   ", "ResultCode": 0}}},
    ])
    def test_missing_checkout_id(self, payload):
        with pytest.raises(MalformedPayloadError):
            normalize_stk_callback(payload)

    @pytest.mark.unit
    def test_missing_result_code(self):
        with pytest.raises(MalformedPayloadError):
            normalize_stk_callback({"Body": {"stkCallback": {"CheckoutRequestID": "ws_CO_5"}}})


class TestC2BConfirmation:

    @pytest.mark.unit
    def test_fields(self, c2b_payload):
        event = normalize_c2b_confirmation(c2b_payload("RKC0000009", " c000123 ", 2500))

        assert event.source == PaymentSource.C2B
        assert event.outcome == EventOutcome.SUCCESS
        assert event.session_id is None
        assert event.receipt == "RKC0000009"
        assert event.bill_reference == "C000123"
        assert event.amount == 2500

    @pytest.mark.unit
    def test_missing_trans_id(self):
        with pytest.raises(MalformedPayloadError):
            normalize_c2b_confirmation({"TransAmount": "10", "BillRefNumber": "C000001"})


class TestGatewayWebhook:

    @pytest.mark.unit
    def test_success_event(self):
        event = normalize_gateway_webhook({
            "event": "payment.success",
            "data": {"checkoutRequestId": "ws_CO_G1", "amount": 900, "transaction_reference": "RKG0000009"},
        })
        assert event.outcome == EventOutcome.SUCCESS
        assert event.amount == 900
        assert event.receipt == "RKG0000009"

    @pytest.mark.unit
    def test_failed_by_result_code(self):
        event = normalize_gateway_webhook({"Data": {"checkout_request_id": "ws_CO_G2", "ResultCode": 1}})
        assert event.outcome == EventOutcome.FAILED

    @pytest.mark.unit
    def test_unknown_event_is_pending(self):
        event = normalize_gateway_webhook({"Type": "payment.queued", "Data": {"checkout_request_id": "ws_CO_G3"}})
        assert event.outcome == EventOutcome.PENDING

    @pytest.mark.unit
    def test_missing_checkout(self):
        with pytest.raises(MalformedPayloadError):
            normalize_gateway_webhook({"Type": "payment.success", "Data": {}})


class TestStatusQuery:

    @pytest.mark.unit
    def test_still_processing_without_code_is_pending(self):
        event = classify_status_query("ws_CO_Q1", {"ResultDesc": "The transaction is still processing"})
        assert event.outcome == EventOutcome.PENDING
        assert event.result_code is None

    @pytest.mark.unit
    def test_processing_description_beats_code(self):
        event = classify_status_query(
            "ws_CO_Q2", {"ResultCode": "500.001.1001", "errorMessage": "The transaction is being processed"}
        )
        assert event.outcome == EventOutcome.PENDING

    @pytest.mark.unit
    def test_success(self):
        assert classify_status_query("ws_CO_Q3", {"ResultCode": "0"}).outcome == EventOutcome.SUCCESS

    @pytest.mark.unit
    def test_cancelled(self):
        event = classify_status_query("ws_CO_Q4", {"ResultCode": "1032", "ResultDesc": "Request cancelled by user"})
        assert event.outcome == EventOutcome.FAILED
        assert event.source == PaymentSource.STATUS_QUERY


class TestParsers:

    @pytest.mark.unit
    @pytest.mark.parametrize("raw,expected", [
        ("1000", 1000),
        (1000.9, 1000),
        (" 250.50 ", 250),
        (None, None),
        ("abc", None),
        (-5, None),
        (True, None),
    ])
    def test_parse_amount(self, raw, expected):
        assert parse_amount(raw) == expected

    @pytest.mark.unit
    @pytest.mark.parametrize("raw,expected", [
        (0, 0),
        ("1032", 1032),
        (" 1 ", 1),
        ("500.001.1001", None),
        (None, None),
    ])
    def test_parse_result_code(self, raw, expected):
        assert parse_result_code(raw) == expected
