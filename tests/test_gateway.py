"""Unit tests for the Razorpay REST client and its error handling."""

import pytest
import requests

from backend.gateway import (
    FALLBACK_ERROR_MESSAGE,
    GatewayError,
    RazorpayClient,
    extract_error_message,
    friendly_error_message,
)
from backend.settings import GatewaySettings

SETTINGS = GatewaySettings(key_id="rzp_test_key", key_secret="secret", timeout=5.0)


class DummyResp:
    """Minimal requests-like response stub."""

    def __init__(self, status_code=200, json_data=None, text=""):
        self.status_code = status_code
        self._json = json_data
        self.text = text

    def json(self):
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json


class StubSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        if self.error:
            raise self.error
        return self.response


def test_create_order_posts_with_basic_auth():
    session = StubSession(DummyResp(200, {"id": "order_1", "amount": 50000}))
    client = RazorpayClient(SETTINGS, session=session)

    body = client.create_order(50000, "INR", "order_abc", notes={"orderId": "abc"})

    assert body["id"] == "order_1"
    method, url, kwargs = session.calls[0]
    assert method == "POST"
    assert url == "https://api.razorpay.com/v1/orders"
    assert kwargs["auth"] == ("rzp_test_key", "secret")
    assert kwargs["timeout"] == 5.0
    assert kwargs["json"] == {
        "amount": 50000,
        "currency": "INR",
        "receipt": "order_abc",
        "notes": {"orderId": "abc"},
    }


def test_fetch_paths():
    session = StubSession(DummyResp(200, {"items": []}))
    client = RazorpayClient(SETTINGS, session=session)
    client.fetch_payment("pay_1")
    client.fetch_order("order_1")
    client.fetch_payments("order_1")
    assert [call[1] for call in session.calls] == [
        "https://api.razorpay.com/v1/payments/pay_1",
        "https://api.razorpay.com/v1/orders/order_1",
        "https://api.razorpay.com/v1/orders/order_1/payments",
    ]


def test_bad_credentials_are_reported_plainly():
    session = StubSession(DummyResp(401, {"error": {"code": "BAD_REQUEST_ERROR"}}))
    with pytest.raises(GatewayError) as excinfo:
        RazorpayClient(SETTINGS, session=session).fetch_order("order_1")
    assert excinfo.value.status_code == 401
    assert "Invalid Razorpay credentials" in excinfo.value.message
    assert excinfo.value.code == "BAD_REQUEST_ERROR"


def test_bad_request_uses_gateway_description():
    session = StubSession(
        DummyResp(400, {"error": {"description": "Order amount less than minimum amount allowed"}})
    )
    with pytest.raises(GatewayError) as excinfo:
        RazorpayClient(SETTINGS, session=session).create_order(50, "INR", "r")
    assert excinfo.value.message == "Order amount less than minimum amount allowed"


def test_network_failure_becomes_gateway_error():
    session = StubSession(error=requests.ConnectionError("connection refused"))
    with pytest.raises(GatewayError) as excinfo:
        RazorpayClient(SETTINGS, session=session).fetch_payment("pay_1")
    assert excinfo.value.status_code == 502
    assert "connection refused" in excinfo.value.message


def test_non_json_success_is_rejected():
    session = StubSession(DummyResp(200, None, text="<html>"))
    with pytest.raises(GatewayError):
        RazorpayClient(SETTINGS, session=session).fetch_payment("pay_1")


@pytest.mark.parametrize(
    "body, expected",
    [
        ({"error": "plain text"}, "plain text"),
        ({"error": {"description": "desc"}}, "desc"),
        ({"error": {"message": "msg"}}, "msg"),
        ({"error": {"reason": "why"}}, "why"),
        ({"error": {"code": "E42"}}, "Razorpay error: E42"),
        ({"error": {"field": "amount"}}, '{"field": "amount"}'),
        ({"description": "top level"}, "top level"),
        ({}, None),
        (None, None),
    ],
)
def test_extract_error_message(body, expected):
    assert extract_error_message(body) == expected


def test_friendly_messages_by_status():
    assert "Too many requests" in friendly_error_message(429, {})
    assert "server error" in friendly_error_message(503, {"error": {"description": "x"}})
    assert friendly_error_message(404, {}) == "Razorpay API error (404)"


@pytest.mark.parametrize("message", ["", "   ", None, "undefined"])
def test_gateway_error_never_has_empty_message(message):
    assert GatewayError(message).message == FALLBACK_ERROR_MESSAGE
