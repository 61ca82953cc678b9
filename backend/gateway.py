import json
import logging
from typing import Dict, Optional

import requests

from .settings import GatewaySettings

logger = logging.getLogger(__name__)

FALLBACK_ERROR_MESSAGE = (
    "An unexpected error occurred while contacting the payment gateway. "
    "Please check server logs for details."
)


class GatewayError(Exception):
    """Any failure talking to the payment gateway, with a readable message."""

    def __init__(self, message: str, status_code: int = 502, code: Optional[str] = None):
        message = str(message or "").strip()
        if not message or message in ("undefined", "None", "null"):
            message = FALLBACK_ERROR_MESSAGE
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code


def extract_error_message(body) -> Optional[str]:
    """Pull a description out of whatever error shape the gateway returned."""
    if body is None:
        return None
    if isinstance(body, str):
        return body.strip() or None
    if not isinstance(body, dict):
        return None

    nested = body.get("error")
    if isinstance(nested, str) and nested.strip():
        return nested.strip()
    if isinstance(nested, dict):
        for key in ("description", "message", "reason"):
            value = nested.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        if nested.get("code"):
            return f"Razorpay error: {nested['code']}"
        try:
            serialized = json.dumps(nested)
        except (TypeError, ValueError):
            serialized = ""
        if serialized and serialized not in ("{}", "null"):
            return serialized[:200]

    for key in ("description", "message"):
        value = body.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def extract_error_code(body) -> Optional[str]:
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        code = body["error"].get("code")
        return str(code) if code else None
    return None


def friendly_error_message(status_code: int, body) -> str:
    description = extract_error_message(body)
    if status_code == 401:
        return "Invalid Razorpay credentials. Please check your API keys."
    if status_code == 429:
        return "Too many requests. Please try again in a moment."
    if status_code >= 500:
        return "Razorpay server error. Please try again later."
    if status_code == 400:
        return description or "Invalid request to Razorpay. Please check your order details."
    return description or f"Razorpay API error ({status_code})"


class RazorpayClient:
    def __init__(self, settings: GatewaySettings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session or requests.Session()

    def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> Dict:
        payload = {"amount": amount, "currency": currency, "receipt": receipt}
        if notes:
            payload["notes"] = notes
        return self._request("POST", "/orders", json=payload)

    def fetch_payment(self, payment_id: str) -> Dict:
        return self._request("GET", f"/payments/{payment_id}")

    def fetch_order(self, order_id: str) -> Dict:
        return self._request("GET", f"/orders/{order_id}")

    def fetch_payments(self, order_id: str) -> Dict:
        return self._request("GET", f"/orders/{order_id}/payments")

    def _request(self, method: str, path: str, **kwargs) -> Dict:
        url = f"{self.settings.base_url}{path}"
        try:
            response = self.session.request(
                method,
                url,
                auth=(self.settings.key_id, self.settings.key_secret),
                timeout=self.settings.timeout,
                **kwargs,
            )
        except requests.RequestException as exc:
            logger.error("Razorpay %s %s failed: %s", method, path, exc)
            raise GatewayError(
                f"Could not reach Razorpay: {exc}" if str(exc) else "Could not reach Razorpay.",
                status_code=502,
            )

        try:
            body = response.json()
        except ValueError:
            body = response.text

        if response.status_code >= 400:
            message = friendly_error_message(response.status_code, body)
            logger.error(
                "Razorpay %s %s returned %s: %s",
                method,
                path,
                response.status_code,
                extract_error_message(body) or message,
            )
            raise GatewayError(
                message,
                status_code=response.status_code,
                code=extract_error_code(body),
            )

        if not isinstance(body, dict):
            raise GatewayError("Razorpay returned an unreadable response.", status_code=502)
        return body
