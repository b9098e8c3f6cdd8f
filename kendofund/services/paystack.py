# kendofund/services/paystack.py
"""
Paystack REST client.

Thin wrapper over `requests`: every call carries an explicit timeout, and
transport/gateway failures are mapped onto a small exception hierarchy the
blueprints turn into HTTP statuses. No retries here; callers (browser or
Paystack itself) retry.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests
from flask import current_app

log = logging.getLogger(__name__)


# ----------------------------
# Errors
# ----------------------------
class PaystackError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = int(status_code)


class PaystackNotConfigured(PaystackError):
    status_code = 500


class PaystackTimeout(PaystackError):
    status_code = 504


class PaystackAPIError(PaystackError):
    """Non-2xx (or status=false) answer from the gateway; status is forwarded."""


class WebhookSignatureError(PaystackError):
    status_code = 401


# ----------------------------
# Settings
# ----------------------------
@dataclass(frozen=True)
class Settings:
    env: str
    secret_key: str
    public_key: str
    base_url: str
    timeout: float
    site_base_url: str

    @property
    def mode(self) -> str:
        k = (self.secret_key or self.public_key or "").strip()
        if k.startswith(("sk_live_", "pk_live_")):
            return "live"
        if k.startswith(("sk_test_", "pk_test_")):
            return "test"
        return "unknown"

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    @classmethod
    def load(cls) -> "Settings":
        cfg = current_app.config
        return cls(
            env=str(cfg.get("ENV") or "development").lower(),
            secret_key=str(cfg.get("PAYSTACK_SECRET_KEY") or "").strip(),
            public_key=str(cfg.get("PAYSTACK_PUBLIC_KEY") or "").strip(),
            base_url=str(cfg.get("PAYSTACK_BASE_URL") or "https://api.paystack.co").rstrip("/"),
            timeout=float(cfg.get("PAYSTACK_TIMEOUT") or 10),
            site_base_url=str(cfg.get("SITE_BASE_URL") or "").rstrip("/"),
        )

    def require_secret(self, *, live_in_production: bool = False) -> str:
        if not self.secret_key:
            raise PaystackNotConfigured("Payment gateway not configured")
        if live_in_production and self.env == "production" and not self.secret_key.startswith("sk_live_"):
            raise PaystackNotConfigured("Invalid payment configuration")
        return self.secret_key


# ----------------------------
# Webhook signature
# ----------------------------
def compute_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()


def signature_matches(secret: str, body: bytes, signature: str) -> bool:
    expected = compute_signature(secret, body)
    return hmac.compare_digest(expected, (signature or "").strip().lower())


def authenticate_webhook(s: Settings, body: bytes, signature: Optional[str]) -> None:
    if not signature:
        raise WebhookSignatureError("Missing signature")
    secret = s.require_secret()
    if not signature_matches(secret, body, signature):
        log.warning("SECURITY: invalid webhook signature (body=%s bytes)", len(body or b""))
        raise WebhookSignatureError("Invalid signature")


# ----------------------------
# HTTP
# ----------------------------
def _headers(secret: str) -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {secret}",
        "Content-Type": "application/json",
        "Accept": "application/json",
    }


def _decode(resp: requests.Response) -> Dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _raise_for_gateway(resp: requests.Response, data: Dict[str, Any], default_message: str) -> None:
    if resp.ok and data.get("status"):
        return
    message = str(data.get("message") or default_message)
    raise PaystackAPIError(message, resp.status_code)


def initialize_transaction(s: Settings, payload: Dict[str, Any]) -> Dict[str, Any]:
    """POST /transaction/initialize → gateway `data` object."""
    secret = s.require_secret(live_in_production=True)
    try:
        resp = requests.post(
            f"{s.base_url}/transaction/initialize",
            json=payload,
            headers=_headers(secret),
            timeout=s.timeout,
        )
    except requests.Timeout as e:
        raise PaystackTimeout("Payment gateway timeout. Please try again.") from e

    data = _decode(resp)
    if not resp.ok:
        log.error("paystack.initialize: gateway error %s: %s", resp.status_code, data.get("message"))
        raise PaystackAPIError(str(data.get("message") or "Failed to initialize payment"), resp.status_code)
    if not data.get("status") or not isinstance(data.get("data"), dict):
        raise PaystackAPIError("Invalid response from payment gateway", 500)
    return data["data"]


def verify_transaction(s: Settings, reference: str) -> Dict[str, Any]:
    """GET /transaction/verify/<reference> → gateway `data` object."""
    secret = s.require_secret()
    try:
        resp = requests.get(
            f"{s.base_url}/transaction/verify/{reference}",
            headers=_headers(secret),
            timeout=s.timeout,
        )
    except requests.Timeout as e:
        raise PaystackTimeout("Verification timeout. Please try again.") from e

    data = _decode(resp)
    if not resp.ok or not data.get("status"):
        log.error(
            "paystack.verify: gateway error reference=%s status=%s message=%s",
            reference,
            resp.status_code,
            data.get("message"),
        )
    _raise_for_gateway(resp, data, "Transaction verification failed")
    tx = data.get("data")
    return tx if isinstance(tx, dict) else {}
