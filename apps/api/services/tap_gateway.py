"""
Tap Payments gateway client.

Thin wrapper over the Tap REST API (https://api.tap.company/v2). The gateway
is the source of truth for charge status; nothing here writes to the
database. Any transport failure or non-2xx response raises TapGatewayError.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import requests

from core.config import settings

logger = logging.getLogger(__name__)

CAPTURED = "CAPTURED"
PENDING_STATUSES = ("INITIATED", "IN_PROGRESS")
FAILED_STATUSES = ("FAILED", "DECLINED", "CANCELLED")


class TapGatewayError(Exception):
    """The gateway could not be reached or answered with an error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class TapCharge:
    """The subset of a Tap charge object the billing pipeline reads."""

    id: str
    status: str
    amount: Optional[Decimal]
    currency: Optional[str]
    metadata: Dict[str, Any]
    transaction_url: Optional[str]
    raw: Dict[str, Any]

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TapCharge":
        amount = payload.get("amount")
        transaction = payload.get("transaction") or {}
        return cls(
            id=str(payload.get("id") or ""),
            status=str(payload.get("status") or "").upper(),
            amount=Decimal(str(amount)) if amount is not None else None,
            currency=payload.get("currency"),
            metadata=payload.get("metadata") or {},
            transaction_url=transaction.get("url") or payload.get("redirect_url"),
            raw=payload,
        )


class TapClient:
    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        self.secret_key = secret_key if secret_key is not None else settings.TAP_SECRET_KEY
        self.base_url = (base_url or settings.TAP_API_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.EXTERNAL_API_TIMEOUT
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        if not self.secret_key:
            raise TapGatewayError("Tap secret key not configured")
        return {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            r = self.session.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            logger.error(f"Tap request failed: {method} {path}: {e}")
            raise TapGatewayError(f"Tap request failed: {e}") from e

        if not 200 <= r.status_code < 300:
            logger.error(f"Tap API error {r.status_code} for {method} {path}: {r.text[:500]}")
            raise TapGatewayError(f"Tap API returned {r.status_code}", status_code=r.status_code)

        if not r.content:
            return {}
        try:
            return r.json()
        except ValueError as e:
            raise TapGatewayError("Tap API returned a non-JSON body") from e

    def get_charge(self, charge_id: str) -> TapCharge:
        return TapCharge.from_payload(self._request("GET", f"/charges/{charge_id}"))

    def create_charge(
        self,
        *,
        amount: Decimal,
        currency: str,
        customer: Dict[str, str],
        description: str,
        order_ref: str,
        metadata: Dict[str, str],
        redirect_url: str,
        post_url: Optional[str] = None,
    ) -> TapCharge:
        body: Dict[str, Any] = {
            "amount": float(amount),
            "currency": currency,
            "threeDSecure": True,
            "customer_initiated": True,
            "customer": customer,
            "description": description,
            "reference": {"order": order_ref, "idempotent": order_ref},
            "metadata": metadata,
            "receipt": {"email": True, "sms": False},
            # Cards are never stored
            "save_card": False,
            "source": {"id": "src_all"},
            "redirect": {"url": redirect_url},
        }
        if post_url:
            body["post"] = {"url": post_url}
        return TapCharge.from_payload(self._request("POST", "/charges", json=body))

    def delete_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._request("DELETE", f"/subscriptions/{subscription_id}")


def build_hashstring(charge: Dict[str, Any]) -> str:
    """The string Tap signs for charge webhooks."""
    amount = charge.get("amount")
    amount_str = f"{Decimal(str(amount)):.3f}" if amount is not None else ""
    reference = charge.get("reference") or {}
    transaction = charge.get("transaction") or {}
    return (
        "x_id" + str(charge.get("id") or "")
        + "x_amount" + amount_str
        + "x_currency" + str(charge.get("currency") or "")
        + "x_gateway_reference" + str(reference.get("gateway") or "")
        + "x_payment_reference" + str(reference.get("payment") or "")
        + "x_status" + str(charge.get("status") or "")
        + "x_created" + str(transaction.get("created") or "")
    )


def verify_webhook_signature(charge: Dict[str, Any], signature: Optional[str], secret: Optional[str]) -> bool:
    """
    Check the `hashstring` header against HMAC-SHA256 of the charge fields.

    Webhooks never activate anything on their own: the charge is always
    re-fetched from the API, so the signature only filters junk traffic.
    """
    if not secret:
        logger.warning("TAP_WEBHOOK_SECRET not configured, webhook signature not checked")
        return True
    if not signature:
        return False
    expected = hmac.new(secret.encode(), build_hashstring(charge).encode(), hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.lower(), signature.strip().lower())


def get_tap_client() -> TapClient:
    """FastAPI dependency; overridden in tests."""
    return TapClient()
