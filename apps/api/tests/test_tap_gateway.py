"""
Tests for the Tap client and webhook signature check.
"""
import hashlib
import hmac
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests

from services.tap_gateway import (
    TapCharge,
    TapClient,
    TapGatewayError,
    build_hashstring,
    verify_webhook_signature,
)


def _response(status_code=200, payload=None, text=""):
    r = MagicMock()
    r.status_code = status_code
    r.content = b"{}" if payload is not None else b""
    r.json.return_value = payload
    r.text = text
    return r


def _client(response=None, error=None):
    session = MagicMock()
    if error is not None:
        session.request.side_effect = error
    else:
        session.request.return_value = response
    return TapClient(secret_key="sk_test", base_url="https://api.tap.test/v2/", timeout=5, session=session), session


class TestTapCharge:
    def test_from_payload(self):
        charge = TapCharge.from_payload(
            {
                "id": "chg_1",
                "status": "captured",
                "amount": 12.5,
                "currency": "KWD",
                "metadata": {"user_id": "u1"},
                "transaction": {"url": "https://pay.example/chg_1"},
            }
        )
        assert charge.status == "CAPTURED"
        assert charge.amount == Decimal("12.5")
        assert charge.metadata == {"user_id": "u1"}
        assert charge.transaction_url == "https://pay.example/chg_1"

    def test_missing_fields(self):
        charge = TapCharge.from_payload({"id": "chg_2"})
        assert charge.status == ""
        assert charge.amount is None
        assert charge.metadata == {}


class TestTapClient:
    def test_get_charge(self):
        client, session = _client(_response(payload={"id": "chg_1", "status": "CAPTURED", "amount": 100}))

        charge = client.get_charge("chg_1")

        assert charge.id == "chg_1"
        method, url = session.request.call_args.args
        assert method == "GET"
        assert url == "https://api.tap.test/v2/charges/chg_1"
        assert session.request.call_args.kwargs["headers"]["Authorization"] == "Bearer sk_test"
        assert session.request.call_args.kwargs["timeout"] == 5

    def test_create_charge_never_saves_card(self):
        client, session = _client(_response(payload={"id": "chg_new", "status": "INITIATED"}))

        client.create_charge(
            amount=Decimal("80.000"),
            currency="KWD",
            customer={"first_name": "Sara", "last_name": "", "email": "sara@example.com"},
            description="Online Coaching",
            order_ref="ord_1",
            metadata={"user_id": "u1"},
            redirect_url="https://app.example/payment-return",
        )

        body = session.request.call_args.kwargs["json"]
        assert body["save_card"] is False
        assert body["amount"] == 80.0
        assert body["source"] == {"id": "src_all"}
        assert body["reference"] == {"order": "ord_1", "idempotent": "ord_1"}
        assert "post" not in body

    def test_non_2xx_raises(self):
        client, _ = _client(_response(status_code=401, payload={"errors": []}, text="unauthorized"))

        with pytest.raises(TapGatewayError) as exc:
            client.get_charge("chg_1")
        assert exc.value.status_code == 401

    def test_transport_error_raises(self):
        client, _ = _client(error=requests.exceptions.ConnectTimeout("timed out"))

        with pytest.raises(TapGatewayError):
            client.get_charge("chg_1")

    def test_missing_secret_key(self):
        client = TapClient(secret_key="", session=MagicMock())

        with pytest.raises(TapGatewayError):
            client.get_charge("chg_1")


class TestWebhookSignature:
    CHARGE = {
        "id": "chg_1",
        "amount": 100,
        "currency": "KWD",
        "status": "CAPTURED",
        "reference": {"gateway": "gw_1", "payment": "pay_1"},
        "transaction": {"created": "1773568800000"},
    }

    def test_hashstring_layout(self):
        assert build_hashstring(self.CHARGE) == (
            "x_idchg_1x_amount100.000x_currencyKWDx_gateway_referencegw_1"
            "x_payment_referencepay_1x_statusCAPTUREDx_created1773568800000"
        )

    def test_valid_signature(self):
        signature = hmac.new(b"whsec", build_hashstring(self.CHARGE).encode(), hashlib.sha256).hexdigest()
        assert verify_webhook_signature(self.CHARGE, signature, "whsec") is True

    def test_wrong_signature(self):
        assert verify_webhook_signature(self.CHARGE, "deadbeef", "whsec") is False

    def test_missing_signature(self):
        assert verify_webhook_signature(self.CHARGE, None, "whsec") is False

    def test_no_secret_configured_accepts(self):
        assert verify_webhook_signature(self.CHARGE, None, None) is True
