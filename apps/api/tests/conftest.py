"""
Pytest configuration and fixtures

Tests run against an in-memory SQLite database. The schema is created from the
models before each test and dropped afterwards, so nothing leaks between tests.
"""
import os
import sys
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Optional
from uuid import uuid4

import pytest

# Configuration must be in place before core.config is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("SECRET_KEY", "test-secret-key-that-is-long-enough-for-jwt-signing")
os.environ["EMAIL_ENABLED"] = "false"
os.environ["CHARGE_RATE_LIMIT_BACKEND"] = "memory"
os.environ.pop("TAP_WEBHOOK_SECRET", None)

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fastapi.testclient import TestClient

from core.database import Base, SessionLocal, engine, get_db
from core.rate_limit import charge_rate_limiter
from core.security import create_access_token
from models import Coach, CoachServiceLimit, PayoutRule, Service, ServicePricing, User
from services.email_service import EmailResult
from services.tap_gateway import TapCharge, TapClient, TapGatewayError, get_tap_client


@pytest.fixture(scope="function")
def db_session():
    """
    Fresh schema per test.

    The SQLite engine shares one connection, so sessions opened by the code
    under test see the same data once it is committed.
    """
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def _reset_rate_limiter():
    charge_rate_limiter.reset()
    yield
    charge_rate_limiter.reset()


class FakeTapClient(TapClient):
    """In-memory Tap: charges are registered by tests and served back."""

    def __init__(self):
        super().__init__(secret_key="sk_test_fake", base_url="https://tap.invalid/v2")
        self.charges: Dict[str, dict] = {}
        self.get_calls = []
        self.created = []
        self.deleted_subscriptions = []
        self.fail_with: Optional[TapGatewayError] = None

    def add_charge(self, charge_id: str, status: str = "CAPTURED", amount=100, currency: str = "KWD", **extra):
        payload = {"id": charge_id, "status": status, "amount": amount, "currency": currency}
        payload.update(extra)
        self.charges[charge_id] = payload
        return payload

    def get_charge(self, charge_id: str) -> TapCharge:
        self.get_calls.append(charge_id)
        if self.fail_with is not None:
            raise self.fail_with
        if charge_id not in self.charges:
            raise TapGatewayError("Tap API returned 404", status_code=404)
        return TapCharge.from_payload(self.charges[charge_id])

    def create_charge(self, **kwargs) -> TapCharge:
        if self.fail_with is not None:
            raise self.fail_with
        charge_id = f"chg_{uuid4().hex[:10]}"
        self.created.append(kwargs)
        payload = self.add_charge(
            charge_id,
            status="INITIATED",
            amount=float(kwargs["amount"]),
            currency=kwargs["currency"],
            metadata=kwargs.get("metadata") or {},
            transaction={"url": f"https://checkout.tap.invalid/{charge_id}"},
        )
        return TapCharge.from_payload(payload)

    def delete_subscription(self, subscription_id: str) -> dict:
        if self.fail_with is not None:
            raise self.fail_with
        self.deleted_subscriptions.append(subscription_id)
        return {"id": subscription_id, "deleted": True}


class RecordingMailer:
    """Stands in for EmailService; records every send."""

    def __init__(self, success: bool = True):
        self.success = success
        self.sent = []

    def _record(self, kind, *args, **kwargs) -> EmailResult:
        self.sent.append((kind, args, kwargs))
        if self.success:
            return EmailResult(success=True, id=f"msg_{len(self.sent)}")
        return EmailResult(success=False, error="http_500")

    def send_payment_confirmation(self, *args, **kwargs):
        return self._record("payment_confirmation", *args, **kwargs)

    def send_payment_failed(self, *args, **kwargs):
        return self._record("payment_failed", *args, **kwargs)

    def send_renewal_reminder(self, *args, **kwargs):
        return self._record("renewal_reminder", *args, **kwargs)

    def send_past_due_notice(self, *args, **kwargs):
        return self._record("past_due_notice", *args, **kwargs)

    def send_coach_payout_summary(self, *args, **kwargs):
        return self._record("coach_payout_summary", *args, **kwargs)

    def kinds(self):
        return [kind for kind, _, _ in self.sent]


@pytest.fixture
def fake_tap():
    return FakeTapClient()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def make_user(db_session):
    def _make(role: str = "client", status: str = "pending", payment_exempt: bool = False, full_name: str = "Test User"):
        user = User(
            email=f"{role}_{uuid4().hex[:8]}@example.com",
            role=role,
            status=status,
            full_name=full_name,
            payment_exempt=payment_exempt,
        )
        db_session.add(user)
        db_session.commit()
        return user

    return _make


@pytest.fixture
def admin_user(make_user):
    return make_user(role="admin", status="active", full_name="Platform Admin")


@pytest.fixture
def client_user(make_user):
    return make_user(role="client", full_name="Sara Client")


@pytest.fixture
def make_service(db_session):
    def _make(
        name: str = "Online Coaching",
        service_type: str = "one_to_one",
        delivery_mode: str = "online",
        price_kwd="100",
        payout_type: Optional[str] = "percent",
        payout_value="70",
    ):
        service = Service(name=name, service_type=service_type, delivery_mode=delivery_mode, is_active=True)
        db_session.add(service)
        db_session.flush()
        if price_kwd is not None:
            db_session.add(ServicePricing(service_id=service.id, price_kwd=Decimal(str(price_kwd)), is_active=True))
        if payout_type is not None:
            db_session.add(
                PayoutRule(
                    service_id=service.id,
                    primary_payout_type=payout_type,
                    primary_payout_value=Decimal(str(payout_value)),
                    platform_fee_type="none",
                    platform_fee_value=Decimal("0"),
                )
            )
        db_session.commit()
        return service

    return _make


@pytest.fixture
def make_coach(db_session, make_user):
    def _make(
        service: Optional[Service] = None,
        max_clients: int = 10,
        status: str = "active",
        specializations=None,
        last_assigned_at: Optional[datetime] = None,
        first_name: str = "Coach",
    ):
        user = make_user(role="coach", status="active", full_name=f"{first_name} Trainer")
        coach = Coach(
            user_id=user.id,
            first_name=first_name,
            last_name="Trainer",
            status=status,
            specializations=specializations or [],
            last_assigned_at=last_assigned_at,
        )
        db_session.add(coach)
        db_session.flush()
        if service is not None:
            db_session.add(CoachServiceLimit(coach_id=coach.id, service_id=service.id, max_clients=max_clients))
        db_session.commit()
        return coach

    return _make


def auth_headers(user: User) -> Dict[str, str]:
    token = create_access_token({"sub": str(user.id)})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def api_client(db_session, fake_tap, monkeypatch):
    """TestClient bound to the test session and the fake gateway; post-payment emails are captured."""
    from main import app
    import routers.payments as payments_router

    notifications = []
    monkeypatch.setattr(
        payments_router,
        "notify_payment_confirmed",
        lambda sub_id, next_billing: notifications.append(("confirmed", sub_id)),
    )
    monkeypatch.setattr(
        payments_router,
        "notify_payment_failed",
        lambda sub_id, reason: notifications.append(("failed", sub_id, reason)),
    )

    def _get_db():
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_tap_client] = lambda: fake_tap
    with TestClient(app) as client:
        client.notifications = notifications
        client.auth_headers = auth_headers
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def now():
    return datetime(2026, 3, 15, 10, 0, tzinfo=timezone.utc)
