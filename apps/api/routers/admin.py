"""
Admin API Router

Catalog and payout configuration, coach payout runs, and manual coach
assignment. Admin role only.
"""

from datetime import date
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.auth import require_admin
from core.database import get_db
from core.exceptions import APIException, ConflictError, NotFoundError, ValidationError
from models import Coach, Service, Subscription, User
from schemas import (
    AddonAttach,
    AddonCreate,
    AddonResponse,
    CoachPaymentsCalculate,
    ManualAssignment,
    MonthlyCoachPaymentResponse,
    PayoutRuleResponse,
    PayoutRuleUpdate,
    ServiceCreate,
    ServicePriceUpdate,
    ServiceResponse,
    SubscriptionResponse,
)
from services import catalog
from services.coach_assignment import assign_manually
from services.coach_payments import (
    PayoutCalculationError,
    calculate_monthly_coach_payments,
    first_of_month,
    list_monthly_payments,
)
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/admin", tags=["admin"])


def _service_response(db: Session, service: Service) -> ServiceResponse:
    price = catalog.active_price(db, service.id)
    response = ServiceResponse.model_validate(service)
    response.price_kwd = price.price_kwd if price else None
    return response


# ---------------------------------------------------------------- catalog

@router.get("/services", response_model=List[ServiceResponse])
def list_services(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return [_service_response(db, s) for s in db.query(Service).order_by(Service.name).all()]


@router.post("/services", response_model=ServiceResponse, status_code=201)
def create_service(request: ServiceCreate, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    try:
        service = catalog.create_service(
            db, request.name, request.service_type, request.delivery_mode, request.price_kwd
        )
        db.commit()
    except catalog.CatalogError as e:
        db.rollback()
        raise ValidationError(str(e))
    except IntegrityError:
        db.rollback()
        raise ConflictError(f"Service already exists: {request.name}")
    logger.info(f"Service created by admin {admin.id}: {service.name} ({service.delivery_mode})")
    return _service_response(db, service)


@router.put("/services/{service_id}/price", response_model=ServiceResponse)
def update_service_price(
    service_id: UUID,
    request: ServicePriceUpdate,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    service = db.query(Service).filter(Service.id == service_id).first()
    if service is None:
        raise NotFoundError("Service", str(service_id))
    catalog.set_service_price(db, service.id, request.price_kwd)
    db.commit()
    return _service_response(db, service)


@router.put("/services/{service_id}/payout-rule", response_model=PayoutRuleResponse)
def update_payout_rule(
    service_id: UUID,
    request: PayoutRuleUpdate,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    if db.query(Service.id).filter(Service.id == service_id).first() is None:
        raise NotFoundError("Service", str(service_id))
    try:
        rule = catalog.set_payout_rule(
            db,
            service_id,
            request.primary_payout_type,
            request.primary_payout_value,
            request.platform_fee_type,
            request.platform_fee_value,
        )
        db.commit()
    except catalog.CatalogError as e:
        db.rollback()
        raise ValidationError(str(e))
    return rule


@router.post("/addons", response_model=AddonResponse, status_code=201)
def create_addon(request: AddonCreate, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    try:
        addon = catalog.create_addon(
            db,
            request.code,
            request.name,
            request.price_kwd,
            payout_type=request.payout_type,
            payout_value=request.payout_value,
            payout_recipient_role=request.payout_recipient_role,
        )
        db.commit()
    except catalog.CatalogError as e:
        db.rollback()
        raise ValidationError(str(e))
    except IntegrityError:
        db.rollback()
        raise ConflictError(f"Add-on code already exists: {request.code}")
    return addon


@router.post("/subscriptions/{subscription_id}/addons", status_code=201)
def attach_addon(
    subscription_id: UUID,
    request: AddonAttach,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    if db.query(Subscription.id).filter(Subscription.id == subscription_id).first() is None:
        raise NotFoundError("Subscription", str(subscription_id))
    try:
        row = catalog.attach_addon(
            db,
            subscription_id,
            addon_id=request.addon_id,
            specialty=request.specialty,
            staff_user_id=request.staff_user_id,
            billing_type=request.billing_type,
        )
        db.commit()
    except catalog.CatalogError as e:
        db.rollback()
        raise ValidationError(str(e))
    return {"id": str(row.id), "addon_id": str(row.addon_id) if row.addon_id else None, "specialty": row.specialty}


# ------------------------------------------------------- coach assignment

@router.post("/subscriptions/{subscription_id}/assign-coach", response_model=SubscriptionResponse)
def assign_coach_manually(
    subscription_id: UUID,
    request: ManualAssignment,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    subscription = db.query(Subscription).filter(Subscription.id == subscription_id).first()
    if subscription is None:
        raise NotFoundError("Subscription", str(subscription_id))
    coach = (
        db.query(Coach)
        .filter((Coach.id == request.coach_id) | (Coach.user_id == request.coach_id))
        .first()
    )
    if coach is None:
        raise NotFoundError("Coach", str(request.coach_id))
    assign_manually(db, subscription, coach)
    db.commit()
    db.refresh(subscription)
    return subscription


@router.get("/subscriptions/needs-coach", response_model=List[SubscriptionResponse])
def list_unassigned(admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return (
        db.query(Subscription)
        .filter(Subscription.needs_coach_assignment.is_(True))
        .order_by(Subscription.created_at)
        .all()
    )


# ---------------------------------------------------------- coach payouts

@router.post("/coach-payments/calculate")
def calculate_coach_payments(
    request: Optional[CoachPaymentsCalculate] = None,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Recalculate and persist payouts for a month (defaults to the current month)."""
    month = request.month if request else None
    try:
        return calculate_monthly_coach_payments(db, month)
    except PayoutCalculationError:
        raise APIException(
            status_code=500,
            detail="Coach payment calculation failed",
            error_code="CALCULATION_FAILED",
        )


@router.get("/coach-payments", response_model=List[MonthlyCoachPaymentResponse])
def get_coach_payments(
    month: Optional[date] = Query(default=None),
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return list_monthly_payments(db, first_of_month(month))
