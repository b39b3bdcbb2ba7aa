"""
Service catalog: services, prices, payout rules and add-ons.

Delivery mode is an enumerated tag on the service, resolved once when the
service is written. Reporting never infers it from the name at runtime.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from models import AddonPayoutRule, AddonService, PayoutRule, Service, ServicePricing, SubscriptionAddon

logger = logging.getLogger(__name__)

SERVICE_TYPES = ("team", "one_to_one")
DELIVERY_MODES = ("in_person", "hybrid", "online")
PAYOUT_TYPES = ("percent", "fixed")
FEE_TYPES = ("percent", "fixed", "none")
RECIPIENT_ROLES = ("primary_coach", "addon_staff")


class CatalogError(ValueError):
    pass


def resolve_delivery_mode(name: Optional[str], explicit: Optional[str] = None) -> str:
    """
    Explicit tag wins; otherwise derive it from the service name:
    'in-person'/'inperson' -> in_person, 'hybrid' -> hybrid, else online.
    """
    if explicit:
        if explicit not in DELIVERY_MODES:
            raise CatalogError(f"Unknown delivery mode: {explicit}")
        return explicit
    lowered = (name or "").lower()
    if "in-person" in lowered or "inperson" in lowered:
        return "in_person"
    if "hybrid" in lowered:
        return "hybrid"
    return "online"


def create_service(
    db: Session,
    name: str,
    service_type: str,
    delivery_mode: Optional[str] = None,
    price_kwd: Optional[Decimal] = None,
) -> Service:
    if service_type not in SERVICE_TYPES:
        raise CatalogError(f"Unknown service type: {service_type}")
    service = Service(
        name=name,
        service_type=service_type,
        delivery_mode=resolve_delivery_mode(name, delivery_mode),
        is_active=True,
    )
    db.add(service)
    db.flush()
    if price_kwd is not None:
        set_service_price(db, service.id, price_kwd)
    return service


def active_price(db: Session, service_id: UUID) -> Optional[ServicePricing]:
    return (
        db.query(ServicePricing)
        .filter(ServicePricing.service_id == service_id, ServicePricing.is_active.is_(True))
        .order_by(ServicePricing.created_at.desc())
        .first()
    )


def set_service_price(db: Session, service_id: UUID, price_kwd: Decimal) -> ServicePricing:
    """Deactivate the current price and add the new one. Does not commit."""
    price = Decimal(str(price_kwd))
    if price < 0:
        raise CatalogError("Price must not be negative")
    db.query(ServicePricing).filter(
        ServicePricing.service_id == service_id, ServicePricing.is_active.is_(True)
    ).update({ServicePricing.is_active: False}, synchronize_session=False)
    row = ServicePricing(service_id=service_id, price_kwd=price, is_active=True)
    db.add(row)
    db.flush()
    return row


def set_payout_rule(
    db: Session,
    service_id: UUID,
    payout_type: str,
    payout_value: Decimal,
    platform_fee_type: str = "none",
    platform_fee_value: Decimal = Decimal("0"),
) -> PayoutRule:
    if payout_type not in PAYOUT_TYPES:
        raise CatalogError(f"Unknown payout type: {payout_type}")
    if platform_fee_type not in FEE_TYPES:
        raise CatalogError(f"Unknown platform fee type: {platform_fee_type}")
    value = Decimal(str(payout_value))
    if value < 0 or (payout_type == "percent" and value > 100):
        raise CatalogError("Payout value out of range")

    rule = db.query(PayoutRule).filter(PayoutRule.service_id == service_id).first()
    if rule is None:
        rule = PayoutRule(service_id=service_id)
        db.add(rule)
    rule.primary_payout_type = payout_type
    rule.primary_payout_value = value
    rule.platform_fee_type = platform_fee_type
    rule.platform_fee_value = Decimal(str(platform_fee_value))
    db.flush()
    return rule


def create_addon(
    db: Session,
    code: str,
    name: str,
    price_kwd: Decimal,
    payout_type: Optional[str] = None,
    payout_value: Optional[Decimal] = None,
    payout_recipient_role: str = "addon_staff",
) -> AddonService:
    addon = AddonService(code=code.strip().lower(), name=name, price_kwd=Decimal(str(price_kwd)), is_active=True)
    db.add(addon)
    db.flush()
    if payout_type is not None:
        if payout_type not in PAYOUT_TYPES:
            raise CatalogError(f"Unknown payout type: {payout_type}")
        if payout_recipient_role not in RECIPIENT_ROLES:
            raise CatalogError(f"Unknown payout recipient role: {payout_recipient_role}")
        db.add(
            AddonPayoutRule(
                addon_id=addon.id,
                payout_type=payout_type,
                payout_value=Decimal(str(payout_value or 0)),
                payout_recipient_role=payout_recipient_role,
            )
        )
        db.flush()
    return addon


def attach_addon(
    db: Session,
    subscription_id: UUID,
    addon_id: Optional[UUID] = None,
    specialty: Optional[str] = None,
    staff_user_id: Optional[UUID] = None,
    billing_type: str = "recurring",
) -> SubscriptionAddon:
    """
    Attach an add-on to a subscription. A specialty code that matches a catalog
    entry is stored as addon_id; unmatched codes are kept as legacy specialty rows.
    """
    addon = None
    if addon_id is not None:
        addon = db.query(AddonService).filter(AddonService.id == addon_id).first()
        if addon is None:
            raise CatalogError(f"Unknown add-on: {addon_id}")
    elif specialty:
        addon = db.query(AddonService).filter(func.lower(AddonService.code) == specialty.strip().lower()).first()
        if addon is None:
            logger.warning(f"Add-on specialty '{specialty}' has no catalog entry, storing as legacy row")
    else:
        raise CatalogError("addon_id or specialty is required")

    row = SubscriptionAddon(
        subscription_id=subscription_id,
        addon_id=addon.id if addon else None,
        specialty=None if addon else specialty,
        staff_user_id=staff_user_id,
        price_kwd=addon.price_kwd if addon else None,
        status="active",
        billing_type=billing_type,
    )
    db.add(row)
    db.flush()
    return row
