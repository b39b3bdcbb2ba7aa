from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime, date
from decimal import Decimal
from uuid import UUID
from typing import Optional, List, Dict


# ---------------------------------------------------------------- accounts

class UserRegister(BaseModel):
    email: str = Field(min_length=3, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(min_length=8)
    full_name: Optional[str] = None


class UserLogin(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user_id: UUID
    role: str


# ---------------------------------------------------------------- catalog

class ServiceCreate(BaseModel):
    name: str = Field(min_length=1)
    service_type: str = Field(pattern="^(team|one_to_one)$")
    delivery_mode: Optional[str] = Field(default=None, pattern="^(in_person|hybrid|online)$")
    price_kwd: Optional[Decimal] = Field(default=None, ge=0)


class ServiceResponse(BaseModel):
    id: UUID
    name: str
    service_type: str
    delivery_mode: str
    is_active: bool
    price_kwd: Optional[Decimal] = None

    model_config = ConfigDict(from_attributes=True)


class ServicePriceUpdate(BaseModel):
    price_kwd: Decimal = Field(ge=0)


class PayoutRuleUpdate(BaseModel):
    primary_payout_type: str = Field(pattern="^(percent|fixed)$")
    primary_payout_value: Decimal = Field(ge=0)
    platform_fee_type: str = Field(default="none", pattern="^(percent|fixed|none)$")
    platform_fee_value: Decimal = Field(default=Decimal("0"), ge=0)


class PayoutRuleResponse(BaseModel):
    service_id: UUID
    primary_payout_type: str
    primary_payout_value: Decimal
    platform_fee_type: str
    platform_fee_value: Decimal

    model_config = ConfigDict(from_attributes=True)


class AddonCreate(BaseModel):
    code: str = Field(min_length=1)
    name: str = Field(min_length=1)
    price_kwd: Decimal = Field(ge=0)
    payout_type: Optional[str] = Field(default=None, pattern="^(percent|fixed)$")
    payout_value: Optional[Decimal] = Field(default=None, ge=0)
    payout_recipient_role: str = Field(default="addon_staff", pattern="^(primary_coach|addon_staff)$")


class AddonResponse(BaseModel):
    id: UUID
    code: str
    name: str
    price_kwd: Decimal
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class AddonAttach(BaseModel):
    addon_id: Optional[UUID] = None
    specialty: Optional[str] = None
    staff_user_id: Optional[UUID] = None
    billing_type: str = Field(default="recurring", pattern="^(recurring|one_time)$")


# ------------------------------------------------------------- onboarding

class OnboardingSubmit(BaseModel):
    service_id: UUID
    focus_areas: List[str] = Field(default_factory=list)
    coach_preference_type: str = Field(default="auto", pattern="^(auto|specific)$")
    requested_coach_id: Optional[UUID] = None
    discount_code: Optional[str] = None


class SubscriptionResponse(BaseModel):
    id: UUID
    user_id: UUID
    service_id: UUID
    coach_id: Optional[UUID] = None
    status: str
    coach_assignment_method: Optional[str] = None
    needs_coach_assignment: bool = False
    base_price_kwd: Optional[Decimal] = None
    billing_amount_kwd: Optional[Decimal] = None
    discount_code_id: Optional[UUID] = None
    next_billing_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ManualAssignment(BaseModel):
    coach_id: UUID


# ---------------------------------------------------------------- payments

class VerifyPaymentRequest(BaseModel):
    user_id: UUID
    charge_id: Optional[str] = None
    source: str = Field(default="client", pattern="^(client|webhook)$")


class CreateChargeResponse(BaseModel):
    charge_id: str
    payment_url: Optional[str] = None
    amount_kwd: Decimal
    status: str


class CancelSubscriptionRequest(BaseModel):
    user_id: Optional[UUID] = None
    reason: Optional[str] = None


class DiscountValidateRequest(BaseModel):
    code: str = Field(min_length=1)
    service_id: UUID


class DiscountValidateResponse(BaseModel):
    valid: bool
    code_id: Optional[UUID] = None
    base_price_kwd: Optional[Decimal] = None
    billing_amount_kwd: Optional[Decimal] = None
    reason: Optional[str] = None


# ----------------------------------------------------------- coach payouts

class CoachPaymentsCalculate(BaseModel):
    month: Optional[date] = None


class MonthlyCoachPaymentResponse(BaseModel):
    id: UUID
    payment_month: date
    coach_id: UUID
    client_breakdown: Dict[str, float]
    total_clients: int
    base_payout_kwd: Decimal
    addon_payout_kwd: Decimal
    total_payment: Decimal
    gross_revenue_kwd: Decimal
    discounts_applied_kwd: Decimal
    net_collected_kwd: Decimal
    calculated_at: datetime

    model_config = ConfigDict(from_attributes=True)
