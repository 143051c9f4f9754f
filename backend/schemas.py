from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator
from typing import Optional, List
from datetime import datetime, date
from models import (
    UserRole, BillingStatus, PlanScope, DurationType, MemberStatus, PaymentMethod
)


SUPPORTED_CURRENCIES = (
    "USD", "EUR", "GBP", "CAD", "AUD", "JPY", "CNY", "INR",
    "BRL", "MXN", "ZAR", "TRY", "SGD", "HKD", "NZD",
)

# Fields the general tenant update must never accept, in either spelling
PROTECTED_TENANT_FIELDS = (
    "billing_status", "billingStatus",
    "billing_status_updated_at", "billingStatusUpdatedAt",
    "trial_started_at", "trialStartedAt",
    "trial_ends_at", "trialEndsAt",
)


# Tenant Schemas
class TenantCreate(BaseModel):
    """Schema for registering a new tenant with its first admin user"""
    name: str = Field(..., min_length=3, max_length=100)
    slug: str = Field(..., min_length=3, max_length=50, pattern=r"^[a-z0-9-]+$")
    owner_email: EmailStr
    phone: Optional[str] = None
    timezone: Optional[str] = None
    default_currency: Optional[str] = None
    branch_name: str = "Main Branch"

    admin_username: str = Field(..., min_length=3, max_length=100)
    admin_password: str = Field(..., min_length=8, max_length=72)
    admin_full_name: str


class TenantUpdate(BaseModel):
    """
    Schema for updating tenant settings.

    Billing fields are owned by the platform billing process; sending any of
    them here is a validation error regardless of the tenant's status.
    """
    name: Optional[str] = Field(None, min_length=3, max_length=100)
    default_currency: Optional[str] = None
    timezone: Optional[str] = None

    class Config:
        extra = "forbid"

    @model_validator(mode="before")
    @classmethod
    def reject_billing_fields(cls, data):
        if isinstance(data, dict):
            protected = [key for key in PROTECTED_TENANT_FIELDS if key in data]
            if protected:
                raise ValueError(f"{protected[0]} cannot be updated through this endpoint")
        return data

    @field_validator("default_currency")
    @classmethod
    def check_currency(cls, value):
        if value is not None and value not in SUPPORTED_CURRENCIES:
            raise ValueError(f"Unsupported currency. Use one of: {', '.join(SUPPORTED_CURRENCIES)}")
        return value


class TenantResponse(BaseModel):
    id: int
    name: str
    slug: str
    owner_email: str
    phone: Optional[str] = None
    default_currency: str
    timezone: str
    is_active: bool
    billing_status: BillingStatus
    billing_status_updated_at: Optional[datetime] = None
    trial_started_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class TenantBillingInfo(BaseModel):
    """Tenant block returned with login and /auth/me so the UI can degrade to read-only"""
    id: int
    name: str
    slug: str
    billing_status: BillingStatus
    billing_status_updated_at: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# User / Auth Schemas
class UserResponse(BaseModel):
    id: int
    username: str
    email: str
    full_name: str
    role: UserRole
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


class LoginRequest(BaseModel):
    username: str
    password: str
    slug: str  # Tenant identifier


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserResponse
    tenant: TenantBillingInfo


class MeResponse(BaseModel):
    user: UserResponse
    tenant: TenantBillingInfo


# Branch Schemas
class BranchCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    address: Optional[str] = None


class BranchResponse(BaseModel):
    id: int
    name: str
    address: Optional[str] = None
    is_default: bool
    is_active: bool
    archived_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


# Membership Plan Schemas
class PlanCreate(BaseModel):
    scope: PlanScope
    branch_id: Optional[int] = None
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    duration_type: DurationType
    duration_value: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    currency: str = Field(..., min_length=3, max_length=3)
    max_freeze_days: Optional[int] = Field(None, ge=0)
    auto_renew: bool = False
    sort_order: Optional[int] = None

    class Config:
        extra = "forbid"  # scope_key is derived, never client-supplied

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Plan name is required")
        return value


class PlanUpdate(BaseModel):
    """Business fields only. scope and branch_id are immutable and rejected as unknown fields."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=1000)
    duration_type: Optional[DurationType] = None
    duration_value: Optional[int] = Field(None, ge=1)
    price: Optional[float] = Field(None, ge=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    max_freeze_days: Optional[int] = Field(None, ge=0)
    auto_renew: Optional[bool] = None
    sort_order: Optional[int] = None

    class Config:
        extra = "forbid"

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value):
        if value is not None and not value.strip():
            raise ValueError("Plan name cannot be blank")
        return value


class PlanResponse(BaseModel):
    id: int
    scope: PlanScope
    branch_id: Optional[int] = None
    scope_key: str
    name: str
    description: Optional[str] = None
    duration_type: DurationType
    duration_value: int
    price: float
    currency: str
    max_freeze_days: Optional[int] = None
    auto_renew: bool
    sort_order: Optional[int] = None
    status: str
    archived_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ActivePlanResponse(PlanResponse):
    active_member_count: Optional[int] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class PlanListResponse(BaseModel):
    data: List[PlanResponse]
    pagination: Pagination


class PlanArchiveResponse(BaseModel):
    id: int
    status: str
    archived_at: Optional[datetime] = None
    message: str
    active_member_count: int


# Member Schemas
class MemberCreate(BaseModel):
    branch_id: int
    membership_plan_id: int
    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field(..., min_length=1, max_length=50)
    phone: Optional[str] = None
    membership_start_date: Optional[date] = None


class MemberStatusUpdate(BaseModel):
    status: MemberStatus


class MemberResponse(BaseModel):
    id: int
    branch_id: int
    membership_plan_id: int
    first_name: str
    last_name: str
    phone: Optional[str] = None
    status: MemberStatus
    membership_start_date: date
    membership_end_date: date
    created_at: datetime

    class Config:
        from_attributes = True


# Payment Schemas
class PaymentCreate(BaseModel):
    member_id: int
    amount: float = Field(..., gt=0)
    paid_on: Optional[date] = None
    payment_method: PaymentMethod = PaymentMethod.CASH
    note: Optional[str] = Field(None, max_length=500)


class PaymentUpdate(BaseModel):
    amount: Optional[float] = Field(None, gt=0)
    paid_on: Optional[date] = None
    payment_method: Optional[PaymentMethod] = None
    note: Optional[str] = Field(None, max_length=500)

    class Config:
        extra = "forbid"


class PaymentResponse(BaseModel):
    id: int
    branch_id: int
    member_id: int
    amount: float
    paid_on: date
    payment_method: PaymentMethod
    note: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


# Revenue Month Lock Schemas
class MonthLockCreate(BaseModel):
    month: str  # YYYY-MM, validated by the registry


class MonthLockResponse(BaseModel):
    id: int
    branch_id: int
    month: str
    locked_by_user_id: Optional[int] = None
    locked_at: datetime

    class Config:
        from_attributes = True


class MonthLockCheckResponse(BaseModel):
    locked: bool


# Platform Admin Schemas
class BillingStatusUpdate(BaseModel):
    billing_status: BillingStatus
    reason: Optional[str] = None
