"""
Tenant Management API Endpoints
Handles tenant registration and tenant settings
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from datetime import datetime, timedelta

from database import get_db
from models import Tenant, User, Branch, UserRole, BillingStatus
from schemas import TenantCreate, TenantResponse, TenantUpdate
from auth import get_password_hash, require_admin_role
from billing_gate import get_guarded_tenant
from timezone_utils import get_tenant_timezone
from config import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tenants", tags=["tenants"])


@router.post("/register", response_model=TenantResponse, status_code=status.HTTP_201_CREATED)
async def register_tenant(
    tenant_data: TenantCreate,
    db: AsyncSession = Depends(get_db)
):
    """
    PUBLIC ENDPOINT: Register a new gym business.
    Creates the tenant on a trial, the initial admin user and a default branch.
    """
    # Check slug availability
    result = await db.execute(
        select(Tenant).where(Tenant.slug == tenant_data.slug)
    )
    if result.scalar_one_or_none():
        raise HTTPException(
            status_code=400,
            detail="Slug already taken"
        )

    # Check if admin username or email exists
    result = await db.execute(
        select(User).where(
            (User.username == tenant_data.admin_username) | (User.email == tenant_data.owner_email)
        )
    )
    if result.scalar_one_or_none():
        raise HTTPException(
            status_code=400,
            detail="Username or email already taken"
        )

    # Create tenant with trial period
    now = datetime.utcnow()
    new_tenant = Tenant(
        name=tenant_data.name,
        slug=tenant_data.slug,
        owner_email=tenant_data.owner_email,
        phone=tenant_data.phone,
        default_currency=tenant_data.default_currency or settings.DEFAULT_CURRENCY,
        timezone=tenant_data.timezone or settings.DEFAULT_TIMEZONE,
        billing_status=BillingStatus.TRIAL,
        billing_status_updated_at=now,
        trial_started_at=now,
        trial_ends_at=now + timedelta(days=settings.TRIAL_PERIOD_DAYS),
    )
    db.add(new_tenant)
    await db.flush()  # Get tenant ID

    admin_user = User(
        tenant_id=new_tenant.id,
        username=tenant_data.admin_username,
        email=tenant_data.owner_email,
        hashed_password=get_password_hash(tenant_data.admin_password),
        full_name=tenant_data.admin_full_name,
        role=UserRole.ADMIN,
        is_active=True
    )
    db.add(admin_user)

    default_branch = Branch(
        tenant_id=new_tenant.id,
        name=tenant_data.branch_name,
        is_default=True,
        is_active=True
    )
    db.add(default_branch)

    await db.commit()
    await db.refresh(new_tenant)

    logger.info(f"Registered tenant {new_tenant.id} ({new_tenant.slug}) on a {settings.TRIAL_PERIOD_DAYS}-day trial")
    return new_tenant


@router.get("/me", response_model=TenantResponse)
async def get_current_tenant_details(
    current_tenant: Tenant = Depends(get_guarded_tenant)
):
    """Get current tenant details, including billing status"""
    return current_tenant


@router.patch("/me", response_model=TenantResponse)
async def update_current_tenant(
    updates: TenantUpdate,
    current_tenant: Tenant = Depends(get_guarded_tenant),
    _: bool = Depends(require_admin_role),
    db: AsyncSession = Depends(get_db)
):
    """
    Update current tenant settings (admin only).

    Billing fields are rejected by TenantUpdate before this runs.
    """
    changes = updates.model_dump(exclude_unset=True)

    if changes.get("timezone") is not None and get_tenant_timezone(changes["timezone"]).zone != changes["timezone"]:
        raise HTTPException(status_code=400, detail=f"Unknown timezone: {changes['timezone']}")

    for key, value in changes.items():
        if value is not None:
            setattr(current_tenant, key, value)

    current_tenant.updated_at = datetime.utcnow()

    await db.commit()
    await db.refresh(current_tenant)

    return current_tenant
