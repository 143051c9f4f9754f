"""
Platform Super Admin API Router

Platform-wide administration of tenants. This is the only surface that may
change a tenant's billing status; it stands in for the external billing
process and every change is written to the admin activity log.

Access is restricted to super admin users only.
"""

import json
import logging
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from datetime import datetime, timedelta
from typing import List, Optional
from pydantic import BaseModel

from database import get_db
from models import User, Tenant, AdminActivityLog, BillingStatus
from schemas import TenantResponse, BillingStatusUpdate
from auth import verify_password, create_super_admin_token, get_current_super_admin
from config import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/platform", tags=["Platform Admin"])


# =============================================================================
# SCHEMAS
# =============================================================================

class SuperAdminLogin(BaseModel):
    username: str
    password: str


class Token(BaseModel):
    access_token: str
    token_type: str


class TenantActivationUpdate(BaseModel):
    is_active: bool
    reason: Optional[str] = None


class ActivityLogResponse(BaseModel):
    id: int
    admin_user_id: int
    admin_username: str
    action: str
    target_type: Optional[str]
    target_id: Optional[int]
    details: Optional[str]
    created_at: datetime


# =============================================================================
# AUTH
# =============================================================================

@router.post("/auth/login", response_model=Token)
async def login_super_admin(
    data: SuperAdminLogin,
    db: AsyncSession = Depends(get_db)
):
    """
    Login as platform super admin.
    """
    result = await db.execute(
        select(User).where(User.username == data.username)
    )
    user = result.scalar_one_or_none()

    if not user or not verify_password(data.password, user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password"
        )

    if not user.is_super_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Super admin privileges required"
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Inactive user"
        )

    access_token = create_super_admin_token(
        data={"sub": user.username, "user_id": user.id},
        expires_delta=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )

    return {"access_token": access_token, "token_type": "bearer"}


# =============================================================================
# TENANT BILLING
# =============================================================================

async def get_tenant_or_404(db: AsyncSession, tenant_id: int) -> Tenant:
    result = await db.execute(
        select(Tenant).where(Tenant.id == tenant_id)
    )
    tenant = result.scalar_one_or_none()

    if not tenant:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Tenant not found"
        )
    return tenant


@router.get("/tenants", response_model=List[TenantResponse])
async def list_all_tenants(
    billing_status: Optional[BillingStatus] = None,
    db: AsyncSession = Depends(get_db),
    current_admin: User = Depends(get_current_super_admin)
):
    """List tenants, optionally filtered by billing status"""
    query = select(Tenant)
    if billing_status:
        query = query.where(Tenant.billing_status == billing_status)

    result = await db.execute(query.order_by(Tenant.created_at.desc(), Tenant.id.desc()))
    return result.scalars().all()


@router.get("/tenants/{tenant_id}", response_model=TenantResponse)
async def get_tenant_details(
    tenant_id: int,
    db: AsyncSession = Depends(get_db),
    current_admin: User = Depends(get_current_super_admin)
):
    return await get_tenant_or_404(db, tenant_id)


@router.patch("/tenants/{tenant_id}/billing-status", response_model=TenantResponse)
async def update_tenant_billing_status(
    tenant_id: int,
    data: BillingStatusUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_admin: User = Depends(get_current_super_admin)
):
    """
    Change a tenant's billing status.

    Takes effect on the tenant's very next request: the billing gate re-reads
    the status every time, so tokens already issued need not be revoked.
    """
    tenant = await get_tenant_or_404(db, tenant_id)
    previous_status = tenant.billing_status

    if previous_status != data.billing_status:
        tenant.billing_status = data.billing_status
        tenant.billing_status_updated_at = datetime.utcnow()
        tenant.updated_at = datetime.utcnow()
        await db.commit()
        await db.refresh(tenant)

        logger.info(
            f"Billing status of tenant {tenant.id} changed "
            f"{previous_status.value} -> {data.billing_status.value} by admin {current_admin.id}"
        )

        await log_admin_activity(
            db=db,
            admin_user_id=current_admin.id,
            action="change_billing_status",
            target_type="tenant",
            target_id=tenant.id,
            details={
                "tenant_name": tenant.name,
                "from": previous_status.value,
                "to": data.billing_status.value,
                "reason": data.reason,
            },
            ip_address=request.client.host if request.client else None
        )

    return tenant


@router.patch("/tenants/{tenant_id}/activation", response_model=TenantResponse)
async def update_tenant_activation(
    tenant_id: int,
    data: TenantActivationUpdate,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_admin: User = Depends(get_current_super_admin)
):
    """Activate or deactivate a tenant. Deactivated tenants are refused before any billing check."""
    tenant = await get_tenant_or_404(db, tenant_id)

    if tenant.is_active != data.is_active:
        tenant.is_active = data.is_active
        tenant.updated_at = datetime.utcnow()
        await db.commit()
        await db.refresh(tenant)

        await log_admin_activity(
            db=db,
            admin_user_id=current_admin.id,
            action="activate_tenant" if data.is_active else "deactivate_tenant",
            target_type="tenant",
            target_id=tenant.id,
            details={"tenant_name": tenant.name, "reason": data.reason},
            ip_address=request.client.host if request.client else None
        )

    return tenant


# =============================================================================
# AUDIT LOG
# =============================================================================

async def log_admin_activity(
    db: AsyncSession,
    admin_user_id: int,
    action: str,
    target_type: Optional[str] = None,
    target_id: Optional[int] = None,
    details: Optional[dict] = None,
    ip_address: Optional[str] = None
):
    """Log admin activity for audit purposes"""
    activity_log = AdminActivityLog(
        admin_user_id=admin_user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        details=json.dumps(details) if details else None,
        ip_address=ip_address
    )
    db.add(activity_log)
    await db.commit()


@router.get("/activity-logs", response_model=List[ActivityLogResponse])
async def get_activity_logs(
    skip: int = 0,
    limit: int = 100,
    action: Optional[str] = None,
    target_id: Optional[int] = None,
    db: AsyncSession = Depends(get_db),
    current_admin: User = Depends(get_current_super_admin)
):
    """Get admin activity logs with filtering and pagination"""
    query = select(AdminActivityLog, User).join(
        User, AdminActivityLog.admin_user_id == User.id
    )

    if action:
        query = query.where(AdminActivityLog.action == action)

    if target_id:
        query = query.where(AdminActivityLog.target_id == target_id)

    query = query.order_by(desc(AdminActivityLog.created_at), desc(AdminActivityLog.id)).offset(skip).limit(limit)

    result = await db.execute(query)
    logs = result.all()

    return [ActivityLogResponse(
        id=log.AdminActivityLog.id,
        admin_user_id=log.AdminActivityLog.admin_user_id,
        admin_username=log.User.username,
        action=log.AdminActivityLog.action,
        target_type=log.AdminActivityLog.target_type,
        target_id=log.AdminActivityLog.target_id,
        details=log.AdminActivityLog.details,
        created_at=log.AdminActivityLog.created_at
    ) for log in logs]
