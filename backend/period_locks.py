"""
Revenue Month Lock API Endpoints
Locks freeze a branch's payments for a calendar month.
"""
from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List

from database import get_db
from models import Tenant, User
from schemas import MonthLockCreate, MonthLockResponse, MonthLockCheckResponse
from auth import get_current_active_user, require_admin_role
from billing_gate import get_guarded_tenant
from period_lock_registry import PeriodLockRegistry

router = APIRouter(prefix="/revenue-month-locks", tags=["revenue-month-locks"])


@router.get("", response_model=List[MonthLockResponse])
async def list_locks(
    branch_id: int,
    current_tenant: Tenant = Depends(get_guarded_tenant),
    db: AsyncSession = Depends(get_db)
):
    """Locked months for a branch, newest first"""
    return await PeriodLockRegistry(db).list(current_tenant.id, branch_id)


@router.post("", response_model=MonthLockResponse, status_code=status.HTTP_201_CREATED)
async def lock_month(
    branch_id: int,
    lock_data: MonthLockCreate,
    response: Response,
    current_tenant: Tenant = Depends(get_guarded_tenant),
    current_user: User = Depends(get_current_active_user),
    _: bool = Depends(require_admin_role),
    db: AsyncSession = Depends(get_db)
):
    """
    Lock a month. 201 when the lock is new, 200 with the existing lock when
    the month was already locked.
    """
    record, created = await PeriodLockRegistry(db).lock(
        current_tenant.id, branch_id, lock_data.month, locked_by_user_id=current_user.id
    )
    if not created:
        response.status_code = status.HTTP_200_OK
    return record


@router.delete("/{month}")
async def unlock_month(
    month: str,
    branch_id: int,
    current_tenant: Tenant = Depends(get_guarded_tenant),
    _: bool = Depends(require_admin_role),
    db: AsyncSession = Depends(get_db)
):
    await PeriodLockRegistry(db).unlock(current_tenant.id, branch_id, month)
    return {"message": "Month unlocked successfully"}


@router.get("/check/{month}", response_model=MonthLockCheckResponse)
async def check_month(
    month: str,
    branch_id: int,
    current_tenant: Tenant = Depends(get_guarded_tenant),
    db: AsyncSession = Depends(get_db)
):
    registry = PeriodLockRegistry(db)
    await registry.ensure_branch(current_tenant.id, branch_id)
    return await registry.check_month(current_tenant.id, branch_id, month)
