"""
Member API Endpoints
Members are the dependents that keep a membership plan from being hard-deleted.
"""
import logging
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from datetime import date, timedelta
from typing import List, Optional

from database import get_db
from models import Tenant, Member, MemberStatus, DurationType, PlanScope
from schemas import MemberCreate, MemberResponse, MemberStatusUpdate
from billing_gate import get_guarded_tenant
from errors import InvalidReferenceError, InvalidStateError, NotFoundError
from scoped_uniqueness import ScopedUniquenessEngine, validate_duration
from timezone_utils import get_tenant_today, add_months

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/members", tags=["members"])


def calculate_membership_end_date(start_date: date, duration_type: DurationType, duration_value: int) -> date:
    """
    DAYS: plain day addition.
    MONTHS: calendar months, clamped to month end (Jan 31 + 1 month = Feb 28/29).
    """
    validate_duration(duration_type, duration_value)
    if duration_type == DurationType.DAYS:
        return start_date + timedelta(days=duration_value)
    return add_months(start_date, duration_value)


async def get_tenant_member(db: AsyncSession, tenant_id: int, member_id: int) -> Member:
    result = await db.execute(
        select(Member).where(Member.id == member_id, Member.tenant_id == tenant_id)
    )
    member = result.scalar_one_or_none()
    if member is None:
        raise NotFoundError("Member not found")
    return member


@router.get("", response_model=List[MemberResponse])
async def list_members(
    branch_id: Optional[int] = None,
    membership_plan_id: Optional[int] = None,
    member_status: Optional[MemberStatus] = Query(None, alias="status"),
    current_tenant: Tenant = Depends(get_guarded_tenant),
    db: AsyncSession = Depends(get_db)
):
    query = select(Member).where(Member.tenant_id == current_tenant.id)
    if branch_id is not None:
        query = query.where(Member.branch_id == branch_id)
    if membership_plan_id is not None:
        query = query.where(Member.membership_plan_id == membership_plan_id)
    if member_status is not None:
        query = query.where(Member.status == member_status)

    result = await db.execute(query.order_by(Member.created_at.desc(), Member.id.desc()))
    return result.scalars().all()


@router.post("", response_model=MemberResponse, status_code=status.HTTP_201_CREATED)
async def create_member(
    member_data: MemberCreate,
    current_tenant: Tenant = Depends(get_guarded_tenant),
    db: AsyncSession = Depends(get_db)
):
    """
    Enrol a member on a plan.

    The plan must be active and visible to the member's branch: a tenant-wide
    plan, or a branch plan of that same branch.
    """
    engine = ScopedUniquenessEngine(db)
    await engine.resolve_scope_key(
        current_tenant.id, PlanScope.BRANCH, member_data.branch_id, require_active_branch=True
    )

    plan = await engine.get(current_tenant.id, member_data.membership_plan_id)
    if plan.archived_at is not None:
        raise InvalidStateError("Archived plans cannot be assigned to new members")
    if plan.scope == PlanScope.BRANCH and plan.branch_id != member_data.branch_id:
        raise InvalidReferenceError("This plan is not available for the selected branch", status_code=400)

    start_date = member_data.membership_start_date or get_tenant_today(current_tenant.timezone)
    member = Member(
        tenant_id=current_tenant.id,
        branch_id=member_data.branch_id,
        membership_plan_id=plan.id,
        first_name=member_data.first_name.strip(),
        last_name=member_data.last_name.strip(),
        phone=member_data.phone,
        status=MemberStatus.ACTIVE,
        membership_start_date=start_date,
        membership_end_date=calculate_membership_end_date(start_date, plan.duration_type, plan.duration_value),
    )
    db.add(member)
    await db.commit()
    await db.refresh(member)

    logger.info(f"Enrolled member {member.id} on plan {plan.id} (tenant {current_tenant.id})")
    return member


@router.get("/{member_id}", response_model=MemberResponse)
async def get_member(
    member_id: int,
    current_tenant: Tenant = Depends(get_guarded_tenant),
    db: AsyncSession = Depends(get_db)
):
    return await get_tenant_member(db, current_tenant.id, member_id)


@router.patch("/{member_id}/status", response_model=MemberResponse)
async def update_member_status(
    member_id: int,
    update: MemberStatusUpdate,
    current_tenant: Tenant = Depends(get_guarded_tenant),
    db: AsyncSession = Depends(get_db)
):
    member = await get_tenant_member(db, current_tenant.id, member_id)
    member.status = update.status
    await db.commit()
    await db.refresh(member)
    return member
