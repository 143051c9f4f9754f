"""
Membership Plan API Endpoints
Plans are tenant-wide or branch-scoped; names are unique per scope among active plans.
"""
from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
import math

from database import get_db
from models import Tenant, PlanScope
from schemas import (
    PlanCreate, PlanUpdate, PlanResponse, ActivePlanResponse,
    PlanListResponse, PlanArchiveResponse, Pagination
)
from auth import require_admin_role
from billing_gate import get_guarded_tenant
from scoped_uniqueness import ScopedUniquenessEngine
from timezone_utils import get_tenant_today

router = APIRouter(prefix="/membership-plans", tags=["membership-plans"])


@router.get("", response_model=PlanListResponse)
async def list_plans(
    scope: Optional[PlanScope] = None,
    branch_id: Optional[int] = None,
    q: Optional[str] = Query(None, max_length=100),
    include_archived: bool = False,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_tenant: Tenant = Depends(get_guarded_tenant),
    db: AsyncSession = Depends(get_db)
):
    """List plans with optional scope / branch / name filters"""
    engine = ScopedUniquenessEngine(db)
    if branch_id is not None:
        await engine.resolve_scope_key(current_tenant.id, PlanScope.BRANCH, branch_id)

    plans, total = await engine.repo.list_for_tenant(
        current_tenant.id,
        scope=scope,
        branch_id=branch_id,
        search=q,
        include_archived=include_archived,
        page=page,
        limit=limit
    )
    return PlanListResponse(
        data=[PlanResponse.model_validate(plan) for plan in plans],
        pagination=Pagination(
            page=page,
            limit=limit,
            total=total,
            total_pages=math.ceil(total / limit) if total else 0
        )
    )


@router.get("/active", response_model=List[ActivePlanResponse])
async def list_active_plans(
    branch_id: Optional[int] = None,
    include_member_count: bool = False,
    current_tenant: Tenant = Depends(get_guarded_tenant),
    db: AsyncSession = Depends(get_db)
):
    """
    Plans assignable to a new member: tenant-wide plans, plus the plans of
    `branch_id` when given.
    """
    engine = ScopedUniquenessEngine(db)
    if branch_id is not None:
        await engine.resolve_scope_key(current_tenant.id, PlanScope.BRANCH, branch_id)

    plans = await engine.repo.list_active_for_branch(current_tenant.id, branch_id)

    response = []
    today = get_tenant_today(current_tenant.timezone)
    for plan in plans:
        item = ActivePlanResponse.model_validate(plan)
        if include_member_count:
            item.active_member_count = await engine.repo.count_active_members(plan.id, today)
        response.append(item)
    return response


@router.get("/{plan_id}", response_model=PlanResponse)
async def get_plan(
    plan_id: int,
    current_tenant: Tenant = Depends(get_guarded_tenant),
    db: AsyncSession = Depends(get_db)
):
    return await ScopedUniquenessEngine(db).get(current_tenant.id, plan_id)


@router.post("", response_model=PlanResponse, status_code=status.HTTP_201_CREATED)
async def create_plan(
    plan_data: PlanCreate,
    current_tenant: Tenant = Depends(get_guarded_tenant),
    _: bool = Depends(require_admin_role),
    db: AsyncSession = Depends(get_db)
):
    """Create a plan (admin only). 409 if an active plan in the same scope has the same name."""
    return await ScopedUniquenessEngine(db).create(current_tenant.id, plan_data.model_dump())


@router.patch("/{plan_id}", response_model=PlanResponse)
async def update_plan(
    plan_id: int,
    updates: PlanUpdate,
    current_tenant: Tenant = Depends(get_guarded_tenant),
    _: bool = Depends(require_admin_role),
    db: AsyncSession = Depends(get_db)
):
    """Update business fields, including renames (admin only)"""
    return await ScopedUniquenessEngine(db).update(
        current_tenant.id, plan_id, updates.model_dump(exclude_unset=True)
    )


@router.post("/{plan_id}/archive", response_model=PlanArchiveResponse)
async def archive_plan(
    plan_id: int,
    current_tenant: Tenant = Depends(get_guarded_tenant),
    _: bool = Depends(require_admin_role),
    db: AsyncSession = Depends(get_db)
):
    """Archive a plan. Safe to repeat; existing members keep their plan."""
    plan, active_member_count = await ScopedUniquenessEngine(db).archive(
        current_tenant.id, plan_id, today=get_tenant_today(current_tenant.timezone)
    )
    if active_member_count > 0:
        message = f"Plan archived. {active_member_count} active members are still on this plan."
    else:
        message = "Plan archived successfully."

    return PlanArchiveResponse(
        id=plan.id,
        status=plan.status,
        archived_at=plan.archived_at,
        message=message,
        active_member_count=active_member_count
    )


@router.post("/{plan_id}/restore", response_model=PlanResponse)
async def restore_plan(
    plan_id: int,
    current_tenant: Tenant = Depends(get_guarded_tenant),
    _: bool = Depends(require_admin_role),
    db: AsyncSession = Depends(get_db)
):
    return await ScopedUniquenessEngine(db).restore(current_tenant.id, plan_id)


@router.delete("/{plan_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_plan(
    plan_id: int,
    current_tenant: Tenant = Depends(get_guarded_tenant),
    _: bool = Depends(require_admin_role),
    db: AsyncSession = Depends(get_db)
):
    """Hard delete. Refused while any member references the plan; archive it instead."""
    await ScopedUniquenessEngine(db).delete(current_tenant.id, plan_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
