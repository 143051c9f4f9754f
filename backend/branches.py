"""
Branch Management API Endpoints
"""
import logging
from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from datetime import datetime
from typing import List

from database import get_db
from models import Tenant, Branch
from schemas import BranchCreate, BranchResponse
from auth import require_admin_role
from billing_gate import get_guarded_tenant
from errors import ConflictError, InvalidStateError, NotFoundError
from plan_repository import is_unique_violation

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/branches", tags=["branches"])


async def get_tenant_branch(db: AsyncSession, tenant_id: int, branch_id: int) -> Branch:
    result = await db.execute(
        select(Branch).where(Branch.id == branch_id, Branch.tenant_id == tenant_id)
    )
    branch = result.scalar_one_or_none()
    if branch is None:
        raise NotFoundError("Branch not found")
    return branch


def duplicate_branch_name(name: str) -> ConflictError:
    return ConflictError(
        f"name: a branch named '{name}' already exists. Please choose a different name.",
        field="name"
    )


@router.get("", response_model=List[BranchResponse])
async def list_branches(
    include_archived: bool = False,
    current_tenant: Tenant = Depends(get_guarded_tenant),
    db: AsyncSession = Depends(get_db)
):
    """List branch locations for the current business"""
    query = select(Branch).where(Branch.tenant_id == current_tenant.id)
    if not include_archived:
        query = query.where(Branch.archived_at.is_(None))

    result = await db.execute(query.order_by(Branch.created_at, Branch.id))
    return result.scalars().all()


@router.post("", response_model=BranchResponse, status_code=status.HTTP_201_CREATED)
async def create_branch(
    branch_data: BranchCreate,
    current_tenant: Tenant = Depends(get_guarded_tenant),
    _: bool = Depends(require_admin_role),
    db: AsyncSession = Depends(get_db)
):
    """
    Create a new branch location for the current business.

    Names are unique per tenant, case-insensitively. A concurrent create that
    slips past the check is rejected by uq_branches_tenant_lower_name and
    reported as the same 409.
    """
    name = branch_data.name.strip()

    # Check if branch name already exists for this tenant
    existing_branch = await db.execute(
        select(Branch.id).where(
            Branch.tenant_id == current_tenant.id,
            func.lower(Branch.name) == name.lower()
        )
    )
    if existing_branch.scalar_one_or_none() is not None:
        raise duplicate_branch_name(name)

    tenant_id = current_tenant.id
    new_branch = Branch(
        tenant_id=tenant_id,
        name=name,
        address=branch_data.address,
        is_default=False,
        is_active=True
    )
    db.add(new_branch)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        if is_unique_violation(e):
            logger.info(f"Unique constraint rejected branch '{name}' for tenant {tenant_id}")
            raise duplicate_branch_name(name)
        raise
    await db.refresh(new_branch)

    logger.info(f"Created branch {new_branch.id} for tenant {tenant_id}")
    return new_branch


@router.post("/{branch_id}/archive", response_model=BranchResponse)
async def archive_branch(
    branch_id: int,
    current_tenant: Tenant = Depends(get_guarded_tenant),
    _: bool = Depends(require_admin_role),
    db: AsyncSession = Depends(get_db)
):
    """
    Archive a branch. Existing plans and members keep pointing at it, but no
    new branch-scoped plans can be created for it. Archiving twice is a no-op.
    """
    branch = await get_tenant_branch(db, current_tenant.id, branch_id)

    if branch.is_default:
        raise InvalidStateError("The default branch cannot be archived")

    if branch.archived_at is None:
        branch.archived_at = datetime.utcnow()
        branch.is_active = False
        await db.commit()
        await db.refresh(branch)
        logger.info(f"Archived branch {branch_id} for tenant {current_tenant.id}")

    return branch
