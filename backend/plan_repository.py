"""
Persistence adapter for membership plans.

The only place that inspects driver-level unique-constraint violations: a
write that loses a race against uniqueness index comes back as a
PersistResult with conflict=True instead of an exception.
"""
import logging
from dataclasses import dataclass
from datetime import date
from typing import List, Optional, Tuple

from sqlalchemy import select, func, delete, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from models import Branch, Member, MemberStatus, MembershipPlan, PlanScope

logger = logging.getLogger(__name__)

PLAN_NAME_INDEX = "uq_membership_plans_active_name"
UNIQUE_VIOLATION_SQLSTATE = "23505"


@dataclass
class PersistResult:
    plan: Optional[MembershipPlan] = None
    conflict: bool = False


def is_unique_violation(exc: IntegrityError) -> bool:
    """True if the IntegrityError came from a unique constraint (PostgreSQL or SQLite)"""
    orig = exc.orig
    for candidate in (orig, getattr(orig, "__cause__", None)):
        if candidate is not None and getattr(candidate, "sqlstate", None) == UNIQUE_VIOLATION_SQLSTATE:
            return True
    message = str(orig)
    return PLAN_NAME_INDEX in message or "UNIQUE constraint failed" in message


class MembershipPlanRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def find_by_id(self, tenant_id: int, plan_id: int) -> Optional[MembershipPlan]:
        result = await self.db.execute(
            select(MembershipPlan).where(
                MembershipPlan.id == plan_id,
                MembershipPlan.tenant_id == tenant_id
            )
        )
        return result.scalar_one_or_none()

    async def find_active_by_name(
        self,
        tenant_id: int,
        scope: PlanScope,
        scope_key: str,
        normalized_name: str,
        exclude_id: Optional[int] = None
    ) -> Optional[MembershipPlan]:
        query = select(MembershipPlan).where(
            MembershipPlan.tenant_id == tenant_id,
            MembershipPlan.scope == scope,
            MembershipPlan.scope_key == scope_key,
            MembershipPlan.normalized_name == normalized_name,
            MembershipPlan.archived_at.is_(None)
        )
        if exclude_id is not None:
            query = query.where(MembershipPlan.id != exclude_id)
        result = await self.db.execute(query.limit(1))
        return result.scalar_one_or_none()

    async def find_branch(self, branch_id: int) -> Optional[Branch]:
        """Unscoped branch lookup; callers decide how to treat a foreign tenant's branch"""
        result = await self.db.execute(select(Branch).where(Branch.id == branch_id))
        return result.scalar_one_or_none()

    async def create(self, plan: MembershipPlan) -> PersistResult:
        self.db.add(plan)
        return await self._commit(plan)

    async def update_fields(self, plan: MembershipPlan, fields: dict) -> PersistResult:
        for key, value in fields.items():
            setattr(plan, key, value)
        return await self._commit(plan)

    async def delete(self, plan: MembershipPlan) -> None:
        await self.db.execute(
            delete(MembershipPlan).where(
                MembershipPlan.id == plan.id,
                MembershipPlan.tenant_id == plan.tenant_id
            )
        )
        await self.db.commit()

    async def count_members(self, plan_id: int) -> int:
        """Members of any status referencing the plan"""
        result = await self.db.execute(
            select(func.count(Member.id)).where(Member.membership_plan_id == plan_id)
        )
        return result.scalar_one()

    async def count_active_members(self, plan_id: int, today: date) -> int:
        result = await self.db.execute(
            select(func.count(Member.id)).where(
                Member.membership_plan_id == plan_id,
                Member.status == MemberStatus.ACTIVE,
                Member.membership_end_date >= today
            )
        )
        return result.scalar_one()

    async def list_for_tenant(
        self,
        tenant_id: int,
        scope: Optional[PlanScope] = None,
        branch_id: Optional[int] = None,
        search: Optional[str] = None,
        include_archived: bool = False,
        page: int = 1,
        limit: int = 20
    ) -> Tuple[List[MembershipPlan], int]:
        query = select(MembershipPlan).where(MembershipPlan.tenant_id == tenant_id)

        if scope:
            query = query.where(MembershipPlan.scope == scope)
        if branch_id is not None:
            # A branch filter implies BRANCH scope
            query = query.where(
                MembershipPlan.scope == PlanScope.BRANCH,
                MembershipPlan.branch_id == branch_id
            )
        if not include_archived:
            query = query.where(MembershipPlan.archived_at.is_(None))
        if search:
            query = query.where(MembershipPlan.normalized_name.contains(search.strip().casefold(), autoescape=True))

        total_result = await self.db.execute(select(func.count()).select_from(query.subquery()))
        total = total_result.scalar_one()

        result = await self.db.execute(
            query.order_by(MembershipPlan.sort_order.asc(), MembershipPlan.created_at.asc(), MembershipPlan.id.asc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def list_active_for_branch(self, tenant_id: int, branch_id: Optional[int] = None) -> List[MembershipPlan]:
        """Tenant-wide plans, plus plans of the given branch when one is supplied"""
        query = select(MembershipPlan).where(
            MembershipPlan.tenant_id == tenant_id,
            MembershipPlan.archived_at.is_(None)
        )
        if branch_id is not None:
            query = query.where(or_(
                MembershipPlan.scope == PlanScope.TENANT,
                (MembershipPlan.scope == PlanScope.BRANCH) & (MembershipPlan.branch_id == branch_id)
            ))
        else:
            query = query.where(MembershipPlan.scope == PlanScope.TENANT)

        result = await self.db.execute(
            query.order_by(MembershipPlan.sort_order.asc(), MembershipPlan.created_at.asc(), MembershipPlan.id.asc())
        )
        return list(result.scalars().all())

    async def _commit(self, plan: MembershipPlan) -> PersistResult:
        # rollback expires persistent instances; read before committing
        tenant_id = plan.tenant_id
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            if is_unique_violation(e):
                logger.info(f"Unique constraint rejected plan write for tenant {tenant_id}")
                return PersistResult(conflict=True)
            raise
        await self.db.refresh(plan)
        return PersistResult(plan=plan)
