"""
Scoped name uniqueness for membership plans.

A plan is either tenant-wide (scope_key "TENANT") or tied to one branch
(scope_key = branch id). Within a tenant, two *active* plans may not share
(scope, scope_key, case-insensitive name). Archived plans do not count, both
here and in the partial unique index that backs this check.

The pre-write check is only a fast path: two concurrent creators can both pass
it, so the index is the authority and a rejected write is reported with the
same ConflictError as a plain duplicate.
"""
import logging
import re
from datetime import datetime, date
from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from errors import (
    ConflictError, DependencyError, InvalidReferenceError,
    InvalidStateError, NotFoundError
)
from models import DurationType, MembershipPlan, PlanScope, TENANT_SCOPE_KEY
from plan_repository import MembershipPlanRepository, PersistResult
from timezone_utils import get_tenant_today

logger = logging.getLogger(__name__)

DURATION_LIMITS = {
    DurationType.DAYS: (1, 730),
    DurationType.MONTHS: (1, 24),
}
CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")
IMMUTABLE_PLAN_FIELDS = ("scope", "branch_id", "scope_key", "normalized_name", "tenant_id")
MUTABLE_PLAN_FIELDS = (
    "name", "description", "duration_type", "duration_value", "price",
    "currency", "max_freeze_days", "auto_renew", "sort_order",
)
REQUIRED_PLAN_FIELDS = ("name", "duration_type", "duration_value", "price", "currency", "auto_renew")
INVALID_BRANCH_MESSAGE = "Invalid branch reference"


def normalize_name(name: str) -> str:
    return name.strip().casefold()


def derive_scope_key(scope: PlanScope, branch_id: Optional[int]) -> str:
    """TENANT -> "TENANT"; BRANCH -> str(branch_id). A mismatched pair is malformed."""
    if scope == PlanScope.TENANT:
        if branch_id is not None:
            raise InvalidReferenceError("branch_id must not be set for TENANT scoped plans", status_code=400)
        return TENANT_SCOPE_KEY
    if scope == PlanScope.BRANCH:
        if branch_id is None:
            raise InvalidReferenceError("branch_id is required for BRANCH scoped plans", status_code=400)
        return str(branch_id)
    raise InvalidReferenceError("Invalid plan scope", status_code=400)


def validate_duration(duration_type: DurationType, duration_value: int) -> None:
    low, high = DURATION_LIMITS[duration_type]
    if not low <= duration_value <= high:
        unit = "days" if duration_type == DurationType.DAYS else "months"
        raise InvalidStateError(f"Duration must be between {low} and {high} {unit}")


def validate_currency(currency: str) -> None:
    if not CURRENCY_PATTERN.match(currency):
        raise InvalidStateError("Currency must be a 3-letter ISO 4217 code (e.g. USD, EUR, TRY)")


def conflict_for(name: str) -> ConflictError:
    return ConflictError(
        f"name: a membership plan named '{name.strip()}' already exists in this scope",
        field="name"
    )


class ScopedUniquenessEngine:
    """Create / rename / restore / archive / delete for scoped membership plans"""

    def __init__(self, db: AsyncSession):
        self.repo = MembershipPlanRepository(db)

    async def resolve_scope_key(
        self,
        tenant_id: int,
        scope: PlanScope,
        branch_id: Optional[int],
        require_active_branch: bool = False
    ) -> str:
        """
        Validate the branch reference, then derive the scope key.

        A missing branch is a 400, another tenant's branch is a 403; both use
        the same message so nothing about the foreign branch leaks.
        """
        scope_key = derive_scope_key(scope, branch_id)
        if scope == PlanScope.BRANCH:
            branch = await self.repo.find_branch(branch_id)
            if branch is None:
                raise InvalidReferenceError(INVALID_BRANCH_MESSAGE, status_code=400)
            if branch.tenant_id != tenant_id:
                logger.warning(f"Tenant {tenant_id} referenced a branch outside its tenant")
                raise InvalidReferenceError(INVALID_BRANCH_MESSAGE, status_code=403)
            if require_active_branch and (not branch.is_active or branch.archived_at is not None):
                raise InvalidStateError("Plans cannot be created for archived branches")
        return scope_key

    async def check_name_available(
        self,
        tenant_id: int,
        scope: PlanScope,
        scope_key: str,
        name: str,
        exclude_id: Optional[int] = None
    ) -> bool:
        existing = await self.repo.find_active_by_name(
            tenant_id, scope, scope_key, normalize_name(name), exclude_id
        )
        return existing is None

    async def get(self, tenant_id: int, plan_id: int) -> MembershipPlan:
        plan = await self.repo.find_by_id(tenant_id, plan_id)
        if plan is None:
            raise NotFoundError("Plan not found")
        return plan

    async def create(self, tenant_id: int, payload: dict) -> MembershipPlan:
        scope = PlanScope(payload["scope"])
        branch_id = payload.get("branch_id")
        scope_key = await self.resolve_scope_key(tenant_id, scope, branch_id, require_active_branch=True)

        duration_type = DurationType(payload["duration_type"])
        validate_duration(duration_type, payload["duration_value"])
        currency = payload["currency"].upper()
        validate_currency(currency)
        if payload["price"] < 0:
            raise InvalidStateError("Price cannot be negative")

        name = payload["name"]
        if not await self.check_name_available(tenant_id, scope, scope_key, name):
            raise conflict_for(name)

        plan = MembershipPlan(
            tenant_id=tenant_id,
            scope=scope,
            branch_id=branch_id if scope == PlanScope.BRANCH else None,
            scope_key=scope_key,
            name=name.strip(),
            normalized_name=normalize_name(name),
            description=(payload.get("description") or "").strip() or None,
            duration_type=duration_type,
            duration_value=payload["duration_value"],
            price=payload["price"],
            currency=currency,
            max_freeze_days=payload.get("max_freeze_days"),
            auto_renew=payload.get("auto_renew") or False,
            sort_order=payload.get("sort_order"),
        )
        result = await self.repo.create(plan)
        created = self._unwrap(result, name)
        logger.info(f"Created plan {created.id} ({scope.value}:{scope_key}) for tenant {tenant_id}")
        return created

    async def rename(self, tenant_id: int, plan_id: int, new_name: str) -> MembershipPlan:
        return await self.update(tenant_id, plan_id, {"name": new_name})

    async def update(self, tenant_id: int, plan_id: int, fields: dict) -> MembershipPlan:
        """Update business fields. Scope fields are immutable after creation."""
        for key in IMMUTABLE_PLAN_FIELDS:
            if key in fields:
                raise InvalidStateError(f"{key} cannot be changed after a plan is created")
        unknown = set(fields) - set(MUTABLE_PLAN_FIELDS)
        if unknown:
            raise InvalidStateError(f"Unknown plan fields: {', '.join(sorted(unknown))}")
        for key in REQUIRED_PLAN_FIELDS:
            if key in fields and fields[key] is None:
                raise InvalidStateError(f"{key} cannot be empty")

        plan = await self.get(tenant_id, plan_id)
        changes = dict(fields)

        if "duration_value" in changes or "duration_type" in changes:
            duration_type = DurationType(changes.get("duration_type") or plan.duration_type)
            validate_duration(duration_type, changes.get("duration_value", plan.duration_value))
        if changes.get("currency") is not None:
            changes["currency"] = changes["currency"].upper()
            validate_currency(changes["currency"])
        if changes.get("price") is not None and changes["price"] < 0:
            raise InvalidStateError("Price cannot be negative")
        if "description" in changes and changes["description"] is not None:
            changes["description"] = changes["description"].strip() or None

        new_name = changes.get("name")
        if new_name is not None:
            if normalize_name(new_name) != plan.normalized_name and plan.archived_at is None:
                if not await self.check_name_available(
                    tenant_id, plan.scope, plan.scope_key, new_name, exclude_id=plan.id
                ):
                    raise conflict_for(new_name)
            changes["name"] = new_name.strip()
            changes["normalized_name"] = normalize_name(new_name)

        result = await self.repo.update_fields(plan, changes)
        return self._unwrap(result, new_name or "")

    async def archive(
        self,
        tenant_id: int,
        plan_id: int,
        today: Optional[date] = None
    ) -> Tuple[MembershipPlan, int]:
        """
        Soft-close a plan. Idempotent: an archived plan keeps its first
        archived_at, while the active member count is recomputed every call.
        """
        plan = await self.get(tenant_id, plan_id)
        active_member_count = await self.repo.count_active_members(plan.id, today or get_tenant_today())

        if plan.archived_at is not None:
            return plan, active_member_count

        result = await self.repo.update_fields(plan, {"archived_at": datetime.utcnow()})
        archived = self._unwrap(result, plan.name)
        logger.info(f"Archived plan {plan_id} for tenant {tenant_id} ({active_member_count} active members)")
        return archived, active_member_count

    async def restore(self, tenant_id: int, plan_id: int) -> MembershipPlan:
        plan = await self.get(tenant_id, plan_id)
        if plan.archived_at is None:
            raise InvalidStateError("Plan is already active. Only archived plans can be restored.")

        # Never trust the stored key on the way back in
        scope_key = derive_scope_key(plan.scope, plan.branch_id)
        if not await self.check_name_available(tenant_id, plan.scope, scope_key, plan.name, exclude_id=plan.id):
            raise conflict_for(plan.name)

        name = plan.name
        result = await self.repo.update_fields(plan, {
            "archived_at": None,
            "scope_key": scope_key,
            "normalized_name": normalize_name(plan.name),
        })
        return self._unwrap(result, name)

    async def delete(self, tenant_id: int, plan_id: int) -> None:
        """Hard delete, refused while any member of any status references the plan"""
        plan = await self.get(tenant_id, plan_id)
        member_count = await self.repo.count_members(plan.id)
        if member_count > 0:
            raise DependencyError(
                "This plan cannot be deleted because members are linked to it. Archive the plan instead.",
                dependency="members"
            )
        await self.repo.delete(plan)
        logger.info(f"Deleted plan {plan_id} for tenant {tenant_id}")

    @staticmethod
    def _unwrap(result: PersistResult, name: str) -> MembershipPlan:
        if result.conflict:
            raise conflict_for(name)
        return result.plan
