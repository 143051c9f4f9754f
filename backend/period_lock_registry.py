"""
Revenue month locks.

A lock says "this calendar month, for this branch, is frozen for financial
mutation". The payments endpoints call ensure_unlocked() before creating,
editing or deleting a dated record.

Locking is an idempotent upsert, so two concurrent lock calls converge on a
single row instead of racing into a create/create conflict.
"""
import logging
import re
from datetime import datetime, date
from typing import List, Optional, Tuple

from sqlalchemy import select, delete
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from errors import InvalidFormatError, InvalidReferenceError, NotFoundError, PeriodLockedError
from models import Branch, RevenueMonthLock
from timezone_utils import month_key

logger = logging.getLogger(__name__)

MONTH_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")
LOCK_KEY_COLUMNS = ["tenant_id", "branch_id", "month"]


def validate_month(month: str) -> str:
    if not isinstance(month, str) or not MONTH_PATTERN.match(month):
        raise InvalidFormatError("Month must be in YYYY-MM format (e.g., 2026-02)")
    return month


class PeriodLockRegistry:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def ensure_branch(self, tenant_id: int, branch_id: int) -> None:
        result = await self.db.execute(select(Branch.tenant_id).where(Branch.id == branch_id))
        owner = result.scalar_one_or_none()
        if owner is None:
            raise InvalidReferenceError("Invalid branch reference", status_code=400)
        if owner != tenant_id:
            logger.warning(f"Tenant {tenant_id} referenced a branch outside its tenant for a month lock")
            raise InvalidReferenceError("Invalid branch reference", status_code=403)

    async def find(self, tenant_id: int, branch_id: int, month: str) -> Optional[RevenueMonthLock]:
        result = await self.db.execute(
            select(RevenueMonthLock).where(
                RevenueMonthLock.tenant_id == tenant_id,
                RevenueMonthLock.branch_id == branch_id,
                RevenueMonthLock.month == month
            )
        )
        return result.scalar_one_or_none()

    async def lock(
        self,
        tenant_id: int,
        branch_id: int,
        month: str,
        locked_by_user_id: Optional[int] = None
    ) -> Tuple[RevenueMonthLock, bool]:
        """
        Lock a month. Returns (record, created); an existing lock is returned
        unchanged with created=False.
        """
        validate_month(month)
        await self.ensure_branch(tenant_id, branch_id)

        values = dict(
            tenant_id=tenant_id,
            branch_id=branch_id,
            month=month,
            locked_by_user_id=locked_by_user_id,
            locked_at=datetime.utcnow(),
        )
        dialect = self.db.get_bind().dialect.name

        if dialect in ("postgresql", "sqlite"):
            dialect_insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
            stmt = dialect_insert(RevenueMonthLock).values(**values).on_conflict_do_nothing(
                index_elements=LOCK_KEY_COLUMNS
            )
            result = await self.db.execute(stmt)
            created = result.rowcount == 1
            await self.db.commit()
        else:
            try:
                self.db.add(RevenueMonthLock(**values))
                await self.db.commit()
                created = True
            except IntegrityError:
                await self.db.rollback()
                created = False

        record = await self.find(tenant_id, branch_id, month)
        if created:
            logger.info(f"Locked month {month} for branch {branch_id} (tenant {tenant_id})")
        return record, created

    async def unlock(self, tenant_id: int, branch_id: int, month: str) -> None:
        validate_month(month)
        await self.ensure_branch(tenant_id, branch_id)

        existing = await self.find(tenant_id, branch_id, month)
        if existing is None:
            raise NotFoundError(f"No lock exists for {month}")

        await self.db.execute(
            delete(RevenueMonthLock).where(RevenueMonthLock.id == existing.id)
        )
        await self.db.commit()
        logger.info(f"Unlocked month {month} for branch {branch_id} (tenant {tenant_id})")

    async def check_month(self, tenant_id: int, branch_id: int, month: str) -> dict:
        """Read-only lock check consumed by the financial mutation path"""
        validate_month(month)
        return {"locked": await self.find(tenant_id, branch_id, month) is not None}

    async def is_date_locked(self, tenant_id: int, branch_id: int, day: date) -> bool:
        return (await self.check_month(tenant_id, branch_id, month_key(day)))["locked"]

    async def ensure_unlocked(self, tenant_id: int, branch_id: int, day: date, action: str) -> None:
        """Raise PeriodLockedError if the date falls inside a locked month"""
        if await self.is_date_locked(tenant_id, branch_id, day):
            month = month_key(day)
            logger.warning(f"Refused to {action}: month {month} is locked for branch {branch_id} (tenant {tenant_id})")
            raise PeriodLockedError(f"Cannot {action}: month {month} is locked")

    async def list(self, tenant_id: int, branch_id: int) -> List[RevenueMonthLock]:
        await self.ensure_branch(tenant_id, branch_id)
        result = await self.db.execute(
            select(RevenueMonthLock)
            .where(
                RevenueMonthLock.tenant_id == tenant_id,
                RevenueMonthLock.branch_id == branch_id
            )
            .order_by(RevenueMonthLock.month.desc())
        )
        return list(result.scalars().all())
