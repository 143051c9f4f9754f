"""
Payment API Endpoints
Payments are dated financial records; every mutation checks the revenue month lock first.
"""
import logging
from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from datetime import date, datetime
from typing import List, Optional

from database import get_db
from models import Tenant, User, Member, Payment
from schemas import PaymentCreate, PaymentUpdate, PaymentResponse
from auth import get_current_active_user
from billing_gate import get_guarded_tenant
from errors import InvalidReferenceError, NotFoundError
from period_lock_registry import PeriodLockRegistry, validate_month
from timezone_utils import get_tenant_today, add_months

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


async def get_tenant_payment(db: AsyncSession, tenant_id: int, payment_id: int) -> Payment:
    result = await db.execute(
        select(Payment).where(Payment.id == payment_id, Payment.tenant_id == tenant_id)
    )
    payment = result.scalar_one_or_none()
    if payment is None:
        raise NotFoundError("Payment not found")
    return payment


@router.get("", response_model=List[PaymentResponse])
async def list_payments(
    branch_id: Optional[int] = None,
    member_id: Optional[int] = None,
    month: Optional[str] = None,
    current_tenant: Tenant = Depends(get_guarded_tenant),
    db: AsyncSession = Depends(get_db)
):
    query = select(Payment).where(Payment.tenant_id == current_tenant.id)
    if branch_id is not None:
        query = query.where(Payment.branch_id == branch_id)
    if member_id is not None:
        query = query.where(Payment.member_id == member_id)
    if month is not None:
        validate_month(month)
        first_day = date(int(month[:4]), int(month[5:]), 1)
        query = query.where(Payment.paid_on >= first_day, Payment.paid_on < add_months(first_day, 1))

    result = await db.execute(query.order_by(Payment.paid_on.desc(), Payment.id.desc()))
    return result.scalars().all()


@router.post("", response_model=PaymentResponse, status_code=status.HTTP_201_CREATED)
async def create_payment(
    payment_data: PaymentCreate,
    current_tenant: Tenant = Depends(get_guarded_tenant),
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    """Record a payment for a member. Refused if the payment month is locked for the member's branch."""
    result = await db.execute(
        select(Member).where(Member.id == payment_data.member_id, Member.tenant_id == current_tenant.id)
    )
    member = result.scalar_one_or_none()
    if member is None:
        raise InvalidReferenceError("Invalid member reference", status_code=400)

    paid_on = payment_data.paid_on or get_tenant_today(current_tenant.timezone)
    await PeriodLockRegistry(db).ensure_unlocked(current_tenant.id, member.branch_id, paid_on, "create payment")

    payment = Payment(
        tenant_id=current_tenant.id,
        branch_id=member.branch_id,
        member_id=member.id,
        amount=payment_data.amount,
        paid_on=paid_on,
        payment_method=payment_data.payment_method,
        note=payment_data.note,
        created_by_user_id=current_user.id,
    )
    db.add(payment)
    await db.commit()
    await db.refresh(payment)

    logger.info(f"Recorded payment {payment.id} of {payment.amount} for member {member.id} (tenant {current_tenant.id})")
    return payment


@router.patch("/{payment_id}", response_model=PaymentResponse)
async def update_payment(
    payment_id: int,
    updates: PaymentUpdate,
    current_tenant: Tenant = Depends(get_guarded_tenant),
    db: AsyncSession = Depends(get_db)
):
    """Edit a payment. Both the current and the new month must be unlocked."""
    payment = await get_tenant_payment(db, current_tenant.id, payment_id)
    registry = PeriodLockRegistry(db)
    await registry.ensure_unlocked(current_tenant.id, payment.branch_id, payment.paid_on, "edit payment")

    changes = updates.model_dump(exclude_unset=True)
    new_paid_on = changes.get("paid_on")
    if new_paid_on is not None and new_paid_on != payment.paid_on:
        await registry.ensure_unlocked(current_tenant.id, payment.branch_id, new_paid_on, "move payment")

    for key, value in changes.items():
        if value is not None or key == "note":
            setattr(payment, key, value)
    payment.updated_at = datetime.utcnow()

    await db.commit()
    await db.refresh(payment)
    return payment


@router.delete("/{payment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_payment(
    payment_id: int,
    current_tenant: Tenant = Depends(get_guarded_tenant),
    db: AsyncSession = Depends(get_db)
):
    payment = await get_tenant_payment(db, current_tenant.id, payment_id)
    await PeriodLockRegistry(db).ensure_unlocked(current_tenant.id, payment.branch_id, payment.paid_on, "delete payment")

    await db.delete(payment)
    await db.commit()
    logger.info(f"Deleted payment {payment_id} (tenant {current_tenant.id})")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
