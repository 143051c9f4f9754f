"""Revenue month locks: registry behaviour and the lock endpoints."""

import asyncio
from datetime import date

import pytest

from errors import InvalidFormatError, InvalidReferenceError, NotFoundError, PeriodLockedError
from period_lock_registry import PeriodLockRegistry, validate_month


@pytest.mark.parametrize("month", ["2026-01", "2026-12", "1999-07"])
def test_valid_months(month):
    assert validate_month(month) == month


@pytest.mark.parametrize("month", ["2026-2", "2026-13", "2026-00", "26-02", "2026/02", "2026-02-01", ""])
def test_invalid_months(month):
    with pytest.raises(InvalidFormatError):
        validate_month(month)


async def test_lock_is_idempotent(db_session, make_tenant):
    ctx = await make_tenant()
    registry = PeriodLockRegistry(db_session)

    first, created = await registry.lock(ctx.tenant.id, ctx.branch.id, "2026-02", locked_by_user_id=ctx.admin.id)
    again, created_again = await registry.lock(ctx.tenant.id, ctx.branch.id, "2026-02")

    assert created is True
    assert created_again is False
    assert again.id == first.id
    assert again.locked_by_user_id == ctx.admin.id
    assert again.locked_at == first.locked_at


async def test_concurrent_locks_converge(session_factory, make_tenant):
    ctx = await make_tenant()
    sessions = [session_factory() for _ in range(3)]
    try:
        results = await asyncio.gather(*(
            PeriodLockRegistry(session).lock(ctx.tenant.id, ctx.branch.id, "2026-03")
            for session in sessions
        ))
    finally:
        for session in sessions:
            await session.close()

    assert len({record.id for record, _ in results}) == 1
    assert sum(1 for _, created in results if created) == 1


async def test_unlock(db_session, make_tenant):
    ctx = await make_tenant()
    registry = PeriodLockRegistry(db_session)
    await registry.lock(ctx.tenant.id, ctx.branch.id, "2026-02")

    await registry.unlock(ctx.tenant.id, ctx.branch.id, "2026-02")

    assert await registry.check_month(ctx.tenant.id, ctx.branch.id, "2026-02") == {"locked": False}
    with pytest.raises(NotFoundError):
        await registry.unlock(ctx.tenant.id, ctx.branch.id, "2026-02")


async def test_check_month_is_scoped_to_branch(db_session, make_tenant, make_branch):
    ctx = await make_tenant()
    other_branch = await make_branch(ctx.tenant.id, "Besiktas")
    registry = PeriodLockRegistry(db_session)
    await registry.lock(ctx.tenant.id, ctx.branch.id, "2026-02")

    assert await registry.check_month(ctx.tenant.id, ctx.branch.id, "2026-02") == {"locked": True}
    assert await registry.check_month(ctx.tenant.id, other_branch.id, "2026-02") == {"locked": False}
    assert await registry.check_month(ctx.tenant.id, ctx.branch.id, "2026-03") == {"locked": False}


async def test_date_helpers(db_session, make_tenant):
    ctx = await make_tenant()
    registry = PeriodLockRegistry(db_session)
    await registry.lock(ctx.tenant.id, ctx.branch.id, "2026-02")

    assert await registry.is_date_locked(ctx.tenant.id, ctx.branch.id, date(2026, 2, 28)) is True
    assert await registry.is_date_locked(ctx.tenant.id, ctx.branch.id, date(2026, 3, 1)) is False

    with pytest.raises(PeriodLockedError) as exc_info:
        await registry.ensure_unlocked(ctx.tenant.id, ctx.branch.id, date(2026, 2, 1), "create payment")
    assert exc_info.value.message == "Cannot create payment: month 2026-02 is locked"

    await registry.ensure_unlocked(ctx.tenant.id, ctx.branch.id, date(2026, 1, 31), "create payment")


async def test_list_is_newest_first(db_session, make_tenant):
    ctx = await make_tenant()
    registry = PeriodLockRegistry(db_session)
    for month in ["2025-11", "2026-02", "2025-12", "2026-01"]:
        await registry.lock(ctx.tenant.id, ctx.branch.id, month)

    locks = await registry.list(ctx.tenant.id, ctx.branch.id)

    assert [lock.month for lock in locks] == ["2026-02", "2026-01", "2025-12", "2025-11"]


async def test_foreign_and_missing_branches(db_session, make_tenant):
    ctx = await make_tenant("gym-one")
    foreign = await make_tenant("gym-two")
    registry = PeriodLockRegistry(db_session)

    with pytest.raises(InvalidReferenceError) as cross_tenant:
        await registry.lock(ctx.tenant.id, foreign.branch.id, "2026-02")
    assert cross_tenant.value.status_code == 403

    with pytest.raises(InvalidReferenceError) as missing:
        await registry.lock(ctx.tenant.id, 999999, "2026-02")
    assert missing.value.status_code == 400


async def test_lock_endpoints(client, make_tenant):
    ctx = await make_tenant()
    params = {"branch_id": ctx.branch.id}

    first = await client.post("/revenue-month-locks", params=params, json={"month": "2026-02"}, headers=ctx.headers)
    assert first.status_code == 201
    assert first.json()["month"] == "2026-02"
    assert first.json()["locked_by_user_id"] == ctx.admin.id

    repeat = await client.post("/revenue-month-locks", params=params, json={"month": "2026-02"}, headers=ctx.headers)
    assert repeat.status_code == 200
    assert repeat.json()["id"] == first.json()["id"]

    await client.post("/revenue-month-locks", params=params, json={"month": "2026-04"}, headers=ctx.headers)
    listing = await client.get("/revenue-month-locks", params=params, headers=ctx.headers)
    assert [lock["month"] for lock in listing.json()] == ["2026-04", "2026-02"]

    check = await client.get("/revenue-month-locks/check/2026-02", params=params, headers=ctx.headers)
    assert check.json() == {"locked": True}

    unlocked = await client.delete("/revenue-month-locks/2026-02", params=params, headers=ctx.headers)
    assert unlocked.status_code == 200

    missing = await client.delete("/revenue-month-locks/2026-02", params=params, headers=ctx.headers)
    assert missing.status_code == 404
    assert missing.json()["code"] == "NOT_FOUND"


async def test_lock_endpoint_rejects_bad_month(client, make_tenant):
    ctx = await make_tenant()

    response = await client.post(
        "/revenue-month-locks", params={"branch_id": ctx.branch.id}, json={"month": "2026-13"}, headers=ctx.headers
    )

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_FORMAT"


async def test_lock_endpoint_requires_branch(client, make_tenant):
    ctx = await make_tenant()

    response = await client.post("/revenue-month-locks", json={"month": "2026-02"}, headers=ctx.headers)

    assert response.status_code == 422


async def test_staff_cannot_lock(client, make_tenant):
    ctx = await make_tenant()

    response = await client.post(
        "/revenue-month-locks", params={"branch_id": ctx.branch.id}, json={"month": "2026-02"}, headers=ctx.staff_headers
    )

    assert response.status_code == 403
