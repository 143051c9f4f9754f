"""Billing status gate: decision table, guard chain and the HTTP surface."""

import pytest
from sqlalchemy import select

from billing_gate import (
    ALLOW, BILLING_MESSAGES, Allow, Deny, GuardContext, RequestClass,
    classify_request, evaluate, load_tenant_fresh, run_guards, select_locale,
)
from conftest import TEST_PASSWORD
from models import BillingStatus, Tenant

PLAN_PAYLOAD = {
    "scope": "TENANT",
    "name": "Gold",
    "duration_type": "MONTHS",
    "duration_value": 1,
    "price": 500,
    "currency": "try",
}

DECISION_TABLE = [
    (BillingStatus.TRIAL, RequestClass.LOGIN, True),
    (BillingStatus.TRIAL, RequestClass.READ, True),
    (BillingStatus.TRIAL, RequestClass.MUTATE, True),
    (BillingStatus.ACTIVE, RequestClass.LOGIN, True),
    (BillingStatus.ACTIVE, RequestClass.READ, True),
    (BillingStatus.ACTIVE, RequestClass.MUTATE, True),
    (BillingStatus.PAST_DUE, RequestClass.LOGIN, True),
    (BillingStatus.PAST_DUE, RequestClass.READ, True),
    (BillingStatus.PAST_DUE, RequestClass.MUTATE, False),
    (BillingStatus.SUSPENDED, RequestClass.LOGIN, False),
    (BillingStatus.SUSPENDED, RequestClass.READ, False),
    (BillingStatus.SUSPENDED, RequestClass.MUTATE, False),
]


@pytest.mark.parametrize("billing_status,request_class,allowed", DECISION_TABLE)
def test_decision_table(billing_status, request_class, allowed):
    decision = evaluate(billing_status, request_class, "en")
    if allowed:
        assert decision == ALLOW
    else:
        assert isinstance(decision, Deny)
        assert decision.code == "TENANT_BILLING_LOCKED"


def test_denial_message_variants():
    assert evaluate(BillingStatus.SUSPENDED, RequestClass.LOGIN, "en").message == BILLING_MESSAGES["en"]["SUSPENDED_LOGIN"]
    assert evaluate(BillingStatus.SUSPENDED, RequestClass.READ, "en").message == BILLING_MESSAGES["en"]["SUSPENDED_ACCESS"]
    assert evaluate(BillingStatus.PAST_DUE, RequestClass.MUTATE, "en").message == BILLING_MESSAGES["en"]["PAST_DUE_MUTATION"]


def test_locale_changes_message_not_code():
    english = evaluate(BillingStatus.PAST_DUE, RequestClass.MUTATE, "en")
    turkish = evaluate(BillingStatus.PAST_DUE, RequestClass.MUTATE, "tr")
    assert english.code == turkish.code == "TENANT_BILLING_LOCKED"
    assert english.message != turkish.message
    assert turkish.message == BILLING_MESSAGES["tr"]["PAST_DUE_MUTATION"]


@pytest.mark.parametrize("header,expected", [
    ("tr-TR,tr;q=0.9,en;q=0.8", "tr"),
    ("en-US,en;q=0.9", "en"),
    ("de-DE,fr;q=0.5", "en"),
    (None, "en"),
    ("", "en"),
])
def test_select_locale(header, expected):
    assert select_locale(header) == expected


@pytest.mark.parametrize("method,expected", [
    ("GET", RequestClass.READ),
    ("head", RequestClass.READ),
    ("OPTIONS", RequestClass.READ),
    ("POST", RequestClass.MUTATE),
    ("PATCH", RequestClass.MUTATE),
    ("PUT", RequestClass.MUTATE),
    ("DELETE", RequestClass.MUTATE),
])
def test_classify_request(method, expected):
    assert classify_request(method) == expected


def test_guard_chain_stops_at_first_denial():
    context = GuardContext(
        tenant_id=1,
        tenant_is_active=False,
        billing_status=BillingStatus.SUSPENDED,
        request_class=RequestClass.READ,
        locale="en",
    )
    decision = run_guards(context)
    assert isinstance(decision, Deny)
    assert decision.code == "TENANT_INACTIVE"


def test_guard_chain_custom_order():
    calls = []

    def first(context):
        calls.append("first")
        return ALLOW

    def second(context):
        calls.append("second")
        return Deny(code="NOPE", message="nope")

    def third(context):
        calls.append("third")
        return ALLOW

    context = GuardContext(1, True, BillingStatus.ACTIVE, RequestClass.MUTATE, "en")
    decision = run_guards(context, guards=(first, second, third))
    assert decision == Deny(code="NOPE", message="nope")
    assert calls == ["first", "second"]


def test_guard_chain_allows_healthy_tenant():
    context = GuardContext(1, True, BillingStatus.TRIAL, RequestClass.MUTATE, "en")
    assert isinstance(run_guards(context), Allow)


async def test_suspended_tenant_read_is_blocked(client, make_tenant):
    ctx = await make_tenant("locked-gym", billing_status=BillingStatus.SUSPENDED)

    response = await client.get("/membership-plans", headers=ctx.headers)

    assert response.status_code == 403
    assert response.json() == {
        "statusCode": 403,
        "code": "TENANT_BILLING_LOCKED",
        "message": BILLING_MESSAGES["en"]["SUSPENDED_ACCESS"],
    }


async def test_past_due_tenant_can_read_but_not_write(client, make_tenant):
    ctx = await make_tenant("late-gym", billing_status=BillingStatus.PAST_DUE)

    read = await client.get("/membership-plans", headers=ctx.headers)
    assert read.status_code == 200

    write = await client.post("/membership-plans", json=PLAN_PAYLOAD, headers=ctx.headers)
    assert write.status_code == 403
    assert write.json()["code"] == "TENANT_BILLING_LOCKED"
    assert write.json()["message"] == BILLING_MESSAGES["en"]["PAST_DUE_MUTATION"]


async def test_past_due_denial_in_turkish(client, make_tenant):
    ctx = await make_tenant("gec-salon", billing_status=BillingStatus.PAST_DUE)

    response = await client.post(
        "/membership-plans",
        json=PLAN_PAYLOAD,
        headers={**ctx.headers, "Accept-Language": "tr-TR,tr;q=0.9"},
    )

    assert response.status_code == 403
    assert response.json()["code"] == "TENANT_BILLING_LOCKED"
    assert response.json()["message"] == BILLING_MESSAGES["tr"]["PAST_DUE_MUTATION"]


@pytest.mark.parametrize("billing_status", [BillingStatus.TRIAL, BillingStatus.ACTIVE])
async def test_trial_and_active_tenants_can_write(client, make_tenant, billing_status):
    ctx = await make_tenant(f"open-{billing_status.value.lower()}", billing_status=billing_status)

    response = await client.post("/membership-plans", json=PLAN_PAYLOAD, headers=ctx.headers)

    assert response.status_code == 201


async def test_inactive_tenant_is_refused(client, make_tenant):
    ctx = await make_tenant("closed-gym", is_active=False)

    response = await client.get("/membership-plans", headers=ctx.headers)

    assert response.status_code == 403
    assert response.json()["detail"] == BILLING_MESSAGES["en"]["TENANT_INACTIVE"]


async def test_missing_token_is_401(client):
    response = await client.get("/membership-plans")
    assert response.status_code == 401


async def test_suspended_login_is_403_not_401(client, make_tenant):
    ctx = await make_tenant("frozen-gym", billing_status=BillingStatus.SUSPENDED)

    response = await client.post("/auth/login", json={
        "username": ctx.admin.username,
        "password": TEST_PASSWORD,
        "slug": "frozen-gym",
    })

    assert response.status_code == 403
    assert response.json()["code"] == "TENANT_BILLING_LOCKED"
    assert response.json()["message"] == BILLING_MESSAGES["en"]["SUSPENDED_LOGIN"]


async def test_suspended_login_with_wrong_password_is_401(client, make_tenant):
    ctx = await make_tenant("frozen-gym-2", billing_status=BillingStatus.SUSPENDED)

    response = await client.post("/auth/login", json={
        "username": ctx.admin.username,
        "password": "not-the-password",
        "slug": "frozen-gym-2",
    })

    assert response.status_code == 401


async def test_past_due_login_returns_billing_status(client, make_tenant):
    ctx = await make_tenant("owing-gym", billing_status=BillingStatus.PAST_DUE)

    response = await client.post("/auth/login", json={
        "username": ctx.admin.username,
        "password": TEST_PASSWORD,
        "slug": "owing-gym",
    })

    assert response.status_code == 200
    body = response.json()
    assert body["access_token"]
    assert body["tenant"]["billing_status"] == "PAST_DUE"

    me = await client.get("/auth/me", headers={"Authorization": f"Bearer {body['access_token']}"})
    assert me.status_code == 200
    assert me.json()["tenant"]["billing_status"] == "PAST_DUE"


async def test_status_change_applies_to_existing_token(client, make_tenant, super_admin_headers):
    ctx = await make_tenant("switch-gym", billing_status=BillingStatus.ACTIVE)
    headers = ctx.headers

    first = await client.post("/membership-plans", json=PLAN_PAYLOAD, headers=headers)
    assert first.status_code == 201

    change = await client.patch(
        f"/api/platform/tenants/{ctx.tenant.id}/billing-status",
        json={"billing_status": "PAST_DUE", "reason": "invoice overdue"},
        headers=super_admin_headers,
    )
    assert change.status_code == 200
    assert change.json()["billing_status"] == "PAST_DUE"
    assert change.json()["billing_status_updated_at"] is not None

    blocked = await client.post(
        "/membership-plans", json={**PLAN_PAYLOAD, "name": "Silver"}, headers=headers
    )
    assert blocked.status_code == 403
    assert blocked.json()["code"] == "TENANT_BILLING_LOCKED"

    still_readable = await client.get("/membership-plans", headers=headers)
    assert still_readable.status_code == 200

    restored = await client.patch(
        f"/api/platform/tenants/{ctx.tenant.id}/billing-status",
        json={"billing_status": "ACTIVE"},
        headers=super_admin_headers,
    )
    assert restored.status_code == 200

    allowed_again = await client.post(
        "/membership-plans", json={**PLAN_PAYLOAD, "name": "Silver"}, headers=headers
    )
    assert allowed_again.status_code == 201


async def test_billing_change_is_audited(client, make_tenant, super_admin_headers):
    ctx = await make_tenant("audit-gym")

    await client.patch(
        f"/api/platform/tenants/{ctx.tenant.id}/billing-status",
        json={"billing_status": "SUSPENDED", "reason": "chargeback"},
        headers=super_admin_headers,
    )
    logs = await client.get(
        "/api/platform/activity-logs",
        params={"action": "change_billing_status", "target_id": ctx.tenant.id},
        headers=super_admin_headers,
    )

    assert logs.status_code == 200
    assert len(logs.json()) == 1
    assert '"to": "SUSPENDED"' in logs.json()[0]["details"]


async def test_tenant_token_cannot_change_billing_status(client, make_tenant):
    ctx = await make_tenant("sneaky-gym", billing_status=BillingStatus.PAST_DUE)

    response = await client.patch(
        f"/api/platform/tenants/{ctx.tenant.id}/billing-status",
        json={"billing_status": "ACTIVE"},
        headers=ctx.headers,
    )

    assert response.status_code == 401


async def test_load_tenant_fresh_ignores_identity_map(session_factory, make_tenant):
    ctx = await make_tenant("fresh-gym", billing_status=BillingStatus.ACTIVE)

    async with session_factory() as reader, session_factory() as writer:
        cached = (await reader.execute(select(Tenant).where(Tenant.id == ctx.tenant.id))).scalar_one()
        assert cached.billing_status == BillingStatus.ACTIVE

        tenant = (await writer.execute(select(Tenant).where(Tenant.id == ctx.tenant.id))).scalar_one()
        tenant.billing_status = BillingStatus.SUSPENDED
        await writer.commit()

        fresh = await load_tenant_fresh(reader, ctx.tenant.id)
        assert fresh is cached
        assert fresh.billing_status == BillingStatus.SUSPENDED
