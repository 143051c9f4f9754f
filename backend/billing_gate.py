"""
Billing Status Gate
Decides, per request, whether a tenant may proceed given its *current* billing status.

Access rules:
- TRIAL / ACTIVE: full access
- PAST_DUE: reads and login allowed, mutations blocked
- SUSPENDED: everything blocked, including login

The status is re-read from the tenants table on every request. It is never
taken from the JWT, so a token issued while ACTIVE loses write access the
moment the tenant becomes PAST_DUE.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Sequence, Union

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_active_user, get_token_tenant_id
from config import settings
from database import get_db
from errors import TenantBillingLockedError
from models import BillingStatus, Tenant, User

logger = logging.getLogger(__name__)


class RequestClass(str, Enum):
    LOGIN = "LOGIN"
    READ = "READ"
    MUTATE = "MUTATE"


READ_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})

BILLING_LOCKED_CODE = TenantBillingLockedError.code
TENANT_INACTIVE_CODE = "TENANT_INACTIVE"

# Server-side message variants. Clients must branch on the code, not on these strings.
BILLING_MESSAGES = {
    "en": {
        "SUSPENDED_LOGIN": "Login blocked: your account has been suspended. Please contact support.",
        "SUSPENDED_ACCESS": "All access blocked: your account has been suspended. Please contact support.",
        "PAST_DUE_MUTATION": "Your account is read-only because a payment is past due. Please complete your payment.",
        "TENANT_INACTIVE": "Organization is inactive",
    },
    "tr": {
        "SUSPENDED_LOGIN": "Hesabınız askıya alınmıştır. Lütfen destek ekibi ile iletişime geçin.",
        "SUSPENDED_ACCESS": "Hesabınız askıya alınmıştır. Lütfen destek ekibi ile iletişime geçin.",
        "PAST_DUE_MUTATION": "Ödeme gecikmesi nedeniyle hesabınız salt okunur modda. Lütfen ödemenizi tamamlayın.",
        "TENANT_INACTIVE": "İşletme hesabı aktif değil",
    },
}


def select_locale(accept_language: Optional[str]) -> str:
    """Pick a supported locale from an Accept-Language header value"""
    if accept_language:
        for part in accept_language.split(","):
            tag = part.split(";")[0].strip().lower()
            primary = tag.split("-")[0]
            if primary in BILLING_MESSAGES:
                return primary
    return settings.DEFAULT_LOCALE if settings.DEFAULT_LOCALE in BILLING_MESSAGES else "en"


def billing_message(key: str, locale: Optional[str] = None) -> str:
    messages = BILLING_MESSAGES.get(locale or settings.DEFAULT_LOCALE, BILLING_MESSAGES["en"])
    return messages[key]


def classify_request(method: str) -> RequestClass:
    return RequestClass.READ if method.upper() in READ_METHODS else RequestClass.MUTATE


@dataclass(frozen=True)
class Allow:
    pass


@dataclass(frozen=True)
class Deny:
    code: str
    message: str


Decision = Union[Allow, Deny]
ALLOW = Allow()


def evaluate(billing_status: BillingStatus, request_class: RequestClass, locale: Optional[str] = None) -> Decision:
    """Pure decision table over (billing status, request class)"""
    if billing_status == BillingStatus.SUSPENDED:
        key = "SUSPENDED_LOGIN" if request_class == RequestClass.LOGIN else "SUSPENDED_ACCESS"
        return Deny(code=BILLING_LOCKED_CODE, message=billing_message(key, locale))

    if billing_status == BillingStatus.PAST_DUE and request_class == RequestClass.MUTATE:
        return Deny(code=BILLING_LOCKED_CODE, message=billing_message("PAST_DUE_MUTATION", locale))

    return ALLOW


@dataclass(frozen=True)
class GuardContext:
    tenant_id: int
    tenant_is_active: bool
    billing_status: BillingStatus
    request_class: RequestClass
    locale: str


Guard = Callable[[GuardContext], Decision]


def tenant_active_guard(context: GuardContext) -> Decision:
    if not context.tenant_is_active:
        return Deny(code=TENANT_INACTIVE_CODE, message=billing_message("TENANT_INACTIVE", context.locale))
    return ALLOW


def billing_status_guard(context: GuardContext) -> Decision:
    return evaluate(context.billing_status, context.request_class, context.locale)


DEFAULT_GUARDS: Sequence[Guard] = (tenant_active_guard, billing_status_guard)


def run_guards(context: GuardContext, guards: Sequence[Guard] = DEFAULT_GUARDS) -> Decision:
    """Run guards in order, stopping at the first denial"""
    for guard in guards:
        decision = guard(context)
        if isinstance(decision, Deny):
            return decision
    return ALLOW


def raise_for_denial(decision: Deny) -> None:
    if decision.code == BILLING_LOCKED_CODE:
        raise TenantBillingLockedError(decision.message)
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=decision.message)


async def load_tenant_fresh(db: AsyncSession, tenant_id: int) -> Optional[Tenant]:
    """Primary-key read that bypasses any identity-map copy of the tenant"""
    result = await db.execute(
        select(Tenant)
        .where(Tenant.id == tenant_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_guarded_tenant(
    request: Request,
    current_user: User = Depends(get_current_active_user),
    tenant_id: int = Depends(get_token_tenant_id),
    db: AsyncSession = Depends(get_db)
) -> Tenant:
    """
    Main dependency for every tenant-scoped endpoint.

    Re-reads the tenant, then runs the guard chain for this request.

    Raises:
        TenantBillingLockedError: billing status forbids the request
        HTTPException 403: tenant inactive or user not a member
        HTTPException 404: tenant no longer exists
    """
    start_time = time.perf_counter()

    if current_user.tenant_id != tenant_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User does not have access to this tenant"
        )

    tenant = await load_tenant_fresh(db, tenant_id)
    if tenant is None:
        logger.error(f"Tenant not found for tenant_id: {tenant_id}, path: {request.url.path}")
        raise HTTPException(status_code=404, detail="Tenant not found")

    context = GuardContext(
        tenant_id=tenant.id,
        tenant_is_active=bool(tenant.is_active),
        billing_status=tenant.billing_status,
        request_class=classify_request(request.method),
        locale=select_locale(request.headers.get("accept-language")),
    )
    decision = run_guards(context)
    elapsed_ms = (time.perf_counter() - start_time) * 1000

    if isinstance(decision, Deny):
        logger.warning(
            f"Tenant access denied ({decision.code}): tenant_id={tenant.id}, "
            f"status={tenant.billing_status.value}, method={request.method}, "
            f"path={request.url.path}, execution_time={elapsed_ms:.1f}ms"
        )
        raise_for_denial(decision)

    if elapsed_ms > settings.BILLING_GATE_WARN_MS:
        logger.warning(
            f"Billing gate execution time exceeded threshold: {elapsed_ms:.1f}ms, "
            f"tenant_id={tenant.id}, path={request.url.path}"
        )

    return tenant


def check_login_allowed(tenant: Tenant, locale: Optional[str] = None) -> None:
    """Login-path gate. SUSPENDED tenants get 403 TENANT_BILLING_LOCKED, never 401."""
    context = GuardContext(
        tenant_id=tenant.id,
        tenant_is_active=bool(tenant.is_active),
        billing_status=tenant.billing_status,
        request_class=RequestClass.LOGIN,
        locale=locale or settings.DEFAULT_LOCALE,
    )
    decision = run_guards(context)
    if isinstance(decision, Deny):
        logger.warning(f"Login blocked ({decision.code}) for tenant {tenant.id} with status {tenant.billing_status.value}")
        raise_for_denial(decision)
