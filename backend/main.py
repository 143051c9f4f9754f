from fastapi import FastAPI, Depends, HTTPException, status, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from datetime import datetime, timedelta
import logging

from config import settings
from database import get_db, init_db, async_session_maker
from models import User, Tenant
from schemas import LoginRequest, LoginResponse, MeResponse, UserResponse, TenantBillingInfo
from auth import verify_password, create_access_token, get_current_active_user
from billing_gate import get_guarded_tenant, check_login_allowed, select_locale
from errors import DomainError
from tenants import router as tenants_router
from branches import router as branches_router
from membership_plans import router as membership_plans_router
from members import router as members_router
from payments import router as payments_router
from period_locks import router as period_locks_router
from platform_admin import router as platform_admin_router

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)

app = FastAPI(title=settings.APP_NAME, version="1.0.0")

# Setup logging
logger = logging.getLogger(__name__)

# Strip whitespace from each origin to prevent configuration errors
CORS_ORIGINS = [origin.strip() for origin in settings.CORS_ORIGINS.split(",") if origin.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
    max_age=3600,  # Cache preflight responses for 1 hour
)

# ==================== CUSTOM EXCEPTION HANDLERS ====================

def add_cors_headers(request: Request, response):
    origin = request.headers.get('origin')
    if origin and origin in CORS_ORIGINS:
        response.headers['Access-Control-Allow-Origin'] = origin
        response.headers['Access-Control-Allow-Credentials'] = 'true'
    return response


@app.exception_handler(StarletteHTTPException)
async def custom_http_exception_handler(request: Request, exc: StarletteHTTPException):
    """
    Ensures CORS headers are included in error responses raised from
    dependencies (like the billing gate), so the browser can read them.
    """
    response = await http_exception_handler(request, exc)
    return add_cors_headers(request, response)


@app.exception_handler(DomainError)
async def domain_exception_handler(request: Request, exc: DomainError):
    """Business-rule failures: {"statusCode", "code", "message"}"""
    response = JSONResponse(status_code=exc.status_code, content=exc.to_body())
    return add_cors_headers(request, response)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """
    Catch-all exception handler for unexpected errors.
    Ensures CORS headers are present even on 500 errors.
    """
    logger.error(f"Unexpected error: {exc}", exc_info=True)

    response = JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )
    return add_cors_headers(request, response)

# ==================== END EXCEPTION HANDLERS ====================

app.include_router(tenants_router)
app.include_router(branches_router)
app.include_router(membership_plans_router)
app.include_router(members_router)
app.include_router(payments_router)
app.include_router(period_locks_router)

# Include platform super admin routes
app.include_router(platform_admin_router)


@app.on_event("startup")
async def startup_event():
    """Initialize database on startup"""
    logger.info("=" * 60)
    logger.info("Starting application initialization...")
    logger.info("=" * 60)

    try:
        await init_db()
        logger.info("Database initialization successful!")
    except ConnectionRefusedError as e:
        logger.error("=" * 60)
        logger.error("CRITICAL: Database connection refused!")
        logger.error(f"Error: {e}")
        logger.error("Check DATABASE_URL and that the database server is reachable")
        logger.error("=" * 60)
        raise
    except Exception as e:
        logger.error("=" * 60)
        logger.error(f"CRITICAL: Application startup failed: {e}")
        logger.error("=" * 60)
        raise

    async with async_session_maker() as db:
        await bootstrap_super_admin(db)


async def bootstrap_super_admin(db: AsyncSession):
    """Create or refresh the environment-based super admin (disaster recovery)"""
    if not (settings.BOOTSTRAP_SUPER_ADMIN_EMAIL and settings.BOOTSTRAP_SUPER_ADMIN_PASSWORD_HASH):
        return

    logger.info("Bootstrapping environment-based super admin...")
    result = await db.execute(
        select(User).where(User.email == settings.BOOTSTRAP_SUPER_ADMIN_EMAIL)
    )
    bootstrap_admin = result.scalar_one_or_none()

    if bootstrap_admin:
        bootstrap_admin.username = settings.BOOTSTRAP_SUPER_ADMIN_EMAIL  # Use email as username
        bootstrap_admin.hashed_password = settings.BOOTSTRAP_SUPER_ADMIN_PASSWORD_HASH
        bootstrap_admin.full_name = settings.BOOTSTRAP_SUPER_ADMIN_FULL_NAME
        bootstrap_admin.is_super_admin = True
        bootstrap_admin.is_active = True
        logger.info(f"Updated bootstrap admin: {settings.BOOTSTRAP_SUPER_ADMIN_EMAIL}")
    else:
        db.add(User(
            tenant_id=None,
            username=settings.BOOTSTRAP_SUPER_ADMIN_EMAIL,
            email=settings.BOOTSTRAP_SUPER_ADMIN_EMAIL,
            hashed_password=settings.BOOTSTRAP_SUPER_ADMIN_PASSWORD_HASH,
            full_name=settings.BOOTSTRAP_SUPER_ADMIN_FULL_NAME,
            is_super_admin=True,
            is_active=True
        ))
        logger.info(f"Created bootstrap admin: {settings.BOOTSTRAP_SUPER_ADMIN_EMAIL}")

    await db.commit()


@app.get("/health")
async def health_check():
    return {"status": "ok", "app": settings.APP_NAME}


# ==================== AUTH ROUTES ====================

@app.post("/auth/login", response_model=LoginResponse)
async def login(
    login_data: LoginRequest,
    request: Request,
    db: AsyncSession = Depends(get_db)
):
    """
    Login to a tenant.

    Credentials are verified first, so a wrong password is always 401. A
    SUSPENDED tenant is then refused with 403 TENANT_BILLING_LOCKED; a
    PAST_DUE tenant logs in and the response carries its billing status.
    """
    # Find user by username or email
    result = await db.execute(
        select(User).where((User.username == login_data.username) | (User.email == login_data.username))
    )
    user = result.scalar_one_or_none()

    if not user or not verify_password(login_data.password, user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password"
        )

    if not user.is_active:
        raise HTTPException(status_code=400, detail="Inactive user")

    result = await db.execute(select(Tenant).where(Tenant.slug == login_data.slug))
    tenant = result.scalar_one_or_none()
    if not tenant:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Organization not found"
        )

    if user.tenant_id != tenant.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User does not have access to this organization"
        )

    check_login_allowed(tenant, select_locale(request.headers.get("accept-language")))

    access_token = create_access_token(
        data={"sub": user.username, "user_id": user.id},
        tenant_id=tenant.id,
        expires_delta=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )

    user.last_login_at = datetime.utcnow()
    await db.commit()

    return LoginResponse(
        access_token=access_token,
        token_type="bearer",
        user=UserResponse.model_validate(user),
        tenant=TenantBillingInfo.model_validate(tenant)
    )


@app.get("/auth/me", response_model=MeResponse)
async def get_me(
    current_user: User = Depends(get_current_active_user),
    current_tenant: Tenant = Depends(get_guarded_tenant)
):
    """Current user plus the tenant's live billing status"""
    return MeResponse(
        user=UserResponse.model_validate(current_user),
        tenant=TenantBillingInfo.model_validate(current_tenant)
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
