from datetime import datetime, timedelta
from typing import Optional
from jose import JWTError, jwt
from passlib.context import CryptContext
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from config import settings
from database import get_db
from models import User, UserRole

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against a hash"""
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    """Hash a password"""
    return pwd_context.hash(password)


def create_access_token(data: dict, tenant_id: int, expires_delta: Optional[timedelta] = None):
    """
    Create a JWT access token with tenant context.

    The billing status is not embedded: it is re-read from the
    tenants table on every request.
    """
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=15)

    to_encode.update({
        "exp": expire,
        "tenant_id": tenant_id,
    })
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def create_super_admin_token(data: dict, expires_delta: Optional[timedelta] = None):
    """Create a JWT access token for platform super admin (no tenant context)"""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({
        "exp": expire,
        "is_super_admin": True
    })
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def _credentials_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_access_token(token: str) -> dict:
    """Decode and verify a JWT, raising 401 on any failure"""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise _credentials_exception()
    if payload.get("sub") is None:
        raise _credentials_exception()
    return payload


async def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db)
) -> User:
    """Get the current authenticated user"""
    payload = decode_access_token(token)

    result = await db.execute(
        select(User).where(User.username == payload["sub"])
    )
    user = result.scalar_one_or_none()

    if user is None:
        raise _credentials_exception()
    return user


async def get_current_active_user(current_user: User = Depends(get_current_user)) -> User:
    """Get the current active user"""
    if not current_user.is_active:
        raise HTTPException(status_code=400, detail="Inactive user")
    return current_user


async def get_token_tenant_id(token: str = Depends(oauth2_scheme)) -> int:
    """Extract tenant_id from JWT token"""
    tenant_id = decode_access_token(token).get("tenant_id")
    if tenant_id is None:
        raise _credentials_exception()
    return tenant_id


async def require_admin_role(
    current_user: User = Depends(get_current_active_user),
):
    """Dependency to require ADMIN role within the tenant"""
    if current_user.role != UserRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required"
        )
    return True


async def get_current_super_admin(
    token: str = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db)
) -> User:
    """
    Get current user and verify they are a super admin.
    This dependency is used for all platform admin endpoints.
    """
    payload = decode_access_token(token)
    if not payload.get("is_super_admin", False):
        raise _credentials_exception()

    result = await db.execute(
        select(User).where(User.username == payload["sub"])
    )
    user = result.scalar_one_or_none()

    if user is None or not user.is_super_admin or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Super admin access required"
        )
    return user
