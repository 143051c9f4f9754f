from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, Boolean, Text, Enum as SQLEnum, UniqueConstraint, Index, Date, text, func
from sqlalchemy.orm import relationship
from datetime import datetime
import enum
from database import Base


class UserRole(str, enum.Enum):
    ADMIN = "admin"
    STAFF = "staff"


class BillingStatus(str, enum.Enum):
    """Tenant billing state. Transitions are driven by the platform billing process only."""
    TRIAL = "TRIAL"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    SUSPENDED = "SUSPENDED"


class PlanScope(str, enum.Enum):
    TENANT = "TENANT"
    BRANCH = "BRANCH"


class DurationType(str, enum.Enum):
    DAYS = "DAYS"
    MONTHS = "MONTHS"


class MemberStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    INACTIVE = "INACTIVE"
    ARCHIVED = "ARCHIVED"


class PaymentMethod(str, enum.Enum):
    CASH = "CASH"
    CARD = "CARD"
    BANK_TRANSFER = "BANK_TRANSFER"
    OTHER = "OTHER"


# scope_key sentinel for tenant-wide plans
TENANT_SCOPE_KEY = "TENANT"


class Tenant(Base):
    """Gym business account - the top-level isolation boundary"""
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, index=True)

    # Business Identity
    name = Column(String(100), nullable=False)
    slug = Column(String(50), unique=True, nullable=False, index=True)
    owner_email = Column(String(100), nullable=False)
    phone = Column(String(20))

    # Business Settings
    default_currency = Column(String(3), default="TRY", nullable=False)
    timezone = Column(String(50), default="Europe/Istanbul", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    # Billing (never written by the general tenant update endpoint)
    billing_status = Column(SQLEnum(BillingStatus), default=BillingStatus.TRIAL, nullable=False)
    billing_status_updated_at = Column(DateTime, nullable=True)
    trial_started_at = Column(DateTime, nullable=True)
    trial_ends_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<Tenant {self.name} ({self.slug}) {self.billing_status}>"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete='CASCADE'), nullable=True, index=True)  # NULL for platform super admins
    username = Column(String(100), unique=True, nullable=False, index=True)
    email = Column(String(100), unique=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    full_name = Column(String(100), nullable=False)
    role = Column(SQLEnum(UserRole), default=UserRole.STAFF, nullable=False)
    is_active = Column(Boolean, default=True)
    is_super_admin = Column(Boolean, default=False, nullable=False)  # Platform-wide super admin
    created_at = Column(DateTime, default=datetime.utcnow)
    last_login_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<User {self.username}>"


class Branch(Base):
    """Gym location belonging to a tenant"""
    __tablename__ = "branches"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete='CASCADE'), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    address = Column(Text, nullable=True)
    is_default = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    archived_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<Branch {self.name} Tenant:{self.tenant_id}>"


# Case-insensitive, matching the duplicate check in branches.py
Index('uq_branches_tenant_lower_name', Branch.tenant_id, func.lower(Branch.name), unique=True)


class MembershipPlan(Base):
    """
    Membership plan, scoped tenant-wide or to a single branch.

    scope_key and normalized_name are derived in the domain layer
    (scoped_uniqueness.py); clients never write them.
    """
    __tablename__ = "membership_plans"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete='CASCADE'), nullable=False, index=True)

    # Scope (immutable after creation)
    scope = Column(SQLEnum(PlanScope), default=PlanScope.TENANT, nullable=False)
    branch_id = Column(Integer, ForeignKey("branches.id", ondelete='RESTRICT'), nullable=True, index=True)
    scope_key = Column(String(50), nullable=False)

    name = Column(String(100), nullable=False)
    normalized_name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)

    duration_type = Column(SQLEnum(DurationType), nullable=False)
    duration_value = Column(Integer, nullable=False)
    price = Column(Float, nullable=False)
    currency = Column(String(3), nullable=False)
    max_freeze_days = Column(Integer, nullable=True)
    auto_renew = Column(Boolean, default=False, nullable=False)
    sort_order = Column(Integer, nullable=True)

    archived_at = Column(DateTime, nullable=True)  # NULL = active
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        # Active-only uniqueness: archived plans may share a name with an active one
        Index(
            'uq_membership_plans_active_name',
            'tenant_id', 'scope', 'scope_key', 'normalized_name',
            unique=True,
            postgresql_where=text('archived_at IS NULL'),
            sqlite_where=text('archived_at IS NULL'),
        ),
        Index('idx_membership_plans_tenant_scope', 'tenant_id', 'scope', 'branch_id'),
    )

    @property
    def status(self) -> str:
        return "ARCHIVED" if self.archived_at is not None else "ACTIVE"

    def __repr__(self):
        return f"<MembershipPlan {self.name} {self.scope}:{self.scope_key} Tenant:{self.tenant_id}>"


class Member(Base):
    """Gym member - the dependent record that blocks hard deletion of a plan"""
    __tablename__ = "members"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete='CASCADE'), nullable=False, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False, index=True)
    membership_plan_id = Column(Integer, ForeignKey("membership_plans.id", ondelete='RESTRICT'), nullable=False, index=True)
    first_name = Column(String(50), nullable=False)
    last_name = Column(String(50), nullable=False)
    phone = Column(String(20), nullable=True)
    status = Column(SQLEnum(MemberStatus), default=MemberStatus.ACTIVE, nullable=False)
    membership_start_date = Column(Date, nullable=False)
    membership_end_date = Column(Date, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index('idx_members_tenant_branch', 'tenant_id', 'branch_id'),
        Index('idx_members_plan_status', 'membership_plan_id', 'status'),
    )

    def __repr__(self):
        return f"<Member {self.first_name} {self.last_name} Tenant:{self.tenant_id}>"


class Payment(Base):
    """Dated financial record - mutations are refused inside locked months"""
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete='CASCADE'), nullable=False, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id"), nullable=False, index=True)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    paid_on = Column(Date, nullable=False)
    payment_method = Column(SQLEnum(PaymentMethod), default=PaymentMethod.CASH, nullable=False)
    note = Column(Text, nullable=True)
    created_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index('idx_payments_tenant_branch_date', 'tenant_id', 'branch_id', 'paid_on'),
    )

    def __repr__(self):
        return f"<Payment {self.amount} on {self.paid_on} Tenant:{self.tenant_id}>"


class RevenueMonthLock(Base):
    """Frozen calendar month for a branch. Created by upsert, removed by unlock, never updated."""
    __tablename__ = "revenue_month_locks"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete='CASCADE'), nullable=False, index=True)
    branch_id = Column(Integer, ForeignKey("branches.id", ondelete='CASCADE'), nullable=False, index=True)
    month = Column(String(7), nullable=False)  # YYYY-MM
    locked_by_user_id = Column(Integer, ForeignKey("users.id", ondelete='SET NULL'), nullable=True)
    locked_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('tenant_id', 'branch_id', 'month', name='uq_revenue_month_lock'),
    )

    def __repr__(self):
        return f"<RevenueMonthLock {self.month} Branch:{self.branch_id} Tenant:{self.tenant_id}>"


class AdminActivityLog(Base):
    """Admin activity log model - Tracks super admin actions"""
    __tablename__ = "admin_activity_logs"

    id = Column(Integer, primary_key=True, index=True)
    admin_user_id = Column(Integer, ForeignKey("users.id", ondelete='CASCADE'), nullable=False, index=True)
    action = Column(String(100), nullable=False, index=True)  # change_billing_status, etc.
    target_type = Column(String(50))  # tenant, user
    target_id = Column(Integer)
    details = Column(Text)  # JSON string with additional details
    ip_address = Column(String(50))
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    # Relationships
    admin_user = relationship("User", foreign_keys=[admin_user_id])

    __table_args__ = (
        Index('idx_admin_logs_target', 'target_type', 'target_id'),
    )

    def __repr__(self):
        return f"<AdminActivityLog {self.action} by User:{self.admin_user_id}>"
