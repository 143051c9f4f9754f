"""
Domain error taxonomy.

Every business-rule failure is raised as a DomainError subclass and rendered
by the handler in main.py as {"statusCode", "code", "message"}. Clients branch
on `code` only; `message` is localised free text.
"""
from typing import Optional


class DomainError(Exception):
    status_code = 400
    code = "BAD_REQUEST"

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_body(self) -> dict:
        return {
            "statusCode": self.status_code,
            "code": self.code,
            "message": self.message,
        }


class TenantBillingLockedError(DomainError):
    """Tenant billing status forbids this request"""
    status_code = 403
    code = "TENANT_BILLING_LOCKED"


class ConflictError(DomainError):
    """Duplicate scoped name, from the pre-check or from a lost insert race"""
    status_code = 409
    code = "CONFLICT"

    def __init__(self, message: str, field: str = "name"):
        super().__init__(message)
        self.field = field


class InvalidReferenceError(DomainError):
    """Malformed (400) or foreign-tenant (403) reference. Never echoes the foreign id."""
    code = "INVALID_REFERENCE"


class InvalidStateError(DomainError):
    code = "INVALID_STATE"


class DependencyError(DomainError):
    code = "DEPENDENCY_EXISTS"

    def __init__(self, message: str, dependency: str):
        super().__init__(message)
        self.dependency = dependency


class InvalidFormatError(DomainError):
    code = "INVALID_FORMAT"


class NotFoundError(DomainError):
    status_code = 404
    code = "NOT_FOUND"


class PeriodLockedError(DomainError):
    """Financial record falls inside a locked month"""
    status_code = 403
    code = "PERIOD_LOCKED"
