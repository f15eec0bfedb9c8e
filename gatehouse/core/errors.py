from __future__ import annotations


class IdentityError(Exception):
    """Base error for gatehouse."""

    # When set, the failing transaction commits instead of rolling back.
    retain_changes = False


class ConfigurationError(IdentityError):
    """Missing or invalid policy or key configuration."""


class InvalidArgumentError(IdentityError, ValueError):
    """Argument is missing, empty, too long, or contains a forbidden character."""

    def __init__(self, message: str, *, param: str | None = None) -> None:
        super().__init__(message)
        self.param = param


class PasswordTooLongError(InvalidArgumentError):
    """Encoded credential does not fit the storage column."""


class NotFoundError(IdentityError):
    """User, role, or tenant is absent when required to exist."""


class AlreadyExistsError(IdentityError):
    """Duplicate user name, email, role, or membership."""


class PolicyViolationError(IdentityError):
    """Password policy or store policy rejected the operation."""


class RoleNotEmptyError(PolicyViolationError):
    """Role still has members and deletion was asked to fail in that case."""


class PasswordAnswerRejectedError(PolicyViolationError):
    """Password answer missing or wrong; the failure count is kept."""

    retain_changes = True


class LockedOutError(IdentityError):
    """Account is locked out."""


class UnsupportedOperationError(IdentityError):
    """Operation is disabled by policy or impossible for the stored format."""


class ConsistencyFaultError(IdentityError):
    """A write affected an unexpected number of rows; never retried."""


class TransientStoreError(IdentityError):
    """Connection or timeout failure; the whole operation may be retried."""


class IdentityStoreError(IdentityError):
    """Database layer failure that is neither transient nor a conflict."""


class TenantPredicateError(IdentityError, RuntimeError):
    """Tenant predicate required but tenant_id is missing."""
