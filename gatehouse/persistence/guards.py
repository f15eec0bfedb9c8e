from __future__ import annotations

from typing import Any

from sqlalchemy import ColumnElement

from gatehouse.core.errors import TenantPredicateError


def require_tenant_id(tenant_id: str | None) -> None:
    # Every identity query is tenant scoped; refuse to build one without a tenant.
    if not tenant_id:
        raise TenantPredicateError("Tenant predicate required but tenant_id is missing")


def tenant_predicate(model: Any, tenant_id: str) -> ColumnElement[bool]:
    # Build tenant predicates through a single helper to guarantee guard coverage.
    require_tenant_id(tenant_id)
    return model.tenant_id == tenant_id
