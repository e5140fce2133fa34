"""
Tenant isolation guards.

Every check is fail-closed: a missing context or a resource without a lab
identifier is a denial, never an implicit allow.
"""

from typing import Any, Iterable, List, Optional, TypeVar

from sqlalchemy import Select

from labops.app.core.exceptions import GovernanceException, access_denied
from labops.app.core.tenant_context import TenantContext

T = TypeVar("T")


def _lab_id_of(item: Any, lab_id_field: str) -> Optional[str]:
    if isinstance(item, dict):
        return item.get(lab_id_field)
    return getattr(item, lab_id_field, None)


def authorize(
    context: Optional[TenantContext],
    resource_lab_id: Optional[str],
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
) -> None:
    """
    Enforce that a resource belongs to the context's lab.
    
    Raises:
        GovernanceException: ACCESS_DENIED on missing context, missing
            resource lab id, or lab mismatch
    """
    context_lab_id = context.lab_id if context is not None else None
    if not context_lab_id or not resource_lab_id or resource_lab_id != context_lab_id:
        raise GovernanceException(access_denied(
            resource_lab_id,
            context_lab_id,
            entity_type=entity_type,
            entity_id=str(entity_id) if entity_id is not None else None,
        ))


def filter_to_tenant(
    items: Iterable[T],
    context: Optional[TenantContext],
    lab_id_field: str = "lab_id",
) -> List[T]:
    """
    Keep only items whose lab id matches the context.
    
    Applied even to store results that are already scoped by lab.
    """
    if context is None or not context.lab_id:
        return []
    return [item for item in items if _lab_id_of(item, lab_id_field) == context.lab_id]


def scope_query(query: Select, model: Any, context: Optional[TenantContext]) -> Select:
    """
    Add the tenant predicate to a SELECT.
    
    Usage:
        query = scope_query(select(Route), Route, context)
    """
    if context is None or not context.lab_id:
        raise GovernanceException(access_denied(None, None, entity_type=getattr(model, "__tablename__", None)))
    return query.where(model.lab_id == context.lab_id)
