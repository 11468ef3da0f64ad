"""Tenant scoping helpers.

Every billing query goes through these so the organization filter and the
soft-delete filter are written once.
"""
from typing import Optional, Type, TypeVar

from sqlmodel import Session, SQLModel, select

ModelT = TypeVar("ModelT", bound=SQLModel)


def tenant_select(model: Type[ModelT], tenant_id: int, *, include_deleted: bool = False):
    """Return a ``select`` on *model* filtered to *tenant_id*.

    Usage::

        entries = session.exec(tenant_select(TimeEntry, org_id).where(...)).all()
    """
    statement = select(model).where(model.organization_id == tenant_id)
    if not include_deleted and hasattr(model, "deleted_at"):
        statement = statement.where(model.deleted_at.is_(None))
    return statement


def tenant_get(session: Session, model: Type[ModelT], obj_id: int, tenant_id: int) -> Optional[ModelT]:
    """Fetch a single row by PK, only if it belongs to *tenant_id* and is live."""
    obj = session.get(model, obj_id)
    if obj is None or obj.organization_id != tenant_id:
        return None
    if getattr(obj, "deleted_at", None) is not None:
        return None
    return obj
