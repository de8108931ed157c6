from __future__ import annotations

from typing import Any

from sqlalchemy import and_, false, or_, true
from sqlalchemy.sql.elements import ColumnElement
from sqlmodel import SQLModel, col
from sqlmodel.sql.expression import SelectOfScalar

from app.domain.models import ScopeTag, User
from app.services.scope_service import ScopeResolution

OR_KEY = "OR"


class FilterError(ValueError):
    pass


def build_data_filters(principal: User, resolution: ScopeResolution) -> dict[str, Any]:
    branches = sorted(resolution.branch_ids)
    if resolution.scope is None:
        return {"branch_id": {"in": []}}
    if resolution.scope == ScopeTag.GLOBAL:
        return {"branch_id": {"in": branches}} if resolution.narrowed else {}
    filters: dict[str, Any] = {"tenant_id": principal.tenant_id}
    if resolution.scope == ScopeTag.AGENCY:
        if resolution.narrowed:
            filters["branch_id"] = {"in": branches}
        return filters
    if resolution.scope == ScopeTag.BRANCH:
        filters["branch_id"] = {"in": branches}
        return filters
    if resolution.scope == ScopeTag.ASSIGNED:
        filters[OR_KEY] = [{"assigned_to": principal.id}, {"branch_id": {"in": branches}}]
        return filters
    filters[OR_KEY] = [{"assigned_to": principal.id}, {"created_by": principal.id}]
    return filters


def _column(model: type[SQLModel], name: str) -> Any:
    column = getattr(model, name, None)
    if column is None:
        raise FilterError(f"{model.__name__} has no column {name}")
    return col(column)


def _clause(model: type[SQLModel], filters: dict[str, Any]) -> ColumnElement[bool]:
    clauses: list[ColumnElement[bool]] = []
    for key, value in filters.items():
        if key == OR_KEY:
            if not isinstance(value, list):
                raise FilterError("OR expects a list of filters")
            alternatives = [_clause(model, item) for item in value]
            clauses.append(or_(*alternatives) if alternatives else false())
            continue
        column = _column(model, key)
        if isinstance(value, dict):
            if set(value) != {"in"} or not isinstance(value["in"], list):
                raise FilterError(f"unsupported filter on {key}: {value!r}")
            clauses.append(column.in_(value["in"]) if value["in"] else false())
            continue
        clauses.append(column == value)
    if not clauses:
        return true()
    return and_(*clauses)


def apply_data_filters(
    statement: SelectOfScalar[Any],
    model: type[SQLModel],
    filters: dict[str, Any],
) -> SelectOfScalar[Any]:
    if not filters:
        return statement
    return statement.where(_clause(model, filters))
