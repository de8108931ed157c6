from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel

from app.domain.models import (
    AccessDecision,
    AccessResult,
    Application,
    Branch,
    Document,
    PermissionCheck,
    RequestContext,
    Role,
    ScopeTag,
    Student,
    Task,
    User,
)
from app.domain.permissions import ROLE_MUTATING_ACTIONS
from app.infra.db import get_engine
from app.services.access_service import (
    REASON_HIERARCHY,
    REASON_NOT_FOUND,
    REASON_TENANT_MISMATCH,
    AccessEvaluator,
    AccessStoreError,
)
from app.services.role_graph_service import EffectiveRoles, RoleHierarchyError

logger = logging.getLogger(__name__)

REASON_RESOURCE_NOT_FOUND = "resource not found"
REASON_UNKNOWN_RESOURCE_TYPE = "unknown resource type"
REASON_BRANCH_NOT_ACCESSIBLE = "resource branch not accessible"
REASON_NOT_ASSIGNED = "assignment mismatch: resource not assigned to principal"
REASON_ROLE_OUTRANKS = "role outranks principal"
INSTANCE_SCOPES = frozenset({ScopeTag.ASSIGNED, ScopeTag.OWN})


@dataclass(frozen=True)
class ResourceLocator:
    model: type[SQLModel]
    permission_resource: str
    tracks_assignment: bool = False
    branch_owned: bool = True


@dataclass(frozen=True)
class InstanceOwnership:
    tenant_id: str | None
    branch_id: str | None
    assigned_to: str | None = None
    created_by: str | None = None


RESOURCE_LOCATORS: dict[str, ResourceLocator] = {
    "student": ResourceLocator(Student, "students", tracks_assignment=True),
    "application": ResourceLocator(Application, "applications", tracks_assignment=True),
    "task": ResourceLocator(Task, "tasks", tracks_assignment=True),
    "document": ResourceLocator(Document, "documents", tracks_assignment=True),
    "user": ResourceLocator(User, "users"),
    "branch": ResourceLocator(Branch, "branches"),
    "role": ResourceLocator(Role, "roles", branch_owned=False),
}


def find_locator(resource_type: str) -> ResourceLocator | None:
    locator = RESOURCE_LOCATORS.get(resource_type)
    if locator is not None:
        return locator
    for item in RESOURCE_LOCATORS.values():
        if item.permission_resource == resource_type:
            return item
    return None


def ownership_of(instance: SQLModel) -> InstanceOwnership:
    if isinstance(instance, Branch):
        return InstanceOwnership(tenant_id=instance.tenant_id, branch_id=instance.id)
    return InstanceOwnership(
        tenant_id=getattr(instance, "tenant_id", None),
        branch_id=getattr(instance, "branch_id", None),
        assigned_to=getattr(instance, "assigned_to", None),
        created_by=getattr(instance, "created_by", None),
    )


def holds_system_global_role(effective: EffectiveRoles) -> bool:
    return any(role.tenant_id is None and role.scope == ScopeTag.GLOBAL for role in effective.assigned)


class ResourceAccessService:
    def __init__(self, evaluator: AccessEvaluator | None = None) -> None:
        self.evaluator = evaluator or AccessEvaluator()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def can_access_resource(
        self,
        principal_id: str,
        resource_type: str,
        resource_id: str,
        action: str,
        context: RequestContext | None = None,
    ) -> AccessDecision:
        started = time.perf_counter()
        request = context or RequestContext()
        locator = find_locator(resource_type)
        check = PermissionCheck(
            resource=locator.permission_resource if locator is not None else resource_type,
            action=action,
            resource_id=resource_id,
        )
        try:
            with self._session() as session:
                decision, tenant_id = self._decide(session, principal_id, locator, check, request)
        except SQLAlchemyError as exc:
            logger.exception(
                "access store failure while checking %s %s for %s",
                resource_type,
                resource_id,
                principal_id,
            )
            raise AccessStoreError("access store unavailable") from exc
        self.evaluator.audit(decision, tenant_id, request, started)
        return decision

    def _deny(self, principal_id: str, check: PermissionCheck, reason: str) -> AccessDecision:
        return self.evaluator.deny(principal_id, check, reason)

    def _downgrade(self, decision: AccessDecision, reason: str) -> AccessDecision:
        return decision.model_copy(update={"allowed": False, "result": AccessResult.DENIED, "reason": reason})

    def _decide(
        self,
        session: Session,
        principal_id: str,
        locator: ResourceLocator | None,
        check: PermissionCheck,
        request: RequestContext,
    ) -> tuple[AccessDecision, str | None]:
        principal = session.get(User, principal_id)
        if principal is None:
            return self._deny(principal_id, check, REASON_NOT_FOUND), request.agency_id
        if locator is None:
            return self._deny(principal_id, check, REASON_UNKNOWN_RESOURCE_TYPE), principal.tenant_id

        instance = session.get(locator.model, check.resource_id)
        if instance is None:
            return self._deny(principal_id, check, REASON_RESOURCE_NOT_FOUND), principal.tenant_id
        ownership = ownership_of(instance)

        if ownership.tenant_id != principal.tenant_id:
            try:
                effective = self.evaluator.role_graph.resolve(session, principal, self.evaluator.clock())
            except RoleHierarchyError:
                return self._deny(principal_id, check, REASON_HIERARCHY), principal.tenant_id
            if not holds_system_global_role(effective):
                return self._deny(principal_id, check, REASON_TENANT_MISMATCH), principal.tenant_id

        evaluation = self.evaluator.evaluate(session, principal_id, check, request)
        decision = evaluation.decision
        if not decision.allowed:
            return decision, principal.tenant_id

        if ownership.branch_id is None:
            # branchless records sit outside every branch
            if locator.branch_owned and decision.branch_scope == ScopeTag.BRANCH:
                return self._downgrade(decision, REASON_BRANCH_NOT_ACCESSIBLE), principal.tenant_id
        elif ownership.branch_id not in decision.accessible_branches:
            return self._downgrade(decision, REASON_BRANCH_NOT_ACCESSIBLE), principal.tenant_id

        if locator.tracks_assignment and decision.branch_scope in INSTANCE_SCOPES:
            if principal.id not in {ownership.assigned_to, ownership.created_by}:
                return self._downgrade(decision, REASON_NOT_ASSIGNED), principal.tenant_id

        if isinstance(instance, Role) and check.action in ROLE_MUTATING_ACTIONS:
            if not self.evaluator.role_graph.can_manage_role(session, principal, instance, self.evaluator.clock()):
                return self._downgrade(decision, REASON_ROLE_OUTRANKS), principal.tenant_id

        return decision, principal.tenant_id
