"""
Permission resolution.

A decision walks a fixed sequence of states:

    Start -> RolesExpanded -> CandidatesGathered -> ConditionsFiltered
          -> Decided -> Audited

The resolver pins the hierarchy, grant and attribute snapshots when a
decision starts, so a concurrent write is either wholly visible to it or not
at all. The only storage read on the decision path is the user's direct
roles. DENY is a normal outcome; a failure to reach any outcome (storage
error, timeout) raises ResolutionError instead.
"""
import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol, runtime_checkable

from access_engine.core import config
from access_engine.core.exceptions import InvalidRequestError, ResolutionError
from access_engine.features.permissions.attributes import AttributeSnapshot, AttributeStore
from access_engine.features.permissions.audit import AuditEntry, AuditRecorder
from access_engine.features.permissions.conditions import evaluate
from access_engine.features.permissions.grants import Grant, GrantIndex, GrantSnapshot
from access_engine.features.permissions.hierarchy import HierarchySnapshot, RoleHierarchyGraph
from access_engine.utils import get_logger


log = get_logger(__name__)


class Reason(str, Enum):
    """Stable decision reason codes."""

    SIMPLE_GRANT_MATCH = "simple-grant-match"
    NO_MATCHING_GRANT = "no-matching-grant"
    USER_HAS_NO_ROLES = "user-has-no-roles"
    RESOLUTION_ERROR = "resolution-error"

    @staticmethod
    def extended(priority: int) -> str:
        return f"extended-grant-priority-{priority}"


class DecisionState(str, Enum):
    START = "Start"
    ROLES_EXPANDED = "RolesExpanded"
    CANDIDATES_GATHERED = "CandidatesGathered"
    CONDITIONS_FILTERED = "ConditionsFiltered"
    DECIDED = "Decided"
    AUDITED = "Audited"


@dataclass(frozen=True)
class Decision:
    """Outcome of one access request."""

    allowed: bool
    reason: str
    matched_grant: Optional[Grant] = None


@runtime_checkable
class UserDirectory(Protocol):
    """Source of a user's directly assigned, active roles."""

    async def roles_for(self, user_id: int) -> frozenset[str]: ...


class InMemoryUserDirectory:
    """User directory backed by a dict (tests, embedded use)."""

    def __init__(self, assignments: Optional[Mapping[int, Any]] = None):
        self._assignments: Dict[int, frozenset[str]] = {
            user_id: frozenset(roles) for user_id, roles in (assignments or {}).items()
        }

    def assign(self, user_id: int, role: str) -> None:
        self._assignments[user_id] = self._assignments.get(user_id, frozenset()) | {role}

    def unassign(self, user_id: int, role: str) -> None:
        self._assignments[user_id] = self._assignments.get(user_id, frozenset()) - {role}

    async def roles_for(self, user_id: int) -> frozenset[str]:
        return self._assignments.get(user_id, frozenset())


@dataclass(frozen=True)
class _Pinned:
    hierarchy: HierarchySnapshot
    grants: GrantSnapshot
    user_attributes: AttributeSnapshot
    resource_attributes: AttributeSnapshot


class _Progress:
    __slots__ = ("state",)

    def __init__(self) -> None:
        self.state = DecisionState.START


def validate_user_id(user_id: Any) -> int:
    if isinstance(user_id, bool) or not isinstance(user_id, int) or user_id <= 0:
        raise InvalidRequestError("A positive user id is required")
    return user_id


class PermissionResolver:
    """
    Combines role expansion, grant lookup, condition evaluation and priority
    selection into one decision.

    Usage:
        resolver = PermissionResolver(users, hierarchy, grants, user_attrs, resource_attrs, recorder)
        decision = await resolver.decide(7, "salary", "read", {"client_ip": "10.0.0.5"})
        if not decision.allowed:
            ...
    """

    def __init__(
        self,
        users: UserDirectory,
        hierarchy: RoleHierarchyGraph,
        grants: GrantIndex,
        user_attributes: AttributeStore,
        resource_attributes: AttributeStore,
        recorder: Optional[AuditRecorder] = None,
        timeout: Optional[float] = config.DECISION_TIMEOUT_SECONDS,
    ):
        self.users = users
        self.hierarchy = hierarchy
        self.grants = grants
        self.user_attributes = user_attributes
        self.resource_attributes = resource_attributes
        self.recorder = recorder
        self.timeout = timeout

    def _pin(self) -> _Pinned:
        return _Pinned(
            hierarchy=self.hierarchy.snapshot(),
            grants=self.grants.snapshot(),
            user_attributes=self.user_attributes.snapshot(),
            resource_attributes=self.resource_attributes.snapshot(),
        )

    # ========================================================================
    # Decide
    # ========================================================================

    async def decide(
        self,
        user_id: int,
        resource: str,
        action: str,
        context: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Decision:
        """
        Decide whether a user may perform an action on a resource.

        Args:
            user_id: Authenticated principal
            resource: Resource name, e.g. "salary"
            action: Action name, e.g. "read"
            context: Request environment (client_ip, time, day_of_week, ...)
            timeout: Override of the resolver's default timeout in seconds

        Returns:
            Decision with allowed, reason and the matched grant

        Raises:
            InvalidRequestError: if an identifier is missing (nothing is audited)
            ResolutionError: if storage fails or the timeout elapses
        """
        validate_user_id(user_id)
        if not isinstance(resource, str) or not resource.strip():
            raise InvalidRequestError("Resource is required")
        if not isinstance(action, str) or not action.strip():
            raise InvalidRequestError("Action is required")

        context = dict(context or {})
        pinned = self._pin()
        progress = _Progress()
        limit = self.timeout if timeout is None else timeout

        try:
            decision = await asyncio.wait_for(
                self._resolve(pinned, progress, user_id, resource, action, context), limit
            )
        except Exception as e:
            log.error(
                "Could not resolve %s:%s for user %s in state %s",
                resource, action, user_id, progress.state.value, exc_info=True,
            )
            self._audit(pinned, user_id, resource, action, context, False, Reason.RESOLUTION_ERROR.value, None)
            if isinstance(e, asyncio.TimeoutError):
                raise ResolutionError(f"Decision for {resource}:{action} timed out after {limit}s") from e
            raise ResolutionError(f"Decision for {resource}:{action} failed: {e}") from e

        progress.state = DecisionState.DECIDED
        if decision.allowed:
            log.debug("Allowed %s:%s for user %s (%s)", resource, action, user_id, decision.reason)
        else:
            log.debug("Denied %s:%s for user %s (%s)", resource, action, user_id, decision.reason)

        self._audit(pinned, user_id, resource, action, context, decision.allowed, decision.reason, decision.matched_grant)
        progress.state = DecisionState.AUDITED
        return decision

    async def _resolve(
        self,
        pinned: _Pinned,
        progress: _Progress,
        user_id: int,
        resource: str,
        action: str,
        context: Dict[str, Any],
    ) -> Decision:
        direct = {role for role in await self.users.roles_for(user_id) if pinned.grants.is_role_active(role)}
        if not direct:
            return Decision(False, Reason.USER_HAS_NO_ROLES.value)
        roles = pinned.hierarchy.expand_all(direct)
        progress.state = DecisionState.ROLES_EXPANDED

        simple = pinned.grants.find_simple(roles, resource, action)
        if simple is not None:
            return Decision(True, Reason.SIMPLE_GRANT_MATCH.value, simple)
        candidates = [g for g in pinned.grants.candidates_for(roles, resource, action) if g.kind == "extended"]
        progress.state = DecisionState.CANDIDATES_GATHERED

        if candidates:
            user_attrs = pinned.user_attributes.get_all_typed(user_id)
            resource_id = pinned.grants.resource_id(resource)
            resource_attrs = pinned.resource_attributes.get_all_typed(resource_id) if resource_id is not None else {}
            for grant in candidates:
                if evaluate(grant.conditions, user_attrs, resource_attrs, context):
                    progress.state = DecisionState.CONDITIONS_FILTERED
                    return Decision(True, Reason.extended(grant.priority), grant)
        progress.state = DecisionState.CONDITIONS_FILTERED
        return Decision(False, Reason.NO_MATCHING_GRANT.value)

    def _audit(
        self,
        pinned: _Pinned,
        user_id: int,
        resource: str,
        action: str,
        context: Dict[str, Any],
        allowed: bool,
        reason: str,
        grant: Optional[Grant],
    ) -> None:
        if self.recorder is None:
            return
        try:
            entry = AuditEntry.build(
                context,
                user_id=user_id,
                operation="check" if allowed else "deny",
                result=allowed,
                reason=reason,
                resource=resource,
                resource_id=pinned.grants.resource_id(resource),
                action=action,
                action_id=pinned.grants.action_id(action),
                permission_id=grant.id if grant is not None else None,
            )
            self.recorder.record(entry)
        except Exception:
            log.error("Failed to record audit entry for user %s", user_id, exc_info=True)

    # ========================================================================
    # Queries
    # ========================================================================

    async def expand_roles(self, user_id: int) -> frozenset[str]:
        """Effective active roles of a user: direct roles plus inherited ones."""
        validate_user_id(user_id)
        return await self._effective_roles(user_id, self._pin())

    async def permissions_for_user(self, user_id: int) -> List[Grant]:
        """
        Every live grant a user holds through their effective roles.

        Grants come back in decision order (simple first, then priority,
        newest first); conditions are not evaluated.
        """
        validate_user_id(user_id)
        pinned = self._pin()
        roles = await self._effective_roles(user_id, pinned)
        return pinned.grants.live_grants_for(roles)

    async def _effective_roles(self, user_id: int, pinned: _Pinned) -> frozenset[str]:
        try:
            direct = await self.users.roles_for(user_id)
        except Exception as e:
            log.error("Could not load roles for user %s", user_id, exc_info=True)
            raise ResolutionError(f"Could not load roles for user {user_id}: {e}") from e
        active = [role for role in direct if pinned.grants.is_role_active(role)]
        return frozenset(role for role in pinned.hierarchy.expand_all(active) if pinned.grants.is_role_active(role))

    async def query_audit_trail(self, user_id: int, limit: int = 50) -> List[AuditEntry]:
        """Audit entries for a user, most recent first."""
        validate_user_id(user_id)
        if self.recorder is None:
            return []
        return await self.recorder.query(user_id, limit)
