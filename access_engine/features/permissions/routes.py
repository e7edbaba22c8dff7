"""
Access decision API routes.

Provides the decision endpoints (decide, effective roles, audit trail) and
administration endpoints for roles, resources, actions, role inheritance,
grants, attributes and user-role assignment. Administration requires the
"permissions:manage" permission of the caller identified by X-User-ID.
"""
from typing import Dict, List

from fastapi import APIRouter, Depends, Query, Request, Response, status

from access_engine.features.permissions.dependencies import (
    authorize_subject,
    build_request_context,
    get_access_engine,
    get_current_user_id,
    require_permission,
)
from access_engine.features.permissions.schemas import (
    ActionCreate,
    AttributeResponse,
    AttributeSet,
    AuditEntryResponse,
    CatalogResponse,
    DecisionRequest,
    DecisionResponse,
    EffectiveRolesResponse,
    ExtendedGrantCreate,
    GrantResponse,
    ResourceCreate,
    RoleAssignment,
    RoleCreate,
    RoleEdgeCreate,
    RoleEdgeResponse,
    RoleHierarchyResponse,
    SimpleGrantCreate,
    StatusUpdate,
    UserCreate,
    UserResponse,
)
from access_engine.features.permissions.service import AccessEngine
from access_engine.utils import get_logger


log = get_logger(__name__)
router = APIRouter()

manage_policy = require_permission("permissions", "manage")


# ============================================================================
# Decision Routes
# ============================================================================

@router.post("/decide", response_model=DecisionResponse)
async def decide(
    body: DecisionRequest,
    request: Request,
    engine: AccessEngine = Depends(get_access_engine),
    caller_id: int = Depends(get_current_user_id),
):
    """
    Decide whether a user may perform an action on a resource.

    The subject defaults to the caller; deciding for another user needs
    permissions:manage or permissions:check. Environment keys derived from
    the HTTP request override the same keys in the body's context.
    """
    user_id = caller_id if body.user_id is None else body.user_id
    await authorize_subject(caller_id, user_id, request, engine)
    context = {**body.context, **build_request_context(request)}
    decision = await engine.resolver.decide(user_id, body.resource, body.action, context)
    return DecisionResponse(
        allowed=decision.allowed,
        reason=decision.reason,
        matched_grant=GrantResponse.from_grant(decision.matched_grant) if decision.matched_grant else None,
    )


@router.get("/users/{user_id}/roles", response_model=EffectiveRolesResponse)
async def get_effective_roles(
    user_id: int,
    request: Request,
    engine: AccessEngine = Depends(get_access_engine),
    caller_id: int = Depends(get_current_user_id),
):
    """Get a user's active roles, direct and inherited."""
    await authorize_subject(caller_id, user_id, request, engine)
    roles = await engine.resolver.expand_roles(user_id)
    return EffectiveRolesResponse(user_id=user_id, roles=sorted(roles))


@router.get("/users/{user_id}/permissions", response_model=List[GrantResponse])
async def get_user_permissions(
    user_id: int,
    engine: AccessEngine = Depends(get_access_engine),
    _actor: int = Depends(manage_policy),
):
    """List every live grant a user holds through their effective roles."""
    grants = await engine.resolver.permissions_for_user(user_id)
    return [GrantResponse.from_grant(grant) for grant in grants]


@router.get("/users/{user_id}/audit", response_model=List[AuditEntryResponse])
async def get_audit_trail(
    user_id: int,
    limit: int = Query(50, ge=1, le=1000),
    engine: AccessEngine = Depends(get_access_engine),
    _caller: int = Depends(require_permission("audit", "read")),
):
    """Get a user's audit trail, most recent first."""
    entries = await engine.resolver.query_audit_trail(user_id, limit)
    return [AuditEntryResponse.model_validate(entry) for entry in entries]


# ============================================================================
# Role Routes
# ============================================================================

@router.post("/roles", response_model=CatalogResponse, status_code=status.HTTP_201_CREATED)
async def create_role(
    role: RoleCreate,
    engine: AccessEngine = Depends(get_access_engine),
    _actor: int = Depends(manage_policy),
):
    """Create a new role."""
    return await engine.admin.create_role(role.name, role.description)


@router.put("/roles/{name}/status", response_model=CatalogResponse)
async def set_role_status(
    name: str,
    update: StatusUpdate,
    engine: AccessEngine = Depends(get_access_engine),
    _actor: int = Depends(manage_policy),
):
    """Activate or deactivate a role. Grants of an inactive role never match."""
    return await engine.admin.set_role_active(name, update.is_active)


@router.get("/roles/{name}/grants", response_model=List[GrantResponse])
async def get_role_grants(
    name: str,
    engine: AccessEngine = Depends(get_access_engine),
    _actor: int = Depends(manage_policy),
):
    """List the grants attached directly to a role."""
    return [GrantResponse.from_grant(grant) for grant in engine.admin.grants_for_role(name)]


@router.get("/roles/{name}/hierarchy", response_model=RoleHierarchyResponse)
async def get_role_hierarchy(
    name: str,
    engine: AccessEngine = Depends(get_access_engine),
    _actor: int = Depends(manage_policy),
):
    """Get a role's parents, children and every role it inherits from."""
    snapshot = engine.hierarchy.snapshot()
    return RoleHierarchyResponse(
        role=name,
        parents=list(snapshot.parents(name)),
        children=list(snapshot.children(name)),
        inherited=sorted(snapshot.expand(name) - {name}),
    )


@router.post("/roles/hierarchy", response_model=RoleEdgeResponse, status_code=status.HTTP_201_CREATED)
async def add_role_edge(
    edge: RoleEdgeCreate,
    engine: AccessEngine = Depends(get_access_engine),
    _actor: int = Depends(manage_policy),
):
    """Make the child role inherit the parent role's grants. Cycles are rejected with 409."""
    created = await engine.admin.add_role_edge(edge.parent, edge.child, edge.inherits_permissions)
    return RoleEdgeResponse.model_validate(created)


@router.delete("/roles/hierarchy/{parent}/{child}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_role_edge(
    parent: str,
    child: str,
    engine: AccessEngine = Depends(get_access_engine),
    _actor: int = Depends(manage_policy),
):
    """Remove a role inheritance edge."""
    await engine.admin.remove_role_edge(parent, child)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# Resource and Action Routes
# ============================================================================

@router.post("/resources", response_model=CatalogResponse, status_code=status.HTTP_201_CREATED)
async def create_resource(
    resource: ResourceCreate,
    engine: AccessEngine = Depends(get_access_engine),
    _actor: int = Depends(manage_policy),
):
    """Create a new resource."""
    return await engine.admin.create_resource(
        resource.name, resource.description, resource.type, resource.parent, resource.path
    )


@router.put("/resources/{name}/status", response_model=CatalogResponse)
async def set_resource_status(
    name: str,
    update: StatusUpdate,
    engine: AccessEngine = Depends(get_access_engine),
    _actor: int = Depends(manage_policy),
):
    """Activate or deactivate a resource."""
    return await engine.admin.set_resource_active(name, update.is_active)


@router.delete("/resources/{name}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_resource(
    name: str,
    engine: AccessEngine = Depends(get_access_engine),
    _actor: int = Depends(manage_policy),
):
    """Delete a resource that has no children and no grants (409 otherwise)."""
    await engine.admin.delete_resource(name)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/actions", response_model=CatalogResponse, status_code=status.HTTP_201_CREATED)
async def create_action(
    action: ActionCreate,
    engine: AccessEngine = Depends(get_access_engine),
    _actor: int = Depends(manage_policy),
):
    """Create a new action."""
    return await engine.admin.create_action(action.name, action.description, action.category)


@router.put("/actions/{name}/status", response_model=CatalogResponse)
async def set_action_status(
    name: str,
    update: StatusUpdate,
    engine: AccessEngine = Depends(get_access_engine),
    _actor: int = Depends(manage_policy),
):
    """Activate or deactivate an action."""
    return await engine.admin.set_action_active(name, update.is_active)


# ============================================================================
# Grant Routes
# ============================================================================

@router.post("/grants/simple", response_model=GrantResponse, status_code=status.HTTP_201_CREATED)
async def grant_simple(
    grant: SimpleGrantCreate,
    engine: AccessEngine = Depends(get_access_engine),
    actor_id: int = Depends(manage_policy),
):
    """Grant resource:action to a role unconditionally."""
    created = await engine.admin.grant_simple(
        grant.role, grant.resource, grant.action, grant.description, actor_id=actor_id
    )
    return GrantResponse.from_grant(created)


@router.delete("/grants/simple/{role}/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_simple(
    role: str,
    permission_id: int,
    engine: AccessEngine = Depends(get_access_engine),
    actor_id: int = Depends(manage_policy),
):
    """Remove a simple grant from a role."""
    await engine.admin.revoke_simple(role, permission_id, actor_id=actor_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/grants/extended", response_model=GrantResponse, status_code=status.HTTP_201_CREATED)
async def grant_extended(
    grant: ExtendedGrantCreate,
    engine: AccessEngine = Depends(get_access_engine),
    actor_id: int = Depends(manage_policy),
):
    """Create a conditional grant with a priority."""
    created = await engine.admin.grant_extended(
        grant.role, grant.resource, grant.action, grant.conditions, grant.priority, actor_id=actor_id
    )
    return GrantResponse.from_grant(created)


@router.delete("/grants/extended/{grant_id}", response_model=GrantResponse)
async def revoke_extended(
    grant_id: int,
    engine: AccessEngine = Depends(get_access_engine),
    actor_id: int = Depends(manage_policy),
):
    """Deactivate an extended grant."""
    return GrantResponse.from_grant(await engine.admin.revoke_extended(grant_id, actor_id=actor_id))


# ============================================================================
# User Routes
# ============================================================================

@router.post("/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(
    user: UserCreate,
    engine: AccessEngine = Depends(get_access_engine),
    _actor: int = Depends(manage_policy),
):
    """Register a principal."""
    return await engine.admin.create_user(user.username, user.email)


@router.put("/users/{user_id}/status", status_code=status.HTTP_204_NO_CONTENT)
async def set_user_status(
    user_id: int,
    update: StatusUpdate,
    engine: AccessEngine = Depends(get_access_engine),
    _actor: int = Depends(manage_policy),
):
    """Activate or deactivate a user. Inactive users resolve to no roles."""
    await engine.admin.set_user_active(user_id, update.is_active)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/users/{user_id}/roles", status_code=status.HTTP_204_NO_CONTENT)
async def assign_role(
    user_id: int,
    assignment: RoleAssignment,
    engine: AccessEngine = Depends(get_access_engine),
    _actor: int = Depends(manage_policy),
):
    """Assign a role to a user."""
    await engine.admin.assign_role(user_id, assignment.role)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/users/{user_id}/roles/{role}", status_code=status.HTTP_204_NO_CONTENT)
async def unassign_role(
    user_id: int,
    role: str,
    engine: AccessEngine = Depends(get_access_engine),
    _actor: int = Depends(manage_policy),
):
    """Remove a role from a user."""
    await engine.admin.unassign_role(user_id, role)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# Attribute Routes
# ============================================================================

@router.get("/users/{user_id}/attributes", response_model=Dict[str, AttributeResponse])
async def get_user_attributes(
    user_id: int,
    engine: AccessEngine = Depends(get_access_engine),
    _actor: int = Depends(manage_policy),
):
    attributes = engine.admin.user_attributes_of(user_id)
    return {key: AttributeResponse.from_value(key, value) for key, value in attributes.items()}


@router.put("/users/{user_id}/attributes/{key}", response_model=AttributeResponse)
async def set_user_attribute(
    user_id: int,
    key: str,
    attribute: AttributeSet,
    engine: AccessEngine = Depends(get_access_engine),
    _actor: int = Depends(manage_policy),
):
    """Create or update a typed user attribute."""
    value = await engine.admin.set_user_attribute(user_id, key, attribute.value, attribute.type)
    return AttributeResponse.from_value(key, value)


@router.delete("/users/{user_id}/attributes/{key}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_user_attribute(
    user_id: int,
    key: str,
    engine: AccessEngine = Depends(get_access_engine),
    _actor: int = Depends(manage_policy),
):
    await engine.admin.delete_user_attribute(user_id, key)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/resources/{name}/attributes", response_model=Dict[str, AttributeResponse])
async def get_resource_attributes(
    name: str,
    engine: AccessEngine = Depends(get_access_engine),
    _actor: int = Depends(manage_policy),
):
    attributes = engine.admin.resource_attributes_of(name)
    return {key: AttributeResponse.from_value(key, value) for key, value in attributes.items()}


@router.put("/resources/{name}/attributes/{key}", response_model=AttributeResponse)
async def set_resource_attribute(
    name: str,
    key: str,
    attribute: AttributeSet,
    engine: AccessEngine = Depends(get_access_engine),
    _actor: int = Depends(manage_policy),
):
    """Create or update a typed resource attribute."""
    value = await engine.admin.set_resource_attribute(name, key, attribute.value, attribute.type)
    return AttributeResponse.from_value(key, value)


@router.delete("/resources/{name}/attributes/{key}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_resource_attribute(
    name: str,
    key: str,
    engine: AccessEngine = Depends(get_access_engine),
    _actor: int = Depends(manage_policy),
):
    await engine.admin.delete_resource_attribute(name, key)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
