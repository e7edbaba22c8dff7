"""
Pydantic schemas for the access decision API.

Request and response models for decisions, audit entries, the role/resource/
action catalog, role inheritance, grants, attributes and role assignment.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from access_engine.features.permissions.attributes import ATTRIBUTE_TYPES, AttributeValue
from access_engine.features.permissions.grants import Grant


def _name_format(v: str, extra: str = "_-") -> str:
    if not v.translate({ord(c): None for c in extra}).isalnum():
        raise ValueError(f"Name must contain only alphanumeric characters and {' '.join(extra)}")
    return v


# ============================================================================
# Decision Schemas
# ============================================================================

class DecisionRequest(BaseModel):
    """Schema for asking whether a user may act on a resource."""
    user_id: Optional[int] = Field(None, description="Principal the decision is made for; defaults to the caller")
    resource: str = Field(..., description="Resource name (e.g., 'doc', 'salary')")
    action: str = Field(..., description="Action name (e.g., 'read', 'approve')")
    context: Dict[str, Any] = Field(
        default_factory=dict, description="Extra environment for ABAC conditions; server-derived keys take precedence"
    )


class GrantResponse(BaseModel):
    """Schema for a simple or extended grant."""
    id: int
    kind: Literal["simple", "extended"]
    role: str
    resource: str
    action: str
    conditions: Optional[Dict[str, Any]] = None
    priority: int = 0
    is_active: bool = True
    created_at: Optional[datetime] = None

    @classmethod
    def from_grant(cls, grant: Grant) -> "GrantResponse":
        return cls(
            id=grant.id,
            kind=grant.kind,
            role=grant.role,
            resource=grant.resource,
            action=grant.action,
            conditions=grant.conditions.to_document() if grant.conditions is not None else None,
            priority=grant.priority,
            is_active=grant.is_active,
            created_at=grant.created_at,
        )


class DecisionResponse(BaseModel):
    """Schema for an access decision."""
    allowed: bool
    reason: str
    matched_grant: Optional[GrantResponse] = None


class EffectiveRolesResponse(BaseModel):
    """Schema for a user's effective roles (direct plus inherited)."""
    user_id: int
    roles: List[str]


class AuditEntryResponse(BaseModel):
    """Schema for an audit trail entry."""
    user_id: Optional[int]
    operation: str
    result: bool
    reason: str
    resource: Optional[str] = None
    resource_id: Optional[int] = None
    action: Optional[str] = None
    action_id: Optional[int] = None
    permission_id: Optional[int] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    context_fingerprint: str
    created_at: datetime
    sequence: int

    model_config = ConfigDict(from_attributes=True)


# ============================================================================
# Catalog Schemas
# ============================================================================

class RoleCreate(BaseModel):
    """Schema for creating a role."""
    name: str = Field(..., min_length=1, max_length=50, description="Unique role name")
    description: Optional[str] = Field(None, max_length=1000, description="Role description")

    @field_validator("name")
    @classmethod
    def name_alphanumeric_underscore(cls, v: str) -> str:
        """Validate role name format."""
        return _name_format(v)


class ResourceCreate(BaseModel):
    """Schema for creating a resource."""
    name: str = Field(..., min_length=1, max_length=100, description="Unique resource name")
    description: Optional[str] = Field(None, max_length=255)
    type: Literal["system", "module", "menu", "api", "data"] = "data"
    parent: Optional[str] = Field(None, description="Parent resource name (resource tree)")
    path: Optional[str] = Field(None, max_length=255)

    @field_validator("name")
    @classmethod
    def name_format(cls, v: str) -> str:
        return _name_format(v, "_-.")


class ActionCreate(BaseModel):
    """Schema for creating an action."""
    name: str = Field(..., min_length=1, max_length=50, description="Unique action name")
    description: Optional[str] = Field(None, max_length=255)
    category: Optional[Literal["crud", "system", "business"]] = None

    @field_validator("name")
    @classmethod
    def action_lowercase(cls, v: str) -> str:
        """Ensure action is lowercase."""
        return _name_format(v).lower()


class CatalogResponse(BaseModel):
    """Schema for a role, resource or action."""
    id: int
    name: str
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class StatusUpdate(BaseModel):
    """Schema for activating or deactivating a record."""
    is_active: bool


# ============================================================================
# Role Hierarchy Schemas
# ============================================================================

class RoleEdgeCreate(BaseModel):
    """Schema for making a child role inherit a parent role's grants."""
    parent: str = Field(..., min_length=1)
    child: str = Field(..., min_length=1)
    inherits_permissions: bool = True


class RoleEdgeResponse(RoleEdgeCreate):
    model_config = ConfigDict(from_attributes=True)


class RoleHierarchyResponse(BaseModel):
    """Schema for a role's direct neighbours and inherited roles."""
    role: str
    parents: List[str]
    children: List[str]
    inherited: List[str]


# ============================================================================
# Grant Schemas
# ============================================================================

class SimpleGrantCreate(BaseModel):
    """Schema for an unconditional grant of resource:action to a role."""
    role: str = Field(..., min_length=1)
    resource: str = Field(..., min_length=1, max_length=100)
    action: str = Field(..., min_length=1, max_length=50)
    description: Optional[str] = Field(None, max_length=1000)

    @field_validator("resource")
    @classmethod
    def resource_format(cls, v: str) -> str:
        return _name_format(v, "_-.")

    @field_validator("action")
    @classmethod
    def action_lowercase(cls, v: str) -> str:
        return _name_format(v).lower()


class ExtendedGrantCreate(BaseModel):
    """
    Schema for a conditional, prioritized grant.

    Example conditions:
        [{"scope": "user", "key": "department", "comparator": "eq",
          "value_from": {"scope": "resource", "key": "department"}},
         {"scope": "environment", "key": "time", "comparator": "time_between",
          "value": "09:00-18:00"}]
    """
    role: str = Field(..., min_length=1)
    resource: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    conditions: Optional[Any] = Field(None, description="Clause list or condition document")
    priority: int = Field(0, description="Higher priority wins")

    @field_validator("action")
    @classmethod
    def action_lowercase(cls, v: str) -> str:
        return v.lower()


# ============================================================================
# User Schemas
# ============================================================================

class UserCreate(BaseModel):
    """Schema for registering a principal."""
    username: str = Field(..., min_length=1, max_length=100)
    email: Optional[str] = Field(None, max_length=255)


class UserResponse(BaseModel):
    id: int
    username: str
    email: Optional[str] = None
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class RoleAssignment(BaseModel):
    """Schema for assigning a role to a user."""
    role: str = Field(..., min_length=1)


# ============================================================================
# Attribute Schemas
# ============================================================================

class AttributeSet(BaseModel):
    """Schema for setting a typed attribute; the value is stored as text."""
    value: str = Field(..., max_length=255)
    type: str = Field("string", description=f"One of: {', '.join(ATTRIBUTE_TYPES)}")

    @field_validator("type")
    @classmethod
    def known_type(cls, v: str) -> str:
        if v not in ATTRIBUTE_TYPES:
            raise ValueError(f"Type must be one of: {', '.join(ATTRIBUTE_TYPES)}")
        return v


class AttributeResponse(BaseModel):
    """Schema for a stored attribute and its coerced value."""
    key: str
    type: str
    raw: str
    value: Any

    @classmethod
    def from_value(cls, key: str, attribute: AttributeValue) -> "AttributeResponse":
        return cls(key=key, type=attribute.type, raw=attribute.raw, value=attribute.value)
