"""
ABAC condition evaluation.

A condition set is a list of clauses, implicitly AND-ed. Each clause compares
one attribute from a scope (user, resource, environment) against either a
literal value or another attribute:

    {"scope": "user", "key": "level", "comparator": "gte", "value": 3}
    {"scope": "user", "key": "department", "comparator": "eq",
     "value_from": {"scope": "resource", "key": "department"}}
    {"scope": "environment", "key": "client_ip", "comparator": "in_cidr",
     "value": "192.168.1.0/24"}

Evaluation is fail-closed and total: a missing attribute, an unparseable
operand or a type mismatch makes the clause false, never an exception.
"""
import ipaddress
from datetime import date, datetime, time, timezone
from typing import Any, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, model_validator

from access_engine.features.permissions.attributes import AttributeValue
from access_engine.utils import get_logger


log = get_logger(__name__)


Scope = Literal["user", "resource", "environment"]
Comparator = Literal[
    "eq", "ne", "gt", "gte", "lt", "lte",
    "in", "not_in", "contains", "starts_with", "ends_with",
    "in_cidr", "time_between",
]

# Keys of the condition document stored by older clients
_LEGACY_SCOPES: dict[str, Scope] = {
    "user_attributes": "user",
    "resource_attributes": "resource",
    "environment": "environment",
}


# ============================================================================
# Condition Models
# ============================================================================

class AttributeRef(BaseModel):
    """Reference to an attribute in one of the three scopes."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    scope: Scope
    key: str


class ConditionClause(BaseModel):
    """One scope/key/comparator/value comparison."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    scope: Scope
    key: str
    comparator: Comparator = "eq"
    value: Any = None
    value_from: Optional[AttributeRef] = None

    @model_validator(mode="after")
    def one_right_hand_side(self) -> "ConditionClause":
        if self.value_from is not None and self.value is not None:
            raise ValueError("A clause takes either 'value' or 'value_from', not both")
        return self


class Conditions(BaseModel):
    """AND-ed set of clauses. An empty set always holds."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    clauses: tuple[ConditionClause, ...] = ()

    @classmethod
    def parse(cls, document: Any) -> Optional["Conditions"]:
        """
        Build conditions from a stored document.

        Accepts None/{} (unconditional), {"clauses": [...]}, a bare list of
        clauses, or the legacy {"user_attributes": {...},
        "resource_attributes": {...}, "environment": {...}} equality maps.

        Raises:
            ValueError: if the document is malformed or uses an expression
        """
        if not document:
            return None
        if isinstance(document, Conditions):
            return document
        if isinstance(document, list):
            return cls(clauses=tuple(ConditionClause.model_validate(c) for c in document))
        if not isinstance(document, dict):
            raise ValueError(f"Unsupported conditions document: {type(document).__name__}")
        if "clauses" in document:
            unknown = set(document) - {"clauses"}
            if unknown:
                raise ValueError(f"Unknown condition keys next to 'clauses': {sorted(unknown)}")
            return cls.model_validate(document)

        if document.get("expression"):
            raise ValueError("Condition expressions are not supported; use clauses")
        clauses = []
        for legacy_key, scope in _LEGACY_SCOPES.items():
            section = document.get(legacy_key) or {}
            if not isinstance(section, dict):
                raise ValueError(f"'{legacy_key}' must be an object")
            for key, expected in section.items():
                clauses.append(ConditionClause(scope=scope, key=key, comparator="eq", value=expected))
        unknown = set(document) - set(_LEGACY_SCOPES) - {"expression"}
        if unknown:
            raise ValueError(f"Unknown condition keys: {sorted(unknown)}")
        return cls(clauses=tuple(clauses))

    def to_document(self) -> dict[str, Any]:
        return {"clauses": [c.model_dump(exclude_none=True) for c in self.clauses]}


# ============================================================================
# Evaluation
# ============================================================================

_MISSING = object()


def evaluate(
    conditions: Optional[Conditions],
    user_attrs: Optional[Mapping[str, Any]] = None,
    resource_attrs: Optional[Mapping[str, Any]] = None,
    environment: Optional[Mapping[str, Any]] = None,
) -> bool:
    """
    Evaluate a condition set against the request's attributes.

    Args:
        conditions: Clauses to check; None or empty means unconditional
        user_attrs: User attributes (AttributeValue or plain values)
        resource_attrs: Resource attributes (AttributeValue or plain values)
        environment: Request context (client IP, time of day, ...)

    Returns:
        True only if every clause holds
    """
    if conditions is None or not conditions.clauses:
        return True

    scopes: dict[str, Mapping[str, Any]] = {
        "user": user_attrs or {},
        "resource": resource_attrs or {},
        "environment": environment or {},
    }
    for clause in conditions.clauses:
        if not _evaluate_clause(clause, scopes):
            log.debug("Condition failed: %s.%s %s", clause.scope, clause.key, clause.comparator)
            return False
    return True


def _lookup(scopes: Mapping[str, Mapping[str, Any]], scope: str, key: str) -> tuple[Any, Optional[str]]:
    raw = scopes[scope].get(key, _MISSING)
    if isinstance(raw, AttributeValue):
        return raw.value, raw.type
    return raw, None


def _evaluate_clause(clause: ConditionClause, scopes: Mapping[str, Mapping[str, Any]]) -> bool:
    left, left_type = _lookup(scopes, clause.scope, clause.key)
    if left is _MISSING:
        return False
    right_type = None
    if clause.value_from is not None:
        right, right_type = _lookup(scopes, clause.value_from.scope, clause.value_from.key)
        if right is _MISSING:
            return False
    else:
        right = clause.value

    try:
        return _COMPARATORS[clause.comparator](left, right, left_type or right_type)
    except (TypeError, ValueError, AttributeError) as e:
        log.debug("Condition %s on %r could not be compared: %s", clause.comparator, clause.key, e)
        return False


# ============================================================================
# Typed comparison
# ============================================================================

def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value in ("true", "false"):
        return value == "true"
    return None


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _is_date(value: Any, type_tag: Optional[str]) -> bool:
    return type_tag == "date" or isinstance(value, (date, datetime))


def _normalize(left: Any, right: Any, type_tag: Optional[str]) -> tuple[Any, Any]:
    """Bring both operands to the left operand's type, falling back to strings."""
    if isinstance(left, bool):
        converted = _as_bool(right)
        if converted is not None:
            return left, converted
    elif isinstance(left, (int, float)):
        converted = _as_number(right)
        if converted is not None:
            return float(left), converted
    elif isinstance(right, (int, float)) and not isinstance(right, bool) and _as_number(left) is not None:
        return _as_number(left), float(right)
    elif _is_date(left, type_tag) or _is_date(right, type_tag):
        left_dt, right_dt = _as_datetime(left), _as_datetime(right)
        if left_dt is not None and right_dt is not None:
            return left_dt, right_dt
    return _to_text(left), _to_text(right)


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _equals(left: Any, right: Any, type_tag: Optional[str]) -> bool:
    if left is None or right is None:
        return left is right
    a, b = _normalize(left, right, type_tag)
    return a == b


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _ordered(op):
    def compare(left: Any, right: Any, type_tag: Optional[str]) -> bool:
        if right is None:
            return False
        a, b = _normalize(left, right, type_tag)
        if isinstance(a, str) and (_is_number(left) or _is_number(right)):
            raise TypeError("Cannot order a number against text")
        return op(a, b)
    return compare


def _member(left: Any, right: Any, type_tag: Optional[str]) -> bool:
    if not isinstance(right, (list, tuple, set, frozenset)):
        raise TypeError("'in' expects a list of values")
    return any(_equals(left, candidate, type_tag) for candidate in right)


def _not_member(left: Any, right: Any, type_tag: Optional[str]) -> bool:
    return not _member(left, right, type_tag)


def _contains(left: Any, right: Any, type_tag: Optional[str]) -> bool:
    if isinstance(left, str):
        return _to_text(right) in left
    if isinstance(left, (list, tuple, set, frozenset)):
        return any(_equals(item, right, type_tag) for item in left)
    return False


def _starts_with(left: Any, right: Any, type_tag: Optional[str]) -> bool:
    return isinstance(left, str) and right is not None and left.startswith(_to_text(right))


def _ends_with(left: Any, right: Any, type_tag: Optional[str]) -> bool:
    return isinstance(left, str) and right is not None and left.endswith(_to_text(right))


def _in_cidr(left: Any, right: Any, type_tag: Optional[str]) -> bool:
    address = ipaddress.ip_address(str(left))
    networks = right if isinstance(right, (list, tuple)) else [right]
    return any(address in ipaddress.ip_network(str(n), strict=False) for n in networks)


def _time_of_day(value: Any) -> time:
    if isinstance(value, datetime):
        return value.time().replace(second=0, microsecond=0)
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0)
    return datetime.strptime(str(value).strip(), "%H:%M").time()


def _time_between(left: Any, right: Any, type_tag: Optional[str]) -> bool:
    if isinstance(right, str):
        start_text, _, end_text = right.partition("-")
    elif isinstance(right, (list, tuple)) and len(right) == 2:
        start_text, end_text = right
    else:
        raise ValueError("time_between expects 'HH:MM-HH:MM' or [start, end]")
    current = _time_of_day(left)
    start, end = _time_of_day(start_text), _time_of_day(end_text)
    if start <= end:
        return start <= current <= end
    # Window wraps past midnight, e.g. 22:00-06:00
    return current >= start or current <= end


_COMPARATORS = {
    "eq": _equals,
    "ne": lambda left, right, tag: not _equals(left, right, tag),
    "gt": _ordered(lambda a, b: a > b),
    "gte": _ordered(lambda a, b: a >= b),
    "lt": _ordered(lambda a, b: a < b),
    "lte": _ordered(lambda a, b: a <= b),
    "in": _member,
    "not_in": _not_member,
    "contains": _contains,
    "starts_with": _starts_with,
    "ends_with": _ends_with,
    "in_cidr": _in_cidr,
    "time_between": _time_between,
}
