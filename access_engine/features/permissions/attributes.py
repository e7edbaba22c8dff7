"""
Typed attribute store for ABAC.

Attributes are stored as raw strings with a type tag (string, number, boolean,
date). Reads coerce by tag and never fail: a value that does not parse under
its tag degrades to the raw string. Dates are kept as raw strings here and only
compared as dates by the condition evaluator.

The store is copy-on-write: writers build a new snapshot under a lock and
publish it with one reference swap, so readers never see a half-applied write.
"""
import json
import math
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from access_engine.core.exceptions import AttributeNotFoundError


ATTRIBUTE_TYPES = ("string", "number", "boolean", "date")


def _reject_constant(token: str) -> Any:
    raise ValueError(f"Non-standard JSON constant {token!r}")


def _parse_json_literal(raw: str) -> Any:
    return json.loads(raw, parse_constant=_reject_constant)


def coerce_number(raw: str) -> float | str:
    """Parse a JSON number as float, or return the raw string."""
    try:
        parsed = _parse_json_literal(raw)
    except (ValueError, TypeError, RecursionError):
        return raw
    if isinstance(parsed, bool) or not isinstance(parsed, (int, float)):
        return raw
    number = float(parsed)
    if not math.isfinite(number):
        return raw
    return number


def coerce_boolean(raw: str) -> bool | str:
    """Parse a JSON boolean (true/false), or return the raw string."""
    try:
        parsed = _parse_json_literal(raw)
    except (ValueError, TypeError, RecursionError):
        return raw
    if not isinstance(parsed, bool):
        return raw
    return parsed


def coerce_value(type_tag: str, raw: str) -> Any:
    """Coerce a raw stored value by its type tag. Never raises."""
    if type_tag == "number":
        return coerce_number(raw)
    if type_tag == "boolean":
        return coerce_boolean(raw)
    return raw


@dataclass(frozen=True)
class AttributeValue:
    """A stored attribute: type tag, raw text and the coerced value."""

    type: str
    raw: str
    value: Any = field(init=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", coerce_value(self.type, self.raw))


@dataclass(frozen=True)
class AttributeRecord:
    """One persisted attribute row, as loaded from storage."""

    owner_id: int
    key: str
    raw: str
    type: str = "string"


_EMPTY: Mapping[str, AttributeValue] = MappingProxyType({})


class AttributeSnapshot:
    """Immutable view of every owner's attributes at one point in time."""

    def __init__(self, owners: Mapping[int, Mapping[str, AttributeValue]]):
        self._owners = owners

    def get_typed(self, owner_id: int, key: str) -> AttributeValue:
        try:
            return self._owners.get(owner_id, _EMPTY)[key]
        except KeyError:
            raise AttributeNotFoundError(f"Attribute {key!r} not found for owner {owner_id}") from None

    def get(self, owner_id: int, key: str) -> Any:
        return self.get_typed(owner_id, key).value

    def get_all_typed(self, owner_id: int) -> Mapping[str, AttributeValue]:
        return self._owners.get(owner_id, _EMPTY)

    def get_all(self, owner_id: int) -> dict[str, Any]:
        return {key: attr.value for key, attr in self.get_all_typed(owner_id).items()}

    def owners(self) -> list[int]:
        return sorted(self._owners)


class AttributeStore:
    """
    Attribute store for one scope ("user" or "resource").

    Usage:
        store = AttributeStore("user")
        store.set(7, "department", "IT")
        store.set(7, "level", "3", "number")
        store.get(7, "level")  # 3.0
    """

    def __init__(self, scope: str, records: Iterable[AttributeRecord] = ()):
        self.scope = scope
        self._lock = threading.Lock()
        self._snapshot = AttributeSnapshot(MappingProxyType({}))
        self.load(records)

    def snapshot(self) -> AttributeSnapshot:
        return self._snapshot

    def get(self, owner_id: int, key: str) -> Any:
        """Return the coerced value, or raise AttributeNotFoundError."""
        return self._snapshot.get(owner_id, key)

    def get_all(self, owner_id: int) -> dict[str, Any]:
        """Return key -> coerced value for an owner (empty if unknown)."""
        return self._snapshot.get_all(owner_id)

    def load(self, records: Iterable[AttributeRecord]) -> None:
        """Replace the whole store with the given records."""
        owners: dict[int, dict[str, AttributeValue]] = {}
        for record in records:
            owners.setdefault(record.owner_id, {})[record.key] = AttributeValue(record.type, record.raw)
        frozen = {owner: MappingProxyType(attrs) for owner, attrs in owners.items()}
        with self._lock:
            self._snapshot = AttributeSnapshot(MappingProxyType(frozen))

    def set(self, owner_id: int, key: str, raw: str, type_tag: str = "string") -> AttributeValue:
        """Create or update one attribute."""
        value = AttributeValue(type_tag, raw)
        with self._lock:
            self._publish(owner_id, lambda attrs: attrs.__setitem__(key, value))
        return value

    def delete(self, owner_id: int, key: str) -> None:
        with self._lock:
            if key not in self._snapshot.get_all_typed(owner_id):
                raise AttributeNotFoundError(f"Attribute {key!r} not found for owner {owner_id}")
            self._publish(owner_id, lambda attrs: attrs.pop(key))

    def drop_owner(self, owner_id: int) -> None:
        """Forget every attribute of an owner."""
        with self._lock:
            self._publish(owner_id, lambda attrs: attrs.clear())

    def _publish(self, owner_id: int, mutate) -> None:
        # Caller holds self._lock
        owners = dict(self._snapshot._owners)
        attrs = dict(owners.get(owner_id, _EMPTY))
        mutate(attrs)
        if attrs:
            owners[owner_id] = MappingProxyType(attrs)
        else:
            owners.pop(owner_id, None)
        self._snapshot = AttributeSnapshot(MappingProxyType(owners))
