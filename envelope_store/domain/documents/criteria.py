"""Query criteria over plaintext and hashed document fields.

Criteria address fields of the stored document by dotted path
(``email.data``, ``roles``, ``identities``). They are evaluated in memory by
the memory store and compiled to JSONB expressions by the Postgres store.
Paths under ``sensitive`` are never valid: ciphertext is not queryable.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

OP_EQ = "eq"
OP_IN = "in"
OP_LT = "lt"
OP_GT = "gt"
OP_EXISTS_ANY = "exists_any"

SENSITIVE_FIELD = "sensitive"

_MISSING = object()


@dataclass(frozen=True)
class Condition:
    op: str
    field: str
    value: Any

    @property
    def path(self) -> List[str]:
        return self.field.split(".")


@dataclass(frozen=True)
class Criteria:
    conditions: Tuple[Condition, ...] = field(default_factory=tuple)

    def is_empty(self) -> bool:
        return not self.conditions

    def touches_ciphertext(self) -> bool:
        return any(c.path[0] == SENSITIVE_FIELD for c in self.conditions)

    def and_(self, other: Optional["Criteria"]) -> "Criteria":
        if other is None:
            return self
        return Criteria(self.conditions + other.conditions)

    def matches(self, document: Dict[str, Any]) -> bool:
        return all(_matches(c, document) for c in self.conditions)


class CriteriaBuilder:
    """Fluent builder. ``None`` or empty arguments add no condition."""

    def __init__(self):
        self._conditions: List[Condition] = []

    def is_equal_to(self, field_path: str, value: Any) -> "CriteriaBuilder":
        if value is not None:
            self._conditions.append(Condition(OP_EQ, field_path, value))
        return self

    def is_in(self, field_path: str, values: Optional[Iterable[Any]]) -> "CriteriaBuilder":
        if values:
            self._conditions.append(Condition(OP_IN, field_path, sorted(values, key=str)))
        return self

    def compare(
        self,
        field_path: str,
        before: Optional[datetime] = None,
        after: Optional[datetime] = None,
    ) -> "CriteriaBuilder":
        if before is not None:
            self._conditions.append(Condition(OP_LT, field_path, before))
        if after is not None:
            self._conditions.append(Condition(OP_GT, field_path, after))
        return self

    def exists_any(self, keys: Optional[Iterable[str]], field_path: str) -> "CriteriaBuilder":
        if keys:
            self._conditions.append(Condition(OP_EXISTS_ANY, field_path, sorted(keys)))
        return self

    def build(self) -> Criteria:
        return Criteria(tuple(self._conditions))


def resolve(document: Dict[str, Any], path: List[str]) -> Any:
    current: Any = document
    for part in path:
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def comparable(value: Any) -> Any:
    """Bring stored ISO timestamps and datetimes onto a common footing."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return value


def _matches(condition: Condition, document: Dict[str, Any]) -> bool:
    actual = resolve(document, condition.path)
    if actual is _MISSING or actual is None:
        return False

    if condition.op == OP_EQ:
        if isinstance(actual, list):
            return condition.value in actual
        return actual == condition.value

    if condition.op == OP_IN:
        candidates = actual if isinstance(actual, list) else [actual]
        return any(v in condition.value for v in candidates)

    if condition.op == OP_EXISTS_ANY:
        return isinstance(actual, dict) and any(k in actual for k in condition.value)

    try:
        if condition.op == OP_LT:
            return comparable(actual) < comparable(condition.value)
        if condition.op == OP_GT:
            return comparable(actual) > comparable(condition.value)
    except TypeError:
        return False

    raise ValueError(f"Unknown criteria operator: {condition.op}")
