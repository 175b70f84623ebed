"""
Field resolvers: ordered fallback chains over untyped event payloads.

The live source does not name fields consistently across SDK versions
(`message` vs `comment`, `diamondCount` vs `diamond_count`, user data at
the top level or nested under `user`). Each canonical field is resolved by
a FieldResolver: an ordered list of strategies, the first one that yields a
usable value wins, otherwise the resolver's default is returned.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

Strategy = Callable[[Mapping[str, Any]], Any]


def is_present(value: Any) -> bool:
    """None and empty strings count as missing; 0 and False do not."""
    if value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    return True


def nested(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key)
    return value if isinstance(value, Mapping) else {}


def from_key(key: str, scope: Optional[str] = None) -> Strategy:
    """Strategy reading `key` at the top level or inside the `scope` mapping."""
    if scope is None:
        def strategy(data):
            return data.get(key)
        strategy.__name__ = f"from_key[{key}]"
    else:
        def strategy(data):
            return nested(data, scope).get(key)
        strategy.__name__ = f"from_key[{scope}.{key}]"
    return strategy


@dataclass
class FieldResolver:
    name: str
    strategies: list[Strategy] = field(default_factory=list)
    default: Any = None
    accept: Callable[[Any], bool] = is_present

    def resolve(self, data: Mapping[str, Any]) -> Any:
        for strategy in self.strategies:
            try:
                value = strategy(data)
            except (KeyError, IndexError, TypeError, AttributeError):
                continue
            if self.accept(value):
                return value
        return self.default

    @classmethod
    def from_keys(cls, name: str, keys: list[str], default: Any = None,
                  scopes: tuple = (None,), accept: Callable[[Any], bool] = is_present):
        """Build a resolver that checks `keys` in order, in each scope in order."""
        strategies = [from_key(key, scope) for scope in scopes for key in keys]
        return cls(name=name, strategies=strategies, default=default, accept=accept)


# --- Value coercion ---

def coerce_int(value: Any) -> Optional[int]:
    """Integer value of numbers and numeric strings; None for anything else."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            return int(float(value.strip()))
        except (ValueError, OverflowError):
            return None
    return None


def coerce_positive_int(value: Any, default: int = 1) -> int:
    number = coerce_int(value)
    if number is None or number < 1:
        return default
    return number


def is_non_negative_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value >= 0


def parse_timestamp_ms(value: Any) -> Optional[int]:
    """
    Epoch milliseconds from the timestamp shapes the sources emit:
    epoch-ms numbers, numeric strings, ISO-8601 strings and datetimes.
    Returns None when the value cannot be interpreted.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, (int, float)):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        number = coerce_int(text)
        if number is not None:
            return number
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return parse_timestamp_ms(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


# --- Shared identity resolvers ---

ACTOR_ID = FieldResolver.from_keys(
    "actor_id", ["userId", "uniqueId", "username"], scopes=(None, "user"),
)

TIMESTAMP = FieldResolver(
    "timestamp_ms",
    strategies=[
        lambda data: parse_timestamp_ms(data.get("timestamp")),
        lambda data: parse_timestamp_ms(data.get("createTime")),
    ],
)
