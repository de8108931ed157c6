from __future__ import annotations

import ipaddress
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from app.domain.models import ensure_utc, now_utc


class ConditionError(ValueError):
    pass


COMPARATORS = frozenset(
    {
        "eq",
        "ne",
        "in",
        "not_in",
        "contains",
        "not_contains",
        "gt",
        "gte",
        "lt",
        "lte",
        "between",
        "not_between",
        "cidr",
        "not_cidr",
    }
)

CONTEXT_KEYS = frozenset(
    {
        "user_id",
        "tenant_id",
        "branch_id",
        "resource_id",
        "ip_address",
        "roles",
        "now",
        "hour",
        "weekday",
    }
)

KEY_ALIASES = {"agency_id": "tenant_id"}
RANGE_COMPARATORS = frozenset({"between", "not_between"})
LIST_COMPARATORS = frozenset({"in", "not_in", "cidr", "not_cidr"})


@dataclass(frozen=True)
class ConditionContext:
    user_id: str | None = None
    tenant_id: str | None = None
    branch_id: str | None = None
    resource_id: str | None = None
    ip_address: str | None = None
    roles: frozenset[str] = frozenset()
    now: datetime = field(default_factory=now_utc)

    def value_for(self, key: str) -> Any:
        if key == "hour":
            return self.now.hour
        if key == "weekday":
            return self.now.weekday()
        if key == "roles":
            return self.roles
        return getattr(self, key)


@dataclass(frozen=True)
class Condition:
    key: str
    comparator: str
    value: Any


def _parse_time(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return ensure_utc(raw)
    if not isinstance(raw, str):
        raise ConditionError(f"invalid timestamp: {raw!r}")
    try:
        return ensure_utc(datetime.fromisoformat(raw))
    except ValueError as exc:
        raise ConditionError(f"invalid timestamp: {raw!r}") from exc


def _parse_networks(raw: Any) -> tuple[ipaddress.IPv4Network | ipaddress.IPv6Network, ...]:
    values = raw if isinstance(raw, list | tuple) else [raw]
    networks = []
    for item in values:
        if not isinstance(item, str):
            raise ConditionError(f"invalid network: {item!r}")
        try:
            networks.append(ipaddress.ip_network(item.strip(), strict=False))
        except ValueError as exc:
            raise ConditionError(f"invalid network: {item!r}") from exc
    return tuple(networks)


def _normalize_value(key: str, comparator: str, raw: Any) -> Any:
    if comparator in {"cidr", "not_cidr"}:
        return _parse_networks(raw)
    if comparator in RANGE_COMPARATORS:
        if not isinstance(raw, list | tuple) or len(raw) != 2:
            raise ConditionError(f"{comparator} on {key} expects [start, end]")
        if key == "now":
            return (_parse_time(raw[0]), _parse_time(raw[1]))
        return (raw[0], raw[1])
    if comparator in LIST_COMPARATORS:
        if not isinstance(raw, list | tuple):
            raise ConditionError(f"{comparator} on {key} expects a list")
        return tuple(raw)
    if key == "now":
        return _parse_time(raw)
    return raw


def _legacy_conditions(key: str, raw: Any) -> list[Condition] | None:
    if key == "time_range":
        if not isinstance(raw, Mapping) or "start" not in raw or "end" not in raw:
            raise ConditionError("time_range expects {start, end}")
        return [Condition("now", "between", (_parse_time(raw["start"]), _parse_time(raw["end"])))]
    if key == "blocked_ips":
        return [Condition("ip_address", "cidr", _parse_networks(raw))]
    if key == "allowed_ips":
        return [Condition("ip_address", "not_cidr", _parse_networks(raw))]
    if key == "allowed_hours":
        if not isinstance(raw, Mapping) or "start" not in raw or "end" not in raw:
            raise ConditionError("allowed_hours expects {start, end}")
        start, end = raw["start"], raw["end"]
        if not all(isinstance(item, int) and 0 <= item <= 24 for item in (start, end)):
            raise ConditionError("allowed_hours bounds must be hours between 0 and 24")
        if start > end:
            # overnight window, so outside it is the daytime gap
            return [Condition("hour", "between", (end, start))]
        return [Condition("hour", "not_between", (start, end))]
    if key == "allowed_weekdays":
        if not isinstance(raw, list | tuple):
            raise ConditionError("allowed_weekdays expects a list")
        return [Condition("weekday", "not_in", tuple(raw))]
    return None


def parse_conditions(conditions: Mapping[str, Any] | None) -> tuple[Condition, ...]:
    if not conditions:
        return ()
    if not isinstance(conditions, Mapping):
        raise ConditionError("conditions must be an object")

    parsed: list[Condition] = []
    for raw_key, raw_value in conditions.items():
        legacy = _legacy_conditions(raw_key, raw_value)
        if legacy is not None:
            parsed.extend(legacy)
            continue

        key = KEY_ALIASES.get(raw_key, raw_key)
        if key not in CONTEXT_KEYS:
            raise ConditionError(f"unknown condition key: {raw_key}")

        if isinstance(raw_value, Mapping):
            comparator = raw_value.get("op")
            if comparator not in COMPARATORS:
                raise ConditionError(f"unknown comparator for {raw_key}: {comparator!r}")
            if "value" not in raw_value:
                raise ConditionError(f"missing value for {raw_key}")
            value = raw_value["value"]
        elif isinstance(raw_value, list | tuple):
            comparator = "in"
            value = raw_value
        else:
            comparator = "eq"
            value = raw_value
        parsed.append(Condition(key, comparator, _normalize_value(key, comparator, value)))
    return tuple(parsed)


def validate_conditions(conditions: Mapping[str, Any] | None) -> None:
    parse_conditions(conditions)


def _in_networks(actual: Any, networks: tuple[Any, ...]) -> bool | None:
    try:
        address = ipaddress.ip_address(str(actual).strip())
    except ValueError:
        return None
    return any(address in network for network in networks if network.version == address.version)


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        return isinstance(expected, str) and expected in actual
    try:
        return expected in actual
    except TypeError:
        return False


def _ordered(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def _compare(actual: Any, expected: Any) -> bool:
        try:
            return op(actual, expected)
        except TypeError:
            return False

    return _compare


_SIMPLE: dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda actual, expected: actual == expected,
    "ne": lambda actual, expected: actual != expected,
    "in": lambda actual, expected: actual in expected,
    "not_in": lambda actual, expected: actual not in expected,
    "contains": _contains,
    "not_contains": lambda actual, expected: not _contains(actual, expected),
    "gt": _ordered(lambda actual, expected: actual > expected),
    "gte": _ordered(lambda actual, expected: actual >= expected),
    "lt": _ordered(lambda actual, expected: actual < expected),
    "lte": _ordered(lambda actual, expected: actual <= expected),
    "between": _ordered(lambda actual, expected: expected[0] <= actual < expected[1]),
    "not_between": _ordered(lambda actual, expected: not expected[0] <= actual < expected[1]),
}


def evaluate_condition(condition: Condition, ctx: ConditionContext) -> bool:
    actual = ctx.value_for(condition.key)
    if actual is None:
        return False
    if condition.comparator in {"cidr", "not_cidr"}:
        inside = _in_networks(actual, condition.value)
        if inside is None:
            return False
        return inside if condition.comparator == "cidr" else not inside
    if condition.key == "now" and condition.comparator == "between":
        start, end = condition.value
        return start <= actual <= end
    return _SIMPLE[condition.comparator](actual, condition.value)


def evaluate_conditions(conditions: Mapping[str, Any] | None, ctx: ConditionContext) -> bool:
    return all(evaluate_condition(item, ctx) for item in parse_conditions(conditions))
