"""Filter patterns that decide whether an event matches a rule."""

from __future__ import annotations

import ipaddress
import logging
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

from evbridge.event import EventExt, is_data_unmarshal_error, is_not_exists_val
from evbridge.rule import Matcher

log = logging.getLogger(__name__)

MatchFunc = Callable[[Any], bool]
MatchFuncFactory = Callable[[Any], MatchFunc]
EventMatchFunc = Callable[[EventExt], bool]

_match_functions: dict[str, MatchFuncFactory] = {}


def register_match_func(name: str, factory: MatchFuncFactory) -> None:
    """Make ``factory`` available under ``name`` inside filter patterns.

    The factory receives the spec given in the pattern and returns a function
    that tells whether a field value matches it.
    """
    _match_functions[name] = factory


def _factory(name: str) -> MatchFuncFactory:
    factory = _match_functions.get(name)
    if factory is None:
        raise ValueError(f"unknown match func(name={name})")
    return factory


def _value_key(value: Any) -> Optional[tuple[str, Any]]:
    """Key under which a JSON scalar compares; ``None`` for anything else."""
    if value is None:
        return ("null", None)
    if isinstance(value, bool):
        return ("bool", value)
    if isinstance(value, (int, float)):
        return ("number", float(value))
    if isinstance(value, str):
        return ("string", value)
    return None


def _same(spec: Any, value: Any) -> bool:
    key = _value_key(spec)
    return key is not None and key == _value_key(value)


def _is_scalar_spec(spec: Any) -> bool:
    return isinstance(spec, str) or (
        isinstance(spec, (int, float)) and not isinstance(spec, bool)
    )


def _type_name(value: Any) -> str:
    return type(value).__name__


def _value_set(items: Iterable[Any]) -> set[tuple[str, Any]]:
    values: set[tuple[str, Any]] = set()
    for item in items:
        key = _value_key(item)
        if key is None:
            raise ValueError(f"unexpect pattern value(type={_type_name(item)}, val={item!r})")
        values.add(key)
    return values


def _contains(values: set[tuple[str, Any]], value: Any) -> bool:
    if isinstance(value, list):
        return any(_value_key(item) in values for item in value)
    return _value_key(value) in values


def _group_by_name(patterns: Iterable[Mapping[str, Any]]) -> dict[str, list[MatchFunc]]:
    groups: dict[str, list[MatchFunc]] = {}
    for pattern in patterns:
        for name, spec in pattern.items():
            groups.setdefault(name, []).append(_factory(name)(spec))
    return groups


def _any_group_fails(groups: Mapping[str, Sequence[MatchFunc]], value: Any) -> bool:
    return any(not any(fc(value) for fc in fcs) for fcs in groups.values())


def _anything_but(spec: Any) -> MatchFunc:
    if _is_scalar_spec(spec):
        return lambda value: not _same(spec, value)

    if isinstance(spec, list):
        values = _value_set(item for item in spec if not isinstance(item, dict))
        groups = _group_by_name(item for item in spec if isinstance(item, dict))

        def match_list(value: Any) -> bool:
            if _contains(values, value):
                return False
            if not groups:
                return True
            return _any_group_fails(groups, value)

        return match_list

    if isinstance(spec, dict):
        if not spec:
            return lambda _value: True
        groups = _group_by_name([spec])
        return lambda value: _any_group_fails(groups, value)

    raise ValueError(f"anything-but unexpect pattern(type={_type_name(spec)}, val={spec!r})")


def _cidr(spec: Any) -> MatchFunc:
    if not isinstance(spec, str):
        raise ValueError(f"cidr spec(type={_type_name(spec)}, val={spec!r}) should be string")
    if "/" not in spec:
        raise ValueError(f"invalid CIDR address: {spec}")
    try:
        network = ipaddress.ip_network(spec, strict=False)
    except ValueError as err:
        raise ValueError(f"invalid CIDR address: {spec}") from err

    def match(value: Any) -> bool:
        if not isinstance(value, str):
            log.error("ip(type=%s, val=%r) should be string", _type_name(value), value)
            return False
        try:
            ip = ipaddress.ip_address(value)
        except ValueError:
            log.error("ipStr(%s) is not a valid textual representation of an IP address", value)
            return False
        if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
            ip = ip.ipv4_mapped
        if ip.version != network.version:
            return False
        return ip in network

    return match


def _exists(spec: Any) -> MatchFunc:
    if not isinstance(spec, bool):
        raise ValueError(f"exists spec(type={_type_name(spec)}, val={spec!r}) should be bool")
    if spec:
        return lambda value: not is_not_exists_val(value)
    return is_not_exists_val


_COMPARISONS: dict[str, Callable[[float, float], bool]] = {
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
    "=": lambda a, b: a == b,
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _numeric(spec: Any) -> MatchFunc:
    if not isinstance(spec, list):
        raise ValueError(f"numeric spec(type={_type_name(spec)}, val={spec!r}) should be array")
    if len(spec) < 2:
        return lambda _value: False

    checks: list[tuple[Callable[[float, float], bool], float]] = []
    for position, (operator, number) in enumerate(zip(spec[0::2], spec[1::2])):
        if not _is_number(number):
            raise ValueError(
                f"numeric spec should be compared with number, "
                f"not {_type_name(number)}(value={number!r})"
            )
        compare = _COMPARISONS.get(operator) if isinstance(operator, str) else None
        if compare is None:
            raise ValueError(f"unknown comparison operator {operator!r}(index={2 * position})")
        checks.append((compare, number))

    def match(value: Any) -> bool:
        if not _is_number(value):
            return False
        return all(compare(value, number) for compare, number in checks)

    return match


def _prefix(spec: Any) -> MatchFunc:
    if not isinstance(spec, str):
        raise ValueError(f"prefix spec(type={_type_name(spec)}, val={spec!r}) should be string")
    return lambda value: isinstance(value, str) and value.startswith(spec)


def _suffix(spec: Any) -> MatchFunc:
    if not isinstance(spec, str):
        raise ValueError(f"suffix spec(type={_type_name(spec)}, val={spec!r}) should be string")
    return lambda value: isinstance(value, str) and value.endswith(spec)


register_match_func("anything-but", _anything_but)
register_match_func("cidr", _cidr)
register_match_func("exists", _exists)
register_match_func("numeric", _numeric)
register_match_func("prefix", _prefix)
register_match_func("suffix", _suffix)

_MISSING = object()


def _field(event: EventExt, path: Sequence[str]) -> Any:
    """Look a field up; unreadable event data is logged and yields ``_MISSING``."""
    try:
        return event.get_field_by_path(path)
    except Exception as err:
        if is_data_unmarshal_error(err):
            log.error("%s", err)
            return _MISSING
        raise


def _parse_pattern(path: list[str], pattern: Any) -> EventMatchFunc:
    if _is_scalar_spec(pattern):

        def match_value(event: EventExt) -> bool:
            value = _field(event, path)
            return value is not _MISSING and _same(pattern, value)

        return match_value

    if isinstance(pattern, list):
        values = _value_set(item for item in pattern if not isinstance(item, dict))
        alternatives = [
            [_factory(name)(spec) for name, spec in item.items()]
            for item in pattern
            if isinstance(item, dict)
        ]

        def match_any(event: EventExt) -> bool:
            value = _field(event, path)
            if value is _MISSING:
                return False
            if _contains(values, value):
                return True
            return any(
                fcs and all(fc(value) for fc in fcs) for fcs in alternatives
            )

        return match_any

    if isinstance(pattern, dict):
        children = [_parse_pattern([*path, key], sub) for key, sub in pattern.items()]
        return lambda event: all(child(event) for child in children)

    raise ValueError(f"unexpect pattern(type={_type_name(pattern)}, val={pattern!r})")


class PatternMatcher(Matcher):
    """Matches events against a parsed filter pattern."""

    def __init__(self, match: EventMatchFunc) -> None:
        self._match = match

    def pattern(self, event: EventExt) -> bool:
        """Tell whether ``event`` matches the filter pattern."""
        return self._match(event)


def new_matcher(filter_pattern: Mapping[str, Any]) -> PatternMatcher:
    """Build a matcher from a decoded filter pattern; an empty pattern matches nothing.

    Raises ValueError when the pattern is malformed.
    """
    if not filter_pattern:
        return PatternMatcher(lambda _event: False)
    return PatternMatcher(_parse_pattern([], dict(filter_pattern)))