"""Transformers that reshape an event into the payload a target expects."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional, Sequence

from evbridge.event import Event, EventExt, is_not_exists_val
from evbridge.rule import Target, Transformer

TransformFunc = Callable[[EventExt], Any]
TransformFuncFactory = Callable[[str, Optional[str]], TransformFunc]

_transform_functions: dict[str, TransformFuncFactory] = {}


def register_transform_func(name: str, factory: TransformFuncFactory) -> None:
    """Make ``factory`` available as the form ``name`` of a target parameter.

    The factory receives the parameter's value and template and returns a
    function that computes the parameter from an event.
    """
    _transform_functions[name] = factory


def _rfc3339(moment: datetime) -> str:
    moment = (
        moment.astimezone(timezone.utc)
        if moment.tzinfo
        else moment.replace(tzinfo=timezone.utc)
    )
    text = (
        f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d}"
        f"T{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}"
    )
    fraction = f"{moment.microsecond:06d}".rstrip("0")
    if fraction:
        text += f".{fraction}"
    return text + "Z"


def _json_default(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return _rfc3339(obj)
    if isinstance(obj, Event):
        return obj.to_dict()
    raise TypeError(f"value of type {type(obj).__name__} is not JSON serializable")


def _dumps(obj: Any) -> str:
    return json.dumps(
        obj,
        ensure_ascii=False,
        separators=(",", ":"),
        sort_keys=True,
        default=_json_default,
    )


def _constant(value: str, _template: Optional[str]) -> TransformFunc:
    return lambda _event: value


def _split_jsonpath(value: str) -> list[str]:
    path = value.split(".")
    if path and path[0] == "$":
        path = path[1:]
    return path


def _jsonpath(value: str, _template: Optional[str]) -> TransformFunc:
    path = _split_jsonpath(value)

    def fetch(event: EventExt) -> Any:
        result = event.get_field_by_path(path)
        return None if is_not_exists_val(result) else result

    return fetch


def _template_fetchers(value: str) -> dict[str, TransformFunc]:
    if not value:
        return {}
    values = json.loads(value)
    if values is None:
        return {}
    if not isinstance(values, dict):
        raise ValueError("transformer(TEMPLATE) value should be a JSON object")
    fetchers: dict[str, TransformFunc] = {}
    for key, path in values.items():
        trimmed = key.strip()
        if not isinstance(path, str):
            raise ValueError(
                f"transformer(TEMPLATE) value.{trimmed}(value={path!r}, "
                f"type={type(path).__name__}) should be string"
            )
        fetchers[trimmed] = _jsonpath(path, None)
    return fetchers


def _parse_template(
    template: str, fetchers: Mapping[str, TransformFunc]
) -> tuple[list[Any], str]:
    """Split a template into literal text and fetchers.

    Also returns a stand-in text in which every unquoted variable is replaced
    by ``1`` so that the JSON syntax of the template can be checked up front.
    """
    parts: list[Any] = []
    checkable: list[str] = []
    start = 0
    while True:
        begin = template.find("${", start)
        if begin == -1:
            break
        if begin > start:
            literal = template[start:begin]
            parts.append(literal)
            checkable.append(literal)
        close = template.find("}", begin)
        if close == -1:
            raise ValueError("template variables that start with ${ must have an } at the end")
        variable = template[begin:close]
        name = variable[2:].strip()
        fetch = fetchers.get(name)
        if fetch is None:
            raise ValueError(f"template variable(key={name}) not found")
        parts.append(fetch)
        if begin > 0 and template[begin - 1] == '"':
            checkable.append(variable + "}")
        else:
            checkable.append("1")
        start = close + 1
    if start < len(template):
        literal = template[start:]
        parts.append(literal)
        checkable.append(literal)
    return parts, "".join(checkable)


def _template(value: str, template: Optional[str]) -> TransformFunc:
    if not template:
        return lambda _event: None

    fetchers = _template_fetchers(value)
    parts, checkable = _parse_template(template, fetchers)
    try:
        json.loads(checkable)
    except ValueError as err:
        raise ValueError(f"template syntax err: {err}") from err

    def render(event: EventExt) -> Any:
        pieces: list[str] = []
        for part in parts:
            if isinstance(part, str):
                pieces.append(part)
                continue
            result = part(event)
            pieces.append(result if isinstance(result, str) else _dumps(result))
        return json.loads("".join(pieces))

    return render


register_transform_func("CONSTANT", _constant)
register_transform_func("JSONPATH", _jsonpath)
register_transform_func("TEMPLATE", _template)


class EventTransformer(Transformer):
    """Replaces the data of an event with the payload its target's parameters describe."""

    def __init__(self, functions: Mapping[str, TransformFunc]) -> None:
        self._functions = dict(functions)

    def transform(self, event: EventExt) -> EventExt:
        """Rewrite ``event.event.data`` in place and return the event.

        With no parameters the data becomes the whole event in JSON form.
        """
        if not self._functions:
            event.event.data = event.event.to_json()
            return event
        transformed = {key: fetch(event) for key, fetch in self._functions.items()}
        event.event.data = _dumps(transformed)
        return event


def new_transformer(target: Target) -> EventTransformer:
    """Build the transformer of ``target``; raise ValueError on a bad parameter."""
    functions: dict[str, TransformFunc] = {}
    params: Sequence[Any] = target.params
    for param in params:
        factory = _transform_functions.get(param.form)
        if factory is None:
            raise ValueError(f"unknown transformer(form={param.form})")
        functions[param.key] = factory(param.value, param.template)
    return EventTransformer(functions)