"""Events flowing through the bus, their routing envelope and field lookup."""

from __future__ import annotations

import enum
import ipaddress
import json
import os
import re
import socket
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional, Sequence

import jsonschema

_UTC = timezone.utc
_EPOCH = datetime(1970, 1, 1, tzinfo=_UTC)

EVENT_ID_EPOCH = datetime(2022, 8, 10, tzinfo=_UTC)

_TIME_RE = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})(?:\.(\d{1,9}))?([Zz]|[+-]\d{2}:\d{2})"
)
_INDEX_RE = re.compile(r"[+-]?\d+")
_UINT64_LIMIT = 1 << 64


class RetryStrategy(enum.IntEnum):
    """How a failed delivery of an event is retried."""

    UNSPECIFIED = 0
    BACKOFF = 1
    EXPONENTIAL_DECAY = 2

    @property
    def wire_name(self) -> str:
        return f"RETRY_STRATEGY_{self.name}"

    @classmethod
    def parse(cls, value: Any) -> RetryStrategy:
        if isinstance(value, str):
            for member in cls:
                if value in (member.wire_name, member.name):
                    return member
            raise ValueError(f"unknown retry strategy {value!r}")
        if isinstance(value, int) and not isinstance(value, bool):
            try:
                return cls(value)
            except ValueError:
                raise ValueError(f"unknown retry strategy {value!r}") from None
        raise ValueError(f"retry strategy must be a name or a number, not {value!r}")


class _NotExists:
    """Marker for a field that an event does not have."""

    def __repr__(self) -> str:
        return "NOT_EXISTS"


NOT_EXISTS = _NotExists()


def is_not_exists_val(val: Any) -> bool:
    """Tell whether ``val`` is the marker for a missing field."""
    return val is NOT_EXISTS


class DataUnmarshalError(ValueError):
    """The data of an event is not valid JSON."""

    def __init__(self, err: BaseException) -> None:
        super().__init__(f"event data unmarshal err: {err}")
        self.err = err


class EventDataNotValidError(ValueError):
    """The data of an event does not satisfy its schema."""

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors = list(errors)
        super().__init__(f"event data is not valid. see err: [{' '.join(self.errors)}]")


def is_data_unmarshal_error(err: Optional[BaseException]) -> bool:
    """Tell whether ``err`` is, or was raised from, a :class:`DataUnmarshalError`."""
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        if isinstance(err, DataUnmarshalError):
            return True
        seen.add(id(err))
        err = err.__cause__
    return False


def _format_time(moment: datetime) -> str:
    moment = moment.astimezone(_UTC) if moment.tzinfo else moment.replace(tzinfo=_UTC)
    text = (
        f"{moment.year:04d}-{moment.month:02d}-{moment.day:02d}"
        f"T{moment.hour:02d}:{moment.minute:02d}:{moment.second:02d}"
    )
    micro = moment.microsecond
    if micro:
        text += f".{micro // 1000:03d}" if micro % 1000 == 0 else f".{micro:06d}"
    return text + "Z"


def _parse_time(text: str) -> datetime:
    match = _TIME_RE.fullmatch(text)
    if match is None:
        raise ValueError(f"invalid timestamp {text!r}")
    year, month, day, hour, minute, second = (int(g) for g in match.groups()[:6])
    micro = int((match.group(7) or "")[:6].ljust(6, "0"))
    zone = match.group(8)
    if zone in ("Z", "z"):
        tz = _UTC
    else:
        offset = timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6]))
        tz = timezone(offset if zone[0] == "+" else -offset)
    return datetime(year, month, day, hour, minute, second, micro, tzinfo=tz).astimezone(_UTC)


def _uint64(value: Any, name: str) -> int:
    if isinstance(value, str) and value.isdigit() and value.isascii():
        number = int(value)
    elif isinstance(value, int) and not isinstance(value, bool):
        number = value
    elif isinstance(value, float) and value.is_integer():
        number = int(value)
    else:
        raise ValueError(f"field {name!r} must be an unsigned integer, not {value!r}")
    if not 0 <= number < _UINT64_LIMIT:
        raise ValueError(f"field {name!r} is out of range: {number}")
    return number


def _string(value: Any, name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"field {name!r} must be a string, not {value!r}")
    return value


def _reject_duplicates(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in pairs:
        if key in result:
            raise ValueError(f"duplicate object member name {key!r}")
        result[key] = value
    return result


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid literal {name}")


def _loads_strict(text: str) -> Any:
    return json.loads(text, object_pairs_hook=_reject_duplicates, parse_constant=_reject_constant)


_EVENT_FIELDS = ("id", "source", "subject", "type", "time", "data", "datacontenttype")


@dataclass
class Event:
    """A single event as published to the bus."""

    id: int = 0
    source: str = ""
    subject: Optional[str] = None
    type: str = ""
    time: Optional[datetime] = None
    data: str = ""
    datacontenttype: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form; fields holding their default value are left out."""
        out: dict[str, Any] = {}
        if self.id:
            out["id"] = str(self.id)
        if self.source:
            out["source"] = self.source
        if self.subject is not None:
            out["subject"] = self.subject
        if self.type:
            out["type"] = self.type
        if self.time is not None:
            out["time"] = _format_time(self.time)
        if self.data:
            out["data"] = self.data
        if self.datacontenttype:
            out["datacontenttype"] = self.datacontenttype
        return out

    def to_json(self) -> str:
        """Serialise the event as compact JSON."""
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))

    @classmethod
    def from_dict(cls, obj: Any) -> Event:
        """Build an event from its JSON form; raise ValueError on bad input."""
        if not isinstance(obj, dict):
            raise ValueError("event must be a JSON object")
        unknown = sorted(set(obj) - set(_EVENT_FIELDS))
        if unknown:
            raise ValueError(f"unknown event field {unknown[0]!r}")
        values = {key: value for key, value in obj.items() if value is not None}
        kwargs: dict[str, Any] = {}
        if "id" in values:
            kwargs["id"] = _uint64(values["id"], "id")
        for name in ("source", "subject", "type", "data", "datacontenttype"):
            if name in values:
                kwargs[name] = _string(values[name], name)
        if "time" in values:
            kwargs["time"] = _parse_time(_string(values["time"], "time"))
        return cls(**kwargs)

    @classmethod
    def from_json(cls, text: str | bytes) -> Event:
        """Parse an event from its JSON form; raise ValueError on bad input."""
        return cls.from_dict(json.loads(text))


@dataclass
class EventExt:
    """An event together with the routing information it travels with."""

    event: Event = field(default_factory=Event)
    bus_name: str = ""
    rule_name: str = ""
    target_id: int = 0
    retry_strategy: RetryStrategy = RetryStrategy.UNSPECIFIED
    metadata: dict[str, str] = field(default_factory=dict)

    def key(self) -> str:
        """Return the identity of the event, including its rule and target once routed."""
        ev = self.event
        if self.rule_name:
            return f"{ev.source}{ev.type}{ev.id}{self.rule_name}{self.target_id}"
        return f"{ev.source}{ev.type}{ev.id}"

    def value(self) -> bytes:
        """Serialise the envelope to bytes; :meth:`from_bytes` reads them back."""
        out: dict[str, Any] = {"event": self.event.to_dict()}
        if self.bus_name:
            out["busName"] = self.bus_name
        if self.rule_name:
            out["ruleName"] = self.rule_name
        if self.target_id:
            out["targetId"] = str(self.target_id)
        if self.retry_strategy != RetryStrategy.UNSPECIFIED:
            out["retryStrategy"] = self.retry_strategy.wire_name
        if self.metadata:
            out["metadata"] = dict(self.metadata)
        return json.dumps(out, ensure_ascii=False, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> EventExt:
        """Read an envelope written by :meth:`value`; raise ValueError on bad input."""
        try:
            obj = json.loads(bytes(data))
        except UnicodeDecodeError as err:
            raise ValueError(f"invalid event envelope: {err}") from err
        if not isinstance(obj, dict):
            raise ValueError("event envelope must be a JSON object")
        aliases = {
            "event": "event",
            "busName": "bus_name",
            "bus_name": "bus_name",
            "ruleName": "rule_name",
            "rule_name": "rule_name",
            "targetId": "target_id",
            "target_id": "target_id",
            "retryStrategy": "retry_strategy",
            "retry_strategy": "retry_strategy",
            "metadata": "metadata",
        }
        kwargs: dict[str, Any] = {}
        for key, raw in obj.items():
            name = aliases.get(key)
            if name is None:
                raise ValueError(f"unknown envelope field {key!r}")
            if raw is None:
                continue
            if name == "event":
                kwargs[name] = Event.from_dict(raw)
            elif name == "target_id":
                kwargs[name] = _uint64(raw, key)
            elif name == "retry_strategy":
                kwargs[name] = RetryStrategy.parse(raw)
            elif name == "metadata":
                if not isinstance(raw, dict):
                    raise ValueError("field 'metadata' must be an object")
                kwargs[name] = {_string(k, key): _string(v, key) for k, v in raw.items()}
            else:
                kwargs[name] = _string(raw, key)
        return cls(**kwargs)

    def clone(self) -> EventExt:
        """Return a copy that shares no mutable state with this envelope."""
        return replace(self, event=replace(self.event), metadata=dict(self.metadata))

    def validate_event_data(self, schema: Any) -> None:
        """Check the event data against a JSON schema or a jsonschema validator.

        Raises ValueError when the data cannot be read and
        :class:`EventDataNotValidError` when it breaks the schema.
        """
        if hasattr(schema, "iter_errors"):
            validator = schema
        else:
            validator = jsonschema.validators.validator_for(schema)(schema)
        try:
            data = json.loads(self.event.data)
        except ValueError as err:
            raise ValueError(f"event data validation error: {err}") from err
        problems = [
            f"{'.'.join(str(part) for part in error.path) or '(root)'}: {error.message}"
            for error in validator.iter_errors(data)
        ]
        if problems:
            raise EventDataNotValidError(problems)

    def _parse_data(self) -> Any:
        try:
            return _loads_strict(self.event.data)
        except ValueError as err:
            raise DataUnmarshalError(err) from err

    def get_field_by_path(self, path: Sequence[str]) -> Any:
        """Look up a field of the event, e.g. ``["data", "source"]``.

        An empty path gives the event itself. A missing field gives
        :data:`NOT_EXISTS`; unreadable data raises :class:`DataUnmarshalError`.
        The id comes back as a string so that no precision is lost.
        """
        path = list(path)
        if not path:
            return self.event
        head = path[0]
        ev = self.event
        if len(path) == 1:
            if head == "id":
                return str(ev.id)
            if head == "source":
                return ev.source
            if head == "subject":
                return ev.subject
            if head == "type":
                return ev.type
            if head == "time":
                return ev.time if ev.time is not None else _EPOCH
            if head == "data":
                return self._parse_data()
            if head == "datacontenttype":
                return ev.datacontenttype
            return NOT_EXISTS
        if head != "data":
            return NOT_EXISTS

        data = self._parse_data()
        for key in path[1:]:
            if isinstance(data, dict):
                if key not in data:
                    return NOT_EXISTS
                data = data[key]
            elif isinstance(data, list):
                if not _INDEX_RE.fullmatch(key):
                    return NOT_EXISTS
                index = int(key)
                if not 0 <= index < len(data):
                    return NOT_EXISTS
                data = data[index]
            else:
                return NOT_EXISTS
        return data


_SEQUENCE_BITS = 8
_MACHINE_BITS = 16
_TIME_BITS = 39
_SEQUENCE_MASK = (1 << _SEQUENCE_BITS) - 1
_TIME_UNIT_NS = 10_000_000


def _is_private_ipv4(ip: ipaddress.IPv4Address) -> bool:
    first, second = ip.packed[0], ip.packed[1]
    return (
        first == 10
        or (first == 172 and 16 <= second < 32)
        or (first == 192 and second == 168)
        or (first == 100 and 64 <= second < 128)
    )


def _default_machine_id() -> int:
    try:
        addresses = socket.gethostbyname_ex(socket.gethostname())[2]
    except OSError:
        addresses = []
    for address in addresses:
        try:
            ip = ipaddress.IPv4Address(address)
        except ValueError:
            continue
        if _is_private_ipv4(ip):
            return int(ip) & 0xFFFF
    return os.getpid() & 0xFFFF


class IdGenerator:
    """Generates unique, increasing 63-bit ids.

    An id holds, from the top, the time since ``start_time`` in 10 ms units
    (39 bits), a sequence number (8 bits) and the machine id (16 bits).
    """

    def __init__(
        self,
        start_time: datetime = EVENT_ID_EPOCH,
        machine_id: Optional[int] = None,
        clock: Callable[[], int] = time.time_ns,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        if start_time.tzinfo is None:
            start_time = start_time.replace(tzinfo=_UTC)
        start_ns = (start_time - _EPOCH) // timedelta(microseconds=1) * 1000
        if start_ns > clock():
            raise ValueError("start time is in the future")
        if machine_id is None:
            machine_id = _default_machine_id()
        if not 0 <= machine_id <= 0xFFFF:
            raise ValueError(f"machine id {machine_id} does not fit in 16 bits")
        self.machine_id = machine_id
        self._clock = clock
        self._sleep = sleep
        self._start = start_ns // _TIME_UNIT_NS
        self._elapsed = 0
        self._sequence = _SEQUENCE_MASK
        self._lock = threading.Lock()

    def next_id(self) -> int:
        """Return the next id; raise OverflowError once the time bits run out."""
        with self._lock:
            current = self._clock() // _TIME_UNIT_NS - self._start
            if self._elapsed < current:
                self._elapsed = current
                self._sequence = 0
            else:
                self._sequence = (self._sequence + 1) & _SEQUENCE_MASK
                if self._sequence == 0:
                    self._elapsed += 1
                    overtime = self._elapsed - current
                    wait_ns = overtime * _TIME_UNIT_NS - self._clock() % _TIME_UNIT_NS
                    self._sleep(max(wait_ns, 0) / 1e9)
            if self._elapsed >= 1 << _TIME_BITS:
                raise OverflowError("over the time limit")
            return (
                self._elapsed << (_SEQUENCE_BITS + _MACHINE_BITS)
                | self._sequence << _MACHINE_BITS
                | self.machine_id
            )


_generators: dict[str, IdGenerator] = {}
_generators_lock = threading.Lock()


def _generator_for(source: str) -> IdGenerator:
    with _generators_lock:
        generator = _generators.get(source)
        if generator is None:
            generator = IdGenerator()
            _generators[source] = generator
        return generator


def new_event_ext(
    event: Event, retry_strategy: RetryStrategy = RetryStrategy.UNSPECIFIED
) -> EventExt:
    """Wrap ``event`` in an envelope, giving it a per-source unique id if it has none."""
    if event.id == 0:
        event.id = _generator_for(event.source).next_id()
    return EventExt(event=event, retry_strategy=retry_strategy)