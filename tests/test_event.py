from datetime import datetime, timezone

import pytest

from evbridge.event import (
    NOT_EXISTS,
    DataUnmarshalError,
    Event,
    EventDataNotValidError,
    EventExt,
    IdGenerator,
    RetryStrategy,
    is_data_unmarshal_error,
    is_not_exists_val,
    new_event_ext,
)

SAMPLE = """
{
  "id": 123,
  "source": "testSource1",
  "subject": "dolor mollit reprehenderit velit est",
  "type": "testSourceType1",
  "time": "2020-08-17T16:04:46.149Z",
  "data": "{\\"a\\":\\"i am test content ad\\"}",
  "datacontenttype": "application/json"
}"""


def _ext(data):
    return EventExt(event=Event(id=123, data=data))


def test_get_field_by_path_values():
    e = _ext('{"a":1, "b": {"c":2}}')
    assert int(e.get_field_by_path(["id"])) == 123
    assert e.get_field_by_path(["data", "a"]) == 1.0
    assert e.get_field_by_path(["data", "b", "c"]) == 2.0
    assert e.get_field_by_path(["data", "b"]) == {"c": 2.0}
    assert e.get_field_by_path(["data"]) == {"a": 1.0, "b": {"c": 2.0}}


@pytest.mark.parametrize(
    "path",
    [["faker"], ["data", "f"], ["data", "b", "f"], ["faker", "b", "c"]],
)
def test_get_field_by_path_missing(path):
    e = _ext('{"a":1, "b": {"c":2}}')
    assert is_not_exists_val(e.get_field_by_path(path))


def test_get_field_by_path_unmarshal_error():
    e = _ext('{"a":1, "b": {"c":2}}a')
    with pytest.raises(DataUnmarshalError) as info:
        e.get_field_by_path(["data"])
    assert is_data_unmarshal_error(info.value)
    with pytest.raises(DataUnmarshalError) as info:
        e.get_field_by_path(["data", "a"])
    err = info.value
    assert is_data_unmarshal_error(err)
    try:
        raise RuntimeError("wrap err") from err
    except RuntimeError as wrapped:
        assert is_data_unmarshal_error(wrapped)
    assert not is_data_unmarshal_error(RuntimeError("not unmarshal err"))


def test_get_field_by_path_duplicate_keys_rejected():
    with pytest.raises(DataUnmarshalError):
        _ext('{"a":1,"a":2}').get_field_by_path(["data", "a"])


def test_get_field_by_path_arrays():
    e = _ext('[{"n":"x"},{"n":"y"}]')
    assert e.get_field_by_path(["data", "1", "n"]) == "y"
    assert e.get_field_by_path(["data", "2", "n"]) is NOT_EXISTS
    assert e.get_field_by_path(["data", "-1"]) is NOT_EXISTS
    assert e.get_field_by_path(["data", "x"]) is NOT_EXISTS


def test_get_field_by_path_top_level_fields():
    ev = Event.from_json(SAMPLE)
    e = EventExt(event=ev)
    assert e.get_field_by_path([]) is ev
    assert e.get_field_by_path(["source"]) == "testSource1"
    assert e.get_field_by_path(["subject"]) == "dolor mollit reprehenderit velit est"
    assert e.get_field_by_path(["type"]) == "testSourceType1"
    assert e.get_field_by_path(["datacontenttype"]) == "application/json"
    assert e.get_field_by_path(["time"]) == datetime(
        2020, 8, 17, 16, 4, 46, 149000, tzinfo=timezone.utc
    )


def test_unset_subject_and_time():
    e = EventExt(event=Event())
    assert e.get_field_by_path(["subject"]) is None
    assert e.get_field_by_path(["time"]) == datetime(1970, 1, 1, tzinfo=timezone.utc)


def test_event_json_round_trip():
    ev = Event.from_json(SAMPLE)
    assert ev.id == 123
    text = ev.to_json()
    assert '"id":"123"' in text
    assert '"time":"2020-08-17T16:04:46.149Z"' in text
    assert Event.from_json(text) == ev


def test_event_from_json_rejects_unknown_field():
    with pytest.raises(ValueError):
        Event.from_json('{"bogus": 1}')
    with pytest.raises(ValueError):
        Event.from_json('{"time": "yesterday"}')


def test_value_round_trip():
    ext = EventExt(
        event=Event.from_json(SAMPLE),
        bus_name="bus",
        rule_name="rule",
        target_id=7,
        retry_strategy=RetryStrategy.BACKOFF,
        metadata={"k": "v"},
    )
    assert EventExt.from_bytes(ext.value()) == ext


def test_from_bytes_rejects_garbage():
    with pytest.raises(ValueError):
        EventExt.from_bytes(b"not json")
    with pytest.raises(ValueError):
        EventExt.from_bytes(b'{"targetId": "x"}')


def test_clone_is_independent():
    ext = EventExt(event=Event(id=1, source="s", subject="sub"), metadata={"k": "v"})
    copy = ext.clone()
    assert copy == ext
    copy.metadata["k"] = "other"
    copy.event.source = "changed"
    assert ext.metadata == {"k": "v"}
    assert ext.event.source == "s"


def test_key():
    ext = EventExt(event=Event(id=5, source="s", type="t"))
    assert ext.key() == "st5"
    ext.rule_name = "r"
    ext.target_id = 7
    assert ext.key() == "st5r7"


def test_validate_event_data():
    schema = {"type": "object", "required": ["a"]}
    _ext('{"a": 1}').validate_event_data(schema)
    with pytest.raises(EventDataNotValidError) as info:
        _ext('{"b": 1}').validate_event_data(schema)
    assert len(info.value.errors) == 1
    with pytest.raises(ValueError, match="event data validation error"):
        _ext("x").validate_event_data(schema)


def test_id_generator_increasing_with_machine_id():
    now = 1_700_000_000_000_000_000
    sleeps = []
    gen = IdGenerator(machine_id=42, clock=lambda: now, sleep=sleeps.append)
    ids = [gen.next_id() for _ in range(300)]
    assert ids == sorted(ids)
    assert len(set(ids)) == len(ids)
    assert all(i & 0xFFFF == 42 for i in ids)
    assert sleeps


def test_id_generator_errors():
    with pytest.raises(ValueError):
        IdGenerator(start_time=datetime(2999, 1, 1, tzinfo=timezone.utc))
    with pytest.raises(ValueError):
        IdGenerator(machine_id=1 << 16)
    gen = IdGenerator(
        start_time=datetime(1970, 1, 1, tzinfo=timezone.utc),
        machine_id=1,
        clock=lambda: (1 << 39) * 10_000_000,
    )
    with pytest.raises(OverflowError):
        gen.next_id()


def test_new_event_ext_assigns_ids_per_source():
    first = new_event_ext(Event(source="src-a"), RetryStrategy.EXPONENTIAL_DECAY)
    second = new_event_ext(Event(source="src-a"))
    assert first.event.id > 0
    assert second.event.id > first.event.id
    assert first.event.id & 0xFFFF == second.event.id & 0xFFFF
    assert first.retry_strategy == RetryStrategy.EXPONENTIAL_DECAY


def test_new_event_ext_keeps_existing_id():
    ext = new_event_ext(Event(id=99, source="src-b"))
    assert ext.event.id == 99
    assert ext.retry_strategy == RetryStrategy.UNSPECIFIED