# evbridge

The rule engine of an event bus. Events are matched against filter patterns.
Each matched event is reshaped for every target of the rule and handed to
that target's dispatcher.

## Installation

```
pip install evbridge
```

To run the test suite:

```
pip install "evbridge[test]"
pytest
```

## Modules

### `evbridge.event`

- `Event` is a record with the fields `id`, `source`, `subject`, `type`,
  `time`, `data` (a JSON text) and `datacontenttype`.
  - `to_json()` and `from_json()` convert it to and from JSON. The id is
    written as a string, and fields that hold their default are left out.
- `EventExt` wraps an event and adds `bus_name`, `rule_name`, `target_id`,
  `retry_strategy` (a `RetryStrategy`) and `metadata`.
  - `key()` returns the identity of the event.
  - `value()` and `from_bytes()` serialise the envelope and read it back.
  - `clone()` makes an independent copy.
  - `validate_event_data(schema)` checks the data against a JSON schema and
    raises `EventDataNotValidError` when it does not conform.
  - `get_field_by_path(["data", "a", "0"])` reads a field of the event or of
    its JSON data. A missing field gives a sentinel that
    `is_not_exists_val()` recognises. Data that is not valid JSON raises
    `DataUnmarshalError`, which `is_data_unmarshal_error()` recognises.
- `new_event_ext(event, retry_strategy)` wraps an event. If the event's id is
  zero, it first assigns an id that is unique per source, produced by an
  `IdGenerator` (time-based 63-bit ids).

### `evbridge.pattern`

`new_matcher(filter_pattern)` builds a `PatternMatcher` from a decoded JSON
filter pattern. `PatternMatcher.pattern(event)` returns `True` or `False`.

- A scalar in the pattern must equal the field.
- A list matches if any of its values equals the field, or if all operators
  in any one of its objects match.
- Nested objects descend into the event, for example into `data`.
- The operators are `prefix`, `suffix`, `anything-but`, `exists`, `numeric`
  (for example `[">", 0, "<=", 5]`) and `cidr`.
- An empty pattern matches nothing.
- `register_match_func(name, factory)` adds an operator.

### `evbridge.transform`

`new_transformer(target)` builds an `EventTransformer` from the `params` of
a `Target`. Each `TargetParam` has one of these forms:

- `CONSTANT` gives a fixed value.
- `JSONPATH` copies a field, for example `$.data.name`. A missing field
  gives `null`.
- `TEMPLATE` fills the `${name}` placeholders of a JSON template. The value
  maps each name to a JSON path.

`transform(event)` replaces the event's data, in place, with a compact JSON
object of the parameters. A target with no parameters receives the whole
event as JSON. `register_transform_func(name, factory)` adds a form.

### `evbridge.rule`

- `Rule`, `Target`, `TargetParam` and `RuleStatus` describe the rules.
- `Matcher`, `Transformer` and `Dispatcher` are the abstract interfaces.
- `Executor` runs one rule:
  - `pattern()` tests an event against the rule.
  - `transform()` produces one event per target and runs them in parallel
    when there are several targets.
  - `dispatch()` calls the dispatcher of the event's target.
  - `update(rule)` rebuilds only the targets that changed and closes the
    dispatchers it replaces.
  - Missing parts raise `NoMatcherAvailableError`,
    `NoTransformerAvailableError` and `NoDispatcherAvailableError`.
- `ExecutorOptions` sets optional counter and duration callbacks and the
  transform parallelism (default 20).
- `executor_factory(...)` returns a function that builds executors.
- `Rules` keeps one executor per rule for each bus. It uses an `Informer` to
  follow the keys of a `Reflector`; keys have the form `bus:rule`.
  `get_executors(bus_name)` returns them. `Rules` can be used as a context
  manager; `close()` stops it.

### `evbridge.informer`

`Informer` takes the keys that a `Reflector` reports and hands them to a
`Handler` on a pool of worker threads. When handling a key fails, the key is
retried with `ExponentialBackOff` for up to 24 hours. `retry()` calls an
operation until it succeeds. A `PermanentError` stops the retries at once.

### `evbridge.priority_queue`

`PriorityQueue` is a min-heap of `Item`s that keeps track of each item's
index, so that `update()` can reorder an item already in the queue.

### `evbridge.server`

`Server` takes events from a `Receiver` and passes each one through a
middleware chain (`chain`) to a handler. It returns a `Reply` with the
handler's result and a `HeaderCarrier` for the reply headers.

While the handler runs, `current_transport()` returns the `Transport` with:

- the endpoint;
- the operation;
- the request and reply headers;
- a deadline taken from `timeout`.

The deadline is only reported to the handler; the server does not enforce it.

## Example

```python
import json

from evbridge.event import Event, EventExt
from evbridge.pattern import new_matcher
from evbridge.rule import Target, TargetParam
from evbridge.transform import new_transformer

matcher = new_matcher(json.loads('{"source": [{"prefix": "orders"}]}'))

event = EventExt(event=Event(
    id=1,
    source="orders.eu",
    type="created",
    data='{"name": "widget", "count": 3}',
))

if matcher.pattern(event):
    target = Target(id=1, type="http", params=[
        TargetParam(key="item", form="JSONPATH", value="$.data.name"),
        TargetParam(key="kind", form="CONSTANT", value="order"),
    ])
    out = new_transformer(target).transform(event.clone())
    print(out.event.data)   # {"item":"widget","kind":"order"}
```

## What it does not do

This is a library, not a running service. It has:

- no command-line program;
- no message-queue or network receivers;
- no dispatchers that deliver events anywhere;
- no storage for rules.

`Receiver`, `Reflector` and `Dispatcher` are interfaces. You supply the
implementations that connect them to your own transport and rule store.