"""Rules of an event bus: matching, transforming and dispatching events per rule."""

from __future__ import annotations

import enum
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Optional

from evbridge.event import EventExt, RetryStrategy
from evbridge.informer import Handler, Informer, Reflector

log = logging.getLogger(__name__)

DEFAULT_TRANSFORM_PARALLELISM = 20

LABEL_RULE_NAME = "name"
LABEL_EVENT = "event"
LABEL_OPERATION = "operation"
LABEL_RESULT = "result"


class RuleStatus(enum.IntEnum):
    """Whether a rule is in force."""

    UNSPECIFIED = 0
    ENABLE = 1
    DISABLE = 2


@dataclass
class TargetParam:
    """One field of the payload a target receives and how it is produced."""

    key: str
    form: str
    value: str = ""
    template: Optional[str] = None


@dataclass
class Target:
    """A destination that events matched by a rule are delivered to."""

    id: int
    type: str = ""
    params: list[TargetParam] = field(default_factory=list)
    retry_strategy: RetryStrategy = RetryStrategy.UNSPECIFIED


@dataclass
class Rule:
    """A filter pattern on a bus and the targets matching events go to."""

    name: str
    bus_name: str
    status: RuleStatus = RuleStatus.UNSPECIFIED
    pattern: str = ""
    targets: list[Target] = field(default_factory=list)


class Matcher(ABC):
    """Decides whether an event matches a filter pattern."""

    @abstractmethod
    def pattern(self, event: EventExt) -> bool:
        """Return True when ``event`` matches."""


class Transformer(ABC):
    """Turns an event into the form a target expects."""

    @abstractmethod
    def transform(self, event: EventExt) -> EventExt:
        """Return the transformed event; the event passed in may be modified."""


class Dispatcher(ABC):
    """Delivers events to a target."""

    @abstractmethod
    def dispatch(self, event: EventExt) -> None:
        """Deliver ``event``."""

    @abstractmethod
    def close(self) -> None:
        """Release the dispatcher."""


class NoMatcherAvailableError(LookupError):
    """The executor has no matcher."""

    def __init__(self, message: str = "no matcher available") -> None:
        super().__init__(message)


class NoTransformerAvailableError(LookupError):
    """The executor has no transformer."""

    def __init__(self, message: str = "no transformer available") -> None:
        super().__init__(message)


class NoDispatcherAvailableError(LookupError):
    """The executor has no dispatcher for the event's target."""

    def __init__(self, message: str = "no dispatcher available") -> None:
        super().__init__(message)


Attributes = Mapping[str, str]


@dataclass
class ExecutorOptions:
    """Instrumentation and tuning of an :class:`Executor`.

    ``execute_total`` is called with the attributes of every pattern,
    transform and dispatch run; ``execute_duration`` with the seconds a
    dispatch took and its attributes. A parallelism below 2 is ignored.
    """

    execute_duration: Optional[Callable[[float, Attributes], Any]] = None
    execute_total: Optional[Callable[[Attributes], Any]] = None
    transform_parallelism: int = DEFAULT_TRANSFORM_PARALLELISM

    def __post_init__(self) -> None:
        if self.transform_parallelism < 2:
            self.transform_parallelism = DEFAULT_TRANSFORM_PARALLELISM


def _event_label(event: EventExt) -> str:
    return f"{event.event.source}:{event.event.type}"


def _record_total(
    counter: Optional[Callable[[Attributes], Any]],
    name: str,
    event: EventExt,
    operation: str,
    result: str,
) -> None:
    if counter is None:
        return
    counter(
        {
            LABEL_RULE_NAME: name,
            LABEL_EVENT: _event_label(event),
            LABEL_OPERATION: operation,
            LABEL_RESULT: result,
        }
    )


def _close_all(dispatchers: Iterable[Any]) -> None:
    errors: list[str] = []
    for dispatcher in dispatchers:
        try:
            dispatcher.close()
        except Exception as err:  # noqa: BLE001 - every failure is collected
            errors.append(str(err))
    if errors:
        raise RuntimeError(f"close dispatchers err: {', '.join(errors)}")


@dataclass
class _TargetTransformer:
    transformer: Any
    execute_total: Optional[Callable[[Attributes], Any]]
    bus_name: str
    rule_name: str
    target_id: int
    retry_strategy: RetryStrategy

    def transform(self, event: EventExt) -> EventExt:
        label = f"{self.bus_name}:{self.rule_name}:{self.target_id}"
        try:
            result = self.transformer.transform(event.clone())
        except Exception as err:
            _record_total(self.execute_total, label, event, "Transform", type(err).__name__)
            raise RuntimeError(f"transform target(id: {self.target_id}) err: {err}") from err
        _record_total(self.execute_total, label, event, "Transform", "ok")
        result.target_id = self.target_id
        result.rule_name = self.rule_name
        if self.retry_strategy != RetryStrategy.UNSPECIFIED:
            result.retry_strategy = self.retry_strategy
        return result


MatcherFactory = Callable[[dict], Any]
TransformerFactory = Callable[[Target], Any]
DispatcherFactory = Callable[[Target], Any]


class Executor:
    """Runs one rule: matches events, transforms them per target and dispatches them."""

    def __init__(
        self,
        rule: Rule,
        new_matcher: MatcherFactory,
        new_transformer: TransformerFactory,
        new_dispatcher: DispatcherFactory,
        options: Optional[ExecutorOptions] = None,
    ) -> None:
        self.bus_name = rule.bus_name
        self.rule_name = rule.name
        self.options = options if options is not None else ExecutorOptions()
        self._new_matcher = new_matcher
        self._new_transformer = new_transformer
        self._new_dispatcher = new_dispatcher
        self._lock = threading.Lock()
        self._pattern = ""
        self._matcher: Any = None
        self._targets: dict[int, Target] = {}
        self._transformers: dict[int, _TargetTransformer] = {}
        self._dispatchers: dict[int, Any] = {}
        self.update(rule)

    @property
    def _rule_label(self) -> str:
        return f"{self.bus_name}:{self.rule_name}"

    def pattern(self, event: EventExt) -> bool:
        """Tell whether ``event`` matches the rule's filter pattern."""
        with self._lock:
            matcher = self._matcher
        result = "pass"
        try:
            if matcher is None:
                raise NoMatcherAvailableError()
            matched = bool(matcher.pattern(event))
            result = "ok" if matched else "pass"
            return matched
        except Exception as err:
            result = type(err).__name__
            raise
        finally:
            _record_total(self.options.execute_total, self._rule_label, event, "Pattern", result)

    def transform(self, event: EventExt) -> list[EventExt]:
        """Produce one event per target; the event passed in is left unchanged."""
        with self._lock:
            transformers = list(self._transformers.values())
        if not transformers:
            _record_total(
                self.options.execute_total,
                self._rule_label,
                event,
                "Transform",
                NoTransformerAvailableError.__name__,
            )
            raise NoTransformerAvailableError()
        if len(transformers) == 1:
            return [transformers[0].transform(event)]

        workers = min(self.options.transform_parallelism, len(transformers))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(t.transform, event) for t in transformers]
        results: list[EventExt] = []
        first_error: Optional[BaseException] = None
        for future in futures:
            err = future.exception()
            if err is not None:
                first_error = first_error or err
                continue
            results.append(future.result())
        if first_error is not None:
            raise first_error
        return results

    def dispatch(self, event: EventExt) -> None:
        """Deliver ``event`` to the dispatcher of its target."""
        start = time.monotonic()
        label = f"{self.bus_name}:{self.rule_name}:{event.target_id}"
        with self._lock:
            dispatcher = self._dispatchers.get(event.target_id)
        result = "ok"
        try:
            if dispatcher is None:
                raise NoDispatcherAvailableError()
            dispatcher.dispatch(event)
        except Exception as err:
            result = type(err).__name__
            raise
        finally:
            _record_total(self.options.execute_total, label, event, "Dispatch", result)
            if self.options.execute_duration is not None:
                self.options.execute_duration(
                    time.monotonic() - start,
                    {
                        LABEL_RULE_NAME: label,
                        LABEL_EVENT: _event_label(event),
                        LABEL_OPERATION: "Dispatch",
                    },
                )

    def close(self) -> None:
        """Drop the matcher and targets and close every dispatcher."""
        with self._lock:
            dispatchers = list(self._dispatchers.values())
            self._matcher = None
            self._pattern = ""
            self._transformers = {}
            self._dispatchers = {}
            self._targets = {}
        _close_all(dispatchers)

    def update(self, rule: Optional[Rule]) -> None:
        """Bring the executor in line with ``rule``, rebuilding only what changed.

        Dispatchers of removed or changed targets are closed.
        """
        if rule is None:
            return
        new_targets = {target.id: target for target in rule.targets}
        to_close: list[Any] = []
        try:
            with self._lock:
                removed = [tid for tid in self._targets if tid not in new_targets]
                if self._pattern != rule.pattern:
                    parsed = json.loads(rule.pattern)
                    if parsed is None:
                        parsed = {}
                    if not isinstance(parsed, dict):
                        raise ValueError("filter pattern must be a JSON object")
                    self._matcher = self._new_matcher(parsed)
                    self._pattern = rule.pattern
                for tid in removed:
                    self._transformers.pop(tid, None)
                    old = self._dispatchers.pop(tid, None)
                    if old is not None:
                        to_close.append(old)
                    del self._targets[tid]
                for tid, target in new_targets.items():
                    if target == self._targets.get(tid):
                        continue
                    self._targets[tid] = target
                    transformer = self._new_transformer(target)
                    self._transformers[tid] = _TargetTransformer(
                        transformer=transformer,
                        execute_total=self.options.execute_total,
                        bus_name=self.bus_name,
                        rule_name=self.rule_name,
                        target_id=tid,
                        retry_strategy=target.retry_strategy,
                    )
                    dispatcher = self._new_dispatcher(target)
                    old = self._dispatchers.get(tid)
                    if old is not None:
                        to_close.append(old)
                    self._dispatchers[tid] = dispatcher
        finally:
            _close_all(to_close)

    def is_filter_pattern_equal(self, filter_pattern: str) -> bool:
        """Tell whether the executor runs exactly this filter pattern text."""
        with self._lock:
            return self._pattern == filter_pattern

    def is_targets_equal(self, targets: Iterable[Target]) -> bool:
        """Tell whether the executor serves exactly these targets."""
        wanted = {target.id: target for target in targets}
        with self._lock:
            current = dict(self._targets)
        return wanted == current


def executor_factory(
    new_matcher: MatcherFactory,
    new_transformer: TransformerFactory,
    new_dispatcher: DispatcherFactory,
) -> Callable[..., Executor]:
    """Return a function building an :class:`Executor` from a rule and options."""

    def create(rule: Rule, options: Optional[ExecutorOptions] = None) -> Executor:
        return Executor(rule, new_matcher, new_transformer, new_dispatcher, options)

    return create


class Rules(Handler):
    """Keeps one executor per rule, following the rules a reflector reports.

    Reflector keys have the form ``bus:rule``; the value of a key is a
    :class:`Rule`, or ``None`` once the rule is deleted. Watching starts on
    construction and stops on :meth:`close`.
    """

    def __init__(
        self,
        reflector: Reflector,
        new_executor: Callable[[Rule, Optional[ExecutorOptions]], Any],
        options: Optional[ExecutorOptions] = None,
    ) -> None:
        self.reflector = reflector
        self.options = options
        self._new_executor = new_executor
        self._executors: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._closed = False
        self._informer = Informer(reflector, self)
        self._thread = threading.Thread(
            target=self._informer.watch_and_handle, name="rules-informer", daemon=True
        )
        self._thread.start()

    def __enter__(self) -> Rules:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def get_executors(self, bus_name: str) -> dict[str, Any]:
        """Return the executors of a bus by rule name; empty if the bus has none."""
        with self._lock:
            return self._executors.get(bus_name, {})

    def handle(self, key: str) -> None:
        """Add, update or delete the rule behind ``key``."""
        rule = self.reflector.get(key)
        if rule is not None:
            self._update_rule(rule)
        else:
            self._delete_rule(key)

    def close(self) -> None:
        """Stop watching and close every executor."""
        if self._closed:
            return
        self._closed = True
        self._informer.close()
        self._thread.join()
        with self._lock:
            executors = [e for per_bus in self._executors.values() for e in per_bus.values()]
            self._executors = {}
        for executor in executors:
            try:
                executor.close()
            except Exception as err:  # noqa: BLE001 - a failed close is only reported
                log.error("close executor failed: %s", err)

    def _update_rule(self, rule: Rule) -> None:
        with self._lock:
            existing = self._executors.get(rule.bus_name, {}).get(rule.name)
        if existing is not None:
            existing.update(rule)
            log.info("bus %s rule %s updated", rule.bus_name, rule.name)
            return
        executor = self._new_executor(rule, self.options)
        with self._lock:
            per_bus = dict(self._executors.get(rule.bus_name, {}))
            per_bus[rule.name] = executor
            self._executors[rule.bus_name] = per_bus
        log.info("bus %s rule %s added", rule.bus_name, rule.name)

    def _delete_rule(self, key: str) -> None:
        names = key.split(":")
        if len(names) != 2:
            raise ValueError(f"invalid key: {key}")
        bus_name, rule_name = names
        with self._lock:
            per_bus = self._executors.get(bus_name, {})
            executor = per_bus.get(rule_name)
            if executor is None:
                return
            self._executors[bus_name] = {
                name: e for name, e in per_bus.items() if name != rule_name
            }
        log.info("bus %s rule %s deleted", bus_name, rule_name)
        try:
            executor.close()
        except Exception as err:  # noqa: BLE001 - a failed close is only reported
            log.error("close executor failed: %s", err)