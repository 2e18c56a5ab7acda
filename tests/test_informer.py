import queue
import threading

import pytest

from evbridge.informer import (
    ExponentialBackOff,
    Handler,
    Informer,
    PermanentError,
    Reflector,
    ReflectorClosedError,
    is_reflector_closed_error,
    retry,
)


def _no_sleep(_delay):
    return None


class QueueReflector(Reflector):
    def __init__(self, failures=0, close_error=None):
        self.keys = queue.Queue()
        self.closed = threading.Event()
        self.failures = failures
        self.close_error = close_error
        self.watch_calls = 0

    def watch(self):
        self.watch_calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("watch failed")
        while True:
            if self.closed.is_set():
                raise ReflectorClosedError()
            try:
                return [self.keys.get(timeout=0.02)]
            except queue.Empty:
                continue

    def get(self, key):
        return None

    def close(self):
        self.closed.set()
        if self.close_error is not None:
            raise self.close_error


class RecordingHandler(Handler):
    def __init__(self, failures=None):
        self.calls = []
        self.failures = dict(failures or {})
        self.cond = threading.Condition()

    def handle(self, key):
        with self.cond:
            self.calls.append(key)
            self.cond.notify_all()
            if self.failures.get(key, 0) > 0:
                self.failures[key] -= 1
                raise RuntimeError("handle failed")

    def wait_for(self, count, timeout=5.0):
        with self.cond:
            return self.cond.wait_for(lambda: len(self.calls) >= count, timeout)


def _start(informer):
    thread = threading.Thread(target=informer.watch_and_handle, daemon=True)
    thread.start()
    return thread


def _stop(informer, thread):
    informer.close()
    thread.join(timeout=5.0)
    return thread.is_alive()


def test_retry_stops_on_permanent_reflector_closed():
    count = 0

    def operation():
        nonlocal count
        count += 1
        if count < 3:
            raise RuntimeError("error")
        raise PermanentError(ReflectorClosedError())

    with pytest.raises(ReflectorClosedError) as info:
        retry(operation, ExponentialBackOff(max_elapsed_time=24 * 3600.0), _no_sleep)
    assert is_reflector_closed_error(info.value)
    assert count == 3


def test_retry_returns_result_after_transient_failures():
    attempts = []

    def operation():
        attempts.append(1)
        if len(attempts) < 4:
            raise ValueError("transient")
        return "done"

    sleeps = []
    result = retry(operation, ExponentialBackOff(randomization_factor=0), sleeps.append)
    assert result == "done"
    assert len(attempts) == 4
    assert sleeps == [0.5, 0.75, 1.125]


def test_retry_raises_last_error_when_backoff_gives_up():
    attempts = []

    def operation():
        attempts.append(1)
        raise ValueError(f"attempt {len(attempts)}")

    sleeps = []
    policy = ExponentialBackOff(randomization_factor=0, max_elapsed_time=1.0, clock=lambda: 0.0)
    with pytest.raises(ValueError, match="attempt 3"):
        retry(operation, policy, sleeps.append)
    assert sleeps == [0.5, 0.75]


def test_exponential_backoff_grows_and_caps():
    policy = ExponentialBackOff(
        randomization_factor=0, max_interval=1.0, max_elapsed_time=0, clock=lambda: 0.0
    )
    delays = [policy.next_backoff() for _ in range(5)]
    assert delays == [0.5, 0.75, 1.0, 1.0, 1.0]
    policy.reset()
    assert policy.next_backoff() == 0.5


def test_exponential_backoff_randomization_bounds():
    low = ExponentialBackOff(rng=lambda: 0.0, clock=lambda: 0.0)
    high = ExponentialBackOff(rng=lambda: 1.0, clock=lambda: 0.0)
    assert low.next_backoff() == pytest.approx(0.25)
    assert high.next_backoff() == pytest.approx(0.75)


def test_exponential_backoff_stops_after_max_elapsed_time():
    now = [0.0]
    policy = ExponentialBackOff(randomization_factor=0, max_elapsed_time=10.0, clock=lambda: now[0])
    assert policy.next_backoff() == 0.5
    now[0] = 9.8
    assert policy.next_backoff() is None


@pytest.mark.parametrize(
    "err, expected",
    [
        (ReflectorClosedError(), True),
        (PermanentError(ReflectorClosedError()), True),
        (RuntimeError("other"), False),
        (None, False),
    ],
)
def test_is_reflector_closed_error(err, expected):
    assert is_reflector_closed_error(err) is expected


def test_is_reflector_closed_error_follows_cause():
    try:
        try:
            raise ReflectorClosedError()
        except ReflectorClosedError as inner:
            raise RuntimeError("wrapped") from inner
    except RuntimeError as outer:
        assert is_reflector_closed_error(outer)


def test_informer_handles_watched_keys():
    reflector = QueueReflector()
    handler = RecordingHandler()
    informer = Informer(reflector, handler, worker_num=4)
    thread = _start(informer)
    for key in ("bus:a", "bus:b", "bus:c"):
        reflector.keys.put(key)
    try:
        assert handler.wait_for(3)
    finally:
        still_running = _stop(informer, thread)
    assert not still_running
    assert sorted(handler.calls) == ["bus:a", "bus:b", "bus:c"]
    assert reflector.closed.is_set()


def test_informer_retries_failed_keys():
    reflector = QueueReflector()
    handler = RecordingHandler(failures={"bus:x": 1})
    informer = Informer(reflector, handler)
    thread = _start(informer)
    reflector.keys.put("bus:x")
    try:
        assert handler.wait_for(2)
    finally:
        still_running = _stop(informer, thread)
    assert not still_running
    assert handler.calls[:2] == ["bus:x", "bus:x"]


def test_informer_recovers_from_watch_error():
    reflector = QueueReflector(failures=1)
    handler = RecordingHandler()
    informer = Informer(reflector, handler)
    thread = _start(informer)
    reflector.keys.put("bus:y")
    try:
        assert handler.wait_for(1)
    finally:
        still_running = _stop(informer, thread)
    assert not still_running
    assert handler.calls == ["bus:y"]
    assert reflector.watch_calls >= 2


def test_close_reports_reflector_close_failure(caplog):
    reflector = QueueReflector(close_error=RuntimeError("cannot close"))
    informer = Informer(reflector, RecordingHandler())
    with caplog.at_level("ERROR", logger="evbridge.informer"):
        informer.close()
    assert "close reflector failed: cannot close" in caplog.text
    assert reflector.closed.is_set()