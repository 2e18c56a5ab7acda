"""Serves events taken from a receiver through a chain of middleware."""

from __future__ import annotations

import contextvars
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Iterable, Iterator, Mapping, Optional, Union

from evbridge.event import EventExt

log = logging.getLogger(__name__)

EventHandler = Callable[[EventExt], Any]
Middleware = Callable[[EventHandler], EventHandler]


class HeaderCarrier:
    """Case-insensitive multi-valued headers."""

    def __init__(self, metadata: Optional[Mapping[str, Union[str, Iterable[str]]]] = None) -> None:
        self._data: dict[str, list[str]] = {}
        for key, value in (metadata or {}).items():
            if isinstance(value, str):
                self.add(key, value)
            else:
                for item in value:
                    self.add(key, item)

    def get(self, key: str) -> str:
        """Return the first value for ``key``, or an empty string."""
        values = self._data.get(key.lower())
        return values[0] if values else ""

    def set(self, key: str, value: str) -> None:
        """Replace the values for ``key``; empty keys or values are ignored."""
        if not key or not value:
            return
        self._data[key.lower()] = [value]

    def add(self, key: str, value: str) -> None:
        """Append a value for ``key``; an empty key is ignored."""
        if not key:
            return
        self._data.setdefault(key.lower(), []).append(value)

    def values(self, key: str) -> list[str]:
        """Return every value stored for ``key``."""
        return list(self._data.get(key.lower(), []))

    def keys(self) -> list[str]:
        """Return the stored keys."""
        return list(self._data)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and key.lower() in self._data

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._data))

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"HeaderCarrier({self._data!r})"


@dataclass
class Transport:
    """What a handler knows about the delivery of the event it is handling.

    ``deadline`` is a :func:`time.monotonic` time by which handling should
    finish, or ``None`` when there is no time limit.
    """

    kind: ClassVar[str] = "event"

    endpoint: str
    operation: str
    request_header: HeaderCarrier
    reply_header: HeaderCarrier
    deadline: Optional[float] = None


@dataclass
class Reply:
    """The result of handling one event."""

    body: Any
    header: HeaderCarrier


class Receiver(ABC):
    """Source of events that feeds them to a handler."""

    @abstractmethod
    def receive(self, handler: Callable[..., Reply]) -> Any:
        """Deliver events to ``handler`` until closed.

        ``handler`` takes the event and, optionally, its metadata.
        """

    @abstractmethod
    def close(self) -> Any:
        """Stop receiving."""


_current: contextvars.ContextVar[Optional[Transport]] = contextvars.ContextVar(
    "evbridge_event_transport", default=None
)


def current_transport() -> Optional[Transport]:
    """Return the transport of the event being handled, or ``None`` outside a handler."""
    return _current.get()


def chain(*args: Middleware) -> Middleware:
    """Compose middleware; the first one given is the outermost."""

    def wrap(handler: EventHandler) -> EventHandler:
        for middleware in reversed(args):
            handler = middleware(handler)
        return handler

    return wrap


class Server:
    """Runs a receiver and passes each event through the middleware to the handler."""

    def __init__(
        self,
        receiver: Receiver,
        handler: EventHandler,
        endpoint: str = "",
        operation: str = "",
        timeout: float = 1.0,
        middleware: Iterable[Middleware] = (),
    ) -> None:
        self.receiver = receiver
        self.endpoint = endpoint
        self.operation = operation
        self.timeout = timeout
        self.middleware = list(middleware)
        self._handler = chain(*self.middleware)(handler) if self.middleware else handler

    def handle(
        self,
        event: EventExt,
        metadata: Optional[Mapping[str, Union[str, Iterable[str]]]] = None,
    ) -> Reply:
        """Handle one event and return the reply; errors from the handler propagate."""
        reply_header = HeaderCarrier()
        transport = Transport(
            endpoint=self.endpoint,
            operation=self.operation,
            request_header=HeaderCarrier(metadata),
            reply_header=reply_header,
            deadline=time.monotonic() + self.timeout if self.timeout > 0 else None,
        )
        token = _current.set(transport)
        try:
            body = self._handler(event)
        finally:
            _current.reset(token)
        return Reply(body=body, header=reply_header)

    def start(self) -> Any:
        """Start receiving events."""
        log.info("[event] server receiving from: %s", self.endpoint)
        return self.receiver.receive(self.handle)

    def stop(self) -> Any:
        """Stop receiving events."""
        log.info("[event] server stopping")
        return self.receiver.close()