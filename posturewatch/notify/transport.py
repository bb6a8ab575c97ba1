from __future__ import annotations
import logging
import threading
from typing import Callable, Dict, List, Protocol

log = logging.getLogger(__name__)

Handler = Callable[[dict], None]
Unsubscribe = Callable[[], None]


class TransportUnavailable(RuntimeError):
    """The environment has no cross-instance channel."""


class Transport(Protocol):
    def publish(self, topic: str, message: dict) -> None: ...

    def subscribe(self, topic: str, handler: Handler) -> Unsubscribe: ...


class LocalBus:
    """In-process pub/sub. Delivery is synchronous and best-effort: a failing
    handler is logged and does not stop delivery to the others."""

    def __init__(self):
        self._subs: Dict[str, List[Handler]] = {}
        self._lock = threading.Lock()

    def publish(self, topic: str, message: dict) -> None:
        with self._lock:
            handlers = list(self._subs.get(topic, ()))
        for handler in handlers:
            try:
                handler(message)
            except Exception:
                log.exception("bus handler failed on %s", topic)

    def subscribe(self, topic: str, handler: Handler) -> Unsubscribe:
        with self._lock:
            self._subs.setdefault(topic, []).append(handler)

        def _unsubscribe():
            with self._lock:
                subs = self._subs.get(topic, [])
                if handler in subs:
                    subs.remove(handler)
        return _unsubscribe

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subs.get(topic, ()))


class UnavailableTransport:
    """Stand-in for environments without a broadcast channel."""

    def publish(self, topic: str, message: dict) -> None:
        raise TransportUnavailable("no broadcast channel")

    def subscribe(self, topic: str, handler: Handler) -> Unsubscribe:
        raise TransportUnavailable("no broadcast channel")
