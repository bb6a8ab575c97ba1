from __future__ import annotations
import logging
import threading
from typing import Callable, Optional, Protocol

log = logging.getLogger(__name__)


class PermissionProvider(Protocol):
    def is_granted(self) -> bool: ...

    def request(self) -> None: ...


class AlwaysGranted:
    def is_granted(self) -> bool:
        return True

    def request(self) -> None:
        return None


class AskPermission:
    """Asks the user once per request via `ask` on a worker thread.

    A request made while one is pending is ignored; a denial is remembered
    until the next explicit request.
    """

    def __init__(self, ask: Callable[[], bool]):
        self._ask = ask
        self._granted = False
        self._pending: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def is_granted(self) -> bool:
        return self._granted

    def request(self) -> None:
        with self._lock:
            if self._granted or (self._pending is not None and self._pending.is_alive()):
                return
            self._pending = threading.Thread(target=self._run, daemon=True)
            self._pending.start()

    def wait(self, timeout: Optional[float] = None) -> bool:
        pending = self._pending
        if pending is not None:
            pending.join(timeout)
        return self._granted

    def _run(self):
        try:
            self._granted = bool(self._ask())
        except Exception:
            log.exception("permission prompt failed")
            self._granted = False
        log.info("alert permission %s", "granted" if self._granted else "denied")


def console_prompt() -> bool:
    answer = input("Allow posture alerts? [y/N] ")
    return answer.strip().lower() in ("y", "yes")
