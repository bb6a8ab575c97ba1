from __future__ import annotations
import logging
from dataclasses import dataclass, asdict
from typing import Callable, Iterable, List, Optional, Protocol, Tuple

log = logging.getLogger(__name__)

ALERT_TITLE = "Posture alert"
ALERT_TAG = "posture-alert"
VIBRATE_PATTERN: Tuple[int, ...] = (200, 100, 200)


@dataclass(frozen=True)
class Alert:
    title: str
    body: str
    tag: str = ALERT_TAG                # same tag replaces instead of stacking
    vibrate: Tuple[int, ...] = VIBRATE_PATTERN
    require_interaction: bool = True
    auto_dismiss_s: float = 10.0
    tier: Optional[str] = None

    def to_dict(self) -> dict:
        out = asdict(self)
        out["vibrate"] = list(self.vibrate)
        return out


class AlertSink(Protocol):
    def emit(self, alert: Alert) -> None: ...


class LogAlertSink:
    def emit(self, alert: Alert) -> None:
        log.warning("%s: %s", alert.title, alert.body)


class CallbackAlertSink:
    def __init__(self, callback: Callable[[Alert], None]):
        self.callback = callback

    def emit(self, alert: Alert) -> None:
        self.callback(alert)


class FanOutAlertSink:
    """Emits to every sink; one sink failing does not block the rest, but the
    first failure is re-raised afterwards so the caller can log it."""

    def __init__(self, sinks: Iterable[AlertSink] = ()):
        self.sinks: List[AlertSink] = list(sinks)

    def add(self, sink: AlertSink) -> None:
        self.sinks.append(sink)

    def emit(self, alert: Alert) -> None:
        first_error: Optional[Exception] = None
        for sink in list(self.sinks):
            try:
                sink.emit(alert)
            except Exception as e:
                if first_error is None:
                    first_error = e
                else:
                    log.exception("alert sink %s failed", type(sink).__name__)
        if first_error is not None:
            raise first_error

    def close(self) -> None:
        for sink in list(self.sinks):
            close = getattr(sink, "close", None)
            if close is None:
                continue
            try:
                close()
            except Exception:
                log.exception("closing alert sink %s failed", type(sink).__name__)
