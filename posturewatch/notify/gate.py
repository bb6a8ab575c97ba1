from __future__ import annotations
import logging
import time
import uuid
from enum import Enum
from typing import Callable, Optional

from posturewatch.common.config import DEFAULT_NOTIFY_COOLDOWN_MS
from posturewatch.common.events import NOTIFICATION_TOPIC, CooldownMessage
from posturewatch.notify.alerts import ALERT_TITLE, Alert, AlertSink, LogAlertSink
from posturewatch.notify.permissions import AlwaysGranted, PermissionProvider
from posturewatch.notify.transport import Transport, TransportUnavailable, Unsubscribe

log = logging.getLogger(__name__)


class GateDecision(str, Enum):
    DISABLED = "disabled"
    NO_PERMISSION = "no_permission"
    COOLDOWN = "cooldown"
    FIRED = "fired"


class NotificationGate:
    """Cooldown- and permission-gated alert emitter.

    Every alert shown here is announced on the transport; sibling instances
    advance their own cooldown from it without showing a duplicate alert.
    Without a transport the cooldown is simply per instance.
    """

    def __init__(
        self,
        sink: Optional[AlertSink] = None,
        transport: Optional[Transport] = None,
        permission: Optional[PermissionProvider] = None,
        cooldown_ms: int = DEFAULT_NOTIFY_COOLDOWN_MS,
        enabled: bool = True,
        instance_id: Optional[str] = None,
        clock: Callable[[], float] = time.time,
        topic: str = NOTIFICATION_TOPIC,
        auto_dismiss_s: float = 10.0,
    ):
        self.sink = sink or LogAlertSink()
        self.permission = permission or AlwaysGranted()
        self.cooldown_ms = cooldown_ms
        self.enabled = enabled
        self.instance_id = instance_id or uuid.uuid4().hex
        self.clock = clock
        self.topic = topic
        self.auto_dismiss_s = auto_dismiss_s
        self.last_fire_at: Optional[float] = None
        self.transport: Optional[Transport] = None
        self._unsubscribe: Optional[Unsubscribe] = None
        if transport is not None:
            self.attach(transport)

    def attach(self, transport: Transport) -> bool:
        """Subscribe to sibling broadcasts; False means per-instance cooldown only."""
        self.close()
        try:
            self._unsubscribe = transport.subscribe(self.topic, self._on_broadcast)
        except TransportUnavailable as e:
            log.warning("cross-instance channel unavailable (%s); cooldown is per instance", e)
            self.transport = None
            return False
        self.transport = transport
        return True

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.transport = None

    def in_cooldown(self, now: Optional[float] = None) -> bool:
        now = self.clock() if now is None else now
        if self.last_fire_at is None:
            return False
        return (now - self.last_fire_at) * 1000.0 < self.cooldown_ms

    def fire(self, message: str, tier: Optional[str] = None, now: Optional[float] = None) -> GateDecision:
        if not self.enabled:
            return GateDecision.DISABLED

        if not self.permission.is_granted():
            # the user has to retrigger once permission lands
            self.permission.request()
            log.debug("alert dropped: permission not granted")
            return GateDecision.NO_PERMISSION

        now = self.clock() if now is None else now
        if self.in_cooldown(now):
            log.debug("alert suppressed: cooldown (%.1fs since last)", now - self.last_fire_at)
            return GateDecision.COOLDOWN

        # advanced before emitting so a failing sink can't cause a retry storm
        self.last_fire_at = now
        self._broadcast(now)

        alert = Alert(title=ALERT_TITLE, body=message, tier=tier, auto_dismiss_s=self.auto_dismiss_s)
        try:
            self.sink.emit(alert)
        except Exception:
            log.exception("failed to show alert")
        else:
            log.info("alert shown: %s", message)
        return GateDecision.FIRED

    def _broadcast(self, now: float) -> None:
        if self.transport is None:
            return
        msg = CooldownMessage(instance_id=self.instance_id, timestamp=now)
        try:
            self.transport.publish(self.topic, msg.to_dict())
        except TransportUnavailable as e:
            log.warning("broadcast channel lost (%s); cooldown is per instance", e)
            self.close()
        except Exception:
            log.exception("cooldown broadcast failed")

    def _on_broadcast(self, data: dict) -> None:
        msg = CooldownMessage.from_dict(data)
        if msg is None or msg.instance_id == self.instance_id:
            return
        # a sender whose clock runs ahead must not push the window past our own now
        stamp = min(msg.timestamp, self.clock())
        if self.last_fire_at is None or stamp > self.last_fire_at:
            self.last_fire_at = stamp
            log.debug("cooldown advanced by instance %s", msg.instance_id[:8])
