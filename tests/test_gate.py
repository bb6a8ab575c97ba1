import json

from posturewatch.common.events import NOTIFICATION_TOPIC, CooldownMessage
from posturewatch.notify.alerts import CallbackAlertSink, FanOutAlertSink
from posturewatch.notify.gate import GateDecision, NotificationGate
from posturewatch.notify.transport import LocalBus, UnavailableTransport


class Recorder:
    def __init__(self):
        self.alerts = []

    def emit(self, alert):
        self.alerts.append(alert)


class Denied:
    def __init__(self):
        self.requests = 0

    def is_granted(self):
        return False

    def request(self):
        self.requests += 1


def make_gate(clock, **kwargs):
    kwargs.setdefault("sink", Recorder())
    return NotificationGate(clock=clock, cooldown_ms=60_000, **kwargs)


def test_second_fire_inside_cooldown_is_suppressed(clock):
    gate = make_gate(clock)
    assert gate.fire("first") == GateDecision.FIRED
    clock.advance(59.9)
    assert gate.fire("second") == GateDecision.COOLDOWN
    clock.advance(0.2)
    assert gate.fire("third") == GateDecision.FIRED
    assert [a.body for a in gate.sink.alerts] == ["first", "third"]


def test_remote_broadcast_extends_cooldown(clock):
    bus = LocalBus()
    here = make_gate(clock, transport=bus, instance_id="here")
    there = make_gate(clock, transport=bus, instance_id="there")

    assert here.fire("local") == GateDecision.FIRED
    clock.advance(50)
    assert there.fire("ignored") == GateDecision.COOLDOWN

    # another instance fires later and tells everyone
    bus.publish(NOTIFICATION_TOPIC, CooldownMessage("elsewhere", clock.now).to_dict())
    assert here.last_fire_at == clock.now
    clock.advance(30)  # 80s after the local alert, 30s after the remote one
    assert here.fire("still quiet") == GateDecision.COOLDOWN
    assert len(here.sink.alerts) == 1
    assert there.sink.alerts == []


def test_own_broadcast_is_ignored(clock):
    bus = LocalBus()
    gate = make_gate(clock, transport=bus, instance_id="me")
    gate.fire("hello")
    first = gate.last_fire_at
    bus.publish(NOTIFICATION_TOPIC, CooldownMessage("me", first + 500).to_dict())
    assert gate.last_fire_at == first


def test_stale_or_malformed_broadcast_does_not_rewind(clock):
    bus = LocalBus()
    gate = make_gate(clock, transport=bus)
    gate.fire("hello")
    stamp = gate.last_fire_at
    bus.publish(NOTIFICATION_TOPIC, CooldownMessage("other", stamp - 100).to_dict())
    bus.publish(NOTIFICATION_TOPIC, {"type": "notification_sent", "instance_id": "x"})
    bus.publish(NOTIFICATION_TOPIC, {"type": "something_else", "instance_id": "x", "timestamp": stamp + 1})
    assert gate.last_fire_at == stamp


def test_disabled_gate_never_fires(clock):
    gate = make_gate(clock, enabled=False)
    assert gate.fire("x") == GateDecision.DISABLED
    assert gate.last_fire_at is None


def test_missing_permission_requests_and_drops(clock):
    perm = Denied()
    gate = make_gate(clock, permission=perm)
    assert gate.fire("x") == GateDecision.NO_PERMISSION
    assert perm.requests == 1
    assert gate.sink.alerts == []
    assert gate.last_fire_at is None


def test_failing_sink_still_advances_cooldown(clock):
    def boom(alert):
        raise RuntimeError("display gone")

    shown = Recorder()
    gate = make_gate(clock, sink=FanOutAlertSink([CallbackAlertSink(boom), shown]))
    assert gate.fire("x") == GateDecision.FIRED
    assert gate.last_fire_at == clock.now
    assert len(shown.alerts) == 1
    assert gate.fire("y") == GateDecision.COOLDOWN


def test_unavailable_transport_degrades_to_local_cooldown(clock):
    gate = make_gate(clock, transport=UnavailableTransport())
    assert gate.transport is None
    assert gate.fire("x") == GateDecision.FIRED
    assert gate.fire("y") == GateDecision.COOLDOWN


def test_close_unsubscribes(clock):
    bus = LocalBus()
    gate = make_gate(clock, transport=bus)
    assert bus.subscriber_count(NOTIFICATION_TOPIC) == 1
    gate.close()
    assert bus.subscriber_count(NOTIFICATION_TOPIC) == 0


def test_alert_payload(clock):
    gate = make_gate(clock, auto_dismiss_s=12)
    gate.fire("Sit up", tier="t1")
    alert = gate.sink.alerts[0].to_dict()
    assert alert["title"] == "Posture alert"
    assert alert["tier"] == "t1"
    assert alert["require_interaction"] is True
    assert alert["auto_dismiss_s"] == 12
    assert alert["vibrate"] == [200, 100, 200]


def test_non_finite_broadcast_cannot_silence_alerts(clock):
    bus = LocalBus()
    gate = make_gate(clock, transport=bus)
    for raw in ('{"type": "notification_sent", "instance_id": "x", "timestamp": Infinity}',
                '{"type": "notification_sent", "instance_id": "x", "timestamp": NaN}'):
        bus.publish(NOTIFICATION_TOPIC, json.loads(raw))
    assert gate.last_fire_at is None
    clock.advance(10 * 365 * 24 * 3600)
    assert gate.fire("sit up") == GateDecision.FIRED


def test_broadcast_from_a_clock_ahead_is_capped_at_now(clock):
    bus = LocalBus()
    gate = make_gate(clock, transport=bus)
    bus.publish(NOTIFICATION_TOPIC, CooldownMessage("fast-clock", clock.now + 3600).to_dict())
    assert gate.last_fire_at == clock.now
    clock.advance(60)
    assert gate.fire("sit up") == GateDecision.FIRED
