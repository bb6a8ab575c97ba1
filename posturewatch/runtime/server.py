from __future__ import annotations
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Optional, Set

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from posturewatch.common.events import NOTIFICATION_TOPIC, CooldownMessage
from posturewatch.notify.transport import LocalBus
from posturewatch.posture.calibration import RejectReason
from posturewatch.runtime.monitor import PostureMonitor, build_monitor

log = logging.getLogger(__name__)


class SettingsPatch(BaseModel):
    shoulder_alignment_threshold_px: Optional[float] = Field(None, gt=0, description="Max shoulder height difference (px)")
    slouch_threshold_deg: Optional[float] = Field(None, gt=0, le=180, description="Max forward lean (degrees)")
    min_keypoint_confidence: Optional[float] = Field(None, ge=0, le=1)
    notification_cooldown_ms: Optional[int] = Field(None, ge=0, description="Minimum gap between alerts")
    notifications_enabled: Optional[bool] = None


class VisibilityArgs(BaseModel):
    visible: bool


class TestAlertArgs(BaseModel):
    message: str = Field("Test notification", min_length=1)


class Hub:
    """Connected websocket clients; sends are fire-and-forget from sync callbacks."""

    def __init__(self):
        self.clients: Set[WebSocket] = set()
        # strong refs so pending sends are not garbage-collected mid-flight
        self._tasks: Set[asyncio.Task] = set()

    async def broadcast(self, obj: dict, skip: Optional[WebSocket] = None):
        dead = []
        text = json.dumps(obj)
        for ws in list(self.clients):
            if ws is skip:
                continue
            try:
                await ws.send_text(text)
            except Exception:
                dead.append(ws)
        for ws in dead:
            self.clients.discard(ws)

    def push(self, obj: dict):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # emitted outside the server loop; nobody to deliver to
        task = loop.create_task(self.broadcast(obj))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


def create_app(monitor: Optional[PostureMonitor] = None) -> FastAPI:
    monitor = monitor or build_monitor()
    events = Hub()
    bus_clients = Hub()
    remove_listener = monitor.add_listener(events.push)

    # relay cooldown broadcasts between this process and remote instances
    bus = monitor.gate.transport if isinstance(monitor.gate.transport, LocalBus) else None
    unsubscribe_bus = bus.subscribe(NOTIFICATION_TOPIC, bus_clients.push) if bus is not None else None

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        remove_listener()
        if unsubscribe_bus is not None:
            unsubscribe_bus()
        monitor.close()

    app = FastAPI(title="posturewatch", lifespan=lifespan)
    app.state.monitor = monitor

    @app.get("/status")
    async def status():
        return JSONResponse(monitor.status())

    @app.post("/monitor/start")
    async def start():
        monitor.start()
        return {"running": True}

    @app.post("/monitor/stop")
    async def stop():
        monitor.stop()
        return {"running": False}

    @app.post("/monitor/visibility")
    async def visibility(args: VisibilityArgs):
        monitor.set_visible(args.visible)
        return {"visible": args.visible, "suspended": monitor.scheduler.suspended}

    @app.get("/calibration")
    async def get_calibration():
        profile = monitor.store.raw_record()
        if profile is None:
            return {"calibrated": False, "needed": True, "profile": None}
        return {
            "calibrated": True,
            "needed": monitor.store.is_needed(),
            "profile": {**profile.to_record(), "captured_at": profile.captured_at},
        }

    @app.post("/calibration")
    async def calibrate():
        result = await monitor.calibrate()
        if not result.ok:
            code = 409 if result.reason == RejectReason.NO_POSE else 422
            raise HTTPException(status_code=code, detail={"reason": result.reason.value, "message": result.message})
        settings = monitor.effective_settings()
        return {
            "calibrated": True,
            "captured_at": result.profile.captured_at,
            "shoulder_threshold_px": settings.shoulder_alignment_threshold_px,
            "slouch_threshold_deg": settings.slouch_threshold_deg,
        }

    @app.delete("/calibration")
    async def clear_calibration():
        monitor.clear_calibration()
        return {"calibrated": False}

    @app.get("/settings")
    async def get_settings():
        return {
            "base": asdict(monitor.base_settings),
            "effective": asdict(monitor.effective_settings()),
        }

    @app.put("/settings")
    async def put_settings(patch: SettingsPatch):
        base = monitor.update_settings(**patch.model_dump(exclude_none=True))
        return {"base": asdict(base), "effective": asdict(monitor.effective_settings())}

    @app.get("/alerts")
    async def alerts(limit: int = 20):
        if monitor.kv is None:
            return {"alerts": []}
        return {"alerts": monitor.kv.recent_alerts(max(1, min(limit, 200)))}

    @app.post("/alerts/test")
    async def test_alert(args: TestAlertArgs):
        decision = monitor.notify(args.message, tier="test")
        return {"decision": decision.value}

    @app.websocket("/ws/events")
    async def ws_events(ws: WebSocket):
        await ws.accept()
        events.clients.add(ws)
        try:
            while True:
                # clients only listen; anything they send is ignored
                await ws.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            events.clients.discard(ws)

    @app.websocket("/ws/bus")
    async def ws_bus(ws: WebSocket):
        await ws.accept()
        bus_clients.clients.add(ws)
        try:
            while True:
                raw = await ws.receive_text()
                try:
                    msg = CooldownMessage.from_dict(json.loads(raw))
                except ValueError:
                    msg = None
                if msg is None:
                    continue
                if bus is not None:
                    # local gate picks it up; the bus subscription relays it to other clients
                    bus.publish(NOTIFICATION_TOPIC, msg.to_dict())
                else:
                    await bus_clients.broadcast(msg.to_dict(), skip=ws)
        except WebSocketDisconnect:
            pass
        finally:
            bus_clients.clients.discard(ws)

    return app
