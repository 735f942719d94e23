import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import Body, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from config import config
from ingest.binance_rest import ExchangeError, RateLimitError
from monitoring.logging_utils import setup_logging
from orchestration.poller import CREDENTIAL_ERRORS
from risk.models import AlertType
from risk.pnl_alerts import validate_pnl_alert
from risk.settings import ValidationError


logger = logging.getLogger(__name__)

monitoring_system = None

HEARTBEAT_S = 15.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    global monitoring_system
    system = getattr(app.state, "monitoring_system", None)
    if system is None:
        from main import MonitoringSystem
        system = MonitoringSystem()
    monitoring_system = system
    await monitoring_system.start()
    try:
        yield
    finally:
        await monitoring_system.stop()
        monitoring_system = None


app = FastAPI(title="LossGuard Risk Monitor API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.api['cors_origins'],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _system():
    if monitoring_system is None:
        raise HTTPException(status_code=503, detail="Monitoring system not initialized")
    return monitoring_system


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"error": str(exc), "field": exc.field})


async def credentials_error_handler(request: Request, exc: Exception):
    return JSONResponse(
        status_code=409,
        content={"error": str(exc), "reconfigure": True, "hint": "Re-enter your exchange API keys"},
    )


for _exc_type in CREDENTIAL_ERRORS:
    app.add_exception_handler(_exc_type, credentials_error_handler)


@app.exception_handler(RateLimitError)
async def rate_limit_error_handler(request: Request, exc: RateLimitError):
    headers = {"Retry-After": str(int(exc.retry_after))} if exc.retry_after else None
    return JSONResponse(
        status_code=429,
        content={"error": str(exc), "retry_after": exc.retry_after},
        headers=headers,
    )


@app.exception_handler(ExchangeError)
async def exchange_error_handler(request: Request, exc: ExchangeError):
    return JSONResponse(status_code=502, content={"error": str(exc)})


class ConnectionManager:
    def __init__(self):
        self.active_connections: Dict[str, List[WebSocket]] = {}

    async def connect(self, user_id: str, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.setdefault(user_id, []).append(websocket)

    def disconnect(self, user_id: str, websocket: WebSocket):
        connections = self.active_connections.get(user_id, [])
        if websocket in connections:
            connections.remove(websocket)
        if not connections:
            self.active_connections.pop(user_id, None)

    def count(self) -> int:
        return sum(len(c) for c in self.active_connections.values())

manager = ConnectionManager()

@app.get("/")
async def root():
    return {
        "service": "LossGuard Risk Monitor",
        "version": "1.0.0",
        "status": "running" if monitoring_system and monitoring_system.running else "stopped"
    }

@app.get("/favicon.ico")
async def favicon():
    return Response(content=b"", media_type="image/x-icon")

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": _now(),
        "system_running": monitoring_system.running if monitoring_system else False,
        "websocket_clients": manager.count(),
    }

@app.get("/metrics")
async def prometheus_metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

@app.get("/api/status")
async def get_status():
    return _system().status()

@app.get("/api/users/{user_id}/snapshot")
async def get_snapshot(user_id: str):
    system = _system()
    snapshot = await system.account_snapshot(user_id)
    data = snapshot.to_dict()
    margin_limit = float(config.section("risk").get("critical_margin_ratio", 80))
    data["critical_positions"] = [p.to_dict() for p in snapshot.critical_positions(margin_limit)]
    session = system.sessions.get(user_id)
    if session and session.poller and session.poller.last_result:
        data["evaluation"] = session.poller.last_result.to_dict()
    data["timestamp"] = _now()
    return data

@app.get("/api/users/{user_id}/alarm")
async def get_alarm(user_id: str):
    system = _system()
    session = system.sessions.get(user_id)
    if session is None:
        return {"state": "idle", "alert_type": None, "monitoring": False}
    data = session.alarm.to_dict()
    data["monitoring"] = session.monitoring
    return data

@app.post("/api/users/{user_id}/alarm/stop")
async def stop_alarm(user_id: str):
    result = await _system().stop_alarm(user_id)
    result["timestamp"] = _now()
    return result

@app.post("/api/users/{user_id}/alarm/test")
async def test_alarm(user_id: str, payload: Dict[str, Any] = Body(default={})):
    raw_type = payload.get("type", AlertType.CRITICAL_LOSS.value)
    try:
        alert_type = AlertType(raw_type)
    except ValueError:
        raise ValidationError("type", f"unknown alert type {raw_type!r}")
    if alert_type not in (AlertType.CRITICAL_LOSS, AlertType.GAIN):
        raise ValidationError("type", "test alerts support gain or critical_loss")
    return await _system().test_alarm(user_id, alert_type)

@app.post("/api/users/{user_id}/monitor/start")
async def start_monitor(user_id: str):
    session = await _system().start_monitoring(user_id)
    return session.status()

@app.post("/api/users/{user_id}/monitor/stop")
async def stop_monitor(user_id: str):
    stopped = await _system().stop_monitoring(user_id)
    return {"stopped": stopped, "timestamp": _now()}

@app.post("/api/users/{user_id}/monitor/resume")
async def resume_monitor(user_id: str):
    resumed = await _system().resume_monitoring(user_id)
    if not resumed:
        raise HTTPException(status_code=404, detail=f"No monitoring session for {user_id}")
    return {"resumed": True, "timestamp": _now()}

@app.post("/api/users/{user_id}/kill_switch")
async def trigger_kill_switch(user_id: str):
    report = await _system().run_kill_switch(user_id, reason="manual")
    data = report.to_dict()
    data["timestamp"] = _now()
    return data

@app.get("/api/users/{user_id}/settings")
async def get_settings(user_id: str):
    profile = await _system().settings.get(user_id)
    return profile.to_dict()

@app.put("/api/users/{user_id}/settings")
async def update_settings(user_id: str, payload: Dict[str, Any] = Body(...)):
    system = _system()
    profile = await system.settings.save(user_id, payload)
    session = system.sessions.get(user_id)
    if session is not None:
        session.alarm.siren = profile.siren_type
    return profile.to_dict()

@app.put("/api/users/{user_id}/account")
async def save_account(user_id: str, payload: Dict[str, Any] = Body(...)):
    for field in ("api_key", "api_secret"):
        if not isinstance(payload.get(field), str) or not payload[field].strip():
            raise ValidationError(field, "is required")
    system = _system()
    account = await system.vault.save(
        user_id,
        str(payload.get("account_name") or "Binance"),
        payload["api_key"].strip(),
        payload["api_secret"].strip(),
    )
    resumed = await system.resume_monitoring(user_id)
    return {"id": account.id, "account_name": account.account_name, "resumed": resumed}

@app.get("/api/users/{user_id}/alerts")
async def get_alerts(user_id: str, limit: int = 50):
    alerts = await _system().alert_history(user_id, limit)
    return {"alerts": [a.to_dict() for a in alerts], "count": len(alerts), "timestamp": _now()}

@app.post("/api/alerts/{alert_id}/ack")
async def acknowledge_alert(alert_id: int):
    record = await _system().store.acknowledge_alert(alert_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Alert {alert_id} not found")
    return record.to_dict()

@app.delete("/api/users/{user_id}/alerts/test")
async def clear_test_alerts(user_id: str):
    deleted = await _system().store.clear_test_alerts(user_id)
    return {"deleted": deleted}

@app.get("/api/users/{user_id}/notifications")
async def get_notifications(user_id: str, limit: int = 50):
    notifications = await _system().store.list_notifications(user_id, limit)
    return {"notifications": [n.to_dict() for n in notifications], "count": len(notifications)}

@app.post("/api/notifications/{notification_id}/read")
async def mark_notification_read(notification_id: int):
    if not await _system().store.mark_notification_read(notification_id):
        raise HTTPException(status_code=404, detail=f"Notification {notification_id} not found")
    return {"read": True}

@app.post("/api/rate_limit/check")
async def check_rate_limit(payload: Dict[str, Any] = Body(...)):
    identifier = payload.get("identifier")
    attempt_type = payload.get("attempt_type")
    if not identifier or not attempt_type:
        raise ValidationError("identifier", "identifier and attempt_type are required")
    decision = await _system().rate_limiter.check(
        str(identifier),
        str(attempt_type),
        success=bool(payload.get("success", False)),
    )
    return JSONResponse(status_code=200 if decision.allowed else 429, content=decision.to_dict())

@app.post("/api/users/{user_id}/pnl/sync")
async def sync_pnl(user_id: str, payload: Dict[str, Any] = Body(default={})):
    window = payload.get("window_days")
    if window is not None and (isinstance(window, bool) or not isinstance(window, int)):
        raise ValidationError("window_days", "must be an integer")
    progress = await _system().sync_pnl(user_id, window)
    return progress.to_dict()

@app.get("/api/users/{user_id}/pnl_alerts")
async def get_pnl_alerts(user_id: str):
    configs = await _system().pnl_alert_configs(user_id)
    return {"alerts": [c.to_dict() for c in configs], "count": len(configs)}

@app.post("/api/users/{user_id}/pnl_alerts")
async def save_pnl_alert(user_id: str, payload: Dict[str, Any] = Body(...)):
    system = _system()
    alert_config = validate_pnl_alert(user_id, payload)
    if alert_config.id is not None:
        owned = {c.id for c in await system.pnl_alert_configs(user_id)}
        if alert_config.id not in owned:
            raise HTTPException(status_code=404, detail=f"PnL alert {alert_config.id} not found")
    saved = await system.store.save_pnl_alert_config(alert_config)
    return saved.to_dict()

@app.post("/api/users/{user_id}/pnl_alerts/check")
async def check_pnl_alerts(user_id: str):
    hits = await _system().check_pnl_alerts(user_id)
    return {"triggered": [h.to_dict() for h in hits], "count": len(hits), "timestamp": _now()}

@app.post("/api/jobs/{name}/run")
async def run_job(name: str):
    system = _system()
    if name not in system.scheduler.jobs:
        raise HTTPException(status_code=404, detail=f"Unknown job {name}")
    await system.scheduler.run_job(name)
    return system.scheduler.jobs[name].to_dict()

@app.websocket("/ws/{user_id}")
async def websocket_endpoint(websocket: WebSocket, user_id: str):
    system = monitoring_system
    if system is None:
        await websocket.close(code=1013)
        return
    await manager.connect(user_id, websocket)
    subscription = system.bus.subscribe(user_id)
    try:
        session = system.sessions.get(user_id)
        await websocket.send_json({
            "type": "hello",
            "user_id": user_id,
            "timestamp": _now(),
            "data": session.status() if session else None,
        })
        while True:
            event = await subscription.get(timeout=HEARTBEAT_S)
            if event is None:
                await websocket.send_json({"type": "heartbeat", "timestamp": _now()})
                continue
            await websocket.send_json(event.to_dict())
    except WebSocketDisconnect:
        pass
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.warning("WebSocket stream for %s ended: %s", user_id, exc)
    finally:
        subscription.close()
        manager.disconnect(user_id, websocket)

if __name__ == "__main__":
    import uvicorn
    setup_logging()
    uvicorn.run(
        app,
        host=config.api['host'],
        port=config.api['port'],
        log_level="info"
    )
