import asyncio
import logging
from typing import Any, Dict, Optional, Set

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from .command_catalog import bootstrap_commands, default_search_space, list_loops, list_methods
from .device_client import AsyncDeviceClient
from .models import ConnectRequest, DisconnectResponse, RunState, StartTuningRequest, TestRunnerSettings
from .protocol import TelemetryMessage
from .runner import TelemetryTestRunner
from .session import TuningSession, build_optimizer
from .state_store import TunerStateStore


logger = logging.getLogger(__name__)


class WebSocketHub:
    def __init__(self) -> None:
        self._clients: Set[WebSocket] = set()
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._clients.add(websocket)

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._clients.discard(websocket)

    async def broadcast(self, event_type: str, data: Dict[str, Any]) -> None:
        payload = {"type": event_type, "data": data}
        stale: Set[WebSocket] = set()
        async with self._lock:
            clients = list(self._clients)
        for client in clients:
            try:
                await client.send_json(payload)
            except Exception as exc:
                logger.debug("Dropping websocket client: %s", exc)
                stale.add(client)
        if stale:
            async with self._lock:
                for client in stale:
                    self._clients.discard(client)


class TunerService:
    def __init__(self, device_client: Optional[AsyncDeviceClient] = None) -> None:
        self.state_store = TunerStateStore(recent_results_limit=200)
        self.ws_hub = WebSocketHub()
        self.device_client = device_client
        self.session: Optional[TuningSession] = None
        self._unsubscribe = None

    async def init_device_client(self) -> None:
        async def on_connection(connected: bool,
                                host: Optional[str],
                                port: Optional[int],
                                reason: str) -> None:
            patch = self.state_store.set_connection(connected, host, port, reason)
            await self.ws_hub.broadcast("connection", patch["connection"])
            await self.ws_hub.broadcast("state_patch", patch)

        async def on_error(message: str) -> None:
            logger.warning(message)
            await self.ws_hub.broadcast("error", {"message": message})

        if self.device_client is None:
            self.device_client = AsyncDeviceClient(on_connection=on_connection, on_error=on_error)
        elif hasattr(self.device_client, "set_callbacks"):
            self.device_client.set_callbacks(on_connection, on_error)

        if self._unsubscribe is None:
            self._unsubscribe = self.device_client.subscribe(self.on_device_message)

    async def on_device_message(self, message: Any) -> None:
        patch = self.state_store.apply_message(message)
        if not patch:
            return
        if isinstance(message, TelemetryMessage):
            await self.ws_hub.broadcast("telemetry", patch["robot"])
        await self.ws_hub.broadcast("state_patch", patch)

    async def on_tuning_event(self, event_type: str, data: Dict[str, Any]) -> None:
        patch = self.state_store.apply_tuning_event(event_type, data)
        await self.ws_hub.broadcast("tuning", {"event": event_type, "data": data})
        await self.ws_hub.broadcast("state_patch", patch)

    @property
    def connected(self) -> bool:
        return self.device_client is not None and self.device_client.is_connected

    @property
    def session_active(self) -> bool:
        return self.session is not None and self.session.active

    def start_session(self, payload: StartTuningRequest) -> TuningSession:
        search_space = payload.search_space or default_search_space(payload.loop)
        settings = TestRunnerSettings(**dict(payload.runner, loop=payload.loop))
        runner = TelemetryTestRunner(self.device_client, settings)
        optimizer = build_optimizer(payload.method, runner, search_space, payload.config, seed=payload.seed)
        baseline = payload.baseline.to_gains() if payload.baseline is not None else None

        session = TuningSession(optimizer, runner, baseline=baseline, listener=self.on_tuning_event)
        cfg = optimizer.config
        total = getattr(cfg, "generations", None) or getattr(cfg, "iterations", None)
        self.state_store.start_tuning(payload.method, payload.loop, total)
        self.session = session
        session.start()
        logger.info("Started %s tuning on the %s loop", payload.method, payload.loop)
        return session

    async def stop_session(self) -> None:
        if self.session_active:
            self.session.stop()
            await self.session.wait()


def _require_session(service: TunerService) -> TuningSession:
    if service.session is None:
        raise HTTPException(status_code=409, detail="No tuning session")
    return service.session


def create_app(device_client: Optional[AsyncDeviceClient] = None) -> FastAPI:
    service = TunerService(device_client=device_client)
    app = FastAPI(title="Balancing robot PID tuner", version="0.1.0")

    @app.on_event("startup")
    async def _startup() -> None:
        await service.init_device_client()

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await service.stop_session()
        if service.connected:
            await service.device_client.disconnect("shutdown")

    @app.post("/api/connect")
    async def api_connect(payload: ConnectRequest) -> Dict[str, Any]:
        await service.init_device_client()

        try:
            await service.device_client.connect(payload.host, payload.port)
            for command in bootstrap_commands():
                await service.device_client.send(command)
        except Exception as exc:
            raise HTTPException(status_code=502, detail="Connection failed: %s" % exc)

        if service.device_client.is_connected:
            patch = service.state_store.set_connection(True, payload.host, payload.port, "connected")
            await service.ws_hub.broadcast("connection", patch["connection"])
            await service.ws_hub.broadcast("state_patch", patch)

        return service.state_store.snapshot()["connection"]

    @app.post("/api/disconnect")
    async def api_disconnect() -> Dict[str, Any]:
        await service.stop_session()
        if service.connected:
            await service.device_client.disconnect("manual_disconnect")
        patch = service.state_store.set_connection(False, reason="manual_disconnect")
        await service.ws_hub.broadcast("connection", patch["connection"])
        await service.ws_hub.broadcast("state_patch", patch)
        return DisconnectResponse(disconnected=True).model_dump()

    @app.get("/api/status")
    async def api_status() -> Dict[str, Any]:
        return service.state_store.snapshot()

    @app.get("/api/methods")
    async def api_methods() -> Dict[str, Any]:
        return {"methods": list_methods()}

    @app.get("/api/loops")
    async def api_loops() -> Dict[str, Any]:
        return {"loops": list_loops()}

    @app.post("/api/tuning/start")
    async def api_tuning_start(payload: StartTuningRequest) -> Dict[str, Any]:
        if not service.connected:
            raise HTTPException(status_code=409, detail="Not connected")
        if service.session_active:
            raise HTTPException(status_code=409, detail="A tuning session is already running")

        try:
            session = service.start_session(payload)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.errors(include_url=False, include_context=False))
        except (KeyError, TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc))

        return {
            "started": True,
            "method": session.method,
            "loop": payload.loop,
            "search_space": session.optimizer.search_space.model_dump(),
            "config": session.optimizer.config.model_dump(),
        }

    @app.post("/api/tuning/pause")
    async def api_tuning_pause() -> Dict[str, Any]:
        session = _require_session(service)
        try:
            session.pause()
        except RuntimeError as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        return {"state": session.state.value}

    @app.post("/api/tuning/resume")
    async def api_tuning_resume() -> Dict[str, Any]:
        session = _require_session(service)
        try:
            session.resume()
        except RuntimeError as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        return {"state": session.state.value}

    @app.post("/api/tuning/stop")
    async def api_tuning_stop() -> Dict[str, Any]:
        session = _require_session(service)
        session.stop()
        return {"state": session.state.value, "stop_requested": session.optimizer.stop_requested}

    @app.post("/api/tuning/apply-best")
    async def api_tuning_apply_best() -> Dict[str, Any]:
        session = _require_session(service)
        if not service.connected:
            raise HTTPException(status_code=409, detail="Not connected")
        if session.state == RunState.RUNNING:
            raise HTTPException(status_code=409, detail="Pause or stop the session first")
        best = session.optimizer.best
        if best is None:
            raise HTTPException(status_code=404, detail="No successful test yet")

        try:
            await session.runner.apply_gains(best.gains)
        except Exception as exc:
            raise HTTPException(status_code=500, detail="Parameter send failed: %s" % exc)

        result = best.to_dict()
        await service.ws_hub.broadcast("tuning", {"event": "applied", "data": result})
        return result

    @app.get("/api/tuning/history")
    async def api_tuning_history(limit: Optional[int] = None) -> Dict[str, Any]:
        if service.session is None:
            return {"method": None, "state": RunState.IDLE.value, "history": [], "best": None}
        optimizer = service.session.optimizer
        history = [ev.to_dict() for ev in optimizer.history]
        if limit is not None:
            history = history[-limit:]
        return {
            "method": optimizer.method,
            "state": optimizer.state.value,
            "history": history,
            "best": optimizer.best.to_dict() if optimizer.best else None,
        }

    @app.websocket("/ws")
    async def ws_endpoint(websocket: WebSocket) -> None:
        await service.ws_hub.connect(websocket)
        snapshot = service.state_store.snapshot()
        await websocket.send_json({"type": "connection", "data": snapshot["connection"]})
        await websocket.send_json({"type": "state_patch", "data": snapshot})
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            await service.ws_hub.disconnect(websocket)

    app.state.tuner_service = service
    return app


app = create_app()
