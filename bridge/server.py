"""
FastAPI server bridging the simulator and the MPC tracking stack.
Handles telemetry events over a websocket, runs one pipeline tick per event
and emits the steer command after the configured actuation delay.
"""

import asyncio
import time
import uuid
import logging
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Callable, Deque, Dict, Optional, Tuple

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import HTMLResponse
from pydantic import BaseModel
import uvicorn

from bridge.messages import (
    SteerPayload, TelemetryPayload, decode_message, manual_message, steer_message,
)
from bridge.scheduler import LatencyInjector
from control.mpc_controller import TrajectoryOptimizer
from data.formats.data_format import ControlCommand, TelemetryFrame, TickRecord, TickResult
from data.recorder import TickRecorder
from mpc_stack import StackConfig, TrackingPipeline, build_optimizer

TICK_SAMPLE_EVERY = 100


def _get_bridge_logger() -> logging.Logger:
    log_path = Path(__file__).resolve().parents[1] / "tmp" / "logs" / "mpc_bridge.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)

    bridge_logger = logging.getLogger("mpc_bridge")
    bridge_logger.setLevel(logging.INFO)

    if not any(isinstance(h, logging.FileHandler) and h.baseFilename == str(log_path)
               for h in bridge_logger.handlers):
        handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
        handler.setFormatter(formatter)
        bridge_logger.addHandler(handler)
        bridge_logger.propagate = False

    return bridge_logger


logger = _get_bridge_logger()


class TickResponse(BaseModel):
    """Result of a single HTTP tick."""
    status: str
    steer: SteerPayload
    cte: Optional[float] = None
    epsi: Optional[float] = None
    fallback_reason: Optional[str] = None


class ControlSession:
    """
    Control loop state for one connection.
    Owns its pipeline (and optimizer instance), latency injector and recorder.
    """

    def __init__(self, session_id: str, pipeline: TrackingPipeline,
                 injector: LatencyInjector, recorder: Optional[TickRecorder] = None):
        self.session_id = session_id
        self.pipeline = pipeline
        self.injector = injector
        self.recorder = recorder
        self.previous_command: Optional[ControlCommand] = None
        self.tick_count = 0
        self.fallback_count = 0
        self.closed = False

    def run_tick(self, frame: TelemetryFrame) -> TickResult:
        """Compute one tick. Safe to run in a worker thread."""
        return self.pipeline.process(frame, self.previous_command)

    def commit(self, frame: TelemetryFrame, result: TickResult) -> None:
        """Accept a tick result as the command being sent."""
        self.previous_command = result.command
        self.tick_count += 1
        if result.used_fallback:
            self.fallback_count += 1
        if self.recorder is not None:
            self.recorder.record_tick(TickRecord(
                timestamp=frame.timestamp,
                tick_id=self.tick_count,
                telemetry=frame,
                result=result,
                metadata={"session_id": self.session_id},
            ))

    def stop(self) -> int:
        """Stop the session; pending emissions are discarded. Returns how many were dropped."""
        if self.closed:
            return 0
        self.closed = True
        return self.injector.cancel()

    def close_recorder(self) -> None:
        """Flush and close the recorder. Blocks on file I/O."""
        if self.recorder is not None:
            self.recorder.close()

    def close(self) -> int:
        dropped = self.stop()
        self.close_recorder()
        return dropped


class ConnectionManager:
    """Creates and tears down one ControlSession per connection."""

    def __init__(self, config: StackConfig,
                 optimizer_factory: Optional[Callable[[], TrajectoryOptimizer]] = None):
        self.config = config
        self.optimizer_factory = optimizer_factory or partial(build_optimizer, config)
        self.sessions: Dict[str, ControlSession] = {}

    def open(self) -> ControlSession:
        session_id = uuid.uuid4().hex[:8]
        pipeline = TrackingPipeline(self.config, optimizer=self.optimizer_factory())
        injector = LatencyInjector(self.config.timing.latency_s)
        recorder = None
        if self.config.recording.enabled:
            recorder = TickRecorder(
                output_dir=self.config.recording.directory,
                recording_name=f"session_{session_id}_{datetime.now().strftime('%Y%m%d_%H%M%S')}",
                polynomial_degree=self.config.reference.polynomial_degree,
                metadata={"session_id": session_id, "config": asdict(self.config)},
            )
        session = ControlSession(session_id, pipeline, injector, recorder)
        self.sessions[session_id] = session
        return session

    def _release(self, session_id: str) -> Optional[Tuple[ControlSession, int]]:
        session = self.sessions.pop(session_id, None)
        if session is None:
            return None
        return session, session.stop()

    def _log_disconnect(self, session: ControlSession, dropped: int) -> None:
        logger.info(
            "Disconnected session=%s ticks=%d fallbacks=%d dropped_pending=%d",
            session.session_id,
            session.tick_count,
            session.fallback_count,
            dropped,
        )

    def close(self, session_id: str) -> None:
        released = self._release(session_id)
        if released is None:
            return
        session, dropped = released
        session.close_recorder()
        self._log_disconnect(session, dropped)

    async def close_async(self, session_id: str) -> None:
        """close() for the event loop: the recorder flush runs in the default executor."""
        released = self._release(session_id)
        if released is None:
            return
        session, dropped = released
        await asyncio.get_running_loop().run_in_executor(None, session.close_recorder)
        self._log_disconnect(session, dropped)

    def close_all(self) -> None:
        for session_id in list(self.sessions):
            self.close(session_id)

    async def close_all_async(self) -> None:
        for session_id in list(self.sessions):
            await self.close_async(session_id)

    @property
    def active(self) -> int:
        return len(self.sessions)


async def _receive_text(ws: WebSocket) -> str:
    message = await ws.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000))
    if message.get("text") is not None:
        return message["text"]
    return (message.get("bytes") or b"").decode("utf-8", errors="replace")


async def _handle_connection(ws: WebSocket, manager: ConnectionManager) -> None:
    await ws.accept()
    session = manager.open()
    logger.info("Connected!!! session=%s active=%d", session.session_id, manager.active)
    loop = asyncio.get_running_loop()
    time_budget = manager.config.optimizer.time_budget_s
    # Messages that arrived while a tick was running, in arrival order.
    pending: Deque[str] = deque()
    receiver: Optional[asyncio.Task] = None

    try:
        while True:
            if pending:
                text = pending.popleft()
            else:
                if receiver is None:
                    receiver = asyncio.ensure_future(_receive_text(ws))
                text = await receiver
                receiver = None
            inbound = decode_message(text)
            if inbound.kind == "ignore":
                continue
            if inbound.kind == "manual":
                logger.debug("[MANUAL] session=%s reason=%s", session.session_id, inbound.reason)
                await ws.send_text(manual_message())
                continue

            start_time = time.time()
            tick = loop.run_in_executor(None, session.run_tick, inbound.frame)
            # Keep reading while the solve runs so a disconnect is seen before commit.
            while not tick.done():
                if receiver is None:
                    receiver = asyncio.ensure_future(_receive_text(ws))
                await asyncio.wait({tick, receiver}, return_when=asyncio.FIRST_COMPLETED)
                if not receiver.done():
                    continue
                finished, receiver = receiver, None
                try:
                    pending.append(finished.result())
                except WebSocketDisconnect:
                    await manager.close_async(session.session_id)
                    await tick
                    logger.info("[DISCARD] session=%s disconnected during tick", session.session_id)
                    return
            result = tick.result()
            duration = time.time() - start_time
            if session.closed:
                logger.info("[DISCARD] session=%s closed during tick", session.session_id)
                break

            session.commit(inbound.frame, result)
            if time_budget and duration > time_budget:
                logger.warning(
                    "[SLOW] tick session=%s duration=%.3fs status=%s",
                    session.session_id,
                    duration,
                    result.status,
                )
            if session.tick_count % TICK_SAMPLE_EVERY == 0:
                logger.info(
                    "[TICK_SAMPLE] session=%s tick=%d status=%s cte=%s epsi=%s fallbacks=%d",
                    session.session_id,
                    session.tick_count,
                    result.status,
                    f"{result.cte:.3f}" if result.cte is not None else "n/a",
                    f"{result.epsi:.3f}" if result.epsi is not None else "n/a",
                    session.fallback_count,
                )
            session.injector.schedule(
                partial(ws.send_text, steer_message(result.output.to_payload()))
            )
    except WebSocketDisconnect:
        pass
    finally:
        if receiver is not None:
            receiver.cancel()
        await manager.close_async(session.session_id)


def create_app(config: StackConfig,
               optimizer_factory: Optional[Callable[[], TrajectoryOptimizer]] = None) -> FastAPI:
    """
    Build the bridge app.

    Args:
        config: Validated stack configuration
        optimizer_factory: Creates one optimizer per session (default: KinematicMPCSolver)
    """
    manager = ConnectionManager(config, optimizer_factory)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await manager.close_all_async()

    app = FastAPI(title="MPC Tracking Bridge Server", lifespan=lifespan)
    app.state.manager = manager

    @app.websocket("/")
    async def telemetry_socket(ws: WebSocket):
        await _handle_connection(ws, manager)

    @app.websocket("/ws")
    async def telemetry_socket_alias(ws: WebSocket):
        await _handle_connection(ws, manager)

    @app.get("/", response_class=HTMLResponse)
    async def index():
        """HTTP stub; the simulator only talks websocket."""
        return "<h1>Hello world!</h1>"

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "timestamp": time.time(),
            "active_sessions": manager.active,
        }

    @app.get("/api/config")
    async def get_config():
        """Active configuration."""
        return asdict(config)

    @app.post("/api/telemetry", response_model=TickResponse)
    async def run_telemetry_tick(payload: TelemetryPayload):
        """
        Run one stateless tick (no previous command, no injected delay).
        Used by offline tooling.
        """
        pipeline = TrackingPipeline(config, optimizer=manager.optimizer_factory())
        frame = payload.to_frame()
        result = await asyncio.get_running_loop().run_in_executor(None, pipeline.process, frame)
        return TickResponse(
            status=result.status,
            steer=SteerPayload(**result.output.to_payload()),
            cte=result.cte,
            epsi=result.epsi,
            fallback_reason=result.fallback_reason,
        )

    return app


def run_server(config: StackConfig):
    """Run the bridge server."""
    host = config.server.host
    port = config.server.port
    print(f"Starting MPC Tracking Bridge Server on {host}:{port}")
    print("Endpoints:")
    print("  WS   /               - Simulator telemetry/steer events")
    print("  GET  /               - HTTP stub")
    print("  GET  /api/health     - Health check")
    print("  GET  /api/config     - Active configuration")
    print("  POST /api/telemetry  - Run one stateless tick")

    uvicorn.run(create_app(config), host=host, port=port)
