"""
Network server module.

FastAPI application exposing:
- `/ws`: persistent anchor connections (one AnchorSession each)
- `GET /visualization`: anchor and target positions (CORS-open)
- `POST /set-node-position`: administrative anchor position
- `POST /calibrate`: administrative calibration pair
- `GET /status`: anchor roster, liveness, target diagnostics, metrics
"""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.websockets import WebSocketState

import config
from trilat_core.domain import CoordinationService
from trilat_core.io import AnchorSession, SessionConfig, Transport
from trilat_core.localization import UnknownAnchorError

logger = logging.getLogger(__name__)


class Position3D(BaseModel):
    X: float
    Y: float
    Z: float


class SetNodePositionRequest(BaseModel):
    node_id: str
    position: Position3D


class CalibrationRequest(BaseModel):
    node_id: str
    rssi_at_1m: float
    path_loss: float = Field(gt=0)


class WebSocketTransport(Transport):
    """Session transport over a Starlette WebSocket."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        client = websocket.client
        self.peer = client.host if client else "unknown"

    async def accept(self):
        await self.websocket.accept()

    async def receive(self) -> Optional[str]:
        if self.websocket.client_state != WebSocketState.CONNECTED:
            return None
        message = await self.websocket.receive()
        if message["type"] == "websocket.disconnect":
            return None
        if message.get("text") is not None:
            return message["text"]
        return (message.get("bytes") or b"").decode("utf-8", errors="replace")

    async def send(self, text: str):
        await self.websocket.send_text(text)

    async def close(self):
        if (self.websocket.application_state == WebSocketState.CONNECTED and
                self.websocket.client_state == WebSocketState.CONNECTED):
            await self.websocket.close()


def create_app(
    service: Optional[CoordinationService] = None,
    session_config: Optional[SessionConfig] = None,
    status_interval_s: Optional[float] = None,
) -> FastAPI:
    """
    Build the coordination service application.

    Args:
        service: Coordination service (new default service if None)
        session_config: Configuration for anchor sessions
        status_interval_s: Period of the status log task (None disables it)

    Returns:
        FastAPI application
    """
    service = service or CoordinationService()
    session_config = session_config or SessionConfig()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        reporter = None
        if status_interval_s:
            reporter = asyncio.create_task(service.run_status_reporter(status_interval_s))
            logger.info(f"Status reporter started (every {status_interval_s:.0f}s)")
        yield
        if reporter is not None:
            reporter.cancel()
            with suppress(asyncio.CancelledError):
                await reporter
        logger.info("Coordination service stopped")

    app = FastAPI(
        title="Trilateration Hub",
        description="Anchor coordination and RSSI multilateration service",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def invalid_body(request: Request, exc: RequestValidationError):
        logger.warning(f"Rejected {request.url.path} body: {exc}")
        return JSONResponse(status_code=400, content={"detail": "Invalid JSON"})

    @app.websocket(config.SERVER_CONFIG["ws_path"])
    async def anchor_socket(websocket: WebSocket):
        logger.info(f"New connection request from {websocket.client}")
        session = AnchorSession(WebSocketTransport(websocket), service, session_config)
        await session.run()

    @app.get("/visualization")
    def visualization():
        return JSONResponse(
            content=service.visualization(),
            headers={"Access-Control-Allow-Origin": "*"},
        )

    @app.post("/set-node-position")
    def set_node_position(body: SetNodePositionRequest):
        pos = body.position
        try:
            service.update_anchor_position(body.node_id, (pos.X, pos.Y, pos.Z))
        except UnknownAnchorError:
            raise HTTPException(status_code=404, detail="Node not found")
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"status": "ok"}

    @app.post("/calibrate")
    def calibrate(body: CalibrationRequest):
        try:
            service.update_calibration(body.node_id, body.rssi_at_1m, body.path_loss)
        except UnknownAnchorError:
            raise HTTPException(status_code=404, detail="Node not found")
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"status": "ok"}

    @app.get("/status")
    def status():
        return service.status()

    return app
