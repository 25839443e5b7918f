"""FastAPI application for the abyss relay."""

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
from uuid_extensions import uuid7 as make_uuid7

from ._version import __version__
from .engine import Relay
from .metrics import metrics
from .options import RelayOptions
from .protocol import ERROR, REASON_BAD_FRAME, ErrorEvent, Frame
from .rooms import generate_room_code
from .transport import QueueTransport, pump

logger = logging.getLogger(__name__)


async def close_connection(
    relay: Relay,
    transport: QueueTransport,
    connection_id: str,
    writer: asyncio.Task,
) -> None:
    """Tear down one socket: leave its room, then stop and drain its writer.

    The queue is always unregistered, even if the relay fails to clean up.
    """
    try:
        relay.disconnect(connection_id)
    except Exception:
        logger.error(f"Error handling disconnect for {connection_id}", exc_info=True)
        metrics.increment("handler_errors")
    finally:
        transport.unregister(connection_id)
        try:
            await asyncio.wait_for(writer, timeout=1.0)
        except (asyncio.TimeoutError, asyncio.CancelledError):
            writer.cancel()


def create_app(options: RelayOptions | None = None) -> FastAPI:
    """Build the relay application.

    The relay and its transport are created per app, in the lifespan, so
    each app (and each test client) starts with no rooms.
    """
    options = options or RelayOptions.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        transport = QueueTransport()
        app.state.transport = transport
        app.state.relay = Relay(transport, options)
        logger.info(
            f"Relay ready (history={options.history_capacity}, replay={options.replay_limit})"
        )
        yield
        logger.info("Relay shutting down")

    app = FastAPI(
        title="abyss",
        description="Ephemeral, password-gated, end-to-end encrypted chat relay",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.options = options

    app.add_middleware(
        CORSMiddleware,
        allow_origins=options.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_middleware(request: Request, call_next):
        """Middleware to track request timing for metrics."""
        start_time = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start_time) * 1000
        path = request.url.path
        endpoint = path[1:] if path in ("/health", "/metrics") else "other"
        metrics.record_handler(f"http:{endpoint}", duration_ms)

        # Add timing header for debugging
        response.headers["X-Response-Time-Ms"] = f"{duration_ms:.1f}"

        return response

    @app.websocket("/ws")
    async def relay_socket(websocket: WebSocket):
        """One relay connection.

        Frames are JSON objects `{"event": ..., "data": ...}`. Outbound
        frames go through a per-connection queue drained by a writer task.
        """
        relay: Relay = websocket.app.state.relay
        transport: QueueTransport = websocket.app.state.transport

        await websocket.accept()
        connection_id = str(make_uuid7())
        queue = transport.register(connection_id)
        writer = asyncio.create_task(pump(queue, websocket.send_json))
        relay.connect(connection_id)

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    frame = Frame.model_validate(json.loads(raw))
                except (ValueError, ValidationError):
                    logger.debug("Malformed frame from %s", connection_id)
                    transport.send(connection_id, ERROR, ErrorEvent(reason=REASON_BAD_FRAME).to_wire())
                    continue
                relay.dispatch(connection_id, frame.event, frame.data)
        except WebSocketDisconnect:
            pass
        finally:
            await close_connection(relay, transport, connection_id, writer)

    @app.get("/api/room-code")
    def room_code():
        """Suggest a fresh room code. Rooms only exist once someone joins."""
        return {"room": generate_room_code()}

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok"}

    @app.get("/metrics")
    def get_metrics(request: Request):
        """Get relay metrics."""
        relay: Relay = request.app.state.relay
        return {
            **metrics.to_dict(),
            "relay": relay.stats(),
        }

    return app


app = create_app()
