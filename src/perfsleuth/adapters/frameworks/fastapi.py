"""FastAPI adapter for the performance dashboard."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from functools import partial

from fastapi import (
    APIRouter,
    FastAPI,
    HTTPException,
    Query,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import JSONResponse
from fastapi.websockets import WebSocketState

from perfsleuth.adapters.broadcast import ClientChannel
from perfsleuth.core.encoding.snapshot import (
    encode_ndjson,
    recommendation_to_dict,
    snapshot_to_dict,
    trace_to_dict,
)
from perfsleuth.core.errors import ConnectionRejectedError
from perfsleuth.core.logs import get_logger
from perfsleuth.core.models import Severity
from perfsleuth.core.ports import SnapshotHistoryPort
from perfsleuth.runtime.engine import Engine

logger = get_logger(__name__)


def create_dashboard_router(
    engine: Engine,
    history: SnapshotHistoryPort | None = None,
) -> APIRouter:
    """Create a FastAPI router exposing the engine to dashboards.

    Endpoints:
        GET /snapshot: Latest dashboard snapshot.
        GET /traces: Recently completed traces, newest first.
        GET /recommendations: Active recommendations.
        GET /stats: Engine statistics and error counters.
        GET /history: Persisted snapshots as NDJSON (only with ``history``).
        WS /ws: Live snapshot feed. Clients identify with ``?token=``.

    Args:
        engine: Engine to expose.
        history: Optional store of persisted snapshots.

    Returns:
        APIRouter with the dashboard endpoints configured.
    """
    router = APIRouter()

    @router.get("/snapshot")
    async def get_snapshot() -> JSONResponse:
        """Return the latest snapshot as JSON."""
        return JSONResponse(content=snapshot_to_dict(engine.current_snapshot()))

    @router.get("/traces")
    async def get_traces(limit: int = Query(default=20, ge=0)) -> JSONResponse:
        """Return recently completed traces.

        Args:
            limit: Maximum number of traces returned.
        """
        traces = engine.recent_traces(limit)
        return JSONResponse(content=[trace_to_dict(t) for t in traces])

    @router.get("/recommendations")
    async def get_recommendations(
        since_severity: str = Query(default="info"),
    ) -> JSONResponse:
        """Return active recommendations at or above ``since_severity``."""
        try:
            minimum = Severity.parse(since_severity)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from None
        recommendations = engine.recommendations(minimum)
        return JSONResponse(
            content=[recommendation_to_dict(r) for r in recommendations]
        )

    @router.get("/stats")
    async def get_stats() -> JSONResponse:
        return JSONResponse(content=engine.stats())

    if history is not None:

        @router.get("/history")
        async def get_history(since: float = Query(default=0, ge=0)) -> Response:
            """Return persisted snapshots in NDJSON format.

            Args:
                since: Unix timestamp. Returns snapshots with timestamp > since.
            """
            snapshots = [s async for s in history.read(since=since)]
            return Response(
                content=encode_ndjson(snapshots),
                media_type="application/x-ndjson",
            )

    @router.websocket("/ws")
    async def dashboard_feed(websocket: WebSocket, token: str | None = None) -> None:
        try:
            client = engine.connect(token)
        except ConnectionRejectedError:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return
        await websocket.accept()
        await _serve_client(websocket, engine, client)

    return router


async def _serve_client(
    websocket: WebSocket, engine: Engine, client: ClientChannel
) -> None:
    """Pump snapshots to the socket while applying control messages.

    Control messages are read until the client disconnects. When the
    engine closes the channel, the pump closes the socket, which ends the
    read loop as well.
    """

    async def pump() -> None:
        while True:
            payload = await client.receive()
            if payload is None:
                break
            await websocket.send_text(payload)
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.close()

    writer = asyncio.create_task(pump())
    writer.add_done_callback(partial(_report_pump_failure, client))
    try:
        while websocket.application_state == WebSocketState.CONNECTED:
            engine.hub.handle_message(client, await websocket.receive_text())
    except WebSocketDisconnect:
        pass
    finally:
        engine.hub.disconnect(client)
        writer.cancel()


def _report_pump_failure(client: ClientChannel, task: asyncio.Task[None]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None and not isinstance(exc, WebSocketDisconnect):
        logger.error(
            "Dashboard connection failed",
            exc_info=exc,
            extra={"client_id": client.id},
        )


def create_dashboard_app(
    engine: Engine,
    history: SnapshotHistoryPort | None = None,
    title: str = "perfsleuth",
) -> FastAPI:
    """Create a FastAPI application serving the dashboard router.

    The engine is started and stopped with the application lifespan.
    """

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        await engine.start()
        yield
        await engine.stop()

    app = FastAPI(title=title, lifespan=lifespan)
    app.include_router(create_dashboard_router(engine, history))
    return app
