"""FastAPI server for the Lora bridge."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from ..connection import BridgeConnection, Services
from ..events import ConnectionManager

logger = logging.getLogger(__name__)


def create_app(services: Services, manage_lifecycle: bool = True) -> FastAPI:
    """Create FastAPI app with injected dependencies.

    Args:
        services: Shared registry, watcher, memory and model clients
        manage_lifecycle: Start and stop the services with the app

    Returns:
        Configured FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await services.startup()
        yield
        if manage_lifecycle:
            await services.shutdown()

    app = FastAPI(
        title="Lora Bridge",
        description="Voice-driven broker for long-lived agent terminal sessions",
        version="0.1.0",
        lifespan=lifespan,
    )

    if services.config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=services.config.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.services = services
    app.state.ws_manager = ConnectionManager()

    from .routes import memory, sessions

    app.include_router(sessions.router, prefix="/api/sessions", tags=["sessions"])
    app.include_router(memory.router, prefix="/api/memory", tags=["memory"])

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """One client: terminals, voice turns and status over a single socket."""
        manager = app.state.ws_manager
        sink = await manager.connect(websocket)
        connection = BridgeConnection(services, sink)
        logger.info(f"Client connected ({manager.connection_count} total)")
        await sink.send("connected", {
            "speechAvailable": services.speech is not None and services.speech.available,
            "decisionModelAvailable": services.model is not None and services.model.available,
        })
        try:
            while True:
                raw = await websocket.receive_text()
                await connection.handle(raw)
        except WebSocketDisconnect:
            pass
        finally:
            sink.close()
            manager.disconnect(websocket)
            await connection.close()
            logger.info(f"Client disconnected ({manager.connection_count} remaining)")

    @app.get("/health")
    async def health():
        """Quick health check."""
        return {
            "status": "ok",
            "service": "lora-bridge",
            "connections": app.state.ws_manager.connection_count,
            "activeSessions": len(services.registry.active_sessions()),
            "hooksWatcher": services.watcher.reactive,
        }

    return app
