"""
Main FastAPI application file for upskeeper.
"""
from contextlib import asynccontextmanager
import logging
import time
from typing import Optional

from fastapi import FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from upskeeper import __version__
from upskeeper.api import alerts, nut, settings, setup, telemetry, wizard
from upskeeper.api.errors import register_exception_handlers
from upskeeper.api.websocket import websocket_endpoint
from upskeeper.config import get_settings
from upskeeper.core.bus import CHANNELS
from upskeeper.core.runtime import AgentRuntime
from upskeeper.core.websocket_manager import WebSocketManager
from upskeeper.utils.logging import setup_logging

logger = logging.getLogger("upskeeper.app")


def create_app(runtime: Optional[AgentRuntime] = None) -> FastAPI:
    """
    Build the API application around an agent runtime.

    Args:
        runtime: Runtime to serve. Built from the environment at startup
            when omitted.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Handles application startup and shutdown events.
        """
        agent = app.state.runtime
        if agent is None:
            agent = AgentRuntime(get_settings())
            app.state.runtime = agent
        setup_logging(settings=agent.settings)
        logger.info("Initializing upskeeper services...")
        manager: WebSocketManager = app.state.websocket_manager

        def forward(channel: str):
            async def push(data):
                await manager.broadcast(channel, data)
            return push

        # Keep the handles; the bus only holds weak references.
        app.state.push_subscriptions = [agent.bus.subscribe(channel, forward(channel)) for channel in CHANNELS]
        await agent.start()
        yield
        logger.info("Shutting down upskeeper services...")
        for subscription in app.state.push_subscriptions:
            subscription.unsubscribe()
        app.state.push_subscriptions = []
        await manager.close_all()
        await agent.stop()

    app = FastAPI(
        title="upskeeper API",
        description="upskeeper - UPS monitoring agent with Network UPS Tools (NUT) integration",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    app.state.websocket_manager = WebSocketManager()

    # The UI is served from a local origin of its own.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        duration_ms = int((time.monotonic() - start) * 1000)
        logger.debug("%s %s -> %s in %dms", request.method, request.url.path, response.status_code, duration_ms)
        return response

    register_exception_handlers(app)

    app.include_router(settings.router, prefix="/api", tags=["Settings"])
    app.include_router(telemetry.router, prefix="/api", tags=["Telemetry"])
    app.include_router(wizard.router, prefix="/api", tags=["Wizard"])
    app.include_router(setup.router, prefix="/api", tags=["Local NUT Setup"])
    app.include_router(nut.router, prefix="/api", tags=["NUT"])
    app.include_router(alerts.router, prefix="/api", tags=["Critical Alert"])

    @app.websocket("/ws")
    async def websocket_main_endpoint(websocket: WebSocket):
        await websocket_endpoint(websocket)

    return app


app = create_app()
