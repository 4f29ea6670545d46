# app/main.py
import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.events import router as events_router, ws_router as events_ws_router
from app.api.flows import router as flows_router
from app.api.routes import router as routes_router
from app.api.sessions import router as sessions_router
from app.api.webhooks import router as webhooks_router
from app.config import Settings, get_settings
from app.core.errors import GraphError
from app.core.events import EventChannel
from app.core.flow_catalog import FlowCatalog
from app.core.flow_engine import FlowEngine
from app.core.orchestrator import CallOrchestrator
from app.core.routing import RoutingRegistry
from app.models.flow import parse_flow
from app.state.session_store import (
    RedisSessionBackend,
    SessionStore,
    connect_redis,
    disconnect_redis,
    run_sweeper,
)
from app.utils.logging import configure_logging

logger = logging.getLogger("ivr-flow-engine")


async def deploy_sample_flow(app: FastAPI, path: str, number: Optional[str]) -> None:
    """Deploy a flow JSON file at startup and optionally route a number to it."""
    state = app.state
    flow_path = Path(path)
    if not flow_path.exists():
        logger.warning("Sample flow %s not found; skipping", flow_path)
        return
    try:
        graph = await state.catalog.deploy(parse_flow(json.loads(flow_path.read_text())))
    except GraphError as exc:
        logger.error("Sample flow %s rejected: %s", flow_path, exc.errors)
        return
    if number:
        await state.routes.register(number, graph.id, flow_name=graph.name)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title="IVR Flow Engine",
        version="0.1.0",
        description="Inbound call -> routed flow graph -> TwiML, one carrier callback at a time",
    )

    # CORS - relaxed for dev
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.ENV == "dev" else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    catalog = FlowCatalog()
    routes = RoutingRegistry()
    sessions = SessionStore(idle_timeout=settings.SESSION_IDLE_TIMEOUT)
    engine = FlowEngine(settings, max_steps=settings.MAX_STEPS_PER_TURN)
    events = EventChannel.from_settings(settings)

    app.state.settings = settings
    app.state.catalog = catalog
    app.state.routes = routes
    app.state.sessions = sessions
    app.state.engine = engine
    app.state.events = events
    app.state.orchestrator = CallOrchestrator(settings, catalog, routes, sessions, engine=engine, events=events)
    app.state.redis = None
    app.state.db_connected = False
    app.state.sweeper = None

    app.include_router(webhooks_router, prefix="/webhook", tags=["webhook"])
    app.include_router(flows_router, prefix="/api/flows", tags=["flows"])
    app.include_router(routes_router, prefix="/api/routes", tags=["routes"])
    app.include_router(sessions_router, prefix="/api/sessions", tags=["sessions"])
    app.include_router(events_router, prefix="/api/events", tags=["events"])
    app.include_router(events_ws_router, tags=["events"])

    # Simple health endpoints
    @app.get("/", tags=["health"])
    async def root():
        return JSONResponse({"status": "ok", "service": "ivr-flow-engine", "env": settings.ENV})

    @app.get("/health", tags=["health"])
    async def health():
        return JSONResponse({
            "status": "ok",
            "db": app.state.db_connected,
            "redis": app.state.redis is not None,
            "events": events.state.value,
            "flows": len(catalog.list()),
            "routes": len(routes.list()),
        })

    @app.on_event("startup")
    async def on_startup():
        logger.info("Starting IVR flow engine (env=%s)", settings.ENV)
        if settings.DB_URL:
            from app.db.db import connect_db
            from app.storage import flows_store, routes_store

            await connect_db(settings.DB_URL)
            app.state.db_connected = True
            catalog.repository = flows_store
            routes.repository = routes_store
            graphs, active = await flows_store.load_flows()
            catalog.load(graphs, active)
            routes.load(await routes_store.load_routes())
            logger.info("Database connected")

        client = await connect_redis(settings.REDIS_URL)
        if client is not None:
            app.state.redis = client
            sessions.backend = RedisSessionBackend(
                client,
                ttl=settings.SESSION_IDLE_TIMEOUT,
                lock_timeout=settings.SESSION_LOCK_TIMEOUT,
            )
            logger.info("Sessions stored in Redis")

        if settings.SAMPLE_FLOW_PATH:
            await deploy_sample_flow(app, settings.SAMPLE_FLOW_PATH, settings.SAMPLE_FLOW_NUMBER)

        app.state.sweeper = asyncio.create_task(
            run_sweeper(sessions, settings.SESSION_SWEEP_INTERVAL, settings.SESSION_IDLE_TIMEOUT)
        )
        events.start()

    @app.on_event("shutdown")
    async def on_shutdown():
        logger.info("Shutting down IVR flow engine")
        if app.state.sweeper is not None:
            app.state.sweeper.cancel()
            try:
                await app.state.sweeper
            except asyncio.CancelledError:
                pass
            app.state.sweeper = None
        await events.stop()
        await disconnect_redis(app.state.redis)
        app.state.redis = None
        if app.state.db_connected:
            from app.db.db import disconnect_db

            await disconnect_db()
            app.state.db_connected = False

    return app


app = create_app()


# If run directly: start uvicorn programmatically (handy for `python -m app.main`)
if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "app.main:app",
        host=_settings.APP_HOST,
        port=_settings.APP_PORT,
        reload=_settings.ENV == "dev",
        log_level=_settings.LOG_LEVEL,
    )
