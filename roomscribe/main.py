import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import FileResponse
from fastapi.staticfiles import StaticFiles

from roomscribe.config import ScribeConfig, load_scribe_config
from roomscribe.context import AppContext
from roomscribe.routers.logs import create_logs_router
from roomscribe.routers.rooms import create_rooms_router
from roomscribe.routers.sessions import create_sessions_router
from roomscribe.routers.testing import create_testing_router
from roomscribe.services.logging_setup import configure_logging
from roomscribe.services.membership import RoomHub
from roomscribe.services.session_manager import SessionManager


def create_app(
    *,
    cwd: Optional[str] = None,
    config: Optional[ScribeConfig] = None,
    setup_logging: bool = True,
) -> FastAPI:
    cwd = cwd or os.getcwd()
    ctx = AppContext(cwd=cwd, data_dir=os.path.join(cwd, "data"))
    ctx.ensure_dirs()
    if setup_logging:
        configure_logging(ctx.logs_dir)
    logger = logging.getLogger("roomscribe.boot")
    logger.info("Boot: starting create_app cwd=%s", cwd)

    if config is None:
        try:
            config = load_scribe_config(ctx.config_path)
        except (ValueError, OSError) as exc:
            logger.exception("Boot: config load failed: %s", exc)
            raise
    logger.info(
        "Boot: transcribe_url=%s join=%s segment_interval_ms=%d samplerate=%d mic=%s format=%s",
        config.transport.url,
        config.join.url or "local-hub",
        config.capture.segment_interval_ms,
        config.capture.samplerate,
        config.microphone.enabled,
        config.transport.message_format,
    )

    hub = RoomHub()
    manager = SessionManager(config, hub)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        logger.info("Shutdown: tearing down sessions")
        await manager.shutdown()

    app = FastAPI(title="Roomscribe", version="0.1.0", lifespan=lifespan)
    app.state.ctx = ctx
    app.state.config = config
    app.state.sessions = manager
    app.state.hub = hub

    app.include_router(create_sessions_router(manager))
    logger.info("Boot: sessions router mounted")
    app.include_router(create_rooms_router(hub))
    logger.info("Boot: rooms router mounted")
    app.include_router(create_logs_router())
    app.include_router(create_testing_router(ctx))
    logger.info("Boot: testing router mounted")

    @app.get("/")
    def root():
        index_path = os.path.join(ctx.static_dir, "index.html")
        if os.path.exists(index_path):
            return FileResponse(index_path)
        return {"message": "Roomscribe API running", "version": app.version}

    @app.get("/api/health")
    def health() -> dict:
        return {"status": "ok", "version": app.version, "active_sessions": manager.active_count()}

    if os.path.exists(ctx.static_dir):
        app.mount("/static", StaticFiles(directory=ctx.static_dir), name="static")
        logger.info("Boot: static mounted at /static")

    logger.info("Boot: create_app complete")
    return app
