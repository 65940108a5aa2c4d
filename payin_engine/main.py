"""Application entrypoint for the payin routing engine FastAPI service."""

from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from payin_engine.api.router import build_router
from payin_engine.core import AppSettings, get_logger, load_settings, setup_logging
from payin_engine.services import EngineTicker, PayinEngineService, build_engine


setup_logging()
logger = get_logger(__name__)


def create_app(settings: Optional[AppSettings] = None, engine: Optional[PayinEngineService] = None) -> FastAPI:
    """Create and configure a FastAPI application instance."""
    settings = settings or load_settings()
    setup_logging(settings.log_level)
    engine = engine or build_engine(settings)
    app = FastAPI(title=settings.app_name, debug=settings.debug)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(build_router(settings, engine))
    app.state.engine = engine

    # ── Background services ──────────────────────────────────────────────
    ticker = EngineTicker(engine, settings.engine.monitoring, enabled=settings.ticker_enabled)
    app.state.engine_ticker = ticker

    @app.on_event("startup")
    async def _startup_background_services() -> None:
        """Start background services on application startup."""
        try:
            await app.state.engine_ticker.start()
        except Exception:
            logger.exception("Failed to start background services during startup.")

    @app.on_event("shutdown")
    async def _shutdown_background_services() -> None:
        """Stop background services on application shutdown."""
        try:
            await app.state.engine_ticker.stop()
        except Exception:
            logger.exception("Failed to stop background services during shutdown.")

    logger.info("Application initialized: %s backend=%s", settings.app_name, engine.repositories.backend)
    return app


app = create_app()


def run() -> None:
    """Start the ASGI server for local development."""
    settings = load_settings()
    try:
        uvicorn.run("payin_engine.main:app", host=settings.host, port=settings.port, reload=settings.debug)
    except Exception:
        logger.exception("Failed to start uvicorn server.")
        raise


if __name__ == "__main__":
    run()
