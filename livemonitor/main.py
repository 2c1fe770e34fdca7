from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from livemonitor.api.router import api_router
from livemonitor.core.middleware import PerformanceLogMiddleware, RequestContextMiddleware
from livemonitor.core.settings import settings
from livemonitor.reconcile.loop import RefreshOrchestrator, build_orchestrator
from livemonitor.registry.loader import RegistryLoadError
from livemonitor.utils.logger import configure_logging


def create_app(monitor: RefreshOrchestrator | None = None) -> FastAPI:
    configure_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.monitor = None
        app.state.registry_error = None
        mon = monitor
        if mon is None:
            try:
                mon = build_orchestrator(settings)
            except RegistryLoadError as e:
                # No pass can run without a contract; endpoints report the load error.
                logger.error("contract registry failed to load: {err}", err=str(e))
                app.state.registry_error = str(e)
        app.state.monitor = mon

        if mon is not None and settings.MONITOR_AUTOSTART:
            await mon.start()
        yield
        if mon is not None:
            await mon.stop()

    app = FastAPI(
        title="Supabase Live Monitor",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # CORS: permissive by default for the dashboard frontend.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(PerformanceLogMiddleware)

    app.include_router(api_router)

    @app.get("/health")
    def health() -> dict:
        return {
            "status": "ok",
            "env": settings.APP_ENV,
            "registry_loaded": getattr(app.state, "monitor", None) is not None,
            "registry_error": getattr(app.state, "registry_error", None),
        }

    return app


app = create_app()
