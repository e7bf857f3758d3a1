import time
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI

from . import metrics
from .auth_middleware import WorkerAuthMiddleware
from .config import Settings
from .pipeline.orchestrator import VideoGenerationService
from .pipeline.routes import job_router, video_router
from .service_factory import build_service

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    service: Optional[VideoGenerationService] = None,
) -> FastAPI:
    """Build the worker app. A prebuilt service skips client construction (tests)."""
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Video worker starting up...")
        metrics.set_gauge("start_time", time.time())
        http = None
        if getattr(app.state, "service", None) is None:
            http = httpx.AsyncClient(timeout=settings.http_timeout)
            app.state.service = build_service(settings, http)
        yield
        logger.info("Video worker shutting down...")
        if http is not None:
            await http.aclose()

    app = FastAPI(title="Product Video Worker", lifespan=lifespan)
    app.state.settings = settings
    app.state.service = service
    app.add_middleware(
        WorkerAuthMiddleware,
        secret=settings.worker_shared_secret,
        environment=settings.environment,
    )
    app.include_router(job_router)
    app.include_router(video_router)

    @app.get("/health")
    def health_check():
        """Verify the worker is running and credentials are configured."""
        return {
            "status": "ok",
            "gemini_configured": bool(settings.gemini_api_key),
            "kie_configured": bool(settings.kie_api_key),
            "job_store": "supabase" if settings.uses_supabase else "memory",
            "asset_backend": settings.asset_backend,
        }

    @app.get("/metrics")
    def metrics_endpoint():
        return metrics.get_snapshot()

    return app


app = create_app()


def run():
    settings: Settings = app.state.settings
    uvicorn.run("promo_video.main:app", host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    run()
