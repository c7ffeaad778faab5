from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from caption_localizer import __version__
from caption_localizer.config import get_settings
from caption_localizer.errors import LocalizerError
from caption_localizer.pipeline.factory import Services, build_services
from caption_localizer.utils.log import logger
from caption_localizer.web.middleware import log_requests, request_context_middleware
from caption_localizer.web.routes.jobs import router as jobs_router
from caption_localizer.web.routes.objects import router as objects_router


def create_app(services: Services | None = None) -> FastAPI:
    """
    Build the HTTP surface. Tests pass in services wired with fakes.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc = app.state.services
        svc.supervisor.start()
        logger.info("server_started", version=__version__)
        yield
        await svc.supervisor.stop()
        await svc.runner.shutdown()
        logger.info("server_stopped")

    app = FastAPI(title="caption-localizer", version=__version__, lifespan=lifespan)
    app.state.services = services or build_services()

    @app.exception_handler(LocalizerError)
    async def _localizer_error(request: Request, ex: LocalizerError) -> JSONResponse:
        if ex.http_status >= 500:
            logger.error("request_failed", path=request.url.path, code=ex.code, error=ex.message)
        else:
            logger.info("request_rejected", path=request.url.path, code=ex.code, error=ex.message)
        return JSONResponse(
            status_code=ex.http_status,
            content={"error": ex.code, "detail": ex.to_dict()},
        )

    s = get_settings()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=s.cors_origin_list(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Client-Id", "X-Request-ID"],
    )
    app.middleware("http")(log_requests)
    # outermost, so request_id is bound for log_requests too
    app.middleware("http")(request_context_middleware)

    app.include_router(jobs_router)
    app.include_router(objects_router)

    @app.get("/healthz")
    async def healthz():
        return {"ok": True, "version": __version__}

    @app.get("/readyz")
    async def readyz(request: Request):
        svc: Services = request.app.state.services
        return {
            "ok": True,
            "active_jobs": svc.runner.active_tasks(),
            "fonts": svc.font_engine.metrics(),
        }

    return app
