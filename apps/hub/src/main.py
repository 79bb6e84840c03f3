from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
import logging, time

from config import settings
from api.v1.router import router as v1_router
from services.system import build_system

logger = logging.getLogger("irrigation.hub")
if not logger.handlers:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

def create_app(*, run_checks: bool = True) -> FastAPI:
    app = FastAPI(title=settings.app_name, version=settings.app_version)
    app.state.irrigation = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        dur_ms = (time.perf_counter() - start) * 1000.0
        logger.info("%s %s -> %s (%.1f ms)", request.method, request.url.path, response.status_code, dur_ms)
        return response

    @app.get("/", tags=["meta"])
    async def root():
        return {"name": settings.app_name, "version": settings.app_version}

    @app.get("/health", tags=["meta"])
    async def health():
        system = app.state.irrigation
        return JSONResponse(
            {
                "status": "ok" if system is not None and system.running else "starting",
                "version": settings.app_version,
            }
        )

    app.include_router(v1_router)

    @app.on_event("startup")
    async def _startup():
        logger.info("Starting irrigation hub (%s hardware, %d zones)", settings.hardware_backend, settings.zone_count)
        system = build_system(settings)
        await system.start(run_checks=run_checks)
        app.state.irrigation = system

    @app.on_event("shutdown")
    async def _shutdown():
        system = app.state.irrigation
        app.state.irrigation = None
        if system is not None:
            await system.shutdown()

    return app

app = create_app()
