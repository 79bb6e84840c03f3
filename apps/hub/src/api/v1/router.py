from fastapi import APIRouter

from config import settings
from .irrigation_router import router as irrigation_router

router = APIRouter(prefix="/api/v1", tags=["v1"])
router.include_router(irrigation_router)


@router.get("/health")
async def health():
    return {"status": "ok", "version": settings.app_version}


@router.get("/info")
async def info():
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "debug": settings.debug,
        "cors_origins": settings.cors_origins,
        "hardware_backend": settings.hardware_backend,
        "zone_count": settings.zone_count,
    }
