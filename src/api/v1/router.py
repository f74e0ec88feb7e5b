from fastapi import APIRouter

from config import settings
from .weather_router import router as weather_router

router = APIRouter(prefix="/api/v1", tags=["v1"])
router.include_router(weather_router)


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
        "weather_rate_limit": settings.weather_rate_limit,
        "api_rate_limit": settings.api_rate_limit,
        "commentary_enabled": bool(settings.llm_api_key),
    }
