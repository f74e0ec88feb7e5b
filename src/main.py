from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging, time

from config import settings
from api.v1.router import router as v1_router
from services.commentary import commentary_service
from services.openweather import openweather_client
from services.rate_limit import RATE_LIMIT_MESSAGE, api_rate_limiter, caller_key
from services.weather_store import weather_store

logger = logging.getLogger("cityweather.api")
if not logger.handlers:
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

def create_app() -> FastAPI:
    app = FastAPI(title=settings.app_name, version=settings.app_version)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def limit_api_requests(request: Request, call_next):
        if request.url.path.startswith("/api/"):
            remote_addr = request.client.host if request.client else None
            quota = api_rate_limiter.check(caller_key(None, remote_addr))
            if not quota.allowed:
                return JSONResponse(
                    {"error": RATE_LIMIT_MESSAGE},
                    status_code=429,
                    headers={"Retry-After": str(quota.retry_after_seconds)},
                )
        return await call_next(request)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        dur_ms = (time.perf_counter() - start) * 1000.0
        logger.info("%s %s -> %s (%.1f ms)", request.method, request.url.path, response.status_code, dur_ms)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def render_http_error(request: Request, exc: StarletteHTTPException):
        return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def render_validation_error(request: Request, exc: RequestValidationError):
        logger.info("Rejected request to %s: %s", request.url.path, exc.errors())
        return JSONResponse({"error": "invalid request body"}, status_code=422)

    @app.get("/", tags=["meta"])
    async def root():
        return {"name": settings.app_name, "version": settings.app_version}

    @app.get("/health", tags=["meta"])
    async def health():
        return JSONResponse({"status": "ok", "version": settings.app_version})

    app.include_router(v1_router)

    @app.on_event("startup")
    async def _startup():
        logger.info("Using weather database at %s", weather_store.db_path)
        if not settings.openweather_api_key:
            logger.warning("OPENWEATHER_API_KEY is not set; weather requests will fail.")
        if not settings.llm_api_key:
            logger.info("LLM_API_KEY is not set; commentary will use the fallback text.")

    @app.on_event("shutdown")
    async def _shutdown():
        await openweather_client.close()
        await commentary_service.close()

    return app

app = create_app()
