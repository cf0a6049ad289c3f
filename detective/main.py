"""
Detective click-quiz API

Serves case content and click checks, per-user progress and lock status,
the coin ledger, payment completion and auth-state events. The case
repository and the auth event hub live for the whole process and are
reached through app.state (see detective.dependencies).
"""
from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
import time

from detective.config import settings
from detective.database import SessionLocal, init_db
from detective.api import auth, cases, coins, payment, progress
from detective.services.auth_events import AuthEventHub
from detective.services.case_repository import CaseRepository
from detective.utils.cache import CacheService
from detective.utils.rate_limiter import rate_limiter

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Monitoring and API docs are never throttled
UNTHROTTLED_PATHS = frozenset({"/health", "/docs", "/redoc", "/openapi.json"})

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Backend for the detective click-quiz: find the clue on the case image",
    docs_url="/docs",
    redoc_url="/redoc"
)

# The game client runs on a separate origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_body(error: str, message, status_code: int) -> dict:
    return {"error": error, "message": message, "status_code": status_code}


@app.middleware("http")
async def throttle(request: Request, call_next):
    """Per-user/IP request windows; the payment endpoint has its own, tighter one"""
    if request.url.path not in UNTHROTTLED_PATHS:
        try:
            await rate_limiter.check_rate_limit(request)
        except HTTPException as e:
            return JSONResponse(status_code=e.status_code, content=e.detail)
    return await call_next(request)


@app.middleware("http")
async def access_log(request: Request, call_next):
    started = time.time()
    response = await call_next(request)
    logger.info(
        f"{request.method} {request.url.path} -> {response.status_code} "
        f"({time.time() - started:.3f}s)"
    )
    return response


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Every deliberate error leaves the API as {error, message, status_code}"""
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body("http_error", exc.detail, exc.status_code),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {str(exc)}", exc_info=True)
    body = _error_body(
        "internal_server_error",
        "An unexpected error occurred. Please try again later.",
        500,
    )
    if settings.DEBUG:
        body["detail"] = str(exc)
    return JSONResponse(status_code=500, content=body)


@app.get("/health")
async def health_check():
    """Liveness plus whether case reads are backed by Redis"""
    repository = getattr(app.state, "case_repository", None)
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "redis": bool(repository and repository.cache.enabled),
        "timestamp": time.time()
    }


@app.get("/")
async def root():
    return {
        "message": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "docs": "/docs",
        "health": "/health"
    }


for router_module in (cases, progress, coins, payment, auth):
    app.include_router(router_module.router)


def _build_services() -> None:
    """Process-wide collaborators shared by every request"""
    cache = CacheService(settings.REDIS_URL)
    app.state.case_repository = CaseRepository(SessionLocal, cache)
    app.state.auth_hub = AuthEventHub(SessionLocal)
    logger.info(f"Case repository ready (redis={'on' if cache.enabled else 'off'})")


@app.on_event("startup")
async def startup_event():
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    try:
        init_db()
    except Exception as e:
        logger.error(f"Database initialization failed: {str(e)}")
        raise
    _build_services()


@app.on_event("shutdown")
async def shutdown_event():
    """Let detached account migrations finish before the process exits"""
    hub = getattr(app.state, "auth_hub", None)
    if hub is not None:
        await hub.drain()
    logger.info("Shutdown complete")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "detective.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG
    )
