import logging.config

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from app.api.metrics import router as metrics_router
from app.api.routes import router as api_router
from app.api.ws import router as ws_router
from app.config import get_settings
from app.core.errors import CoreError
from app.core.rate_limit import limiter, rate_limit_exceeded_handler
from app.services.presence_events import presence_listener
from app.services.scheduler import scheduler
from bella.realtime import PairLockTimeout, get_presence_registry, shutdown_realtime, startup_realtime


LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
        }
    },
    "handlers": {
        "default": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
        }
    },
    "root": {
        "handlers": ["default"],
        "level": "INFO",
    },
    "loggers": {
        "bella.realtime.transport": {
            "handlers": ["default"],
            "level": "INFO",
            "propagate": False,
        },
        "app.services.scheduler": {
            "handlers": ["default"],
            "level": "INFO",
            "propagate": False,
        },
    },
}


logging.config.dictConfig(LOGGING_CONFIG)

logger = logging.getLogger(__name__)

settings = get_settings()

app = FastAPI(title=settings.app_name, debug=settings.debug)
app.state.limiter = limiter

_presence_listener = presence_listener(get_presence_registry())

app.add_middleware(
    CORSMiddleware,
    allow_origins=[str(origin) for origin in settings.cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_origin_regex=settings.cors_allow_origin_regex,
)


@app.exception_handler(CoreError)
async def core_error_handler(request: Request, exc: CoreError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "code": exc.code})


@app.exception_handler(PairLockTimeout)
async def pair_lock_timeout_handler(request: Request, exc: PairLockTimeout) -> JSONResponse:
    logger.warning("Pair lock timed out on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": "Another operation for this pair is in progress", "code": "CONFLICT"},
    )


app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.get("/health", tags=["system"])
def health_check() -> JSONResponse:
    """Report ``degraded`` while the scheduler cannot reach the store."""

    if scheduler.degraded:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "degraded", "environment": settings.environment},
        )
    return JSONResponse(content={"status": "ok", "environment": settings.environment})


@app.on_event("startup")
async def _startup() -> None:
    await startup_realtime()
    get_presence_registry().add_listener(_presence_listener)
    if settings.scheduler_enabled:
        scheduler.start()


@app.on_event("shutdown")
async def _shutdown() -> None:
    await scheduler.stop()
    await shutdown_realtime()


app.include_router(api_router, prefix="/api")
app.include_router(ws_router)
app.include_router(metrics_router)
