import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

from app.core.config import settings
from app.core.errors import RentalError, StorageUnavailable
from app.api.v1.api import api_router
from app.services.availability_cache import AvailabilityCache
from app.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    app.state.gateway = StripeGateway.from_settings()
    app.state.availability_cache = AvailabilityCache.from_url(settings.REDIS_URL, settings.AVAILABILITY_CACHE_TTL_SECONDS)
    if not settings.STRIPE_SECRET_KEY:
        logger.warning("STRIPE_SECRET_KEY not set; payment endpoints will fail")
    yield
    app.state.availability_cache.close()


app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)

# CORS: use CORS_ORIGINS from env in production; default to localhost for dev
_default_origins = [
    "http://127.0.0.1:3000", "http://localhost:3000",
]
_origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()] if settings.CORS_ORIGINS else _default_origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RentalError)
async def rental_error_handler(request: Request, exc: RentalError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.cause)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(OperationalError)
async def storage_error_handler(request: Request, exc: OperationalError):
    logger.error("%s %s: database unavailable: %s", request.method, request.url.path, exc)
    err = StorageUnavailable("Service temporarily unavailable", cause="record store unreachable")
    return JSONResponse(status_code=err.status_code, content=err.to_dict())


app.include_router(api_router)


@app.get("/health")
def health():
    return {"status": "ok"}
