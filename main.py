from fastapi import FastAPI, HTTPException, Request, Depends
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from typing import List
import logging
import sys
import structlog
import time
from contextlib import asynccontextmanager

from models import Balance, ErrorResponse, HealthResponse, HistoryRecord, PointRequest
from errors import PointServiceError
from services import PointService, get_point_service
from repositories import get_balance_repository, get_history_repository, get_key_lock
from config import get_settings

settings = get_settings()


def configure_logging(log_level: str, log_format: str) -> None:
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level.upper())
    renderer = (
        structlog.processors.JSONRenderer()
        if log_format == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger()


def _rate_limit() -> str:
    return f"{get_settings().rate_limit_per_minute}/minute"


# Rate limiting
limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Point Ledger API", version=settings.app_version)
    yield
    logger.info("Shutting down Point Ledger API")


app = FastAPI(
    title=settings.app_name,
    description="Per-user point balances with a serialized charge/use ledger",
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=settings.allowed_methods,
    allow_headers=settings.allowed_headers,
)


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        client_ip=request.client.host if request.client else None,
    )

    response = await call_next(request)

    process_time = time.time() - start_time
    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time=round(process_time, 4),
    )

    return response


# Dependency injection
def get_service(
    balance_repo=Depends(get_balance_repository),
    history_repo=Depends(get_history_repository),
    key_lock=Depends(get_key_lock),
) -> PointService:
    return get_point_service(balance_repo, history_repo, key_lock)


_error_responses = {
    400: {"model": ErrorResponse, "description": "Invalid user id or amount"},
    409: {"model": ErrorResponse, "description": "Business rule violated"},
    422: {"model": ErrorResponse, "description": "Arithmetic overflow or malformed body"},
    429: {"description": "Rate limit exceeded"},
}


# Endpoints are plain functions: FastAPI runs them in its thread pool, so a
# caller blocked on a user's lock never stalls the event loop.
@app.get("/health", response_model=HealthResponse, summary="Health Check")
def health_check(
    balance_repo=Depends(get_balance_repository),
    history_repo=Depends(get_history_repository),
    key_lock=Depends(get_key_lock),
):
    return HealthResponse(
        status="healthy",
        users_count=balance_repo.count(),
        history_records=history_repo.count(),
        lock_keys=len(key_lock),
    )


@app.get("/point/{user_id}", response_model=Balance, responses=_error_responses)
@limiter.limit(_rate_limit)
def get_point(request: Request, user_id: int, service: PointService = Depends(get_service)):
    return service.get_balance(user_id)


@app.get(
    "/point/{user_id}/histories",
    response_model=List[HistoryRecord],
    responses=_error_responses,
)
@limiter.limit(_rate_limit)
def get_histories(request: Request, user_id: int, service: PointService = Depends(get_service)):
    return service.get_history(user_id)


@app.patch("/point/{user_id}/charge", response_model=Balance, responses=_error_responses)
@limiter.limit(_rate_limit)
def charge(
    request: Request,
    user_id: int,
    point_request: PointRequest,
    service: PointService = Depends(get_service),
):
    return service.charge(user_id, point_request.amount)


@app.patch("/point/{user_id}/use", response_model=Balance, responses=_error_responses)
@limiter.limit(_rate_limit)
def use(
    request: Request,
    user_id: int,
    point_request: PointRequest,
    service: PointService = Depends(get_service),
):
    return service.use(user_id, point_request.amount)


@app.exception_handler(PointServiceError)
async def point_error_handler(request: Request, exc: PointServiceError):
    logger.warning(
        "Point operation rejected",
        error_code=exc.kind.value,
        category=exc.category.value,
        url=str(request.url),
    )
    return JSONResponse(
        status_code=exc.kind.status_code,
        content=ErrorResponse(
            detail=exc.message,
            error_code=exc.kind.value,
            category=exc.category.value,
            details=exc.details,
        ).model_dump(mode="json"),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            detail=str(exc.detail),
            error_code=f"HTTP_{exc.status_code}",
            category="http",
        ).model_dump(mode="json"),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        url=str(request.url),
        method=request.method,
        exc_info=True,
    )

    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            detail="Internal server error",
            error_code="INTERNAL_ERROR",
            category="internal",
        ).model_dump(mode="json"),
    )


@app.get("/", include_in_schema=False)
def root():
    return {"message": settings.app_name, "docs": "/docs"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
