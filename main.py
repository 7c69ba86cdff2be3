from fastapi import FastAPI, HTTPException, Request, Depends, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
import logging
import sys
import structlog
import time
from contextlib import asynccontextmanager

from models import ReplayRequest, ReplayResponse, ErrorResponse, HealthResponse
from services import ReplayService, get_replay_service
from repositories import get_replay_log_repository
from exceptions import PipelineError
from config import Settings, get_settings


def configure_logging(settings: Settings) -> None:
    """Configure structlog on top of the standard library logger."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=settings.log_level.upper(),
    )

    if settings.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

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
            renderer
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


settings = get_settings()
configure_logging(settings)

logger = structlog.get_logger()

# Rate limiting
limiter = Limiter(key_func=get_remote_address)
RATE_LIMIT = f"{settings.rate_limit_per_minute}/minute"

# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info(
        "Starting Transaction Replay API",
        worker_count=settings.worker_count,
        channel_capacity=settings.channel_capacity
    )
    yield
    # Shutdown
    logger.info("Shutting down Transaction Replay API")

# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Replays deposit, withdrawal, dispute, resolve and chargeback streams into per-client balances",
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Add rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        client_ip=request.client.host if request.client else None
    )

    response = await call_next(request)

    process_time = time.time() - start_time
    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time=round(process_time, 4)
    )

    return response

# Dependency injection
def get_service(
    replay_log_repo=Depends(get_replay_log_repository),
    settings: Settings = Depends(get_settings)
) -> ReplayService:
    return get_replay_service(replay_log_repo, settings)

# Health check endpoint
@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Check API health and get replay statistics"
)
async def health_check(replay_log_repo=Depends(get_replay_log_repository)):
    try:
        replays_count = await replay_log_repo.get_replays_count()
        transactions_count = await replay_log_repo.get_transactions_count()

        return HealthResponse(
            status="healthy",
            replays_count=replays_count,
            transactions_processed=transactions_count
        )
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        raise HTTPException(
            status_code=500,
            detail="Health check failed"
        )

# Replay a JSON batch
@app.post(
    "/replays",
    response_model=ReplayResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Replay Transactions",
    description="Replay a batch of transactions and return the final balance of every client",
    responses={
        201: {"description": "Batch replayed"},
        413: {"description": "Batch too large"},
        422: {"description": "Validation error"},
        429: {"description": "Rate limit exceeded"},
        500: {"description": "Replay aborted"}
    }
)
@limiter.limit(RATE_LIMIT)
async def create_replay(
    request: Request,
    replay_request: ReplayRequest,
    service: ReplayService = Depends(get_service)
):
    logger.info(
        "Replay request received",
        transactions=len(replay_request.transactions),
        worker_count=replay_request.workerCount
    )

    result = await service.process_replay(replay_request)

    logger.info(
        "Replay request completed successfully",
        replay_id=result.replayId,
        accounts=len(result.accounts)
    )

    return result

# Replay a CSV document
@app.post(
    "/replays/csv",
    response_class=PlainTextResponse,
    summary="Replay CSV",
    description="Replay a CSV document (type, client, tx, amount) and return the balances as CSV",
    responses={
        200: {"content": {"text/csv": {}}},
        400: {"description": "Body is not UTF-8"},
        413: {"description": "Batch too large"},
        422: {"description": "Malformed record"},
        500: {"description": "Replay aborted"}
    }
)
@limiter.limit(RATE_LIMIT)
async def create_csv_replay(
    request: Request,
    service: ReplayService = Depends(get_service)
):
    raw = await request.body()
    try:
        body = raw.decode("utf-8")
    except UnicodeDecodeError:
        logger.warning("CSV body is not valid UTF-8", size=len(raw))
        raise HTTPException(status_code=400, detail="Body must be UTF-8 encoded CSV")

    content = await service.process_csv(body)
    return PlainTextResponse(content, media_type="text/csv")

# Look up a completed replay
@app.get(
    "/replays/{replay_id}",
    response_model=ReplayResponse,
    summary="Get Replay",
    responses={404: {"description": "Replay not found"}}
)
async def get_replay(replay_id: str, replay_log_repo=Depends(get_replay_log_repository)):
    replay = await replay_log_repo.get_replay(replay_id)
    if replay is None:
        logger.warning("Replay not found", replay_id=replay_id)
        raise HTTPException(status_code=404, detail="Replay not found")
    return replay

# Global exception handlers
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            detail=exc.detail,
            error_code=f"HTTP_{exc.status_code}"
        ).model_dump(mode="json")
    )

@app.exception_handler(PipelineError)
async def pipeline_exception_handler(request: Request, exc: PipelineError):
    logger.error(
        "Replay aborted",
        error=str(exc),
        cause=repr(exc.__cause__),
        url=str(request.url)
    )

    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            detail="Replay aborted",
            error_code="REPLAY_ABORTED"
        ).model_dump(mode="json")
    )

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        url=str(request.url),
        method=request.method,
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            detail="Internal server error",
            error_code="INTERNAL_ERROR"
        ).model_dump(mode="json")
    )

# Root endpoint
@app.get("/", include_in_schema=False)
async def root():
    return {"message": "Transaction Replay API", "docs": "/docs"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
