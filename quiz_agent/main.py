import time
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from . import __version__
from .errors import InvalidRequest, QuizAgentError, RateLimitExceeded
from .models.schemas import GenerationRequest, HealthResponse, QuizResponse, TutorRequest
from .services.generation_client import GenerationClient, make_gateway_llm_factory
from .services.quiz_pipeline import QuizPipeline
from .services.rate_limiter import SlidingWindowRateLimiter
from .services.repository import QuizRepository
from .services.tutor import TutorService
from .utils.auth import get_current_user_id
from .utils.config import Settings, get_settings
from .utils.logging import setup_logging
from .utils.metrics import ERROR_COUNT, REQUEST_COUNT, REQUEST_DURATION

settings = get_settings()
setup_logging(settings.log_level, settings.log_json)
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the services once and keep them on app.state"""
    settings = get_settings()
    logger.info("🚀 Starting quiz agent...", gateway=settings.ai_gateway_url)
    if not settings.ai_gateway_api_key:
        logger.warning("⚠️ AI_GATEWAY_API_KEY is not configured; generation calls will fail")

    repository = QuizRepository(settings.postgres_url)
    llm_factory = make_gateway_llm_factory(settings)

    app.state.repository = repository
    app.state.quiz_pipeline = QuizPipeline(repository, GenerationClient(llm_factory))
    app.state.rate_limiter = SlidingWindowRateLimiter()
    app.state.tutor_service = TutorService(llm_factory, settings.tutor_model)

    logger.info("✅ Quiz agent services initialized")
    yield
    logger.info("Shutting down quiz agent...")


app = FastAPI(
    title="Quiz Agent",
    description="Quiz generation and AI tutor service for aptitude and achievement test preparation",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
)


# ---------------------------------------------------------------------------
# Dependencies (overridden in tests)
# ---------------------------------------------------------------------------

def _from_state(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(status_code=503, detail=f"{name} not initialized")
    return service


def get_quiz_pipeline(request: Request) -> QuizPipeline:
    return _from_state(request, "quiz_pipeline")


def get_rate_limiter(request: Request) -> SlidingWindowRateLimiter:
    return _from_state(request, "rate_limiter")


def get_tutor_service(request: Request) -> TutorService:
    return _from_state(request, "tutor_service")


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------

def error_response(status_code: int, error: str, details=None) -> JSONResponse:
    body = {"error": error}
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(QuizAgentError)
async def quiz_agent_error_handler(request: Request, exc: QuizAgentError):
    ERROR_COUNT.labels(type=type(exc).__name__).inc()
    logger.warning(f"⚠️ {type(exc).__name__}: {exc.message}", path=request.url.path, status=exc.status_code)
    return error_response(exc.status_code, exc.message, exc.details)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    ERROR_COUNT.labels(type=InvalidRequest.__name__).inc()
    details = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
    )
    return error_response(InvalidRequest.status_code, InvalidRequest.default_message, details)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    ERROR_COUNT.labels(type="unhandled").inc()
    logger.exception("❌ Unhandled error", path=request.url.path)
    return error_response(500, "حدث خطأ غير متوقع", type(exc).__name__)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    """Middleware to collect metrics"""
    start = time.perf_counter()
    response = await call_next(request)
    REQUEST_DURATION.labels(endpoint=request.url.path).observe(time.perf_counter() - start)
    REQUEST_COUNT.labels(
        method=request.method,
        endpoint=request.url.path,
        status=response.status_code,
    ).inc()
    return response


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check endpoint"""
    repository = getattr(request.app.state, "repository", None)
    services_status = {
        "quiz_pipeline": "healthy" if getattr(request.app.state, "quiz_pipeline", None) else "unhealthy",
        "database": "healthy" if repository is not None and await repository.ping() else "unhealthy",
        "ai_gateway": "configured" if get_settings().ai_gateway_api_key else "unconfigured",
    }
    healthy = services_status["quiz_pipeline"] == "healthy" and services_status["database"] == "healthy"
    return HealthResponse(status="healthy" if healthy else "degraded", version=__version__,
                          services=services_status)


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint"""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.post(
    "/generate-quiz",
    response_model=QuizResponse,
    response_model_by_alias=True,
    response_model_exclude_none=True,
)
async def generate_quiz(
    body: GenerationRequest,
    caller_id: str = Depends(get_current_user_id),
    pipeline: QuizPipeline = Depends(get_quiz_pipeline),
):
    """Generate a validated batch of quiz questions for the caller"""
    return await pipeline.generate(body, caller_id)


@app.post("/ai-tutor")
async def ai_tutor(
    body: TutorRequest,
    caller_id: str = Depends(get_current_user_id),
    limiter: SlidingWindowRateLimiter = Depends(get_rate_limiter),
    tutor: TutorService = Depends(get_tutor_service),
    settings: Settings = Depends(get_settings),
):
    """Stream an AI tutor reply as server-sent events"""
    if not limiter.check(caller_id, settings.tutor_rate_limit_requests, settings.tutor_rate_limit_window_seconds):
        raise RateLimitExceeded(details=f"limit {settings.tutor_rate_limit_requests} per "
                                        f"{settings.tutor_rate_limit_window_seconds:g}s")
    events = await tutor.stream_reply(body.messages, body.conversation_id)
    return StreamingResponse(events, media_type="text/event-stream")


if __name__ == "__main__":
    uvicorn.run("quiz_agent.main:app", host="0.0.0.0", port=8000, log_config=None)
