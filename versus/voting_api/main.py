"""
FastAPI application for the head-to-head voting API.

Serves test administration, direct votes, elimination vote sessions and
ranked results. Every vote mutation goes through VotingService, which
owns retries and completion notifications.
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import List, Literal, Optional

from fastapi import Depends, FastAPI, Header, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from ..shared.errors import UnauthorizedError, UnavailableError, VotingError
from ..shared.models import Language, SiteSettings, utc_now
from ..shared.results import ResultSource
from .config import settings
from .database import InMemoryTestRepository, PostgresTestRepository
from .identity import Identity, IdentityResolver
from .models import (
    AdvanceRequest,
    DirectVoteRequest,
    ErrorResponse,
    HealthResponse,
    ResultsResponse,
    SessionHistoryItem,
    SessionStartRequest,
    SessionView,
    TallyResponse,
    TestCreateRequest,
    TestListResponse,
    TestSummary,
    TestUpdateRequest,
    TestView,
    VotedTestItem,
)
from .orchestrator import VotingService
from .publisher import NotificationPublisher

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.DEBUG else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

API_PREFIX = f"/api/{settings.API_VERSION}"

# Prometheus metrics
vote_errors = Counter(
    "vote_errors_total",
    "Total number of failed voting requests",
    ["error_type"]
)
request_duration = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "status"]
)

# Rate limiter
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=settings.RATE_LIMIT_STORAGE_URI
)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid input or choice"},
    403: {"model": ErrorResponse, "description": "Not allowed"},
    404: {"model": ErrorResponse, "description": "Test, option or session not found"},
    409: {"model": ErrorResponse, "description": "Inactive test or concurrent modification"},
    503: {"model": ErrorResponse, "description": "Storage unavailable"},
}


def site_settings() -> SiteSettings:
    """Build the site settings handed to the voting service."""
    return SiteSettings(
        default_language=Language(settings.DEFAULT_LANGUAGE),
        languages=tuple(Language(code) for code in settings.SUPPORTED_LANGUAGES),
        unknown_category_label=settings.UNKNOWN_CATEGORY_LABEL,
    )


def build_repository():
    if settings.STORAGE_BACKEND == "memory":
        return InMemoryTestRepository()
    return PostgresTestRepository()


async def expiry_sweep(service: VotingService):
    """Periodically deactivate tests past their end date."""
    while True:
        await asyncio.sleep(settings.EXPIRY_SWEEP_INTERVAL_SECONDS)
        try:
            await service.expire_tests()
        except Exception as e:
            logger.error(f"Expiry sweep failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    # Startup
    logger.info(f"Starting {settings.SERVICE_NAME} service...")
    state = app.state

    try:
        if getattr(state, "voting", None) is None:
            repository = build_repository()
            await repository.initialize()

            publisher = NotificationPublisher()
            try:
                await publisher.initialize()
            except Exception as e:
                logger.warning(f"Notifications degraded, publisher not ready: {e}")

            state.repository = repository
            state.publisher = publisher
            state.identity = IdentityResolver.from_settings()
            state.voting = VotingService(
                repository,
                publisher,
                site=site_settings(),
                max_retries=settings.MAX_RETRY_ATTEMPTS,
                retry_delay=settings.RETRY_DELAY_SECONDS,
            )

        logger.info(f"{settings.SERVICE_NAME} started successfully")

    except Exception as e:
        logger.error(f"Failed to start {settings.SERVICE_NAME}: {e}")
        raise

    sweep_task = asyncio.create_task(expiry_sweep(state.voting))

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.SERVICE_NAME} service...")
    sweep_task.cancel()
    try:
        await sweep_task
    except asyncio.CancelledError:
        pass

    await state.voting.drain_notifications()

    try:
        await state.identity.close()
        await state.publisher.close()
        await state.repository.close()
        logger.info(f"{settings.SERVICE_NAME} shut down successfully")

    except Exception as e:
        logger.error(f"Error during shutdown: {e}")


# Create FastAPI app
app = FastAPI(
    title="Versus Voting API",
    description="Head-to-head tests, elimination vote sessions and results",
    version=settings.API_VERSION,
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=settings.CORS_ALLOW_METHODS,
    allow_headers=settings.CORS_ALLOW_HEADERS,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(VotingError)
async def voting_error_handler(request: Request, exc: VotingError):
    """Render typed voting failures as ErrorResponse."""
    vote_errors.labels(error_type=exc.kind).inc()
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({exc.kind}): {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(**exc.to_dict()).model_dump(mode="json")
    )


@app.middleware("http")
async def prometheus_middleware(request: Request, call_next):
    """Middleware to track request duration."""
    started = time.perf_counter()
    response = await call_next(request)

    route = request.scope.get("route")
    request_duration.labels(
        method=request.method,
        endpoint=route.path if route else request.url.path,
        status=response.status_code
    ).observe(time.perf_counter() - started)

    return response


def get_service(request: Request) -> VotingService:
    return request.app.state.voting


async def get_identity(
    request: Request,
    authorization: Optional[str] = Header(default=None),
) -> Identity:
    """Resolve the caller; requests without a known token are guests."""
    try:
        return await request.app.state.identity.resolve(authorization)
    except Exception as e:
        logger.error(f"Identity lookup failed: {e}")
        raise UnavailableError("Identity service is unavailable, try again later")


async def require_admin(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.is_admin:
        raise UnauthorizedError("Administrator privileges required")
    return identity


# ═══════════════════════════════════════════════════════════════════
# TEST ADMINISTRATION
# ═══════════════════════════════════════════════════════════════════

@app.post(
    f"{API_PREFIX}/tests",
    response_model=TestView,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES
)
async def create_test(
    body: TestCreateRequest,
    identity: Identity = Depends(require_admin),
    service: VotingService = Depends(get_service),
) -> TestView:
    """
    Create a test.

    - **title**: Localized title, the default language is required
    - **category**: Category identifier
    - **options**: At least two, each with a default-language title and an image
    """
    test = await service.create_test(body.model_dump(mode="json"), identity)
    return TestView.from_test(test)


@app.get(f"{API_PREFIX}/tests", response_model=TestListResponse)
async def list_tests(
    category: Optional[str] = None,
    is_active: Optional[bool] = None,
    trend: Optional[bool] = None,
    popular: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort_by: Literal["created_at", "total_votes"] = "created_at",
    order: Literal["asc", "desc"] = "desc",
    identity: Identity = Depends(get_identity),
    service: VotingService = Depends(get_service),
) -> TestListResponse:
    """List tests. Only administrators see inactive tests."""
    if not identity.is_admin:
        is_active = True
    tests, total = await service.list_tests(
        category=category,
        is_active=is_active,
        trend=trend,
        popular=popular,
        page=page,
        limit=limit,
        sort_by=sort_by,
        descending=order == "desc",
    )
    return TestListResponse(
        tests=[TestSummary.from_test(test) for test in tests],
        total=total,
        page=page,
        limit=limit,
        pages=(total + limit - 1) // limit,
    )


@app.get(f"{API_PREFIX}/tests/popular", response_model=List[TestSummary])
async def popular_tests(
    limit: int = Query(5, ge=1, le=50),
    service: VotingService = Depends(get_service),
) -> List[TestSummary]:
    """Active tests flagged popular, most voted first."""
    tests = await service.featured_tests("popular", limit)
    return [TestSummary.from_test(test) for test in tests]


@app.get(f"{API_PREFIX}/tests/trend", response_model=List[TestSummary])
async def trend_tests(
    limit: int = Query(5, ge=1, le=50),
    service: VotingService = Depends(get_service),
) -> List[TestSummary]:
    """Active tests flagged trending, most voted first."""
    tests = await service.featured_tests("trend", limit)
    return [TestSummary.from_test(test) for test in tests]


@app.get(f"{API_PREFIX}/tests/slug/{{slug}}", response_model=TestView, responses=ERROR_RESPONSES)
async def get_test_by_slug(
    slug: str,
    identity: Identity = Depends(get_identity),
    service: VotingService = Depends(get_service),
) -> TestView:
    """Get a test by its slug."""
    test_id = await service.resolve_slug(slug)
    test = await service.get_test(test_id, identity)
    return TestView.from_test(test)


@app.get(
    f"{API_PREFIX}/tests/slug/{{slug}}/results",
    response_model=ResultsResponse,
    responses=ERROR_RESPONSES
)
async def get_results_by_slug(
    slug: str,
    source: ResultSource = ResultSource.TALLY,
    service: VotingService = Depends(get_service),
) -> ResultsResponse:
    """Ranked results for the test with this slug."""
    test_id = await service.resolve_slug(slug)
    test, ranked, statistics = await service.get_results(test_id, source)
    return ResultsResponse.build(test, source.value, ranked, statistics)


@app.post(
    f"{API_PREFIX}/tests/slug/{{slug}}/vote",
    response_model=TallyResponse,
    responses={**ERROR_RESPONSES, 429: {"description": "Rate limit exceeded"}}
)
@limiter.limit(settings.RATE_LIMIT)
async def direct_vote_by_slug(
    request: Request,
    slug: str,
    vote: DirectVoteRequest,
    identity: Identity = Depends(get_identity),
    service: VotingService = Depends(get_service),
) -> TallyResponse:
    """Add one vote to an option of the test with this slug."""
    test_id = await service.resolve_slug(slug)
    test = await service.direct_vote(test_id, vote.option_id, identity)
    return TallyResponse.from_test(test)


@app.get(f"{API_PREFIX}/tests/{{test_id}}", response_model=TestView, responses=ERROR_RESPONSES)
async def get_test(
    test_id: str,
    identity: Identity = Depends(get_identity),
    service: VotingService = Depends(get_service),
) -> TestView:
    """Get a test with its options and statistics."""
    test = await service.get_test(test_id, identity)
    return TestView.from_test(test)


@app.patch(f"{API_PREFIX}/tests/{{test_id}}", response_model=TestView, responses=ERROR_RESPONSES)
async def update_test(
    test_id: str,
    body: TestUpdateRequest,
    identity: Identity = Depends(require_admin),
    service: VotingService = Depends(get_service),
) -> TestView:
    """
    Update a test. Only fields present in the body change.

    Options are edited by id; their vote counts are kept.
    """
    changes = body.model_dump(mode="json", exclude_unset=True)
    test = await service.update_test(test_id, changes, identity)
    return TestView.from_test(test)


@app.delete(
    f"{API_PREFIX}/tests/{{test_id}}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses=ERROR_RESPONSES
)
async def delete_test(
    test_id: str,
    identity: Identity = Depends(require_admin),
    service: VotingService = Depends(get_service),
):
    """Delete a test and all of its sessions."""
    await service.delete_test(test_id, identity)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post(
    f"{API_PREFIX}/tests/{{test_id}}/reset",
    response_model=TallyResponse,
    responses=ERROR_RESPONSES
)
async def reset_votes(
    test_id: str,
    identity: Identity = Depends(require_admin),
    service: VotingService = Depends(get_service),
) -> TallyResponse:
    """Zero every vote count. Vote session history is kept."""
    test = await service.reset_votes(test_id, identity)
    return TallyResponse.from_test(test)


# ═══════════════════════════════════════════════════════════════════
# VOTING
# ═══════════════════════════════════════════════════════════════════

@app.post(
    f"{API_PREFIX}/tests/{{test_id}}/vote",
    response_model=TallyResponse,
    responses={**ERROR_RESPONSES, 429: {"description": "Rate limit exceeded"}}
)
@limiter.limit(settings.RATE_LIMIT)
async def direct_vote(
    request: Request,
    test_id: str,
    vote: DirectVoteRequest,
    identity: Identity = Depends(get_identity),
    service: VotingService = Depends(get_service),
) -> TallyResponse:
    """
    Add one vote to an option, without a session.

    - **option_id**: Chosen option
    """
    test = await service.direct_vote(test_id, vote.option_id, identity)
    return TallyResponse.from_test(test)


@app.get(
    f"{API_PREFIX}/tests/{{test_id}}/results",
    response_model=ResultsResponse,
    responses=ERROR_RESPONSES
)
async def get_results(
    test_id: str,
    source: ResultSource = ResultSource.TALLY,
    service: VotingService = Depends(get_service),
) -> ResultsResponse:
    """
    Ranked results for a test.

    - **source**: `tally` ranks by option vote counts, `sessions` by the
      final winners of completed vote sessions
    """
    test, ranked, statistics = await service.get_results(test_id, source)
    return ResultsResponse.build(test, source.value, ranked, statistics)


@app.post(
    f"{API_PREFIX}/tests/{{test_id}}/sessions",
    response_model=SessionView,
    status_code=status.HTTP_201_CREATED,
    responses={**ERROR_RESPONSES, 429: {"description": "Rate limit exceeded"}}
)
@limiter.limit(settings.RATE_LIMIT)
async def start_session(
    request: Request,
    test_id: str,
    body: Optional[SessionStartRequest] = None,
    identity: Identity = Depends(get_identity),
    service: VotingService = Depends(get_service),
) -> SessionView:
    """
    Start an elimination vote session. The first pair is ready immediately.

    Callers without a known token get a guest session.
    """
    session_id = body.session_id if body else None
    test, session = await service.start_session(test_id, identity, session_id)
    return SessionView.from_session(test.id, session)


@app.get(
    f"{API_PREFIX}/tests/{{test_id}}/sessions/{{session_id}}",
    response_model=SessionView,
    responses=ERROR_RESPONSES
)
async def get_session(
    test_id: str,
    session_id: str,
    service: VotingService = Depends(get_service),
) -> SessionView:
    """Get the current state of a vote session."""
    test, session = await service.get_session(test_id, session_id)
    return SessionView.from_session(test.id, session)


@app.post(
    f"{API_PREFIX}/tests/{{test_id}}/sessions/{{session_id}}/vote",
    response_model=SessionView,
    responses={**ERROR_RESPONSES, 429: {"description": "Rate limit exceeded"}}
)
@limiter.limit(settings.RATE_LIMIT)
async def advance_session(
    request: Request,
    test_id: str,
    session_id: str,
    pick: AdvanceRequest,
    service: VotingService = Depends(get_service),
) -> SessionView:
    """
    Pick one option of the current pair.

    - **option_id**: Chosen option
    - **round**: Optional rounds already played when the pair was shown;
      a stale value is rejected with 409
    """
    test, session = await service.advance_session(
        test_id, session_id, pick.option_id, expected_round=pick.round
    )
    return SessionView.from_session(test.id, session)


@app.delete(
    f"{API_PREFIX}/tests/{{test_id}}/sessions/{{session_id}}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses=ERROR_RESPONSES
)
async def delete_session(
    test_id: str,
    session_id: str,
    identity: Identity = Depends(get_identity),
    service: VotingService = Depends(get_service),
):
    """Delete a vote session. Signed-in callers may only delete their own."""
    await service.delete_session(test_id, session_id, identity)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get(
    f"{API_PREFIX}/me/sessions",
    response_model=List[SessionHistoryItem],
    responses=ERROR_RESPONSES
)
async def my_sessions(
    test_id: Optional[str] = None,
    identity: Identity = Depends(get_identity),
    service: VotingService = Depends(get_service),
) -> List[SessionHistoryItem]:
    """Vote sessions owned by the caller, optionally for one test."""
    owned = await service.participant_sessions(identity, test_id)
    return [
        SessionHistoryItem(
            test_id=test.id,
            test_slug=test.slug,
            test_title=test.title.to_dict(),
            session=SessionView.from_session(test.id, session),
        )
        for test, session in owned
    ]


@app.get(
    f"{API_PREFIX}/me/votes",
    response_model=List[VotedTestItem],
    responses=ERROR_RESPONSES
)
async def my_votes(
    identity: Identity = Depends(get_identity),
    service: VotingService = Depends(get_service),
) -> List[VotedTestItem]:
    """Direct votes cast by the caller, newest first."""
    votes = await service.participant_votes(identity)
    return [VotedTestItem.from_vote(test, voter) for test, voter in votes]


# ═══════════════════════════════════════════════════════════════════
# OPERATIONS
# ═══════════════════════════════════════════════════════════════════

@app.get(
    f"{API_PREFIX}/health",
    response_model=HealthResponse,
    responses={
        503: {"model": HealthResponse, "description": "Service unhealthy"}
    }
)
async def health_check(request: Request) -> HealthResponse:
    """
    Check health of the service and its dependencies.

    Verifies connections to:
    - Test storage
    - RabbitMQ
    - Redis
    """
    state = request.app.state
    checks = {
        "storage": state.repository,
        "rabbitmq": state.publisher,
        "redis": state.identity,
    }
    services = {}
    for name, dependency in checks.items():
        try:
            healthy = await dependency.check_health()
            services[name] = "connected" if healthy else "disconnected"
        except Exception as e:
            logger.error(f"{name} health check error: {e}")
            services[name] = "error"

    # Determine overall status
    all_healthy = all(value == "connected" for value in services.values())

    response = HealthResponse(
        status="healthy" if all_healthy else "unhealthy",
        services=services,
        timestamp=utc_now()
    )

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=response.model_dump(mode="json")
    )


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "service": settings.SERVICE_NAME,
        "version": settings.API_VERSION,
        "status": "running",
        "endpoints": {
            "tests": f"{API_PREFIX}/tests",
            "direct_vote": f"{API_PREFIX}/tests/{{test_id}}/vote",
            "results": f"{API_PREFIX}/tests/{{test_id}}/results",
            "sessions": f"{API_PREFIX}/tests/{{test_id}}/sessions",
            "my_sessions": f"{API_PREFIX}/me/sessions",
            "my_votes": f"{API_PREFIX}/me/votes",
            "health": f"{API_PREFIX}/health",
            "metrics": "/metrics"
        }
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "versus.voting_api.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level="info"
    )
