"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, CORS, Sentry,
lifespan wiring for the processing pipeline, and the v1 API router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import Request
from fastapi.responses import Response

from src.scribe.config import get_settings
from src.scribe.core.database import close_db, get_session, init_db
from src.scribe.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.scribe.core.redis import close_redis, get_redis_pool, get_view_cache
from src.scribe.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.scribe.api.v1.router import router as v1_router


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB and the pipeline on startup, close on shutdown."""
    import structlog

    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    # ── Pipeline Initialization ─────────────────────────────────────────
    # Each component is wrapped in its own try/except; endpoints that need
    # a missing component answer 503 instead of the app failing to start.

    from src.scribe.billing.repository import BillingRepository
    from src.scribe.jobs.repository import JobRepository

    job_repository = JobRepository(get_session)
    billing_repository = BillingRepository(get_session)

    # Credit ledger
    try:
        from src.scribe.billing.ledger import CreditLedger

        app.state.credit_ledger = CreditLedger(billing_repository, settings)
        log.info("pipeline.credit_ledger_initialized")
    except Exception:
        log.warning("pipeline.credit_ledger_init_failed", exc_info=True)
        app.state.credit_ledger = None

    # Audio store and preprocessor (ffmpeg)
    try:
        from src.scribe.audio.preprocessor import AudioPreprocessor, FfmpegEngine
        from src.scribe.audio.storage import AudioStore

        audio_store = AudioStore(settings.AUDIO_STORAGE_DIR)
        app.state.audio_store = audio_store
        app.state.audio_preprocessor = AudioPreprocessor(
            FfmpegEngine(settings.FFMPEG_BINARY, settings.FFPROBE_BINARY),
            audio_store,
        )
        log.info("pipeline.audio_initialized", storage_dir=settings.AUDIO_STORAGE_DIR)
    except Exception:
        log.warning("pipeline.audio_init_failed", exc_info=True)
        app.state.audio_store = None
        app.state.audio_preprocessor = None

    # Provider backends and router
    try:
        from src.scribe.providers.cloud import GeminiBackend, WhisperApiBackend
        from src.scribe.providers.local import LocalWhisperBackend
        from src.scribe.providers.router import ProviderRouter

        local_backend = LocalWhisperBackend.from_settings(settings)
        app.state.local_backend = local_backend
        backends = {
            "gemini": GeminiBackend(timeout=settings.PROVIDER_TIMEOUT),
            "openai": WhisperApiBackend(
                "openai",
                transcription_model="whisper-1",
                analysis_model="gpt-4o-mini",
                timeout=settings.PROVIDER_TIMEOUT,
            ),
            "groq": WhisperApiBackend(
                "groq",
                transcription_model="whisper-large-v3-turbo",
                analysis_model="llama-3.3-70b-versatile",
                timeout=settings.PROVIDER_TIMEOUT,
            ),
            "local": local_backend,
        }
        app.state.provider_router = ProviderRouter(
            backends, billing_repository, app.state.audio_store, settings
        )
        log.info("pipeline.provider_router_initialized", providers=sorted(backends))
    except Exception:
        log.warning("pipeline.provider_router_init_failed", exc_info=True)
        app.state.local_backend = None
        app.state.provider_router = None

    # Rate limiter and view cache (Redis)
    try:
        from src.scribe.billing.rate_limit import UsageRateLimiter

        app.state.rate_limiter = UsageRateLimiter(
            get_redis_pool(),
            requests_per_minute=settings.RATE_LIMIT_RPM,
            requests_per_day=settings.RATE_LIMIT_RPD,
        )
        app.state.view_cache = get_view_cache()
    except Exception:
        log.warning("pipeline.redis_components_init_failed", exc_info=True)
        app.state.rate_limiter = None
        app.state.view_cache = None

    # Orchestrator
    try:
        from src.scribe.jobs.orchestrator import ProcessingOrchestrator

        if app.state.provider_router is None or app.state.credit_ledger is None:
            raise RuntimeError("provider router and credit ledger are required")
        app.state.orchestrator = ProcessingOrchestrator(
            jobs=job_repository,
            ledger=app.state.credit_ledger,
            router=app.state.provider_router,
            store=app.state.audio_store,
            accounts=billing_repository,
            rate_limiter=app.state.rate_limiter,
            view_cache=app.state.view_cache,
        )
        log.info("pipeline.orchestrator_initialized")
    except Exception:
        log.warning("pipeline.orchestrator_init_failed", exc_info=True)
        app.state.orchestrator = None

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    local_backend = getattr(app.state, "local_backend", None)
    if local_backend is not None:
        try:
            local_backend.worker.shutdown()
        except Exception:
            log.warning("pipeline.local_worker_shutdown_failed", exc_info=True)

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Meeting Scribe API",
        version="0.1.0",
        description="Recording compression, transcription, and insight extraction",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)

    # CORS middleware
    if settings.CORS_ALLOWED_ORIGINS == "*":
        origins = ["*"]
    else:
        origins = [o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Logging middleware (logs requests with request_id)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


app = create_app()
