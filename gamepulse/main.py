# gamepulse/main.py
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

import redis.asyncio as redis
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from gamepulse.cache import CacheAside, CacheBackend, CacheProvider, MemoryCacheBackend, RedisCacheBackend
from gamepulse.config import Settings, get_settings
from gamepulse.database import create_tables, get_db, make_engine, make_session_factory
from gamepulse.exceptions import FilterError, GamePulseError, QueryUnavailableError, UnknownViewError
from gamepulse.handoff import HandoffDispatcher, PostIngestProcessor, RedisEventQueue
from gamepulse.ingestion import ingest
from gamepulse.logging_config import setup_logging
from gamepulse.scheduler import Scheduler
from gamepulse.schemas import AggregateResponse, EventOut, IngestAck, TournamentCreate
from gamepulse.store import event_counts, list_events, retry_failed
from gamepulse.tournaments import create_tournament, ensure_weekly_tournament, teardown_tournament
from gamepulse.views import serve_view
from gamepulse.workers import KpiAggregator, LeaderboardAggregator, TournamentAggregator

logger = logging.getLogger(__name__)


# --- WIRING ---

async def build_cache_backend(settings: Settings) -> Optional[CacheBackend]:
    if settings.cache_backend == "memory":
        return MemoryCacheBackend()
    if settings.cache_backend == "redis":
        client = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=settings.redis_socket_timeout,
            socket_connect_timeout=settings.redis_socket_connect_timeout,
        )
        backend = RedisCacheBackend(client, probe_interval=settings.cache_probe_interval_seconds)
        # an unreachable cache is not fatal, reads fall through to the database
        await backend.connect()
        return backend
    return None


def build_workers(app: FastAPI, settings: Settings) -> dict:
    common = dict(
        session_factory=app.state.session_factory,
        cache=app.state.cache,
        batch_size=settings.aggregation_batch_size,
        max_attempts=settings.max_processing_attempts,
    )
    return {
        "leaderboard": LeaderboardAggregator(**common),
        "tournament": TournamentAggregator(grace_seconds=settings.tournament_grace_seconds, **common),
        "kpi": KpiAggregator(**common),
    }


def build_scheduler(app: FastAPI, settings: Settings) -> Scheduler:
    scheduler = Scheduler(app.state.session_factory)
    workers = app.state.workers
    scheduler.add_job(
        "tournament_calendar",
        settings.tournament_calendar_interval_seconds,
        lambda: ensure_weekly_tournament(app.state.session_factory),
    )
    scheduler.add_job("leaderboard", settings.leaderboard_interval_seconds, workers["leaderboard"].run)
    scheduler.add_job("tournament", settings.tournament_interval_seconds, workers["tournament"].run)
    scheduler.add_job("kpi", settings.kpi_interval_seconds, workers["kpi"].run)
    return scheduler


def create_app(
    settings: Optional[Settings] = None,
    cache_backend: Optional[CacheBackend] = None,
) -> FastAPI:
    """
    Build the application. `cache_backend` overrides the configured backend
    (tests use an in-memory one).
    """
    settings = settings or get_settings()

    # --- LIFECYCLE (STARTUP) ---
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level)
        engine = make_engine(settings.database_url, echo=settings.database_echo)
        await create_tables(engine)
        app.state.engine = engine
        app.state.session_factory = make_session_factory(engine)

        backend = cache_backend if cache_backend is not None else await build_cache_backend(settings)
        app.state.cache_provider = CacheProvider(backend)
        app.state.cache = CacheAside(
            app.state.cache_provider,
            key_prefix=settings.cache_key_prefix,
            query_timeout=settings.query_timeout_seconds,
            retry_delay=settings.query_retry_delay_seconds,
            verify_writes=settings.cache_verify_writes,
        )

        processor = PostIngestProcessor(app.state.session_factory)
        queue = RedisEventQueue.from_url(settings.queue_url, settings.queue_name) if settings.queue_url else None
        app.state.queue = queue
        app.state.dispatcher = HandoffDispatcher(processor, queue)
        consumer = asyncio.create_task(queue.consume(processor)) if queue else None

        app.state.workers = build_workers(app, settings)
        app.state.scheduler = build_scheduler(app, settings)
        if settings.scheduler_enabled:
            await app.state.scheduler.start()

        yield

        # --- SHUTDOWN ---
        await app.state.scheduler.stop()
        if consumer is not None:
            consumer.cancel()
            await asyncio.gather(consumer, return_exceptions=True)
        await app.state.dispatcher.drain()
        if queue is not None:
            await queue.close()
        current = app.state.cache_provider()
        if current is not None:
            await current.close()
        await engine.dispose()

    app = FastAPI(title="GamePulse", lifespan=lifespan)
    app.state.settings = settings
    register_routes(app)
    return app


def get_cache(request: Request) -> CacheAside:
    return request.app.state.cache


# --- API ENDPOINTS ---

def register_routes(app: FastAPI) -> None:

    @app.exception_handler(UnknownViewError)
    async def unknown_view(request: Request, exc: UnknownViewError):
        return JSONResponse(status_code=404, content={"detail": f"Unknown view: {exc.view}"})

    @app.exception_handler(ValidationError)
    async def invalid_filters(request: Request, exc: ValidationError):
        return JSONResponse(
            status_code=422, content={"detail": exc.errors(include_url=False, include_context=False)}
        )

    @app.exception_handler(FilterError)
    async def inconsistent_filters(request: Request, exc: FilterError):
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(QueryUnavailableError)
    async def query_unavailable(request: Request, exc: QueryUnavailableError):
        # no stale substitution: the dashboard shows the error
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    @app.post("/events", response_model=IngestAck)
    async def publish_events(request: Request):
        """
        Accept one event or a batch. Always 200: events are stored and handed
        off for processing; failures are logged, never returned.
        """
        try:
            body = json.loads(await request.body() or b"null")
        except (ValueError, UnicodeDecodeError):
            logger.warning("Ignoring non-JSON ingestion body")
            return IngestAck(count=0)
        return await ingest(
            body,
            request.app.state.session_factory,
            request.app.state.dispatcher,
            request.app.state.settings.max_batch_size,
        )

    @app.get("/aggregates/{view}", response_model=AggregateResponse)
    async def get_aggregate(view: str, request: Request, cache: CacheAside = Depends(get_cache)):
        settings = request.app.state.settings
        try:
            return await serve_view(
                view,
                request.query_params,
                cache,
                request.app.state.session_factory,
                max_window_days=settings.max_window_days,
                default_window_days=settings.default_window_days,
            )
        except (GamePulseError, ValidationError):
            raise
        except Exception:
            logger.exception("Error serving view %s", view)
            raise HTTPException(status_code=500, detail="Internal server error")

    @app.get("/events", response_model=list[EventOut])
    async def get_events(
        status: Optional[str] = None,
        event_type: Optional[str] = None,
        subject_id: Optional[str] = None,
        limit: int = Query(default=100, ge=1, le=100),
        db: AsyncSession = Depends(get_db),
    ):
        return await list_events(db, status=status, event_type=event_type, subject_id=subject_id, limit=limit)

    @app.get("/stats")
    async def get_stats(request: Request, db: AsyncSession = Depends(get_db)):
        state = request.app.state
        return {
            "events": await event_counts(db),
            "cache": await state.cache.describe(),
            "handoff": {**state.dispatcher.stats, "in_flight": state.dispatcher.in_flight},
            "queue": dict(state.queue.stats) if state.queue else None,
            "jobs": await state.scheduler.history(),
        }

    @app.get("/health")
    async def get_health(request: Request, db: AsyncSession = Depends(get_db)):
        cache = await request.app.state.cache.describe()
        try:
            await db.execute(text("SELECT 1"))
        except Exception as e:
            logger.error("Health check failed: %s", e)
            return JSONResponse(
                status_code=503,
                content={"status": "unhealthy", "database": "unreachable", "cache": cache["connected"]},
            )
        status = "healthy" if cache["connected"] or cache["backend"] is None else "degraded"
        return {"status": status, "database": "connected", "cache": cache["connected"]}

    # --- ADMIN ---

    @app.post("/admin/events/retry-failed")
    async def post_retry_failed(request: Request, limit: int = Query(default=100, ge=1, le=10000)):
        reset = await retry_failed(request.app.state.session_factory, limit)
        return {"reset": reset}

    @app.post("/admin/cache/flush")
    async def post_cache_flush(cache: CacheAside = Depends(get_cache)):
        return {"deleted": await cache.flush()}

    @app.post("/admin/jobs/{name}/run")
    async def post_run_job(name: str, request: Request):
        scheduler = request.app.state.scheduler
        if name not in scheduler.jobs:
            raise HTTPException(status_code=404, detail=f"Unknown job: {name}")
        started = await scheduler.run_job(name)
        return {"job": name, "ran": started}

    @app.post("/admin/aggregates/{domain}/rebuild")
    async def post_rebuild(domain: str, request: Request):
        """Truncate a global domain's aggregates and re-fold its events."""
        worker = request.app.state.workers.get(domain)
        if worker is None or not worker.aggregate_models:
            raise HTTPException(status_code=404, detail=f"Unknown aggregate domain: {domain}")
        started = await request.app.state.scheduler.run_job(domain, worker.rebuild)
        if not started:
            raise HTTPException(status_code=409, detail=f"{domain} aggregation is in progress")
        return {"domain": domain, "rebuilt": True}

    @app.post("/admin/tournaments", status_code=201)
    async def post_tournament(tournament: TournamentCreate, request: Request):
        created = await create_tournament(
            request.app.state.session_factory,
            tournament.id,
            tournament.name,
            tournament.starts_at,
            tournament.ends_at,
        )
        if not created:
            raise HTTPException(status_code=409, detail=f"Tournament {tournament.id} already exists")
        return {"tournament_id": tournament.id, "created": True}

    @app.delete("/admin/tournaments/{tournament_id}")
    async def delete_tournament(tournament_id: str, request: Request):
        removed = await teardown_tournament(request.app.state.session_factory, tournament_id)
        if not removed:
            raise HTTPException(status_code=404, detail=f"Unknown tournament: {tournament_id}")
        await request.app.state.cache.invalidate("tournament")
        return {"tournament_id": tournament_id, "deleted": True}


app = create_app()
