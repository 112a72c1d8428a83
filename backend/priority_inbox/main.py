"""FastAPI application entrypoint."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .database import SessionLocal, init_db
from .routers import sync, threads
from .services.prioritization_queue import (
    PrioritizationScheduler,
    count_deferred_in_db,
    requeue_deferred_backlog,
    run_batch_in_session,
    set_scheduler,
)
from .services.redis_cache import get_cache_stats

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    scheduler = PrioritizationScheduler(run_batch_in_session, count_deferred_in_db)
    set_scheduler(scheduler)
    db = SessionLocal()
    try:
        requeue_deferred_backlog(db, scheduler)
    finally:
        db.close()
    yield
    scheduler.shutdown()
    set_scheduler(None)


app = FastAPI(
    title="Priority Inbox API",
    description="Incremental Gmail primary-inbox sync with batched, resumable prioritization",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sync.router)
app.include_router(threads.router)


@app.get("/api/health")
def health():
    return {"status": "ok", "content_cache": get_cache_stats()}
