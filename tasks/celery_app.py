"""
tasks/celery_app.py
Celery application instance shared across all task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=4

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from functools import lru_cache

from celery import Celery
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from config.settings import settings

celery_app = Celery(
    "travel_planner",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.notification_tasks",
        "tasks.payment_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Acknowledge after execution so a dying worker does not lose the task
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=3600,
    task_max_retries=3,

    task_routes={
        "tasks.notification_tasks.*": {"queue": "notifications"},
        "tasks.payment_tasks.*": {"queue": "default"},
    },

    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Checkout sessions that were never paid: mark the booking payment failed
    "expire-stale-checkouts": {
        "task": "tasks.payment_tasks.expire_stale_checkouts",
        "schedule": 900,  # every 15 minutes
    },
}


# ── Sync DB access (Celery runs sync) ─────────────────────────────────────────

def sync_database_url(url: str) -> str:
    """postgresql+asyncpg:// → postgresql+psycopg2://, sqlite+aiosqlite:// → sqlite://"""
    return url.replace("+asyncpg", "+psycopg2").replace("+aiosqlite", "")


@lru_cache
def _session_factory() -> sessionmaker:
    engine = create_engine(sync_database_url(settings.DATABASE_URL), pool_pre_ping=True)
    return sessionmaker(bind=engine, expire_on_commit=False)


def get_sync_session() -> Session:
    return _session_factory()()
