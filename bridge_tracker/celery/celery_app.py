# celery_app.py  ─────────────────────────────────────────────────────────
from celery import Celery
from celery.schedules import crontab
import os
import logging
import logging.config

# ── 1.  Broker / backend  ────────────────────────────────────
CELERY_BROKER_URL     = os.getenv("CELERY_BROKER_URL", "redis://redis:6379/0")
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://redis:6379/0")

celery_app = Celery(
    "bridge_tasks",
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
)

# ── 2.  Core config, Beat & routing ──────────────────────────
celery_app.conf.update(
    task_serializer       ="json",
    result_serializer     ="json",
    accept_content        =["json"],
    timezone              ="UTC",
    enable_utc            =True,

    # RedBeat keeps the schedule in redis across beat restarts
    beat_scheduler        ="redbeat.RedBeatScheduler",
    redbeat_redis_url     =CELERY_BROKER_URL,

    worker_max_tasks_per_child = 20,
)

# ── 3.  Beat schedule ────────────────────────────────────────
celery_app.conf.beat_schedule = {
    "maintenance-rescan": {
        "task": "bridge_maintenance_rescan",
        "schedule": crontab(minute="*/30"),
        "options": {"queue": "orchestrate"},
    },
    "price-enrichment": {
        "task": "bridge_price_enrichment",
        "schedule": crontab(minute="*/10"),
        "options": {"queue": "enrich"},
    },
    "daily-reconciliation": {
        "task": "bridge_reconciliation",
        "schedule": crontab(hour=3, minute=15),
        "options": {"queue": "enrich"},
    },
}

# ── 4.  Logging ──────────────────────────────────────────────
LOGGING_CONFIG = {
    "version": 1,
    "filters": {
        "shortname": {"()": "bridge_tracker.utils.shortname.ShortNameFilter"},
    },
    "formatters": {
        "custom": {
            "format": "[%(asctime)s] [%(levelname)s] %(shortname)s: %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        }
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "custom", "filters": ["shortname"]},
    },
    "root": {"level": "INFO", "handlers": ["console"]},
}
celery_app.conf.worker_hijack_root_logger = False
logging.config.dictConfig(LOGGING_CONFIG)

# ── 5.  Task modules, imported so Celery registers them ──────
import bridge_tracker.sources.bridge_pipeline.ingestion.schedule_ingest  # noqa: E402,F401
import bridge_tracker.scheduler.dispatcher  # noqa: E402,F401
