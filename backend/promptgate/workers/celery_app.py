from celery import Celery
from celery.signals import setup_logging

from promptgate.config import get_settings
from promptgate.logging_config import configure_logging

settings = get_settings()

celery_app = Celery(
    "promptgate",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["promptgate.workers.eval_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_default_queue="evals",
    task_routes={
        "promptgate.workers.eval_tasks.poll_queued_runs": {"queue": "evals"},
        "promptgate.workers.eval_tasks.process_eval_run": {"queue": "evals"},
    },
    # A single run may span many model calls; the run's own timeout bounds it.
    task_time_limit=max(600, int(settings.eval_run_timeout_minutes) * 60 + 60),
    task_soft_time_limit=max(540, int(settings.eval_run_timeout_minutes) * 60),
    beat_schedule={
        "poll-queued-eval-runs": {
            "task": "promptgate.workers.eval_tasks.poll_queued_runs",
            "schedule": max(1.0, float(settings.eval_worker_poll_interval_seconds)),
        },
    },
)


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    configure_logging(settings.debug)
