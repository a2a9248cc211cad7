import logging
import time
from datetime import timedelta

from celery.signals import worker_process_init, worker_ready
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from promptgate.config import get_settings
from promptgate.services.eval import run_service
from promptgate.services.eval.execution import EvalExecutionService
from promptgate.services.eval.metrics import EvalMetrics, configure_metrics
from promptgate.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

# Sync engine for Celery workers (Celery doesn't support async)
settings = get_settings()
sync_engine = create_engine(settings.database_url_sync, echo=settings.debug)
SessionLocal = sessionmaker(bind=sync_engine)


def _run_timeout() -> timedelta:
    return timedelta(minutes=max(1, int(settings.eval_run_timeout_minutes)))


def queued_run_count() -> int:
    db = SessionLocal()
    try:
        return run_service.count_queued_runs(db)
    finally:
        db.close()


def _process_timed(executor: EvalExecutionService, run_id: int) -> None:
    started = time.monotonic()
    run = None
    try:
        run = executor.process_run(run_id)
    finally:
        EvalMetrics.record_run_execution(
            time.monotonic() - started,
            getattr(run, "mode", None),
            getattr(run, "trigger_type", None),
        )


@celery_app.task(name="promptgate.workers.eval_tasks.poll_queued_runs")
def poll_queued_runs():
    """Claim a batch of queued runs and process each to completion, one after another."""
    db = SessionLocal()
    try:
        run_ids = run_service.pick_queued_runs(db, max(1, int(settings.eval_worker_batch_size)))
        if not run_ids:
            return {"processed": []}
        executor = EvalExecutionService(db, settings=settings)
        processed = []
        for run_id in run_ids:
            try:
                _process_timed(executor, run_id)
                processed.append(run_id)
            except Exception:
                logger.exception("Eval run processing failed run_id=%s", run_id)
                db.rollback()
        return {"processed": processed}
    finally:
        db.close()


@celery_app.task(name="promptgate.workers.eval_tasks.process_eval_run")
def process_eval_run(run_id: int):
    db = SessionLocal()
    try:
        _process_timed(EvalExecutionService(db, settings=settings), run_id)
        return {"run_id": run_id}
    finally:
        db.close()


@celery_app.task(name="promptgate.workers.eval_tasks.recover_stuck_runs")
def recover_stuck_runs():
    db = SessionLocal()
    try:
        timeout = _run_timeout()
        logger.info("Eval stuck-run recovery started timeout_minutes=%s", int(timeout.total_seconds() // 60))
        recovered = run_service.recover_stuck_runs(db, timeout)
        logger.info("Eval stuck-run recovery finished recovered=%s", recovered)
        return {"recovered": recovered}
    finally:
        db.close()


@worker_process_init.connect
def _init_metrics(**kwargs):
    # Each pool process exports its own instruments.
    configure_metrics(settings)
    EvalMetrics.register_queue_depth(queued_run_count)


@worker_ready.connect
def _recover_on_startup(**kwargs):
    recover_stuck_runs.apply()
