from __future__ import annotations

# Ensure all models are registered before any task runs
# isort: off
import statement_intake.models  # noqa: F401
# isort: on

import time

from statement_intake.core.logging import (
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
    reset_task_context,
    set_task_context,
)
from statement_intake.worker.celery_app import celery_app

logger = get_logger(__name__)


@celery_app.task(name="process_parse_job", bind=True)
def process_parse_job_task(self, parse_job_id: str) -> None:
    from statement_intake.modules.jobs.service import process_parse_job

    task_id = getattr(self.request, "id", None)
    token = set_task_context(task_id)
    start = time.monotonic()
    log_event(
        logger,
        "celery.task.start",
        task_name="process_parse_job",
        celery_task_id=task_id,
        parse_job_id=parse_job_id,
    )
    try:
        process_parse_job(parse_job_id=parse_job_id)
        log_event(
            logger,
            "celery.task.finish",
            task_name="process_parse_job",
            celery_task_id=task_id,
            parse_job_id=parse_job_id,
            duration_ms=monotonic_ms(start),
        )
    except Exception:
        log_exception(
            logger,
            "celery.task.error",
            task_name="process_parse_job",
            celery_task_id=task_id,
            parse_job_id=parse_job_id,
            duration_ms=monotonic_ms(start),
        )
        raise
    finally:
        reset_task_context(token)
