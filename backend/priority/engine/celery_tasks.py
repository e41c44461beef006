# priority/engine/celery_tasks.py

import logging
from typing import Any, Dict, List, Optional

from celery import shared_task
from celery.exceptions import SoftTimeLimitExceeded
from django.conf import settings

from priority.exceptions import FatalJobError
from priority.models import OptimizationJob

from .processor import JobProcessor
from .schedules import ScheduleManager

# Configure logging for background worker monitoring
logger = logging.getLogger(__name__)

JOB_TIMEOUT = int(getattr(settings, "PRIORITY_JOB_TIMEOUT_SECONDS", 300))


@shared_task(
    bind=True,
    acks_late=True,
    soft_time_limit=JOB_TIMEOUT + 30,   # Past the in-job time limit, as a backstop
    time_limit=JOB_TIMEOUT + 60         # Hard limit for the task process
)
def run_optimization_job(self, job_id: int) -> Optional[Dict[str, Any]]:
    """
    Worker: run one OptimizationJob. Input = job_id only; everything else is
    read from the job row.

    No autoretry: a failed job stays failed and a retry is a new job row.
    """
    job = OptimizationJob.objects.filter(id=job_id).first()
    if not job:
        logger.warning(f"OptimizationJob {job_id} not found. Exiting worker.")
        return None

    processor = JobProcessor(timeout_exceptions=(SoftTimeLimitExceeded,))
    try:
        result = processor.run(job)
    except FatalJobError as exc:
        # Already recorded on the job row; surfaced to the owner via job status.
        logger.error(f"OptimizationJob {job_id} failed: {exc}")
        job.refresh_from_db()
        return {"job_id": job_id, "status": job.status, "fatal_error": str(exc)}

    logger.info(f"OptimizationJob {job_id} finished with status {result.status}")
    return result.to_dict()


@shared_task
def dispatch_due_schedules() -> List[int]:
    """Beat entry point: enqueue one job per due recurring schedule."""
    jobs = ScheduleManager().dispatch_due()
    return [job.pk for job in jobs]
