# priority/engine/leases.py

import logging
from typing import Optional

from django.conf import settings
from django.core.cache import cache

logger = logging.getLogger(__name__)

LEASE_KEY_PREFIX = "priority:schedule-lease"

# Lease outlives the job timeout so a crashed worker cannot hold it forever
LEASE_GRACE_SECONDS = 60


class ScheduleLease:
    """
    Per-schedule mutual exclusion backed by the Django cache.

    `cache.add` only writes when the key is absent, which Redis performs
    atomically, so exactly one job can hold a schedule's lease. The lease
    value is the holding job id; release only removes it for that holder.
    """

    def __init__(self, schedule_id: int, timeout: Optional[int] = None):
        self.schedule_id = schedule_id
        job_timeout = getattr(settings, "PRIORITY_JOB_TIMEOUT_SECONDS", 300)
        self.timeout = timeout or int(job_timeout) + LEASE_GRACE_SECONDS

    @property
    def key(self) -> str:
        return f"{LEASE_KEY_PREFIX}:{self.schedule_id}"

    def holder(self) -> Optional[int]:
        return cache.get(self.key)

    def acquire(self, job_id: int) -> bool:
        acquired = cache.add(self.key, job_id, timeout=self.timeout)
        if acquired:
            logger.debug(f"Lease {self.key} acquired by job {job_id}")
        elif self.holder() == job_id:
            # Re-entrant for the same job (e.g. a redelivered Celery message)
            return True
        return acquired

    def release(self, job_id: int) -> bool:
        current = self.holder()
        if current is None:
            return False
        if current != job_id:
            logger.warning(f"Lease {self.key} held by job {current}; job {job_id} cannot release it")
            return False
        cache.delete(self.key)
        logger.debug(f"Lease {self.key} released by job {job_id}")
        return True
