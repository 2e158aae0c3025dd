from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from storyreel.models.domain import Job
from storyreel.queue.scheduler import JobContext
from storyreel.storage.job_store import JobStore


class CleanupHandler:
    """Deletes finished and failed one-off jobs older than the retention window."""

    def __init__(self, store: JobStore, retention_hours: float = 24.0, logger: Optional[logging.Logger] = None) -> None:
        self.store = store
        self.retention = timedelta(hours=retention_hours)
        self.log = logger or logging.getLogger(__name__)

    def __call__(self, job: Job, context: JobContext) -> None:
        cutoff = self.store.clock() - self.retention
        removed = self.store.purge_finished(before=cutoff)
        context.report_progress(100)
        self.log.info("old jobs removed", extra={"removed": removed, "cutoff": cutoff.isoformat()})
