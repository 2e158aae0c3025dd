from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from storyreel.config import Settings
from storyreel.errors import JobCancelledError, JobValidationError, LockLostError
from storyreel.models.domain import Job
from storyreel.storage.job_store import JobStore

EVENTS = ("start", "success", "fail", "complete")

EventCallback = Callable[[str, Job, Optional[BaseException]], None]


class JobContext:
    """Handed to a running handler: progress reporting and cooperative cancellation."""

    def __init__(self, job: Job, store: JobStore, owner: str, logger: logging.Logger) -> None:
        self.job = job
        self.store = store
        self.owner = owner
        self.log = logger

    def report_progress(self, percent: int | float) -> None:
        if not self.store.report_progress(self.job.id, self.owner, percent):
            self._lost()
        self.job.progress = max(0, min(100, int(round(percent))))

    def checkpoint(self) -> None:
        """Renew the lock; raises once the job was cancelled or taken over."""
        if not self.store.renew_lock(self.job.id, self.owner):
            self._lost()

    def _lost(self) -> None:
        if self.store.get(self.job.id) is None:
            raise JobCancelledError(f"job {self.job.id} was cancelled")
        raise LockLostError(f"job {self.job.id} lock is no longer held by {self.owner}")


Handler = Callable[[Job, JobContext], None]


@dataclass
class JobDefinition:
    job_type: str
    handler: Handler
    concurrency: int
    semaphore: threading.BoundedSemaphore


@dataclass
class _RunningJob:
    job: Job
    owner: str
    definition: JobDefinition
    thread: threading.Thread


class JobScheduler:
    """Polls the job store, claims due jobs and runs each one on its own thread.

    Concurrency is bounded by one semaphore per job type plus a global one; a
    token of each is taken before the claim and given back when the handler
    returns.
    """

    def __init__(
        self,
        store: JobStore,
        name: str | None = None,
        poll_interval: float = 5.0,
        max_concurrency: int = 5,
        default_concurrency: int = 2,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.name = name or f"scheduler-{uuid4().hex[:8]}"
        self.poll_interval = poll_interval
        self.max_concurrency = max(1, max_concurrency)
        self.default_concurrency = max(1, default_concurrency)
        self.log = logger or logging.getLogger(__name__)
        self._definitions: Dict[str, JobDefinition] = {}
        self._listeners: Dict[str, List[EventCallback]] = defaultdict(list)
        self._global = threading.BoundedSemaphore(self.max_concurrency)
        self._running: Dict[str, _RunningJob] = {}
        self._state_lock = threading.Lock()
        self._poll_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def from_settings(cls, store: JobStore, settings: Settings, logger: Optional[logging.Logger] = None) -> "JobScheduler":
        return cls(
            store=store,
            name=settings.scheduler_name or None,
            poll_interval=settings.poll_interval_seconds,
            max_concurrency=settings.max_concurrency,
            default_concurrency=settings.default_concurrency,
            logger=logger,
        )

    # -- registration -------------------------------------------------------------

    def define(self, job_type: str, handler: Handler, concurrency: int | None = None) -> None:
        limit = max(1, concurrency or self.default_concurrency)
        self._definitions[job_type] = JobDefinition(
            job_type=job_type,
            handler=handler,
            concurrency=limit,
            semaphore=threading.BoundedSemaphore(limit),
        )

    def on(self, event: str, callback: EventCallback) -> None:
        if event != "*" and event not in EVENTS:
            raise ValueError(f"unknown scheduler event: {event}")
        self._listeners[event].append(callback)

    @property
    def job_types(self) -> List[str]:
        return list(self._definitions)

    # -- enqueue API --------------------------------------------------------------

    def now(self, job_type: str, payload: dict[str, Any], priority: int = 0) -> str:
        self._require_defined(job_type)
        return self.store.enqueue_now(job_type, payload, priority=priority)

    def every(self, schedule: str, job_type: str, payload: dict[str, Any] | None = None) -> str:
        self._require_defined(job_type)
        return self.store.enqueue_recurring(job_type, schedule, payload)

    def cancel(self, job_id: str) -> None:
        self.store.cancel_job(job_id)
        self.log.info("job cancelled", extra={"job_id": job_id})

    def _require_defined(self, job_type: str) -> None:
        if job_type not in self._definitions:
            raise JobValidationError(f"unknown job type: {job_type}")

    # -- lifecycle ----------------------------------------------------------------

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=f"{self.name}-poll", daemon=True)
        self._thread.start()
        self.log.info(
            "job scheduler started",
            extra={"scheduler": self.name, "job_types": self.job_types, "poll_interval": self.poll_interval},
        )

    def stop(self, timeout: float = 30.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        if not self.wait_idle(timeout):
            with self._state_lock:
                leftovers = list(self._running.values())
            released = self.store.release_locks(self.name)
            self.log.warning(
                "released locks of jobs still running at shutdown",
                extra={"scheduler": self.name, "job_ids": [running.job.id for running in leftovers], "released": released},
            )
        self.log.info("job scheduler stopped", extra={"scheduler": self.name})

    def wait_idle(self, timeout: float | None = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._state_lock:
                threads = [running.thread for running in self._running.values()]
            if not threads:
                return True
            for thread in threads:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                thread.join(remaining)
            if deadline is not None and time.monotonic() >= deadline:
                with self._state_lock:
                    return not self._running

    def running_jobs(self, job_type: str | None = None) -> List[str]:
        with self._state_lock:
            return [
                job_id
                for job_id, running in self._running.items()
                if job_type is None or running.job.type == job_type
            ]

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception:
                self.log.exception("job polling failed", extra={"scheduler": self.name})
            self._stop.wait(self.poll_interval)

    # -- polling ------------------------------------------------------------------

    def poll_once(self) -> List[str]:
        """Run one Polling -> Dispatching cycle and return the ids dispatched."""
        with self._poll_lock:
            self._renew_locks()
            dispatched: List[str] = []
            for definition in list(self._definitions.values()):
                free = min(
                    definition.concurrency - len(self.running_jobs(definition.job_type)),
                    self.max_concurrency - len(self.running_jobs()),
                )
                if free <= 0:
                    continue
                for job in self.store.find_due([definition.job_type], limit=free):
                    if not self._global.acquire(blocking=False):
                        return dispatched
                    if not definition.semaphore.acquire(blocking=False):
                        self._global.release()
                        break
                    if self._claim_and_dispatch(job, definition):
                        dispatched.append(job.id)
            return dispatched

    def _claim_and_dispatch(self, job: Job, definition: JobDefinition) -> bool:
        owner = f"{self.name}/{uuid4().hex[:8]}"
        try:
            claimed = self.store.claim(job.id, owner)
        except Exception:
            self._release(definition)
            raise
        if not claimed:
            self._release(definition)
            self.log.debug("job claimed elsewhere, skipping", extra={"job_id": job.id})
            return False
        job = self.store.get(job.id) or job
        thread = threading.Thread(
            target=self._run,
            args=(job, owner, definition),
            name=f"job-{job.type}-{job.id[:8]}",
            daemon=True,
        )
        with self._state_lock:
            self._running[job.id] = _RunningJob(job=job, owner=owner, definition=definition, thread=thread)
        thread.start()
        return True

    def _renew_locks(self) -> None:
        with self._state_lock:
            running = list(self._running.values())
        for item in running:
            try:
                if not self.store.renew_lock(item.job.id, item.owner):
                    self.log.warning("job lock lost", extra={"job_id": item.job.id, "job_type": item.job.type})
            except Exception:
                self.log.exception("job lock renewal failed", extra={"job_id": item.job.id})

    def _release(self, definition: JobDefinition) -> None:
        definition.semaphore.release()
        self._global.release()

    # -- execution ----------------------------------------------------------------

    def _run(self, job: Job, owner: str, definition: JobDefinition) -> None:
        log_extra = {"job_id": job.id, "job_type": job.type}
        context = JobContext(job, self.store, owner, self.log)
        try:
            self.log.info("job started", extra=log_extra)
            self._emit("start", job)
            try:
                definition.handler(job, context)
            except JobCancelledError:
                self.log.info("job cancelled while running", extra=log_extra)
                return
            except LockLostError:
                self.log.warning("job lock taken over, abandoning result", extra=log_extra)
                return
            except Exception as exc:
                self.log.warning("job failed", extra={**log_extra, "error": str(exc)}, exc_info=exc)
                self._finish(job, owner, exc)
                return
            self._finish(job, owner, None)
        finally:
            with self._state_lock:
                self._running.pop(job.id, None)
            self._release(definition)

    def _finish(self, job: Job, owner: str, error: BaseException | None) -> None:
        log_extra = {"job_id": job.id, "job_type": job.type}
        try:
            if error is None:
                recorded = self.store.mark_finished(job.id, owner)
            else:
                recorded = self.store.mark_failed(job.id, owner, str(error) or error.__class__.__name__)
        except Exception as exc:
            self.log.exception("could not record job result", extra=log_extra)
            error = error or exc
            recorded = False
        else:
            if not recorded:
                self.log.warning("job result not recorded, lock no longer held", extra=log_extra)
        snapshot = self.store.get(job.id) if recorded else None
        snapshot = snapshot or job
        if error is None:
            self.log.info("job completed", extra=log_extra)
            self._emit("success", snapshot)
        else:
            self._emit("fail", snapshot, error)
        self._emit("complete", snapshot, error)

    def _emit(self, event: str, job: Job, error: BaseException | None = None) -> None:
        for callback in [*self._listeners.get(event, []), *self._listeners.get("*", [])]:
            try:
                callback(event, job, error)
            except Exception:
                self.log.warning(
                    "job event listener failed",
                    extra={"event": event, "job_id": job.id},
                    exc_info=True,
                )
