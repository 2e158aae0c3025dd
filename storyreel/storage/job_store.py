from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional
from uuid import uuid4

from croniter import croniter
from sqlalchemy import and_, delete, not_, or_, select, update
from sqlalchemy.orm import sessionmaker

from storyreel.errors import JobAlreadyFinishedError, JobNotFoundError, JobValidationError
from storyreel.models.domain import Job, JobState, utcnow
from storyreel.storage.database import JobRow


@dataclass
class JobFilter:
    job_id: Optional[str] = None
    types: Optional[List[str]] = None
    state: Optional[JobState] = None
    # equality on top-level string fields of the payload, e.g. {"user_id": "u1"}
    payload: dict[str, str] = field(default_factory=dict)


def next_fire_time(schedule: str, base: datetime) -> datetime:
    if not croniter.is_valid(schedule):
        raise JobValidationError(f"invalid schedule expression: {schedule!r}")
    return croniter(schedule, base).get_next(datetime)


class JobStore:
    """SQL-backed persistence for jobs.

    Every transition is one conditional UPDATE so concurrent schedulers sharing
    the database can never both own a job.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        lock_lifetime_seconds: float = 600.0,
        clock: Callable[[], datetime] = utcnow,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._sessions = session_factory
        self.lock_lifetime_seconds = lock_lifetime_seconds
        self.clock = clock
        self.log = logger or logging.getLogger(__name__)

    # -- creation -----------------------------------------------------------------

    def enqueue_now(self, job_type: str, payload: dict[str, Any], priority: int = 0) -> str:
        job_id = uuid4().hex
        now = self.clock()
        with self._sessions() as session:
            session.add(
                JobRow(
                    id=job_id,
                    type=job_type,
                    payload=payload,
                    priority=priority,
                    next_run_at=now,
                    progress=0,
                    created_at=now,
                )
            )
            session.commit()
        self.log.debug("job enqueued", extra={"job_id": job_id, "job_type": job_type})
        return job_id

    def enqueue_recurring(self, job_type: str, schedule: str, payload: dict[str, Any] | None = None) -> str:
        now = self.clock()
        next_run_at = next_fire_time(schedule, now)
        with self._sessions() as session:
            row = session.scalars(
                select(JobRow).where(JobRow.type == job_type, JobRow.schedule.is_not(None)).limit(1)
            ).first()
            if row is None:
                row = JobRow(
                    id=uuid4().hex,
                    type=job_type,
                    payload=payload or {},
                    priority=0,
                    schedule=schedule,
                    next_run_at=next_run_at,
                    progress=0,
                    created_at=now,
                )
                session.add(row)
            elif row.schedule != schedule or row.next_run_at is None:
                row.schedule = schedule
                row.next_run_at = next_run_at
            session.commit()
            return row.id

    # -- queries ------------------------------------------------------------------

    def get(self, job_id: str) -> Job | None:
        with self._sessions() as session:
            row = session.get(JobRow, job_id)
            return self._to_model(row) if row else None

    def find(self, job_filter: JobFilter | None = None, limit: int = 50) -> list[Job]:
        """Jobs matching ``job_filter``, most recently created first."""
        stmt = select(JobRow).where(*self._conditions(job_filter or JobFilter()))
        stmt = stmt.order_by(JobRow.created_at.desc()).limit(limit)
        with self._sessions() as session:
            return [self._to_model(row) for row in session.scalars(stmt)]

    def find_due(self, types: List[str] | None = None, limit: int = 10) -> list[Job]:
        """Due, unclaimed jobs ordered by priority then age."""
        if limit <= 0:
            return []
        now = self.clock()
        stmt = select(JobRow).where(
            *self._conditions(JobFilter(types=types)), self._due(now), self._unlocked(now)
        )
        stmt = stmt.order_by(JobRow.priority.desc(), JobRow.next_run_at.asc()).limit(limit)
        with self._sessions() as session:
            return [self._to_model(row) for row in session.scalars(stmt)]

    # -- locking ------------------------------------------------------------------

    def claim(self, job_id: str, owner: str) -> bool:
        now = self.clock()
        stmt = (
            update(JobRow)
            .where(JobRow.id == job_id, self._due(now), self._unlocked(now))
            .values(locked_at=now, locked_by=owner, last_run_at=now)
        )
        return self._execute(stmt) == 1

    def renew_lock(self, job_id: str, owner: str) -> bool:
        stmt = (
            update(JobRow)
            .where(JobRow.id == job_id, JobRow.locked_by == owner, JobRow.locked_at.is_not(None))
            .values(locked_at=self.clock())
        )
        return self._execute(stmt) == 1

    def release_lock(self, job_id: str, owner: str) -> bool:
        stmt = (
            update(JobRow)
            .where(JobRow.id == job_id, JobRow.locked_by == owner)
            .values(locked_at=None, locked_by=None)
        )
        return self._execute(stmt) == 1

    def release_locks(self, scheduler_name: str) -> int:
        """Unlock every job claimed by ``scheduler_name``; returns how many."""
        stmt = (
            update(JobRow)
            .where(JobRow.locked_by.startswith(f"{scheduler_name}/", autoescape=True))
            .values(locked_at=None, locked_by=None)
        )
        return self._execute(stmt)

    # -- transitions --------------------------------------------------------------

    def report_progress(self, job_id: str, owner: str, percent: int | float) -> bool:
        value = max(0, min(100, int(round(percent))))
        stmt = (
            update(JobRow)
            .where(JobRow.id == job_id, JobRow.locked_by == owner, JobRow.locked_at.is_not(None))
            .values(progress=value, locked_at=self.clock())
        )
        return self._execute(stmt) == 1

    def mark_finished(self, job_id: str, owner: str) -> bool:
        return self._finish(job_id, owner, failed_reason=None)

    def mark_failed(self, job_id: str, owner: str, reason: str) -> bool:
        return self._finish(job_id, owner, failed_reason=reason or "unknown error")

    def _finish(self, job_id: str, owner: str, failed_reason: str | None) -> bool:
        now = self.clock()
        with self._sessions() as session:
            schedule = session.scalar(select(JobRow.schedule).where(JobRow.id == job_id))
            values: dict[str, Any] = {
                "locked_at": None,
                "locked_by": None,
                "last_finished_at": now,
                "next_run_at": next_fire_time(schedule, now) if schedule else None,
                "failed_at": now if failed_reason is not None else None,
                "fail_reason": failed_reason,
            }
            result = session.execute(
                update(JobRow)
                .where(JobRow.id == job_id, JobRow.locked_by == owner, JobRow.locked_at.is_not(None))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1

    # -- removal ------------------------------------------------------------------

    def cancel(self, job_filter: JobFilter) -> int:
        """Remove matching jobs that have not finished yet; returns how many."""
        finished = and_(
            JobRow.last_finished_at.is_not(None),
            JobRow.next_run_at.is_(None),
            JobRow.failed_at.is_(None),
        )
        stmt = delete(JobRow).where(*self._conditions(job_filter), not_(finished))
        return self._execute(stmt)

    def cancel_job(self, job_id: str) -> None:
        job = self.get(job_id)
        if job is None:
            raise JobNotFoundError(f"job {job_id} not found")
        if job.state(self.clock(), self.lock_lifetime_seconds) == JobState.COMPLETED:
            raise JobAlreadyFinishedError(f"job {job_id} already finished")
        if self.cancel(JobFilter(job_id=job_id)) == 0:
            raise JobAlreadyFinishedError(f"job {job_id} already finished")

    def purge_finished(self, before: datetime) -> int:
        """Delete one-off jobs that finished or failed before ``before``."""
        stmt = delete(JobRow).where(
            JobRow.schedule.is_(None),
            JobRow.locked_at.is_(None),
            JobRow.last_finished_at.is_not(None),
            JobRow.last_finished_at < before,
        )
        return self._execute(stmt)

    # -- helpers ------------------------------------------------------------------

    def _execute(self, stmt) -> int:
        with self._sessions() as session:
            result = session.execute(stmt.execution_options(synchronize_session=False))
            session.commit()
            return result.rowcount

    def _lock_expiry(self, now: datetime) -> datetime:
        return now - timedelta(seconds=self.lock_lifetime_seconds)

    def _unlocked(self, now: datetime):
        return or_(JobRow.locked_at.is_(None), JobRow.locked_at < self._lock_expiry(now))

    def _due(self, now: datetime):
        return and_(JobRow.next_run_at.is_not(None), JobRow.next_run_at <= now)

    def _conditions(self, job_filter: JobFilter) -> list:
        now = self.clock()
        conditions: list = []
        if job_filter.job_id:
            conditions.append(JobRow.id == job_filter.job_id)
        if job_filter.types:
            conditions.append(JobRow.type.in_(job_filter.types))
        for key, value in job_filter.payload.items():
            conditions.append(JobRow.payload[key].as_string() == str(value))
        state = job_filter.state
        if state is None:
            return conditions
        if state == JobState.RUNNING:
            conditions.append(not_(self._unlocked(now)))
            return conditions
        conditions.append(self._unlocked(now))
        if state == JobState.FAILED:
            conditions.append(JobRow.failed_at.is_not(None))
            return conditions
        conditions.append(JobRow.failed_at.is_(None))
        if state == JobState.COMPLETED:
            conditions.extend([JobRow.last_finished_at.is_not(None), JobRow.next_run_at.is_(None)])
        elif state == JobState.QUEUED:
            conditions.append(self._due(now))
        elif state == JobState.SCHEDULED:
            conditions.append(JobRow.next_run_at > now)
        return conditions

    def _to_model(self, row: JobRow) -> Job:
        return Job(
            id=row.id,
            type=row.type,
            payload=dict(row.payload or {}),
            priority=row.priority,
            schedule=row.schedule,
            next_run_at=row.next_run_at,
            locked_at=row.locked_at,
            locked_by=row.locked_by,
            progress=row.progress,
            last_run_at=row.last_run_at,
            last_finished_at=row.last_finished_at,
            failed_at=row.failed_at,
            fail_reason=row.fail_reason,
            created_at=row.created_at,
        )
