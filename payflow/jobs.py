"""
Durable job queue backed by its own SQLAlchemy store.

Jobs are claimed with a compare-and-set on their state, so any number of
worker threads or processes can share one queue. Delivery is at-least-once:
a job whose worker disappears is put back by ``recover_stalled``.

Lifecycle events are pushed to in-process subscription channels
(``JobQueue.subscribe``) instead of callbacks.
"""
import queue
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import Column, String, Integer, DateTime, Text, Boolean, JSON, select, update, delete, func

from payflow.database import QueueBase, utcnow

logger = structlog.get_logger(__name__)

WAITING = "waiting"
DELAYED = "delayed"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"
STATES = (WAITING, ACTIVE, COMPLETED, FAILED, DELAYED)


class JobRecord(QueueBase):
    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    queue = Column(String(64), index=True, nullable=False)
    name = Column(String(64), nullable=False)
    data = Column(JSON, nullable=False)
    state = Column(String(16), index=True, nullable=False)
    priority = Column(Integer, nullable=False, default=0)
    delay = Column(Integer, nullable=False, default=0)
    attempts = Column(Integer, nullable=False, default=1)
    attempts_made = Column(Integer, nullable=False, default=0)
    stalled_count = Column(Integer, nullable=False, default=0)
    backoff = Column(JSON)
    remove_on_complete = Column(Integer)
    remove_on_fail = Column(Integer)
    progress = Column(Integer, nullable=False, default=0)
    return_value = Column(JSON)
    failed_reason = Column(Text)
    available_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False)
    processed_on = Column(DateTime)
    finished_on = Column(DateTime)


class QueueFlag(QueueBase):
    __tablename__ = "queue_flags"

    queue = Column(String(64), primary_key=True)
    paused = Column(Boolean, nullable=False, default=False)


@dataclass
class JobOptions:
    priority: int = 0
    delay: int = 0
    attempts: int = 1
    backoff: Optional[Dict[str, Any]] = None
    remove_on_complete: Optional[int] = None
    remove_on_fail: Optional[int] = None


@dataclass
class QueueEvent:
    kind: str
    queue: str
    job_id: Optional[int] = None
    job_name: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Job:
    """Snapshot of a job handed to a worker."""
    id: int
    name: str
    data: Dict[str, Any]
    priority: int
    attempts: int
    attempts_made: int
    stalled_count: int
    state: str
    progress: int = 0
    return_value: Any = None
    failed_reason: Optional[str] = None
    options: JobOptions = field(default_factory=JobOptions)
    queue: Optional["JobQueue"] = field(default=None, repr=False, compare=False)

    @property
    def redelivered(self):
        """True when this job already ran at least once before."""
        return self.attempts_made > 0 or self.stalled_count > 0

    def update_progress(self, progress):
        self.progress = progress
        if self.queue is not None:
            self.queue.update_progress(self, progress)

    @classmethod
    def from_record(cls, record, job_queue=None):
        return cls(
            id=record.id,
            name=record.name,
            data=dict(record.data or {}),
            priority=record.priority,
            attempts=record.attempts,
            attempts_made=record.attempts_made,
            stalled_count=record.stalled_count,
            state=record.state,
            progress=record.progress,
            return_value=record.return_value,
            failed_reason=record.failed_reason,
            options=JobOptions(
                priority=record.priority,
                delay=record.delay,
                attempts=record.attempts,
                backoff=record.backoff,
                remove_on_complete=record.remove_on_complete,
                remove_on_fail=record.remove_on_fail,
            ),
            queue=job_queue,
        )


def backoff_delay(backoff, attempts_made):
    """Milliseconds to wait before the next try, after ``attempts_made`` failures."""
    if not backoff:
        return 0
    base = int(backoff.get("delay", 0))
    if backoff.get("type") == "exponential":
        return base * 2 ** (attempts_made - 1)
    return base


class EventSubscription:
    """A channel of QueueEvents. ``get`` blocks up to ``timeout`` seconds."""

    def __init__(self, owner, maxsize=0):
        self._owner = owner
        self._events = queue.Queue(maxsize=maxsize)

    def put(self, event):
        try:
            self._events.put_nowait(event)
        except queue.Full:
            logger.warning("queue_event_dropped", kind=event.kind, job_id=event.job_id)

    def get(self, timeout=None):
        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self):
        self._owner.unsubscribe(self)


class JobQueue:
    def __init__(self, session_factory, name, clock=None, stall_timeout_ms=30000):
        self.session_factory = session_factory
        self.name = name
        self.clock = clock or utcnow
        self.stall_timeout_ms = stall_timeout_ms
        self._subscribers: List[EventSubscription] = []
        self._lock = threading.Lock()

    # --- events -----------------------------------------------------------

    def subscribe(self, maxsize=0):
        subscription = EventSubscription(self, maxsize=maxsize)
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription):
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def _emit(self, kind, job=None, **data):
        # job: a JobRecord or a Job snapshot
        event = QueueEvent(
            kind=kind,
            queue=self.name,
            job_id=job.id if job is not None else None,
            job_name=job.name if job is not None else None,
            data=data,
        )
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.put(event)

    # --- producing --------------------------------------------------------

    def add(self, name, data, options=None):
        options = options or JobOptions()
        now = self.clock()
        delay = max(int(options.delay or 0), 0)
        record = JobRecord(
            queue=self.name,
            name=name,
            data=data,
            state=DELAYED if delay > 0 else WAITING,
            priority=options.priority or 0,
            delay=delay,
            attempts=max(options.attempts or 1, 1),
            attempts_made=0,
            stalled_count=0,
            progress=0,
            backoff=options.backoff,
            remove_on_complete=options.remove_on_complete,
            remove_on_fail=options.remove_on_fail,
            available_at=now + timedelta(milliseconds=delay),
            created_at=now,
        )
        db = self.session_factory()
        try:
            db.add(record)
            db.commit()
            job = Job.from_record(record, self)
        finally:
            db.close()

        logger.debug("job_added", queue=self.name, job_id=job.id, job_name=name, delay=delay, priority=job.priority)
        if delay > 0:
            self._emit(DELAYED, job, delay=delay)
        else:
            self._emit(WAITING, job)
        return job

    # --- consuming --------------------------------------------------------

    def reserve(self):
        """Claim the next eligible job, or return None."""
        if self.is_paused():
            return None
        self.promote_delayed()
        self.recover_stalled()

        db = self.session_factory()
        try:
            while True:
                record = db.execute(
                    select(JobRecord)
                    .where(JobRecord.queue == self.name, JobRecord.state == WAITING)
                    .order_by(JobRecord.priority.asc(), JobRecord.id.asc())
                    .limit(1)
                ).scalar_one_or_none()
                if record is None:
                    return None

                now = self.clock()
                claimed = db.execute(
                    update(JobRecord)
                    .where(JobRecord.id == record.id, JobRecord.state == WAITING)
                    .values(state=ACTIVE, processed_on=now)
                    .execution_options(synchronize_session=False)
                ).rowcount
                db.commit()
                if claimed == 1:
                    db.refresh(record)
                    self._emit(ACTIVE, record, prev=WAITING)
                    return Job.from_record(record, self)
                # another worker won the race; look again
                db.expire_all()
        finally:
            db.close()

    def _claimed(self, job):
        """WHERE clause matching ``job`` only while the caller still holds it."""
        return (
            JobRecord.id == job.id,
            JobRecord.state == ACTIVE,
            JobRecord.stalled_count == job.stalled_count,
        )

    def update_progress(self, job, progress):
        # doubles as the heartbeat that keeps recover_stalled away
        db = self.session_factory()
        try:
            db.execute(
                update(JobRecord)
                .where(*self._claimed(job))
                .values(progress=progress, processed_on=self.clock())
                .execution_options(synchronize_session=False)
            )
            db.commit()
        finally:
            db.close()
        self._emit("progress", job, progress=progress)

    def complete(self, job, result=None):
        """Mark ``job`` completed. Returns False if the claim was lost."""
        db = self.session_factory()
        try:
            changed = db.execute(
                update(JobRecord)
                .where(*self._claimed(job))
                .values(state=COMPLETED, return_value=result, finished_on=self.clock())
                .execution_options(synchronize_session=False)
            ).rowcount
            db.commit()
            if not changed:
                logger.warning("job_complete_ignored", queue=self.name, job_id=job.id,
                               stalled_count=job.stalled_count)
                return False
            self._emit(COMPLETED, job, returnvalue=result)
            record = db.get(JobRecord, job.id)
            self._trim(db, COMPLETED, record.remove_on_complete if record is not None else None)
            return True
        finally:
            db.close()

    def fail(self, job, error):
        """Record a failed attempt. Returns False if the claim was lost."""
        retryable = getattr(error, "retryable", True)
        reason = str(error) or error.__class__.__name__
        db = self.session_factory()
        try:
            record = db.get(JobRecord, job.id)
            if record is None or record.state != ACTIVE or record.stalled_count != job.stalled_count:
                logger.warning("job_fail_ignored", queue=self.name, job_id=job.id,
                               stalled_count=job.stalled_count)
                return False
            attempts_made = record.attempts_made + 1
            now = self.clock()

            if retryable and attempts_made < record.attempts:
                delay = backoff_delay(record.backoff, attempts_made)
                state = DELAYED if delay > 0 else WAITING
                values = dict(state=state, available_at=now + timedelta(milliseconds=delay))
            else:
                delay = None
                state = FAILED
                values = dict(state=FAILED, finished_on=now)

            changed = db.execute(
                update(JobRecord)
                .where(*self._claimed(job))
                .values(attempts_made=attempts_made, failed_reason=reason, **values)
                .execution_options(synchronize_session=False)
            ).rowcount
            db.commit()
            if not changed:
                logger.warning("job_fail_ignored", queue=self.name, job_id=job.id,
                               stalled_count=job.stalled_count)
                return False

            if state == FAILED:
                self._emit(FAILED, job, failedReason=reason, attemptsMade=attempts_made)
                self._trim(db, FAILED, record.remove_on_fail)
                return True

            logger.info(
                "job_retry_scheduled",
                queue=self.name,
                job_id=job.id,
                attempt=attempts_made,
                attempts=record.attempts,
                delay=delay,
            )
            if delay > 0:
                self._emit(DELAYED, job, delay=delay)
            else:
                self._emit(WAITING, job)
            return True
        finally:
            db.close()

    def promote_delayed(self):
        now = self.clock()
        db = self.session_factory()
        try:
            due = db.execute(
                select(JobRecord).where(
                    JobRecord.queue == self.name,
                    JobRecord.state == DELAYED,
                    JobRecord.available_at <= now,
                )
            ).scalars().all()
            promoted = []
            for record in due:
                moved = db.execute(
                    update(JobRecord)
                    .where(JobRecord.id == record.id, JobRecord.state == DELAYED)
                    .values(state=WAITING)
                    .execution_options(synchronize_session=False)
                ).rowcount
                if moved:
                    promoted.append(record)
            db.commit()
            for record in promoted:
                self._emit(WAITING, record)
            return len(promoted)
        finally:
            db.close()

    def recover_stalled(self):
        """Put back active jobs whose worker has been silent past the stall timeout."""
        cutoff = self.clock() - timedelta(milliseconds=self.stall_timeout_ms)
        db = self.session_factory()
        try:
            stalled = db.execute(
                select(JobRecord).where(
                    JobRecord.queue == self.name,
                    JobRecord.state == ACTIVE,
                    JobRecord.processed_on < cutoff,
                )
            ).scalars().all()
            recovered = []
            for record in stalled:
                moved = db.execute(
                    update(JobRecord)
                    .where(JobRecord.id == record.id, JobRecord.state == ACTIVE)
                    .values(state=WAITING, stalled_count=JobRecord.stalled_count + 1)
                    .execution_options(synchronize_session=False)
                ).rowcount
                if moved:
                    recovered.append(record)
            db.commit()
            for record in recovered:
                logger.warning("job_stalled", queue=self.name, job_id=record.id)
                self._emit("stalled", record)
            return len(recovered)
        finally:
            db.close()

    # --- admin --------------------------------------------------------------

    def pause(self):
        self._set_paused(True)
        self._emit("paused")

    def resume(self):
        self._set_paused(False)
        self._emit("resumed")

    def is_paused(self):
        db = self.session_factory()
        try:
            flag = db.get(QueueFlag, self.name)
            return bool(flag and flag.paused)
        finally:
            db.close()

    def _set_paused(self, paused):
        db = self.session_factory()
        try:
            flag = db.get(QueueFlag, self.name)
            if flag is None:
                db.add(QueueFlag(queue=self.name, paused=paused))
            else:
                flag.paused = paused
            db.commit()
        finally:
            db.close()

    def get_counts(self):
        self.promote_delayed()
        db = self.session_factory()
        try:
            rows = db.execute(
                select(JobRecord.state, func.count(JobRecord.id))
                .where(JobRecord.queue == self.name)
                .group_by(JobRecord.state)
            ).all()
        finally:
            db.close()
        counts = {state: 0 for state in STATES}
        counts.update({state: count for state, count in rows})
        return counts

    def get_jobs(self, state):
        db = self.session_factory()
        try:
            records = db.execute(
                select(JobRecord)
                .where(JobRecord.queue == self.name, JobRecord.state == state)
                .order_by(JobRecord.id.asc())
            ).scalars().all()
            return [Job.from_record(record, self) for record in records]
        finally:
            db.close()

    def get_job(self, job_id):
        db = self.session_factory()
        try:
            record = db.get(JobRecord, job_id)
            return Job.from_record(record, self) if record is not None else None
        finally:
            db.close()

    def remove(self, job_id):
        db = self.session_factory()
        try:
            record = db.get(JobRecord, job_id)
            if record is None:
                return False
            job = Job.from_record(record)
            db.delete(record)
            db.commit()
            self._emit("removed", job)
            return True
        finally:
            db.close()

    def clean(self, grace_ms, limit, state):
        """Delete up to ``limit`` finished jobs in ``state`` older than ``grace_ms``."""
        if state not in (COMPLETED, FAILED):
            raise ValueError(f"Cannot clean jobs in state {state!r}")
        cutoff = self.clock() - timedelta(milliseconds=grace_ms)
        db = self.session_factory()
        try:
            records = db.execute(
                select(JobRecord)
                .where(
                    JobRecord.queue == self.name,
                    JobRecord.state == state,
                    JobRecord.finished_on <= cutoff,
                )
                .order_by(JobRecord.finished_on.asc(), JobRecord.id.asc())
                .limit(limit)
            ).scalars().all()
            swept = [Job.from_record(record) for record in records]
            removed = [job.id for job in swept]
            if removed:
                db.execute(delete(JobRecord).where(JobRecord.id.in_(removed)))
                db.commit()
            for job in swept:
                self._emit("removed", job)
        finally:
            db.close()
        logger.info("queue_cleaned", queue=self.name, state=state, removed=len(removed))
        return removed

    def _trim(self, db, state, keep):
        if keep is None:
            return
        stale = db.execute(
            select(JobRecord.id)
            .where(JobRecord.queue == self.name, JobRecord.state == state)
            .order_by(JobRecord.finished_on.desc(), JobRecord.id.desc())
            .offset(keep)
        ).scalars().all()
        if stale:
            db.execute(delete(JobRecord).where(JobRecord.id.in_(stale)))
            db.commit()

