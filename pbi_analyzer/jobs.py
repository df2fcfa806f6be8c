"""Generic job lifecycle shared by analysis runs, fix sessions and queries.

A job is driven by a work function supplied by its orchestrator. The manager
owns every status transition; orchestrators observe transitions through a
persistence callback that mirrors the record into their own table.
"""

import collections
import enum
import logging
import threading
import uuid
from concurrent.futures import Executor
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, NamedTuple, Optional

from pbi_analyzer.database import utcnow
from pbi_analyzer.exceptions import Cancelled, InvalidTransition, NotFound

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"
CANCELLED_BEFORE_START = "cancelled before start"


class JobStatus(str, enum.Enum):
    """Status vocabulary for every job kind."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass(frozen=True)
class JobRecord:
    """Immutable snapshot of a job. Every transition publishes a new one."""

    id: str
    kind: str
    status: JobStatus
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Any = None
    error: Optional[str] = None
    cancel_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_reason is not None


class Transition(NamedTuple):
    """Outcome of a terminal transition request.

    ``applied`` is False when another terminal transition won the race;
    ``record`` is then the already-terminal record.
    """

    record: JobRecord
    applied: bool


TransitionHook = Callable[[JobRecord], None]
WorkFunction = Callable[["JobContext"], Any]


def describe_error(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


class _JobEntry:
    def __init__(self, record: JobRecord, on_transition: Optional[TransitionHook], abandon_on_cancel: bool):
        self.record = record
        self.on_transition = on_transition
        self.abandon_on_cancel = abandon_on_cancel
        self.condition = threading.Condition()
        self.cancel_callbacks: List[Callable[[], None]] = []
        self.timer: Optional[threading.Timer] = None


class JobContext:
    """Handle given to a work function for cooperative cancellation."""

    def __init__(self, manager: "JobManager", job_id: str):
        self._manager = manager
        self.job_id = job_id

    @property
    def record(self) -> JobRecord:
        return self._manager.get(self.job_id)

    @property
    def cancel_requested(self) -> bool:
        record = self.record
        return record.cancel_requested or record.is_terminal

    def checkpoint(self) -> None:
        """Raise Cancelled if a cancel request (or soft timeout) is pending."""
        record = self.record
        if record.cancel_requested:
            raise Cancelled(record.cancel_reason)
        if record.is_terminal:
            raise Cancelled(record.error or CANCELLED)

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Register a callback run when cancellation is requested."""
        self._manager.add_cancel_callback(self.job_id, callback)


class JobManager:
    """Thread-safe registry of live jobs and their state machine.

    PENDING -> RUNNING -> {COMPLETED, FAILED}; nothing leaves a terminal state.
    Conflicting transitions on one job are serialized by that job's condition;
    readers never take a lock and always see the last published record.
    """

    def __init__(self, executor: Optional[Executor] = None, soft_timeout: float = 0.0, max_terminal: int = 1000):
        self._executor = executor
        self._soft_timeout = soft_timeout
        self._jobs: Dict[str, _JobEntry] = {}
        self._registry_lock = threading.Lock()
        self._max_terminal = max_terminal
        self._terminal_ids: Deque[str] = collections.deque()

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    def create(
        self,
        kind: str,
        on_transition: Optional[TransitionHook] = None,
        queued: bool = True,
        abandon_on_cancel: bool = False,
    ) -> JobRecord:
        """
        Create a job record.

        Args:
            kind: Job kind, used for logging only
            on_transition: Callback invoked with every new record before it is published
            queued: False for job kinds without a queueing phase (created RUNNING)
            abandon_on_cancel: Finalize as FAILED immediately on cancel instead of
                waiting for the worker's next checkpoint

        Returns:
            The initial record
        """
        now = utcnow()
        record = JobRecord(
            id=str(uuid.uuid4()),
            kind=kind,
            status=JobStatus.PENDING if queued else JobStatus.RUNNING,
            created_at=now,
            started_at=None if queued else now,
        )
        entry = _JobEntry(record, on_transition, abandon_on_cancel)

        # A failing callback means the job never exists
        if on_transition:
            on_transition(record)

        with self._registry_lock:
            self._jobs[record.id] = entry

        if not queued:
            self._arm_timer(entry)

        logger.info(f"Created {kind} job {record.id} ({record.status.value})")
        return record

    def get(self, job_id: str) -> JobRecord:
        return self._entry(job_id).record

    def exists(self, job_id: str) -> bool:
        return job_id in self._jobs

    def live_ids(self, kind: Optional[str] = None) -> List[str]:
        """Ids of non-terminal jobs, optionally restricted to one kind."""
        with self._registry_lock:
            entries = list(self._jobs.values())
        return [
            e.record.id
            for e in entries
            if not e.record.is_terminal and (kind is None or e.record.kind == kind)
        ]

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def start(self, job_id: str) -> JobRecord:
        """PENDING -> RUNNING."""
        entry = self._entry(job_id)
        with entry.condition:
            record = entry.record
            if record.status != JobStatus.PENDING:
                raise InvalidTransition(
                    f"Job {job_id} is {record.status.value}, expected {JobStatus.PENDING.value}"
                )
            record = replace(record, status=JobStatus.RUNNING, started_at=utcnow())
            try:
                self._publish(entry, record)
            except Exception as e:
                failed = replace(
                    entry.record,
                    status=JobStatus.FAILED,
                    completed_at=utcnow(),
                    error=f"Failed to record start: {describe_error(e)}",
                )
                self._publish_terminal(entry, failed)
                self._retire(job_id)
                raise

        self._arm_timer(entry)
        logger.info(f"Started {record.kind} job {job_id}")
        return record

    def complete(self, job_id: str, result: Any = None) -> Transition:
        """RUNNING -> COMPLETED, storing the result."""
        return self._finish(job_id, JobStatus.COMPLETED, result=result)

    def fail(self, job_id: str, error: str) -> Transition:
        """RUNNING -> FAILED, storing the error."""
        return self._finish(job_id, JobStatus.FAILED, error=error)

    def cancel(self, job_id: str, reason: str = CANCELLED) -> JobRecord:
        """
        Request cancellation.

        Terminal jobs are left untouched. PENDING jobs fail immediately with
        "cancelled before start". RUNNING jobs get a cancellation flag that the
        worker observes at its next checkpoint, unless the job was created with
        ``abandon_on_cancel``, in which case it is failed right away.

        Returns:
            The record after the request was applied
        """
        entry = self._entry(job_id)
        with entry.condition:
            record = entry.record
            if record.is_terminal:
                return record

            if record.status == JobStatus.PENDING:
                record = replace(
                    record,
                    status=JobStatus.FAILED,
                    completed_at=utcnow(),
                    error=CANCELLED_BEFORE_START,
                    cancel_reason=reason,
                )
                record = self._publish_terminal(entry, record)
                self._disarm_timer(entry)
                self._retire(job_id)
                logger.info(f"Cancelled {record.kind} job {job_id} before start")
                return record

            if not record.cancel_requested:
                # Flag only; status is unchanged so the mirror row is not touched
                record = replace(record, cancel_reason=reason)
                self._publish(entry, record, persist=False)
            callbacks = list(entry.cancel_callbacks)
            abandon = entry.abandon_on_cancel

        logger.info(f"Cancellation requested for {record.kind} job {job_id}: {reason}")
        for callback in callbacks:
            self._run_cancel_callback(job_id, callback)

        if abandon:
            return self.fail(job_id, reason).record
        return self.get(job_id)

    def add_cancel_callback(self, job_id: str, callback: Callable[[], None]) -> None:
        entry = self._entry(job_id)
        with entry.condition:
            already_requested = entry.record.cancel_requested
            if not already_requested:
                entry.cancel_callbacks.append(callback)
        if already_requested:
            self._run_cancel_callback(job_id, callback)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> JobRecord:
        """Block until the job is terminal or the timeout elapses; never raises on timeout."""
        entry = self._entry(job_id)
        with entry.condition:
            entry.condition.wait_for(lambda: entry.record.is_terminal, timeout=timeout)
            return entry.record

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def submit(
        self,
        kind: str,
        work: WorkFunction,
        on_transition: Optional[TransitionHook] = None,
        queued: bool = True,
        abandon_on_cancel: bool = False,
    ) -> JobRecord:
        """Create a job and schedule its work function on the executor."""
        if self._executor is None:
            raise RuntimeError("JobManager has no executor")

        record = self.create(
            kind,
            on_transition=on_transition,
            queued=queued,
            abandon_on_cancel=abandon_on_cancel,
        )
        try:
            self._executor.submit(self.run, record.id, work)
        except RuntimeError as e:
            logger.error(f"Could not schedule {kind} job {record.id}: {e}")
            if queued:
                self.cancel(record.id, reason=describe_error(e))
            else:
                self.fail(record.id, describe_error(e))
            raise
        return record

    def run(self, job_id: str, work: WorkFunction) -> JobRecord:
        """Drive one job to a terminal state. Runs on a worker thread."""
        record = self.get(job_id)
        if record.status == JobStatus.PENDING:
            try:
                self.start(job_id)
            except InvalidTransition:
                logger.info(f"Job {job_id} was finalized before it started")
                return self.get(job_id)
            except Exception as e:
                logger.error(f"Job {job_id} could not be started: {e}")
                return self.get(job_id)
        elif record.is_terminal:
            return record

        context = JobContext(self, job_id)
        try:
            result = work(context)
        except Cancelled as e:
            logger.info(f"Job {job_id} stopped at checkpoint: {e}")
            self._fail_quietly(job_id, describe_error(e))
        except Exception as e:
            logger.error(f"Job {job_id} failed: {e}", exc_info=True)
            self._fail_quietly(job_id, describe_error(e))
        else:
            try:
                outcome = self.complete(job_id, result)
                if not outcome.applied:
                    logger.info(
                        f"Job {job_id} finished after it was already {outcome.record.status.value}"
                    )
            except Exception as e:
                logger.error(f"Job {job_id} result could not be recorded: {e}", exc_info=True)
                self._fail_quietly(job_id, f"Failed to record result: {describe_error(e)}")

        return self.get(job_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _entry(self, job_id: str) -> _JobEntry:
        entry = self._jobs.get(job_id)
        if entry is None:
            raise NotFound(f"Job {job_id} not found")
        return entry

    def _publish(self, entry: _JobEntry, record: JobRecord, persist: bool = True) -> None:
        # Caller holds entry.condition
        if persist and entry.on_transition:
            entry.on_transition(record)
        entry.record = record
        entry.condition.notify_all()

    def _publish_terminal(self, entry: _JobEntry, record: JobRecord) -> JobRecord:
        """
        Publish a terminal record even if the transition hook rejects it.

        A rejected COMPLETED record is downgraded to FAILED and the hook is
        tried once more. If that also fails the record is published in memory
        only; the stale mirror row is finalized by startup recovery.

        Returns:
            The record actually published
        """
        # Caller holds entry.condition
        try:
            self._publish(entry, record)
            return record
        except Exception as e:
            logger.error(f"Could not persist {record.status.value} for job {record.id}: {e}", exc_info=True)
            if record.status == JobStatus.COMPLETED:
                record = replace(
                    record,
                    status=JobStatus.FAILED,
                    result=None,
                    error=f"Failed to record result: {describe_error(e)}",
                )

        try:
            self._publish(entry, record)
        except Exception as e:
            logger.error(f"Job {record.id} is {record.status.value} in memory only: {e}")
            entry.record = record
            entry.condition.notify_all()
        return record

    def _finish(
        self,
        job_id: str,
        status: JobStatus,
        result: Any = None,
        error: Optional[str] = None,
    ) -> Transition:
        entry = self._entry(job_id)
        with entry.condition:
            record = entry.record
            if record.is_terminal:
                return Transition(record, False)
            if record.status != JobStatus.RUNNING:
                raise InvalidTransition(
                    f"Job {job_id} is {record.status.value}, cannot move to {status.value}"
                )
            record = replace(
                record,
                status=status,
                completed_at=utcnow(),
                result=result,
                error=error,
            )
            record = self._publish_terminal(entry, record)

        self._disarm_timer(entry)
        self._retire(job_id)
        if record.status == JobStatus.FAILED:
            logger.warning(f"{record.kind} job {job_id} failed: {record.error}")
        else:
            logger.info(f"{record.kind} job {job_id} completed")
        return Transition(record, True)

    def _retire(self, job_id: str) -> None:
        """Track a terminal job, evicting the oldest beyond max_terminal."""
        with self._registry_lock:
            self._terminal_ids.append(job_id)
            while len(self._terminal_ids) > self._max_terminal:
                evicted = self._terminal_ids.popleft()
                self._jobs.pop(evicted, None)

    def _fail_quietly(self, job_id: str, error: str) -> None:
        try:
            self.fail(job_id, error)
        except Exception:
            logger.exception(f"Could not record failure of job {job_id}")

    def _run_cancel_callback(self, job_id: str, callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception as e:
            logger.warning(f"Cancel callback for job {job_id} failed: {e}")

    def _arm_timer(self, entry: _JobEntry) -> None:
        if self._soft_timeout <= 0:
            return
        timer = threading.Timer(self._soft_timeout, self._expire, args=(entry.record.id,))
        timer.daemon = True
        entry.timer = timer
        timer.start()

    def _disarm_timer(self, entry: _JobEntry) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None

    def _expire(self, job_id: str) -> None:
        logger.warning(f"Job {job_id} exceeded soft timeout of {self._soft_timeout:g}s")
        try:
            self.cancel(job_id, reason=f"{CANCELLED}: timed out after {self._soft_timeout:g}s")
        except NotFound:
            pass
