"""Polling state machine for backend analysis jobs.

The backend creates the job record asynchronously, so a freshly uploaded job
can answer 404 for a short while. The poller retries those a bounded number of
times, fails fast on transport errors, and reschedules itself while the job is
still running. All timing goes through an injected scheduler.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, List, Optional

from ..api.schemas import AnalysisFilters, AnalysisJob, JobStatus
from .errors import TransientNotFound, TransportFailure

logger = logging.getLogger(__name__)

POLL_INTERVAL_MS = 1000
NOT_FOUND_RETRY_LIMIT = 5
FILTER_DEBOUNCE_MS = 500

NOT_FOUND_MESSAGE = "Analysis job not found; the backend may have restarted"
TRANSPORT_FALLBACK_MESSAGE = "Failed to load analysis"
JOB_FAILED_FALLBACK_MESSAGE = "Analysis failed"


class PollerState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    RETRYING_NOT_FOUND = "retrying_not_found"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class PollerSnapshot:
    state: PollerState = PollerState.IDLE
    job_id: Optional[str] = None
    progress: int = 0
    job: Optional[AnalysisJob] = None
    error: Optional[str] = None
    not_found_attempts: int = 0

    @property
    def terminal(self) -> bool:
        return self.state in (PollerState.COMPLETE, PollerState.FAILED)


class JobPoller:
    """Drive one analysis job to completion.

    ``backend`` needs a ``get_analysis(job_id, filters)`` method (see
    :class:`~falcon_client.core.backend.BackendClient`); ``scheduler`` needs
    ``schedule(delay_ms, fn)`` returning a token with ``cancel()``.
    """

    def __init__(
        self,
        backend,
        scheduler,
        poll_interval_ms: int = POLL_INTERVAL_MS,
        not_found_retry_limit: int = NOT_FOUND_RETRY_LIMIT,
        filter_debounce_ms: int = FILTER_DEBOUNCE_MS,
    ):
        self.backend = backend
        self.scheduler = scheduler
        self.poll_interval_ms = poll_interval_ms
        self.not_found_retry_limit = not_found_retry_limit
        self.filter_debounce_ms = filter_debounce_ms

        self._snapshot = PollerSnapshot()
        self._filters = AnalysisFilters()
        self._timer = None
        self._generation = 0
        self._in_flight = False
        self._subscribers: List[Callable[[PollerSnapshot], None]] = []

    @property
    def snapshot(self) -> PollerSnapshot:
        return self._snapshot

    @property
    def state(self) -> PollerState:
        return self._snapshot.state

    @property
    def filters(self) -> AnalysisFilters:
        return self._filters

    def subscribe(self, callback: Callable[[PollerSnapshot], None]) -> Callable[[], None]:
        """Register ``callback`` for every snapshot change; returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def start(self, job_id: str, filters: Optional[AnalysisFilters] = None) -> None:
        if not job_id:
            raise ValueError("job_id must be a non-empty string")
        self._filters = filters or AnalysisFilters()
        logger.info("Polling analysis %s", job_id)
        self._update(PollerSnapshot(state=PollerState.POLLING, job_id=job_id))
        self._schedule_tick(0)

    def set_filters(self, filters: Optional[AnalysisFilters]) -> None:
        self._filters = filters or AnalysisFilters()
        state = self.state
        if state in (PollerState.POLLING, PollerState.RETRYING_NOT_FOUND):
            self._schedule_tick(self.filter_debounce_ms)
        elif state == PollerState.COMPLETE:
            # Keep the previous result on screen until the filtered one arrives.
            self._update(replace(self._snapshot, state=PollerState.POLLING, not_found_attempts=0))
            self._schedule_tick(self.filter_debounce_ms)

    def cancel(self) -> None:
        self._clear_timer()
        self._generation += 1
        if not self._snapshot.terminal and self.state != PollerState.IDLE:
            logger.info("Polling of %s cancelled", self._snapshot.job_id)
            self._update(replace(self._snapshot, state=PollerState.IDLE))

    def _schedule_tick(self, delay_ms: int) -> None:
        self._clear_timer()
        self._generation += 1
        generation = self._generation
        self._timer = self.scheduler.schedule(delay_ms, lambda: self._tick(generation))

    def _clear_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _tick(self, generation: int) -> None:
        if generation != self._generation or self._in_flight:
            return
        self._timer = None
        job_id = self._snapshot.job_id
        filters = self._filters

        self._in_flight = True
        try:
            job = self.backend.get_analysis(job_id, filters if filters.active else None)
        except TransientNotFound:
            if generation == self._generation:
                self._on_not_found()
            return
        except TransportFailure as e:
            if generation == self._generation:
                logger.error("Polling %s failed: %s", job_id, e)
                self._fail(str(e) or TRANSPORT_FALLBACK_MESSAGE)
            return
        finally:
            self._in_flight = False

        # start(), cancel() or a filter change happened while the query ran.
        if generation != self._generation:
            return
        self._on_job(job)

    def _on_job(self, job: AnalysisJob) -> None:
        if job.status == JobStatus.COMPLETE:
            logger.info("Analysis %s complete: %d streams", job.id, len(job.streams))
            self._update(
                replace(
                    self._snapshot,
                    state=PollerState.COMPLETE,
                    job=job,
                    progress=100,
                    error=None,
                    not_found_attempts=0,
                )
            )
        elif job.status == JobStatus.FAILED:
            logger.warning("Analysis %s failed on the backend: %s", job.id, job.error)
            self._fail(job.error or JOB_FAILED_FALLBACK_MESSAGE, job=job)
        else:
            self._update(
                replace(
                    self._snapshot,
                    state=PollerState.POLLING,
                    progress=job.progress,
                    not_found_attempts=0,
                )
            )
            if not self._filters.active:
                self._schedule_tick(self.poll_interval_ms)
            else:
                logger.info("Analysis %s still %s; filters active, polling paused", job.id, job.status.value)

    def _on_not_found(self) -> None:
        attempts = self._snapshot.not_found_attempts + 1
        if attempts >= self.not_found_retry_limit:
            logger.error("Analysis %s not found after %d attempts", self._snapshot.job_id, attempts)
            self._fail(NOT_FOUND_MESSAGE, not_found_attempts=attempts)
            return
        logger.warning(
            "Analysis %s not found (attempt %d/%d), retrying",
            self._snapshot.job_id,
            attempts,
            self.not_found_retry_limit,
        )
        self._update(
            replace(self._snapshot, state=PollerState.RETRYING_NOT_FOUND, not_found_attempts=attempts)
        )
        self._schedule_tick(self.poll_interval_ms)

    def _fail(self, message: str, job: Optional[AnalysisJob] = None, **changes) -> None:
        self._clear_timer()
        self._update(
            replace(
                self._snapshot,
                state=PollerState.FAILED,
                error=message,
                job=job or self._snapshot.job,
                **changes,
            )
        )

    def _update(self, snapshot: PollerSnapshot) -> None:
        if snapshot == self._snapshot:
            return
        self._snapshot = snapshot
        for callback in list(self._subscribers):
            callback(snapshot)
