"""Scheduled report dispatch.

Each tick scans for users whose next report window has closed and hands every
due user to a bounded worker pool. Windows of one user are dispatched strictly
in order; the only durable write is ``ReportSettingsStore.record_dispatch``,
which advances the user's commit point with a conditional update. Anything
that stops before that call (crash, shutdown, abandoned delivery) leaves the
window to be offered again on a later tick.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Callable, Optional

from analytics import AnalyticsAggregator
from config import Settings, get_settings
from database import SessionFactory
from dispatch import DeliveryResult, DeliveryStatus, DispatchJob, DispatchSink, build_sink
from ledger import LedgerReader, StorageUnavailable
from models import DispatchStatus, ReportFrequency
from money import InvalidAmount
from periods import AggregationWindow, ReportSchedule
from report_settings import DueCandidate, ReportSettingsStore, StaleWrite


logger = logging.getLogger(__name__)


class EngineState(str, Enum):
    idle = "idle"
    scanning = "scanning"
    dispatching = "dispatching"


@dataclass
class UserRunResult:
    user_id: int
    jobs: list[DispatchJob] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class TickResult:
    source: str
    as_of: datetime
    candidates: int = 0
    submitted: list[int] = field(default_factory=list)
    skipped_in_flight: list[int] = field(default_factory=list)
    runs: list[UserRunResult] = field(default_factory=list)
    aborted: bool = False
    error: Optional[str] = None

    @property
    def jobs(self) -> list[DispatchJob]:
        return [job for run in self.runs for job in run.jobs]

    def summary(self) -> dict[str, object]:
        statuses: dict[str, int] = {}
        for job in self.jobs:
            statuses[job.status.value] = statuses.get(job.status.value, 0) + 1
        return {
            "source": self.source,
            "as_of": self.as_of.isoformat(),
            "candidates": self.candidates,
            "submitted": list(self.submitted),
            "skipped_in_flight": list(self.skipped_in_flight),
            "aborted": self.aborted,
            "error": self.error,
            "jobs": statuses,
        }


class ReportEngine:
    def __init__(
        self,
        store: ReportSettingsStore,
        aggregator: AnalyticsAggregator,
        sink: DispatchSink,
        *,
        max_attempts: int = 3,
        backoff_base_secs: float = 2.0,
        backoff_max_secs: float = 60.0,
        worker_pool_size: int = 4,
        max_windows_per_tick: int = 366,
        sleep: Optional[Callable[[float], object]] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.store = store
        self.aggregator = aggregator
        self.sink = sink
        self.max_attempts = max_attempts
        self.backoff_base_secs = backoff_base_secs
        self.backoff_max_secs = backoff_max_secs
        self.worker_pool_size = worker_pool_size
        self.max_windows_per_tick = max_windows_per_tick
        self._stopping = threading.Event()
        self._sleep = sleep or self._stopping.wait
        self._clock = clock
        self._lock = threading.Lock()
        self._in_flight: set[int] = set()
        self._state = EngineState.idle
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()
        self.last_tick: Optional[TickResult] = None

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        *,
        session_factory: Optional[SessionFactory] = None,
        sink: Optional[DispatchSink] = None,
    ) -> "ReportEngine":
        settings = settings or get_settings()
        return cls(
            ReportSettingsStore(session_factory),
            AnalyticsAggregator(LedgerReader(session_factory)),
            sink or build_sink(settings),
            max_attempts=settings.max_attempts,
            backoff_base_secs=settings.backoff_base_secs,
            backoff_max_secs=settings.backoff_max_secs,
            worker_pool_size=settings.worker_pool_size,
            max_windows_per_tick=settings.max_windows_per_tick,
        )

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def in_flight(self) -> list[int]:
        with self._lock:
            return sorted(self._in_flight)

    @property
    def stopping(self) -> bool:
        return self._stopping.is_set()

    def backoff_delay(self, attempt: int) -> float:
        return min(self.backoff_base_secs * (2 ** (attempt - 1)), self.backoff_max_secs)

    def tick(
        self,
        now: Optional[datetime] = None,
        *,
        source: str = "manual",
        wait: bool = False,
    ) -> TickResult:
        as_of = now or self._clock()
        result = TickResult(source=source, as_of=as_of)
        if self.stopping:
            result.aborted = True
            result.error = "engine is shutting down"
            return result

        self._state = EngineState.scanning
        logger.info(f"report_tick: source={source} as_of={as_of.isoformat()}")
        try:
            candidates = self.store.list_due_candidates(as_of)
        except StorageUnavailable as exc:
            logger.error(f"report_tick_aborted: source={source} error={exc}")
            result.aborted = True
            result.error = str(exc)
            self._refresh_state()
            self.last_tick = result
            return result

        result.candidates = len(candidates)
        futures: list[Future] = []
        for candidate in candidates:
            with self._lock:
                if candidate.user_id in self._in_flight:
                    result.skipped_in_flight.append(candidate.user_id)
                    continue
                self._in_flight.add(candidate.user_id)
            try:
                future = self._get_executor().submit(self._run_user_guarded, candidate, as_of)
            except RuntimeError:
                # Executor is shutting down; the user is picked up by a later tick.
                self._release(candidate.user_id)
                break
            future.add_done_callback(partial(self._on_done, candidate.user_id))
            futures.append(future)
            result.submitted.append(candidate.user_id)
        self._refresh_state()

        if wait:
            for future in futures:
                try:
                    result.runs.append(future.result())
                except CancelledError:
                    continue

        logger.info(
            f"report_tick_done: source={source} candidates={result.candidates} "
            f"submitted={len(result.submitted)} skipped_in_flight={len(result.skipped_in_flight)}"
        )
        self.last_tick = result
        return result

    def run_user(self, candidate: DueCandidate, as_of: datetime) -> UserRunResult:
        run = UserRunResult(user_id=candidate.user_id)
        # The scan may predate a run for this user that has since committed.
        try:
            setting = self.store.get(candidate.user_id)
        except StorageUnavailable as exc:
            logger.error(f"report_user_run_aborted: user_id={candidate.user_id} error={exc}")
            run.error = str(exc)
            return run
        if not setting.is_enabled or setting.next_due_at > as_of:
            logger.info(f"report_user_skipped: user_id={candidate.user_id} reason=not_due")
            return run

        schedule = setting.schedule
        windows = schedule.windows_due(
            setting.cycle_start, as_of, limit=self.max_windows_per_tick
        )
        for window in windows:
            if self.stopping:
                break
            job = self.dispatch_window(candidate.user_id, window, schedule)
            run.jobs.append(job)
            self._record_run(job, schedule.frequency)
            if job.status != DispatchStatus.delivered:
                # Later windows wait until this one is committed.
                break
        return run

    def dispatch_window(
        self, user_id: int, window: AggregationWindow, schedule: ReportSchedule
    ) -> DispatchJob:
        job = DispatchJob(user_id=user_id, window=window)
        try:
            job.snapshot = self.aggregator.compute(user_id, window, schedule)
        except (StorageUnavailable, InvalidAmount) as exc:
            job.status = DispatchStatus.aborted
            job.detail = str(exc)
            logger.warning(
                f"report_dispatch: user_id={user_id} window={window.as_key()} "
                f"status=aborted error={exc}"
            )
            return job

        while True:
            if self.stopping:
                job.status = DispatchStatus.cancelled
                job.detail = "shutdown before delivery"
                logger.info(
                    f"report_dispatch: user_id={user_id} window={window.as_key()} status=cancelled"
                )
                return job
            job.attempts += 1
            outcome = self._deliver(job)
            if outcome.status == DeliveryStatus.delivered:
                break
            job.detail = outcome.detail
            if outcome.status == DeliveryStatus.permanent_failure:
                job.status = DispatchStatus.abandoned
                logger.error(
                    f"report_dispatch: user_id={user_id} window={window.as_key()} "
                    f"status=abandoned reason=permanent_failure detail={outcome.detail}"
                )
                return job
            if job.attempts >= self.max_attempts:
                job.status = DispatchStatus.abandoned
                logger.error(
                    f"report_dispatch: user_id={user_id} window={window.as_key()} "
                    f"status=abandoned reason=retries_exhausted attempts={job.attempts} "
                    f"detail={outcome.detail}"
                )
                return job
            job.status = DispatchStatus.retrying
            delay = self.backoff_delay(job.attempts)
            logger.warning(
                f"report_dispatch: user_id={user_id} window={window.as_key()} "
                f"status=retrying attempt={job.attempts} delay={delay}"
            )
            self._sleep(delay)

        try:
            self.store.record_dispatch(user_id, window)
        except StaleWrite as exc:
            job.status = DispatchStatus.discarded
            job.detail = str(exc)
            logger.info(
                f"report_dispatch: user_id={user_id} window={window.as_key()} "
                f"status=discarded reason=stale_write"
            )
            return job
        except StorageUnavailable as exc:
            job.status = DispatchStatus.aborted
            job.detail = str(exc)
            logger.error(
                f"report_dispatch: user_id={user_id} window={window.as_key()} "
                f"status=aborted reason=commit_failed error={exc}"
            )
            return job

        job.status = DispatchStatus.delivered
        logger.info(
            f"report_dispatch: user_id={user_id} window={window.as_key()} "
            f"status=delivered attempts={job.attempts}"
        )
        return job

    def shutdown(self, wait: bool = True) -> None:
        self._stopping.set()
        with self._executor_lock:
            executor = self._executor
        if executor is not None:
            executor.shutdown(wait=wait, cancel_futures=True)
        logger.info(f"report_engine_stopped: in_flight={len(self.in_flight)}")

    def _deliver(self, job: DispatchJob) -> DeliveryResult:
        try:
            return self.sink.deliver(job.user_id, job.window, job.snapshot)
        except Exception as exc:
            logger.exception(
                f"report_sink_error: user_id={job.user_id} window={job.window.as_key()}"
            )
            return DeliveryResult.transient(f"{type(exc).__name__}: {exc}")

    def _record_run(self, job: DispatchJob, frequency: ReportFrequency) -> None:
        try:
            self.store.record_run(job, frequency)
        except StorageUnavailable:
            logger.exception(
                f"report_run_log_failed: user_id={job.user_id} window={job.window.as_key()}"
            )

    def _run_user_guarded(self, candidate: DueCandidate, as_of: datetime) -> UserRunResult:
        try:
            return self.run_user(candidate, as_of)
        except Exception as exc:
            logger.exception(f"report_user_run_failed: user_id={candidate.user_id}")
            return UserRunResult(user_id=candidate.user_id, error=str(exc))
        finally:
            self._release(candidate.user_id)

    def _on_done(self, user_id: int, future: Future) -> None:
        if future.cancelled():
            self._release(user_id)

    def _release(self, user_id: int) -> None:
        with self._lock:
            self._in_flight.discard(user_id)
        self._refresh_state()

    def _refresh_state(self) -> None:
        with self._lock:
            busy = bool(self._in_flight)
        self._state = EngineState.dispatching if busy else EngineState.idle

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.worker_pool_size,
                    thread_name_prefix="report-worker",
                )
            return self._executor
