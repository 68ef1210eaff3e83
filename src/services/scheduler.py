"""
Automation Scheduler

Runs the automation sweeps on fixed intervals inside the API process:

    auto_transitions     every 15 minutes (first run 60s after start)
    sla_monitoring       hourly
    document_reminders   daily

Each job has a JobState. ``run_job`` claims the job with an atomic
check-and-set, so a run that would overlap an in-flight run of the same job
is skipped and counted instead of executed.
"""

import asyncio
import contextlib
import threading
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Optional

import structlog

from src.services import automation
from src.services.notifications import NotificationSink
from src.services.referral_repository import ReferralRepository
from src.services.referral_workflow import ReferralWorkflowService

logger = structlog.get_logger(__name__)


AUTO_TRANSITION_INTERVAL = 15 * 60
SLA_INTERVAL = 60 * 60
DOCUMENT_REMINDER_INTERVAL = 24 * 60 * 60
INITIAL_DELAY = 60


class UnknownJob(KeyError):
    """No job registered under that name."""
    pass


@dataclass
class JobState:
    name: str
    interval_seconds: float
    initial_delay: Optional[float] = None
    last_run: Optional[datetime] = None
    last_result: Any = None
    last_error: Optional[str] = None
    is_running: bool = False
    error_count: int = 0
    skipped_runs: int = 0


class AutomationScheduler:
    """Registry of periodic jobs plus the asyncio tasks that drive them."""

    def __init__(self):
        self._lock = threading.Lock()
        self._jobs: dict[str, Callable[[], Any]] = {}
        self._states: dict[str, JobState] = {}
        self._tasks: list[asyncio.Task] = []

    def add_job(
        self,
        name: str,
        func: Callable[[], Any],
        interval_seconds: float,
        initial_delay: Optional[float] = None,
    ) -> None:
        """Register *func* to run every *interval_seconds*.

        With ``initial_delay`` the first run happens after that delay instead
        of after one full interval.
        """
        self._jobs[name] = func
        self._states[name] = JobState(
            name=name, interval_seconds=interval_seconds, initial_delay=initial_delay
        )

    def _claim(self, name: str) -> bool:
        with self._lock:
            state = self._states[name]
            if state.is_running:
                state.skipped_runs += 1
                return False
            state.is_running = True
            return True

    def run_job(self, name: str) -> Any:
        """
        Run one job now.

        Returns:
            The job's result, or None when the run was skipped because the
            job was already running or the job raised.

        Raises:
            UnknownJob: No such job.
        """
        if name not in self._jobs:
            raise UnknownJob(name)
        if not self._claim(name):
            logger.info("scheduler_job_skipped", job=name)
            return None

        logger.info("scheduler_job_started", job=name)
        try:
            result = self._jobs[name]()
        except Exception as e:
            with self._lock:
                state = self._states[name]
                state.is_running = False
                state.error_count += 1
                state.last_error = type(e).__name__
            logger.exception("scheduler_job_failed", job=name, error_type=type(e).__name__)
            return None

        with self._lock:
            state = self._states[name]
            state.is_running = False
            state.last_run = datetime.utcnow()
            state.last_result = result
            state.last_error = None
            state.error_count = 0
        logger.info("scheduler_job_completed", job=name)
        return result

    async def _loop(self, name: str) -> None:
        state = self._states[name]
        delay = state.initial_delay if state.initial_delay is not None else state.interval_seconds
        while True:
            await asyncio.sleep(delay)
            await asyncio.to_thread(self.run_job, name)
            delay = state.interval_seconds

    def start(self) -> None:
        """Spawn one task per job on the running event loop."""
        if self._tasks:
            return
        for name in self._jobs:
            self._tasks.append(asyncio.create_task(self._loop(name), name=f"automation:{name}"))
        logger.info("scheduler_started", jobs=sorted(self._jobs))

    async def stop(self) -> None:
        """Cancel all job tasks and wait for them to finish."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info("scheduler_stopped")

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def job_names(self) -> list[str]:
        return list(self._jobs)

    def get_job_statuses(self) -> list[dict[str, Any]]:
        """Snapshot of every job's state."""
        with self._lock:
            return [asdict(state) for state in self._states.values()]


def build_scheduler(
    repository: ReferralRepository,
    workflow_service: ReferralWorkflowService,
    notifier: Optional[NotificationSink] = None,
) -> AutomationScheduler:
    """Scheduler with the three standard automation jobs registered."""
    scheduler = AutomationScheduler()
    scheduler.add_job(
        "auto_transitions",
        lambda: automation.run_auto_transition_sweep(repository, workflow_service),
        AUTO_TRANSITION_INTERVAL,
        initial_delay=INITIAL_DELAY,
    )
    scheduler.add_job(
        "sla_monitoring",
        lambda: automation.run_sla_sweep(repository, notifier=notifier),
        SLA_INTERVAL,
    )
    scheduler.add_job(
        "document_reminders",
        lambda: automation.run_document_reminder_sweep(repository, notifier=notifier),
        DOCUMENT_REMINDER_INTERVAL,
    )
    return scheduler
