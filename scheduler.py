import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import Settings, get_settings
from report_engine import ReportEngine, TickResult


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(
        self,
        engine: Optional[ReportEngine] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._engine = engine
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    @property
    def engine(self) -> ReportEngine:
        if self._engine is None:
            self._engine = ReportEngine.from_settings(self.settings)
        return self._engine

    @property
    def running(self) -> bool:
        return bool(self.scheduler.running)

    def run_tick(self, source: str = "manual") -> TickResult:
        logger.info(f"scheduler_run: source={source}")
        result = self.engine.tick(source=source)
        logger.info(
            f"scheduler_run: source={source} candidates={result.candidates} "
            f"submitted={len(result.submitted)} aborted={result.aborted}"
        )
        return result

    def start(self) -> None:
        if not self.settings.scheduler_enabled:
            logger.info(
                f"Report scheduler disabled for environment={self.settings.environment}"
            )
            return

        self.run_tick("startup")

        if self.settings.tick_cron:
            trigger = CronTrigger.from_crontab(
                self.settings.tick_cron, timezone=self.settings.timezone
            )
            label = f"cron '{self.settings.tick_cron}'"
        else:
            trigger = IntervalTrigger(seconds=self.settings.tick_interval_secs)
            label = f"every {self.settings.tick_interval_secs}s"

        # A tick only scans and enqueues, so one instance at a time is enough;
        # slow dispatches keep running in the engine's worker pool.
        self.scheduler.add_job(
            self.run_tick,
            trigger,
            args=["interval"],
            id="report_tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=max(30, self.settings.tick_interval_secs),
        )

        self.scheduler.start()
        logger.info(f"Report scheduler started ({label})")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
        if self._engine is not None:
            self._engine.shutdown(wait=True)
