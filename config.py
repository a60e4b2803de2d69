import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        currency_code: str,
        locale: str,
        environment: str,
        scheduler_enabled: bool,
        tick_interval_secs: int,
        tick_cron: Optional[str],
        max_attempts: int,
        backoff_base_secs: float,
        backoff_max_secs: float,
        worker_pool_size: int,
        max_windows_per_tick: int,
        sink: str,
        outbox_dir: Path,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.currency_code = currency_code
        self.locale = locale
        self.environment = environment
        self.scheduler_enabled = scheduler_enabled
        self.tick_interval_secs = tick_interval_secs
        self.tick_cron = tick_cron
        self.max_attempts = max_attempts
        self.backoff_base_secs = backoff_base_secs
        self.backoff_max_secs = backoff_max_secs
        self.worker_pool_size = worker_pool_size
        self.max_windows_per_tick = max_windows_per_tick
        self.sink = sink
        self.outbox_dir = outbox_dir


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("REPORTS_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str) -> Optional[bool]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "reports.db"
    database_url = os.getenv("REPORTS_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("REPORTS_TIMEZONE", "Asia/Kolkata")
    currency_code = os.getenv("REPORTS_CURRENCY", "INR").upper()
    locale = os.getenv("REPORTS_LOCALE", "en-IN")
    environment = os.getenv("REPORTS_ENV", "development").lower()
    # Only designated deployment modes run the periodic trigger unless told otherwise.
    scheduler_enabled = _env_flag("REPORTS_SCHEDULER_ENABLED")
    if scheduler_enabled is None:
        scheduler_enabled = environment in {"development", "worker"}
    tick_interval_secs = int(os.getenv("REPORTS_TICK_INTERVAL_SECS", "60"))
    tick_cron = os.getenv("REPORTS_TICK_CRON") or None
    max_attempts = int(os.getenv("REPORTS_MAX_ATTEMPTS", "3"))
    backoff_base_secs = float(os.getenv("REPORTS_BACKOFF_BASE_SECS", "2"))
    backoff_max_secs = float(os.getenv("REPORTS_BACKOFF_MAX_SECS", "60"))
    worker_pool_size = int(os.getenv("REPORTS_WORKER_POOL_SIZE", "4"))
    max_windows_per_tick = int(os.getenv("REPORTS_MAX_WINDOWS_PER_TICK", "366"))
    sink = os.getenv("REPORTS_SINK", "log").lower()
    outbox_dir = Path(
        os.getenv("REPORTS_OUTBOX_DIR", str(data_dir / "outbox"))
    ).resolve()
    if max_attempts < 1:
        raise ValueError("REPORTS_MAX_ATTEMPTS must be at least 1")
    if worker_pool_size < 1:
        raise ValueError("REPORTS_WORKER_POOL_SIZE must be at least 1")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        currency_code=currency_code,
        locale=locale,
        environment=environment,
        scheduler_enabled=scheduler_enabled,
        tick_interval_secs=tick_interval_secs,
        tick_cron=tick_cron,
        max_attempts=max_attempts,
        backoff_base_secs=backoff_base_secs,
        backoff_max_secs=backoff_max_secs,
        worker_pool_size=worker_pool_size,
        max_windows_per_tick=max_windows_per_tick,
        sink=sink,
        outbox_dir=outbox_dir,
    )
