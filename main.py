import logging
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException

from analytics import AnalyticsAggregator
from ledger import LedgerReader, StorageUnavailable
from models import DispatchStatus, ReportFrequency
from periods import AggregationWindow, ReportSchedule
from report_settings import ReportSettingsStore, ReportSettingView
from scheduler import SchedulerManager
from schemas import (
    ReportPreviewQuery,
    ReportRunOut,
    ReportSettingIn,
    ReportSettingOut,
    SchedulerStatusOut,
)


logger = logging.getLogger(__name__)

app = FastAPI(title="Scheduled Reports")

scheduler_manager = SchedulerManager()


def get_scheduler_manager() -> SchedulerManager:
    return scheduler_manager


def get_store() -> ReportSettingsStore:
    return ReportSettingsStore()


def get_aggregator() -> AnalyticsAggregator:
    return AnalyticsAggregator(LedgerReader())


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def _setting_out(view: ReportSettingView) -> ReportSettingOut:
    return ReportSettingOut(
        user_id=view.user_id,
        is_enabled=view.is_enabled,
        frequency=view.frequency,
        last_dispatched_at=view.last_dispatched_at,
        next_due_at=view.next_due_at,
    )


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/scheduler/status", response_model=SchedulerStatusOut)
def scheduler_status(manager: SchedulerManager = Depends(get_scheduler_manager)):
    engine = manager.engine
    last_tick = engine.last_tick.summary() if engine.last_tick else None
    return SchedulerStatusOut(
        enabled=manager.settings.scheduler_enabled,
        running=manager.running,
        state=engine.state.value,
        in_flight=engine.in_flight,
        last_tick=last_tick,
    )


@app.post("/scheduler/tick")
def trigger_tick(manager: SchedulerManager = Depends(get_scheduler_manager)):
    result = manager.run_tick("http")
    if result.aborted:
        raise HTTPException(status_code=503, detail=result.error or "Tick aborted")
    return result.summary()


@app.get("/users/{user_id}/report-setting", response_model=ReportSettingOut)
def read_report_setting(
    user_id: int, store: ReportSettingsStore = Depends(get_store)
):
    try:
        view = store.get(user_id)
    except StorageUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _setting_out(view)


@app.put("/users/{user_id}/report-setting", response_model=ReportSettingOut)
def update_report_setting(
    user_id: int,
    payload: ReportSettingIn,
    store: ReportSettingsStore = Depends(get_store),
):
    try:
        view = store.update_settings(
            user_id, is_enabled=payload.is_enabled, frequency=payload.frequency
        )
    except StorageUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    logger.info(
        f"report_setting_updated: user_id={user_id} enabled={view.is_enabled} "
        f"frequency={view.frequency.value}"
    )
    return _setting_out(view)


@app.get("/reports/preview")
def preview_report(
    user_id: int,
    start: datetime,
    end: datetime,
    frequency: ReportFrequency = ReportFrequency.monthly,
    aggregator: AnalyticsAggregator = Depends(get_aggregator),
):
    try:
        query = ReportPreviewQuery(
            user_id=user_id, start=start, end=end, frequency=frequency
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    window = AggregationWindow(query.start, query.end)
    schedule = ReportSchedule(query.frequency, query.start)
    try:
        snapshot = aggregator.compute(query.user_id, window, schedule)
    except StorageUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {"fingerprint": snapshot.fingerprint(), "report": snapshot.as_payload()}


@app.get("/reports/runs", response_model=list[ReportRunOut])
def list_report_runs(
    user_id: Optional[int] = None,
    status: Optional[DispatchStatus] = None,
    limit: int = 50,
    store: ReportSettingsStore = Depends(get_store),
):
    limit = max(1, min(limit, 500))
    try:
        runs = store.list_runs(user_id=user_id, status=status, limit=limit)
    except StorageUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return [ReportRunOut.model_validate(run) for run in runs]
