from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from database import SessionFactory, get_session_factory, session_scope
from ledger import StorageUnavailable
from models import DispatchStatus, ReportFrequency, ReportRun, ReportSetting, User
from periods import AggregationWindow, ReportSchedule

if TYPE_CHECKING:  # pragma: no cover
    from dispatch import DispatchJob


class StaleWrite(RuntimeError):
    """The commit point moved underneath us; another runner handled the window."""


@dataclass(frozen=True)
class ReportSettingView:
    user_id: int
    is_enabled: bool
    frequency: ReportFrequency
    last_dispatched_at: Optional[datetime]
    cycle_anchor_at: datetime
    user_created_at: datetime

    @property
    def schedule(self) -> ReportSchedule:
        return ReportSchedule(self.frequency, self.cycle_anchor_at)

    @property
    def cycle_start(self) -> datetime:
        return self.last_dispatched_at or self.user_created_at

    @property
    def next_due_at(self) -> datetime:
        return self.schedule.next_boundary(self.cycle_start)


@dataclass(frozen=True)
class DueCandidate:
    user_id: int
    setting: ReportSettingView


def _view(setting: ReportSetting, user_created_at: datetime) -> ReportSettingView:
    return ReportSettingView(
        user_id=setting.user_id,
        is_enabled=setting.is_enabled,
        frequency=setting.frequency,
        last_dispatched_at=setting.last_dispatched_at,
        cycle_anchor_at=setting.cycle_anchor_at,
        user_created_at=user_created_at,
    )


class ReportSettingsStore:
    def __init__(self, session_factory: Optional[SessionFactory] = None) -> None:
        self.session_factory = session_factory or get_session_factory()

    def get(self, user_id: int) -> ReportSettingView:
        stmt = (
            select(ReportSetting, User.created_at)
            .join(User, User.id == ReportSetting.user_id)
            .where(ReportSetting.user_id == user_id)
        )
        try:
            with self.session_factory() as session:
                row = session.execute(stmt).one_or_none()
        except SQLAlchemyError as exc:
            raise StorageUnavailable("Report settings query failed") from exc
        if row is None:
            raise ValueError("Report setting not found")
        return _view(row[0], row[1])

    def list_due_candidates(self, as_of: datetime) -> list[DueCandidate]:
        cycle_start = ReportSetting.last_dispatched_at
        # No cadence is shorter than a day, so this narrows the scan in SQL;
        # the exact (calendar aware) check happens below.
        stmt = (
            select(ReportSetting, User.created_at)
            .join(User, User.id == ReportSetting.user_id)
            .where(
                ReportSetting.is_enabled.is_(True),
                or_(
                    cycle_start <= as_of - timedelta(days=1),
                    and_(
                        cycle_start.is_(None),
                        User.created_at <= as_of - timedelta(days=1),
                    ),
                ),
            )
            .order_by(ReportSetting.user_id)
        )
        try:
            with self.session_factory() as session:
                rows = session.execute(stmt).all()
        except SQLAlchemyError as exc:
            raise StorageUnavailable("Report settings scan failed") from exc

        candidates: list[DueCandidate] = []
        for setting, created_at in rows:
            view = _view(setting, created_at)
            if view.next_due_at <= as_of:
                candidates.append(DueCandidate(user_id=view.user_id, setting=view))
        return candidates

    def record_dispatch(self, user_id: int, window: AggregationWindow) -> None:
        created_at = (
            select(User.created_at).where(User.id == user_id).scalar_subquery()
        )
        stmt = (
            update(ReportSetting)
            .where(
                ReportSetting.user_id == user_id,
                or_(
                    ReportSetting.last_dispatched_at == window.start,
                    and_(
                        ReportSetting.last_dispatched_at.is_(None),
                        created_at == window.start,
                    ),
                ),
            )
            .values(last_dispatched_at=window.end, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        try:
            with session_scope(self.session_factory) as session:
                result = session.execute(stmt)
        except SQLAlchemyError as exc:
            raise StorageUnavailable(
                f"Could not record dispatch for user {user_id}"
            ) from exc
        if result.rowcount != 1:
            raise StaleWrite(
                f"Report setting for user {user_id} no longer starts at {window.start.isoformat()}"
            )

    def update_settings(
        self,
        user_id: int,
        *,
        is_enabled: Optional[bool] = None,
        frequency: Optional[ReportFrequency] = None,
    ) -> ReportSettingView:
        try:
            with session_scope(self.session_factory) as session:
                setting = session.get(ReportSetting, user_id)
                if setting is None:
                    raise ValueError("Report setting not found")
                if is_enabled is not None:
                    setting.is_enabled = is_enabled
                if frequency is not None and frequency != setting.frequency:
                    setting.frequency = frequency
                    # New cadence counts from the current commit point.
                    setting.cycle_anchor_at = (
                        setting.last_dispatched_at or setting.user.created_at
                    )
                return _view(setting, setting.user.created_at)
        except SQLAlchemyError as exc:
            raise StorageUnavailable("Report settings update failed") from exc

    def record_run(self, job: "DispatchJob", frequency: ReportFrequency) -> None:
        run = ReportRun(
            user_id=job.user_id,
            window_start=job.window.start,
            window_end=job.window.end,
            frequency=frequency,
            status=job.status,
            attempts=job.attempts,
            fingerprint=job.snapshot.fingerprint() if job.snapshot else None,
            detail=job.detail,
        )
        try:
            with session_scope(self.session_factory) as session:
                session.add(run)
        except SQLAlchemyError as exc:
            raise StorageUnavailable("Could not record report run") from exc

    def list_runs(
        self,
        *,
        user_id: Optional[int] = None,
        status: Optional[DispatchStatus] = None,
        limit: int = 50,
    ) -> list[ReportRun]:
        stmt = select(ReportRun).order_by(ReportRun.created_at.desc(), ReportRun.id.desc())
        if user_id is not None:
            stmt = stmt.where(ReportRun.user_id == user_id)
        if status is not None:
            stmt = stmt.where(ReportRun.status == status)
        stmt = stmt.limit(limit)
        try:
            with self.session_factory() as session:
                return list(session.scalars(stmt).all())
        except SQLAlchemyError as exc:
            raise StorageUnavailable("Report run query failed") from exc
