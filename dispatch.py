from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from analytics import AnalyticsSnapshot
from config import Settings, get_settings
from models import DispatchStatus
from periods import AggregationWindow


logger = logging.getLogger(__name__)


class DeliveryStatus(str, Enum):
    delivered = "delivered"
    transient_failure = "transient_failure"
    permanent_failure = "permanent_failure"


@dataclass(frozen=True)
class DeliveryResult:
    status: DeliveryStatus
    detail: Optional[str] = None

    @classmethod
    def delivered(cls, detail: Optional[str] = None) -> "DeliveryResult":
        return cls(DeliveryStatus.delivered, detail)

    @classmethod
    def transient(cls, detail: Optional[str] = None) -> "DeliveryResult":
        return cls(DeliveryStatus.transient_failure, detail)

    @classmethod
    def permanent(cls, detail: Optional[str] = None) -> "DeliveryResult":
        return cls(DeliveryStatus.permanent_failure, detail)


@dataclass
class DispatchJob:
    user_id: int
    window: AggregationWindow
    snapshot: Optional[AnalyticsSnapshot] = None
    attempts: int = 0
    status: DispatchStatus = DispatchStatus.pending
    detail: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.status not in (DispatchStatus.pending, DispatchStatus.retrying)


class DispatchSink(ABC):
    """Consumer of finished snapshots (report renderer, mailer, ...).

    Implementations must be safe to call again for a window they already
    accepted: after a crash between delivery and commit the engine re-offers
    the identical snapshot, whose ``fingerprint()`` can be used to dedupe.
    """

    @abstractmethod
    def deliver(
        self, user_id: int, window: AggregationWindow, snapshot: AnalyticsSnapshot
    ) -> DeliveryResult:
        raise NotImplementedError


class LoggingSink(DispatchSink):
    def deliver(
        self, user_id: int, window: AggregationWindow, snapshot: AnalyticsSnapshot
    ) -> DeliveryResult:
        logger.info(
            f"report_ready: user_id={user_id} window={window.as_key()} "
            f"fingerprint={snapshot.fingerprint()} payload={snapshot.to_json()}"
        )
        return DeliveryResult.delivered()


class OutboxSink(DispatchSink):
    """Drops one JSON document per user and window into an outbox directory."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def path_for(self, user_id: int, window: AggregationWindow) -> Path:
        stamp = f"{window.start:%Y%m%dT%H%M%S}-{window.end:%Y%m%dT%H%M%S}"
        return self.directory / f"user-{user_id}" / f"report-{stamp}.json"

    def deliver(
        self, user_id: int, window: AggregationWindow, snapshot: AnalyticsSnapshot
    ) -> DeliveryResult:
        target = self.path_for(user_id, window)
        fingerprint = snapshot.fingerprint()
        document = {"fingerprint": fingerprint, "report": snapshot.as_payload()}
        try:
            if target.exists():
                existing = json.loads(target.read_text(encoding="utf-8"))
                if existing.get("fingerprint") == fingerprint:
                    return DeliveryResult.delivered("already in outbox")
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_suffix(".json.tmp")
            tmp.write_text(
                json.dumps(document, sort_keys=True, ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
            os.replace(tmp, target)
        except json.JSONDecodeError as exc:
            return DeliveryResult.permanent(f"Corrupt outbox document {target}: {exc}")
        except OSError as exc:
            return DeliveryResult.transient(f"Outbox write failed: {exc}")
        return DeliveryResult.delivered(str(target))


def build_sink(settings: Optional[Settings] = None) -> DispatchSink:
    settings = settings or get_settings()
    if settings.sink == "log":
        return LoggingSink()
    if settings.sink == "outbox":
        return OutboxSink(settings.outbox_dir)
    raise ValueError(f"Unsupported report sink: {settings.sink}")
