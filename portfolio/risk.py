"""Deadline risk detection over initiative phases.

Each open phase is classified against ``now``: overdue when its end date has
passed, approaching when it ends within the warning window. An initiative
with any overdue phase is moved to ``Risk`` unless it is already ``Risk`` or
``Completed``. The move is one-way: clearing the overdue phase later does not
move the initiative back, that takes an explicit user edit.
"""
from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Protocol

from portfolio.schemas import PHASE_COMPLETED, InitiativeRecord, Phase
from portfolio.store import SqlStore
from portfolio.utils import parse_timestamp, utc_now

log = logging.getLogger(__name__)

APPROACHING_DEADLINE_DAYS = 5
_DAY_SECONDS = 24 * 60 * 60


class PhaseState(str, enum.Enum):
    ON_TIME = "open-on-time"
    OVERDUE = "open-overdue"
    APPROACHING = "open-approaching"
    COMPLETED = "completed"


@dataclass
class PhaseWarning:
    name: str
    end_date: str
    days: int  # days overdue, or days until the deadline


@dataclass
class RiskInfo:
    has_overdue_phase: bool = False
    has_approaching_deadline: bool = False
    overdue_phases: list[PhaseWarning] = field(default_factory=list)
    approaching_phases: list[PhaseWarning] = field(default_factory=list)

    @property
    def flagged(self) -> bool:
        return self.has_overdue_phase or self.has_approaching_deadline


@dataclass
class RiskWarning:
    initiative: InitiativeRecord
    overdue_phases: list[PhaseWarning]
    approaching_phases: list[PhaseWarning]


@dataclass
class RiskEvaluation:
    """Result of one pass. ``initiatives`` is the full collection with flips applied."""

    initiatives: list[InitiativeRecord]
    flipped: list[InitiativeRecord]
    risk_info: dict[str, RiskInfo]
    warnings: list[RiskWarning]

    @property
    def auto_updated_count(self) -> int:
        return len(self.flipped)


@dataclass
class RiskReport:
    auto_updated_count: int = 0
    warnings: list[RiskWarning] = field(default_factory=list)
    checked_at: datetime | None = None

    @property
    def overdue_count(self) -> int:
        return sum(1 for w in self.warnings if w.overdue_phases)

    @property
    def approaching_count(self) -> int:
        return sum(1 for w in self.warnings if w.approaching_phases)


def _ceil_days(delta: timedelta) -> int:
    return math.ceil(delta.total_seconds() / _DAY_SECONDS)


def classify_phase(phase: Phase, now: datetime, window_days: int = APPROACHING_DEADLINE_DAYS) -> PhaseState:
    if phase.status == PHASE_COMPLETED:
        return PhaseState.COMPLETED
    end = parse_timestamp(phase.end_date)
    if end is None:
        return PhaseState.ON_TIME
    if end < now:
        return PhaseState.OVERDUE
    if end <= now + timedelta(days=window_days):
        return PhaseState.APPROACHING
    return PhaseState.ON_TIME


def assess_initiative(
    initiative: InitiativeRecord, now: datetime, window_days: int = APPROACHING_DEADLINE_DAYS,
) -> RiskInfo:
    info = RiskInfo()
    for phase in initiative.phases:
        state = classify_phase(phase, now, window_days)
        if state is PhaseState.OVERDUE:
            info.has_overdue_phase = True
            info.overdue_phases.append(PhaseWarning(
                phase.name, phase.end_date, _ceil_days(now - parse_timestamp(phase.end_date)),
            ))
        elif state is PhaseState.APPROACHING:
            info.has_approaching_deadline = True
            info.approaching_phases.append(PhaseWarning(
                phase.name, phase.end_date, _ceil_days(parse_timestamp(phase.end_date) - now),
            ))
    return info


def evaluate_risks(
    initiatives: list[InitiativeRecord],
    now: datetime | None = None,
    window_days: int = APPROACHING_DEADLINE_DAYS,
) -> RiskEvaluation:
    """Classify every initiative's phases and apply the Risk transition.

    Pure: inputs are not mutated; flipped initiatives are new copies.
    """
    now = now or utc_now()
    updated: list[InitiativeRecord] = []
    flipped: list[InitiativeRecord] = []
    risk_info: dict[str, RiskInfo] = {}
    warnings: list[RiskWarning] = []

    for initiative in initiatives:
        if not initiative.phases:
            updated.append(initiative)
            continue
        info = assess_initiative(initiative, now, window_days)
        if info.has_overdue_phase and initiative.status not in ("Risk", "Completed"):
            initiative = initiative.model_copy(update={"status": "Risk"})
            flipped.append(initiative)
        updated.append(initiative)
        if info.flagged:
            risk_info[initiative.id] = info
            warnings.append(RiskWarning(initiative, info.overdue_phases, info.approaching_phases))

    return RiskEvaluation(initiatives=updated, flipped=flipped, risk_info=risk_info, warnings=warnings)


def persist_flips(store: SqlStore, flipped: list[InitiativeRecord]) -> int:
    """Save auto-flipped initiatives; a failed save is logged and skipped."""
    saved = 0
    for initiative in flipped:
        try:
            store.upsert(initiative)
            saved += 1
        except Exception as exc:
            log.error("Failed to save risk status for %s: %s", initiative.id, exc)
    if flipped:
        log.warning("Auto-updated %d initiatives to \"At Risk\" status", len(flipped))
    return saved


class NotificationSink(Protocol):
    def notify(self, title: str, body: str) -> None: ...


class LogNotifier:
    """Notification sink that writes alerts to the log."""

    def __init__(self, logger: logging.Logger | None = None):
        self._log = logger or log

    def notify(self, title: str, body: str) -> None:
        self._log.warning("%s: %s", title, body)


def alert_message(report: RiskReport, window_days: int = APPROACHING_DEADLINE_DAYS) -> str | None:
    """Summary text for a deadline alert, or None when nothing is flagged."""
    if not report.overdue_count and not report.approaching_count:
        return None
    lines = ["DEADLINE ALERTS:"]
    if report.overdue_count:
        lines.append(f"{report.overdue_count} initiative(s) with OVERDUE phases")
    if report.approaching_count:
        lines.append(f"{report.approaching_count} initiative(s) with deadlines in next {window_days} days")
    lines.append("Check Dashboard for details.")
    return "\n".join(lines)


def warning_dict(warning: RiskWarning) -> dict:
    def phases(items: list[PhaseWarning], key: str) -> list[dict]:
        return [{"name": p.name, "end_date": p.end_date, key: p.days} for p in items]

    return {
        "initiative_id": warning.initiative.id,
        "initiative_name": warning.initiative.name,
        "status": warning.initiative.status,
        "overdue_phases": phases(warning.overdue_phases, "days_overdue"),
        "approaching_phases": phases(warning.approaching_phases, "days_until"),
    }


def risk_info_dict(info: RiskInfo) -> dict:
    return {
        "has_overdue_phase": info.has_overdue_phase,
        "has_approaching_deadline": info.has_approaching_deadline,
        "overdue_phases": [{"name": p.name, "end_date": p.end_date, "days": p.days} for p in info.overdue_phases],
        "approaching_phases": [
            {"name": p.name, "end_date": p.end_date, "days": p.days} for p in info.approaching_phases
        ],
    }
