"""Application state shared by the API, the MCP server and background tasks.

One :class:`AppContext` is built per process and passed explicitly. The
in-memory initiative list is only ever replaced by assignment, so readers
never observe a half-updated collection.
"""
from __future__ import annotations

import logging

from portfolio.config import Settings
from portfolio.db import Database, open_database
from portfolio.risk import (
    LogNotifier,
    NotificationSink,
    RiskInfo,
    RiskReport,
    alert_message,
    evaluate_risks,
    persist_flips,
)
from portfolio.schemas import InitiativeRecord
from portfolio.store import SqlStore
from portfolio.tasks import PeriodicTask
from portfolio.utils import utc_now
from portfolio.views import FilterState, View, filter_for_view

log = logging.getLogger(__name__)

ALERT_TITLE = "Portfolio Tracker Alert"


class AppContext:
    def __init__(
        self,
        settings: Settings,
        database: Database,
        store: SqlStore | None = None,
        notifier: NotificationSink | None = None,
    ):
        self.settings = settings
        self.database = database
        self.store = store or SqlStore(database)
        self.notifier = notifier or LogNotifier()
        self.initiatives: list[InitiativeRecord] = []
        self.active_view = View.DASHBOARD
        self.filters = FilterState()
        self.risk_info: dict[str, RiskInfo] = {}
        self.last_risk_report = RiskReport()
        self._tasks: list[PeriodicTask] = []

    # -- collection ---------------------------------------------------------

    def reload(self) -> list[InitiativeRecord]:
        self.initiatives = self.store.list_all()
        log.info("Loaded %d initiatives", len(self.initiatives))
        return self.initiatives

    def get(self, initiative_id: str) -> InitiativeRecord | None:
        return next((i for i in self.initiatives if i.id == initiative_id), None)

    def replace_initiative(self, record: InitiativeRecord) -> None:
        items = list(self.initiatives)
        for idx, item in enumerate(items):
            if item.id == record.id:
                items[idx] = record
                break
        else:
            items.insert(0, record)
        self.initiatives = items

    def remove_initiative(self, initiative_id: str) -> None:
        self.initiatives = [i for i in self.initiatives if i.id != initiative_id]
        self.risk_info.pop(initiative_id, None)

    def visible(self, view: View | None = None) -> list[InitiativeRecord]:
        return filter_for_view(view or self.active_view, self.initiatives, self.filters)

    # -- risk ---------------------------------------------------------------

    def run_risk_check(self) -> RiskReport:
        """One full risk pass over the in-memory collection."""
        now = utc_now()
        window = self.settings.approaching_deadline_days
        evaluation = evaluate_risks(self.initiatives, now, window)
        self.initiatives = evaluation.initiatives
        self.risk_info = evaluation.risk_info

        if evaluation.flipped:
            persist_flips(self.store, evaluation.flipped)
            names = ", ".join(i.name for i in evaluation.flipped)
            self.store.add_activity(
                "risk", f"Auto-flagged {len(evaluation.flipped)} initiative(s) at risk: {names}",
                icon="⚠", meta="overdue phase",
            )

        report = RiskReport(
            auto_updated_count=evaluation.auto_updated_count,
            warnings=evaluation.warnings,
            checked_at=now,
        )
        self.last_risk_report = report
        log.info(
            "Risk check: %d overdue, %d approaching, %d auto-updated",
            report.overdue_count, report.approaching_count, report.auto_updated_count,
        )
        message = alert_message(report, window)
        if message:
            self.notifier.notify(ALERT_TITLE, message)
        return report

    # -- snapshots ----------------------------------------------------------

    def capture_snapshot(self, note: str = "", *, automatic: bool = False) -> dict:
        """Store the current view's initiatives, or all of them for automatic captures."""
        records = self.initiatives if automatic else self.visible()
        data = [r.model_dump(mode="json") for r in records]
        snapshot = self.store.create_snapshot(note, data, automatic=automatic)
        log.info("Captured %s snapshot %s with %d initiatives",
                 "automatic" if automatic else "manual", snapshot["id"], len(data))
        return snapshot

    # -- background tasks ---------------------------------------------------

    async def _risk_tick(self) -> None:
        self.run_risk_check()

    async def _snapshot_tick(self) -> None:
        self.capture_snapshot(f"Automatic snapshot {utc_now():%Y-%m-%d %H:%M}", automatic=True)

    def start_background(self) -> None:
        self._tasks = [PeriodicTask("risk-monitor", self.settings.risk_check_interval_seconds, self._risk_tick)]
        if self.settings.auto_snapshot_interval_seconds > 0:
            self._tasks.append(PeriodicTask(
                "auto-snapshot", self.settings.auto_snapshot_interval_seconds, self._snapshot_tick,
            ))
        for task in self._tasks:
            task.start()

    async def stop_background(self) -> None:
        for task in self._tasks:
            await task.stop()
        self._tasks = []

    async def close(self) -> None:
        await self.stop_background()
        self.database.dispose()


def build_context(settings: Settings) -> AppContext:
    """Open the configured database and load the initiative collection."""
    ctx = AppContext(settings, open_database(settings))
    ctx.reload()
    return ctx
