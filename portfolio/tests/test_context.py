from __future__ import annotations

import asyncio
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from portfolio.schemas import InitiativeRecord, Phase
from portfolio.tasks import PeriodicTask
from portfolio.utils import utc_now
from portfolio.views import FilterState, View


def _overdue_initiative(id="P-1", status="Active") -> InitiativeRecord:
    end = (utc_now() - timedelta(days=3)).isoformat()
    return InitiativeRecord(id=id, name=f"Initiative {id}", status=status, phases=[Phase(name="Build", end_date=end)])


class TestRiskCheck:
    def test_flip_is_persisted_and_reported(self, app_ctx):
        app_ctx.notifier = MagicMock()
        app_ctx.store.upsert(_overdue_initiative())
        app_ctx.reload()
        before = app_ctx.initiatives

        report = app_ctx.run_risk_check()

        assert report.auto_updated_count == 1
        assert app_ctx.initiatives is not before
        assert app_ctx.get("P-1").status == "Risk"
        assert app_ctx.store.get_by_id("P-1").status == "Risk"
        assert app_ctx.risk_info["P-1"].has_overdue_phase
        assert app_ctx.store.list_activities()[0]["type"] == "risk"
        title, body = app_ctx.notifier.notify.call_args.args
        assert title == "Portfolio Tracker Alert"
        assert "1 initiative(s) with OVERDUE phases" in body

    def test_side_table_never_reaches_storage(self, app_ctx):
        app_ctx.store.upsert(_overdue_initiative())
        app_ctx.reload()
        app_ctx.run_risk_check()
        stored = app_ctx.store.get_by_id("P-1").model_dump()
        assert "risk" not in stored
        assert set(stored) == set(InitiativeRecord.model_fields)

    def test_quiet_run_does_not_notify(self, app_ctx):
        app_ctx.notifier = MagicMock()
        app_ctx.store.upsert(InitiativeRecord(id="P-1", name="Fine"))
        app_ctx.reload()
        report = app_ctx.run_risk_check()
        assert report.auto_updated_count == 0
        app_ctx.notifier.notify.assert_not_called()


class TestSnapshots:
    def _seed(self, app_ctx):
        app_ctx.store.upsert(InitiativeRecord(id="A", name="A", status="Active"))
        app_ctx.store.upsert(InitiativeRecord(id="B", name="B", status="Risk"))
        app_ctx.reload()
        app_ctx.active_view = View.DASHBOARD
        app_ctx.filters = FilterState(status="Risk")

    def test_manual_capture_uses_active_view(self, app_ctx):
        self._seed(app_ctx)
        snapshot = app_ctx.capture_snapshot("manual")
        assert [d["id"] for d in snapshot["data"]] == ["B"]
        assert snapshot["automatic"] is False

    def test_automatic_capture_takes_everything(self, app_ctx):
        self._seed(app_ctx)
        snapshot = app_ctx.capture_snapshot("auto", automatic=True)
        assert {d["id"] for d in snapshot["data"]} == {"A", "B"}
        assert snapshot["automatic"] is True


class TestCollection:
    def test_replace_and_remove_reassign(self, app_ctx):
        original = app_ctx.initiatives
        app_ctx.replace_initiative(InitiativeRecord(id="X", name="X"))
        assert original == []
        assert [i.id for i in app_ctx.initiatives] == ["X"]
        app_ctx.replace_initiative(InitiativeRecord(id="X", name="X2"))
        assert app_ctx.get("X").name == "X2"
        app_ctx.remove_initiative("X")
        assert app_ctx.initiatives == []


class TestPeriodicTask:
    @pytest.mark.asyncio
    async def test_runs_immediately_and_repeats(self):
        calls = []

        async def tick():
            calls.append(1)

        task = PeriodicTask("test", 0.01, tick)
        task.start()
        await asyncio.sleep(0.05)
        await task.stop()
        assert len(calls) >= 2
        assert not task.running

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_the_loop(self):
        calls = []

        async def tick():
            calls.append(1)
            raise RuntimeError("boom")

        task = PeriodicTask("failing", 0.01, tick)
        task.start()
        await asyncio.sleep(0.05)
        await task.stop()
        assert len(calls) >= 2

    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            PeriodicTask("bad", 0, lambda: None)

    @pytest.mark.asyncio
    async def test_background_lifecycle(self, app_ctx):
        app_ctx.settings.risk_check_interval_seconds = 60
        app_ctx.settings.auto_snapshot_interval_seconds = 60
        app_ctx.start_background()
        await asyncio.sleep(0.01)
        assert app_ctx.last_risk_report.checked_at is not None
        assert len(app_ctx.store.list_snapshots()) == 1
        await app_ctx.stop_background()
