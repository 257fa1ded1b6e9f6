from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest

from portfolio.schemas import InitiativeRecord
from portfolio.sync import SyncResult


@pytest.fixture()
def mcp_ctx(app_ctx):
    app_ctx.store.upsert(InitiativeRecord(id="P-1", name="Payments API", status="Active", key_initiative="Yes"))
    app_ctx.store.upsert(InitiativeRecord(id="P-2", name="Data Lake", status="Risk"))
    app_ctx.reload()
    ctx = MagicMock()
    ctx.request_context.lifespan_context = app_ctx
    return ctx


class TestTools:
    def test_overview_resource(self):
        from portfolio.mcp_server import portfolio_overview

        data = json.loads(portfolio_overview())
        assert data["views"] == ["dashboard", "timeline", "history"]

    def test_list_initiatives_filters(self, mcp_ctx):
        from portfolio.mcp_server import list_initiatives

        assert [i["id"] for i in list_initiatives(mcp_ctx, view="timeline", key_only=True)] == ["P-1"]
        assert list_initiatives(mcp_ctx, view="kanban") == {"error": "Unknown view: kanban"}

    def test_get_and_update(self, mcp_ctx):
        from portfolio.mcp_server import get_initiative, update_initiative

        assert get_initiative(mcp_ctx, "nope") == {"error": "Initiative nope not found"}
        updated = update_initiative(mcp_ctx, "P-2", status="Active", tags=["x"])
        assert updated["status"] == "Active"
        assert updated["tags"] == ["x"]
        assert "error" in update_initiative(mcp_ctx, "P-2", status="Paused")

    def test_stats_and_snapshot(self, mcp_ctx):
        from portfolio.mcp_server import create_snapshot, get_stats, list_activities

        assert get_stats(mcp_ctx)["risk"] == 1
        snap = create_snapshot(mcp_ctx, "from mcp")
        assert snap["count"] == 2
        assert "data" not in snap
        assert list_activities(mcp_ctx)[0]["type"] == "snapshot"

    def test_risk_report_refresh(self, mcp_ctx):
        from portfolio.mcp_server import get_risk_report

        report = get_risk_report(mcp_ctx, refresh=True)
        assert report["auto_updated_count"] == 0
        assert report["checked_at"] is not None

    @pytest.mark.asyncio
    async def test_sync_collects_messages(self, mcp_ctx):
        from portfolio.mcp_server import sync_from_jira
        from portfolio.sync import Severity

        async def fake_sync(store, credentials, on_progress, *, settings):
            on_progress("Fetching JIRA data...", Severity.MUTED)
            return SyncResult(synced_count=0)

        with patch("portfolio.services.sync_from_jira", side_effect=fake_sync):
            result = await sync_from_jira(mcp_ctx)
        assert result["synced"] == 0
        assert result["messages"] == ["Fetching JIRA data..."]
