import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import Context, FastMCP

from portfolio import services
from portfolio.config import get_settings
from portfolio.context import AppContext, build_context
from portfolio.jira import JiraCredentials, JiraCredentialsError
from portfolio.schemas import STATUS_OPTIONS, InitiativeUpdate
from portfolio.views import FilterState, View, filter_for_view

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def portfolio_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    app_ctx = build_context(get_settings())
    app_ctx.start_background()
    try:
        yield app_ctx
    finally:
        await app_ctx.close()


mcp = FastMCP(
    "Portfolio Tracker",
    instructions=(
        "Portfolio Tracker follows a portfolio of initiatives synced from JIRA. "
        "Start with get_stats() for an overview, then list_initiatives() to browse, "
        "get_risk_report() for deadline problems, and get_initiative(id) for details."
    ),
    lifespan=portfolio_lifespan,
    json_response=True,
)


def _app(ctx: Context) -> AppContext:
    return ctx.request_context.lifespan_context


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("portfolio://overview")
def portfolio_overview() -> str:
    """Overview of the Portfolio Tracker: data model, views, and risk rules."""
    return json.dumps({
        "system": "Portfolio Tracker",
        "description": (
            "Tracks initiatives pulled from JIRA. JIRA owns name, owner, status and the key "
            "initiative flag; users own tags, phases and edited dates, which survive every sync."
        ),
        "data_model": {
            "initiative": "A JIRA issue or hand-entered project with status, dates, categories, tags and phases.",
            "phase": "A user-defined stage with an end date; open phases past their end date are overdue.",
            "note": "Free text attached to an initiative.",
            "snapshot": "A captured copy of the visible initiatives at a point in time.",
        },
        "statuses": list(STATUS_OPTIONS),
        "views": [v.value for v in View],
        "risk": (
            "An initiative with an overdue open phase is moved to Risk automatically. "
            "It is never moved back automatically. Phases ending within the warning window are "
            "reported as approaching."
        ),
        "workflow": [
            "1. get_stats(): status counts and categories.",
            "2. list_initiatives(view, ...): browse with filters.",
            "3. get_risk_report(): overdue and approaching phases.",
            "4. sync_from_jira(): pull the latest issues.",
            "5. create_snapshot(note): record the current state.",
        ],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Initiatives
# ---------------------------------------------------------------------------


@mcp.tool()
def list_initiatives(
    ctx: Context,
    view: str = "dashboard",
    status: str = "all", category: str = "all", search: str = "",
    name: str = "", key_only: bool = False, owner: str = "",
    statuses: list[str] | None = None, date_from: str = "", date_to: str = "",
    limit: int = 50,
) -> list[dict] | dict:
    """List initiatives as a view shows them.

    Args:
        view: dashboard, timeline or history.
        status: Dashboard status filter (Active, Risk, Planned, Completed or "all").
        category: Dashboard category filter, or "all".
        search: Dashboard free-text search over name and owner.
        name: Timeline name substring.
        key_only: Timeline: only key initiatives.
        owner: Timeline owner substring.
        statuses: Timeline: allowed statuses.
        date_from: Timeline: earliest target date (inclusive, YYYY-MM-DD).
        date_to: Timeline: latest target date (inclusive, YYYY-MM-DD).
        limit: Max results (default 50, max 500).
    """
    app_ctx = _app(ctx)
    try:
        selected = View(view)
    except ValueError:
        return {"error": f"Unknown view: {view}"}
    filters = FilterState(
        status=status, category=category, search=search, name=name, key_only=key_only,
        owner=owner, statuses=statuses or [], date_from=date_from, date_to=date_to,
    )
    items = filter_for_view(selected, app_ctx.initiatives, filters)[: max(1, min(limit, 500))]
    return [services.initiative_out(app_ctx, r) for r in items]


@mcp.tool()
def get_initiative(ctx: Context, initiative_id: str) -> dict:
    """Get one initiative with its notes and current risk info."""
    app_ctx = _app(ctx)
    record = app_ctx.store.get_by_id(initiative_id)
    if record is None:
        return {"error": f"Initiative {initiative_id} not found"}
    return services.initiative_detail(app_ctx, record)


@mcp.tool()
def update_initiative(
    ctx: Context,
    initiative_id: str,
    status: str | None = None, start_date: str | None = None, target_date: str | None = None,
    tags: list[str] | None = None, categories: list[str] | None = None,
) -> dict:
    """Update user-editable fields on an initiative. Only provided (non-null) arguments are applied."""
    app_ctx = _app(ctx)
    try:
        body = InitiativeUpdate(
            status=status, start_date=start_date, target_date=target_date, tags=tags, categories=categories,
        )
    except ValueError as exc:
        return {"error": str(exc)}
    record = services.update_initiative(app_ctx, initiative_id, body)
    if record is None:
        return {"error": f"Initiative {initiative_id} not found"}
    return services.initiative_detail(app_ctx, record)


# ---------------------------------------------------------------------------
# Tools: Risk & Stats
# ---------------------------------------------------------------------------


@mcp.tool()
def get_risk_report(ctx: Context, refresh: bool = False) -> dict:
    """Overdue and approaching phase deadlines. Set refresh to run a new pass first."""
    app_ctx = _app(ctx)
    if refresh:
        app_ctx.run_risk_check()
    return services.risk_report_dict(app_ctx)


@mcp.tool()
def get_stats(ctx: Context) -> dict:
    """Status counts, key initiative count, and per-category breakdown."""
    return services.compute_stats(_app(ctx).initiatives)


# ---------------------------------------------------------------------------
# Tools: Sync & History
# ---------------------------------------------------------------------------


@mcp.tool()
async def sync_from_jira(ctx: Context, jql: str | None = None) -> dict:
    """Pull initiatives from JIRA using the configured credentials. User-owned fields are kept."""
    app_ctx = _app(ctx)
    messages: list[str] = []
    try:
        credentials = JiraCredentials.from_settings(app_ctx.settings, jql=jql).validated()
        result = await services.run_jira_sync(
            app_ctx, credentials, lambda message, severity: messages.append(message),
        )
    except JiraCredentialsError as exc:
        return {"error": str(exc)}
    except Exception as exc:
        log.warning("JIRA sync via MCP failed: %s", exc)
        return {"error": f"Sync failed: {exc}", "messages": messages}
    return {
        "synced": result.synced_count, "key_initiatives": result.key_initiative_count,
        "failed": result.failed, "messages": messages,
    }


@mcp.tool()
def create_snapshot(ctx: Context, note: str = "") -> dict:
    """Capture the initiatives visible in the active view."""
    snapshot = services.capture_snapshot(_app(ctx), note)
    return {k: v for k, v in snapshot.items() if k != "data"} | {"count": len(snapshot["data"])}


@mcp.tool()
def list_activities(ctx: Context) -> list[dict]:
    """The latest activities, newest first."""
    return _app(ctx).store.list_activities()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Portfolio Tracker MCP server over stdio."""
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    mcp.run()


if __name__ == "__main__":
    main()
