"""Shared business logic for the Portfolio Tracker API and MCP server."""
from __future__ import annotations

import logging
from collections import Counter
from typing import Any

from portfolio.context import AppContext
from portfolio.db import open_cloud_database
from portfolio.jira import JiraCredentials
from portfolio.relay import export_to_relay
from portfolio.risk import risk_info_dict, warning_dict
from portfolio.schemas import STATUS_ICONS, InitiativeCreate, InitiativeRecord, InitiativeUpdate, ViewStateUpdate
from portfolio.store import SqlStore, copy_store
from portfolio.sync import ProgressCallback, SyncResult, sync_from_jira
from portfolio.utils import generate_id
from portfolio.views import View, parse_view

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared field tuples
# ---------------------------------------------------------------------------

UPDATABLE_FIELDS = (
    "name", "owner", "status", "key_initiative", "start_date", "target_date",
    "categories", "tags", "phases",
)

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def initiative_out(ctx: AppContext, record: InitiativeRecord) -> dict:
    out = record.model_dump(mode="json")
    info = ctx.risk_info.get(record.id)
    out["risk"] = risk_info_dict(info) if info else None
    return out


def initiative_detail(ctx: AppContext, record: InitiativeRecord) -> dict:
    out = initiative_out(ctx, record)
    out["notes"] = ctx.store.list_notes(record.id)
    return out


def risk_report_dict(ctx: AppContext) -> dict:
    report = ctx.last_risk_report
    return {
        "auto_updated_count": report.auto_updated_count,
        "overdue_count": report.overdue_count,
        "approaching_count": report.approaching_count,
        "checked_at": report.checked_at.isoformat() if report.checked_at else None,
        "warnings": [warning_dict(w) for w in report.warnings],
    }


def view_state_dict(ctx: AppContext) -> dict:
    return {"active_view": ctx.active_view.value, "filters": ctx.filters.as_dict()}


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------


def status_summary(initiatives: list[InitiativeRecord]) -> dict[str, int]:
    counts = Counter(i.status for i in initiatives)
    return {
        "total": len(initiatives),
        "active": counts["Active"],
        "risk": counts["Risk"],
        "planned": counts["Planned"],
        "completed": counts["Completed"],
    }


def compute_stats(initiatives: list[InitiativeRecord]) -> dict:
    by_category: Counter[str] = Counter()
    for init in initiatives:
        for category in init.categories or ["Uncategorized"]:
            by_category[category] += 1
    return {
        **status_summary(initiatives),
        "key_initiatives": sum(1 for i in initiatives if i.key_initiative == "Yes"),
        "by_category": dict(by_category),
    }


# ---------------------------------------------------------------------------
# Mutation helpers
# ---------------------------------------------------------------------------


def apply_updates(record: InitiativeRecord, updates: dict[str, Any], fields: tuple[str, ...]) -> InitiativeRecord:
    """Copy of *record* with the non-None values from *updates* applied."""
    changes = {f: updates[f] for f in fields if updates.get(f) is not None}
    return InitiativeRecord.model_validate({**record.model_dump(), **changes})


def _log_activity(ctx: AppContext, kind: str, text: str, record: InitiativeRecord | None = None, **kw: str) -> None:
    try:
        ctx.store.add_activity(
            kind, text,
            initiative_id=record.id if record else None,
            initiative_name=record.name if record else None,
            **kw,
        )
    except Exception as exc:
        log.warning("Failed to record %s activity: %s", kind, exc)


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


def create_initiative(ctx: AppContext, body: InitiativeCreate) -> InitiativeRecord:
    """Create a hand-entered initiative. Raises ValueError if the id is taken."""
    initiative_id = (body.id or "").strip() or generate_id()
    if ctx.store.get_by_id(initiative_id) is not None:
        raise ValueError(f"Initiative '{initiative_id}' already exists")
    record = apply_updates(
        InitiativeRecord(id=initiative_id, name=body.name), body.model_dump(), UPDATABLE_FIELDS,
    )
    saved = ctx.store.upsert(record)
    ctx.replace_initiative(saved)
    _log_activity(ctx, "create", f"Created initiative {saved.name}", saved, icon="➕")
    return saved


def update_initiative(ctx: AppContext, initiative_id: str, body: InitiativeUpdate) -> InitiativeRecord | None:
    existing = ctx.store.get_by_id(initiative_id)
    if existing is None:
        return None
    updates = body.model_dump()
    saved = ctx.store.upsert(apply_updates(existing, updates, UPDATABLE_FIELDS))
    ctx.replace_initiative(saved)
    if saved.status != existing.status:
        _log_activity(
            ctx, "update", f"{saved.name} status changed to {saved.status}", saved,
            icon=STATUS_ICONS.get(saved.status, "✏"), meta=f"{existing.status} → {saved.status}",
        )
    else:
        changed = ", ".join(f for f in UPDATABLE_FIELDS if updates.get(f) is not None)
        _log_activity(ctx, "update", f"Updated {saved.name}", saved, icon="✏", meta=changed)
    return saved


def delete_initiative(ctx: AppContext, initiative_id: str) -> bool:
    existing = ctx.store.get_by_id(initiative_id)
    if existing is None or not ctx.store.delete(initiative_id):
        return False
    ctx.remove_initiative(initiative_id)
    _log_activity(ctx, "delete", f"Deleted initiative {existing.name}", existing, icon="🗑")
    return True


def add_note(ctx: AppContext, initiative_id: str, text: str, author: str = "") -> dict | None:
    note = ctx.store.add_note(initiative_id, text, author)
    if note is not None:
        record = ctx.get(initiative_id)
        _log_activity(ctx, "note", "Added a note", record, icon="📝", meta=author)
    return note


def update_view_state(ctx: AppContext, body: ViewStateUpdate) -> dict:
    """Apply a view/filter change. Raises ValueError for unknown view names."""
    if body.active_view is not None:
        ctx.active_view = parse_view(body.active_view)
    if body.filters is not None:
        ctx.filters = ctx.filters.updated(**body.filters.model_dump())
    return view_state_dict(ctx)


def capture_snapshot(ctx: AppContext, note: str = "") -> dict:
    snapshot = ctx.capture_snapshot(note)
    _log_activity(
        ctx, "snapshot", f"Snapshot captured ({len(snapshot['data'])} initiatives)",
        icon="📸", meta=note,
    )
    return snapshot


async def run_jira_sync(
    ctx: AppContext,
    credentials: JiraCredentials,
    on_progress: ProgressCallback | None = None,
) -> SyncResult:
    """One sync pass, then refresh the in-memory collection and re-run risk detection."""
    result = await sync_from_jira(ctx.store, credentials, on_progress, settings=ctx.settings)
    ctx.reload()
    ctx.run_risk_check()
    if result.synced_count:
        _log_activity(
            ctx, "sync", f"Synced {result.synced_count} initiatives from JIRA", icon="🔄",
            meta=f"{result.key_initiative_count} key, {result.failed} failed",
        )
    return result


async def export_view(ctx: AppContext, recipient_email: str, view: str | None = None) -> dict:
    """Send the initiatives visible in *view* (default: active view) to the email relay."""
    selected: View = parse_view(view, ctx.active_view)
    records = ctx.visible(selected)
    summary = status_summary(records)
    result = await export_to_relay(
        [r.model_dump(mode="json") for r in records], summary, recipient_email,
        relay_url=ctx.settings.relay_url, timeout=ctx.settings.http_timeout_seconds,
    )
    log.info("Exported %d initiatives to relay", len(records))
    return result


def migrate_to_cloud(ctx: AppContext, target: SqlStore | None = None) -> dict[str, int]:
    """Copy local data into the cloud database. Raises ValueError when no cloud is configured."""
    if target is None:
        if ctx.store.backend == "cloud":
            raise ValueError("Already connected to the cloud database")
        if not ctx.settings.database_url:
            raise ValueError("DATABASE_URL is not configured")
        cloud = open_cloud_database(ctx.settings.database_url)
        try:
            return copy_store(ctx.store, SqlStore(cloud))
        finally:
            cloud.dispose()
    return copy_store(ctx.store, target)
