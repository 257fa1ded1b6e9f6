from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from portfolio import services
from portfolio.config import get_settings
from portfolio.context import AppContext, build_context
from portfolio.jira import JiraCredentials, JiraCredentialsError
from portfolio.relay import RelayError
from portfolio.schemas import (
    ActivityOut,
    ExportRequest,
    InitiativeCreate,
    InitiativeDetail,
    InitiativeOut,
    InitiativeUpdate,
    JiraSyncRequest,
    NoteCreate,
    NoteOut,
    SnapshotCreate,
    SnapshotOut,
    StatsOut,
    ViewStateUpdate,
)
from portfolio.sync import Severity
from portfolio.views import parse_view

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    ctx = build_context(get_settings())
    app.state.ctx = ctx
    ctx.start_background()
    try:
        yield
    finally:
        await ctx.close()


app = FastAPI(
    title="Portfolio Tracker",
    version="1.0.0",
    description=(
        "Initiative portfolio tracker. Syncs initiatives from JIRA, keeps "
        "user-owned tags, phases and dates across syncs, and flags deadline risk. "
        "All endpoints return JSON. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Initiatives", "description": "Browse, create, and edit initiatives."},
        {"name": "Notes", "description": "Free-text notes attached to initiatives."},
        {"name": "Views", "description": "Active view and filter state."},
        {"name": "Risk", "description": "Overdue and approaching phase deadlines."},
        {"name": "Sync", "description": "Pull initiatives from JIRA."},
        {"name": "History", "description": "Activities and snapshots."},
        {"name": "Stats", "description": "Status summaries and breakdowns."},
        {"name": "Admin", "description": "Storage status, export and migration."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def get_context(request: Request) -> AppContext:
    return request.app.state.ctx


def _get_or_404(ctx: AppContext, initiative_id: str):
    record = ctx.store.get_by_id(initiative_id)
    if record is None:
        raise HTTPException(404, "Initiative not found")
    return record


def _view_or_400(value: str | None, ctx: AppContext):
    try:
        return parse_view(value, ctx.active_view)
    except ValueError as exc:
        raise HTTPException(400, f"Unknown view: {value}") from exc


# ---------------------------------------------------------------------------
# Routes: Status
# ---------------------------------------------------------------------------


@app.get("/api/status", tags=["Admin"], summary="Storage connection status and record counts")
async def get_status(ctx: AppContext = Depends(get_context)):
    healthy = ctx.database.health_check()
    return {
        "healthy": healthy,
        "status": ctx.database.status.value,
        "backend": ctx.store.backend,
        "initiatives": len(ctx.initiatives),
        "active_view": ctx.active_view.value,
    }


# ---------------------------------------------------------------------------
# Routes: Initiatives
# ---------------------------------------------------------------------------


class InitiativeListResponse(BaseModel):
    items: list[InitiativeOut]
    total: int
    view: str


@app.get("/api/initiatives", response_model=InitiativeListResponse,
         tags=["Initiatives"], summary="List initiatives visible in a view")
async def list_initiatives(
    view: str | None = Query(None, description="dashboard, timeline or history (default: active view)"),
    ctx: AppContext = Depends(get_context),
):
    selected = _view_or_400(view, ctx)
    items = [services.initiative_out(ctx, r) for r in ctx.visible(selected)]
    return {"items": items, "total": len(items), "view": selected.value}


@app.post("/api/initiatives", response_model=InitiativeDetail, status_code=201,
          tags=["Initiatives"], summary="Create an initiative by hand")
async def create_initiative(body: InitiativeCreate, ctx: AppContext = Depends(get_context)):
    try:
        record = services.create_initiative(ctx, body)
    except ValueError as exc:
        raise HTTPException(409, str(exc)) from exc
    return services.initiative_detail(ctx, record)


@app.get("/api/initiatives/{initiative_id}", response_model=InitiativeDetail,
         tags=["Initiatives"], summary="Get one initiative with notes and risk info")
async def get_initiative(initiative_id: str, ctx: AppContext = Depends(get_context)):
    return services.initiative_detail(ctx, _get_or_404(ctx, initiative_id))


@app.put("/api/initiatives/{initiative_id}", response_model=InitiativeDetail,
         tags=["Initiatives"], summary="Update initiative fields (partial update, null fields ignored)")
async def update_initiative(initiative_id: str, body: InitiativeUpdate, ctx: AppContext = Depends(get_context)):
    record = services.update_initiative(ctx, initiative_id, body)
    if record is None:
        raise HTTPException(404, "Initiative not found")
    return services.initiative_detail(ctx, record)


@app.delete("/api/initiatives/{initiative_id}", tags=["Initiatives"], summary="Delete an initiative and its notes")
async def delete_initiative(initiative_id: str, ctx: AppContext = Depends(get_context)):
    if not services.delete_initiative(ctx, initiative_id):
        raise HTTPException(404, "Initiative not found")
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Notes
# ---------------------------------------------------------------------------


@app.get("/api/initiatives/{initiative_id}/notes", response_model=list[NoteOut],
         tags=["Notes"], summary="List notes for an initiative")
async def list_notes(initiative_id: str, ctx: AppContext = Depends(get_context)):
    _get_or_404(ctx, initiative_id)
    return ctx.store.list_notes(initiative_id)


@app.post("/api/initiatives/{initiative_id}/notes", response_model=NoteOut, status_code=201,
          tags=["Notes"], summary="Attach a note to an initiative")
async def create_note(initiative_id: str, body: NoteCreate, ctx: AppContext = Depends(get_context)):
    note = services.add_note(ctx, initiative_id, body.text, body.author)
    if note is None:
        raise HTTPException(404, "Initiative not found")
    return note


@app.delete("/api/notes/{note_id}", tags=["Notes"], summary="Delete a note")
async def delete_note(note_id: int, ctx: AppContext = Depends(get_context)):
    if not ctx.store.delete_note(note_id):
        raise HTTPException(404, "Note not found")
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Views
# ---------------------------------------------------------------------------


@app.get("/api/view", tags=["Views"], summary="Get the active view and filters")
async def get_view(ctx: AppContext = Depends(get_context)):
    return services.view_state_dict(ctx)


@app.put("/api/view", tags=["Views"], summary="Switch view and/or update filters (null fields ignored)")
async def update_view(body: ViewStateUpdate, ctx: AppContext = Depends(get_context)):
    try:
        return services.update_view_state(ctx, body)
    except ValueError as exc:
        raise HTTPException(400, f"Unknown view: {body.active_view}") from exc


# ---------------------------------------------------------------------------
# Routes: History
# ---------------------------------------------------------------------------


@app.get("/api/activities", response_model=list[ActivityOut],
         tags=["History"], summary="Latest activities, newest first")
async def list_activities(ctx: AppContext = Depends(get_context)):
    return ctx.store.list_activities()


@app.get("/api/snapshots", response_model=list[SnapshotOut],
         tags=["History"], summary="List snapshots")
async def list_snapshots(
    with_data: bool = Query(False, description="Include the captured initiatives"),
    ctx: AppContext = Depends(get_context),
):
    return ctx.store.list_snapshots(with_data=with_data)


@app.post("/api/snapshots", response_model=SnapshotOut, status_code=201,
          tags=["History"], summary="Capture the initiatives visible in the active view")
async def create_snapshot(body: SnapshotCreate | None = None, ctx: AppContext = Depends(get_context)):
    return services.capture_snapshot(ctx, (body or SnapshotCreate()).note)


@app.get("/api/snapshots/{snapshot_id}", response_model=SnapshotOut,
         tags=["History"], summary="Get one snapshot with its data")
async def get_snapshot(snapshot_id: int, ctx: AppContext = Depends(get_context)):
    snapshot = ctx.store.get_snapshot(snapshot_id)
    if snapshot is None:
        raise HTTPException(404, "Snapshot not found")
    return snapshot


# ---------------------------------------------------------------------------
# Routes: Risk
# ---------------------------------------------------------------------------


@app.get("/api/risks", tags=["Risk"], summary="Latest risk report")
async def get_risks(ctx: AppContext = Depends(get_context)):
    return services.risk_report_dict(ctx)


@app.post("/api/risks/check", tags=["Risk"], summary="Run a risk pass now")
async def check_risks(ctx: AppContext = Depends(get_context)):
    ctx.run_risk_check()
    return services.risk_report_dict(ctx)


# ---------------------------------------------------------------------------
# Routes: Stats
# ---------------------------------------------------------------------------


@app.get("/api/stats", response_model=StatsOut,
         tags=["Stats"], summary="Status counts and category breakdown")
async def get_stats(ctx: AppContext = Depends(get_context)):
    return services.compute_stats(ctx.initiatives)


# ---------------------------------------------------------------------------
# Routes: Sync
# ---------------------------------------------------------------------------


def _event(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def _sync_stream(ctx: AppContext, credentials: JiraCredentials):
    """SSE stream of progress messages while one sync pass runs."""
    async def stream():
        queue: asyncio.Queue = asyncio.Queue()

        def on_progress(message: str, severity: Severity) -> None:
            queue.put_nowait({"type": "progress", "message": message, "severity": severity.value})

        async def worker():
            try:
                return await services.run_jira_sync(ctx, credentials, on_progress)
            finally:
                queue.put_nowait(None)

        # None marks the end of the pass; every progress item is queued before it.
        task = asyncio.create_task(worker(), name="jira-sync")
        while (item := await queue.get()) is not None:
            yield _event(item)

        try:
            result = await task
        except Exception as exc:
            log.warning("JIRA sync failed: %s", exc)
            yield _event({"type": "error", "message": str(exc)})
            return
        yield _event({"type": "complete", "stats": {
            "synced": result.synced_count, "key_initiatives": result.key_initiative_count,
            "failed": result.failed,
        }})

    return StreamingResponse(stream(), media_type="text/event-stream")


@app.get("/api/jira/config", tags=["Sync"], summary="Configured JIRA defaults (token omitted)")
async def get_jira_config(ctx: AppContext = Depends(get_context)):
    s = ctx.settings
    return {
        "domain": s.jira_domain, "email": s.jira_email, "jql": s.jira_jql,
        "proxy_url": s.jira_proxy_url, "has_token": bool(s.jira_token),
    }


@app.post("/api/sync/jira", tags=["Sync"], summary="Sync initiatives from JIRA (SSE progress stream)")
async def sync_jira(body: JiraSyncRequest | None = None, ctx: AppContext = Depends(get_context)):
    body = body or JiraSyncRequest()
    credentials = JiraCredentials.from_settings(
        ctx.settings, domain=body.domain, email=body.email, token=body.token, jql=body.jql,
    )
    try:
        credentials = credentials.validated()
    except JiraCredentialsError as exc:
        raise HTTPException(400, str(exc)) from exc
    return _sync_stream(ctx, credentials)


# ---------------------------------------------------------------------------
# Routes: Export & Migration
# ---------------------------------------------------------------------------


@app.post("/api/export", tags=["Admin"], summary="Send the visible initiatives to the email relay")
async def export(body: ExportRequest, ctx: AppContext = Depends(get_context)):
    _view_or_400(body.view, ctx)
    try:
        return await services.export_view(ctx, body.recipient_email, body.view)
    except RelayError as exc:
        raise HTTPException(502, str(exc)) from exc


@app.post("/api/migrate", tags=["Admin"], summary="Copy local data into the cloud database")
async def migrate(ctx: AppContext = Depends(get_context)):
    try:
        counts = services.migrate_to_cloud(ctx)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    except SQLAlchemyError as exc:
        log.error("Migration failed: %s", exc)
        raise HTTPException(502, f"Migration failed: {exc}") from exc
    return {"ok": True, **counts}


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run("portfolio.app:app", host="127.0.0.1", port=8001)


if __name__ == "__main__":
    main()
