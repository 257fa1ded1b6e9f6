"""One JIRA sync pass: resolve fields, query, map, merge, persist.

Records are processed one fetch-merge-save round-trip at a time. A record
that fails to save is logged and skipped; only field resolution and the
primary query are fatal to the pass.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Protocol

import httpx

from portfolio.config import Settings
from portfolio.jira import FieldIds, JiraClient, JiraCredentials, JiraError, connection_hint
from portfolio.merge import reconcile
from portfolio.schemas import InitiativeRecord
from portfolio.store import SqlStore
from portfolio.utils import parse_timestamp, to_iso, utc_now

log = logging.getLogger(__name__)


class Severity(str, enum.Enum):
    MUTED = "muted"
    WARNING = "warning"
    SUCCESS = "success"
    ERROR = "error"


ProgressCallback = Callable[[str, Severity], None]

# Checked in order; first match wins.
_STATUS_RULES = (
    (("done", "closed", "complete"), "Completed"),
    (("plan", "backlog"), "Planned"),
    (("risk", "block"), "Risk"),
)


class TrackerClient(Protocol):
    async def resolve_field_ids(self) -> FieldIds: ...

    async def search(self, jql: str, fields: list[str], page_size: int = 100) -> list[dict[str, Any]]: ...


@dataclass
class SyncResult:
    synced_count: int = 0
    key_initiative_count: int = 0
    failed: int = 0
    total: int = 0


def map_status(jira_status: str | None) -> str:
    lowered = (jira_status or "").lower()
    for needles, status in _STATUS_RULES:
        if any(n in lowered for n in needles):
            return status
    return "Active"


def _option_value(value: Any) -> str | None:
    """Select-list fields come back as ``{"value": ...}``; plain text as a string."""
    if isinstance(value, dict):
        return value.get("value") or None
    if isinstance(value, str):
        return value or None
    return None


def map_issue(
    issue: dict[str, Any],
    field_ids: FieldIds,
    key_initiative_keys: set[str],
    *,
    default_duration_days: int = 30,
) -> InitiativeRecord:
    """Translate a JIRA issue into the initiative shape (tags and phases empty)."""
    fields = issue.get("fields") or {}

    status_obj = fields.get("status")
    status = map_status(status_obj.get("name")) if isinstance(status_obj, dict) else "Active"

    start = parse_timestamp(fields.get("created")) or utc_now()
    start_date = fields.get("created") or to_iso(start)
    target_date = fields.get("duedate") or to_iso(start + timedelta(days=default_duration_days))

    categories: list[str] = []
    if field_ids.category:
        value = _option_value(fields.get(field_ids.category))
        if value:
            categories.append(value)

    assignee = fields.get("assignee")
    owner = (assignee.get("displayName") if isinstance(assignee, dict) else None) or "Unassigned"

    return InitiativeRecord(
        id=issue["key"],
        name=fields.get("summary") or issue["key"],
        owner=owner,
        status=status,
        key_initiative="Yes" if issue["key"] in key_initiative_keys else "No",
        start_date=start_date,
        target_date=target_date,
        categories=categories,
        tags=[],
        phases=[],
    )


async def fetch_key_initiative_keys(client: TrackerClient, jql: str, page_size: int = 100) -> set[str]:
    """Keys of issues flagged as key initiatives; empty on failure."""
    try:
        issues = await client.search(jql, ["key"], page_size)
    except (JiraError, httpx.HTTPError) as exc:
        log.warning("Failed to fetch key initiatives: %s", exc)
        return set()
    keys = {issue["key"] for issue in issues if issue.get("key")}
    log.info("Key initiative ids: %s", sorted(keys))
    return keys


def _noop_progress(message: str, severity: Severity) -> None:
    pass


async def run_sync(
    store: SqlStore,
    client: TrackerClient,
    jql: str,
    on_progress: ProgressCallback | None = None,
    *,
    key_initiative_jql: str,
    page_size: int = 100,
    default_duration_days: int = 30,
    proxy_url: str = "",
) -> SyncResult:
    """Run one sync pass against *client*, persisting merged records into *store*.

    Raises on failures while resolving fields or running the primary query,
    after reporting them through *on_progress* at ``error`` severity.
    """
    progress = on_progress or _noop_progress
    try:
        progress("Resolving JIRA fields...", Severity.MUTED)
        field_ids = await client.resolve_field_ids()
        log.info("Resolved JIRA field ids: %s", field_ids)

        progress("Fetching JIRA data...", Severity.MUTED)
        issues = await client.search(jql, field_ids.query_fields(), page_size)
    except Exception as exc:
        log.error("JIRA sync failed: %s", exc)
        progress(f"Failed: {exc}{connection_hint(exc, proxy_url)}", Severity.ERROR)
        raise

    if not issues:
        progress(f'No issues found matching query: "{jql}"', Severity.WARNING)
        return SyncResult()

    progress("Identifying key initiatives...", Severity.MUTED)
    key_keys = await fetch_key_initiative_keys(client, key_initiative_jql, page_size)
    if not key_keys:
        log.warning("No key initiatives identified; all synced records get key_initiative='No'")

    progress("Processing JIRA data...", Severity.MUTED)
    mapped: list[InitiativeRecord] = []
    for issue in issues:
        try:
            mapped.append(map_issue(issue, field_ids, key_keys, default_duration_days=default_duration_days))
        except (KeyError, TypeError, ValueError) as exc:
            log.warning("Skipping malformed JIRA issue %s: %s", issue.get("key", "?"), exc)

    progress("Saving to database...", Severity.MUTED)
    result = SyncResult(key_initiative_count=len(key_keys), total=len(mapped))
    for record in mapped:
        try:
            existing = store.get_by_id(record.id)
            log.info("%s initiative %s", "Merging" if existing else "Creating", record.id)
            store.upsert(reconcile(record, existing))
            result.synced_count += 1
        except Exception as exc:
            log.error("Failed to save %s: %s", record.id, exc)
            result.failed += 1

    progress(
        f"Success! Synced {result.synced_count} initiatives ({result.key_initiative_count} key initiatives).",
        Severity.SUCCESS,
    )
    return result


async def sync_from_jira(
    store: SqlStore,
    credentials: JiraCredentials,
    on_progress: ProgressCallback | None = None,
    *,
    settings: Settings,
    client: TrackerClient | None = None,
) -> SyncResult:
    """Validate credentials, open a :class:`~portfolio.jira.JiraClient` and run one pass."""
    credentials = credentials.validated()
    common = {
        "key_initiative_jql": settings.key_initiative_jql,
        "page_size": settings.jira_page_size,
        "default_duration_days": settings.default_initiative_duration_days,
        "proxy_url": settings.jira_proxy_url,
    }
    if client is not None:
        return await run_sync(store, client, credentials.jql, on_progress, **common)
    async with JiraClient(
        credentials, proxy_url=settings.jira_proxy_url, timeout=settings.http_timeout_seconds,
    ) as jira:
        return await run_sync(store, jira, credentials.jql, on_progress, **common)
