"""Pydantic request/response schemas for the Portfolio Tracker API."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

STATUS_OPTIONS = ("Active", "Risk", "Planned", "Completed")
STATUS_ICONS = {"Active": "✓", "Risk": "⚠", "Planned": "📋", "Completed": "✅"}
PHASE_COMPLETED = "completed"


def _check_status(value: str | None) -> str | None:
    if value is not None and value not in STATUS_OPTIONS:
        raise ValueError(f"status must be one of: {', '.join(STATUS_OPTIONS)}")
    return value


def _check_name(value: str | None) -> str | None:
    if value is None:
        return None
    if not value.strip():
        raise ValueError("name must not be empty")
    return value.strip()


def _dedupe(values: list[str] | None) -> list[str] | None:
    if values is None:
        return None
    return list(dict.fromkeys(v.strip() for v in values if v and v.strip()))


class Phase(BaseModel):
    # Phases are user-owned; unknown keys (colour, notes, ...) round-trip untouched.
    model_config = ConfigDict(extra="allow")

    name: str = ""
    start_date: str = ""
    end_date: str = ""
    status: str = "planned"


class InitiativeRecord(BaseModel):
    """The initiative shape shared by the store, sync, risk and view code."""

    id: str
    name: str
    owner: str = ""
    status: str = "Active"
    key_initiative: str = "No"
    start_date: str = ""
    target_date: str = ""
    categories: list[str] = []
    tags: list[str] = []
    phases: list[Phase] = []
    created_at: datetime | None = None
    updated_at: datetime | None = None


class _InitiativeFields(BaseModel):
    owner: str | None = None
    status: str | None = None
    key_initiative: str | None = None
    start_date: str | None = None
    target_date: str | None = None
    categories: list[str] | None = None
    tags: list[str] | None = None
    phases: list[Phase] | None = None

    @field_validator("status")
    @classmethod
    def status_must_be_known(cls, v: str | None) -> str | None:
        return _check_status(v)

    @field_validator("key_initiative")
    @classmethod
    def key_initiative_yes_no(cls, v: str | None) -> str | None:
        if v is not None and v not in ("Yes", "No"):
            raise ValueError("key_initiative must be 'Yes' or 'No'")
        return v

    @field_validator("categories", "tags")
    @classmethod
    def labels_unique(cls, v: list[str] | None) -> list[str] | None:
        return _dedupe(v)


class InitiativeCreate(_InitiativeFields):
    id: str | None = None
    name: str

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        return _check_name(v)


class InitiativeUpdate(_InitiativeFields):
    name: str | None = None

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str | None) -> str | None:
        return _check_name(v)


class PhaseWarningOut(BaseModel):
    name: str
    end_date: str
    days: int


class RiskInfoOut(BaseModel):
    has_overdue_phase: bool
    has_approaching_deadline: bool
    overdue_phases: list[PhaseWarningOut] = []
    approaching_phases: list[PhaseWarningOut] = []


class NoteCreate(BaseModel):
    text: str
    author: str = ""

    @field_validator("text")
    @classmethod
    def text_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("text must not be empty")
        return v


class NoteOut(BaseModel):
    id: int
    initiative_id: str
    text: str
    author: str
    created_at: str


class InitiativeOut(InitiativeRecord):
    risk: RiskInfoOut | None = None


class InitiativeDetail(InitiativeOut):
    notes: list[NoteOut] = []


class ActivityOut(BaseModel):
    id: int
    type: str
    icon: str
    text: str
    meta: str
    timestamp: str
    initiative_id: str | None = None
    initiative_name: str | None = None


class SnapshotCreate(BaseModel):
    note: str = ""


class SnapshotOut(BaseModel):
    id: int
    note: str
    automatic: bool
    created_at: str
    data: list[dict[str, Any]] = []


class FilterUpdate(BaseModel):
    status: str | None = None
    category: str | None = None
    search: str | None = None
    name: str | None = None
    key_only: bool | None = None
    owner: str | None = None
    statuses: list[str] | None = None
    date_from: str | None = None
    date_to: str | None = None


class ViewStateUpdate(BaseModel):
    active_view: str | None = None
    filters: FilterUpdate | None = None


class JiraSyncRequest(BaseModel):
    domain: str | None = None
    email: str | None = None
    token: str | None = None
    jql: str | None = None


class ExportRequest(BaseModel):
    recipient_email: str = ""
    view: str | None = None


class StatsOut(BaseModel):
    total: int
    active: int
    risk: int
    planned: int
    completed: int
    key_initiatives: int
    by_category: dict[str, int]
