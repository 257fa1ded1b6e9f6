"""Record store over a :class:`~portfolio.db.Database`.

Cloud and local backends are the same SQL tables behind different engines, so
one implementation serves both and they behave identically to callers.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import delete, select

from portfolio.db import Database
from portfolio.models import Activity, Initiative, Note, Snapshot
from portfolio.schemas import InitiativeRecord, Phase
from portfolio.utils import json_parse, parse_timestamp, to_iso, utc_now

log = logging.getLogger(__name__)

ACTIVITY_LIMIT = 10


def _to_record(row: Initiative) -> InitiativeRecord:
    return InitiativeRecord(
        id=row.id, name=row.name, owner=row.owner or "", status=row.status,
        key_initiative=row.key_initiative or "No",
        start_date=row.start_date or "", target_date=row.target_date or "",
        categories=json_parse(row.categories_json, []),
        tags=json_parse(row.tags_json, []),
        phases=[Phase.model_validate(p) for p in json_parse(row.phases_json, [])],
        created_at=parse_timestamp(row.created_at), updated_at=parse_timestamp(row.updated_at),
    )


def _apply_record(row: Initiative, record: InitiativeRecord) -> None:
    row.name = record.name
    row.owner = record.owner
    row.status = record.status
    row.key_initiative = record.key_initiative
    row.start_date = record.start_date
    row.target_date = record.target_date
    row.categories_json = json.dumps(record.categories)
    row.tags_json = json.dumps(record.tags)
    row.phases_json = json.dumps([p.model_dump() for p in record.phases])


def note_dict(note: Note) -> dict:
    return {
        "id": note.id, "initiative_id": note.initiative_id, "text": note.text,
        "author": note.author, "created_at": to_iso(note.created_at),
    }


def activity_dict(activity: Activity) -> dict:
    return {
        "id": activity.id, "type": activity.type, "icon": activity.icon,
        "text": activity.text, "meta": activity.meta or "",
        "timestamp": to_iso(activity.timestamp),
        "initiative_id": activity.initiative_id,
        "initiative_name": activity.initiative_name,
    }


def snapshot_dict(snapshot: Snapshot, *, with_data: bool = True) -> dict:
    out = {
        "id": snapshot.id, "note": snapshot.note, "automatic": bool(snapshot.automatic),
        "created_at": to_iso(snapshot.created_at),
    }
    if with_data:
        out["data"] = json_parse(snapshot.data_json, [])
    return out


class SqlStore:
    """get/upsert/delete/list for initiatives, plus notes, activities and snapshots."""

    def __init__(self, database: Database):
        self.database = database

    @property
    def backend(self) -> str:
        return self.database.backend

    # -- initiatives --------------------------------------------------------

    def get_by_id(self, initiative_id: str) -> InitiativeRecord | None:
        with self.database.session_scope() as session:
            row = session.get(Initiative, initiative_id)
            return _to_record(row) if row is not None else None

    def upsert(self, record: InitiativeRecord) -> InitiativeRecord:
        """Write the whole record. ``updated_at`` is stamped; ``created_at`` is kept once set."""
        now = utc_now()
        with self.database.session_scope() as session:
            row = session.get(Initiative, record.id)
            if row is None:
                row = Initiative(id=record.id, created_at=record.created_at or now)
                session.add(row)
            elif row.created_at is None:
                row.created_at = record.created_at or now
            _apply_record(row, record)
            row.updated_at = now
            session.commit()
            log.debug("Saved initiative %s (%s) to %s store", record.id, record.name, self.backend)
            return _to_record(row)

    def delete(self, initiative_id: str) -> bool:
        with self.database.session_scope() as session:
            row = session.get(Initiative, initiative_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True

    def list_all(self) -> list[InitiativeRecord]:
        with self.database.session_scope() as session:
            rows = session.execute(
                select(Initiative).order_by(Initiative.created_at.desc(), Initiative.id)
            ).scalars().all()
            return [_to_record(r) for r in rows]

    def count(self) -> int:
        with self.database.session_scope() as session:
            return len(session.execute(select(Initiative.id)).all())

    # -- notes --------------------------------------------------------------

    def list_notes(self, initiative_id: str) -> list[dict]:
        with self.database.session_scope() as session:
            notes = session.execute(
                select(Note).where(Note.initiative_id == initiative_id).order_by(Note.created_at, Note.id)
            ).scalars().all()
            return [note_dict(n) for n in notes]

    def add_note(self, initiative_id: str, text: str, author: str = "") -> dict | None:
        """Attach a note; returns None when the initiative does not exist."""
        with self.database.session_scope() as session:
            if session.get(Initiative, initiative_id) is None:
                return None
            now = utc_now()
            note = Note(initiative_id=initiative_id, text=text, author=author, created_at=now, updated_at=now)
            session.add(note)
            session.commit()
            return note_dict(note)

    def delete_note(self, note_id: int) -> bool:
        with self.database.session_scope() as session:
            result = session.execute(delete(Note).where(Note.id == note_id))
            session.commit()
            return bool(result.rowcount)

    # -- activities ---------------------------------------------------------

    def add_activity(
        self, kind: str, text: str, *, icon: str = "", meta: str = "",
        initiative_id: str | None = None, initiative_name: str | None = None,
    ) -> dict:
        with self.database.session_scope() as session:
            activity = Activity(
                type=kind, icon=icon, text=text, meta=meta, timestamp=utc_now(),
                initiative_id=initiative_id, initiative_name=initiative_name,
            )
            session.add(activity)
            session.commit()
            return activity_dict(activity)

    def list_activities(self, limit: int = ACTIVITY_LIMIT) -> list[dict]:
        with self.database.session_scope() as session:
            rows = session.execute(
                select(Activity).order_by(Activity.timestamp.desc(), Activity.id.desc()).limit(limit)
            ).scalars().all()
            return [activity_dict(a) for a in rows]

    # -- snapshots ----------------------------------------------------------

    def create_snapshot(self, note: str, data: list[dict[str, Any]], *, automatic: bool = False) -> dict:
        with self.database.session_scope() as session:
            snapshot = Snapshot(
                note=note or "", data_json=json.dumps(data, default=str),
                automatic=automatic, created_at=utc_now(),
            )
            session.add(snapshot)
            session.commit()
            return snapshot_dict(snapshot)

    def list_snapshots(self, *, with_data: bool = False) -> list[dict]:
        with self.database.session_scope() as session:
            rows = session.execute(
                select(Snapshot).order_by(Snapshot.created_at.desc(), Snapshot.id.desc())
            ).scalars().all()
            return [snapshot_dict(s, with_data=with_data) for s in rows]

    def get_snapshot(self, snapshot_id: int) -> dict | None:
        with self.database.session_scope() as session:
            snapshot = session.get(Snapshot, snapshot_id)
            return snapshot_dict(snapshot) if snapshot is not None else None


def copy_store(source: SqlStore, target: SqlStore) -> dict[str, int]:
    """Copy initiatives, notes and snapshots from *source* into *target*.

    Used to move data collected while offline into the cloud database.
    Initiatives are upserted by id; snapshots are appended.
    """
    initiatives = source.list_all()
    log.info("Migrating %d initiatives...", len(initiatives))
    notes = 0
    for record in initiatives:
        target.upsert(record)
        existing_texts = {n["text"] for n in target.list_notes(record.id)}
        for note in source.list_notes(record.id):
            if note["text"] in existing_texts:
                continue
            target.add_note(record.id, note["text"], note["author"])
            notes += 1

    snapshots = source.list_snapshots(with_data=True)
    log.info("Migrating %d snapshots...", len(snapshots))
    for snap in reversed(snapshots):
        target.create_snapshot(snap["note"], snap["data"], automatic=snap["automatic"])

    return {"initiatives": len(initiatives), "notes": notes, "snapshots": len(snapshots)}
