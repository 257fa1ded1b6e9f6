"""Field-ownership merge of JIRA-sourced initiatives with stored ones.

JIRA owns identity and headline fields (id, name, owner, status,
key_initiative). Users own tags, phases and manually edited dates. Categories
are shared and only ever grow through a merge.
"""
from __future__ import annotations

from portfolio.schemas import InitiativeRecord

PRESERVED_DATE_FIELDS = ("start_date", "target_date")


def merge_categories(existing: list[str] | None, external: list[str] | None) -> list[str]:
    """Set union of both lists, existing entries first, no duplicates."""
    return list(dict.fromkeys([*(existing or []), *(external or [])]))


def reconcile(external: InitiativeRecord, existing: InitiativeRecord | None) -> InitiativeRecord:
    """Combine a freshly mapped JIRA record with the stored record for the same id.

    With no stored record the JIRA record is returned unchanged (first sync).
    Pure: performs no I/O and does not mutate either argument.
    """
    if existing is None:
        return external

    update = {
        field: getattr(existing, field) or getattr(external, field)
        for field in PRESERVED_DATE_FIELDS
    }
    update["categories"] = merge_categories(existing.categories, external.categories)
    update["tags"] = list(existing.tags or [])
    update["phases"] = [p.model_copy(deep=True) for p in existing.phases or []]
    update["created_at"] = existing.created_at
    return external.model_copy(update=update)
