"""Per-view filtering of the initiative collection."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from typing import Any

from portfolio.schemas import InitiativeRecord
from portfolio.utils import parse_timestamp


class View(str, enum.Enum):
    DASHBOARD = "dashboard"
    TIMELINE = "timeline"
    HISTORY = "history"


ALL = "all"


@dataclass
class FilterState:
    # dashboard
    status: str = ALL
    category: str = ALL
    search: str = ""
    # timeline
    name: str = ""
    key_only: bool = False
    owner: str = ""
    statuses: list[str] = field(default_factory=list)
    date_from: str = ""
    date_to: str = ""

    def updated(self, **changes: Any) -> FilterState:
        """Copy with the given fields replaced; ``None`` values are ignored."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status, "category": self.category, "search": self.search,
            "name": self.name, "key_only": self.key_only, "owner": self.owner,
            "statuses": list(self.statuses), "date_from": self.date_from, "date_to": self.date_to,
        }


def parse_view(value: str | None, default: View = View.DASHBOARD) -> View:
    """Map a view name to :class:`View`. Raises ValueError for unknown names."""
    if not value:
        return default
    return View(value.strip().lower())


def _contains(haystack: str | None, needle: str) -> bool:
    return needle.lower() in (haystack or "").lower()


def _dashboard_match(item: InitiativeRecord, filters: FilterState) -> bool:
    if filters.status != ALL and item.status != filters.status:
        return False
    if filters.category != ALL and filters.category not in item.categories:
        return False
    term = filters.search.strip()
    if term and not (_contains(item.name, term) or _contains(item.owner, term)):
        return False
    return True


def _timeline_match(item: InitiativeRecord, filters: FilterState) -> bool:
    if filters.name and not _contains(item.name, filters.name):
        return False
    if filters.key_only and item.key_initiative != "Yes":
        return False
    if filters.owner and not _contains(item.owner, filters.owner):
        return False
    if filters.statuses and item.status not in filters.statuses:
        return False
    if filters.date_from or filters.date_to:
        target = parse_timestamp(item.target_date)
        if target is None:
            return False
        # Bounds compare by calendar day, both ends inclusive.
        start = parse_timestamp(filters.date_from)
        end = parse_timestamp(filters.date_to)
        if start is not None and target.date() < start.date():
            return False
        if end is not None and target.date() > end.date():
            return False
    return True


def filter_for_view(
    view: View | str, initiatives: list[InitiativeRecord], filters: FilterState | None = None,
) -> list[InitiativeRecord]:
    """Initiatives visible in *view* under *filters*; history shows everything."""
    view = View(view)
    filters = filters or FilterState()
    if view is View.DASHBOARD:
        return [i for i in initiatives if _dashboard_match(i, filters)]
    if view is View.TIMELINE:
        return [i for i in initiatives if _timeline_match(i, filters)]
    return list(initiatives)
