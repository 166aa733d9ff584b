"""
Work unit enumeration for chunked syncs.

A run is split into work units, one per (scope, entity) pair, or one per
entity when the sync has no scope dimension. Enumeration is scope-major,
entity-minor and depends only on the input order, so the same inputs always
give each unit the same chunk_index.
"""
from calendar import monthrange
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Sequence

from azsync.models.sync import ChunkRecord


class NoWorkError(RuntimeError):
    """Raised when a sync resolves to zero work units."""


@dataclass(frozen=True)
class Entity:
    """Something a chunk fetches for: a resource, or a date window."""

    id: Optional[int]
    name: str
    params: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)


@dataclass(frozen=True)
class WorkUnit:
    chunk_index: int
    entity: Entity
    scope: Optional[Entity] = None

    @property
    def label(self) -> str:
        if self.scope is None:
            return self.entity.name
        return f"{self.entity.name} ({self.scope.name})"

    def to_chunk_record(self) -> ChunkRecord:
        params = dict(self.entity.params)
        if self.scope is not None:
            params.update({f"scope_{k}": v for k, v in self.scope.params.items()})
        return ChunkRecord(
            chunk_index=self.chunk_index,
            label=self.label,
            entity_id=self.entity.id,
            entity_name=self.entity.name,
            scope_id=self.scope.id if self.scope else None,
            scope_name=self.scope.name if self.scope else None,
            params=params,
        )


def enumerate_work_units(
    entities: Sequence[Entity],
    scopes: Optional[Sequence[Entity]] = None,
) -> List[WorkUnit]:
    """
    Cross scopes with entities into an indexed list of work units.

    Args:
        entities: Target entities, in a stable order.
        scopes: Optional sub-scopes (e.g. Log Analytics workspaces). None means
            the sync has no scope dimension; an empty list means none resolved.

    Raises:
        NoWorkError: if entities (or a given scope list) is empty.
    """
    if not entities:
        raise NoWorkError("No entities to sync")
    if scopes is not None and not scopes:
        raise NoWorkError("No scopes to sync")

    units: List[WorkUnit] = []
    for scope in scopes if scopes is not None else [None]:
        for entity in entities:
            units.append(WorkUnit(chunk_index=len(units), entity=entity, scope=scope))
    return units


def build_chunk_records(units: Sequence[WorkUnit]) -> List[ChunkRecord]:
    """Pending ChunkRecords for a freshly enumerated run."""
    return [unit.to_chunk_record() for unit in units]


def monthly_windows(start: date, end: date) -> List[Entity]:
    """Split [start, end] into calendar-month windows (Cost Management limits
    queries to a month at a time). Returns them as entities for enumeration."""
    windows = []
    current = start
    while current <= end:
        last_day = date(current.year, current.month, monthrange(current.year, current.month)[1])
        window_end = min(last_day, end)
        windows.append(Entity(
            id=None,
            name=f"{current.isoformat()} to {window_end.isoformat()}",
            params={"start": current.isoformat(), "end": window_end.isoformat()},
        ))
        current = window_end + timedelta(days=1)
    return windows
