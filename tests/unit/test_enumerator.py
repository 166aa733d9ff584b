"""Tests for work unit enumeration."""
from datetime import date

import pytest

from azsync.models.sync import PENDING
from azsync.sync.enumerator import (
    Entity,
    NoWorkError,
    build_chunk_records,
    enumerate_work_units,
    monthly_windows,
)

DBS = [Entity(id=i, name=f"db{i}") for i in (1, 2, 3)]
WORKSPACES = [Entity(id=10, name="ws-a", params={"workspace_id": "a"}), Entity(id=20, name="ws-b")]


class TestEnumerateWorkUnits:
    def test_one_unit_per_entity_without_scopes(self):
        units = enumerate_work_units(DBS)
        assert [u.entity.id for u in units] == [1, 2, 3]
        assert all(u.scope is None for u in units)

    def test_scope_major_entity_minor_order(self):
        units = enumerate_work_units(DBS, WORKSPACES)
        assert len(units) == 6
        assert [(u.scope.id, u.entity.id) for u in units] == [
            (10, 1), (10, 2), (10, 3),
            (20, 1), (20, 2), (20, 3),
        ]

    def test_indexes_are_contiguous_from_zero(self):
        units = enumerate_work_units(DBS, WORKSPACES)
        assert [u.chunk_index for u in units] == list(range(6))

    def test_same_inputs_same_indexes(self):
        first = enumerate_work_units(DBS, WORKSPACES)
        second = enumerate_work_units(list(DBS), list(WORKSPACES))
        assert [(u.chunk_index, u.label) for u in first] == [(u.chunk_index, u.label) for u in second]

    def test_empty_entities_raises(self):
        with pytest.raises(NoWorkError):
            enumerate_work_units([])

    def test_explicitly_empty_scopes_raises(self):
        """An empty scope list means 'none resolved', not 'no scope dimension'."""
        with pytest.raises(NoWorkError):
            enumerate_work_units(DBS, [])

    def test_label_includes_scope(self):
        units = enumerate_work_units(DBS, WORKSPACES)
        assert units[0].label == "db1 (ws-a)"
        assert enumerate_work_units(DBS)[0].label == "db1"


class TestBuildChunkRecords:
    def test_records_start_pending(self):
        records = build_chunk_records(enumerate_work_units(DBS))
        assert all(r.status == PENDING for r in records)
        assert all(r.records == 0 for r in records)

    def test_records_carry_unit_identity(self):
        records = build_chunk_records(enumerate_work_units(DBS, WORKSPACES))
        rec = records[4]
        assert rec.chunk_index == 4
        assert rec.entity_id == 2
        assert rec.scope_id == 20
        assert rec.scope_name == "ws-b"

    def test_scope_params_are_prefixed(self):
        records = build_chunk_records(enumerate_work_units(DBS, WORKSPACES))
        assert records[0].params == {"scope_workspace_id": "a"}


class TestMonthlyWindows:
    def test_single_month(self):
        windows = monthly_windows(date(2026, 3, 5), date(2026, 3, 20))
        assert [w.params for w in windows] == [{"start": "2026-03-05", "end": "2026-03-20"}]

    def test_splits_on_calendar_months(self):
        windows = monthly_windows(date(2026, 1, 20), date(2026, 3, 2))
        assert [(w.params["start"], w.params["end"]) for w in windows] == [
            ("2026-01-20", "2026-01-31"),
            ("2026-02-01", "2026-02-28"),
            ("2026-03-01", "2026-03-02"),
        ]

    def test_leap_february(self):
        windows = monthly_windows(date(2024, 2, 1), date(2024, 2, 29))
        assert windows[0].params["end"] == "2024-02-29"
        assert len(windows) == 1

    def test_start_after_end_is_empty(self):
        assert monthly_windows(date(2026, 3, 2), date(2026, 3, 1)) == []
