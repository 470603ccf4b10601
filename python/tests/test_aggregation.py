"""
Unit tests for the Aggregation Engine.

Counts refer to the tree seeded in conftest.py.
"""

import logging
from datetime import date
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from registry.aggregation import AggregationEngine, StatisticsRecord, ratio, years_ago
from registry.errors import EntityNotFoundError
from registry.models import JurisdictionLevel


@pytest.fixture
def engine_(session, tree):
    return AggregationEngine(session, tree)


class TestRatios:
    """Tests for the zero-safe ratio helper."""

    def test_zero_denominator_is_zero(self):
        assert ratio(5, 0) == 0.0

    def test_rounds_to_two_places(self):
        assert ratio(11, 9) == 1.22

    def test_empty_record_ratios(self):
        record = StatisticsRecord(jurisdiction_id=1, level=JurisdictionLevel.GN)
        assert record.people_per_family == 0.0
        assert record.families_per_gn == 0.0
        assert record.gn_per_division == 0.0

    def test_years_ago_handles_leap_day(self):
        assert years_ago(date(2024, 2, 29), 1) == date(2023, 2, 28)


class TestStatistics:
    """Tests for per-node rollups."""

    def test_gn_counts_exclude_deceased(self, engine_, seeded):
        record = engine_.stats(seeded.g1)
        assert record.family_count == 3
        assert record.citizen_count == 6
        assert record.population == 6
        assert record.gn_count == 1

    def test_division_sums_its_gns(self, engine_, seeded):
        record = engine_.stats(seeded.d1)
        assert record.family_count == 8
        assert record.citizen_count == 11
        assert record.pending_transfer_count == 2
        assert record.gn_count == 2
        assert record.division_count == 1

    def test_district_ratios(self, engine_, seeded):
        record = engine_.stats(seeded.ds1)
        assert record.family_count == 9
        assert record.citizen_count == 11
        assert record.gn_count == 3
        assert record.division_count == 2
        assert record.people_per_family == 1.22
        assert record.families_per_gn == 3.0
        assert record.gn_per_division == 1.5

    def test_family_without_citizens_still_counts(self, engine_, seeded):
        record = engine_.stats(seeded.g3)
        assert record.family_count == 1
        assert record.citizen_count == 0
        assert record.people_per_family == 0.0

    def test_national_equals_sum_of_districts(self, engine_, seeded):
        national = engine_.stats(seeded.n)
        districts = [engine_.stats(seeded.ds1), engine_.stats(seeded.ds2)]

        assert national.family_count == sum(d.family_count for d in districts) == 11
        assert national.citizen_count == sum(d.citizen_count for d in districts) == 13
        assert national.gn_count == 4
        assert national.division_count == 3

    def test_every_level_is_consistent(self, engine_, tree, seeded):
        for node_id in tree.all_ids:
            children = tree.children(node_id)
            if not children:
                continue
            parent = engine_.stats(node_id)
            assert parent.family_count == sum(engine_.stats(c.id).family_count for c in children)

    def test_unknown_node_raises(self, engine_):
        with pytest.raises(EntityNotFoundError):
            engine_.stats(987654)

    def test_storage_failure_marks_unavailable(self, engine_, seeded, caplog):
        error = OperationalError("SELECT", {}, Exception("connection lost"))
        with patch.object(engine_.session, "execute", side_effect=error):
            with caplog.at_level(logging.WARNING, logger="registry.aggregation"):
                record = engine_.stats(seeded.d1)

        assert record.available is False
        assert record.family_count == 0
        assert record.jurisdiction_id == seeded.d1
        assert "unavailable" in caplog.text


class TestBreakdown:
    """Tests for per-child breakdowns."""

    def test_breakdown_matches_individual_stats(self, engine_, seeded):
        rows = engine_.breakdown(seeded.ds1)
        assert [r.jurisdiction_id for r in rows] == sorted([seeded.d1, seeded.d2])
        by_id = {r.jurisdiction_id: r for r in rows}
        assert by_id[seeded.d1].family_count == 8
        assert by_id[seeded.d2].family_count == 1

    def test_breakdown_of_gn_is_empty(self, engine_, seeded):
        assert engine_.breakdown(seeded.g1) == []

    def test_breakdown_failure_marks_children_unavailable(self, engine_, seeded):
        error = OperationalError("SELECT", {}, Exception("timeout"))
        with patch.object(engine_.session, "execute", side_effect=error):
            rows = engine_.breakdown(seeded.ds1)
        assert len(rows) == 2
        assert all(not r.available for r in rows)


class TestDemographics:
    """Tests for gender and age-band distribution."""

    def test_division_distribution(self, engine_, seeded):
        result = engine_.demographics(seeded.d1, today=date(2026, 6, 1))

        assert result.available is True
        assert result.total == 11
        assert result.by_gender == {"male": 3, "female": 8}
        assert result.children == 3
        assert result.adults == 3
        assert result.seniors == 4
        assert result.unknown_age == 1

    def test_to_dict_groups_ages(self, engine_, seeded):
        data = engine_.demographics(seeded.g1, today=date(2026, 6, 1)).to_dict()
        assert data["age_groups"] == {"children": 3, "adults": 3, "seniors": 0, "unknown": 0}

    def test_node_without_citizens(self, engine_, seeded):
        result = engine_.demographics(seeded.g3)
        assert result.total == 0
        assert result.by_gender == {}
