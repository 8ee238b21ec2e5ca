"""
Tests for fee allocation and aggregation into transaction groups.
"""

from datetime import datetime, timezone

import pytest

from services.giving_sync.aggregate import aggregate, allocate_fee, batch_period
from services.giving_sync.mappings import CategoryMapping
from services.giving_sync.models import Allocation, PaymentInstrument, RawRecord

DAY = datetime(2025, 3, 1, 15, 30, tzinfo=timezone.utc)

MAPPINGS = {
    "F1": CategoryMapping("F1", "General Fund", "General", "North"),
    "F2": CategoryMapping("F2", "Missions", "Missions", "North"),
    "F3": CategoryMapping("F3", "Building", "Building", "South"),
}


def record(record_id, allocations, fee=0, instrument=PaymentInstrument.CARD, when=DAY, batch_id=None):
    allocations = tuple(Allocation(category_id, amount) for category_id, amount in allocations)
    return RawRecord(
        id=record_id,
        occurred_at=when,
        gross=sum(a.amount for a in allocations),
        fee=fee,
        instrument=instrument,
        allocations=allocations,
        batch_id=batch_id,
    )


class TestAllocateFee:

    @pytest.mark.parametrize("total_fee, amounts", [
        (0, [5000]),
        (0, [100, 200]),
        (330, [10000]),
        (450, [10000, 5000]),
        (100, [1, 1, 1]),
        (1, [1, 1, 1]),
        (999, [333, 333, 334]),
        (7, [1, 2, 3, 4, 5]),
        (12345, [1, 99999]),
        (5, [0, 0]),
    ])
    def test_shares_sum_to_total(self, total_fee, amounts):
        shares = allocate_fee(total_fee, amounts)

        assert len(shares) == len(amounts)
        assert sum(shares) == total_fee

    def test_proportional_split(self):
        assert allocate_fee(450, [10000, 5000]) == [300, 150]

    def test_remainder_goes_to_last(self):
        assert allocate_fee(100, [1, 1, 1]) == [33, 33, 34]

    def test_half_rounds_away_from_zero(self):
        # 5 * 1/2 = 2.5 -> 3, remainder 2
        assert allocate_fee(5, [1, 1]) == [3, 2]

    def test_zero_amounts_put_fee_on_last(self):
        assert allocate_fee(5, [0, 0]) == [0, 5]

    def test_empty(self):
        assert allocate_fee(10, []) == []


class TestAggregate:

    def test_split_designation_with_fee(self):
        """10000 to F1 and 5000 to F2 with a 450 fee: 300/150 fee shares."""
        result = aggregate([record("101", [("F1", 10000), ("F2", 5000)], fee=450)], MAPPINGS)

        [group] = result.groups
        assert group.key.period == "2025-03-01"
        assert group.key.location == "North"
        assert [(l.category_id, l.amount, l.fee_share) for l in group.lines] == [
            ("F1", 10000, 300),
            ("F2", 5000, 150),
        ]
        assert group.record_ids == ["101"]
        assert group.total_fee == 450

    def test_cells_accumulate_per_category_and_instrument(self):
        records = [
            record("1", [("F1", 1000)], fee=30),
            record("2", [("F1", 2000)], fee=60),
            record("3", [("F1", 500)], instrument=PaymentInstrument.ACH),
        ]

        [group] = aggregate(records, MAPPINGS).groups

        assert [(l.instrument, l.amount, l.fee_share) for l in group.lines] == [
            (PaymentInstrument.CARD, 3000, 90),
            (PaymentInstrument.ACH, 500, 0),
        ]
        assert group.record_ids == ["1", "2", "3"]
        assert group.lines[0].class_name == "General"
        assert group.lines[0].category_name == "General Fund"

    def test_groups_by_location_and_date(self):
        next_day = datetime(2025, 3, 2, 9, 0, tzinfo=timezone.utc)
        records = [
            record("1", [("F1", 1000), ("F3", 1000)]),
            record("2", [("F1", 1000)], when=next_day),
        ]

        groups = aggregate(records, MAPPINGS).groups

        assert [g.key.label() for g in groups] == ["2025-03-01/North", "2025-03-01/South", "2025-03-02/North"]
        assert groups[0].record_ids == ["1"]
        assert groups[1].record_ids == ["1"]

    def test_unmapped_designation_is_skipped_with_reason(self):
        result = aggregate([record("7", [("F1", 4000), ("F9", 1000)], fee=100)], MAPPINGS)

        [group] = result.groups
        assert group.total_gross == 4000
        assert group.total_fee == 80
        [skipped] = result.skipped_unmapped
        assert skipped.record_id == "7"
        assert skipped.category_id == "F9"
        assert skipped.amount == 1000
        assert skipped.reason == "Category F9 not mapped"
        assert result.unmapped_total == 1000

    def test_records_without_usable_designations(self):
        records = [
            record("1", []),
            RawRecord(
                id="2",
                occurred_at=DAY,
                gross=500,
                fee=0,
                instrument=PaymentInstrument.CARD,
                allocations=(Allocation("F1", 0),),
            ),
        ]

        result = aggregate(records, MAPPINGS)

        assert result.groups == []
        assert [s.reason for s in result.skipped_records] == [
            "No designations",
            "Designations total zero or missing",
        ]
        assert result.record_count == 2
        assert result.processed_count == 0

    def test_batch_period_uses_batch_id(self):
        records = [
            record("1", [("F1", 1000)], instrument=PaymentInstrument.CASH, batch_id="B7"),
            record("2", [("F1", 2500)], instrument=PaymentInstrument.CHECK, batch_id="B7"),
        ]

        [group] = aggregate(records, MAPPINGS, key_fn=batch_period).groups

        assert group.key.period == "B7"
        assert group.total_gross == 3500

    def test_fee_total_is_preserved_across_groups(self):
        result = aggregate([record("1", [("F1", 333), ("F3", 333), ("F2", 334)], fee=101)], MAPPINGS)

        assert sum(g.total_fee for g in result.groups) == 101
