"""
Aggregation of raw records into ledger-ready transaction groups.

Iterates records and their allocations, resolves each category through the
mapping table and accumulates gross amounts and fee shares into
(category, instrument) cells of the group for (period, location).

Pure functions: no I/O, no database access.
"""

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping

import structlog

from .mappings import CategoryMapping
from .models import GroupKey, RawRecord, SkippedAmount, TransactionGroup

logger = structlog.get_logger(__name__)

PeriodFn = Callable[[RawRecord], str]


def _round_half_away(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def allocate_fee(total_fee: int, amounts: List[int]) -> List[int]:
    """
    Split ``total_fee`` across allocations in proportion to their amounts.

    Each share but the last is rounded half away from zero; the last share
    takes the exact remainder, so the shares always sum to ``total_fee``.

    Args:
        total_fee: Fee of the whole record, in minor units
        amounts: Allocation amounts, in record order

    Returns:
        One fee share per amount

    Examples:
        >>> allocate_fee(450, [10000, 5000])
        [300, 150]
        >>> allocate_fee(100, [1, 1, 1])
        [33, 33, 34]
        >>> allocate_fee(0, [500])
        [0]
    """
    if not amounts:
        return []

    total = sum(amounts)
    if total_fee == 0:
        return [0] * len(amounts)
    if total == 0:
        return [0] * (len(amounts) - 1) + [total_fee]

    shares: List[int] = []
    for amount in amounts[:-1]:
        shares.append(_round_half_away(Decimal(total_fee) * Decimal(amount) / Decimal(total)))
    shares.append(total_fee - sum(shares))
    return shares


@dataclass
class AggregationResult:
    """Groups plus everything that did not make it into one."""

    groups: List[TransactionGroup] = field(default_factory=list)
    skipped_unmapped: List[SkippedAmount] = field(default_factory=list)
    skipped_records: List[SkippedAmount] = field(default_factory=list)
    record_count: int = 0
    processed_count: int = 0

    @property
    def unmapped_total(self) -> int:
        return sum(s.amount for s in self.skipped_unmapped)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "record_count": self.record_count,
            "processed_count": self.processed_count,
            "group_count": len(self.groups),
            "skipped_unmapped": [s.to_dict() for s in self.skipped_unmapped],
            "skipped_records": [s.to_dict() for s in self.skipped_records],
        }


def date_period(record: RawRecord) -> str:
    """Group by the UTC date the record occurred on."""
    return record.occurred_at.date().isoformat()


def batch_period(record: RawRecord) -> str:
    """Group by the batch the record was committed in."""
    return record.batch_id or date_period(record)


def aggregate(
    records: Iterable[RawRecord],
    mappings: Mapping[str, CategoryMapping],
    key_fn: PeriodFn = date_period,
) -> AggregationResult:
    """
    Aggregate records into transaction groups.

    Args:
        records: Raw records in fetch order
        mappings: Category mappings keyed by category id
        key_fn: Returns the period part of the group key for a record

    Returns:
        AggregationResult with groups in first-seen order

    Example:
        >>> result = aggregate(records, mappings)
        >>> [g.key.label() for g in result.groups]
        ['2025-03-01/North']
    """
    result = AggregationResult()
    groups: Dict[GroupKey, TransactionGroup] = {}

    for record in records:
        result.record_count += 1

        if not record.allocations:
            result.skipped_records.append(
                SkippedAmount(record.id, "No designations", record.gross, record.instrument)
            )
            continue

        if record.allocated_total <= 0:
            result.skipped_records.append(
                SkippedAmount(record.id, "Designations total zero or missing", record.gross, record.instrument)
            )
            continue

        result.processed_count += 1
        period = key_fn(record)
        shares = allocate_fee(record.fee, [a.amount for a in record.allocations])

        for allocation, fee_share in zip(record.allocations, shares):
            mapping = mappings.get(allocation.category_id)
            if mapping is None:
                result.skipped_unmapped.append(
                    SkippedAmount(
                        record_id=record.id,
                        reason=f"Category {allocation.category_id} not mapped",
                        amount=allocation.amount,
                        instrument=record.instrument,
                        category_id=allocation.category_id,
                    )
                )
                continue

            key = GroupKey(period=period, location=mapping.location_name)
            group = groups.get(key)
            if group is None:
                group = TransactionGroup(key=key, batch_name=str(record.attributes.get("batch_name") or ""))
                groups[key] = group

            line = group.cell(allocation.category_id, record.instrument)
            line.amount += allocation.amount
            line.fee_share += fee_share
            line.category_name = mapping.display_name or allocation.category_id
            line.class_name = mapping.class_name
            group.add_record_id(record.id)

    result.groups = list(groups.values())

    if result.skipped_unmapped:
        logger.warning(
            "Unmapped categories skipped",
            count=len(result.skipped_unmapped),
            categories=sorted({s.category_id for s in result.skipped_unmapped if s.category_id}),
        )

    logger.info(
        "Aggregation complete",
        records=result.record_count,
        processed=result.processed_count,
        groups=len(result.groups),
        skipped_records=len(result.skipped_records),
    )
    return result
