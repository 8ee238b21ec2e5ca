"""
Domain types shared by the sync engine.

Amounts are integer minor units (cents) everywhere; conversion to decimal
currency happens only when a ledger payload is built.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class SyncType(str, Enum):
    """The three sync variants; values are the persisted type names."""

    STRIPE = "stripe"
    BATCH = "batch"
    REGISTRATIONS = "registrations"


class PaymentInstrument(str, Enum):
    CARD = "card"
    ACH = "ach"
    CASH = "cash"
    CHECK = "check"
    OTHER = "other"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "PaymentInstrument":
        """
        Normalize a source payment method string.

        Examples:
            >>> PaymentInstrument.parse("Credit Card")
            <PaymentInstrument.CARD: 'card'>
            >>> PaymentInstrument.parse("cheque")
            <PaymentInstrument.CHECK: 'check'>
            >>> PaymentInstrument.parse(None)
            <PaymentInstrument.OTHER: 'other'>
        """
        value = (raw or "").strip().lower().replace("_", " ")
        if value in ("card", "credit card", "debit card"):
            return cls.CARD
        if value in ("ach", "eft", "bank account"):
            return cls.ACH
        if value == "cash":
            return cls.CASH
        if value in ("check", "cheque"):
            return cls.CHECK
        return cls.OTHER

    @property
    def ledger_name(self) -> Optional[str]:
        """Name of the matching ledger PaymentMethod, if any."""
        return {
            PaymentInstrument.CARD: "Credit Card",
            PaymentInstrument.ACH: "ACH",
            PaymentInstrument.CASH: "cash",
            PaymentInstrument.CHECK: "check",
        }.get(self)


@dataclass(frozen=True)
class Allocation:
    """Portion of a record designated to one category (fund/event)."""

    category_id: str
    amount: int


@dataclass(frozen=True)
class RawRecord:
    """Immutable record fetched from the source: donation or registration payment."""

    id: str
    occurred_at: datetime
    gross: int
    fee: int
    instrument: PaymentInstrument
    allocations: Tuple[Allocation, ...] = ()
    batch_id: Optional[str] = None
    description: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def allocated_total(self) -> int:
        return sum(a.amount for a in self.allocations)


@dataclass(frozen=True)
class Window:
    """Half-open [start, end) time range processed by one run."""

    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end

    def to_dict(self) -> Dict[str, str]:
        return {"since": self.start.isoformat(), "until": self.end.isoformat()}


@dataclass(frozen=True)
class GroupKey:
    """Date (YYYY-MM-DD) or batch id, plus the resolved ledger location."""

    period: str
    location: str = ""

    def label(self) -> str:
        return f"{self.period}/{self.location or '(no location)'}"


@dataclass
class Line:
    """One (category, instrument) cell of a transaction group."""

    category_id: str
    instrument: PaymentInstrument
    amount: int = 0
    fee_share: int = 0
    category_name: str = ""
    class_name: str = ""


@dataclass
class TransactionGroup:
    """Records sharing a grouping key, destined for one ledger transaction."""

    key: GroupKey
    lines: List[Line] = field(default_factory=list)
    record_ids: List[str] = field(default_factory=list)
    batch_name: str = ""
    _cells: Dict[Tuple[str, PaymentInstrument], Line] = field(default_factory=dict, repr=False)

    def cell(self, category_id: str, instrument: PaymentInstrument) -> Line:
        """Return the cell for (category, instrument), creating it in order."""
        cell_key = (category_id, instrument)
        line = self._cells.get(cell_key)
        if line is None:
            line = Line(category_id=category_id, instrument=instrument)
            self._cells[cell_key] = line
            self.lines.append(line)
        return line

    def add_record_id(self, record_id: str) -> None:
        if record_id not in self.record_ids:
            self.record_ids.append(record_id)

    @property
    def total_gross(self) -> int:
        return sum(line.amount for line in self.lines)

    @property
    def total_fee(self) -> int:
        return sum(line.fee_share for line in self.lines)

    @property
    def total_net(self) -> int:
        return self.total_gross - self.total_fee


@dataclass(frozen=True)
class SkippedAmount:
    """An amount that was not aggregated, with the reason reported to the operator."""

    record_id: str
    reason: str
    amount: int
    instrument: Optional[PaymentInstrument] = None
    category_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "reason": self.reason,
            "amount_cents": self.amount,
            "payment_method": self.instrument.value if self.instrument else None,
            "category_id": self.category_id,
        }


def to_currency(minor: int) -> float:
    """
    Convert minor units to a two-decimal amount for ledger payloads.

    Example:
        >>> to_currency(-150)
        -1.5
    """
    return float((Decimal(minor) / Decimal(100)).quantize(Decimal("0.01")))
