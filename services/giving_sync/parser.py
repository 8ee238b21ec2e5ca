"""
Parse JSON:API resources from the giving platform into RawRecord objects.

Resources look like::

    {"type": "Donation", "id": "101",
     "attributes": {"amount_cents": 10000, "fee_cents": -330, ...},
     "relationships": {"designations": {"data": [{"type": "Designation", "id": "9"}]}}}

Parsing never raises on a malformed resource: functions return None (or an
empty tuple) and the caller reports the record as skipped.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog

from .clock import parse_iso
from .models import Allocation, PaymentInstrument, RawRecord

logger = structlog.get_logger(__name__)

IncludedIndex = Dict[Tuple[str, str], Dict[str, Any]]


def index_included(included: Iterable[Dict[str, Any]]) -> IncludedIndex:
    """Index ``included`` resources by (type, id)."""
    index: IncludedIndex = {}
    for resource in included or []:
        rtype = resource.get("type")
        rid = resource.get("id")
        if rtype and rid is not None:
            index[(str(rtype), str(rid))] = resource
    return index


def relationship_refs(resource: Dict[str, Any], name: str) -> List[Tuple[str, str]]:
    """Return (type, id) pairs of a to-one or to-many relationship."""
    data = (resource.get("relationships") or {}).get(name, {}).get("data")
    if data is None:
        return []
    if isinstance(data, dict):
        data = [data]
    return [
        (str(ref.get("type", "")), str(ref["id"]))
        for ref in data
        if isinstance(ref, dict) and ref.get("id") is not None
    ]


def relationship_id(resource: Dict[str, Any], name: str) -> Optional[str]:
    refs = relationship_refs(resource, name)
    return refs[0][1] if refs else None


def _cents(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def parse_designation(resource: Dict[str, Any]) -> Optional[Allocation]:
    """
    Parse one designation into an Allocation.

    Returns None when the fund is missing or the amount is zero.
    """
    fund_id = relationship_id(resource, "fund")
    amount = _cents((resource.get("attributes") or {}).get("amount_cents"))
    if fund_id is None or amount == 0:
        return None
    return Allocation(category_id=fund_id, amount=amount)


def parse_designations(resources: Iterable[Dict[str, Any]]) -> Tuple[Allocation, ...]:
    allocations = (parse_designation(r) for r in resources)
    return tuple(a for a in allocations if a is not None)


def included_designations(donation: Dict[str, Any], included: IncludedIndex) -> Tuple[Allocation, ...]:
    """Resolve a donation's designation references through the included index."""
    resources = [
        included[ref]
        for ref in relationship_refs(donation, "designations")
        if ref in included
    ]
    return parse_designations(resources)


def parse_donation(
    resource: Dict[str, Any],
    allocations: Tuple[Allocation, ...] = (),
    batch_id: Optional[str] = None,
    occurred_at: Optional[datetime] = None,
) -> Optional[RawRecord]:
    """
    Parse a donation resource.

    The occurrence time is ``completed_at`` (falling back to ``received_at``)
    unless ``occurred_at`` is given, e.g. the commit time of its batch.
    Fees are reported negative by the platform; the record stores the
    absolute value.

    Returns:
        RawRecord, or None if the resource has no id or usable timestamp
    """
    attrs = resource.get("attributes") or {}
    record_id = resource.get("id")
    if record_id is None:
        return None

    when = occurred_at or parse_iso(attrs.get("completed_at")) or parse_iso(attrs.get("received_at"))
    if when is None:
        logger.debug("Donation without timestamp", donation_id=record_id)
        return None

    return RawRecord(
        id=str(record_id),
        occurred_at=when,
        gross=_cents(attrs.get("amount_cents")),
        fee=abs(_cents(attrs.get("fee_cents"))),
        instrument=PaymentInstrument.parse(attrs.get("payment_method")),
        allocations=allocations,
        batch_id=batch_id,
        description=attrs.get("payment_method_sub") or None,
        attributes={
            "payment_status": str(attrs.get("payment_status") or "").lower(),
            "refunded": bool(attrs.get("refunded")),
            "payment_method": str(attrs.get("payment_method") or "").lower(),
        },
    )


def is_settled_online(record: RawRecord) -> bool:
    """Succeeded, non-refunded card or ACH donation."""
    return (
        record.attributes.get("payment_status") == "succeeded"
        and not record.attributes.get("refunded")
        and record.instrument in (PaymentInstrument.CARD, PaymentInstrument.ACH)
    )


def is_settled(record: RawRecord) -> bool:
    return record.attributes.get("payment_status") == "succeeded" and not record.attributes.get("refunded")


def parse_batch(resource: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Parse a batch into ``{"id", "name", "committed_at"}``.

    Returns None for uncommitted batches.
    """
    attrs = resource.get("attributes") or {}
    committed_at = parse_iso(attrs.get("committed_at"))
    if resource.get("id") is None or committed_at is None:
        return None
    return {
        "id": str(resource["id"]),
        "name": str(attrs.get("description") or attrs.get("name") or ""),
        "committed_at": committed_at,
    }


def parse_registration_payment(
    resource: Dict[str, Any],
    included: Optional[IncludedIndex] = None,
) -> Optional[RawRecord]:
    """
    Parse a registration payment.

    The category of the payment is its event; the single allocation covers
    the full amount. ``created_at`` is used for windowing (``paid_at`` is
    only present on older payloads).
    """
    attrs = resource.get("attributes") or {}
    record_id = resource.get("id")
    when = parse_iso(attrs.get("created_at")) or parse_iso(attrs.get("paid_at"))
    if record_id is None or when is None:
        return None

    event_id = relationship_id(resource, "event") or "registrations"
    event_name = str(attrs.get("event_name") or "").strip()
    if not event_name and included:
        event = included.get(("Event", event_id)) or {}
        event_name = str((event.get("attributes") or {}).get("name") or "").strip()
    if not event_name:
        event_name = f"Event {event_id}"

    gross = _cents(attrs.get("amount_cents"))
    instrument_raw = str(attrs.get("instrument") or "").strip()
    payer = str(attrs.get("payer_name") or "").strip() or "Unknown person"

    return RawRecord(
        id=str(record_id),
        occurred_at=when,
        gross=gross,
        fee=abs(_cents(attrs.get("stripe_fee_cents"))),
        instrument=PaymentInstrument.parse(instrument_raw),
        allocations=(Allocation(category_id=event_id, amount=gross),) if gross else (),
        description=" | ".join([
            f"Registration: {event_name}",
            f"Person: {payer}",
            f"Payment: {instrument_raw or 'Unspecified'}",
        ]),
        attributes={
            "event_name": event_name,
            "registration_id": relationship_id(resource, "registration"),
        },
    )


def refunded_total(registration: Dict[str, Any]) -> int:
    """Cumulative refunded amount of a registration, in minor units."""
    attrs = registration.get("attributes") or {}
    return abs(_cents(attrs.get("refunded_amount_cents")))
