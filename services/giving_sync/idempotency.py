"""
Idempotency ledger: records of units of work already committed to the ledger.

Fingerprint formats are stable across releases; changing one would make
previously committed work look new and book it twice.
"""

import hashlib
import json
from typing import Iterable, Optional

import structlog
from sqlalchemy import Engine, select

from .clock import Clock, utcnow
from .db.connector import upsert
from .db.schema import synced_items_table

logger = structlog.get_logger(__name__)


def item_fingerprint(item_id: str) -> str:
    """
    Fingerprint of a single source item (batch-committed donation).

    The batch the item arrived in is stored alongside the record, not in the
    fingerprint, so the item is skipped wherever it resurfaces.
    """
    return str(item_id)


def group_fingerprint(kind: str, record_ids: Iterable[str], account_id: str) -> str:
    """
    Stable hash over a group's sync kind, contributing record ids and target account.

    Example:
        >>> group_fingerprint("stripe", ["2", "1"], "35") == group_fingerprint("stripe", ["1", "2"], "35")
        True
    """
    payload = {
        "type": kind,
        "ids": sorted(str(record_id) for record_id in record_ids),
        "account": str(account_id),
    }
    encoded = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def refund_fingerprint(kind: str, registration_id: str, cumulative_minor: int) -> str:
    """
    Refund marker encoding the cumulative refunded total at commit time.

    Example:
        >>> refund_fingerprint("registrations_refund", "R1", 3500)
        'registrations_refund|R1|3500'
    """
    return f"{kind}|{registration_id}|{int(cumulative_minor)}"


class IdempotencyLedger:
    """Append-only (type, fingerprint) records in ``synced_items``."""

    def __init__(self, engine: Engine, clock: Clock = utcnow):
        self.engine = engine
        self.clock = clock

    def has(self, type_: str, fingerprint: str) -> bool:
        table = synced_items_table
        with self.engine.connect() as conn:
            found = conn.execute(
                select(table.c.id)
                .where(table.c.type == type_)
                .where(table.c.fingerprint == fingerprint)
                .limit(1)
            ).first()
        return found is not None

    def marked_in(self, type_: str, fingerprint: str) -> Optional[str]:
        """
        Batch id a fingerprint was marked under.

        Returns:
            The batch id, "" when marked without one, None when not marked
        """
        table = synced_items_table
        with self.engine.connect() as conn:
            row = conn.execute(
                select(table.c.batch_id)
                .where(table.c.type == type_)
                .where(table.c.fingerprint == fingerprint)
                .limit(1)
            ).first()
        if row is None:
            return None
        return row.batch_id or ""

    def mark(self, type_: str, fingerprint: str, batch_id: Optional[str] = None) -> None:
        """Insert if absent; marking twice is a no-op."""
        stmt = upsert(
            synced_items_table,
            ["type", "fingerprint"],
            {
                "type": type_,
                "fingerprint": fingerprint,
                "batch_id": batch_id,
                "created_at": self.clock(),
            },
            do_nothing=True,
            dialect=self.engine.dialect.name,
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)
        logger.debug("Marked synced", type=type_, fingerprint=fingerprint[:16], batch_id=batch_id)
