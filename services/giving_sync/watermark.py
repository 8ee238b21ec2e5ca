"""
Persisted key/value settings, per-sync-type watermarks and refund watermarks.

Watermarks mark the boundary of already-processed time for each sync type.
They are read and written only while the run lock for that type is held.
"""

from datetime import datetime
from typing import Dict, Optional

import structlog
from sqlalchemy import Engine, delete, select

from .clock import Clock, as_utc, parse_iso, utcnow
from .db.connector import upsert
from .db.schema import refund_watermarks_table, sync_settings_table
from .models import SyncType

logger = structlog.get_logger(__name__)

WATERMARK_KEYS: Dict[SyncType, str] = {
    SyncType.STRIPE: "last_stripe_completed_at",
    SyncType.BATCH: "last_batch_committed_at",
    SyncType.REGISTRATIONS: "last_registrations_paid_at",
}


class SettingsStore:
    """The ``sync_settings`` key/value table, one row per key."""

    def __init__(self, engine: Engine, clock: Clock = utcnow):
        self.engine = engine
        self.clock = clock

    def get(self, key: str) -> Optional[str]:
        table = sync_settings_table
        with self.engine.connect() as conn:
            return conn.execute(
                select(table.c.setting_value).where(table.c.setting_key == key)
            ).scalar_one_or_none()

    def set(self, key: str, value: str) -> None:
        """Atomic upsert of one key."""
        stmt = upsert(
            sync_settings_table,
            "setting_key",
            {"setting_key": key, "setting_value": value, "updated_at": self.clock()},
            dialect=self.engine.dialect.name,
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)


class WatermarkError(ValueError):
    """Raised when a watermark would move backwards without an explicit reset."""


class WatermarkStore:
    """Last successfully processed boundary per sync type."""

    def __init__(self, store: SettingsStore):
        self.store = store

    def get(self, sync_type: SyncType) -> Optional[datetime]:
        key = WATERMARK_KEYS[sync_type]
        raw = self.store.get(key)
        if raw is None:
            return None
        value = parse_iso(raw)
        if value is None:
            logger.warning("Ignoring unparsable watermark", key=key, value=raw)
        return value

    def set(self, sync_type: SyncType, value: datetime, allow_backward: bool = False) -> None:
        """
        Persist the watermark.

        Raises:
            WatermarkError: if ``value`` is earlier than the stored watermark
                and ``allow_backward`` is not set
        """
        value = as_utc(value)
        current = self.get(sync_type)
        if current is not None and value < current and not allow_backward:
            raise WatermarkError(
                f"Refusing to move {sync_type.value} watermark back from "
                f"{current.isoformat()} to {value.isoformat()}"
            )
        self.store.set(WATERMARK_KEYS[sync_type], value.isoformat())
        logger.info("Watermark advanced", sync_type=sync_type.value, watermark=value.isoformat())


class RefundWatermarkStore:
    """Last observed cumulative refund per registration, in minor units."""

    def __init__(self, engine: Engine, clock: Clock = utcnow):
        self.engine = engine
        self.clock = clock

    def get(self, sync_type: SyncType, registration_id: str) -> Optional[int]:
        table = refund_watermarks_table
        with self.engine.connect() as conn:
            return conn.execute(
                select(table.c.refunded_cents)
                .where(table.c.sync_type == sync_type.value)
                .where(table.c.registration_id == registration_id)
            ).scalar_one_or_none()

    def set(self, sync_type: SyncType, registration_id: str, refunded_cents: int) -> None:
        stmt = upsert(
            refund_watermarks_table,
            ["sync_type", "registration_id"],
            {
                "sync_type": sync_type.value,
                "registration_id": registration_id,
                "refunded_cents": refunded_cents,
                "updated_at": self.clock(),
            },
            dialect=self.engine.dialect.name,
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)

    def prune(self, before: datetime) -> int:
        """Delete rows not updated since ``before``. Returns rows removed."""
        table = refund_watermarks_table
        with self.engine.begin() as conn:
            result = conn.execute(delete(table).where(table.c.updated_at < before))
        logger.info("Pruned refund watermarks", before=before.isoformat(), removed=result.rowcount)
        return result.rowcount
