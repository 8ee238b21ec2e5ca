"""
Append-only run log in ``sync_logs``.

An entry is created when a run starts (status optimistically ``success``)
and finalized when it ends, so a run killed mid-way still leaves a trace.
"""

import json
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import Engine, insert, select, update

from .clock import Clock, as_utc, utcnow
from .db.schema import sync_logs_table
from .models import Window

logger = structlog.get_logger(__name__)


class RunLogger:
    """Writes and reads ``sync_logs`` entries."""

    def __init__(self, engine: Engine, clock: Clock = utcnow):
        self.engine = engine
        self.clock = clock

    def start(self, sync_type: str, window: Optional[Window] = None) -> int:
        """Create the entry for a new run and return its id."""
        values: Dict[str, Any] = {
            "sync_type": sync_type,
            "started_at": self.clock(),
            "status": "success",
        }
        if window is not None:
            values.update(window_start=window.start, window_end=window.end)

        with self.engine.begin() as conn:
            result = conn.execute(insert(sync_logs_table).values(**values))
            run_id = result.inserted_primary_key[0]

        logger.debug("Run log entry created", run_id=run_id, sync_type=sync_type)
        return run_id

    def finish(
        self,
        run_id: int,
        status: str,
        counts: Optional[Dict[str, int]] = None,
        message: str = "",
        errors: Optional[List[Dict[str, Any]]] = None,
        window: Optional[Window] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Finalize an entry with its terminal status, counts and errors."""
        counts = counts or {}
        values: Dict[str, Any] = {
            "finished_at": self.clock(),
            "status": status,
            "fetched_count": counts.get("fetched", 0),
            "committed_count": counts.get("committed", 0),
            "skipped_count": counts.get("skipped", 0),
            "error_count": len(errors or []),
            "summary": message,
            "details": json.dumps({"errors": errors or [], **(details or {})}, default=str),
        }
        if window is not None:
            values.update(window_start=window.start, window_end=window.end)

        with self.engine.begin() as conn:
            conn.execute(update(sync_logs_table).where(sync_logs_table.c.id == run_id).values(**values))

        logger.debug("Run log entry finalized", run_id=run_id, status=status)

    def recent(self, limit: int = 20, sync_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """Most recent entries first."""
        table = sync_logs_table
        stmt = select(table).order_by(table.c.started_at.desc(), table.c.id.desc()).limit(limit)
        if sync_type is not None:
            stmt = stmt.where(table.c.sync_type == sync_type)

        with self.engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()

        entries = []
        for row in rows:
            entry = dict(row)
            for column in ("started_at", "finished_at", "window_start", "window_end"):
                value = as_utc(entry.get(column))
                entry[column] = value.isoformat() if value else None
            entry["details"] = json.loads(entry["details"]) if entry.get("details") else {}
            entries.append(entry)
        return entries
