"""
Lease-based run lock stored in the ``sync_locks`` table.

A lease is free when its owner is empty or it was last renewed more than
``ttl`` seconds ago. Acquisition is one conditional UPDATE ... RETURNING, so
of two concurrent callers at most one gets a row back. A run that dies
without releasing leaves a stale lease that frees itself after the TTL.
"""

from contextlib import contextmanager
from datetime import timedelta
from typing import Iterator, Optional
from uuid import uuid4

import structlog
from sqlalchemy import Engine, or_, update

from .clock import Clock, utcnow
from .db.connector import upsert
from .db.schema import sync_locks_table

logger = structlog.get_logger(__name__)

DEFAULT_LOCK_TTL = 900


class RunLock:
    """Mutual exclusion between runs of the same sync type."""

    def __init__(self, engine: Engine, default_ttl: int = DEFAULT_LOCK_TTL, clock: Clock = utcnow):
        self.engine = engine
        self.default_ttl = default_ttl
        self.clock = clock

    def acquire(self, name: str, ttl: Optional[int] = None, token: Optional[str] = None) -> Optional[str]:
        """
        Try to take the lease ``name``.

        Args:
            name: Lease name (one per sync type)
            ttl: Seconds after which a held lease counts as stale
            token: Existing owner token to re-acquire (renew) a held lease

        Returns:
            The owner token on success, None when another live owner holds it
        """
        ttl = ttl if ttl is not None else self.default_ttl
        token = token or f"{name}_{uuid4().hex}"
        now = self.clock()
        stale_before = now - timedelta(seconds=ttl)
        table = sync_locks_table

        with self.engine.begin() as conn:
            conn.execute(
                upsert(
                    table,
                    "name",
                    {"name": name, "owner": "", "renewed_at": None},
                    do_nothing=True,
                    dialect=self.engine.dialect.name,
                )
            )
            claimed = conn.execute(
                update(table)
                .where(table.c.name == name)
                .where(
                    or_(
                        table.c.owner == "",
                        table.c.owner == token,
                        table.c.renewed_at.is_(None),
                        table.c.renewed_at < stale_before,
                    )
                )
                .values(owner=token, renewed_at=now)
                .returning(table.c.name)
            ).first()

        if claimed is None:
            logger.info("Lock busy", lock=name)
            return None

        logger.debug("Lock acquired", lock=name, ttl=ttl)
        return token

    def renew(self, name: str, token: str, ttl: Optional[int] = None) -> bool:
        """Extend a lease this owner still holds."""
        return self.acquire(name, ttl=ttl, token=token) is not None

    def release(self, name: str, token: str) -> None:
        """Free the lease if ``token`` still owns it; otherwise do nothing."""
        table = sync_locks_table
        with self.engine.begin() as conn:
            conn.execute(
                update(table)
                .where(table.c.name == name)
                .where(table.c.owner == token)
                .values(owner="", renewed_at=self.clock())
            )
        logger.debug("Lock released", lock=name)

    @contextmanager
    def held(self, name: str, ttl: Optional[int] = None) -> Iterator[Optional[str]]:
        """
        Hold the lease for the duration of the block.

        Yields the owner token, or None when the lease is busy (the block
        must then do nothing). The lease is released on every exit path.

        Example:
            >>> with lock.held("batch") as token:
            ...     if token is None:
            ...         return busy_result()
            ...     run()
        """
        token = self.acquire(name, ttl)
        try:
            yield token
        finally:
            if token is not None:
                self.release(name, token)
