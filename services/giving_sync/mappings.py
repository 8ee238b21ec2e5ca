"""
Fund → ledger class/location mappings, maintained by operators.

The sync engine only reads this table; ``upsert`` and ``sync_names`` back the
operator CLI.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import Engine, select, update

from .clock import Clock, utcnow
from .db.connector import upsert
from .db.schema import fund_mappings_table

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CategoryMapping:
    category_id: str
    display_name: str = ""
    class_name: str = ""
    location_name: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "category_id": self.category_id,
            "display_name": self.display_name,
            "class_name": self.class_name,
            "location_name": self.location_name,
        }


class MappingTable:
    """Read/write access to ``fund_mappings``."""

    def __init__(self, engine: Engine, clock: Clock = utcnow):
        self.engine = engine
        self.clock = clock

    def load(self) -> Dict[str, CategoryMapping]:
        """All mappings keyed by category id."""
        table = fund_mappings_table
        with self.engine.connect() as conn:
            rows = conn.execute(select(table).order_by(table.c.source_fund_name)).mappings().all()

        mappings = {
            str(row["source_fund_id"]): CategoryMapping(
                category_id=str(row["source_fund_id"]),
                display_name=row["source_fund_name"] or "",
                class_name=(row["ledger_class_name"] or "").strip(),
                location_name=(row["ledger_location_name"] or "").strip(),
            )
            for row in rows
        }
        logger.debug("Loaded fund mappings", count=len(mappings))
        return mappings

    def get(self, category_id: str) -> Optional[CategoryMapping]:
        return self.load().get(str(category_id))

    def upsert(self, mapping: CategoryMapping) -> None:
        stmt = upsert(
            fund_mappings_table,
            "source_fund_id",
            {
                "source_fund_id": mapping.category_id,
                "source_fund_name": mapping.display_name,
                "ledger_class_name": mapping.class_name,
                "ledger_location_name": mapping.location_name,
                "updated_at": self.clock(),
            },
            dialect=self.engine.dialect.name,
        )
        with self.engine.begin() as conn:
            conn.execute(stmt)
        logger.info("Fund mapping saved", category_id=mapping.category_id, class_name=mapping.class_name)

    def sync_names(self, funds: Iterable[Dict[str, Any]]) -> List[str]:
        """
        Refresh display names from Source fund resources.

        Funds without a mapping row get one with empty class/location so
        operators can fill them in. Existing class/location values are kept.

        Returns:
            Ids of funds that were newly added
        """
        existing = self.load()
        added: List[str] = []
        table = fund_mappings_table

        with self.engine.begin() as conn:
            for fund in funds:
                fund_id = fund.get("id")
                if fund_id is None:
                    continue
                fund_id = str(fund_id)
                name = str((fund.get("attributes") or {}).get("name") or "")

                if fund_id in existing:
                    if existing[fund_id].display_name != name:
                        conn.execute(
                            update(table)
                            .where(table.c.source_fund_id == fund_id)
                            .values(source_fund_name=name, updated_at=self.clock())
                        )
                    continue

                conn.execute(
                    upsert(
                        table,
                        "source_fund_id",
                        {
                            "source_fund_id": fund_id,
                            "source_fund_name": name,
                            "ledger_class_name": "",
                            "ledger_location_name": "",
                            "updated_at": self.clock(),
                        },
                        do_nothing=True,
                        dialect=self.engine.dialect.name,
                    )
                )
                added.append(fund_id)

        logger.info("Fund names synced", added=len(added), total=len(existing) + len(added))
        return added
