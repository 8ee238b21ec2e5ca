"""
Table definitions for the persisted state shared between sync runs.

- fund_mappings:     source fund → ledger class/location (maintained by operators)
- sync_settings:     key/value settings and watermarks, one row per key
- synced_items:      idempotency records, unique on (type, fingerprint)
- sync_locks:        one lease row per lock name
- sync_logs:         append-only run log
- ledger_tokens:     OAuth2 credentials per ledger realm
- refund_watermarks: last seen cumulative refund per registration
"""

from sqlalchemy import (
    BigInteger,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    func,
)

metadata = MetaData()

fund_mappings_table = Table(
    "fund_mappings",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("source_fund_id", String(64), nullable=False, unique=True),
    Column("source_fund_name", String(255), nullable=False, server_default=""),
    Column("ledger_class_name", String(255), nullable=False, server_default=""),
    Column("ledger_location_name", String(255), nullable=False, server_default=""),
    Column("updated_at", DateTime(timezone=True), server_default=func.now()),
)

sync_settings_table = Table(
    "sync_settings",
    metadata,
    Column("setting_key", String(191), primary_key=True),
    Column("setting_value", Text, nullable=False, server_default=""),
    Column("updated_at", DateTime(timezone=True), server_default=func.now()),
)

synced_items_table = Table(
    "synced_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("type", String(32), nullable=False),
    Column("fingerprint", String(255), nullable=False),
    Column("batch_id", String(64)),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    UniqueConstraint("type", "fingerprint", name="uq_synced_items_type_fingerprint"),
)

sync_locks_table = Table(
    "sync_locks",
    metadata,
    Column("name", String(64), primary_key=True),
    Column("owner", String(128), nullable=False, server_default=""),
    Column("renewed_at", DateTime(timezone=True)),
)

sync_logs_table = Table(
    "sync_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("sync_type", String(32), nullable=False),
    Column("started_at", DateTime(timezone=True), nullable=False),
    Column("finished_at", DateTime(timezone=True)),
    Column("window_start", DateTime(timezone=True)),
    Column("window_end", DateTime(timezone=True)),
    Column("status", String(16), nullable=False, server_default="success"),
    Column("fetched_count", Integer, nullable=False, server_default="0"),
    Column("committed_count", Integer, nullable=False, server_default="0"),
    Column("skipped_count", Integer, nullable=False, server_default="0"),
    Column("error_count", Integer, nullable=False, server_default="0"),
    Column("summary", Text),
    Column("details", Text),
)

ledger_tokens_table = Table(
    "ledger_tokens",
    metadata,
    Column("realm_id", String(64), primary_key=True),
    Column("access_token", Text, nullable=False),
    Column("refresh_token", Text),
    Column("token_type", String(32)),
    Column("expires_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True), server_default=func.now()),
)

refund_watermarks_table = Table(
    "refund_watermarks",
    metadata,
    Column("sync_type", String(32), primary_key=True),
    Column("registration_id", String(64), primary_key=True),
    Column("refunded_cents", BigInteger, nullable=False, server_default="0"),
    Column("updated_at", DateTime(timezone=True)),
)
