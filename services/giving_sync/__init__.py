"""
Giving Sync Service

Reconciles donations, committed batches and event-registration payments from
the giving platform into deposit and refund transactions in the ledger:
- Paginated, retrying HTTPX clients for both APIs
- Lease-based run lock, persisted watermarks and idempotency records
- Fee-exact aggregation into one ledger transaction per group
- Pydantic settings, structlog logging, FastAPI trigger/webhook endpoints
"""

__version__ = "0.1.0"
