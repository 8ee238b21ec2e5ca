"""
Sync orchestrator: drives one run of a sync type end to end.

Pipeline (fixed order, lock held throughout):
1. Acquire the run lock (busy → no-op result)
2. Resolve the window from the watermark (first run → initialize, no backfill)
3. Look up ledger accounts (configuration errors abort before any commit)
4. Fetch records from the Source API (failure aborts, watermark unchanged)
5. Aggregate records into groups
6. Per group: fingerprint check → build → commit → mark (continue on error)
7. Advance the watermark to the window end, finalize the run log, notify

Three variants share the pipeline and differ in what they fetch, how they
group and how they fingerprint:
- OnlineDonationSync ("stripe"): card/ACH donations by completed_at
- BatchSync ("batch"): cash/check donations of committed batches
- RegistrationSync ("registrations"): event payments plus refund deltas
"""

import json
from dataclasses import dataclass, field, replace
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy import Engine

from .aggregate import AggregationResult, aggregate, batch_period, date_period
from .builder import (
    AccountRefs,
    RefundRefs,
    build_deposit,
    build_memo,
    build_refund,
    resolve_group_refs,
    truncate_memo,
)
from .clock import Clock, utcnow
from .errors import ConfigurationError, ErrorKind, ErrorRecord, LockLostError, SyncError
from .idempotency import IdempotencyLedger, group_fingerprint, item_fingerprint, refund_fingerprint
from .lock import RunLock
from .mappings import CategoryMapping, MappingTable
from .models import PaymentInstrument, RawRecord, SkippedAmount, SyncType, TransactionGroup, Window
from .notify import NOTIFY_STATUSES, LogNotifier, Notifier, format_run_summary
from .parser import (
    included_designations,
    index_included,
    is_settled,
    is_settled_online,
    parse_batch,
    parse_designations,
    parse_donation,
    parse_registration_payment,
    refunded_total,
)
from .run_log import RunLogger
from .settings import GivingSyncSettings
from .watermark import RefundWatermarkStore, SettingsStore, WatermarkStore

logger = structlog.get_logger(__name__)

REFUND_KIND = "registrations_refund"
GROUP_KIND = "batch_group"


class RunState(str, Enum):
    LOCKING = "locking"
    WINDOW_RESOLVED = "window_resolved"
    FETCHED = "fetched"
    AGGREGATED = "aggregated"
    COMMITTING = "committing"
    SETTLED = "settled"
    ABORTED = "aborted"


class RunStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"
    BUSY = "busy"


@dataclass
class RunOptions:
    """Operator overrides for one run."""

    days: int = 7
    reset_window: bool = False
    force_refunds: bool = False

    @classmethod
    def coerce(
        cls,
        days: Any = None,
        reset_window: Any = False,
        force_refunds: Any = False,
        default_days: int = 7,
        max_days: Optional[int] = None,
    ) -> "RunOptions":
        """
        Build options from loosely typed input (query strings, CLI flags).

        ``days`` becomes a positive int (default when missing or invalid),
        upper-clamped to ``max_days`` when given.

        Examples:
            >>> RunOptions.coerce(days="120", max_days=90).days
            90
            >>> RunOptions.coerce(days="-3").days
            7
            >>> RunOptions.coerce(reset_window="1").reset_window
            True
        """
        try:
            value = int(days) if days not in (None, "") else default_days
        except (TypeError, ValueError):
            value = default_days
        if value < 1:
            value = default_days
        if max_days is not None:
            value = min(value, max_days)
        return cls(days=value, reset_window=_truthy(reset_window), force_refunds=_truthy(force_refunds))


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


@dataclass
class RunResult:
    """Outcome of one run, reported to the operator and stored as summary."""

    sync_type: str
    status: RunStatus = RunStatus.SUCCESS
    state: RunState = RunState.LOCKING
    window: Optional[Window] = None
    initialized: bool = False
    preview: bool = False
    run_id: Optional[int] = None
    fetched: int = 0
    committed: int = 0
    skipped: int = 0
    skipped_offline: int = 0
    duplicates: int = 0
    skipped_unmapped: List[SkippedAmount] = field(default_factory=list)
    skipped_records: List[SkippedAmount] = field(default_factory=list)
    errors: List[ErrorRecord] = field(default_factory=list)
    transactions: List[Dict[str, Any]] = field(default_factory=list)
    message: str = ""

    @property
    def processed(self) -> int:
        return self.committed

    @property
    def skipped_total(self) -> int:
        return (
            self.skipped
            + self.duplicates
            + self.skipped_offline
            + len(self.skipped_unmapped)
            + len(self.skipped_records)
        )

    def settle_status(self) -> RunStatus:
        """Terminal status from errors and commits (busy is set by the caller)."""
        if not self.errors:
            self.status = RunStatus.SUCCESS
        elif self.committed > 0:
            self.status = RunStatus.PARTIAL
        else:
            self.status = RunStatus.ERROR
        return self.status

    def counts(self) -> Dict[str, int]:
        return {"fetched": self.fetched, "committed": self.committed, "skipped": self.skipped_total}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "sync_type": self.sync_type,
            "status": self.status.value,
            "state": self.state.value,
            "initialized": self.initialized,
            "preview": self.preview,
            "run_id": self.run_id,
            "window": self.window.to_dict() if self.window else None,
            "fetched": self.fetched,
            "processed": self.processed,
            "committed": self.committed,
            "skipped": self.skipped,
            "skipped_offline": self.skipped_offline,
            "duplicates": self.duplicates,
            "skipped_unmapped": [s.to_dict() for s in self.skipped_unmapped],
            "skipped_records": [s.to_dict() for s in self.skipped_records],
            "errors": [e.to_dict() for e in self.errors],
            "transactions": self.transactions,
            "message": self.message,
        }


@dataclass
class RunContext:
    """Mutable state of one run, passed through the pipeline steps."""

    options: RunOptions
    result: RunResult
    window: Window
    ledger: Any = None
    accounts: Optional[AccountRefs] = None
    preview: bool = False
    lock_token: Optional[str] = None
    extras: Dict[str, Any] = field(default_factory=dict)


LedgerFactory = Callable[[], Any]


def is_fatal(error: SyncError) -> bool:
    """Errors that abort the run instead of being collected per group."""
    return error.kind == ErrorKind.AUTHENTICATION or isinstance(error, LockLostError)


class SyncOrchestrator:
    """
    Shared run pipeline. Subclasses implement setup/fetch/commit specifics.

    Args:
        config: Service settings
        engine: SQLAlchemy engine holding the shared state tables
        source: SourceClient (or a test double with the same methods)
        ledger_factory: Returns a ledger client for one run
        notifier: Channel invoked on partial/error outcomes
        clock: Current UTC time (injected in tests)
    """

    sync_type: SyncType
    kind: str
    memo_prefix: str = ""
    clamp_days: bool = True

    def __init__(
        self,
        config: GivingSyncSettings,
        engine: Engine,
        source,
        ledger_factory: LedgerFactory,
        notifier: Optional[Notifier] = None,
        clock: Clock = utcnow,
    ):
        self.config = config
        self.engine = engine
        self.source = source
        self.ledger_factory = ledger_factory
        self.notifier = notifier or LogNotifier()
        self.clock = clock

        self.lock = RunLock(engine, default_ttl=config.lock_ttl_seconds, clock=clock)
        self.settings_store = SettingsStore(engine, clock=clock)
        self.watermarks = WatermarkStore(self.settings_store)
        self.idempotency = IdempotencyLedger(engine, clock=clock)
        self.mapping_table = MappingTable(engine, clock=clock)
        self.run_logger = RunLogger(engine, clock=clock)

    @property
    def name(self) -> str:
        return self.sync_type.value

    @property
    def summary_key(self) -> str:
        return f"last_{self.name}_sync_summary"

    def normalize_options(self, options: Optional[RunOptions]) -> RunOptions:
        options = options or RunOptions(days=self.config.default_backfill_days)
        max_days = self.config.max_backfill_days if self.clamp_days else None
        return RunOptions.coerce(
            options.days,
            options.reset_window,
            options.force_refunds,
            default_days=self.config.default_backfill_days,
            max_days=max_days,
        )

    def account_name(self, key: str) -> str:
        """Account/class/location name: ``sync_settings`` override, then config."""
        override = self.settings_store.get(key)
        return override if override else getattr(self.config, key)

    def _set_state(self, result: RunResult, state: RunState) -> None:
        result.state = state
        logger.info("Run state", sync_type=self.name, state=state.value)

    # Public entry points

    def run(self, options: Optional[RunOptions] = None) -> RunResult:
        """
        Execute one run under the run lock.

        Returns:
            RunResult; status ``busy`` when another run holds the lock
        """
        options = self.normalize_options(options)
        result = RunResult(sync_type=self.name)

        with self.lock.held(self.name) as token:
            if token is None:
                result.status = RunStatus.BUSY
                result.message = f"Another {self.name} sync is running"
                logger.info("Sync busy", sync_type=self.name)
                return result

            result.run_id = self.run_logger.start(self.name)
            with structlog.contextvars.bound_contextvars(sync_type=self.name, run_id=result.run_id):
                try:
                    self._run_locked(options, result, token)
                except SyncError as e:
                    self._set_state(result, RunState.ABORTED)
                    result.errors.append(e.to_record(stage="run"))
                    result.message = f"Aborted: {e.message}"
                    logger.error("Sync aborted", error=str(e), error_kind=e.kind.value)
                except Exception as e:
                    self._set_state(result, RunState.ABORTED)
                    result.errors.append(ErrorRecord.from_exception(e, stage="run"))
                    result.settle_status()
                    self._finalize(result)
                    logger.exception("Sync crashed")
                    raise

                result.settle_status()
                self._finalize(result)

        self._notify(result)
        return result

    def preview(self, options: Optional[RunOptions] = None) -> RunResult:
        """
        Window, fetch, aggregate and build without writes or commits.

        No lock is taken, no watermark moves and nothing is marked; the
        would-be transactions are returned in ``result.transactions``.
        """
        options = self.normalize_options(options)
        result = RunResult(sync_type=self.name, preview=True)
        now = self.clock()
        watermark = self.watermarks.get(self.sync_type)
        if watermark is None or options.reset_window:
            start = now - timedelta(days=options.days)
        else:
            start = min(watermark, now)

        ctx = RunContext(options=options, result=result, window=Window(start, now), preview=True)
        result.window = ctx.window
        self._set_state(ctx.result, RunState.WINDOW_RESOLVED)

        try:
            self._pipeline(ctx)
        except SyncError as e:
            result.state = RunState.ABORTED
            result.errors.append(e.to_record(stage="preview"))
        result.settle_status()
        return result

    # Pipeline

    def _run_locked(self, options: RunOptions, result: RunResult, token: str) -> None:
        now = self.clock()
        watermark = self.watermarks.get(self.sync_type)

        if watermark is None and not options.reset_window:
            self.watermarks.set(self.sync_type, now)
            result.initialized = True
            result.window = Window(now, now)
            result.message = "Watermark initialized to now; no backfill performed"
            self._set_state(result, RunState.SETTLED)
            logger.info("Watermark initialized", sync_type=self.name, watermark=now.isoformat())
            return

        start = now - timedelta(days=options.days) if options.reset_window else watermark
        window = Window(min(start, now), now)
        result.window = window
        ctx = RunContext(options=options, result=result, window=window, lock_token=token)
        self._set_state(ctx.result, RunState.WINDOW_RESOLVED)

        self._pipeline(ctx)

    def _pipeline(self, ctx: RunContext) -> None:
        result = ctx.result

        ctx.ledger = self.ledger_factory()
        ctx.accounts = self.setup(ctx)

        records = self.fetch(ctx)
        self._set_state(ctx.result, RunState.FETCHED)

        try:
            aggregation = aggregate(records, self.mappings(ctx, records), self.key_fn)
            result.skipped_unmapped.extend(aggregation.skipped_unmapped)
            result.skipped_records.extend(aggregation.skipped_records)
            self._set_state(ctx.result, RunState.AGGREGATED)

            self._set_state(ctx.result, RunState.COMMITTING)
            self.commit(ctx, aggregation)
            self.after_commit(ctx)
        finally:
            # Once fetch completed the window is consumed whatever the group outcomes
            if not ctx.preview:
                self._advance_watermark(ctx)

        self._set_state(ctx.result, RunState.SETTLED)
        result.message = (
            f"{result.committed} committed, {result.duplicates} already synced, "
            f"{len(result.errors)} errors"
        )

    def _advance_watermark(self, ctx: RunContext) -> None:
        current = self.watermarks.get(self.sync_type)
        if current is not None and ctx.window.end < current and not ctx.options.reset_window:
            logger.warning(
                "Watermark ahead of window end, left unchanged",
                watermark=current.isoformat(),
                window_end=ctx.window.end.isoformat(),
            )
            return
        self.watermarks.set(self.sync_type, ctx.window.end, allow_backward=ctx.options.reset_window)

    def _finalize(self, result: RunResult) -> None:
        summary = result.to_dict()
        summary["ts"] = self.clock().isoformat()
        self.run_logger.finish(
            result.run_id,
            result.status.value,
            counts=result.counts(),
            message=result.message,
            errors=[e.to_dict() for e in result.errors],
            window=result.window,
            details={
                "skipped_unmapped": summary["skipped_unmapped"],
                "transactions": summary["transactions"],
            },
        )
        self.settings_store.set(self.summary_key, json.dumps(summary, default=str))
        logger.info(
            "Sync finished",
            sync_type=self.name,
            status=result.status.value,
            fetched=result.fetched,
            committed=result.committed,
            errors=len(result.errors),
        )

    def _notify(self, result: RunResult) -> None:
        if result.status.value not in NOTIFY_STATUSES:
            return
        subject, body = format_run_summary(result.to_dict())
        self.notifier.notify(subject, body)

    def _renew_lock(self, ctx: RunContext) -> None:
        if ctx.preview or ctx.lock_token is None:
            return
        if not self.lock.renew(self.name, ctx.lock_token):
            raise LockLostError("Run lock lost during commit", retryable=True)

    # Variant hooks

    key_fn = staticmethod(date_period)

    def setup(self, ctx: RunContext) -> AccountRefs:
        """Resolve the deposit, income and fee accounts; abort if any is missing."""
        ledger = ctx.ledger
        names = {
            "deposit": self.account_name("deposit_bank_account_name"),
            "income": self.account_name("income_account_name"),
            "fee": self.account_name("fee_account_name"),
        }
        deposit = ledger.get_account(names["deposit"])
        income = ledger.get_account(names["income"], fully_qualified=True)
        fee = ledger.get_account(names["fee"], fully_qualified=True)
        self._require_accounts(names, deposit=deposit, income=income, fee=fee)
        return AccountRefs(deposit_account=deposit, income_account=income, fee_account=fee)

    @staticmethod
    def _require_accounts(names: Dict[str, str], **resources) -> None:
        missing = [f"{label} account not found: {names[label]}" for label, res in resources.items() if res is None]
        if missing:
            raise ConfigurationError("; ".join(missing))

    def fetch(self, ctx: RunContext) -> List[RawRecord]:
        raise NotImplementedError

    def mappings(self, ctx: RunContext, records: List[RawRecord]) -> Dict[str, CategoryMapping]:
        return self.mapping_table.load()

    def txn_date(self, ctx: RunContext, group: TransactionGroup) -> str:
        return group.key.period

    def group_fingerprint(self, ctx: RunContext, group: TransactionGroup) -> str:
        return group_fingerprint(self.kind, group.record_ids, ctx.accounts.deposit_account_id)

    def commit(self, ctx: RunContext, aggregation: AggregationResult) -> None:
        """Commit each group once, guarded by its group fingerprint."""
        for group in aggregation.groups:
            fingerprint = self.group_fingerprint(ctx, group)
            if self.idempotency.has(self.kind, fingerprint):
                ctx.result.duplicates += 1
                logger.info("Group already synced", group=group.key.label(), fingerprint=fingerprint[:16])
                continue

            if self._commit_group(ctx, group) and not ctx.preview:
                self.idempotency.mark(self.kind, fingerprint)

    def _commit_group(self, ctx: RunContext, group: TransactionGroup) -> bool:
        """
        Build and commit one group. Per-group errors are collected.

        Returns:
            True if a transaction was committed (or would be, in preview)

        Raises:
            SyncError: authentication failures, which abort the run
        """
        result = ctx.result
        label = group.key.label()
        try:
            refs = resolve_group_refs(ctx.ledger, group, ctx.accounts)
            memo = build_memo(self.memo_prefix, group)
            payload = build_deposit(group, refs, memo, txn_date=self.txn_date(ctx, group))
            if payload is None:
                result.skipped += 1
                return False

            entry = {
                "group": label,
                "kind": "deposit",
                "records": list(group.record_ids),
                "gross_cents": group.total_gross,
                "fee_cents": group.total_fee,
            }
            if ctx.preview:
                entry["payload"] = payload
                result.transactions.append(entry)
                return True

            self._renew_lock(ctx)
            committed = ctx.ledger.create_transaction("deposit", payload)
            entry["transaction_id"] = committed.id
            result.transactions.append(entry)
            result.committed += 1
            return True
        except SyncError as e:
            if is_fatal(e):
                raise
            result.errors.append(e.to_record(group=label))
            logger.error("Group failed", group=label, error=str(e), error_kind=e.kind.value)
            return False

    def after_commit(self, ctx: RunContext) -> None:
        """Hook for work after the group commits (refunds)."""


class OnlineDonationSync(SyncOrchestrator):
    """Succeeded card/ACH donations grouped by completed date and location."""

    sync_type = SyncType.STRIPE
    kind = "stripe"
    memo_prefix = "Online giving"
    clamp_days = False

    def fetch(self, ctx: RunContext) -> List[RawRecord]:
        resources, included = self.source.list_donations(ctx.window)
        index = index_included(included)
        records: List[RawRecord] = []

        for resource in resources:
            record = parse_donation(resource, included_designations(resource, index))
            if record is None or not ctx.window.contains(record.occurred_at):
                continue
            ctx.result.fetched += 1
            if not is_settled(record):
                continue
            if not is_settled_online(record):
                ctx.result.skipped_offline += 1
                continue
            records.append(record)

        logger.info("Fetched online donations", sync_type=self.name, fetched=ctx.result.fetched, usable=len(records))
        return records


class BatchSync(SyncOrchestrator):
    """
    Cash/check donations from committed batches, one deposit per batch and location.

    Idempotency is per donation and per group. A donation is marked once every
    group it contributes to has committed; marked donations resurfacing in a
    different batch are skipped. Within their own batch they stay in the
    aggregation so group fingerprints are stable across retries.
    """

    sync_type = SyncType.BATCH
    kind = "batch"
    memo_prefix = "Batch deposit"
    key_fn = staticmethod(batch_period)

    def setup(self, ctx: RunContext) -> AccountRefs:
        ledger = ctx.ledger
        names = {
            "deposit": self.account_name("deposit_bank_account_name"),
            "income": self.account_name("income_account_name"),
        }
        deposit = ledger.get_account(names["deposit"])
        income = ledger.get_account(names["income"], fully_qualified=True)
        self._require_accounts(names, deposit=deposit, income=income)
        return AccountRefs(deposit_account=deposit, income_account=income)

    def fetch(self, ctx: RunContext) -> List[RawRecord]:
        batches = {}
        for resource in self.source.list_committed_batches(ctx.window):
            batch = parse_batch(resource)
            if batch is not None and ctx.window.contains(batch["committed_at"]):
                batches[batch["id"]] = batch
        ctx.extras["batches"] = batches

        records: List[RawRecord] = []
        for batch_id, batch in batches.items():
            for resource in self.source.list_batch_donations(batch_id):
                donation_id = resource.get("id")
                if donation_id is None:
                    continue
                payment_method = PaymentInstrument.parse((resource.get("attributes") or {}).get("payment_method"))
                if payment_method not in (PaymentInstrument.CASH, PaymentInstrument.CHECK):
                    continue

                ctx.result.fetched += 1
                marked_in = self.idempotency.marked_in(self.kind, item_fingerprint(donation_id))
                if marked_in is not None and marked_in != batch_id:
                    ctx.result.duplicates += 1
                    continue

                allocations = parse_designations(self.source.list_donation_designations(str(donation_id)))
                record = parse_donation(
                    resource,
                    allocations,
                    batch_id=batch_id,
                    occurred_at=batch["committed_at"],
                )
                if record is None:
                    continue
                records.append(replace(record, attributes={**record.attributes, "batch_name": batch["name"]}))

        logger.info("Fetched batch donations", batches=len(batches), donations=len(records))
        return records

    def txn_date(self, ctx: RunContext, group: TransactionGroup) -> str:
        batch = ctx.extras.get("batches", {}).get(group.key.period)
        if batch is None:
            return group.key.period
        return batch["committed_at"].date().isoformat()

    def commit(self, ctx: RunContext, aggregation: AggregationResult) -> None:
        """
        Commit each batch/location group, then mark its donations.

        A group committed in a run where a sibling group failed matches its
        fingerprint on the retry and is not booked again.
        """
        pending: Dict[str, int] = {}
        for group in aggregation.groups:
            for record_id in group.record_ids:
                pending[record_id] = pending.get(record_id, 0) + 1

        for group in aggregation.groups:
            fingerprint = self.group_fingerprint(ctx, group)
            if self.idempotency.has(GROUP_KIND, fingerprint):
                ctx.result.duplicates += 1
                logger.info("Batch group already synced", group=group.key.label())
            elif not self._commit_group(ctx, group):
                continue
            elif not ctx.preview:
                self.idempotency.mark(GROUP_KIND, fingerprint, batch_id=group.key.period)

            if ctx.preview:
                continue
            for record_id in group.record_ids:
                pending[record_id] -= 1
                if pending[record_id] == 0:
                    self.idempotency.mark(self.kind, item_fingerprint(record_id), batch_id=group.key.period)


class RegistrationSync(SyncOrchestrator):
    """
    Event registration payments plus refund deltas.

    Payments map to the configured registration class/location. Refunds are
    booked when a registration's cumulative refunded total grows beyond the
    last total observed; the refund fingerprint encodes the cumulative total.
    """

    sync_type = SyncType.REGISTRATIONS
    kind = "registrations"
    memo_prefix = "Registrations"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.refund_watermarks = RefundWatermarkStore(self.engine, clock=self.clock)

    def setup(self, ctx: RunContext) -> AccountRefs:
        ledger = ctx.ledger
        names = {
            "deposit": self.account_name("registration_deposit_account_name"),
            "income": self.account_name("registration_income_account_name"),
            "fee": self.account_name("fee_account_name"),
            "refund": self.account_name("refund_account_name"),
        }
        deposit = ledger.get_account(names["deposit"])
        income = ledger.get_account(names["income"], fully_qualified=True)
        fee = ledger.get_account(names["fee"], fully_qualified=True)
        refund = ledger.get_account(names["refund"], fully_qualified=True)
        self._require_accounts(names, deposit=deposit, income=income, fee=fee, refund=refund)

        class_name = self.account_name("registration_class_name")
        location_name = self.account_name("registration_location_name")
        class_ = ledger.get_class(class_name) if class_name else None
        if class_name and class_ is None:
            raise ConfigurationError(f"Class not found: {class_name}")
        department = ledger.get_department(location_name) if location_name else None
        if location_name and department is None:
            raise ConfigurationError(f"Location (Department) not found: {location_name}")

        ctx.extras["class_name"] = class_name
        ctx.extras["location_name"] = location_name
        ctx.extras["refund_refs"] = RefundRefs(
            bank_account=deposit,
            refund_account=refund,
            class_=class_,
            department=department,
        )
        return AccountRefs(deposit_account=deposit, income_account=income, fee_account=fee)

    def fetch(self, ctx: RunContext) -> List[RawRecord]:
        resources, included = self.source.list_registration_payments(ctx.window)
        index = index_included(included)
        records: List[RawRecord] = []
        for resource in resources:
            record = parse_registration_payment(resource, index)
            if record is None or not ctx.window.contains(record.occurred_at):
                continue
            ctx.result.fetched += 1
            records.append(record)

        ctx.extras["registrations"] = self.source.list_registrations(ctx.window.start)
        logger.info(
            "Fetched registration payments",
            payments=len(records),
            registrations=len(ctx.extras["registrations"]),
        )
        return records

    def mappings(self, ctx: RunContext, records: List[RawRecord]) -> Dict[str, CategoryMapping]:
        """Every event maps to the configured registration class and location."""
        mappings: Dict[str, CategoryMapping] = {}
        for record in records:
            for allocation in record.allocations:
                mappings[allocation.category_id] = CategoryMapping(
                    category_id=allocation.category_id,
                    display_name=str(record.attributes.get("event_name") or allocation.category_id),
                    class_name=ctx.extras.get("class_name", ""),
                    location_name=ctx.extras.get("location_name", ""),
                )
        return mappings

    def after_commit(self, ctx: RunContext) -> None:
        for registration in ctx.extras.get("registrations", []):
            registration_id = registration.get("id")
            if registration_id is None:
                continue
            try:
                self._book_refund(ctx, str(registration_id), refunded_total(registration))
            except SyncError as e:
                if is_fatal(e):
                    raise
                ctx.result.errors.append(e.to_record(registration_id=str(registration_id)))
                logger.error("Refund failed", registration_id=registration_id, error=str(e))

    def _book_refund(self, ctx: RunContext, registration_id: str, cumulative: int) -> None:
        if cumulative <= 0:
            return

        stored = self.refund_watermarks.get(self.sync_type, registration_id)
        prior = 0 if ctx.options.force_refunds else (stored or 0)
        if cumulative <= prior:
            return

        fingerprint = refund_fingerprint(REFUND_KIND, registration_id, cumulative)
        if self.idempotency.has(REFUND_KIND, fingerprint):
            ctx.result.duplicates += 1
            if not ctx.preview and stored != cumulative:
                self.refund_watermarks.set(self.sync_type, registration_id, cumulative)
            return

        delta = cumulative - prior
        memo = truncate_memo(
            f"{self.memo_prefix} refund | Registration {registration_id} | "
            f"Refunded total {cumulative} cents (previously {prior})"
        )
        payload = build_refund(
            registration_id,
            delta,
            cumulative,
            ctx.extras["refund_refs"],
            memo,
            txn_date=ctx.window.end.date().isoformat(),
        )
        entry = {
            "kind": "purchase",
            "registration_id": registration_id,
            "refund_cents": delta,
            "cumulative_cents": cumulative,
        }
        if ctx.preview:
            entry["payload"] = payload
            ctx.result.transactions.append(entry)
            return

        self._renew_lock(ctx)
        committed = ctx.ledger.create_transaction("purchase", payload)
        self.idempotency.mark(REFUND_KIND, fingerprint)
        self.refund_watermarks.set(self.sync_type, registration_id, cumulative)
        entry["transaction_id"] = committed.id
        ctx.result.transactions.append(entry)
        ctx.result.committed += 1


ORCHESTRATORS = {
    SyncType.STRIPE: OnlineDonationSync,
    SyncType.BATCH: BatchSync,
    SyncType.REGISTRATIONS: RegistrationSync,
}


def build_orchestrator(sync_type: SyncType, *args, **kwargs) -> SyncOrchestrator:
    """Instantiate the orchestrator variant for ``sync_type``."""
    return ORCHESTRATORS[SyncType(sync_type)](*args, **kwargs)
