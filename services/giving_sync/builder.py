"""
Build ledger transaction payloads from aggregated groups.

Deposits carry one income line per (category, instrument) cell and one
negative fee line per cell with a fee share; refunds are single-line
purchases. One DepartmentRef (location) per transaction.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from .errors import ConfigurationError
from .models import PaymentInstrument, TransactionGroup, to_currency

logger = structlog.get_logger(__name__)

# Ledger limit for PrivateNote
MAX_MEMO_LENGTH = 4000

Resource = Dict[str, Any]


def ref(resource: Resource, fallback_name: str = "") -> Dict[str, str]:
    """
    Reference object for a ledger resource.

    Example:
        >>> ref({"Id": 35, "Name": "Checking"})
        {'value': '35', 'name': 'Checking'}
    """
    return {"value": str(resource["Id"]), "name": str(resource.get("Name") or fallback_name)}


@dataclass
class AccountRefs:
    """Accounts resolved once per run, before anything is fetched."""

    deposit_account: Resource
    income_account: Resource
    fee_account: Optional[Resource] = None

    @property
    def deposit_account_id(self) -> str:
        return str(self.deposit_account["Id"])


@dataclass
class GroupRefs:
    """Per-group references: location, classes and payment methods."""

    accounts: AccountRefs
    department: Optional[Resource] = None
    classes: Dict[str, Resource] = field(default_factory=dict)
    payment_methods: Dict[PaymentInstrument, Resource] = field(default_factory=dict)


@dataclass
class RefundRefs:
    bank_account: Resource
    refund_account: Resource
    class_: Optional[Resource] = None
    department: Optional[Resource] = None


def truncate_memo(memo: str, limit: int = MAX_MEMO_LENGTH) -> str:
    if len(memo) <= limit:
        return memo
    return memo[: limit - 3] + "..."


def build_memo(prefix: str, group: TransactionGroup) -> str:
    """
    Memo with the group's period, location and contributing record ids.

    Example:
        >>> build_memo("Online giving", group)
        'Online giving | 2025-03-01 | Location: North | Records: 101, 102'
    """
    parts = [prefix]
    if group.batch_name:
        parts.append(group.batch_name)
    parts.append(group.key.period)
    if group.key.location:
        parts.append(f"Location: {group.key.location}")
    parts.append("Records: " + ", ".join(group.record_ids))
    return truncate_memo(" | ".join(parts))


def resolve_group_refs(ledger, group: TransactionGroup, accounts: AccountRefs) -> GroupRefs:
    """
    Resolve the location, class and payment-method references of a group.

    Payment methods are optional: a method missing in the ledger leaves the
    line without a PaymentMethodRef.

    Raises:
        ConfigurationError: a mapped location or class does not exist
    """
    refs = GroupRefs(accounts=accounts)

    if group.key.location:
        department = ledger.get_department(group.key.location)
        if department is None:
            raise ConfigurationError(f"Location (Department) not found in ledger: {group.key.location}")
        refs.department = department

    for line in group.lines:
        if line.class_name and line.class_name not in refs.classes:
            class_ = ledger.get_class(line.class_name)
            if class_ is None:
                raise ConfigurationError(
                    f"Class not found in ledger for {line.category_name or line.category_id}: {line.class_name}"
                )
            refs.classes[line.class_name] = class_

        method_name = line.instrument.ledger_name
        if method_name and line.instrument not in refs.payment_methods:
            method = ledger.get_payment_method(method_name)
            if method is not None:
                refs.payment_methods[line.instrument] = method

    return refs


def build_deposit(
    group: TransactionGroup,
    refs: GroupRefs,
    memo: str,
    txn_date: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """
    Build a deposit payload for one group.

    Args:
        group: Aggregated group
        refs: Resolved references for the group
        memo: Private note (truncated to the ledger limit)
        txn_date: Transaction date (YYYY-MM-DD); defaults to the group period
            when it is a date

    Returns:
        Deposit payload, or None when no cell has a non-zero amount
    """
    accounts = refs.accounts
    lines: List[Dict[str, Any]] = []

    for line in group.lines:
        if line.amount == 0:
            continue

        name = line.category_name or line.category_id
        class_ref = ref(refs.classes[line.class_name], line.class_name) if line.class_name else None

        detail: Dict[str, Any] = {"AccountRef": ref(accounts.income_account)}
        if class_ref:
            detail["ClassRef"] = class_ref
        method = refs.payment_methods.get(line.instrument)
        if method is not None:
            detail["PaymentMethodRef"] = ref(method)

        lines.append({
            "Amount": to_currency(line.amount),
            "DetailType": "DepositLineDetail",
            "Description": f"{name} gross ({line.instrument.value})",
            "DepositLineDetail": detail,
        })

        if line.fee_share != 0:
            if accounts.fee_account is None:
                raise ConfigurationError("Fee account not configured but group has processing fees")
            fee_detail: Dict[str, Any] = {"AccountRef": ref(accounts.fee_account)}
            if class_ref:
                fee_detail["ClassRef"] = class_ref
            lines.append({
                "Amount": -to_currency(line.fee_share),
                "DetailType": "DepositLineDetail",
                "Description": f"{name} processing fees ({line.instrument.value})",
                "DepositLineDetail": fee_detail,
            })

    if not lines:
        logger.info("Group has no non-zero lines, skipping", group=group.key.label())
        return None

    deposit: Dict[str, Any] = {
        "TxnDate": txn_date or group.key.period,
        "PrivateNote": truncate_memo(memo),
        "DepositToAccountRef": ref(accounts.deposit_account),
        "Line": lines,
    }
    if refs.department is not None:
        deposit["DepartmentRef"] = ref(refs.department)
    return deposit


def build_refund(
    registration_id: str,
    delta_minor: int,
    cumulative_minor: int,
    refs: RefundRefs,
    memo: str,
    txn_date: str,
) -> Optional[Dict[str, Any]]:
    """
    Build a single-line purchase for a registration refund increase.

    Returns:
        Purchase payload, or None when ``delta_minor`` is not positive
    """
    if delta_minor <= 0:
        return None

    detail: Dict[str, Any] = {"AccountRef": ref(refs.refund_account)}
    if refs.class_ is not None:
        detail["ClassRef"] = ref(refs.class_)

    purchase: Dict[str, Any] = {
        "TxnDate": txn_date,
        "PaymentType": "Cash",
        "AccountRef": ref(refs.bank_account),
        "PrivateNote": truncate_memo(memo),
        "Line": [{
            "Amount": to_currency(delta_minor),
            "DetailType": "AccountBasedExpenseLineDetail",
            "Description": (
                f"Refund for registration {registration_id} "
                f"(total refunded {to_currency(cumulative_minor):.2f})"
            ),
            "AccountBasedExpenseLineDetail": detail,
        }],
    }
    if refs.department is not None:
        purchase["DepartmentRef"] = ref(refs.department)
    return purchase
