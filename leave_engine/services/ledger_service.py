"""
Balance ledger - append-only leave transactions per (employee, leave type, year).

- The ledger is the only stored truth; a LeaveBalance is a fold over it.
- remaining = total_allocated + carried_forward - used - pending, which equals
  the sum of every transaction amount.
- A year without an `allocated` entry is materialized lazily from the policy
  default (or the configured Annual Leave Quota), plus carry-forward from the
  prior year when the policy allows it and that year has closed. A year opened
  early (bookings made in December for January) gets its carry-forward from
  the rollover batch.
- Entries are never edited or deleted; corrections are `adjustment` entries.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from leave_engine.constants import ANNUAL_QUOTA_LEAVE_TYPE
from leave_engine.core.config import settings
from leave_engine.core.errors import BalanceInvariantViolation, ConcurrencyConflict
from leave_engine.models.leave import LeaveTransaction, LeaveTransactionType, LedgerBucket
from leave_engine.models.policy import LeavePolicy
from leave_engine.services.audit_service import log_audit
from leave_engine.services.ledger_locks import ledger_locks
from leave_engine.services.policy_service import get_policy, list_active_policies
from leave_engine.utils.datetime_utils import now_utc, today_utc

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

# Default bucket for each transaction type when the caller does not name one
DEFAULT_BUCKETS = {
    LeaveTransactionType.ALLOCATED: LedgerBucket.ALLOCATED,
    LeaveTransactionType.CARRIED_FORWARD: LedgerBucket.CARRIED_FORWARD,
    LeaveTransactionType.USED: LedgerBucket.USED,
    LeaveTransactionType.ADJUSTMENT: LedgerBucket.ALLOCATED,
}

ALLOWED_BUCKETS = {
    LeaveTransactionType.ALLOCATED: {LedgerBucket.ALLOCATED},
    LeaveTransactionType.CARRIED_FORWARD: {LedgerBucket.CARRIED_FORWARD},
    LeaveTransactionType.USED: {LedgerBucket.USED, LedgerBucket.PENDING},
    LeaveTransactionType.ADJUSTMENT: set(LedgerBucket),
}


@dataclass(frozen=True)
class LedgerEntry:
    """Session-independent copy of a LeaveTransaction row."""
    id: Optional[int]
    sequence_no: int
    txn_type: LeaveTransactionType
    bucket: LedgerBucket
    amount: Decimal
    date: datetime
    description: str
    leave_id: Optional[int] = None
    actor_id: Optional[int] = None
    allow_negative: bool = False

    @classmethod
    def from_row(cls, row: LeaveTransaction) -> "LedgerEntry":
        return cls(
            id=row.id,
            sequence_no=row.sequence_no,
            txn_type=row.txn_type,
            bucket=row.bucket,
            amount=Decimal(str(row.amount)),
            date=row.date,
            description=row.description,
            leave_id=row.leave_id,
            actor_id=row.actor_id,
            allow_negative=bool(row.allow_negative),
        )

    @property
    def is_provisional(self) -> bool:
        return self.bucket == LedgerBucket.PENDING


@dataclass(frozen=True)
class LeaveBalance:
    """Derived balance for one (employee, leave type, year)."""
    employee_id: int
    leave_type: str
    year: int
    total_allocated: Decimal = ZERO
    carried_forward: Decimal = ZERO
    used: Decimal = ZERO
    pending: Decimal = ZERO
    transactions: Tuple[LedgerEntry, ...] = field(default_factory=tuple)

    @property
    def remaining(self) -> Decimal:
        return self.total_allocated + self.carried_forward - self.used - self.pending

    @property
    def is_overdrawn(self) -> bool:
        return self.used + self.pending > self.total_allocated + self.carried_forward

    @property
    def has_allocation(self) -> bool:
        return any(t.txn_type == LeaveTransactionType.ALLOCATED for t in self.transactions)

    @property
    def last_sequence(self) -> int:
        return self.transactions[-1].sequence_no if self.transactions else 0

    @property
    def is_aggregate(self) -> bool:
        return self.leave_type == ANNUAL_QUOTA_LEAVE_TYPE

    def with_entry(self, entry: LedgerEntry) -> "LeaveBalance":
        return fold_transactions(self.employee_id, self.leave_type, self.year, self.transactions + (entry,))


def fold_transactions(
    employee_id: int,
    leave_type: str,
    year: int,
    entries: Tuple[LedgerEntry, ...],
) -> LeaveBalance:
    """Fold ledger entries (in sequence order) into a balance."""
    totals = {bucket: ZERO for bucket in LedgerBucket}
    for entry in entries:
        totals[entry.bucket] += entry.amount
    return LeaveBalance(
        employee_id=employee_id,
        leave_type=leave_type,
        year=year,
        total_allocated=totals[LedgerBucket.ALLOCATED],
        carried_forward=totals[LedgerBucket.CARRIED_FORWARD],
        # used/pending entries reduce remaining, so their amounts are negative
        used=-totals[LedgerBucket.USED],
        pending=-totals[LedgerBucket.PENDING],
        transactions=tuple(entries),
    )


class BalanceCache:
    """
    Fold results keyed by ledger key, valid while the key's transaction count
    and last sequence number are unchanged.
    """

    def __init__(self):
        self._entries: Dict[Tuple[int, str, int], Tuple[int, int, LeaveBalance]] = {}
        self._lock = threading.Lock()

    def get(self, key: Tuple[int, str, int], count: int, last_seq: int) -> Optional[LeaveBalance]:
        with self._lock:
            cached = self._entries.get(key)
        if cached and cached[0] == count and cached[1] == last_seq:
            return cached[2]
        return None

    def put(self, key: Tuple[int, str, int], balance: LeaveBalance) -> None:
        with self._lock:
            self._entries[key] = (len(balance.transactions), balance.last_sequence, balance)

    def invalidate(self, key: Tuple[int, str, int]) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


balance_cache = BalanceCache()


def _read_balance(db: Session, employee_id: int, leave_type: str, year: int) -> LeaveBalance:
    """Fold the stored ledger for a key without materializing anything."""
    key = (employee_id, leave_type, year)
    count, last_seq = (
        db.query(func.count(LeaveTransaction.id), func.max(LeaveTransaction.sequence_no))
        .filter(
            LeaveTransaction.employee_id == employee_id,
            LeaveTransaction.leave_type == leave_type,
            LeaveTransaction.year == year,
        )
        .one()
    )
    cached = balance_cache.get(key, count or 0, last_seq or 0)
    if cached is not None:
        return cached

    rows = (
        db.query(LeaveTransaction)
        .filter(
            LeaveTransaction.employee_id == employee_id,
            LeaveTransaction.leave_type == leave_type,
            LeaveTransaction.year == year,
        )
        .order_by(LeaveTransaction.sequence_no)
        .all()
    )
    balance = fold_transactions(employee_id, leave_type, year, tuple(LedgerEntry.from_row(r) for r in rows))
    balance_cache.put(key, balance)
    return balance


def append_entry(
    db: Session,
    employee_id: int,
    leave_type: str,
    year: int,
    txn_type: LeaveTransactionType,
    amount: Decimal,
    description: str,
    bucket: Optional[LedgerBucket] = None,
    leave_id: Optional[int] = None,
    actor_id: Optional[int] = None,
    allow_negative: bool = False,
    enforce_invariant: bool = True,
) -> LeaveBalance:
    """
    Append one entry inside the caller's transaction (flush, no commit).
    Caller must hold the ledger lock for the key.

    enforce_invariant=False is only for the second half of a net-zero pair
    (see convert_reservation).
    """
    bucket = bucket or DEFAULT_BUCKETS[txn_type]
    if bucket not in ALLOWED_BUCKETS[txn_type]:
        raise ValueError(f"{txn_type.value} transactions cannot move the {bucket.value} bucket")
    amount = Decimal(str(amount))
    if txn_type in (LeaveTransactionType.ALLOCATED, LeaveTransactionType.CARRIED_FORWARD) and amount < 0:
        raise ValueError(f"{txn_type.value} amount must not be negative")
    if txn_type == LeaveTransactionType.USED and amount > 0:
        raise ValueError("used amount must not be positive")
    if allow_negative and txn_type != LeaveTransactionType.ADJUSTMENT:
        raise ValueError("only adjustment transactions may override the balance invariant")

    current = _read_balance(db, employee_id, leave_type, year)
    entry = LedgerEntry(
        id=None,
        sequence_no=current.last_sequence + 1,
        txn_type=txn_type,
        bucket=bucket,
        amount=amount,
        date=now_utc(),
        description=description,
        leave_id=leave_id,
        actor_id=actor_id,
        allow_negative=allow_negative,
    )
    projected = current.with_entry(entry)

    # Entries that give days back are always allowed; consuming entries may not overdraw
    if enforce_invariant and amount < 0 and projected.is_overdrawn and not allow_negative:
        shortfall = -projected.remaining
        raise BalanceInvariantViolation(
            f"{leave_type} {year} balance for employee {employee_id} would be overdrawn by {shortfall} days",
            employee_id=employee_id,
            leave_type=leave_type,
            year=year,
            shortfall=float(shortfall),
        )

    row = LeaveTransaction(
        employee_id=employee_id,
        leave_type=leave_type,
        year=year,
        sequence_no=entry.sequence_no,
        txn_type=txn_type,
        bucket=bucket,
        amount=amount,
        date=entry.date,
        description=description,
        leave_id=leave_id,
        actor_id=actor_id,
        allow_negative=allow_negative,
    )
    db.add(row)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        balance_cache.invalidate((employee_id, leave_type, year))
        logger.warning(
            "Ledger sequence %s already taken for employee %s %s %s",
            entry.sequence_no, employee_id, leave_type, year,
        )
        raise ConcurrencyConflict(
            f"Ledger for employee {employee_id}, {leave_type} {year} changed concurrently; retry the operation",
            employee_id=employee_id,
            leave_type=leave_type,
            year=year,
        )
    balance_cache.invalidate((employee_id, leave_type, year))
    return _read_balance(db, employee_id, leave_type, year)


def reserve(
    db: Session, employee_id: int, leave_type: str, year: int, days: int, leave_id: int, actor_id: Optional[int],
) -> LeaveBalance:
    """Provisional `used` entry in the pending bucket for a submitted request."""
    return append_entry(
        db, employee_id, leave_type, year,
        LeaveTransactionType.USED, -Decimal(days),
        f"Reserved for leave request #{leave_id}",
        bucket=LedgerBucket.PENDING, leave_id=leave_id, actor_id=actor_id,
    )


def convert_reservation(
    db: Session, employee_id: int, leave_type: str, year: int, days: int, leave_id: int, actor_id: Optional[int],
) -> LeaveBalance:
    """Release the pending reservation and record the usage; remaining is unchanged."""
    append_entry(
        db, employee_id, leave_type, year,
        LeaveTransactionType.ADJUSTMENT, Decimal(days),
        f"Reservation released on approval of leave request #{leave_id}",
        bucket=LedgerBucket.PENDING, leave_id=leave_id, actor_id=actor_id,
    )
    return append_entry(
        db, employee_id, leave_type, year,
        LeaveTransactionType.USED, -Decimal(days),
        f"Leave request #{leave_id} approved",
        bucket=LedgerBucket.USED, leave_id=leave_id, actor_id=actor_id,
        enforce_invariant=False,
    )


def release_reservation(
    db: Session, employee_id: int, leave_type: str, year: int, days: int, leave_id: int, actor_id: Optional[int],
    occasion: str = "rejection",
) -> LeaveBalance:
    """Give a pending reservation back (rejection, withdrawal or edit)."""
    return append_entry(
        db, employee_id, leave_type, year,
        LeaveTransactionType.ADJUSTMENT, Decimal(days),
        f"Reservation released on {occasion} of leave request #{leave_id}",
        bucket=LedgerBucket.PENDING, leave_id=leave_id, actor_id=actor_id,
    )


def reverse_usage(
    db: Session, employee_id: int, leave_type: str, year: int, days: int, leave_id: int, actor_id: Optional[int],
) -> LeaveBalance:
    """Compensating adjustment for a cancelled approval; the original `used` entry stays."""
    return append_entry(
        db, employee_id, leave_type, year,
        LeaveTransactionType.ADJUSTMENT, Decimal(days),
        f"Leave request #{leave_id} cancelled",
        bucket=LedgerBucket.USED, leave_id=leave_id, actor_id=actor_id,
    )


def discard_cached(employee_id: int, year: int, leave_types) -> None:
    """Drop cached folds after a rolled-back transaction."""
    for leave_type in leave_types:
        balance_cache.invalidate((employee_id, leave_type, year))


def compute_carry_forward(previous: LeaveBalance, policy: LeavePolicy) -> Decimal:
    """min(previous remaining, cap) when the policy allows carry forward, else 0."""
    if not policy.allow_carry_forward:
        return ZERO
    remaining = max(previous.remaining, ZERO)
    return min(remaining, Decimal(str(policy.carry_forward_limit or 0)))


def apply_carry_forward(
    db: Session,
    employee_id: int,
    leave_type: str,
    target_year: int,
    policy: Optional[LeavePolicy] = None,
    today: Optional[date] = None,
) -> Optional[LeaveBalance]:
    """
    Credit carry-forward from target_year - 1 into target_year, at most once.

    Returns the updated target balance, or None when nothing was recorded
    (carry forward not allowed, prior year still open, no prior-year ledger,
    or already applied). Caller must hold the lock for the target key; does
    not commit.
    """
    if leave_type == ANNUAL_QUOTA_LEAVE_TYPE:
        return None
    # target_year - 1 can still change until the calendar reaches target_year
    if (today or today_utc()).year < target_year:
        return None
    policy = policy or get_policy(db, leave_type)
    if not policy.allow_carry_forward:
        return None

    target = _read_balance(db, employee_id, leave_type, target_year)
    if any(t.txn_type == LeaveTransactionType.CARRIED_FORWARD for t in target.transactions):
        return None

    previous = _read_balance(db, employee_id, leave_type, target_year - 1)
    if not previous.transactions:
        return None

    amount = compute_carry_forward(previous, policy)
    logger.info(
        "Carrying forward %s days of %s from %s to %s for employee %s",
        amount, leave_type, target_year - 1, target_year, employee_id,
    )
    # Zero credits are recorded too, so the rollover decision is made once per year
    return append_entry(
        db, employee_id, leave_type, target_year,
        LeaveTransactionType.CARRIED_FORWARD, amount,
        f"Carry forward from {target_year - 1} (cap {policy.carry_forward_limit})",
    )


def ensure_allocation(
    db: Session, employee_id: int, leave_type: str, year: int, today: Optional[date] = None,
) -> LeaveBalance:
    """
    Materialize the yearly allocation (and carry-forward from a closed prior
    year) if the key has none.
    Caller must hold the lock for the key; flushes but does not commit.

    Raises:
        NotFound: If the leave type has no policy
    """
    balance = _read_balance(db, employee_id, leave_type, year)
    if balance.has_allocation:
        return balance

    if leave_type == ANNUAL_QUOTA_LEAVE_TYPE:
        append_entry(
            db, employee_id, leave_type, year,
            LeaveTransactionType.ALLOCATED, Decimal(settings.ANNUAL_QUOTA_DAYS),
            f"Annual leave quota for {year} ({settings.ANNUAL_QUOTA_DAYS} days)",
        )
        return _read_balance(db, employee_id, leave_type, year)

    policy = get_policy(db, leave_type)
    append_entry(
        db, employee_id, leave_type, year,
        LeaveTransactionType.ALLOCATED, Decimal(policy.default_allocation),
        f"Initial allocation for {year}",
    )
    apply_carry_forward(db, employee_id, leave_type, year, policy, today=today)
    logger.info("Materialized %s %s allocation for employee %s", leave_type, year, employee_id)
    return _read_balance(db, employee_id, leave_type, year)


def get_balance(db: Session, employee_id: int, leave_type: str, year: int) -> LeaveBalance:
    """
    Current balance for (employee, leave type, year), materializing the
    allocation on first access.
    """
    with ledger_locks(employee_id, year, [leave_type]):
        balance = _read_balance(db, employee_id, leave_type, year)
        if balance.has_allocation:
            return balance
        try:
            balance = ensure_allocation(db, employee_id, leave_type, year)
            db.commit()
        except Exception:
            db.rollback()
            balance_cache.invalidate((employee_id, leave_type, year))
            raise
        return balance


def get_balances(db: Session, employee_id: int, year: int) -> List[LeaveBalance]:
    """
    Every balance for an employee and year: active policies, inactive
    policies that still have ledger entries, then the Annual Leave Quota.
    """
    leave_types = [p.leave_type for p in list_active_policies(db)]
    historical = (
        db.query(LeaveTransaction.leave_type)
        .filter(LeaveTransaction.employee_id == employee_id, LeaveTransaction.year == year)
        .distinct()
        .all()
    )
    for (leave_type,) in historical:
        if leave_type not in leave_types and leave_type != ANNUAL_QUOTA_LEAVE_TYPE:
            leave_types.append(leave_type)

    balances = [get_balance(db, employee_id, leave_type, year) for leave_type in sorted(leave_types)]
    balances.append(get_balance(db, employee_id, ANNUAL_QUOTA_LEAVE_TYPE, year))
    return balances


def append_transaction(
    db: Session,
    employee_id: int,
    leave_type: str,
    year: int,
    txn_type: LeaveTransactionType,
    amount: Decimal,
    description: str,
    bucket: Optional[LedgerBucket] = None,
    leave_id: Optional[int] = None,
    actor_id: Optional[int] = None,
    allow_negative: bool = False,
) -> LeaveBalance:
    """
    Append a transaction and return the recomputed balance, atomically.

    Raises:
        BalanceInvariantViolation: If the entry would overdraw the balance and is
            not an adjustment with allow_negative
        ConcurrencyConflict: If another writer claimed the same ledger slot
    """
    with ledger_locks(employee_id, year, [leave_type]):
        try:
            ensure_allocation(db, employee_id, leave_type, year)
            balance = append_entry(
                db, employee_id, leave_type, year, txn_type, amount, description,
                bucket=bucket, leave_id=leave_id, actor_id=actor_id, allow_negative=allow_negative,
            )
            db.commit()
        except Exception:
            db.rollback()
            balance_cache.invalidate((employee_id, leave_type, year))
            raise
        return balance


def adjust_balance(
    db: Session,
    employee_id: int,
    leave_type: str,
    year: int,
    amount: Decimal,
    reason: str,
    actor_id: Optional[int] = None,
    allow_negative: bool = False,
) -> LeaveBalance:
    """
    Manual adjustment of an employee's allocation (positive grants, negative claws back).
    Pushing a balance negative requires allow_negative.
    """
    if leave_type != ANNUAL_QUOTA_LEAVE_TYPE:
        get_policy(db, leave_type)
    balance = append_transaction(
        db, employee_id, leave_type, year,
        LeaveTransactionType.ADJUSTMENT, amount, reason,
        bucket=LedgerBucket.ALLOCATED, actor_id=actor_id, allow_negative=allow_negative,
    )
    logger.info(
        "Balance adjusted by %s days for employee %s %s %s (actor %s)",
        amount, employee_id, leave_type, year, actor_id,
    )
    log_audit(
        db=db,
        actor_id=actor_id,
        action="BALANCE_ADJUST",
        entity_type="leave_balance",
        entity_id=employee_id,
        meta={
            "leave_type": leave_type,
            "year": year,
            "amount": amount,
            "reason": reason,
            "allow_negative": allow_negative,
            "remaining": balance.remaining,
        },
    )
    return balance


def list_transactions(
    db: Session,
    employee_id: int,
    year: Optional[int] = None,
    leave_type: Optional[str] = None,
    limit: int = 200,
) -> List[LeaveTransaction]:
    q = db.query(LeaveTransaction).filter(LeaveTransaction.employee_id == employee_id)
    if year is not None:
        q = q.filter(LeaveTransaction.year == year)
    if leave_type is not None:
        q = q.filter(LeaveTransaction.leave_type == leave_type)
    return (
        q.order_by(LeaveTransaction.year, LeaveTransaction.leave_type, LeaveTransaction.sequence_no)
        .limit(limit)
        .all()
    )
