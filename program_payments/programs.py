"""
Program Ledger Module

The Program entity tracks the financial state of one learner/program pair:
fixed terms, running balance, append-only payment history, status and the
approval/freeze metadata. ProgramRepository persists ledgers, checks their
invariants on every write and hands out per-ledger locks.
"""

import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

from .errors import NotFoundError, ValidationError
from .money import ZERO, AmountLike, round2, to_decimal
from .schedule import PaymentSchedule, as_utc, coerce_schedule, utcnow
from .storage import StorageInterface, StorageRecord


class ProgramStatus(Enum):
    """Program lifecycle states (completion is tracked by is_completed)"""
    PENDING = "pending"      # Awaiting administrator approval
    APPROVED = "approved"    # Open for payments
    REVOKED = "revoked"      # Administratively closed, still queryable
    FROZEN = "frozen"        # Missed a due date; next payment unfreezes


class HistoryStatus(Enum):
    """Status of a payment history entry"""
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


@dataclass
class PaymentHistoryEntry:
    """One gateway transaction as seen by the ledger"""
    amount: Decimal
    date: datetime
    reference: str
    status: HistoryStatus = HistoryStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            'amount': str(self.amount),
            'date': self.date.isoformat(),
            'reference': self.reference,
            'status': self.status.value
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentHistoryEntry':
        return cls(
            amount=Decimal(data['amount']),
            date=as_utc(data['date']),
            reference=data['reference'],
            status=HistoryStatus(data['status'])
        )


@dataclass
class Program(StorageRecord):
    """Installment ledger for one learner's program"""
    user_id: str
    user_email: str
    user_name: str
    program_name: str
    cost_per_month: Decimal
    duration_months: int
    payment_schedule: PaymentSchedule
    total_amount: Optional[Decimal] = None   # Fixed at creation
    amount_paid: Decimal = ZERO
    next_payment_date: Optional[datetime] = None  # Only set after first payment
    status: ProgramStatus = ProgramStatus.PENDING

    # Approval metadata
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None

    # Freeze metadata, present iff status is FROZEN
    frozen_at: Optional[datetime] = None
    frozen_reason: Optional[str] = None
    last_missed_payment_date: Optional[datetime] = None

    payment_history: List[PaymentHistoryEntry] = field(default_factory=list)

    def __post_init__(self):
        self.cost_per_month = to_decimal(self.cost_per_month)
        self.amount_paid = to_decimal(self.amount_paid)
        if self.total_amount is None:
            self.total_amount = self.cost_per_month * self.duration_months
        else:
            self.total_amount = to_decimal(self.total_amount)

    @property
    def is_completed(self) -> bool:
        """Fully paid (overpayment counts as completion)"""
        return self.amount_paid >= self.total_amount

    @property
    def is_frozen(self) -> bool:
        return self.status == ProgramStatus.FROZEN

    @property
    def remaining_amount(self) -> Decimal:
        return max(self.total_amount - self.amount_paid, ZERO)

    @property
    def accepts_payments(self) -> bool:
        """Approved or frozen, and not yet completed"""
        return self.status in (ProgramStatus.APPROVED, ProgramStatus.FROZEN) and not self.is_completed

    def has_reference(self, reference: str) -> bool:
        return any(entry.reference == reference for entry in self.payment_history)

    def clear_freeze(self) -> None:
        self.frozen_at = None
        self.frozen_reason = None
        self.last_missed_payment_date = None

    def check_invariants(self) -> None:
        """Raise ValidationError if the ledger is internally inconsistent"""
        if self.cost_per_month <= ZERO:
            raise ValidationError("cost_per_month must be positive")
        if not isinstance(self.duration_months, int) or self.duration_months <= 0:
            raise ValidationError("duration_months must be a positive integer")
        if self.total_amount != self.cost_per_month * self.duration_months:
            raise ValidationError("total_amount must equal cost_per_month * duration_months")
        if self.amount_paid < ZERO:
            raise ValidationError("amount_paid cannot be negative")

        freeze_fields = (self.frozen_at, self.frozen_reason)
        if self.status == ProgramStatus.FROZEN:
            if any(value is None for value in freeze_fields):
                raise ValidationError("Frozen program must carry frozen_at and frozen_reason")
            if self.amount_paid <= ZERO:
                raise ValidationError("Only programs with a prior payment can be frozen")
        elif any(value is not None for value in freeze_fields) or self.last_missed_payment_date:
            raise ValidationError("Freeze metadata is only allowed on frozen programs")

        if self.status in (ProgramStatus.APPROVED, ProgramStatus.FROZEN) and self.approved_at is None:
            raise ValidationError("Approved program must carry approved_at")

        if self.next_payment_date is not None:
            if self.status not in (ProgramStatus.APPROVED, ProgramStatus.FROZEN):
                raise ValidationError("next_payment_date requires an approved or frozen program")
            if self.is_completed:
                raise ValidationError("Completed program cannot have a next_payment_date")
            if self.payment_schedule == PaymentSchedule.ONCE:
                raise ValidationError("One-off programs never have a next_payment_date")

        references = [entry.reference for entry in self.payment_history]
        if len(references) != len(set(references)):
            raise ValidationError("Payment history references must be unique")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-ready dictionary"""
        result = super().to_dict()
        result['payment_history'] = [entry.to_dict() for entry in self.payment_history]
        # Derived, stored so storage filters can select on it
        result['is_completed'] = self.is_completed
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Program':
        """Rebuild a Program from its stored dictionary"""
        def get_datetime(key: str) -> Optional[datetime]:
            if data.get(key):
                return as_utc(data[key])
            return None

        return cls(
            id=data['id'],
            created_at=as_utc(data['created_at']),
            updated_at=as_utc(data['updated_at']),
            user_id=data['user_id'],
            user_email=data['user_email'],
            user_name=data['user_name'],
            program_name=data['program_name'],
            cost_per_month=Decimal(data['cost_per_month']),
            duration_months=int(data['duration_months']),
            payment_schedule=PaymentSchedule(data['payment_schedule']),
            total_amount=Decimal(data['total_amount']),
            amount_paid=Decimal(data['amount_paid']),
            next_payment_date=get_datetime('next_payment_date'),
            status=ProgramStatus(data['status']),
            approved_at=get_datetime('approved_at'),
            approved_by=data.get('approved_by'),
            frozen_at=get_datetime('frozen_at'),
            frozen_reason=data.get('frozen_reason'),
            last_missed_payment_date=get_datetime('last_missed_payment_date'),
            payment_history=[PaymentHistoryEntry.from_dict(entry) for entry in data.get('payment_history', [])]
        )


def new_program(
    user_id: str,
    user_email: str,
    user_name: str,
    program_name: str,
    cost_per_month: AmountLike,
    duration_months: int,
    payment_schedule: Any,
    now: Optional[datetime] = None
) -> Program:
    """
    Validate learner input and build a pending Program.

    Raises:
        ValidationError: missing names, non-positive cost or duration,
            or an unknown payment schedule
    """
    if not user_id:
        raise ValidationError("user_id is required")
    if not program_name or not str(program_name).strip():
        raise ValidationError("program_name is required")

    try:
        cost = round2(cost_per_month)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid cost_per_month: {cost_per_month!r}")
    if cost <= ZERO:
        raise ValidationError("cost_per_month must be positive")

    if isinstance(duration_months, bool) or not isinstance(duration_months, int):
        raise ValidationError("duration_months must be a positive integer")
    if duration_months <= 0:
        raise ValidationError("duration_months must be a positive integer")

    try:
        schedule = coerce_schedule(payment_schedule)
    except ValueError as e:
        raise ValidationError(str(e))

    now = now or utcnow()
    return Program(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        user_id=user_id,
        user_email=user_email or "",
        user_name=user_name or "Unknown User",
        program_name=str(program_name).strip(),
        cost_per_month=cost,
        duration_months=duration_months,
        payment_schedule=schedule
    )


class ProgramRepository:
    """
    Persistence for Program ledgers.

    Every save re-checks the ledger invariants. locked() serializes
    read-modify-write cycles on one ledger so concurrent reconciliations
    cannot lose an amount_paid increment.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "programs"):
        self.storage = storage
        self.table_name = table_name
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def locked(self, program_id: str) -> Iterator[None]:
        """Hold the per-program lock for the duration of the block"""
        with self._locks_guard:
            lock = self._locks.setdefault(program_id, threading.RLock())
        with lock:
            yield

    def get(self, program_id: str) -> Optional[Program]:
        """Load a program by ID"""
        data = self.storage.load(self.table_name, program_id)
        if data:
            return Program.from_dict(data)
        return None

    def require(self, program_id: str) -> Program:
        """Load a program by ID or raise NotFoundError"""
        program = self.get(program_id)
        if program is None:
            raise NotFoundError(f"Program {program_id} not found")
        return program

    def save(self, program: Program) -> None:
        """Check invariants and persist the ledger"""
        program.check_invariants()
        self.storage.save(self.table_name, program.id, program.to_dict())

    def delete(self, program_id: str) -> bool:
        deleted = self.storage.delete(self.table_name, program_id)
        with self._locks_guard:
            self._locks.pop(program_id, None)
        return deleted

    def list_all(self) -> List[Program]:
        """All programs, newest first"""
        programs = [Program.from_dict(data) for data in self.storage.load_all(self.table_name)]
        programs.sort(key=lambda p: p.created_at, reverse=True)
        return programs

    def find_by_user(self, user_id: str) -> List[Program]:
        """A learner's programs, newest first"""
        programs = [Program.from_dict(data) for data in self.storage.find(self.table_name, {"user_id": user_id})]
        programs.sort(key=lambda p: p.created_at, reverse=True)
        return programs

    def find_by_status(self, status: ProgramStatus) -> List[Program]:
        programs = [Program.from_dict(data) for data in self.storage.find(self.table_name, {"status": status.value})]
        programs.sort(key=lambda p: p.created_at, reverse=True)
        return programs

    def query(self, predicate: Callable[[Program], bool]) -> List[Program]:
        """Programs satisfying predicate, oldest first"""
        programs = [Program.from_dict(data) for data in self.storage.load_all(self.table_name)]
        programs.sort(key=lambda p: p.created_at)
        return [program for program in programs if predicate(program)]

    def count(self) -> int:
        return self.storage.count(self.table_name)
