"""
Periodic Sweeps Module

Batch jobs triggered externally (cron, the CLI): the overdue sweep freezes
approved ledgers that missed a due date, the reminder sweep nudges learners
whose installment is due. Both are idempotent per run and keep going when
a single ledger fails.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from .audit import AuditEventType, AuditTrail
from .errors import ConflictError, InvalidStateError
from .lifecycle import LifecycleEngine
from .logging_config import log_action
from .notifications import NotificationEngine, NotificationStatus, NotificationType
from .programs import Program, ProgramRepository, ProgramStatus
from .schedule import PaymentSchedule, amount_due_now, as_utc, utcnow

logger = logging.getLogger("edupay.sweeps")


@dataclass
class SweepResult:
    """Counters for one sweep run"""
    sweep: str
    examined: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    program_ids: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def frozen(self) -> int:
        return self.succeeded

    @property
    def reminded(self) -> int:
        return self.succeeded

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sweep": self.sweep,
            "examined": self.examined,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "program_ids": list(self.program_ids),
            "errors": dict(self.errors)
        }


def _batch(programs: List[Program], batch_size: int) -> List[Program]:
    return programs[:batch_size] if batch_size > 0 else programs


def _end_of_day(day: Union[date, datetime]) -> datetime:
    """First instant (UTC) after the given day"""
    if isinstance(day, datetime):
        day = as_utc(day).date()
    return datetime(day.year, day.month, day.day, tzinfo=timezone.utc) + timedelta(days=1)


class OverdueSweeper:
    """Freezes approved ledgers whose due date has passed"""

    def __init__(self, repository: ProgramRepository, lifecycle: LifecycleEngine,
                 audit_trail: AuditTrail, batch_size: int = 0):
        self.repository = repository
        self.lifecycle = lifecycle
        self.audit_trail = audit_trail
        self.batch_size = batch_size

    @staticmethod
    def is_overdue(program: Program, now: datetime) -> bool:
        # Never-paid ledgers are only reminded, never frozen
        return (
            program.status == ProgramStatus.APPROVED
            and program.next_payment_date is not None
            and program.next_payment_date < now
            and not program.is_completed
            and program.amount_paid > 0
        )

    def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        now = as_utc(now) if now else utcnow()
        result = SweepResult(sweep="overdue")

        candidates = _batch(self.repository.query(lambda p: self.is_overdue(p, now)), self.batch_size)
        for program in candidates:
            result.examined += 1
            try:
                if self.lifecycle.freeze(program.id, now=now):
                    result.succeeded += 1
                    result.program_ids.append(program.id)
                else:
                    result.skipped += 1
            except ConflictError as e:
                # Paid or changed since it was selected
                logger.info(f"Skipping program {program.id}: {e}")
                result.skipped += 1
            except Exception as e:
                logger.error(f"Failed to freeze program {program.id}: {e}")
                result.failed += 1
                result.errors[program.id] = str(e)

        self._finish(result, now)
        return result

    def _finish(self, result: SweepResult, now: datetime) -> None:
        self.audit_trail.log_event(
            event_type=AuditEventType.SWEEP_COMPLETED,
            entity_type="sweep",
            entity_id=result.sweep,
            metadata={**result.to_dict(), "run_at": now},
            user_id="system"
        )
        log_action(logger, "info", f"Overdue sweep froze {result.frozen} of {result.examined} programs",
                   action="sweep_overdue", resource="programs", extra=result.to_dict())


class ReminderSweeper:
    """Sends payment reminders for installments that are due"""

    def __init__(self, repository: ProgramRepository, notifications: NotificationEngine,
                 audit_trail: AuditTrail, batch_size: int = 0):
        self.repository = repository
        self.notifications = notifications
        self.audit_trail = audit_trail
        self.batch_size = batch_size

    @staticmethod
    def is_due(program: Program, cutoff: datetime) -> bool:
        return (
            not program.is_completed
            and program.payment_schedule != PaymentSchedule.ONCE
            and program.next_payment_date is not None
            and program.next_payment_date < cutoff
        )

    def sweep(self, today: Optional[Union[date, datetime]] = None) -> SweepResult:
        """Remind every ledger due on or before today"""
        cutoff = _end_of_day(today or utcnow())
        result = SweepResult(sweep="reminders")

        candidates = _batch(self.repository.query(lambda p: self.is_due(p, cutoff)), self.batch_size)
        for program in candidates:
            result.examined += 1
            try:
                delivered = self._send(program)
                if delivered:
                    result.succeeded += 1
                    result.program_ids.append(program.id)
                elif delivered is None:
                    result.skipped += 1
                else:
                    result.failed += 1
                    result.errors[program.id] = "delivery failed"
            except Exception as e:
                logger.error(f"Failed to remind program {program.id}: {e}")
                result.failed += 1
                result.errors[program.id] = str(e)

        self.audit_trail.log_event(
            event_type=AuditEventType.SWEEP_COMPLETED,
            entity_type="sweep",
            entity_id=result.sweep,
            metadata={**result.to_dict(), "cutoff": cutoff},
            user_id="system"
        )
        log_action(logger, "info", f"Reminder sweep reminded {result.reminded} of {result.examined} programs",
                   action="sweep_reminders", resource="programs", extra=result.to_dict())
        return result

    def remind(self, program_id: str, actor: Optional[str] = None) -> Optional[bool]:
        """
        Send a single reminder on an administrator's request.

        Raises:
            NotFoundError: unknown program
            InvalidStateError: program is already fully paid
        """
        program = self.repository.require(program_id)
        if program.is_completed:
            raise InvalidStateError(f"Program {program.id} is already completed")
        return self._send(program, actor=actor)

    def _send(self, program: Program, actor: Optional[str] = None) -> Optional[bool]:
        """
        Deliver one reminder. True when at least one channel accepted it,
        None when there was nothing to send (notifications off, no address).
        """
        due_date = program.next_payment_date or utcnow()
        amount = amount_due_now(program)

        sent = self.notifications.notify(NotificationType.PAYMENT_REMINDER, {
            "user_name": program.user_name,
            "program_name": program.program_name,
            "amount": amount,
            "due_date": due_date
        }, recipient=program.user_email)
        if not sent:
            return None

        delivered = any(n.status == NotificationStatus.SENT for n in sent)
        if delivered:
            self.audit_trail.log_event(
                event_type=AuditEventType.REMINDER_SENT,
                entity_type="program",
                entity_id=program.id,
                metadata={"amount": amount, "due_date": due_date},
                user_id=actor or "system"
            )
        return delivered
