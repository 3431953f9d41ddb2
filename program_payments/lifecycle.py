"""
Program Lifecycle Module

The state machine for program ledgers:

    pending -> approved -> completed (reached by reconciliation)
    approved <-> frozen  (freeze by the overdue sweep, unfreeze by a payment)
    pending | approved | frozen -> revoked
    any state -> deleted

Every transition is a single read-modify-write under the ledger's lock and
inside a storage transaction. Notifications go out after the commit.
"""

import logging
from datetime import datetime
from typing import Dict, FrozenSet, Optional

from .audit import AuditEventType, AuditTrail
from .errors import ConflictError
from .logging_config import log_action
from .money import AmountLike
from .notifications import NotificationEngine, NotificationType
from .programs import Program, ProgramRepository, ProgramStatus, new_program
from .schedule import installment_amount, utcnow

logger = logging.getLogger("edupay.lifecycle")

DEFAULT_FREEZE_REASON = "Missed payment deadline"

# Source states from which each administrative transition is legal
LEGAL_SOURCES: Dict[str, FrozenSet[ProgramStatus]] = {
    "approve": frozenset({ProgramStatus.PENDING}),
    "revoke": frozenset({ProgramStatus.PENDING, ProgramStatus.APPROVED, ProgramStatus.FROZEN}),
    "freeze": frozenset({ProgramStatus.APPROVED}),
    "unfreeze": frozenset({ProgramStatus.FROZEN}),
}


class LifecycleEngine:
    """Owns every legal status transition and its side effects"""

    def __init__(
        self,
        repository: ProgramRepository,
        audit_trail: AuditTrail,
        notifications: NotificationEngine,
        freeze_reason: str = DEFAULT_FREEZE_REASON
    ):
        self.repository = repository
        self.storage = repository.storage
        self.audit_trail = audit_trail
        self.notifications = notifications
        self.freeze_reason = freeze_reason

    def _check_transition(self, program: Program, action: str) -> None:
        if program.status not in LEGAL_SOURCES[action]:
            raise ConflictError(
                f"Cannot {action} program {program.id} in status {program.status.value}"
            )

    def create(
        self,
        user_id: str,
        user_email: str,
        user_name: str,
        program_name: str,
        cost_per_month: AmountLike,
        duration_months: int,
        payment_schedule,
        now: Optional[datetime] = None
    ) -> Program:
        """
        Register a new program in the pending state

        Raises:
            ValidationError: invalid terms
        """
        program = new_program(
            user_id=user_id,
            user_email=user_email,
            user_name=user_name,
            program_name=program_name,
            cost_per_month=cost_per_month,
            duration_months=duration_months,
            payment_schedule=payment_schedule,
            now=now
        )

        with self.storage.atomic():
            self.repository.save(program)
            self.audit_trail.log_event(
                event_type=AuditEventType.PROGRAM_CREATED,
                entity_type="program",
                entity_id=program.id,
                metadata={
                    "program_name": program.program_name,
                    "cost_per_month": program.cost_per_month,
                    "duration_months": program.duration_months,
                    "payment_schedule": program.payment_schedule,
                    "total_amount": program.total_amount
                },
                user_id=user_id
            )

        log_action(logger, "info", f"Program {program.id} created",
                   user_id=user_id, action="create_program", resource=program.id)

        self.notifications.notify(NotificationType.NEW_PROGRAM, {
            "user_name": program.user_name,
            "user_email": program.user_email,
            "program_name": program.program_name
        })
        return program

    def approve(self, program_id: str, approver: str, now: Optional[datetime] = None) -> Program:
        """
        Approve a pending program. The first due date is left unset until
        the first payment arrives.

        Raises:
            NotFoundError: unknown program
            ConflictError: program is not pending
        """
        now = now or utcnow()

        with self.repository.locked(program_id):
            with self.storage.atomic():
                program = self.repository.require(program_id)
                self._check_transition(program, "approve")

                program.status = ProgramStatus.APPROVED
                program.approved_at = now
                program.approved_by = approver
                program.updated_at = now
                self.repository.save(program)

                self.audit_trail.log_event(
                    event_type=AuditEventType.PROGRAM_APPROVED,
                    entity_type="program",
                    entity_id=program.id,
                    metadata={"approved_by": approver},
                    user_id=approver
                )

        log_action(logger, "info", f"Program {program.id} approved",
                   user_id=approver, action="approve_program", resource=program.id)

        first_installment = installment_amount(
            program.cost_per_month, program.payment_schedule, program.duration_months
        )
        self.notifications.notify(NotificationType.PROGRAM_APPROVED, {
            "user_name": program.user_name,
            "program_name": program.program_name,
            "amount": first_installment
        }, recipient=program.user_email)
        return program

    def revoke(self, program_id: str, actor: Optional[str] = None,
               now: Optional[datetime] = None) -> Program:
        """
        Revoke a program. History and balances are kept; further payments
        are refused.

        Raises:
            NotFoundError: unknown program
            ConflictError: program already revoked
        """
        now = now or utcnow()

        with self.repository.locked(program_id):
            with self.storage.atomic():
                program = self.repository.require(program_id)
                self._check_transition(program, "revoke")

                previous_status = program.status
                program.status = ProgramStatus.REVOKED
                program.clear_freeze()
                program.next_payment_date = None
                program.updated_at = now
                self.repository.save(program)

                self.audit_trail.log_event(
                    event_type=AuditEventType.PROGRAM_REVOKED,
                    entity_type="program",
                    entity_id=program.id,
                    metadata={"previous_status": previous_status},
                    user_id=actor
                )

        log_action(logger, "info", f"Program {program.id} revoked",
                   user_id=actor, action="revoke_program", resource=program.id)
        return program

    def freeze(self, program_id: str, reason: Optional[str] = None,
               now: Optional[datetime] = None) -> bool:
        """
        Freeze an approved program whose due date has passed.

        Returns:
            True if the program was frozen, False if it already was

        Raises:
            NotFoundError: unknown program
            ConflictError: program is not approved, has never been paid,
                has no past due date, or is completed
        """
        now = now or utcnow()

        with self.repository.locked(program_id):
            with self.storage.atomic():
                program = self.repository.require(program_id)
                if program.status == ProgramStatus.FROZEN:
                    return False
                self._check_transition(program, "freeze")

                if program.amount_paid <= 0:
                    raise ConflictError(f"Program {program.id} has no payments; freeze not applicable")
                if program.is_completed:
                    raise ConflictError(f"Program {program.id} is completed; freeze not applicable")
                if program.next_payment_date is None or program.next_payment_date >= now:
                    raise ConflictError(f"Program {program.id} is not past its due date")

                missed = program.next_payment_date
                program.status = ProgramStatus.FROZEN
                program.frozen_at = now
                program.frozen_reason = reason or self.freeze_reason
                program.last_missed_payment_date = missed
                program.updated_at = now
                self.repository.save(program)

                self.audit_trail.log_event(
                    event_type=AuditEventType.PROGRAM_FROZEN,
                    entity_type="program",
                    entity_id=program.id,
                    metadata={
                        "reason": program.frozen_reason,
                        "missed_payment_date": missed
                    },
                    user_id="system"
                )

        log_action(logger, "warning", f"Program {program.id} frozen",
                   action="freeze_program", resource=program.id,
                   extra={"missed_payment_date": missed.isoformat()})

        self.notifications.notify(NotificationType.PROGRAM_FROZEN, {
            "user_name": program.user_name,
            "user_email": program.user_email,
            "program_name": program.program_name,
            "missed_payment_date": missed
        })
        return True

    def unfreeze(self, program: Program, now: Optional[datetime] = None) -> None:
        """
        Return a frozen program to approved and drop its freeze metadata.

        Mutates program in place; the caller owns the lock, the transaction
        and the save. Only reconciliation of a successful payment calls this.
        """
        self._check_transition(program, "unfreeze")
        missed = program.last_missed_payment_date

        program.status = ProgramStatus.APPROVED
        program.clear_freeze()
        program.updated_at = now or utcnow()

        self.audit_trail.log_event(
            event_type=AuditEventType.PROGRAM_UNFROZEN,
            entity_type="program",
            entity_id=program.id,
            metadata={"missed_payment_date": missed},
            user_id="system"
        )

    def delete(self, program_id: str, actor: Optional[str] = None) -> Program:
        """
        Permanently remove a program, whatever its status. Whether deletion
        is offered for a given status is the caller's policy.

        Returns:
            The program as it was just before deletion

        Raises:
            NotFoundError: unknown program
        """
        with self.repository.locked(program_id):
            with self.storage.atomic():
                program = self.repository.require(program_id)
                self.repository.delete(program_id)

                self.audit_trail.log_event(
                    event_type=AuditEventType.PROGRAM_DELETED,
                    entity_type="program",
                    entity_id=program.id,
                    metadata={
                        "status": program.status,
                        "amount_paid": program.amount_paid,
                        "total_amount": program.total_amount,
                        "user_id": program.user_id
                    },
                    user_id=actor
                )

        log_action(logger, "info", f"Program {program.id} deleted",
                   user_id=actor, action="delete_program", resource=program.id)

        self.notifications.notify(NotificationType.PROGRAM_DELETED, {
            "user_name": program.user_name,
            "user_email": program.user_email,
            "program_name": program.program_name,
            "reason": f"Program permanently deleted by {actor or 'an administrator'}"
        })
        return program
