"""
Payment Reconciliation Module

Applies a gateway-verified payment to a program ledger. Each external
reference is applied at most once: the ledger history and the payment
store are both checked, and the store's insert-if-absent is the final
guard. All ledger, payment-record and audit writes for one payment commit
together or not at all.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from .audit import AuditEventType, AuditTrail
from .errors import DuplicateReferenceError, InvalidStateError, UpstreamError, ValidationError
from .gateway import PaymentGateway
from .lifecycle import LifecycleEngine
from .logging_config import log_action
from .money import ZERO, AmountLike, round2
from .notifications import NotificationEngine, NotificationType
from .payments import PaymentRecord, PaymentStore, new_payment_record
from .programs import HistoryStatus, PaymentHistoryEntry, Program, ProgramRepository, ProgramStatus
from .schedule import PaymentSchedule, as_utc, next_due_date, utcnow

logger = logging.getLogger("edupay.reconciliation")


@dataclass
class PaymentEvent:
    """A payment the gateway has confirmed"""
    program_id: str
    amount: AmountLike
    reference: str
    paid_at: datetime
    user_id: Optional[str] = None


@dataclass
class ReconciliationResult:
    """Outcome of applying one payment"""
    program: Program
    payment: PaymentRecord
    completed: bool
    unfrozen: bool


class PaymentReconciler:
    """Resolves verified payment events against program ledgers"""

    def __init__(
        self,
        repository: ProgramRepository,
        payments: PaymentStore,
        lifecycle: LifecycleEngine,
        audit_trail: AuditTrail,
        notifications: NotificationEngine,
        gateway: Optional[PaymentGateway] = None,
        payment_method: str = "paystack"
    ):
        self.repository = repository
        self.storage = repository.storage
        self.payments = payments
        self.lifecycle = lifecycle
        self.audit_trail = audit_trail
        self.notifications = notifications
        self.gateway = gateway
        self.payment_method = payment_method

    def reconcile(self, event: PaymentEvent) -> ReconciliationResult:
        """
        Apply a verified payment.

        Raises:
            ValidationError: non-positive amount or missing reference
            NotFoundError: unknown program
            DuplicateReferenceError: reference already applied
            InvalidStateError: program is pending, revoked or completed
        """
        if not event.reference:
            raise ValidationError("Payment reference is required")
        try:
            amount = round2(event.amount)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid payment amount: {event.amount!r}")
        if amount <= ZERO:
            raise ValidationError("Payment amount must be positive")

        try:
            result = self._apply(event, amount, as_utc(event.paid_at))
        except (DuplicateReferenceError, InvalidStateError) as e:
            self._record_rejection(event, amount, e)
            raise

        self._notify(result)
        return result

    def _apply(self, event: PaymentEvent, amount: Decimal, paid_at: datetime) -> ReconciliationResult:
        with self.repository.locked(event.program_id):
            with self.storage.atomic():
                program = self.repository.require(event.program_id)

                if program.has_reference(event.reference) or self.payments.exists(event.reference):
                    raise DuplicateReferenceError(event.reference)
                if program.status in (ProgramStatus.PENDING, ProgramStatus.REVOKED):
                    raise InvalidStateError(
                        f"Program {program.id} is {program.status.value} and cannot accept payments"
                    )
                if program.is_completed:
                    raise InvalidStateError(f"Program {program.id} is already fully paid")

                was_frozen = program.is_frozen

                program.amount_paid = program.amount_paid + amount
                program.payment_history.append(PaymentHistoryEntry(
                    amount=amount,
                    date=paid_at,
                    reference=event.reference,
                    status=HistoryStatus.SUCCESS
                ))

                if was_frozen:
                    self.lifecycle.unfreeze(program, now=paid_at)

                # Frozen ledgers restart their cadence from the payment, not
                # from the missed date.
                if program.is_completed or program.payment_schedule == PaymentSchedule.ONCE:
                    program.next_payment_date = None
                else:
                    program.next_payment_date = next_due_date(paid_at, program.payment_schedule)

                program.updated_at = utcnow()
                self.repository.save(program)

                payment = new_payment_record(
                    program_id=program.id,
                    user_id=event.user_id or program.user_id,
                    amount=amount,
                    reference=event.reference,
                    payment_date=paid_at,
                    payment_method=self.payment_method
                )
                self.payments.record(payment)

                self.audit_trail.log_event(
                    event_type=AuditEventType.PAYMENT_RECONCILED,
                    entity_type="program",
                    entity_id=program.id,
                    metadata={
                        "reference": event.reference,
                        "amount": amount,
                        "amount_paid": program.amount_paid,
                        "next_payment_date": program.next_payment_date
                    },
                    user_id=payment.user_id
                )
                if program.is_completed:
                    self.audit_trail.log_event(
                        event_type=AuditEventType.PROGRAM_COMPLETED,
                        entity_type="program",
                        entity_id=program.id,
                        metadata={
                            "amount_paid": program.amount_paid,
                            "total_amount": program.total_amount
                        },
                        user_id="system"
                    )

        log_action(logger, "info", f"Payment {event.reference} applied to program {program.id}",
                   user_id=payment.user_id, action="reconcile_payment", resource=program.id,
                   extra={"amount": str(amount), "completed": program.is_completed, "unfrozen": was_frozen})

        return ReconciliationResult(
            program=program,
            payment=payment,
            completed=program.is_completed,
            unfrozen=was_frozen
        )

    def _record_rejection(self, event: PaymentEvent, amount: Decimal, error: Exception) -> None:
        logger.warning(f"Payment {event.reference} rejected for program {event.program_id}: {error}")
        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_REJECTED,
            entity_type="program",
            entity_id=event.program_id,
            metadata={
                "reference": event.reference,
                "amount": amount,
                "reason": getattr(error, "code", type(error).__name__)
            },
            user_id=event.user_id
        )

    def _notify(self, result: ReconciliationResult) -> None:
        program = result.program
        data = {
            "user_name": program.user_name,
            "user_email": program.user_email,
            "program_name": program.program_name,
            "amount": result.payment.amount,
            "reference": result.payment.reference
        }
        self.notifications.notify(NotificationType.PAYMENT_CONFIRMED, data, recipient=program.user_email)
        self.notifications.notify(NotificationType.PAYMENT_MADE, data)

    def verify_and_reconcile(self, reference: str) -> ReconciliationResult:
        """
        Ask the gateway for the outcome of a charge and apply it.

        The program is taken from the charge metadata, falling back to the
        "<program_id>_<millis>" reference format used at initialization.

        Raises:
            UpstreamError: gateway failure or a non-successful charge
            ValidationError: the charge cannot be tied to a program
            plus everything reconcile() raises
        """
        if self.gateway is None:
            raise UpstreamError("No payment gateway configured", operation="verification")

        verification = self.gateway.verify_charge(reference)
        if not verification.is_successful:
            log_action(logger, "warning", f"Payment {reference} not successful: {verification.status}",
                       action="verify_payment", resource=reference)
            raise UpstreamError(
                f"Payment {reference} was not successful (status: {verification.status})",
                operation="verification"
            )

        metadata = verification.metadata or {}
        program_id = metadata.get("program_id") or metadata.get("programId")
        if not program_id and "_" in verification.reference:
            program_id = verification.reference.rsplit("_", 1)[0]
        if not program_id:
            raise ValidationError(f"Payment {reference} carries no program id")

        return self.reconcile(PaymentEvent(
            program_id=program_id,
            amount=verification.amount,
            reference=verification.reference,
            paid_at=verification.paid_at or utcnow(),
            user_id=metadata.get("user_id") or metadata.get("userId")
        ))
