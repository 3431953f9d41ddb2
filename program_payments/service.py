"""
Program Payment Service Module

Command entry points for learners, administrators and schedulers. The
service wires the components together, applies the authorization policy
and delegates every state change to the lifecycle engine or the
reconciler.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from .audit import AuditEventType, AuditTrail
from .authorization import SYSTEM_IDENTITY, AuthorizationPolicy, Identity, Permission
from .config import EduPayConfig, get_config
from .errors import ConflictError, InvalidStateError, ValidationError
from .gateway import MockPaymentGateway, PaymentGateway, PaystackClient
from .lifecycle import LifecycleEngine
from .logging_config import log_action
from .money import AmountLike
from .notifications import NotificationEngine, NotificationType
from .payments import PaymentRecord, PaymentStore
from .programs import Program, ProgramRepository, ProgramStatus
from .reconciliation import PaymentEvent, PaymentReconciler, ReconciliationResult
from .schedule import amount_due_now, installments_needed, progress_percent, remaining_balance, utcnow
from .storage import StorageInterface, create_storage
from .sweeps import OverdueSweeper, ReminderSweeper, SweepResult

logger = logging.getLogger("edupay.service")


@dataclass
class PaymentInitialization:
    """Checkout details handed back to the learner"""
    program_id: str
    reference: str
    amount: Decimal
    authorization_url: str
    access_code: str


class ProgramPaymentService:
    """Facade over the program payment components"""

    def __init__(
        self,
        storage: StorageInterface,
        gateway: PaymentGateway,
        notifications: NotificationEngine,
        policy: AuthorizationPolicy,
        cfg: Optional[EduPayConfig] = None
    ):
        self.config = cfg or get_config()
        self.storage = storage
        self.gateway = gateway
        self.notifications = notifications
        self.policy = policy

        self.programs = ProgramRepository(storage)
        self.payments = PaymentStore(storage)
        self.audit_trail = AuditTrail(storage)
        self.lifecycle = LifecycleEngine(
            self.programs, self.audit_trail, notifications,
            freeze_reason=self.config.freeze_reason
        )
        self.reconciler = PaymentReconciler(
            self.programs, self.payments, self.lifecycle, self.audit_trail, notifications,
            gateway=gateway, payment_method=self.config.payment_method
        )
        self.overdue_sweeper = OverdueSweeper(
            self.programs, self.lifecycle, self.audit_trail, batch_size=self.config.sweep_batch_size
        )
        self.reminder_sweeper = ReminderSweeper(
            self.programs, notifications, self.audit_trail, batch_size=self.config.sweep_batch_size
        )

    @classmethod
    def from_config(cls, cfg: Optional[EduPayConfig] = None,
                    storage: Optional[StorageInterface] = None,
                    gateway: Optional[PaymentGateway] = None) -> 'ProgramPaymentService':
        """Build a service from configuration"""
        cfg = cfg or get_config()
        storage = storage or create_storage(cfg.database_url, timeout=cfg.database_timeout)

        if gateway is None:
            if cfg.paystack_secret_key:
                gateway = PaystackClient(
                    secret_key=cfg.paystack_secret_key,
                    base_url=cfg.paystack_base_url,
                    timeout=cfg.paystack_timeout,
                    currency=cfg.currency_code,
                    callback_url=cfg.paystack_callback_url
                )
            else:
                logger.warning("No Paystack secret key configured; using the mock payment gateway")
                gateway = MockPaymentGateway()

        return cls(
            storage=storage,
            gateway=gateway,
            notifications=NotificationEngine.from_config(storage, cfg),
            policy=AuthorizationPolicy(cfg.admin_emails),
            cfg=cfg
        )

    def close(self) -> None:
        self.gateway.close()
        self.storage.close()

    def _owned_program(self, identity: Identity, program_id: str) -> Program:
        program = self.programs.require(program_id)
        self.policy.require_owner(identity, program)
        return program

    # Learner commands

    def welcome_learner(self, identity: Identity) -> None:
        """Greet a newly signed-up learner"""
        self.notifications.notify(NotificationType.WELCOME, {
            "user_name": identity.name or identity.email
        }, recipient=identity.email)

    def create_program(
        self,
        identity: Identity,
        program_name: str,
        cost_per_month: AmountLike,
        duration_months: int,
        payment_schedule: str,
        now: Optional[datetime] = None
    ) -> Program:
        self.policy.require(identity, Permission.CREATE_PROGRAM)
        return self.lifecycle.create(
            user_id=identity.user_id,
            user_email=identity.email,
            user_name=identity.name,
            program_name=program_name,
            cost_per_month=cost_per_month,
            duration_months=duration_months,
            payment_schedule=payment_schedule,
            now=now
        )

    def initialize_payment(self, identity: Identity, program_id: str,
                           now: Optional[datetime] = None) -> PaymentInitialization:
        """
        Open a gateway checkout for the installment currently due.

        Raises:
            NotFoundError: unknown program, or another learner's program
            InvalidStateError: program is pending, revoked, frozen or completed
            UpstreamError: gateway failure
        """
        self.policy.require(identity, Permission.PAY_PROGRAM)
        program = self._owned_program(identity, program_id)

        if program.status in (ProgramStatus.PENDING, ProgramStatus.REVOKED, ProgramStatus.FROZEN):
            raise InvalidStateError(f"Program {program.id} is {program.status.value}; payments are not open")
        if program.is_completed:
            raise InvalidStateError(f"Program {program.id} is already fully paid")

        now = now or utcnow()
        amount = amount_due_now(program)
        reference = f"{program.id}_{int(now.timestamp() * 1000)}"

        charge = self.gateway.initialize_charge(
            email=program.user_email or identity.email,
            amount=amount,
            reference=reference,
            metadata={
                "program_id": program.id,
                "user_id": program.user_id,
                "payment_schedule": program.payment_schedule.value
            }
        )

        self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_INITIALIZED,
            entity_type="program",
            entity_id=program.id,
            metadata={"reference": charge.reference, "amount": amount},
            user_id=identity.user_id
        )
        log_action(logger, "info", f"Payment {charge.reference} initialized for program {program.id}",
                   user_id=identity.user_id, action="initialize_payment", resource=program.id,
                   extra={"amount": str(amount)})

        return PaymentInitialization(
            program_id=program.id,
            reference=charge.reference,
            amount=amount,
            authorization_url=charge.authorization_url,
            access_code=charge.access_code
        )

    def get_program(self, identity: Identity, program_id: str) -> Program:
        self.policy.require(identity, Permission.VIEW_OWN_PROGRAMS)
        return self._owned_program(identity, program_id)

    def list_user_programs(self, identity: Identity) -> List[Program]:
        self.policy.require(identity, Permission.VIEW_OWN_PROGRAMS)
        return self.programs.find_by_user(identity.user_id)

    def get_payments(self, identity: Identity, program_id: str) -> List[PaymentRecord]:
        """Payment records of one program, oldest first"""
        self.policy.require(identity, Permission.VIEW_OWN_PROGRAMS)
        program = self._owned_program(identity, program_id)
        return self.payments.for_program(program.id)

    def get_progress(self, identity: Identity, program_id: str) -> Dict[str, Any]:
        """Progress-bar figures for one program"""
        self.policy.require(identity, Permission.VIEW_OWN_PROGRAMS)
        program = self._owned_program(identity, program_id)
        remaining = remaining_balance(program.total_amount, program.amount_paid)
        installment = amount_due_now(program)

        return {
            "program_id": program.id,
            "status": program.status.value,
            "total_amount": program.total_amount,
            "amount_paid": program.amount_paid,
            "remaining_balance": remaining,
            "progress_percent": progress_percent(program.amount_paid, program.total_amount),
            "next_installment": installment,
            "installments_remaining": installments_needed(remaining, installment) if remaining else 0,
            "next_payment_date": program.next_payment_date
        }

    # Payment confirmation

    def reconcile_payment(self, event: PaymentEvent) -> ReconciliationResult:
        """Apply a payment already verified by the gateway (webhook path)"""
        return self.reconciler.reconcile(event)

    def verify_payment(self, reference: str) -> ReconciliationResult:
        """Verify a charge with the gateway and apply it (callback path)"""
        return self.reconciler.verify_and_reconcile(reference)

    # Administrator commands

    def approve_program(self, identity: Identity, program_id: str,
                        now: Optional[datetime] = None) -> Program:
        self.policy.require(identity, Permission.APPROVE_PROGRAM)
        return self.lifecycle.approve(program_id, approver=identity.email or identity.user_id, now=now)

    def revoke_program(self, identity: Identity, program_id: str,
                       now: Optional[datetime] = None) -> Program:
        self.policy.require(identity, Permission.REVOKE_PROGRAM)
        return self.lifecycle.revoke(program_id, actor=identity.email or identity.user_id, now=now)

    def delete_program(self, identity: Identity, program_id: str) -> Program:
        """
        Permanently delete a program.

        Raises:
            AuthorizationError: caller is not an administrator
            ConflictError: program is still pending (approve or revoke it first)
        """
        self.policy.require(identity, Permission.DELETE_PROGRAM)
        program = self.programs.require(program_id)
        if not self.policy.can_delete(identity, program):
            raise ConflictError(f"Program {program.id} is pending; approve or revoke it before deleting")
        return self.lifecycle.delete(program_id, actor=identity.email or identity.user_id)

    def send_reminder(self, identity: Identity, program_id: str) -> bool:
        self.policy.require(identity, Permission.SEND_REMINDER)
        return bool(self.reminder_sweeper.remind(program_id, actor=identity.email or identity.user_id))

    def list_programs(self, identity: Identity,
                      status: Optional[Union[str, ProgramStatus]] = None) -> List[Program]:
        """All programs, newest first, optionally filtered by status"""
        self.policy.require(identity, Permission.VIEW_ALL_PROGRAMS)
        if status is None or status == "all":
            return self.programs.list_all()
        if not isinstance(status, ProgramStatus):
            try:
                status = ProgramStatus(str(status).lower())
            except ValueError:
                raise ValidationError(f"Unknown program status: {status}")
        return self.programs.find_by_status(status)

    def get_stats(self, identity: Identity) -> Dict[str, Any]:
        """Dashboard figures: users, programs, revenue and the latest payments"""
        self.policy.require(identity, Permission.VIEW_STATS)
        programs = self.programs.list_all()
        by_id = {program.id: program for program in programs}

        recent = []
        for payment in self.payments.recent(self.config.recent_payments_limit):
            program = by_id.get(payment.program_id)
            recent.append({
                "reference": payment.reference,
                "amount": payment.amount,
                "status": payment.status.value,
                "payment_date": payment.payment_date,
                "program_id": payment.program_id,
                "user_name": program.user_name if program else "Unknown User",
                "program_name": program.program_name if program else "Unknown Program"
            })

        return {
            "total_users": len({program.user_id for program in programs}),
            "total_programs": len(programs),
            "active_programs": sum(1 for program in programs if not program.is_completed),
            "total_revenue": self.payments.total_revenue(),
            "recent_payments": recent
        }

    # Scheduled jobs

    def sweep_overdue(self, now: Optional[datetime] = None,
                      identity: Identity = SYSTEM_IDENTITY) -> SweepResult:
        self.policy.require(identity, Permission.RUN_SWEEPS)
        return self.overdue_sweeper.sweep(now)

    def sweep_reminders(self, today: Optional[Union[date, datetime]] = None,
                        identity: Identity = SYSTEM_IDENTITY) -> SweepResult:
        self.policy.require(identity, Permission.RUN_SWEEPS)
        return self.reminder_sweeper.sweep(today)
