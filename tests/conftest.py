"""
Shared fixtures for the program payments test suite
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from program_payments.audit import AuditTrail
from program_payments.authorization import AuthorizationPolicy, Identity
from program_payments.config import EduPayConfig
from program_payments.gateway import MockPaymentGateway
from program_payments.lifecycle import LifecycleEngine
from program_payments.notifications import (
    ChannelProvider, Notification, NotificationChannel, NotificationEngine
)
from program_payments.payments import PaymentStore
from program_payments.programs import ProgramRepository
from program_payments.reconciliation import PaymentEvent, PaymentReconciler
from program_payments.service import ProgramPaymentService
from program_payments.storage import InMemoryStorage


ADMIN_EMAIL = "admin@edupay.test"
LEARNER_EMAIL = "ada@learners.test"


class RecordingChannelProvider(ChannelProvider):
    """Channel provider that records instead of delivering"""

    def __init__(self, should_succeed: bool = True, fail_for=()):
        self.should_succeed = should_succeed
        self.fail_for = set(fail_for)
        self.sent_notifications = []

    async def send(self, notification: Notification) -> bool:
        self.sent_notifications.append(notification)
        if notification.recipient_address in self.fail_for:
            return False
        return self.should_succeed

    def of_type(self, notification_type):
        return [n for n in self.sent_notifications if n.notification_type == notification_type]


def utc(year, month, day, hour=0, minute=0):
    return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def recorder():
    return RecordingChannelProvider()


@pytest.fixture
def notifications(storage, recorder):
    return NotificationEngine(
        storage,
        admin_recipients=[ADMIN_EMAIL],
        providers={NotificationChannel.LOG: recorder}
    )


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def repository(storage):
    return ProgramRepository(storage)


@pytest.fixture
def payment_store(storage):
    return PaymentStore(storage)


@pytest.fixture
def lifecycle(repository, audit_trail, notifications):
    return LifecycleEngine(repository, audit_trail, notifications)


@pytest.fixture
def gateway():
    return MockPaymentGateway()


@pytest.fixture
def reconciler(repository, payment_store, lifecycle, audit_trail, notifications, gateway):
    return PaymentReconciler(repository, payment_store, lifecycle, audit_trail, notifications, gateway=gateway)


@pytest.fixture
def learner():
    return Identity(user_id="user_ada", email=LEARNER_EMAIL, name="Ada Obi")


@pytest.fixture
def other_learner():
    return Identity(user_id="user_bayo", email="bayo@learners.test", name="Bayo Ade")


@pytest.fixture
def admin():
    return Identity(user_id="user_admin", email=ADMIN_EMAIL, name="Admin")


@pytest.fixture
def service(storage, gateway, notifications):
    return ProgramPaymentService(
        storage=storage,
        gateway=gateway,
        notifications=notifications,
        policy=AuthorizationPolicy([ADMIN_EMAIL]),
        cfg=EduPayConfig()
    )


@pytest.fixture
def make_program(lifecycle):
    """Create (and optionally approve) a program for the default learner"""

    def _make(cost_per_month="30000", duration_months=6, payment_schedule="monthly",
              approved=True, user_id="user_ada", user_email=LEARNER_EMAIL,
              created=None, approved_at=None):
        program = lifecycle.create(
            user_id=user_id,
            user_email=user_email,
            user_name="Ada Obi",
            program_name="Data Science Bootcamp",
            cost_per_month=cost_per_month,
            duration_months=duration_months,
            payment_schedule=payment_schedule,
            now=created or utc(2024, 1, 1)
        )
        if approved:
            program = lifecycle.approve(program.id, approver=ADMIN_EMAIL, now=approved_at or utc(2024, 1, 2))
        return program

    return _make


@pytest.fixture
def pay(reconciler):
    """Apply a verified payment"""

    def _pay(program_id, amount, paid_at, reference=None):
        reference = reference or f"{program_id}_{int(paid_at.timestamp() * 1000)}"
        return reconciler.reconcile(PaymentEvent(
            program_id=program_id,
            amount=Decimal(str(amount)),
            reference=reference,
            paid_at=paid_at
        ))

    return _pay
