"""
Integration tests for the program payment service

Drives the whole flow through the facade: registration, approval,
checkout, verification, sweeps and the admin dashboard.
"""

import pytest
from decimal import Decimal

from program_payments.authorization import Identity
from program_payments.config import EduPayConfig
from program_payments.errors import (
    AuthorizationError, ConflictError, InvalidStateError, NotFoundError, ValidationError
)
from program_payments.gateway import MockPaymentGateway
from program_payments.notifications import NotificationType
from program_payments.programs import ProgramStatus
from program_payments.reconciliation import PaymentEvent
from program_payments.service import ProgramPaymentService
from program_payments.storage import InMemoryStorage

from conftest import ADMIN_EMAIL, LEARNER_EMAIL, utc


@pytest.fixture
def approved(service, learner, admin):
    program = service.create_program(learner, "Data Science Bootcamp", "30000", 6, "monthly",
                                     now=utc(2024, 1, 1))
    return service.approve_program(admin, program.id, now=utc(2024, 1, 2))


class TestProgramCommands:
    """Test learner and admin program commands"""

    def test_create_uses_identity(self, service, learner):
        program = service.create_program(learner, "UX Design", "15000", 3, "weekly")

        assert program.user_id == learner.user_id
        assert program.user_email == LEARNER_EMAIL
        assert program.user_name == "Ada Obi"
        assert program.status == ProgramStatus.PENDING

    def test_create_invalid(self, service, learner):
        with pytest.raises(ValidationError):
            service.create_program(learner, "UX Design", "15000", 3, "fortnightly")

    def test_learner_cannot_approve(self, service, learner):
        program = service.create_program(learner, "UX Design", "15000", 3, "weekly")

        with pytest.raises(AuthorizationError):
            service.approve_program(learner, program.id)

    def test_approve_records_admin(self, approved):
        assert approved.status == ProgramStatus.APPROVED
        assert approved.approved_by == ADMIN_EMAIL

    def test_revoke(self, service, approved, admin):
        revoked = service.revoke_program(admin, approved.id)
        assert revoked.status == ProgramStatus.REVOKED

    def test_delete_pending_refused(self, service, learner, admin):
        program = service.create_program(learner, "UX Design", "15000", 3, "weekly")

        with pytest.raises(ConflictError):
            service.delete_program(admin, program.id)

    def test_delete_approved(self, service, approved, admin, recorder):
        service.delete_program(admin, approved.id)

        with pytest.raises(NotFoundError):
            service.get_program(admin, approved.id)
        assert recorder.of_type(NotificationType.PROGRAM_DELETED)

    def test_learner_cannot_delete(self, service, approved, learner):
        with pytest.raises(AuthorizationError):
            service.delete_program(learner, approved.id)

    def test_welcome(self, service, learner, recorder):
        service.welcome_learner(learner)

        welcome = recorder.of_type(NotificationType.WELCOME)
        assert [n.recipient_address for n in welcome] == [LEARNER_EMAIL]
        assert "Ada Obi" in welcome[0].subject


class TestInitializePayment:
    """Test gateway checkout creation"""

    def test_initialize(self, service, approved, learner, gateway):
        checkout = service.initialize_payment(learner, approved.id, now=utc(2024, 1, 15))

        assert checkout.amount == Decimal('30000.00')
        assert checkout.reference == f"{approved.id}_1705276800000"
        charge = gateway.charges[checkout.reference]
        assert charge["amount_minor"] == 3000000
        assert charge["metadata"] == {
            "program_id": approved.id,
            "user_id": learner.user_id,
            "payment_schedule": "monthly"
        }

    def test_initialize_final_installment_capped(self, service, learner, admin):
        program = service.create_program(learner, "Short Course", "100", 6, "monthly")
        service.approve_program(admin, program.id)
        service.reconcile_payment(PaymentEvent(program.id, Decimal('550'), "ref_bulk", utc(2024, 1, 15)))

        checkout = service.initialize_payment(learner, program.id)

        assert checkout.amount == Decimal('50.00')

    def test_pending_refused(self, service, learner):
        program = service.create_program(learner, "UX Design", "15000", 3, "weekly")

        with pytest.raises(InvalidStateError):
            service.initialize_payment(learner, program.id)

    def test_frozen_refused(self, service, approved, learner):
        service.reconcile_payment(PaymentEvent(approved.id, Decimal('30000'), "ref_1", utc(2024, 1, 15)))
        service.sweep_overdue(utc(2024, 3, 1))

        with pytest.raises(InvalidStateError):
            service.initialize_payment(learner, approved.id)

    def test_completed_refused(self, service, approved, learner):
        service.reconcile_payment(PaymentEvent(approved.id, Decimal('180000'), "ref_all", utc(2024, 1, 15)))

        with pytest.raises(InvalidStateError):
            service.initialize_payment(learner, approved.id)

    def test_other_learner_sees_not_found(self, service, approved, other_learner):
        with pytest.raises(NotFoundError):
            service.initialize_payment(other_learner, approved.id)


class TestVerifyPayment:
    """Test the full checkout -> verify round trip"""

    def test_checkout_then_verify(self, service, approved, learner, gateway, recorder):
        checkout = service.initialize_payment(learner, approved.id)
        gateway.set_outcome(checkout.reference, paid_at=utc(2024, 1, 15))

        result = service.verify_payment(checkout.reference)

        assert result.program.amount_paid == Decimal('30000.00')
        assert result.program.next_payment_date == utc(2024, 2, 15)
        assert [p.reference for p in service.get_payments(learner, approved.id)] == [checkout.reference]
        assert recorder.of_type(NotificationType.PAYMENT_CONFIRMED)

    def test_frozen_learner_recovers_by_payment(self, service, approved, gateway):
        service.reconcile_payment(PaymentEvent(approved.id, Decimal('30000'), "ref_1", utc(2024, 1, 15)))
        service.sweep_overdue(utc(2024, 3, 1))

        result = service.reconcile_payment(
            PaymentEvent(approved.id, Decimal('30000'), "ref_2", utc(2024, 3, 4))
        )

        assert result.unfrozen
        assert result.program.status == ProgramStatus.APPROVED
        assert result.program.next_payment_date == utc(2024, 4, 4)


class TestQueries:
    """Test read-side commands"""

    def test_get_program_owner_only(self, service, approved, learner, other_learner):
        assert service.get_program(learner, approved.id).id == approved.id

        with pytest.raises(NotFoundError):
            service.get_program(other_learner, approved.id)

    def test_list_user_programs(self, service, approved, learner, other_learner):
        service.create_program(other_learner, "Cloud Basics", "5000", 2, "monthly")

        assert [p.id for p in service.list_user_programs(learner)] == [approved.id]

    def test_progress(self, service, approved, learner):
        service.reconcile_payment(PaymentEvent(approved.id, Decimal('30000'), "ref_a", utc(2024, 1, 15)))

        progress = service.get_progress(learner, approved.id)

        assert progress["amount_paid"] == Decimal('30000.00')
        assert progress["remaining_balance"] == Decimal('150000.00')
        assert progress["progress_percent"] == Decimal('16.67')
        assert progress["next_installment"] == Decimal('30000.00')
        assert progress["installments_remaining"] == 5
        assert progress["next_payment_date"] == utc(2024, 2, 15)

    def test_progress_when_paid_off(self, service, approved, learner):
        service.reconcile_payment(PaymentEvent(approved.id, Decimal('180000'), "ref_all", utc(2024, 1, 15)))

        progress = service.get_progress(learner, approved.id)

        assert progress["progress_percent"] == Decimal('100.00')
        assert progress["installments_remaining"] == 0

    def test_progress_owner_only(self, service, approved, other_learner):
        with pytest.raises(NotFoundError):
            service.get_progress(other_learner, approved.id)

    def test_list_programs_by_status(self, service, approved, learner, admin):
        pending = service.create_program(learner, "UX Design", "15000", 3, "weekly")

        assert {p.id for p in service.list_programs(admin)} == {approved.id, pending.id}
        assert [p.id for p in service.list_programs(admin, "pending")] == [pending.id]
        assert [p.id for p in service.list_programs(admin, ProgramStatus.APPROVED)] == [approved.id]

    def test_list_programs_bad_status(self, service, admin):
        with pytest.raises(ValidationError):
            service.list_programs(admin, "archived")

    def test_list_programs_requires_admin(self, service, learner):
        with pytest.raises(AuthorizationError):
            service.list_programs(learner)

    def test_stats(self, service, approved, learner, other_learner, admin):
        other = service.create_program(other_learner, "Cloud Basics", "5000", 1, "monthly")
        service.approve_program(admin, other.id)
        service.reconcile_payment(PaymentEvent(approved.id, Decimal('30000'), "ref_a", utc(2024, 1, 15)))
        service.reconcile_payment(PaymentEvent(other.id, Decimal('5000'), "ref_b", utc(2024, 1, 16)))

        stats = service.get_stats(admin)

        assert stats["total_users"] == 2
        assert stats["total_programs"] == 2
        assert stats["active_programs"] == 1
        assert stats["total_revenue"] == Decimal('35000.00')
        assert {p["reference"] for p in stats["recent_payments"]} == {"ref_a", "ref_b"}
        names = {p["reference"]: p["user_name"] for p in stats["recent_payments"]}
        assert names["ref_b"] == "Bayo Ade"

    def test_stats_survive_deletion(self, service, approved, admin):
        service.reconcile_payment(PaymentEvent(approved.id, Decimal('30000'), "ref_a", utc(2024, 1, 15)))
        service.delete_program(admin, approved.id)

        stats = service.get_stats(admin)

        assert stats["total_revenue"] == Decimal('30000.00')
        assert stats["recent_payments"][0]["program_name"] == "Unknown Program"


class TestReminders:
    """Test reminder commands"""

    def test_send_reminder(self, service, approved, admin, recorder):
        assert service.send_reminder(admin, approved.id)
        assert recorder.of_type(NotificationType.PAYMENT_REMINDER)

    def test_send_reminder_completed(self, service, approved, admin):
        service.reconcile_payment(PaymentEvent(approved.id, Decimal('180000'), "ref_all", utc(2024, 1, 15)))

        with pytest.raises(InvalidStateError):
            service.send_reminder(admin, approved.id)

    def test_sweeps_require_permission(self, service, learner):
        with pytest.raises(AuthorizationError):
            service.sweep_reminders(identity=learner)

    def test_sweep_reminders(self, service, approved):
        service.reconcile_payment(PaymentEvent(approved.id, Decimal('30000'), "ref_a", utc(2024, 1, 15)))

        result = service.sweep_reminders(utc(2024, 2, 15, 8))

        assert result.reminded == 1


class TestFromConfig:
    """Test wiring from configuration"""

    def test_mock_gateway_without_secret(self):
        cfg = EduPayConfig(database_url="memory://", paystack_secret_key="", admin_emails=[ADMIN_EMAIL])
        service = ProgramPaymentService.from_config(cfg)

        assert isinstance(service.storage, InMemoryStorage)
        assert isinstance(service.gateway, MockPaymentGateway)
        assert service.policy.is_admin(Identity("u1", email=ADMIN_EMAIL))
        service.close()
