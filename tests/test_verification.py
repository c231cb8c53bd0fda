"""
Tests for the proof-of-payment verification workflow
"""
import pytest

from models import db, AuditLogEntry, LedgerEntry, Notification, PaymentVerification, Registration, TournamentPayment
from settlement import ledger, verification
from settlement.errors import (
    AlreadyFinalized,
    AmountMismatch,
    InvalidAmount,
    InvalidState,
    MissingReason,
    NotFound,
    ValidationError,
)


@pytest.fixture
def submitted(registration):
    return verification.submit_payment(registration.id, 'uploads/receipt.png', 1000)


class TestSubmitPayment:

    def test_submit_creates_pending_verification(self, registration):
        submitted = verification.submit_payment(registration.id, 'uploads/receipt.png', 1000)
        assert submitted.status == 'pending'
        assert submitted.amount == 1000
        assert db.session.get(Registration, registration.id).payment_status == 'submitted'

    def test_amount_must_match_snapshot(self, registration, category):
        # Comparison basis is the snapshot even if the category fee moved
        category.entry_fee = 1500
        db.session.commit()
        with pytest.raises(AmountMismatch) as excinfo:
            verification.submit_payment(registration.id, 'uploads/receipt.png', 1500)
        assert excinfo.value.details['amount_total'] == 1000

    @pytest.mark.parametrize('amount', [0, -1000, '1000', None])
    def test_invalid_amount(self, registration, amount):
        with pytest.raises(InvalidAmount):
            verification.submit_payment(registration.id, 'uploads/receipt.png', amount)

    def test_screenshot_required(self, registration):
        with pytest.raises(ValidationError):
            verification.submit_payment(registration.id, '  ', 1000)

    def test_one_pending_at_a_time(self, submitted, registration):
        with pytest.raises(InvalidState):
            verification.submit_payment(registration.id, 'uploads/second.png', 1000)

    def test_registration_already_in_review_is_not_claimed_twice(self, registration):
        # Another submission moved the registration into review but its row is not visible yet
        Registration.query.filter_by(id=registration.id).update(
            {'payment_status': 'submitted'}, synchronize_session=False
        )
        db.session.commit()
        with pytest.raises(InvalidState):
            verification.submit_payment(registration.id, 'uploads/receipt.png', 1000)
        assert PaymentVerification.query.count() == 0

    def test_completed_payment_cannot_be_resubmitted(self, paid_registration):
        with pytest.raises(AlreadyFinalized):
            verification.submit_payment(paid_registration.id, 'uploads/again.png', 1000)

    def test_resubmit_after_rejection(self, submitted, registration, admin_user):
        verification.reject_payment(submitted.id, admin_user.id, 'Screenshot is blurry')
        again = verification.submit_payment(registration.id, 'uploads/clear.png', 1000)
        assert again.status == 'pending'

    def test_unknown_registration(self, flask_app):
        with pytest.raises(NotFound):
            verification.submit_payment(404, 'uploads/receipt.png', 1000)


class TestApprovePayment:

    def test_settlement_scenario(self, submitted, registration, admin_user, future_tournament):
        verification.approve_payment(submitted.id, admin_user.id)

        refreshed = db.session.get(Registration, registration.id)
        assert refreshed.status == 'confirmed'
        assert refreshed.payment_status == 'completed'

        payment = TournamentPayment.query.filter_by(tournament_id=future_tournament.id).one()
        assert payment.total_collected == 1000
        assert payment.platform_fee_amount == 50
        assert payment.organizer_share == 950
        assert payment.payout_1_amount == 285
        assert payment.payout_2_amount == 665
        assert payment.total_registrations == 1

    def test_posts_credits_to_both_accounts(self, submitted, registration, admin_user, future_tournament, player_user):
        verification.approve_payment(submitted.id, admin_user.id)
        assert ledger.balance('tournament', future_tournament.id) == 1000
        assert ledger.balance('user', player_user.id) == 1000
        entry = ledger.latest_entry('tournament', future_tournament.id)
        assert entry.category == 'TOURNAMENT_ENTRY'
        assert entry.registration_id == registration.id
        assert entry.actor_id == admin_user.id

    def test_audit_and_notification(self, submitted, admin_user, player_user):
        verification.approve_payment(
            submitted.id, admin_user.id, audit_context={'ip_address': '127.0.0.1', 'user_agent': 'pytest'}
        )
        entry = AuditLogEntry.query.filter_by(action='PAYMENT_APPROVED').one()
        assert entry.entity_type == 'payment_verification'
        assert entry.details['amount'] == 1000
        assert entry.user_agent == 'pytest'
        assert Notification.query.filter_by(user_id=player_user.id, kind='payment_approved').count() == 1

    def test_approve_twice_posts_once(self, submitted, admin_user):
        verification.approve_payment(submitted.id, admin_user.id)
        with pytest.raises(AlreadyFinalized):
            verification.approve_payment(submitted.id, admin_user.id)
        assert LedgerEntry.query.count() == 2
        assert AuditLogEntry.query.filter_by(action='PAYMENT_APPROVED').count() == 1
        assert db.session.get(PaymentVerification, submitted.id).status == 'approved'

    def test_reject_after_approve_is_refused(self, submitted, admin_user):
        verification.approve_payment(submitted.id, admin_user.id)
        with pytest.raises(AlreadyFinalized):
            verification.reject_payment(submitted.id, admin_user.id, 'Changed my mind')
        assert db.session.get(PaymentVerification, submitted.id).status == 'approved'

    def test_cannot_approve_for_cancelled_registration(self, submitted, registration, admin_user):
        registration.status = 'cancelled'
        db.session.commit()
        with pytest.raises(InvalidState):
            verification.approve_payment(submitted.id, admin_user.id)
        assert LedgerEntry.query.count() == 0

    def test_second_pending_verification_cannot_credit_again(self, submitted, registration, admin_user, future_tournament):
        # Two racing submissions can each leave a pending row behind
        duplicate = PaymentVerification(
            registration_id=registration.id, screenshot_ref='uploads/dup.png', amount=1000, status='pending'
        )
        db.session.add(duplicate)
        db.session.commit()

        verification.approve_payment(submitted.id, admin_user.id)
        with pytest.raises(AlreadyFinalized):
            verification.approve_payment(duplicate.id, admin_user.id)

        assert ledger.balance('tournament', future_tournament.id) == 1000
        assert LedgerEntry.query.count() == 2
        assert db.session.get(PaymentVerification, duplicate.id).status == 'pending'
        assert TournamentPayment.query.filter_by(tournament_id=future_tournament.id).one().total_collected == 1000

        # Clearing the leftover row keeps the settled payment intact
        verification.reject_payment(duplicate.id, admin_user.id, 'Duplicate submission')
        assert db.session.get(Registration, registration.id).payment_status == 'completed'

    def test_failure_mid_operation_leaves_nothing_behind(self, submitted, registration, admin_user, monkeypatch):
        def broken_refresh(tournament_id):
            raise RuntimeError('store went away')

        monkeypatch.setattr(verification, 'refresh_tournament_payment', broken_refresh)
        with pytest.raises(RuntimeError):
            verification.approve_payment(submitted.id, admin_user.id)

        assert db.session.get(PaymentVerification, submitted.id).status == 'pending'
        assert db.session.get(Registration, registration.id).payment_status == 'submitted'
        assert LedgerEntry.query.count() == 0
        assert AuditLogEntry.query.count() == 0


class TestRejectPayment:

    def test_reject(self, submitted, registration, admin_user, player_user):
        verification.reject_payment(submitted.id, admin_user.id, 'Amount not received')
        refreshed = db.session.get(PaymentVerification, submitted.id)
        assert refreshed.status == 'rejected'
        assert refreshed.rejection_reason == 'Amount not received'
        assert db.session.get(Registration, registration.id).payment_status == 'failed'
        assert db.session.get(Registration, registration.id).status == 'pending'
        assert LedgerEntry.query.count() == 0
        assert AuditLogEntry.query.filter_by(action='PAYMENT_REJECTED').count() == 1
        assert Notification.query.filter_by(user_id=player_user.id, kind='payment_rejected').count() == 1

    def test_reason_required(self, submitted, admin_user):
        with pytest.raises(MissingReason):
            verification.reject_payment(submitted.id, admin_user.id, '   ')
        assert db.session.get(PaymentVerification, submitted.id).status == 'pending'

    def test_reject_twice(self, submitted, admin_user):
        verification.reject_payment(submitted.id, admin_user.id, 'Blurry')
        with pytest.raises(AlreadyFinalized):
            verification.reject_payment(submitted.id, admin_user.id, 'Blurry')
        assert AuditLogEntry.query.filter_by(action='PAYMENT_REJECTED').count() == 1


class TestReviewQueue:

    def test_pending_and_stats(self, submitted, registration, admin_user, future_tournament):
        assert [v.id for v in verification.pending_verifications()] == [submitted.id]
        assert [v.id for v in verification.pending_verifications(future_tournament.id)] == [submitted.id]
        assert verification.pending_verifications(future_tournament.id + 100) == []

        verification.approve_payment(submitted.id, admin_user.id)
        stats = verification.verification_stats()
        assert stats['pending'] == 0
        assert stats['approved'] == 1
        assert stats['approved_amount'] == 1000
