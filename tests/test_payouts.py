"""
Tests for the tournament payment projection and two-installment payouts
"""
from datetime import timedelta

import pytest

from models import db, AuditLogEntry, LedgerEntry, Notification, Tournament, TournamentPayment, current_date
from settlement import fee_lock, ledger, payouts, verification
from settlement.errors import AlreadyPaid, InvalidState, NotFound, NotYetDue, ValidationError


class TestMarkPaid:

    def test_installment_one_after_start(self, settled_past_tournament, admin_user, organizer_user):
        tournament = settled_past_tournament
        payment = payouts.mark_paid(tournament.id, 1, 'UPI ref 123', admin_user.id)
        assert payment.payout_1_status == 'paid'
        assert payment.payout_1_paid_by == admin_user.id
        assert payment.payout_1_notes == 'UPI ref 123'
        assert payment.payout_1_paid_at is not None

        entry = ledger.latest_entry('user', organizer_user.id)
        assert entry.entry_type == 'DEBIT'
        assert entry.category == 'ORGANIZER_PAYOUT'
        assert entry.amount == 285
        assert AuditLogEntry.query.filter_by(action='PAYOUT_MARKED_PAID').count() == 1
        assert Notification.query.filter_by(user_id=organizer_user.id, kind='payout').count() == 1

    def test_second_call_is_already_paid(self, settled_past_tournament, admin_user):
        payouts.mark_paid(settled_past_tournament.id, 1, None, admin_user.id)
        entries_before = LedgerEntry.query.count()
        with pytest.raises(AlreadyPaid):
            payouts.mark_paid(settled_past_tournament.id, 1, None, admin_user.id)
        assert LedgerEntry.query.count() == entries_before
        payment = payouts.get_tournament_payment(settled_past_tournament.id)
        assert payment.payout_1_status == 'paid'

    def test_not_yet_due(self, paid_registration, future_tournament, admin_user):
        with pytest.raises(NotYetDue) as excinfo:
            payouts.mark_paid(future_tournament.id, 1, None, admin_user.id)
        assert excinfo.value.code == 'NOT_YET_DUE'
        assert excinfo.value.details['due_date'] == future_tournament.start_date.isoformat()
        payment = payouts.get_tournament_payment(future_tournament.id)
        assert payment.payout_1_status == 'pending'

    def test_installment_two_due_on_end_date(self, paid_registration, future_tournament, admin_user):
        with pytest.raises(NotYetDue):
            payouts.mark_paid(
                future_tournament.id, 2, None, admin_user.id, as_of=future_tournament.end_date - timedelta(days=1)
            )
        payment = payouts.mark_paid(future_tournament.id, 2, None, admin_user.id, as_of=future_tournament.end_date)
        assert payment.payout_2_status == 'paid'
        assert payment.payout_2_amount == 665

    def test_both_installments_sum_to_organizer_share(self, settled_past_tournament, admin_user, organizer_user):
        payouts.mark_paid(settled_past_tournament.id, 1, None, admin_user.id)
        payment = payouts.mark_paid(settled_past_tournament.id, 2, None, admin_user.id)
        assert payment.payout_1_amount + payment.payout_2_amount == payment.organizer_share == 950
        assert ledger.balance('user', organizer_user.id) == -950

    def test_invalid_installment(self, settled_past_tournament, admin_user):
        with pytest.raises(ValidationError):
            payouts.mark_paid(settled_past_tournament.id, 3, None, admin_user.id)

    def test_no_payment_record(self, past_tournament, admin_user):
        with pytest.raises(NotFound):
            payouts.mark_paid(past_tournament.id, 1, None, admin_user.id)


class TestProjection:

    def test_paid_installment_is_frozen(self, settled_past_tournament, past_category, admin_user, player_user2):
        tournament = settled_past_tournament
        payouts.mark_paid(tournament.id, 1, None, admin_user.id)

        # A late approval grows the pot; installment 2 absorbs the change
        entry = fee_lock.register_player(past_category.id, player_user2.id)
        submitted = verification.submit_payment(entry.id, 'uploads/late.png', 1000)
        verification.approve_payment(submitted.id, admin_user.id)

        payment = payouts.get_tournament_payment(tournament.id)
        assert payment.total_collected == 2000
        assert payment.organizer_share == 1900
        assert payment.payout_1_amount == 285
        assert payment.payout_2_amount == 1615

    def test_unpaid_first_installment_absorbs_changes(self, settled_past_tournament, past_category, admin_user, player_user2):
        tournament = settled_past_tournament
        payouts.mark_paid(tournament.id, 2, None, admin_user.id)

        entry = fee_lock.register_player(past_category.id, player_user2.id)
        submitted = verification.submit_payment(entry.id, 'uploads/late.png', 1000)
        verification.approve_payment(submitted.id, admin_user.id)

        payment = payouts.get_tournament_payment(tournament.id)
        assert payment.organizer_share == 1900
        assert payment.payout_2_amount == 665
        assert payment.payout_1_amount == 1235

    def test_refresh_refuses_to_change_settled_payouts(self, settled_past_tournament, admin_user):
        tournament = settled_past_tournament
        payouts.mark_paid(tournament.id, 1, None, admin_user.id)
        payouts.mark_paid(tournament.id, 2, None, admin_user.id)

        ledger.post_entry('tournament', tournament.id, 'DEBIT', 100, 'REFUND', 'manual', tournament_id=tournament.id)
        with pytest.raises(InvalidState):
            payouts.refresh_tournament_payment(tournament.id)
        db.session.rollback()

    def test_projection_created_on_first_refresh(self, future_tournament):
        payment = payouts.refresh_tournament_payment(future_tournament.id)
        db.session.commit()
        assert payment.total_collected == 0
        assert payment.payout_1_status == payment.payout_2_status == 'pending'

    def test_overview(self, settled_past_tournament, admin_user):
        payouts.mark_paid(settled_past_tournament.id, 1, None, admin_user.id)
        overview = payouts.payout_overview()
        assert overview == {
            'total_collected': 1000,
            'platform_fees': 50,
            'organizer_share': 950,
            'total_paid': 285,
            'total_pending': 665,
        }


class TestListOverdue:

    def test_overdue_detection_scenario(self, paid_registration, future_tournament):
        # Tournament started yesterday, installment 1 still pending
        future_tournament.start_date = current_date() - timedelta(days=1)
        future_tournament.end_date = current_date() + timedelta(days=1)
        db.session.commit()

        overdue = payouts.list_overdue(current_date())
        assert len(overdue) == 1
        assert overdue[0]['tournament_id'] == future_tournament.id
        assert [i['installment'] for i in overdue[0]['installments']] == [1]
        assert overdue[0]['installments'][0]['days_overdue'] == 1

    def test_not_overdue_on_start_date(self, paid_registration, future_tournament):
        assert payouts.list_overdue(future_tournament.start_date) == []
        assert len(payouts.list_overdue(future_tournament.start_date + timedelta(days=1))) == 1

    def test_grace_period_for_installment_two(self, paid_registration, future_tournament):
        end = future_tournament.end_date
        within_grace = payouts.list_overdue(end + timedelta(days=7))
        assert [i['installment'] for i in within_grace[0]['installments']] == [1]
        after_grace = payouts.list_overdue(end + timedelta(days=8))
        assert [i['installment'] for i in after_grace[0]['installments']] == [1, 2]
        assert payouts.list_overdue(end + timedelta(days=8), grace_days=30)[0]['installments'][-1]['installment'] == 1

    def test_paid_installments_drop_out(self, settled_past_tournament, admin_user):
        payouts.mark_paid(settled_past_tournament.id, 1, None, admin_user.id)
        payouts.mark_paid(settled_past_tournament.id, 2, None, admin_user.id)
        assert payouts.list_overdue() == []

    def test_read_only(self, settled_past_tournament):
        before = payouts.get_tournament_payment(settled_past_tournament.id).to_dict()
        payouts.list_overdue()
        assert payouts.get_tournament_payment(settled_past_tournament.id).to_dict() == before


class TestSweepOverdue:

    def test_notifies_admins_once_per_day(self, settled_past_tournament, admin_user):
        queued = payouts.sweep_overdue()
        # Past tournament is overdue for both installments
        assert queued == 2
        assert payouts.sweep_overdue() == 0
        assert Notification.query.filter_by(user_id=admin_user.id, kind='payout_overdue').count() == 2

    def test_nothing_overdue(self, paid_registration):
        assert payouts.sweep_overdue() == 0

    def test_sweep_does_not_touch_payments(self, settled_past_tournament):
        payouts.sweep_overdue()
        payment = TournamentPayment.query.filter_by(tournament_id=settled_past_tournament.id).one()
        assert payment.payout_1_status == payment.payout_2_status == 'pending'
        assert db.session.get(Tournament, settled_past_tournament.id).status == 'published'
