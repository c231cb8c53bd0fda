"""Tournament payment projection and the two-installment organizer payout.

The ``TournamentPayment`` row is a projection of the tournament's ledger
account. It is rebuilt inside the same transaction as every ledger write to
that account, so ``total_collected`` is always net of refunds when a payout
is computed.

Installment 1 (pre-event) is due on the tournament's start date and
installment 2 (post-event) on its end date. Paying is one-directional.
"""
import logging
from datetime import date, datetime, timedelta

from flask import current_app
from sqlalchemy import func

from models import db, Notification, Registration, Tournament, TournamentPayment, User, current_date, current_time
from settlement import audit, ledger
from settlement.audit import AuditAction
from settlement.errors import AlreadyPaid, InvalidState, NotFound, NotYetDue, ValidationError
from settlement.split import compute_split
from settlement.transaction import atomic, compare_and_set

logger = logging.getLogger(__name__)

INSTALLMENTS = (1, 2)


def _setting(key: str, default):
    try:
        return current_app.config.get(key, default)
    except RuntimeError:
        return default


def as_date(value) -> date:
    if value is None:
        return current_date()
    if isinstance(value, datetime):
        return value.date()
    return value


def get_tournament(tournament_id: int) -> Tournament:
    tournament = db.session.get(Tournament, tournament_id)
    if tournament is None:
        raise NotFound('Tournament not found', tournament_id=tournament_id)
    return tournament


def get_tournament_payment(tournament_id: int) -> TournamentPayment:
    payment = TournamentPayment.query.filter_by(tournament_id=tournament_id).first()
    if payment is None:
        raise NotFound('No payments recorded for this tournament', tournament_id=tournament_id)
    return payment


def refresh_tournament_payment(tournament_id: int) -> TournamentPayment:
    """Rebuild the projection from the tournament ledger account.

    Runs inside the caller's transaction.
    """
    tournament = get_tournament(tournament_id)
    payment = TournamentPayment.query.filter_by(tournament_id=tournament_id).first()
    if payment is None:
        payment = TournamentPayment(
            tournament_id=tournament_id,
            organizer_id=tournament.organizer_id,
            payout_1_status='pending',
            payout_2_status='pending',
        )
        db.session.add(payment)

    total_collected = ledger.balance('tournament', tournament_id)
    split = compute_split(
        total_collected,
        _setting('PLATFORM_FEE_PERCENT', 5),
        _setting('FIRST_PAYOUT_PERCENT', 30),
    )

    # Paid installments keep their amount; an unpaid one absorbs the difference
    first_paid = payment.payout_1_status == 'paid'
    second_paid = payment.payout_2_status == 'paid'
    if first_paid and second_paid:
        payout_1, payout_2 = payment.payout_1_amount, payment.payout_2_amount
        if payout_1 + payout_2 != split.organizer_share:
            raise InvalidState(
                'Both payouts are settled; collections can no longer change',
                tournament_id=tournament_id,
            )
    elif first_paid:
        payout_1 = payment.payout_1_amount
        payout_2 = split.organizer_share - payout_1
    elif second_paid:
        payout_2 = payment.payout_2_amount
        payout_1 = split.organizer_share - payout_2
    else:
        payout_1, payout_2 = split.payout_1, split.payout_2
    if payout_1 < 0 or payout_2 < 0:
        raise InvalidState(
            'Organizer share would drop below the amount already paid out',
            tournament_id=tournament_id,
            organizer_share=split.organizer_share,
            paid_out=(payment.payout_1_amount if first_paid else 0) + (payment.payout_2_amount if second_paid else 0),
        )

    payment.total_collected = split.total_collected
    payment.platform_fee_percent = split.platform_fee_percent
    payment.platform_fee_amount = split.platform_fee_amount
    payment.organizer_share = split.organizer_share
    payment.payout_1_amount = payout_1
    payment.payout_2_amount = payout_2
    payment.total_registrations = Registration.query.filter_by(
        tournament_id=tournament_id, payment_status='completed'
    ).count()
    db.session.flush()
    return payment


def _check_installment(installment) -> int:
    if installment not in INSTALLMENTS:
        raise ValidationError('Installment must be 1 or 2', installment=installment)
    return installment


def due_date(tournament: Tournament, installment: int) -> date:
    return tournament.start_date if installment == 1 else tournament.end_date


def mark_paid(
    tournament_id: int,
    installment: int,
    notes: str | None,
    actor_id: int,
    audit_context: dict | None = None,
    as_of=None,
) -> TournamentPayment:
    installment = _check_installment(installment)
    today = as_date(as_of)

    with atomic('mark_payout_paid'):
        tournament = get_tournament(tournament_id)
        payment = get_tournament_payment(tournament_id)

        if getattr(payment, f'payout_{installment}_status') == 'paid':
            raise AlreadyPaid(
                f'Payout installment {installment} is already paid',
                tournament_id=tournament_id,
                installment=installment,
            )
        due = due_date(tournament, installment)
        if today < due:
            logger.warning(
                'Payout %s for tournament %s requested before due date %s', installment, tournament_id, due
            )
            raise NotYetDue(
                f'Payout installment {installment} is due on {due.isoformat()}',
                tournament_id=tournament_id,
                installment=installment,
                due_date=due.isoformat(),
            )

        # Freeze the amount against the projection as of this transaction
        payment = refresh_tournament_payment(tournament_id)
        amount = getattr(payment, f'payout_{installment}_amount')
        status_column = getattr(TournamentPayment, f'payout_{installment}_status')
        paid_at = current_time()
        claimed = compare_and_set(
            TournamentPayment,
            (TournamentPayment.id == payment.id, status_column == 'pending'),
            {
                f'payout_{installment}_status': 'paid',
                f'payout_{installment}_paid_at': paid_at,
                f'payout_{installment}_paid_by': actor_id,
                f'payout_{installment}_notes': notes,
            },
        )
        if not claimed:
            raise AlreadyPaid(
                f'Payout installment {installment} is already paid',
                tournament_id=tournament_id,
                installment=installment,
            )

        if amount > 0:
            ledger.post_entry(
                'user',
                tournament.organizer_id,
                'DEBIT',
                amount,
                'ORGANIZER_PAYOUT',
                f'Payout {installment} for {tournament.name}',
                tournament_id=tournament_id,
                actor_id=actor_id,
            )
        audit.record(
            actor_id,
            AuditAction.PAYOUT_MARKED_PAID,
            'tournament_payment',
            payment.id,
            details={
                'tournament_id': tournament_id,
                'installment': installment,
                'amount': amount,
                'notes': notes,
            },
            **(audit_context or {}),
        )
        organizer = db.session.get(User, tournament.organizer_id)
        if organizer:
            organizer.notify(
                f'Payout {installment} of {amount} for {tournament.name} has been sent.',
                category='success',
                kind='payout',
                context_type='tournament_payment',
                context_ref=str(tournament_id),
                actor_id=actor_id,
            )

    logger.info('Payout %s for tournament %s marked paid by %s (%s)', installment, tournament_id, actor_id, amount)
    db.session.refresh(payment)
    return payment


def list_overdue(as_of=None, grace_days: int | None = None) -> list[dict]:
    """Tournaments with at least one overdue, still pending installment."""
    today = as_date(as_of)
    if grace_days is None:
        grace_days = _setting('PAYOUT_GRACE_DAYS', 7)
    grace = timedelta(days=grace_days)

    candidates = (
        db.session.query(TournamentPayment, Tournament)
        .join(Tournament, Tournament.id == TournamentPayment.tournament_id)
        .filter(
            (TournamentPayment.payout_1_status == 'pending')
            | (TournamentPayment.payout_2_status == 'pending')
        )
        .order_by(Tournament.start_date.asc(), Tournament.id.asc())
        .all()
    )

    overdue = []
    for payment, tournament in candidates:
        installments = []
        if payment.payout_1_status == 'pending' and today > tournament.start_date:
            installments.append({
                'installment': 1,
                'amount': payment.payout_1_amount,
                'due_date': tournament.start_date.isoformat(),
                'days_overdue': (today - tournament.start_date).days,
            })
        installment_2_due = tournament.end_date + grace
        if payment.payout_2_status == 'pending' and today > installment_2_due:
            installments.append({
                'installment': 2,
                'amount': payment.payout_2_amount,
                'due_date': installment_2_due.isoformat(),
                'days_overdue': (today - installment_2_due).days,
            })
        if installments:
            overdue.append({
                'tournament_id': tournament.id,
                'tournament_name': tournament.name,
                'organizer_id': tournament.organizer_id,
                'installments': installments,
            })
    return overdue


def payout_overview() -> dict:
    totals = db.session.query(
        func.coalesce(func.sum(TournamentPayment.total_collected), 0),
        func.coalesce(func.sum(TournamentPayment.platform_fee_amount), 0),
        func.coalesce(func.sum(TournamentPayment.organizer_share), 0),
    ).one()
    paid = 0
    for payment in TournamentPayment.query.all():
        for number in INSTALLMENTS:
            if getattr(payment, f'payout_{number}_status') == 'paid':
                paid += getattr(payment, f'payout_{number}_amount')
    return {
        'total_collected': int(totals[0]),
        'platform_fees': int(totals[1]),
        'organizer_share': int(totals[2]),
        'total_paid': paid,
        'total_pending': int(totals[2]) - paid,
    }


def sweep_overdue(as_of=None) -> int:
    """Notify every admin about overdue installments.

    At most one notification per admin, tournament, installment and day.
    Never touches payment state. Returns the number of notifications queued.
    """
    today = as_date(as_of)
    overdue = list_overdue(as_of=today)
    if not overdue:
        return 0

    admins = User.query.filter_by(role='admin').all()
    queued = 0
    for item in overdue:
        for installment in item['installments']:
            ref = f"{item['tournament_id']}:{installment['installment']}:{today.isoformat()}"
            for admin in admins:
                exists = Notification.query.filter_by(
                    user_id=admin.id, kind='payout_overdue', context_ref=ref
                ).first()
                if exists:
                    continue
                admin.notify(
                    f"Payout {installment['installment']} of {installment['amount']} for "
                    f"{item['tournament_name']} is {installment['days_overdue']} day(s) overdue.",
                    category='warning',
                    kind='payout_overdue',
                    context_type='tournament_payment',
                    context_ref=ref,
                )
                queued += 1
    db.session.commit()
    logger.info('Overdue payout sweep for %s queued %s notification(s)', today, queued)
    return queued
