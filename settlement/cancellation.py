"""Player cancellation requests and their refund decisions.

A refund policy is any callable ``policy(amount_total, days_before_event)``
returning the refundable amount in minor units. The tentative amount it
produces is only a suggestion: the reviewer may adjust it when deciding.
"""
import logging
import re

from flask import current_app

from models import db, CancellationRequest, Registration, User, current_time
from settlement import audit, ledger
from settlement.audit import AuditAction
from settlement.errors import (
    AlreadyFinalized,
    InvalidAmount,
    InvalidState,
    InvalidUpiId,
    NotFound,
    ValidationError,
)
from settlement.payouts import as_date, refresh_tournament_payment
from settlement.split import percent_of
from settlement.transaction import atomic, compare_and_set
from settlement.verification import get_registration

logger = logging.getLogger(__name__)

UPI_PATTERN = re.compile(r'^[A-Za-z0-9._-]+@[A-Za-z][A-Za-z0-9.-]*$')
CANCELLABLE_STATUSES = ('pending', 'confirmed')
DEFAULT_REASON_MIN_LENGTH = 10


def full_refund(amount_total: int, days_before_event: int) -> int:
    return amount_total


class SlidingScaleRefund:
    """Refund percentage by how many days before the event the request lands.

    ``schedule`` is a list of ``(min_days_before, percent)``; the first row
    whose threshold is met applies, otherwise nothing is refunded.
    """

    def __init__(self, schedule):
        self.schedule = sorted(schedule, key=lambda row: row[0], reverse=True)
        for _, percent in self.schedule:
            if not 0 <= percent <= 100:
                raise ValueError('Refund percentages must be between 0 and 100')

    def __call__(self, amount_total: int, days_before_event: int) -> int:
        for min_days, percent in self.schedule:
            if days_before_event >= min_days:
                return percent_of(amount_total, percent)
        return 0

    @classmethod
    def from_string(cls, schedule: str) -> 'SlidingScaleRefund':
        rows = []
        for chunk in schedule.split(','):
            chunk = chunk.strip()
            if not chunk:
                continue
            days, _, percent = chunk.partition(':')
            rows.append((int(days), int(percent)))
        return cls(rows)


def configured_refund_policy():
    schedule = current_app.config.get('REFUND_SCHEDULE') or ''
    if isinstance(schedule, str):
        return SlidingScaleRefund.from_string(schedule) if schedule.strip() else full_refund
    return SlidingScaleRefund(schedule)


def get_request(request_id: int) -> CancellationRequest:
    request = db.session.get(CancellationRequest, request_id)
    if request is None:
        raise NotFound('Cancellation request not found', request_id=request_id)
    return request


def request_cancellation(
    registration_id: int,
    reason: str,
    refund_upi_id: str,
    qr_ref: str | None = None,
    as_of=None,
    refund_policy=None,
) -> CancellationRequest:
    reason = (reason or '').strip()
    min_length = current_app.config.get('CANCELLATION_REASON_MIN_LENGTH', DEFAULT_REASON_MIN_LENGTH)
    if len(reason) < min_length:
        raise ValidationError(
            f'Please provide a detailed reason for cancellation (at least {min_length} characters)',
            min_length=min_length,
        )
    refund_upi_id = (refund_upi_id or '').strip()
    if not UPI_PATTERN.match(refund_upi_id):
        raise InvalidUpiId('Please provide a valid UPI ID for the refund', refund_upi_id=refund_upi_id)

    policy = refund_policy or configured_refund_policy()
    today = as_date(as_of)

    with atomic('request_cancellation'):
        registration = get_registration(registration_id)
        if registration.status not in CANCELLABLE_STATUSES:
            raise InvalidState(
                f'Cannot cancel a registration that is {registration.status}',
                registration_id=registration_id,
                status=registration.status,
            )
        tournament = registration.tournament
        days_before = tournament.days_until_start(today)
        if days_before <= 0:
            raise InvalidState('Cannot cancel after the tournament has started', registration_id=registration_id)
        if registration.payment_status == 'submitted':
            raise InvalidState(
                'Cannot cancel while a payment for this registration is awaiting review',
                registration_id=registration_id,
                payment_status=registration.payment_status,
            )

        previous_status = registration.status
        payment_status = registration.payment_status
        claimed = compare_and_set(
            Registration,
            (
                Registration.id == registration_id,
                Registration.status == previous_status,
                Registration.payment_status == payment_status,
            ),
            {'status': 'cancellation_requested', 'refund_status': 'pending'},
        )
        if not claimed:
            raise InvalidState(
                'Registration changed while the cancellation was being requested',
                registration_id=registration_id,
            )

        refundable = 0
        if payment_status == 'completed':
            refundable = min(policy(registration.amount_total, days_before), registration.amount_total)

        cancellation = CancellationRequest(
            registration_id=registration_id,
            reason=reason,
            refund_upi_id=refund_upi_id,
            refund_qr_ref=qr_ref,
            refund_amount=refundable,
            previous_status=previous_status,
            status='requested',
        )
        db.session.add(cancellation)

        organizer = db.session.get(User, tournament.organizer_id)
        if organizer:
            organizer.notify(
                f'{registration.player.username} requested to cancel their entry in '
                f'{registration.category.name} ({tournament.name}).',
                category='warning',
                kind='cancellation_request',
                context_type='registration',
                context_ref=str(registration.id),
                actor_id=registration.player_id,
            )

    logger.info('Cancellation requested for registration %s (refund %s)', registration_id, refundable)
    return cancellation


def decide_cancellation(
    request_id: int,
    reviewer_id: int,
    approve: bool,
    final_refund_amount=None,
    note: str | None = None,
    audit_context: dict | None = None,
) -> CancellationRequest:
    with atomic('decide_cancellation'):
        cancellation = get_request(request_id)
        if cancellation.status != 'requested':
            logger.warning('Decision on finalized cancellation %s (%s)', request_id, cancellation.status)
            raise AlreadyFinalized(
                f'Cancellation request is already {cancellation.status}',
                request_id=request_id,
                status=cancellation.status,
            )
        registration = cancellation.registration
        tournament = registration.tournament

        amount = None
        if approve:
            collected = ledger.registration_net(registration.id, tournament.id)
            amount = cancellation.refund_amount if final_refund_amount is None else final_refund_amount
            if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
                raise InvalidAmount('Refund amount must be a non-negative integer', final_refund_amount=amount)
            if amount > collected:
                raise InvalidAmount(
                    'Refund cannot exceed the amount collected for this registration',
                    final_refund_amount=amount,
                    collected=collected,
                )

        claimed = compare_and_set(
            CancellationRequest,
            (CancellationRequest.id == request_id, CancellationRequest.status == 'requested'),
            {
                'status': 'approved' if approve else 'rejected',
                'decided_at': current_time(),
                'reviewed_by': reviewer_id,
                'decision_note': note,
                'final_refund_amount': amount,
            },
        )
        if not claimed:
            raise AlreadyFinalized('Cancellation request was decided concurrently', request_id=request_id)

        if approve:
            if amount > 0:
                description = f'Refund for {registration.category.name} ({tournament.name})'
                ledger.post_entry(
                    'tournament', tournament.id, 'DEBIT', amount, 'REFUND', description,
                    tournament_id=tournament.id, registration_id=registration.id, actor_id=reviewer_id,
                )
                ledger.post_entry(
                    'user', registration.player_id, 'DEBIT', amount, 'REFUND', description,
                    tournament_id=tournament.id, registration_id=registration.id, actor_id=reviewer_id,
                )
            registration.status = 'cancelled'
            registration.refund_status = 'refunded'
            registration.cancelled_at = current_time()
            if registration.payment_status == 'completed':
                registration.payment_status = 'refunded'
            payment = refresh_tournament_payment(tournament.id)
            action = AuditAction.CANCELLATION_APPROVED
            details = {
                'registration_id': registration.id,
                'tournament_id': tournament.id,
                'refund_amount': amount,
                'total_collected': payment.total_collected,
            }
            message = f'Your cancellation for {registration.category.name} was approved. Refund: {amount}.'
        else:
            registration.status = cancellation.previous_status
            registration.refund_status = 'rejected'
            action = AuditAction.CANCELLATION_REJECTED
            details = {
                'registration_id': registration.id,
                'tournament_id': tournament.id,
                'restored_status': cancellation.previous_status,
                'note': note,
            }
            message = f'Your cancellation for {registration.category.name} was rejected. Your entry remains active.'

        audit.record(reviewer_id, action, 'cancellation_request', request_id, details=details, **(audit_context or {}))
        registration.player.notify(
            message,
            category='info',
            kind='cancellation_decision',
            context_type='registration',
            context_ref=str(registration.id),
            actor_id=reviewer_id,
        )

    logger.info('Cancellation %s %s by %s', request_id, 'approved' if approve else 'rejected', reviewer_id)
    return cancellation


def open_requests(tournament_ids=None) -> list[CancellationRequest]:
    query = CancellationRequest.query.filter_by(status='requested')
    if tournament_ids is not None:
        query = query.join(Registration).filter(Registration.tournament_id.in_(list(tournament_ids)))
    return query.order_by(CancellationRequest.requested_at.asc(), CancellationRequest.id.asc()).all()


def request_to_dict(cancellation: CancellationRequest) -> dict:
    return {
        'id': cancellation.id,
        'registration_id': cancellation.registration_id,
        'reason': cancellation.reason,
        'refund_upi_id': cancellation.refund_upi_id,
        'refund_qr_ref': cancellation.refund_qr_ref,
        'refund_amount': cancellation.refund_amount,
        'final_refund_amount': cancellation.final_refund_amount,
        'status': cancellation.status,
        'requested_at': cancellation.requested_at.isoformat() if cancellation.requested_at else None,
        'decided_at': cancellation.decided_at.isoformat() if cancellation.decided_at else None,
        'reviewed_by': cancellation.reviewed_by,
    }
