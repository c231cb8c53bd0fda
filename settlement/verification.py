"""Proof-of-payment verification.

A player submits a screenshot reference and the amount they transferred; an
admin approves or rejects it. A verification moves from ``pending`` to a
terminal state exactly once: the transition is a compare-and-set on the
status column, so a double click or a second reviewer loses cleanly with
``AlreadyFinalized`` and no side effect. The registration's payment status
is guarded the same way, so it is in review at most once and credited at
most once however many verifications point at it.
"""
import logging

from sqlalchemy import func

from models import db, PaymentVerification, Registration, current_time
from settlement import audit, ledger
from settlement.audit import AuditAction
from settlement.errors import (
    AlreadyFinalized,
    AmountMismatch,
    InvalidAmount,
    InvalidState,
    MissingReason,
    NotFound,
    ValidationError,
)
from settlement.payouts import refresh_tournament_payment
from settlement.transaction import atomic, compare_and_set

logger = logging.getLogger(__name__)

SUBMITTABLE_PAYMENT_STATUSES = ('pending', 'failed')


def get_registration(registration_id: int) -> Registration:
    registration = db.session.get(Registration, registration_id)
    if registration is None:
        raise NotFound('Registration not found', registration_id=registration_id)
    return registration


def get_verification(verification_id: int) -> PaymentVerification:
    verification = db.session.get(PaymentVerification, verification_id)
    if verification is None:
        raise NotFound('Payment verification not found', verification_id=verification_id)
    return verification


def submit_payment(registration_id: int, screenshot_ref: str, amount) -> PaymentVerification:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmount('Payment amount must be a positive integer', amount=amount)
    screenshot_ref = (screenshot_ref or '').strip()
    if not screenshot_ref:
        raise ValidationError('Payment screenshot is required')

    with atomic('submit_payment'):
        registration = get_registration(registration_id)
        if registration.payment_status in ('completed', 'refunded'):
            raise AlreadyFinalized(
                'Payment for this registration is already settled',
                registration_id=registration_id,
                payment_status=registration.payment_status,
            )
        if registration.status not in ('pending', 'confirmed'):
            raise InvalidState(
                f'Cannot submit payment for a registration that is {registration.status}',
                registration_id=registration_id,
            )
        in_review = PaymentVerification.query.filter_by(
            registration_id=registration_id, status='pending'
        ).first()
        if in_review:
            raise InvalidState(
                'A payment for this registration is already awaiting review',
                verification_id=in_review.id,
            )
        # Compared against the fee snapshot, never the category's current fee
        if amount != registration.amount_total:
            raise AmountMismatch(
                'Submitted amount does not match the registration fee',
                amount=amount,
                amount_total=registration.amount_total,
            )

        # Only one submission may move the registration into review
        claimed = compare_and_set(
            Registration,
            (Registration.id == registration_id, Registration.payment_status.in_(SUBMITTABLE_PAYMENT_STATUSES)),
            {'payment_status': 'submitted'},
        )
        if not claimed:
            raise InvalidState(
                'A payment for this registration is already awaiting review',
                registration_id=registration_id,
            )

        verification = PaymentVerification(
            registration_id=registration_id,
            screenshot_ref=screenshot_ref,
            amount=amount,
            status='pending',
        )
        db.session.add(verification)

    logger.info('Payment of %s submitted for registration %s', amount, registration_id)
    return verification


def approve_payment(verification_id: int, reviewer_id: int, audit_context: dict | None = None) -> PaymentVerification:
    with atomic('approve_payment'):
        verification = get_verification(verification_id)
        if verification.is_final:
            logger.warning('Approve on finalized verification %s (%s)', verification_id, verification.status)
            raise AlreadyFinalized(
                f'Payment verification is already {verification.status}',
                verification_id=verification_id,
                status=verification.status,
            )
        registration = verification.registration
        if registration.status not in ('pending', 'confirmed'):
            raise InvalidState(
                f'Cannot approve payment for a registration that is {registration.status}',
                registration_id=registration.id,
            )

        claimed = compare_and_set(
            PaymentVerification,
            (PaymentVerification.id == verification_id, PaymentVerification.status == 'pending'),
            {'status': 'approved', 'verified_at': current_time(), 'verified_by': reviewer_id},
        )
        if not claimed:
            raise AlreadyFinalized('Payment verification was finalized concurrently', verification_id=verification_id)

        # A registration is credited once, whichever verification gets there first
        settled = compare_and_set(
            Registration,
            (
                Registration.id == registration.id,
                Registration.status.in_(('pending', 'confirmed')),
                Registration.payment_status.notin_(('completed', 'refunded')),
            ),
            {'status': 'confirmed', 'payment_status': 'completed'},
        )
        if not settled:
            logger.warning('Approve on verification %s for already paid registration %s', verification_id, registration.id)
            raise AlreadyFinalized(
                'Payment for this registration is already settled',
                verification_id=verification_id,
                registration_id=registration.id,
            )

        tournament = registration.tournament
        description = f'Entry fee for {registration.category.name} ({tournament.name})'
        ledger.post_entry(
            'tournament', tournament.id, 'CREDIT', verification.amount, 'TOURNAMENT_ENTRY', description,
            tournament_id=tournament.id, registration_id=registration.id, actor_id=reviewer_id,
        )
        ledger.post_entry(
            'user', registration.player_id, 'CREDIT', verification.amount, 'TOURNAMENT_ENTRY', description,
            tournament_id=tournament.id, registration_id=registration.id, actor_id=reviewer_id,
        )
        payment = refresh_tournament_payment(tournament.id)

        audit.record(
            reviewer_id,
            AuditAction.PAYMENT_APPROVED,
            'payment_verification',
            verification_id,
            details={
                'registration_id': registration.id,
                'tournament_id': tournament.id,
                'amount': verification.amount,
                'total_collected': payment.total_collected,
            },
            **(audit_context or {}),
        )
        registration.player.notify(
            f'Your payment for {registration.category.name} in {tournament.name} was approved.',
            category='success',
            kind='payment_approved',
            context_type='registration',
            context_ref=str(registration.id),
            actor_id=reviewer_id,
        )

    logger.info('Payment verification %s approved by %s', verification_id, reviewer_id)
    return verification


def reject_payment(verification_id: int, reviewer_id: int, reason: str, audit_context: dict | None = None) -> PaymentVerification:
    reason = (reason or '').strip()
    if not reason:
        raise MissingReason('A rejection reason is required', verification_id=verification_id)

    with atomic('reject_payment'):
        verification = get_verification(verification_id)
        if verification.is_final:
            logger.warning('Reject on finalized verification %s (%s)', verification_id, verification.status)
            raise AlreadyFinalized(
                f'Payment verification is already {verification.status}',
                verification_id=verification_id,
                status=verification.status,
            )

        claimed = compare_and_set(
            PaymentVerification,
            (PaymentVerification.id == verification_id, PaymentVerification.status == 'pending'),
            {
                'status': 'rejected',
                'verified_at': current_time(),
                'verified_by': reviewer_id,
                'rejection_reason': reason,
            },
        )
        if not claimed:
            raise AlreadyFinalized('Payment verification was finalized concurrently', verification_id=verification_id)

        # Registration status stays as is so the player can submit again
        registration = verification.registration
        if registration.payment_status == 'submitted':
            registration.payment_status = 'failed'

        audit.record(
            reviewer_id,
            AuditAction.PAYMENT_REJECTED,
            'payment_verification',
            verification_id,
            details={
                'registration_id': registration.id,
                'tournament_id': registration.tournament_id,
                'amount': verification.amount,
                'reason': reason,
            },
            **(audit_context or {}),
        )
        registration.player.notify(
            f'Your payment for {registration.category.name} was rejected: {reason}'[:255],
            category='error',
            kind='payment_rejected',
            context_type='registration',
            context_ref=str(registration.id),
            actor_id=reviewer_id,
        )

    logger.info('Payment verification %s rejected by %s', verification_id, reviewer_id)
    return verification


def pending_verifications(tournament_id: int | None = None) -> list[PaymentVerification]:
    query = PaymentVerification.query.filter_by(status='pending')
    if tournament_id is not None:
        query = query.join(Registration).filter(Registration.tournament_id == tournament_id)
    return query.order_by(PaymentVerification.submitted_at.asc(), PaymentVerification.id.asc()).all()


def verification_stats() -> dict:
    rows = (
        db.session.query(PaymentVerification.status, func.count(PaymentVerification.id), func.sum(PaymentVerification.amount))
        .group_by(PaymentVerification.status)
        .all()
    )
    stats = {'pending': 0, 'approved': 0, 'rejected': 0, 'approved_amount': 0}
    for status, count, total in rows:
        stats[status] = count
        if status == 'approved':
            stats['approved_amount'] = int(total or 0)
    return stats


def verification_to_dict(verification: PaymentVerification) -> dict:
    return {
        'id': verification.id,
        'registration_id': verification.registration_id,
        'screenshot_ref': verification.screenshot_ref,
        'amount': verification.amount,
        'status': verification.status,
        'submitted_at': verification.submitted_at.isoformat() if verification.submitted_at else None,
        'verified_at': verification.verified_at.isoformat() if verification.verified_at else None,
        'verified_by': verification.verified_by,
        'rejection_reason': verification.rejection_reason,
    }
