"""Entry-fee lock for categories.

Once a category has a live registration its entry fee is frozen: the fee a
player registered against is the fee they pay, verify and get refunded.
Fee changes and new registrations both compare-and-set on the category row
(``entry_fee`` plus ``lock_version``) so a fee change racing a registration
cannot both succeed.
"""
import logging
from dataclasses import dataclass, asdict

from models import db, Category, Registration, RETIRED_REGISTRATION_STATUSES, Tournament, User
from settlement import audit
from settlement.audit import AuditAction
from settlement.errors import FeeLocked, InvalidAmount, InvalidState, NotFound, ValidationError
from settlement.transaction import atomic, compare_and_set

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ('name', 'format', 'max_participants', 'entry_fee')
CATEGORY_FORMATS = ('singles', 'doubles')


@dataclass(frozen=True)
class FeeDecision:
    allowed: bool
    registration_count: int
    current_fee: int
    attempted_fee: int

    def to_dict(self) -> dict:
        return asdict(self)


def _validate_fee(fee) -> int:
    if isinstance(fee, bool) or not isinstance(fee, int) or fee < 0:
        raise InvalidAmount('Entry fee must be a non-negative integer amount', attempted_fee=fee)
    return fee


def get_category(category_id: int) -> Category:
    category = db.session.get(Category, category_id)
    if category is None:
        raise NotFound('Category not found', category_id=category_id)
    return category


def registration_count(category_id: int) -> int:
    return Registration.query.filter(
        Registration.category_id == category_id,
        Registration.status.notin_(RETIRED_REGISTRATION_STATUSES),
    ).count()


def can_change_fee(category_id: int, proposed_fee) -> FeeDecision:
    proposed_fee = _validate_fee(proposed_fee)
    category = get_category(category_id)
    count = registration_count(category_id)
    allowed = count == 0 or proposed_fee == category.entry_fee
    return FeeDecision(
        allowed=allowed,
        registration_count=count,
        current_fee=category.entry_fee,
        attempted_fee=proposed_fee,
    )


def check_fee_change(category_id: int, proposed_fee) -> FeeDecision:
    decision = can_change_fee(category_id, proposed_fee)
    if not decision.allowed:
        logger.warning(
            'Fee change on category %s blocked: %s -> %s with %s registration(s)',
            category_id, decision.current_fee, decision.attempted_fee, decision.registration_count,
        )
        raise FeeLocked(decision.current_fee, decision.attempted_fee, decision.registration_count)
    return decision


def _clean_changes(category: Category, changes: dict) -> dict:
    unknown = set(changes) - set(EDITABLE_FIELDS)
    if unknown:
        raise ValidationError('Unsupported category fields', fields=sorted(unknown))

    cleaned = {}
    if 'name' in changes:
        name = (changes['name'] or '').strip()
        if not name:
            raise ValidationError('Category name is required')
        cleaned['name'] = name
    if 'format' in changes:
        if changes['format'] not in CATEGORY_FORMATS:
            raise ValidationError('Unsupported category format', format=changes['format'])
        cleaned['format'] = changes['format']
    if 'max_participants' in changes:
        limit = changes['max_participants']
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ValidationError('Max participants must be a positive integer', max_participants=limit)
        live = registration_count(category.id)
        if limit < live:
            raise ValidationError(
                'Max participants cannot drop below current registrations',
                max_participants=limit,
                registration_count=live,
            )
        cleaned['max_participants'] = limit
    if 'entry_fee' in changes:
        cleaned['entry_fee'] = _validate_fee(changes['entry_fee'])
    return cleaned


def update_category(category_id: int, changes: dict, actor_id: int, audit_context: dict | None = None) -> Category:
    """Apply an organizer's category edit; the fee part goes through the lock."""
    with atomic('update_category'):
        category = get_category(category_id)
        cleaned = _clean_changes(category, changes)

        new_fee = cleaned.pop('entry_fee', category.entry_fee)
        old_fee = category.entry_fee
        seen_version = category.lock_version
        if new_fee != old_fee:
            decision = check_fee_change(category_id, new_fee)
            applied = compare_and_set(
                Category,
                (
                    Category.id == category_id,
                    Category.entry_fee == old_fee,
                    Category.lock_version == seen_version,
                ),
                {'entry_fee': new_fee},
            )
            if not applied:
                # A registration (or another edit) landed between the check and the write
                raise FeeLocked(old_fee, new_fee, registration_count(category_id))
            db.session.refresh(category)
            audit.record(
                actor_id,
                AuditAction.CATEGORY_FEE_CHANGED,
                'category',
                category_id,
                details={
                    'tournament_id': category.tournament_id,
                    'previous_fee': old_fee,
                    'new_fee': new_fee,
                    'registration_count': decision.registration_count,
                },
                **(audit_context or {}),
            )

        for field, value in cleaned.items():
            setattr(category, field, value)

    logger.info('Category %s updated by user %s: %s', category_id, actor_id, sorted(changes))
    return category


def create_category(tournament_id: int, name: str, entry_fee, max_participants: int = 32, format: str = 'singles') -> Category:
    with atomic('create_category'):
        if db.session.get(Tournament, tournament_id) is None:
            raise NotFound('Tournament not found', tournament_id=tournament_id)
        category = Category(tournament_id=tournament_id, name='', entry_fee=0)
        cleaned = _clean_changes(
            category,
            {'name': name, 'entry_fee': entry_fee, 'max_participants': max_participants, 'format': format},
        )
        for field, value in cleaned.items():
            setattr(category, field, value)
        db.session.add(category)
    return category


def register_player(category_id: int, player_id: int, partner_id: int | None = None) -> Registration:
    """Create a registration that snapshots the category's current fee."""
    with atomic('register_player'):
        category = get_category(category_id)
        if db.session.get(User, player_id) is None:
            raise NotFound('Player not found', player_id=player_id)
        if category.format == 'doubles' and partner_id is None:
            raise ValidationError('Doubles categories require a partner')

        live = registration_count(category_id)
        if live >= category.max_participants:
            raise InvalidState('Category is full', max_participants=category.max_participants)

        duplicate = Registration.query.filter(
            Registration.category_id == category_id,
            Registration.player_id == player_id,
            Registration.status.notin_(RETIRED_REGISTRATION_STATUSES),
        ).first()
        if duplicate:
            raise InvalidState('Player is already registered in this category', registration_id=duplicate.id)

        fee_snapshot = category.entry_fee
        locked = compare_and_set(
            Category,
            (Category.id == category_id, Category.entry_fee == fee_snapshot),
            {'lock_version': Category.lock_version + 1},
        )
        if not locked:
            raise InvalidState('Entry fee changed while registering, please retry', category_id=category_id)

        registration = Registration(
            tournament_id=category.tournament_id,
            category_id=category_id,
            player_id=player_id,
            partner_id=partner_id,
            amount_total=fee_snapshot,
        )
        db.session.add(registration)

    logger.info('Player %s registered in category %s at fee %s', player_id, category_id, fee_snapshot)
    return registration
