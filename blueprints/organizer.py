"""Organizer routes: category fees and the cancellation queue.

Organizers may only touch their own tournaments; admins may touch any.
"""
from flask import Blueprint, g, jsonify

from blueprints.auth import actor_id, audit_context, int_arg, json_body, require_role
from models import db, Tournament
from settlement import cancellation, fee_lock, payouts
from settlement.errors import NotFound, PermissionDenied, ValidationError

organizer_bp = Blueprint('organizer', __name__, url_prefix='/organizer')


def _owned_tournament(tournament_id: int) -> Tournament:
    tournament = db.session.get(Tournament, tournament_id)
    if tournament is None:
        raise NotFound('Tournament not found', tournament_id=tournament_id)
    if not g.current_user.is_admin and tournament.organizer_id != g.current_user.id:
        raise PermissionDenied('You do not organize this tournament', tournament_id=tournament_id)
    return tournament


def _owned_category(category_id: int):
    category = fee_lock.get_category(category_id)
    _owned_tournament(category.tournament_id)
    return category


def _category_to_dict(category) -> dict:
    return {
        'id': category.id,
        'tournament_id': category.tournament_id,
        'name': category.name,
        'format': category.format,
        'entry_fee': category.entry_fee,
        'max_participants': category.max_participants,
        'registration_count': fee_lock.registration_count(category.id),
    }


@organizer_bp.route('/tournaments')
@require_role('organizer', 'admin')
def tournaments():
    query = Tournament.query
    if not g.current_user.is_admin:
        query = query.filter_by(organizer_id=g.current_user.id)
    return jsonify({
        'success': True,
        'tournaments': [
            {
                'id': t.id,
                'name': t.name,
                'start_date': t.start_date.isoformat(),
                'end_date': t.end_date.isoformat(),
                'categories': [_category_to_dict(c) for c in t.categories],
            }
            for t in query.order_by(Tournament.start_date.asc()).all()
        ],
    })


@organizer_bp.route('/tournaments/<int:tournament_id>/categories', methods=['POST'])
@require_role('organizer', 'admin')
def create_category(tournament_id):
    _owned_tournament(tournament_id)
    data = json_body()
    category = fee_lock.create_category(
        tournament_id,
        data.get('name'),
        data.get('entry_fee'),
        max_participants=data.get('max_participants', 32),
        format=data.get('format', 'singles'),
    )
    return jsonify({'success': True, 'category': _category_to_dict(category)}), 201


@organizer_bp.route('/categories/<int:category_id>/fee-check')
@require_role('organizer', 'admin')
def fee_check(category_id):
    """Tell the editor up front whether the fee field is still editable"""
    _owned_category(category_id)
    decision = fee_lock.can_change_fee(category_id, int_arg('fee'))
    return jsonify({'success': True, **decision.to_dict()})


@organizer_bp.route('/categories/<int:category_id>', methods=['PATCH'])
@require_role('organizer', 'admin')
def update_category(category_id):
    _owned_category(category_id)
    category = fee_lock.update_category(category_id, json_body(), actor_id(), audit_context=audit_context())
    return jsonify({'success': True, 'category': _category_to_dict(category)})


@organizer_bp.route('/tournaments/<int:tournament_id>/payment')
@require_role('organizer', 'admin')
def tournament_payment(tournament_id):
    """Collections and payout progress for one of the organizer's tournaments"""
    _owned_tournament(tournament_id)
    payment = payouts.get_tournament_payment(tournament_id)
    return jsonify({'success': True, 'payment': payment.to_dict()})


@organizer_bp.route('/cancellations')
@require_role('organizer', 'admin')
def cancellations():
    tournament_ids = None
    if not g.current_user.is_admin:
        tournament_ids = [t.id for t in g.current_user.tournaments_organized]
    requests = cancellation.open_requests(tournament_ids)
    return jsonify({
        'success': True,
        'requests': [cancellation.request_to_dict(r) for r in requests],
    })


@organizer_bp.route('/cancellations/<int:request_id>/decide', methods=['POST'])
@require_role('organizer', 'admin')
def decide_cancellation(request_id):
    pending = cancellation.get_request(request_id)
    _owned_tournament(pending.registration.tournament_id)

    data = json_body()
    approve = data.get('approve')
    if not isinstance(approve, bool):
        raise ValidationError("'approve' must be true or false")
    decided = cancellation.decide_cancellation(
        request_id,
        actor_id(),
        approve,
        final_refund_amount=data.get('final_refund_amount'),
        note=data.get('note'),
        audit_context=audit_context(),
    )
    return jsonify({'success': True, 'request': cancellation.request_to_dict(decided)})
