from flask import Blueprint, Response, g, jsonify, request

from blueprints.auth import datetime_arg, json_body, require_role
from models import Registration
from settlement import cancellation, fee_lock, ledger, verification
from settlement.errors import PermissionDenied

player_bp = Blueprint('player', __name__, url_prefix='/player')


def _own_registration(registration_id: int) -> Registration:
    registration = verification.get_registration(registration_id)
    if registration.player_id != g.current_user.id:
        raise PermissionDenied('This registration belongs to another player', registration_id=registration_id)
    return registration


def _registration_to_dict(registration: Registration) -> dict:
    return {
        'id': registration.id,
        'tournament_id': registration.tournament_id,
        'category_id': registration.category_id,
        'partner_id': registration.partner_id,
        'status': registration.status,
        'payment_status': registration.payment_status,
        'refund_status': registration.refund_status,
        'amount_total': registration.amount_total,
    }


@player_bp.route('/registrations')
@require_role('player')
def registrations():
    rows = Registration.query.filter_by(player_id=g.current_user.id).order_by(Registration.id.asc()).all()
    return jsonify({'success': True, 'registrations': [_registration_to_dict(r) for r in rows]})


@player_bp.route('/categories/<int:category_id>/register', methods=['POST'])
@require_role('player')
def register(category_id):
    data = json_body()
    registration = fee_lock.register_player(category_id, g.current_user.id, partner_id=data.get('partner_id'))
    return jsonify({'success': True, 'registration': _registration_to_dict(registration)}), 201


@player_bp.route('/registrations/<int:registration_id>/payments', methods=['POST'])
@require_role('player')
def submit_payment(registration_id):
    """Submit proof of a manual UPI transfer for review"""
    _own_registration(registration_id)
    data = json_body()
    submitted = verification.submit_payment(registration_id, data.get('screenshot_ref'), data.get('amount'))
    return jsonify({'success': True, 'verification': verification.verification_to_dict(submitted)}), 201


@player_bp.route('/registrations/<int:registration_id>/cancel', methods=['POST'])
@require_role('player')
def request_cancellation(registration_id):
    _own_registration(registration_id)
    data = json_body()
    created = cancellation.request_cancellation(
        registration_id,
        data.get('reason'),
        data.get('refund_upi_id'),
        qr_ref=data.get('qr_ref'),
    )
    return jsonify({'success': True, 'request': cancellation.request_to_dict(created)}), 201


@player_bp.route('/ledger')
@require_role('player')
def my_ledger():
    """Own ledger as JSON, or as a CSV statement with ?format=csv"""
    start = datetime_arg('start')
    end = datetime_arg('end', end_of_day=True)
    if request.args.get('format') == 'csv':
        body = ledger.export_csv('user', g.current_user.id, start=start, end=end)
        return Response(
            body,
            mimetype='text/csv',
            headers={'Content-Disposition': f'attachment; filename=ledger_{g.current_user.username}.csv'},
        )
    entries = ledger.history('user', g.current_user.id, start=start, end=end)
    return jsonify({
        'success': True,
        'summary': ledger.account_summary('user', g.current_user.id),
        'entries': [ledger.entry_to_dict(e) for e in entries],
    })
