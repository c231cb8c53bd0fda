"""Admin routes: payment review, payouts, audit log and ledgers."""
from flask import Blueprint, Response, current_app, jsonify, request

from blueprints.auth import (
    actor_id,
    audit_context,
    date_arg,
    datetime_arg,
    int_arg,
    json_body,
    require_admin,
)
from models import TournamentPayment, current_time
from settlement import audit, ledger, payouts, verification
from settlement.audit import AuditAction
from settlement.split import compute_split
from settlement.transaction import atomic

admin_bp = Blueprint('admin', __name__, url_prefix='/admin')


def _csv_response(body: str, filename: str) -> Response:
    return Response(
        body,
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename={filename}'},
    )


# Payment verification ---------------------------------------------------

@admin_bp.route('/payments')
@require_admin
def pending_payments():
    """Review queue of submitted payment screenshots"""
    pending = verification.pending_verifications(int_arg('tournament_id', required=False))
    return jsonify({
        'success': True,
        'verifications': [verification.verification_to_dict(v) for v in pending],
    })


@admin_bp.route('/payments/stats')
@require_admin
def payment_stats():
    return jsonify({
        'success': True,
        'verifications': verification.verification_stats(),
        'payouts': payouts.payout_overview(),
    })


@admin_bp.route('/payments/<int:verification_id>/approve', methods=['POST'])
@require_admin
def approve_payment(verification_id):
    approved = verification.approve_payment(verification_id, actor_id(), audit_context=audit_context())
    return jsonify({'success': True, 'verification': verification.verification_to_dict(approved)})


@admin_bp.route('/payments/<int:verification_id>/reject', methods=['POST'])
@require_admin
def reject_payment(verification_id):
    reason = json_body().get('reason')
    rejected = verification.reject_payment(verification_id, actor_id(), reason, audit_context=audit_context())
    return jsonify({'success': True, 'verification': verification.verification_to_dict(rejected)})


# Revenue split and payouts --------------------------------------------------

@admin_bp.route('/split')
@require_admin
def split_preview():
    """Preview how a collection total would be divided"""
    split = compute_split(
        int_arg('total'),
        current_app.config['PLATFORM_FEE_PERCENT'],
        current_app.config['FIRST_PAYOUT_PERCENT'],
    )
    return jsonify({'success': True, 'split': split.to_dict()})


@admin_bp.route('/tournament-payments')
@require_admin
def tournament_payments():
    rows = TournamentPayment.query.order_by(TournamentPayment.tournament_id.asc()).all()
    return jsonify({
        'success': True,
        'overview': payouts.payout_overview(),
        'payments': [payment.to_dict() for payment in rows],
    })


@admin_bp.route('/tournament-payments/<int:tournament_id>')
@require_admin
def tournament_payment(tournament_id):
    payment = payouts.get_tournament_payment(tournament_id)
    return jsonify({'success': True, 'payment': payment.to_dict()})


@admin_bp.route('/tournament-payments/<int:tournament_id>/payouts/<int:installment>/mark-paid', methods=['POST'])
@require_admin
def mark_payout_paid(tournament_id, installment):
    notes = json_body().get('notes')
    payment = payouts.mark_paid(tournament_id, installment, notes, actor_id(), audit_context=audit_context())
    return jsonify({'success': True, 'payment': payment.to_dict()})


@admin_bp.route('/payouts/overdue')
@require_admin
def overdue_payouts():
    overdue = payouts.list_overdue(as_of=date_arg('as_of'))
    return jsonify({'success': True, 'count': len(overdue), 'tournaments': overdue})


# Audit log ----------------------------------------------------------------

def _audit_filters() -> dict:
    return {
        'action': request.args.get('action') or None,
        'entity_type': request.args.get('entity_type') or None,
        'entity_id': request.args.get('entity_id') or None,
        'actor_id': int_arg('actor_id', required=False),
        'start': datetime_arg('start'),
        'end': datetime_arg('end', end_of_day=True),
    }


@admin_bp.route('/audit-logs')
@require_admin
def audit_logs():
    limit = min(int_arg('limit', required=False) or 100, 500)
    entries = audit.query_entries(**_audit_filters()).limit(limit).all()
    return jsonify({'success': True, 'entries': [audit.entry_to_dict(e) for e in entries]})


@admin_bp.route('/audit-logs/export')
@require_admin
def export_audit_logs():
    """Download the filtered audit log; the export itself is audit-logged"""
    filters = _audit_filters()
    with atomic('export_audit_log'):
        body = audit.export_csv(**filters)
        audit.record(
            actor_id(),
            AuditAction.AUDIT_LOG_EXPORTED,
            'audit_log',
            None,
            details={key: str(value) for key, value in filters.items() if value is not None},
            **audit_context(),
        )
    filename = f'audit_logs_{current_time().strftime("%Y%m%d_%H%M%S")}.csv'
    return _csv_response(body, filename)


# Ledgers ------------------------------------------------------------------

@admin_bp.route('/ledger/<account_type>/<int:account_id>')
@require_admin
def account_ledger(account_type, account_id):
    summary = ledger.account_summary(account_type, account_id)
    entries = ledger.history(account_type, account_id)
    return jsonify({
        'success': True,
        'summary': summary,
        'verified_balance': ledger.verify_account(account_type, account_id),
        'entries': [ledger.entry_to_dict(e) for e in entries],
    })


@admin_bp.route('/ledger/<account_type>/<int:account_id>/export')
@require_admin
def export_account_ledger(account_type, account_id):
    body = ledger.export_csv(
        account_type,
        account_id,
        start=datetime_arg('start'),
        end=datetime_arg('end', end_of_day=True),
    )
    return _csv_response(body, f'ledger_{account_type}_{account_id}.csv')
