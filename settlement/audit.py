"""Append-only audit trail of privileged actions.

``record`` adds a row to the caller's transaction, so an audit entry commits
together with the change it describes or not at all. There is no update or
delete path; the ORM refuses both for ``AuditLogEntry``.
"""
import csv
import enum
import io
import json
import logging

from models import db, AuditLogEntry
from settlement.errors import ValidationError

logger = logging.getLogger(__name__)


class AuditAction(str, enum.Enum):
    CATEGORY_FEE_CHANGED = 'CATEGORY_FEE_CHANGED'
    PAYMENT_APPROVED = 'PAYMENT_APPROVED'
    PAYMENT_REJECTED = 'PAYMENT_REJECTED'
    PAYOUT_MARKED_PAID = 'PAYOUT_MARKED_PAID'
    CANCELLATION_APPROVED = 'CANCELLATION_APPROVED'
    CANCELLATION_REJECTED = 'CANCELLATION_REJECTED'
    AUDIT_LOG_EXPORTED = 'AUDIT_LOG_EXPORTED'
    USER_IMPERSONATION = 'USER_IMPERSONATION'
    RETURN_FROM_IMPERSONATION = 'RETURN_FROM_IMPERSONATION'


CSV_COLUMNS = (
    'Timestamp', 'Actor ID', 'Actor', 'On Behalf Of', 'Action', 'Entity Type',
    'Entity ID', 'IP Address', 'User Agent', 'Details',
)


def record(
    actor_id: int,
    action: AuditAction,
    entity_type: str,
    entity_id,
    details: dict | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    on_behalf_of_id: int | None = None,
) -> AuditLogEntry:
    entry = AuditLogEntry(
        actor_id=actor_id,
        on_behalf_of_id=on_behalf_of_id,
        action=AuditAction(action).value,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        details=details or {},
        ip_address=ip_address,
        user_agent=(user_agent or '')[:255] or None,
    )
    db.session.add(entry)
    logger.info('[AUDIT] %s by user %s on %s %s', entry.action, actor_id, entity_type, entity_id or '')
    return entry


def parse_action(value) -> AuditAction:
    try:
        return AuditAction(value)
    except ValueError:
        raise ValidationError(f'Unknown audit action {value!r}', action=value) from None


def query_entries(action=None, entity_type=None, entity_id=None, actor_id=None, start=None, end=None):
    query = AuditLogEntry.query
    if action:
        query = query.filter(AuditLogEntry.action == parse_action(action).value)
    if entity_type:
        query = query.filter(AuditLogEntry.entity_type == entity_type)
    if entity_id is not None:
        query = query.filter(AuditLogEntry.entity_id == str(entity_id))
    if actor_id is not None:
        query = query.filter(AuditLogEntry.actor_id == actor_id)
    if start:
        query = query.filter(AuditLogEntry.created_at >= start)
    if end:
        query = query.filter(AuditLogEntry.created_at <= end)
    return query.order_by(AuditLogEntry.created_at.desc(), AuditLogEntry.id.desc())


def entries_for(entity_type: str, entity_id) -> list[AuditLogEntry]:
    return query_entries(entity_type=entity_type, entity_id=entity_id).all()


def entry_to_dict(entry: AuditLogEntry) -> dict:
    return {
        'id': entry.id,
        'actor_id': entry.actor_id,
        'on_behalf_of_id': entry.on_behalf_of_id,
        'action': entry.action,
        'entity_type': entry.entity_type,
        'entity_id': entry.entity_id,
        'details': entry.details or {},
        'ip_address': entry.ip_address,
        'created_at': entry.created_at.isoformat() if entry.created_at else None,
    }


def export_csv(action=None, entity_type=None, entity_id=None, actor_id=None, start=None, end=None) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_COLUMNS)
    for entry in query_entries(action, entity_type, entity_id, actor_id, start, end):
        writer.writerow([
            entry.created_at.isoformat() if entry.created_at else '',
            entry.actor_id,
            entry.actor.username if entry.actor else '',
            entry.on_behalf_of_id or '',
            entry.action,
            entry.entity_type,
            entry.entity_id or '',
            entry.ip_address or '',
            entry.user_agent or '',
            json.dumps(entry.details or {}, sort_keys=True),
        ])
    return buffer.getvalue()
