"""Admin impersonation through short-lived elevation tokens.

The raw token is returned once to the admin and never stored; only its
sha256 digest is persisted. Every audit record written while a token is in
use names the admin as the actor and the target as ``on_behalf_of_id``.
"""
import hashlib
import logging
import secrets
from datetime import timedelta

from flask import current_app

from models import db, ImpersonationGrant, User, current_time
from settlement import audit
from settlement.audit import AuditAction
from settlement.errors import InvalidState, NotFound, ValidationError
from settlement.transaction import atomic

logger = logging.getLogger(__name__)

HEADER = 'X-Impersonation-Token'


def _digest(token: str) -> str:
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def start(admin: User, target_user_id: int, audit_context: dict | None = None) -> tuple[str, ImpersonationGrant]:
    if not admin.is_admin:
        raise InvalidState('Only admins can impersonate users', user_id=admin.id)
    if target_user_id == admin.id:
        raise ValidationError('Cannot impersonate yourself')

    token = secrets.token_urlsafe(32)
    ttl = current_app.config.get('IMPERSONATION_TTL_MINUTES', 30)
    with atomic('start_impersonation'):
        target = db.session.get(User, target_user_id)
        if target is None:
            raise NotFound('User not found', user_id=target_user_id)
        if target.is_admin:
            raise InvalidState('Admins cannot be impersonated', user_id=target_user_id)
        issued_at = current_time()
        grant = ImpersonationGrant(
            admin_id=admin.id,
            target_user_id=target.id,
            token_digest=_digest(token),
            issued_at=issued_at,
            expires_at=issued_at + timedelta(minutes=ttl),
        )
        db.session.add(grant)
        audit.record(
            admin.id,
            AuditAction.USER_IMPERSONATION,
            'user',
            target.id,
            details={'target_username': target.username, 'ttl_minutes': ttl},
            **(audit_context or {}),
        )

    logger.info('Admin %s started impersonating user %s', admin.id, target_user_id)
    return token, grant


def resolve(token: str | None) -> ImpersonationGrant | None:
    """Active grant for ``token``, or None when missing, expired or revoked."""
    if not token:
        return None
    return ImpersonationGrant.query.filter(
        ImpersonationGrant.token_digest == _digest(token),
        ImpersonationGrant.revoked_at.is_(None),
        ImpersonationGrant.expires_at > current_time(),
    ).first()


def end(token: str, audit_context: dict | None = None) -> ImpersonationGrant:
    with atomic('end_impersonation'):
        grant = resolve(token)
        if grant is None:
            raise NotFound('No active impersonation for this token')
        grant.revoked_at = current_time()
        audit.record(
            grant.admin_id,
            AuditAction.RETURN_FROM_IMPERSONATION,
            'user',
            grant.target_user_id,
            details={'grant_id': grant.id},
            **(audit_context or {}),
        )

    logger.info('Admin %s stopped impersonating user %s', grant.admin_id, grant.target_user_id)
    return grant
