from flask import Blueprint, current_app, request, session, g, jsonify
from models import db, Notification, User
from settlement import impersonation
from settlement.errors import PermissionDenied, ValidationError
from functools import wraps
from datetime import date, datetime
import pytz

auth_bp = Blueprint('auth', __name__, url_prefix='/auth')
IST = pytz.timezone('Asia/Kolkata')


# Helper function - load current user
def load_current_user():
    """Load the session user into g.real_user and the effective user into g.current_user.

    An admin sending a valid impersonation token acts as the token's target;
    g.real_user stays the admin so audit records name the real actor.
    """
    g.real_user = None
    g.current_user = None
    g.impersonation = None
    if 'user_id' not in session:
        return

    g.real_user = db.session.get(User, session['user_id'])
    g.current_user = g.real_user

    token = request.headers.get(impersonation.HEADER)
    if token and g.real_user:
        grant = impersonation.resolve(token)
        if grant and grant.admin_id == g.real_user.id:
            g.current_user = grant.target
            g.impersonation = grant
        else:
            current_app.logger.warning('Ignoring invalid impersonation token from user %s', g.real_user.id)


def actor_id() -> int:
    """Id of the person actually performing the request."""
    return g.real_user.id


def audit_context() -> dict:
    return {
        'ip_address': request.remote_addr,
        'user_agent': request.headers.get('User-Agent'),
        'on_behalf_of_id': g.current_user.id if g.impersonation else None,
    }


def json_body() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        payload = request.form.to_dict()
    if not isinstance(payload, dict):
        raise ValidationError('Request body must be a JSON object')
    return payload


def int_arg(name: str, required: bool = True):
    raw = request.args.get(name)
    if raw is None or raw == '':
        if required:
            raise ValidationError(f'Query parameter {name!r} is required')
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f'Query parameter {name!r} must be an integer', **{name: raw}) from None


def date_arg(name: str):
    raw = request.args.get(name)
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        raise ValidationError(f'Query parameter {name!r} must be a YYYY-MM-DD date', **{name: raw}) from None


def datetime_arg(name: str, end_of_day: bool = False):
    """Parse a date or datetime filter; bare dates cover the whole day."""
    raw = request.args.get(name)
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        raise ValidationError(f'Query parameter {name!r} must be an ISO date', **{name: raw}) from None
    if end_of_day and len(raw) == 10:
        parsed = parsed.replace(hour=23, minute=59, second=59, microsecond=999999)
    return parsed


def _unauthorized():
    return jsonify({
        'success': False,
        'error': 'UNAUTHORIZED',
        'message': 'Please log in to access this resource.',
    }), 401


# Decorators for authentication
def login_required(f):
    """Require any logged-in user"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not g.current_user:
            return _unauthorized()
        return f(*args, **kwargs)
    return decorated_function


def require_role(*roles):
    """Require the effective user to hold one of ``roles``."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not g.current_user:
                return _unauthorized()
            if g.current_user.role not in roles:
                raise PermissionDenied(
                    f'This action requires one of the roles: {", ".join(roles)}',
                    role=g.current_user.role,
                )
            return f(*args, **kwargs)
        return decorated_function
    return decorator


require_admin = require_role('admin')


def check_user_uniqueness(username, email):
    """
    Check if username or email already exists in database.
    Returns list of errors. Requires Flask app context.
    """
    errors = []

    if User.query.filter_by(username=username).first():
        errors.append("Username already exists")

    if User.query.filter_by(email=email).first():
        errors.append("Email already registered")

    return errors


@auth_bp.route('/register', methods=['POST'])
def register():
    """Self-service signup for organizers and players"""
    data = json_body()
    username = (data.get('username') or '').strip()
    email = (data.get('email') or '').strip()
    password = (data.get('password') or '').strip()
    role = data.get('role') or 'player'

    # Validate format (no DB queries)
    errors = User.validate_format(username, email, password, role)
    if role == 'admin':
        errors.append("Admin accounts cannot be self-registered")

    # Check uniqueness (requires DB queries)
    if not errors:
        errors.extend(check_user_uniqueness(username, email))

    if errors:
        raise ValidationError('Registration failed', errors=errors)

    user = User(username=username, email=email, role=role, phone_number=data.get('phone_number'))
    user.set_password(password)
    db.session.add(user)
    db.session.commit()

    current_app.logger.info('Registered %s account %s', role, username)
    return jsonify({'success': True, 'user_id': user.id, 'role': user.role}), 201


@auth_bp.route('/login', methods=['POST'])
def login():
    """Unified login for admins, organizers and players"""
    data = json_body()
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''

    user = User.query.filter_by(username=username).first()
    if not user or not user.check_password(password):
        current_app.logger.warning('Failed login for %s from %s', username, request.remote_addr)
        return jsonify({
            'success': False,
            'error': 'INVALID_CREDENTIALS',
            'message': 'Invalid username or password.',
        }), 401

    # Set session data
    session.clear()
    session['user_id'] = user.id
    session['username'] = user.username
    session['role'] = user.role
    session['logged_in_at'] = datetime.now(IST).isoformat()

    # Regenerate session ID
    session.modified = True

    return jsonify({'success': True, 'user_id': user.id, 'role': user.role})


@auth_bp.route('/logout', methods=['POST'])
def logout():
    """Logout user"""
    session.clear()
    return jsonify({'success': True})


@auth_bp.route('/notifications')
@login_required
def notifications():
    """In-app notification feed for the effective user"""
    notes = Notification.active_for_user(g.current_user.id).limit(50).all()
    return jsonify({
        'success': True,
        'unread': sum(1 for note in notes if not note.is_read),
        'notifications': [
            {
                'id': note.id,
                'message': note.message,
                'category': note.category,
                'kind': note.kind,
                'context_type': note.context_type,
                'context_ref': note.context_ref,
                'is_read': note.is_read,
                'created_at': note.created_at.isoformat() if note.created_at else None,
            }
            for note in notes
        ],
    })


@auth_bp.route('/notifications/<int:notification_id>/resolve', methods=['POST'])
@login_required
def resolve_notification(notification_id):
    note = Notification.query.filter_by(id=notification_id, user_id=g.current_user.id).first()
    if not note:
        return jsonify({'success': False, 'error': 'NOT_FOUND', 'message': 'Notification not found'}), 404
    note.resolve()
    db.session.commit()
    return jsonify({'success': True})


@auth_bp.route('/impersonate/<int:user_id>', methods=['POST'])
@login_required
def start_impersonation(user_id):
    """Issue a short-lived token letting the admin act as another user"""
    if g.impersonation or not g.real_user.is_admin:
        raise PermissionDenied('Only admins can impersonate users')
    token, grant = impersonation.start(g.real_user, user_id, audit_context=audit_context())
    return jsonify({
        'success': True,
        'token': token,
        'header': impersonation.HEADER,
        'target_user_id': grant.target_user_id,
        'expires_at': grant.expires_at.isoformat(),
    }), 201


@auth_bp.route('/impersonate/end', methods=['POST'])
@login_required
def end_impersonation():
    token = request.headers.get(impersonation.HEADER)
    if not g.impersonation or not token:
        raise ValidationError('No impersonation session is active for this request')
    impersonation.end(token, audit_context=audit_context())
    return jsonify({'success': True, 'user_id': g.real_user.id})
