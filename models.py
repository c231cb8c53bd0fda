from datetime import datetime, date, timedelta
import re
import pytz

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event, or_
from sqlalchemy.orm import Session, validates
from werkzeug.security import generate_password_hash, check_password_hash

from settlement.errors import ConsistencyError

db = SQLAlchemy()

IST = pytz.timezone('Asia/Kolkata')

ROLES = ('admin', 'organizer', 'player')

REGISTRATION_STATUSES = ('pending', 'confirmed', 'cancellation_requested', 'cancelled', 'rejected')
# Registrations in these states no longer hold a place in the category
RETIRED_REGISTRATION_STATUSES = ('cancelled', 'rejected')
PAYMENT_STATUSES = ('pending', 'submitted', 'completed', 'refunded', 'failed')
REFUND_STATUSES = ('none', 'pending', 'refunded', 'rejected')


def current_time():
    return datetime.now(IST)


def current_date() -> date:
    return current_time().date()


class User(db.Model):
    """Users who can log in - admins, organizers and players."""

    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False)  # 'admin', 'organizer' or 'player'
    phone_number = db.Column(db.String(20))
    created_at = db.Column(db.DateTime, default=current_time)

    tournaments_organized = db.relationship(
        'Tournament', backref='organizer', lazy=True, foreign_keys='Tournament.organizer_id'
    )
    notifications = db.relationship(
        'Notification',
        backref='user',
        lazy=True,
        cascade='all, delete-orphan',
        foreign_keys='Notification.user_id',
    )

    def __repr__(self):  # pragma: no cover - debug helper
        return f"<User {self.id} {self.username} role={self.role}>"

    @property
    def is_admin(self) -> bool:
        return self.role == 'admin'

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def notify(
        self,
        message: str,
        category: str = 'info',
        kind: str = 'general',
        status: str = 'active',
        link_target: str = None,
        context_type: str = None,
        context_ref: str = None,
        actor_id: int | None = None,
    ):
        """Queue an in-app notification in the current transaction."""
        if actor_id is not None and actor_id == self.id:
            return None
        note = Notification(
            user_id=self.id,
            message=message,
            category=category,
            kind=kind,
            status=status,
            context_type=context_type,
            context_ref=context_ref,
            link_target=link_target,
            actor_id=actor_id,
        )
        db.session.add(note)
        return note

    @staticmethod
    def validate_format(username: str, email: str, password: str, role: str) -> list[str]:
        errors: list[str] = []

        if not username or len(username.strip()) < 3:
            errors.append("Username must be at least 3 characters")

        email_pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
        if not email or not re.match(email_pattern, email):
            errors.append("Valid email required")

        if not password or len(password) < 8:
            errors.append("Password must be at least 8 characters")

        if role not in ROLES:
            errors.append("Invalid role selected")

        return errors


class Notification(db.Model):
    """Persistent notifications surfaced via dashboards and dedicated feeds."""

    __tablename__ = 'notification'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    message = db.Column(db.String(255), nullable=False)
    category = db.Column(db.String(40), default='info')
    kind = db.Column(db.String(40), default='general')
    status = db.Column(db.String(20), default='active')  # pending, active, resolved, archived
    context_type = db.Column(db.String(40))  # e.g. registration, tournament_payment
    context_ref = db.Column(db.String(80))
    link_target = db.Column(db.String(255))
    is_read = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=current_time)
    expires_at = db.Column(db.DateTime)
    actor_id = db.Column(db.Integer, db.ForeignKey('users.id'))

    actor = db.relationship('User', foreign_keys=[actor_id], backref='notifications_triggered')

    def __repr__(self):  # pragma: no cover - debug helper
        return f"<Notification {self.id} user={self.user_id} status={self.status}>"

    def resolve(self):
        self.status = 'resolved'
        self.is_read = True

    @classmethod
    def active_for_user(cls, user_id: int):
        query = cls.query.filter_by(user_id=user_id).filter(cls.status.in_(['pending', 'active']))
        query = query.filter(
            or_(cls.expires_at.is_(None), cls.expires_at > current_time())
        )
        return query.order_by(cls.created_at.desc(), cls.id.desc())


class Tournament(db.Model):
    __tablename__ = 'tournament'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    organizer_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(20), default='published')  # draft, published, ongoing, completed, cancelled
    location = db.Column(db.String(100))
    created_at = db.Column(db.DateTime, default=current_time)

    categories = db.relationship('Category', backref='tournament', lazy=True, order_by='Category.id')
    payment = db.relationship('TournamentPayment', backref='tournament', uselist=False)

    def __repr__(self):  # pragma: no cover - debug helper
        return f"<Tournament {self.id} {self.name}>"

    @validates('end_date')
    def validate_end_date(self, key, value):
        if self.start_date and value < self.start_date:
            raise ValueError('End date must be on or after the start date')
        return value

    def days_until_start(self, today: date | None = None) -> int:
        return (self.start_date - (today or current_date())).days


class Category(db.Model):
    """A bracket inside a tournament with its own entry fee."""

    __tablename__ = 'category'

    id = db.Column(db.Integer, primary_key=True)
    tournament_id = db.Column(db.Integer, db.ForeignKey('tournament.id'), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    format = db.Column(db.String(20), default='singles')  # singles or doubles
    entry_fee = db.Column(db.BigInteger, nullable=False, default=0)
    max_participants = db.Column(db.Integer, nullable=False, default=32)
    # Bumped by every registration; fee changes compare-and-set against it
    lock_version = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=current_time)
    updated_at = db.Column(db.DateTime, default=current_time, onupdate=current_time)

    registrations = db.relationship('Registration', backref='category', lazy=True)

    def __repr__(self):  # pragma: no cover - debug helper
        return f"<Category {self.id} {self.name} fee={self.entry_fee}>"

    def live_registrations(self):
        return Registration.query.filter(
            Registration.category_id == self.id,
            Registration.status.notin_(RETIRED_REGISTRATION_STATUSES),
        )


class Registration(db.Model):
    __tablename__ = 'registration'

    id = db.Column(db.Integer, primary_key=True)
    tournament_id = db.Column(db.Integer, db.ForeignKey('tournament.id'), nullable=False)
    category_id = db.Column(db.Integer, db.ForeignKey('category.id'), nullable=False)
    player_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    partner_id = db.Column(db.Integer, db.ForeignKey('users.id'))
    status = db.Column(db.String(30), nullable=False, default='pending')
    payment_status = db.Column(db.String(20), nullable=False, default='pending')
    refund_status = db.Column(db.String(20), nullable=False, default='none')
    # Fee snapshot taken at registration time; never recomputed
    amount_total = db.Column(db.BigInteger, nullable=False)
    created_at = db.Column(db.DateTime, default=current_time)
    updated_at = db.Column(db.DateTime, default=current_time, onupdate=current_time)
    cancelled_at = db.Column(db.DateTime)

    tournament = db.relationship('Tournament', foreign_keys=[tournament_id])
    player = db.relationship('User', foreign_keys=[player_id])
    partner = db.relationship('User', foreign_keys=[partner_id])
    verifications = db.relationship(
        'PaymentVerification', backref='registration', lazy=True, order_by='PaymentVerification.id'
    )

    def __repr__(self):  # pragma: no cover - debug helper
        return f"<Registration {self.id} status={self.status} payment={self.payment_status}>"

    @validates('status')
    def validate_status(self, key, value):
        if value not in REGISTRATION_STATUSES:
            raise ValueError(f'Unknown registration status {value!r}')
        return value

    @validates('payment_status')
    def validate_payment_status(self, key, value):
        if value not in PAYMENT_STATUSES:
            raise ValueError(f'Unknown payment status {value!r}')
        return value

    @validates('refund_status')
    def validate_refund_status(self, key, value):
        if value not in REFUND_STATUSES:
            raise ValueError(f'Unknown refund status {value!r}')
        return value

    @property
    def is_live(self) -> bool:
        return self.status not in RETIRED_REGISTRATION_STATUSES


class PaymentVerification(db.Model):
    """One proof-of-payment submission awaiting an admin decision."""

    __tablename__ = 'payment_verification'

    id = db.Column(db.Integer, primary_key=True)
    registration_id = db.Column(db.Integer, db.ForeignKey('registration.id'), nullable=False)
    screenshot_ref = db.Column(db.String(255), nullable=False)
    amount = db.Column(db.BigInteger, nullable=False)
    status = db.Column(db.String(20), nullable=False, default='pending')  # pending, approved, rejected
    submitted_at = db.Column(db.DateTime, default=current_time)
    verified_at = db.Column(db.DateTime)
    verified_by = db.Column(db.Integer, db.ForeignKey('users.id'))
    rejection_reason = db.Column(db.Text)

    reviewer = db.relationship('User', foreign_keys=[verified_by])

    @property
    def is_final(self) -> bool:
        return self.status in ('approved', 'rejected')


class LedgerEntry(db.Model):
    """Immutable credit/debit row on a tournament or user account."""

    __tablename__ = 'ledger_entry'

    id = db.Column(db.Integer, primary_key=True)
    account_type = db.Column(db.String(20), nullable=False)  # tournament or user
    account_id = db.Column(db.Integer, nullable=False)
    sequence = db.Column(db.Integer, nullable=False)
    entry_type = db.Column(db.String(10), nullable=False)  # CREDIT or DEBIT
    amount = db.Column(db.BigInteger, nullable=False)
    balance_after = db.Column(db.BigInteger, nullable=False)
    category = db.Column(db.String(30), nullable=False)
    description = db.Column(db.String(255))
    tournament_id = db.Column(db.Integer, db.ForeignKey('tournament.id'))
    registration_id = db.Column(db.Integer, db.ForeignKey('registration.id'))
    actor_id = db.Column(db.Integer, db.ForeignKey('users.id'))
    created_at = db.Column(db.DateTime, default=current_time)

    __table_args__ = (
        db.UniqueConstraint('account_type', 'account_id', 'sequence', name='unique_ledger_sequence'),
    )

    @property
    def signed_amount(self) -> int:
        return self.amount if self.entry_type == 'CREDIT' else -self.amount


class TournamentPayment(db.Model):
    """Per-tournament projection of collections, split and payout progress."""

    __tablename__ = 'tournament_payment'

    id = db.Column(db.Integer, primary_key=True)
    tournament_id = db.Column(db.Integer, db.ForeignKey('tournament.id'), nullable=False, unique=True)
    organizer_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    total_collected = db.Column(db.BigInteger, nullable=False, default=0)
    total_registrations = db.Column(db.Integer, nullable=False, default=0)
    platform_fee_percent = db.Column(db.Integer, nullable=False, default=5)
    platform_fee_amount = db.Column(db.BigInteger, nullable=False, default=0)
    organizer_share = db.Column(db.BigInteger, nullable=False, default=0)

    payout_1_amount = db.Column(db.BigInteger, nullable=False, default=0)
    payout_1_status = db.Column(db.String(20), nullable=False, default='pending')
    payout_1_paid_at = db.Column(db.DateTime)
    payout_1_paid_by = db.Column(db.Integer, db.ForeignKey('users.id'))
    payout_1_notes = db.Column(db.Text)

    payout_2_amount = db.Column(db.BigInteger, nullable=False, default=0)
    payout_2_status = db.Column(db.String(20), nullable=False, default='pending')
    payout_2_paid_at = db.Column(db.DateTime)
    payout_2_paid_by = db.Column(db.Integer, db.ForeignKey('users.id'))
    payout_2_notes = db.Column(db.Text)

    created_at = db.Column(db.DateTime, default=current_time)
    updated_at = db.Column(db.DateTime, default=current_time, onupdate=current_time)

    organizer = db.relationship('User', foreign_keys=[organizer_id])

    def installment(self, number: int) -> dict:
        return {
            'installment': number,
            'amount': getattr(self, f'payout_{number}_amount'),
            'status': getattr(self, f'payout_{number}_status'),
            'paid_at': _isoformat(getattr(self, f'payout_{number}_paid_at')),
            'paid_by': getattr(self, f'payout_{number}_paid_by'),
            'notes': getattr(self, f'payout_{number}_notes'),
        }

    def to_dict(self) -> dict:
        return {
            'tournament_id': self.tournament_id,
            'organizer_id': self.organizer_id,
            'total_collected': self.total_collected,
            'total_registrations': self.total_registrations,
            'platform_fee_percent': self.platform_fee_percent,
            'platform_fee_amount': self.platform_fee_amount,
            'organizer_share': self.organizer_share,
            'payouts': [self.installment(1), self.installment(2)],
        }


class CancellationRequest(db.Model):
    __tablename__ = 'cancellation_request'

    id = db.Column(db.Integer, primary_key=True)
    registration_id = db.Column(db.Integer, db.ForeignKey('registration.id'), nullable=False)
    reason = db.Column(db.Text, nullable=False)
    refund_upi_id = db.Column(db.String(120), nullable=False)
    refund_qr_ref = db.Column(db.String(255))
    refund_amount = db.Column(db.BigInteger, nullable=False, default=0)
    final_refund_amount = db.Column(db.BigInteger)
    previous_status = db.Column(db.String(30), nullable=False)
    status = db.Column(db.String(20), nullable=False, default='requested')  # requested, approved, rejected
    requested_at = db.Column(db.DateTime, default=current_time)
    decided_at = db.Column(db.DateTime)
    reviewed_by = db.Column(db.Integer, db.ForeignKey('users.id'))
    decision_note = db.Column(db.Text)

    registration = db.relationship('Registration', backref='cancellation_requests')


class AuditLogEntry(db.Model):
    """Append-only record of a privileged action."""

    __tablename__ = 'audit_log'

    id = db.Column(db.Integer, primary_key=True)
    actor_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    on_behalf_of_id = db.Column(db.Integer, db.ForeignKey('users.id'))
    action = db.Column(db.String(50), nullable=False, index=True)
    entity_type = db.Column(db.String(40), nullable=False)
    entity_id = db.Column(db.String(40))
    details = db.Column(db.JSON, default=dict)
    ip_address = db.Column(db.String(64))
    user_agent = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, default=current_time, index=True)

    actor = db.relationship('User', foreign_keys=[actor_id])


class ImpersonationGrant(db.Model):
    """Short-lived elevation token letting an admin act as another user."""

    __tablename__ = 'impersonation_grant'

    id = db.Column(db.Integer, primary_key=True)
    admin_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    target_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    token_digest = db.Column(db.String(64), unique=True, nullable=False)
    issued_at = db.Column(db.DateTime, default=current_time)
    expires_at = db.Column(db.DateTime, nullable=False)
    revoked_at = db.Column(db.DateTime)

    admin = db.relationship('User', foreign_keys=[admin_id])
    target = db.relationship('User', foreign_keys=[target_user_id])


IMMUTABLE_MODELS = (LedgerEntry, AuditLogEntry)


def _isoformat(value):
    return value.isoformat() if value else None


@event.listens_for(LedgerEntry, 'before_update')
@event.listens_for(AuditLogEntry, 'before_update')
def _refuse_update(mapper, connection, target):
    raise ConsistencyError(f'{type(target).__name__} rows are immutable', entity_id=target.id)


@event.listens_for(LedgerEntry, 'before_delete')
@event.listens_for(AuditLogEntry, 'before_delete')
def _refuse_delete(mapper, connection, target):
    raise ConsistencyError(f'{type(target).__name__} rows cannot be deleted', entity_id=target.id)


@event.listens_for(Session, 'do_orm_execute')
def _refuse_bulk_writes(orm_execute_state):
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    mapper = orm_execute_state.bind_mapper
    if mapper is not None and mapper.class_ in IMMUTABLE_MODELS:
        raise ConsistencyError(f'{mapper.class_.__name__} rows are append-only')


def init_default_data():
    """Seed the platform admin account."""
    admin = User.query.filter_by(username='admin').first()
    if not admin:
        admin = User(
            username='admin',
            email='admin@smashledger.local',
            role='admin',
        )
        admin.set_password('admin123')
        db.session.add(admin)
    db.session.commit()
    return admin


def get_or_create_default_tournament(organizer: User) -> Tournament:
    """Demo tournament used by init_db for local development."""
    tournament = Tournament.query.filter_by(name='Open Badminton Championship').first()
    if not tournament:
        tournament = Tournament(
            name='Open Badminton Championship',
            organizer_id=organizer.id,
            start_date=current_date() + timedelta(days=30),
            end_date=current_date() + timedelta(days=32),
        )
        db.session.add(tournament)
        db.session.flush()
        db.session.add(Category(tournament_id=tournament.id, name="Men's Singles", entry_fee=50000))
        db.session.commit()
    return tournament
