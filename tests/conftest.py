import pytest
from datetime import timedelta

from app import create_app
from models import db, User, Tournament, Category, current_date, init_default_data
from settlement import fee_lock, verification


@pytest.fixture
def flask_app():
    """Create test application with in-memory SQLite database"""
    app = create_app('testing')

    with app.app_context():
        db.create_all()
        # Initialize default data (creates default admin user)
        init_default_data()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(flask_app):
    """Test client"""
    return flask_app.test_client()


@pytest.fixture
def db_session(flask_app):
    """Database session for test fixtures"""
    return db.session


def _make_user(username, role):
    user = User(username=username, email=f'{username}@test.com', role=role)
    user.set_password('Password@123')
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def admin_user(flask_app):
    """Default admin seeded by init_default_data"""
    return User.query.filter_by(username='admin').first()


@pytest.fixture
def organizer_user(flask_app):
    return _make_user('test_organizer', 'organizer')


@pytest.fixture
def other_organizer(flask_app):
    return _make_user('other_organizer', 'organizer')


@pytest.fixture
def player_user(flask_app):
    return _make_user('test_player', 'player')


@pytest.fixture
def player_user2(flask_app):
    return _make_user('second_player', 'player')


def _make_tournament(organizer, name, start_offset, end_offset):
    today = current_date()
    tournament = Tournament(
        name=name,
        organizer_id=organizer.id,
        start_date=today + timedelta(days=start_offset),
        end_date=today + timedelta(days=end_offset),
    )
    db.session.add(tournament)
    db.session.commit()
    return tournament


@pytest.fixture
def future_tournament(flask_app, organizer_user):
    """Upcoming tournament starting in 30 days"""
    return _make_tournament(organizer_user, 'City Open', 30, 32)


@pytest.fixture
def past_tournament(flask_app, organizer_user):
    """Tournament that finished 10 days ago"""
    return _make_tournament(organizer_user, 'Winter Cup', -12, -10)


@pytest.fixture
def category(flask_app, future_tournament):
    """Singles category with a 1000 paise entry fee"""
    category = Category(tournament_id=future_tournament.id, name="Men's Singles", entry_fee=1000)
    db.session.add(category)
    db.session.commit()
    return category


@pytest.fixture
def past_category(flask_app, past_tournament):
    category = Category(tournament_id=past_tournament.id, name="Women's Singles", entry_fee=1000)
    db.session.add(category)
    db.session.commit()
    return category


@pytest.fixture
def registration(category, player_user):
    """Fresh pending registration at the category's fee"""
    return fee_lock.register_player(category.id, player_user.id)


@pytest.fixture
def paid_registration(registration, admin_user):
    """Registration whose 1000 payment has been approved"""
    submitted = verification.submit_payment(registration.id, 'uploads/receipt-1.png', 1000)
    verification.approve_payment(submitted.id, admin_user.id)
    return registration


@pytest.fixture
def settled_past_tournament(past_category, player_user, admin_user):
    """Past tournament holding one approved 1000 payment"""
    entry = fee_lock.register_player(past_category.id, player_user.id)
    submitted = verification.submit_payment(entry.id, 'uploads/receipt-2.png', 1000)
    verification.approve_payment(submitted.id, admin_user.id)
    return past_category.tournament


def _login(client, user):
    with client.session_transaction() as sess:
        sess['user_id'] = user.id
        sess['username'] = user.username
        sess['role'] = user.role
    return client


@pytest.fixture
def authenticated_admin(client, admin_user):
    """Login as admin and return authenticated client"""
    return _login(client, admin_user)


@pytest.fixture
def authenticated_organizer(client, organizer_user):
    """Login as organizer and return authenticated client"""
    return _login(client, organizer_user)


@pytest.fixture
def authenticated_player(client, player_user):
    """Login as player and return authenticated client"""
    return _login(client, player_user)
