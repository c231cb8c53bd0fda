"""
Integration tests for the auth blueprint
Tests /auth/register, /auth/login, /auth/logout, notifications and impersonation
"""
from models import db, AuditLogEntry, ImpersonationGrant, User, current_time


class TestAuthRegistrationRoute:
    """Test /auth/register"""

    def test_player_registration_success(self, client):
        response = client.post('/auth/register', json={
            'username': 'newplayer',
            'email': 'newplayer@test.com',
            'password': 'Player@123',
            'role': 'player',
        })
        assert response.status_code == 201

        user = User.query.filter_by(username='newplayer').first()
        assert user is not None
        assert user.role == 'player'
        assert user.check_password('Player@123')

    def test_registration_duplicate_username(self, client, player_user):
        response = client.post('/auth/register', json={
            'username': 'test_player',
            'email': 'different@test.com',
            'password': 'Player@123',
            'role': 'player',
        })
        assert response.status_code == 400
        assert 'Username already exists' in response.get_json()['details']['errors']

    def test_admin_cannot_self_register(self, client):
        response = client.post('/auth/register', json={
            'username': 'sneaky',
            'email': 'sneaky@test.com',
            'password': 'Sneaky@123',
            'role': 'admin',
        })
        assert response.status_code == 400
        assert User.query.filter_by(username='sneaky').first() is None

    def test_registration_validates_format(self, client):
        response = client.post('/auth/register', json={
            'username': 'ab',
            'email': 'not-an-email',
            'password': 'short',
            'role': 'player',
        })
        assert response.status_code == 400
        assert len(response.get_json()['details']['errors']) == 3


class TestAuthLoginRoute:
    """Test /auth/login and /auth/logout"""

    def test_login_success(self, client, player_user):
        response = client.post('/auth/login', json={'username': 'test_player', 'password': 'Password@123'})
        assert response.status_code == 200
        assert response.get_json()['role'] == 'player'
        with client.session_transaction() as sess:
            assert sess['user_id'] == player_user.id

    def test_login_accepts_form_data(self, client, player_user):
        response = client.post('/auth/login', data={'username': 'test_player', 'password': 'Password@123'})
        assert response.status_code == 200

    def test_login_wrong_password(self, client, player_user):
        response = client.post('/auth/login', json={'username': 'test_player', 'password': 'nope'})
        assert response.status_code == 401
        assert response.get_json()['error'] == 'INVALID_CREDENTIALS'

    def test_logout_clears_session(self, authenticated_player):
        response = authenticated_player.post('/auth/logout')
        assert response.status_code == 200
        with authenticated_player.session_transaction() as sess:
            assert 'user_id' not in sess
        assert authenticated_player.get('/auth/notifications').status_code == 401


class TestNotifications:

    def test_feed(self, authenticated_player, player_user, admin_user):
        player_user.notify('Welcome aboard', actor_id=admin_user.id)
        db.session.commit()
        data = authenticated_player.get('/auth/notifications').get_json()
        assert data['unread'] == 1
        assert data['notifications'][0]['message'] == 'Welcome aboard'

    def test_resolve(self, authenticated_player, player_user):
        note = player_user.notify('Please pay')
        db.session.commit()
        response = authenticated_player.post(f'/auth/notifications/{note.id}/resolve')
        assert response.status_code == 200
        assert authenticated_player.get('/auth/notifications').get_json()['notifications'] == []

    def test_self_triggered_notifications_are_skipped(self, player_user):
        assert player_user.notify('Note to self', actor_id=player_user.id) is None


class TestImpersonation:
    """Admin elevation tokens"""

    def _start(self, client, user_id):
        response = client.post(f'/auth/impersonate/{user_id}')
        assert response.status_code == 201
        return response.get_json()['token']

    def test_token_digest_only_is_stored(self, authenticated_admin, player_user, admin_user):
        token = self._start(authenticated_admin, player_user.id)
        grant = ImpersonationGrant.query.one()
        assert grant.token_digest != token
        assert len(grant.token_digest) == 64
        entry = AuditLogEntry.query.filter_by(action='USER_IMPERSONATION').one()
        assert entry.actor_id == admin_user.id
        assert entry.entity_id == str(player_user.id)

    def test_acting_as_player_is_attributed_to_admin(self, authenticated_admin, player_user, admin_user, category):
        token = self._start(authenticated_admin, player_user.id)
        headers = {'X-Impersonation-Token': token}

        response = authenticated_admin.post(f'/player/categories/{category.id}/register', json={}, headers=headers)
        assert response.status_code == 201
        assert response.get_json()['registration']['amount_total'] == 1000

        # Without the header the admin is just an admin again
        response = authenticated_admin.get('/player/registrations')
        assert response.status_code == 403

    def test_audit_records_on_behalf_of(self, authenticated_admin, organizer_user, admin_user, category):
        token = self._start(authenticated_admin, organizer_user.id)
        response = authenticated_admin.patch(
            f'/organizer/categories/{category.id}',
            json={'entry_fee': 1800},
            headers={'X-Impersonation-Token': token},
        )
        assert response.status_code == 200
        entry = AuditLogEntry.query.filter_by(action='CATEGORY_FEE_CHANGED').one()
        assert entry.actor_id == admin_user.id
        assert entry.on_behalf_of_id == organizer_user.id

    def test_end_revokes_token(self, authenticated_admin, player_user):
        token = self._start(authenticated_admin, player_user.id)
        headers = {'X-Impersonation-Token': token}
        response = authenticated_admin.post('/auth/impersonate/end', headers=headers)
        assert response.status_code == 200
        assert ImpersonationGrant.query.one().revoked_at is not None
        assert AuditLogEntry.query.filter_by(action='RETURN_FROM_IMPERSONATION').count() == 1
        # Revoked token no longer elevates
        assert authenticated_admin.get('/player/registrations', headers=headers).status_code == 403

    def test_expired_token_is_ignored(self, authenticated_admin, player_user):
        token = self._start(authenticated_admin, player_user.id)
        ImpersonationGrant.query.update({'expires_at': current_time().replace(year=2000)})
        db.session.commit()
        response = authenticated_admin.get('/player/registrations', headers={'X-Impersonation-Token': token})
        assert response.status_code == 403

    def test_only_admins_impersonate(self, authenticated_organizer, player_user):
        response = authenticated_organizer.post(f'/auth/impersonate/{player_user.id}')
        assert response.status_code == 403
        assert ImpersonationGrant.query.count() == 0

    def test_cannot_impersonate_admin(self, authenticated_admin, admin_user, flask_app):
        other = User(username='second_admin', email='admin2@test.com', role='admin')
        other.set_password('Password@123')
        db.session.add(other)
        db.session.commit()
        response = authenticated_admin.post(f'/auth/impersonate/{other.id}')
        assert response.status_code == 409

    def test_token_of_another_admin_is_ignored(self, client, authenticated_admin, player_user):
        token = self._start(authenticated_admin, player_user.id)
        other = User(username='second_admin', email='admin2@test.com', role='admin')
        other.set_password('Password@123')
        db.session.add(other)
        db.session.commit()
        with client.session_transaction() as sess:
            sess['user_id'] = other.id
        response = client.get('/player/registrations', headers={'X-Impersonation-Token': token})
        assert response.status_code == 403

    def test_unknown_target(self, authenticated_admin):
        assert authenticated_admin.post('/auth/impersonate/9999').status_code == 404

