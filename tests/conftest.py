from datetime import datetime, timedelta, timezone

import jwt
import pytest

from courtside.app import create_app, db


@pytest.fixture
def app():
    app = create_app('testing')
    with app.app_context():
        db.create_all()
        yield app
        app.extensions['courtside'].stop_background()
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def service(app):
    return app.extensions['courtside']


@pytest.fixture
def make_user(app):
    """Factory for attending, ready users."""
    from courtside.models import User

    counter = {'n': 0}

    def _make(name=None, **overrides):
        counter['n'] += 1
        data = {
            'username': f'player{counter["n"]}',
            'name': name or f'Player {counter["n"]}',
            'is_attendance': True,
        }
        data.update(overrides)
        user = User(**data)
        db.session.add(user)
        db.session.commit()
        return user
    return _make


@pytest.fixture
def players(make_user):
    """Eight ready players, ids 1-8."""
    return [make_user().id for _ in range(8)]


@pytest.fixture
def make_courts(app, service):
    from courtside.models import Court

    def _make(count, is_active=True):
        ids = []
        for _ in range(count):
            court = Court(name='', is_active=is_active)
            db.session.add(court)
            db.session.commit()
            ids.append(court.id)
        service.refresh_courts()
        return ids
    return _make


@pytest.fixture
def sign_token(app):
    """Sign a bearer token the way the venue's sign-in service does."""
    def _sign(user_id, expires_in=timedelta(hours=24)):
        payload = {'user_id': user_id, 'exp': datetime.now(timezone.utc) + expires_in}
        return jwt.encode(payload, app.config['SECRET_KEY'], algorithm='HS256')
    return _sign


@pytest.fixture
def auth_headers(make_user, sign_token):
    user = make_user(name='Desk', username='desk')
    return {'Authorization': f'Bearer {sign_token(user.id)}', 'Content-Type': 'application/json'}


@pytest.fixture
def admin_headers(make_user, sign_token):
    user = make_user(name='Admin', username='admin', is_admin=True)
    return {'Authorization': f'Bearer {sign_token(user.id)}', 'Content-Type': 'application/json'}
