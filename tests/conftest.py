import pytest

from app import create_app
from auth import generate_token, hash_password
from config import TestingConfig
from models import db, User


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    """直接寫入 DB 建立使用者,回傳 user id"""
    def _make_user(email, role='user', password='password123', name=None):
        with app.app_context():
            user = User(
                email=email,
                role=role,
                name=name,
                password_hash=hash_password(password)
            )
            db.session.add(user)
            db.session.commit()
            return user.id
    return _make_user


@pytest.fixture
def headers_for(app):
    def _headers_for(user_id):
        with app.app_context():
            user = db.session.get(User, user_id)
            return {'Authorization': f'Bearer {generate_token(user)}'}
    return _headers_for


@pytest.fixture
def admin_id(make_user):
    return make_user('admin@example.com', role='admin', name='Alice Admin')


@pytest.fixture
def admin_headers(headers_for, admin_id):
    return headers_for(admin_id)


@pytest.fixture
def user_id(make_user):
    return make_user('bob@example.com', name='Bob')


@pytest.fixture
def user_headers(headers_for, user_id):
    return headers_for(user_id)


@pytest.fixture
def other_user_id(make_user):
    return make_user('carol@example.com', name='Carol')


@pytest.fixture
def other_user_headers(headers_for, other_user_id):
    return headers_for(other_user_id)


@pytest.fixture
def shared_task(client, admin_headers, user_id, other_user_id):
    """指派給 bob 和 carol 的任務"""
    response = client.post('/tasks', headers=admin_headers, json={
        'title': 'Write report',
        'description': 'Quarterly numbers',
        'assignedUserIds': [user_id, other_user_id]
    })
    assert response.status_code == 201
    return response.get_json()
