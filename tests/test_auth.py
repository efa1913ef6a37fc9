from datetime import timedelta

from flask_jwt_extended import create_access_token, decode_token

from app import create_app
from auth import check_password, generate_token, hash_password
from config import TestingConfig
from models import db, User


# ============================================
# 密碼與 token 工具
# ============================================

def test_hash_password_differs_from_plaintext(app):
    with app.app_context():
        hashed = hash_password('plainPassword123')
    assert hashed != 'plainPassword123'
    assert len(hashed) > 20


def test_check_password_round_trip(app):
    with app.app_context():
        hashed = hash_password('plainPassword123')
        assert check_password(hashed, 'plainPassword123') is True
        assert check_password(hashed, 'wrongPassword') is False


def test_generate_token_has_three_segments_and_claims(app, admin_id):
    with app.app_context():
        user = db.session.get(User, admin_id)
        token = generate_token(user)
        claims = decode_token(token)

    assert len(token.split('.')) == 3
    assert claims['sub'] == str(admin_id)
    assert claims['userId'] == admin_id
    assert claims['role'] == 'admin'


# ============================================
# 註冊
# ============================================

def test_register_creates_user(client):
    response = client.post('/auth/register', json={
        'email': 'New.User@Example.com',
        'password': 'secret1',
        'name': 'New User'
    })
    assert response.status_code == 201
    user = response.get_json()['user']
    assert user['email'] == 'new.user@example.com'
    assert user['name'] == 'New User'
    assert user['role'] == 'user'


def test_register_invalid_data_returns_400(client):
    response = client.post('/auth/register', json={
        'email': 'not-an-email',
        'password': '123'
    })
    assert response.status_code == 400
    body = response.get_json()
    assert body['message'] == 'Validation error'
    assert 'email' in body['details']
    assert 'password' in body['details']


def test_register_rejects_unknown_role(client):
    response = client.post('/auth/register', json={
        'email': 'x@example.com',
        'password': 'secret1',
        'role': 'superuser'
    })
    assert response.status_code == 400
    assert 'role' in response.get_json()['details']


def test_register_requires_json_body(client):
    response = client.post('/auth/register', data='email=x', content_type='text/plain')
    assert response.status_code == 400
    assert response.get_json()['message'] == 'Request body must be JSON'


def test_register_duplicate_email_is_rejected(client, user_id):
    response = client.post('/auth/register', json={
        'email': 'BOB@example.com',
        'password': 'secret1'
    })
    assert response.status_code == 400
    assert response.get_json()['message'] == 'User already exists'


def test_register_as_admin(client):
    response = client.post('/auth/register', json={
        'email': 'boss@example.com',
        'password': 'secret1',
        'role': 'admin'
    })
    assert response.status_code == 201
    assert response.get_json()['user']['role'] == 'admin'


def test_register_as_admin_can_be_disabled(app, client):
    app.config['ALLOW_ADMIN_SIGNUP'] = False
    response = client.post('/auth/register', json={
        'email': 'boss@example.com',
        'password': 'secret1',
        'role': 'admin'
    })
    assert response.status_code == 403


# ============================================
# 登入
# ============================================

def test_login_returns_token_and_user(client, user_id):
    response = client.post('/auth/login', json={
        'email': 'bob@example.com',
        'password': 'password123'
    })
    assert response.status_code == 200
    body = response.get_json()
    assert len(body['token'].split('.')) == 3
    assert body['user']['id'] == user_id
    assert body['user']['role'] == 'user'


def test_login_token_grants_access(client, user_id):
    token = client.post('/auth/login', json={
        'email': 'bob@example.com',
        'password': 'password123'
    }).get_json()['token']

    response = client.get('/profile', headers={'Authorization': f'Bearer {token}'})
    assert response.status_code == 200
    assert response.get_json()['email'] == 'bob@example.com'


def test_login_wrong_password_and_unknown_email_look_the_same(client, user_id):
    wrong_password = client.post('/auth/login', json={
        'email': 'bob@example.com',
        'password': 'nope-nope'
    })
    unknown_email = client.post('/auth/login', json={
        'email': 'nobody@example.com',
        'password': 'password123'
    })
    assert wrong_password.status_code == 401
    assert unknown_email.status_code == 401
    assert wrong_password.get_json() == unknown_email.get_json()


# ============================================
# 驗證 middleware
# ============================================

def test_protected_route_without_token_returns_401(client):
    response = client.get('/tasks')
    assert response.status_code == 401
    assert response.get_json()['message'] == 'Access denied. No token provided.'


def test_malformed_token_returns_401(client):
    response = client.get('/tasks', headers={'Authorization': 'Bearer not-a-jwt'})
    assert response.status_code == 401
    assert response.get_json()['error'] == 'invalid_token'


def test_expired_token_returns_401(app, client, user_id):
    with app.app_context():
        token = create_access_token(
            identity=str(user_id),
            additional_claims={'userId': user_id, 'role': 'user'},
            expires_delta=timedelta(seconds=-1)
        )
    response = client.get('/tasks', headers={'Authorization': f'Bearer {token}'})
    assert response.status_code == 401
    assert response.get_json()['error'] == 'token_expired'


def test_role_gate_rejects_wrong_role_with_403(client, user_headers):
    response = client.get('/admin/users', headers=user_headers)
    assert response.status_code == 403


def test_role_gate_without_token_returns_401(client):
    response = client.get('/admin/users')
    assert response.status_code == 401


# ============================================
# 修改密碼
# ============================================

def test_change_password(client, user_id, user_headers):
    response = client.post('/auth/change-password', headers=user_headers, json={
        'currentPassword': 'password123',
        'newPassword': 'brand-new-pass'
    })
    assert response.status_code == 200

    old_login = client.post('/auth/login', json={
        'email': 'bob@example.com', 'password': 'password123'
    })
    new_login = client.post('/auth/login', json={
        'email': 'bob@example.com', 'password': 'brand-new-pass'
    })
    assert old_login.status_code == 401
    assert new_login.status_code == 200


def test_change_password_requires_current_password(client, user_headers):
    response = client.post('/auth/change-password', headers=user_headers, json={
        'currentPassword': 'wrong-one',
        'newPassword': 'brand-new-pass'
    })
    assert response.status_code == 401


def test_change_password_validates_new_password(client, user_headers):
    response = client.post('/auth/change-password', headers=user_headers, json={
        'currentPassword': 'password123',
        'newPassword': '123'
    })
    assert response.status_code == 400
    assert 'newPassword' in response.get_json()['details']


# ============================================
# Rate limiting
# ============================================

class RateLimitedConfig(TestingConfig):
    RATELIMIT_ENABLED = True


def test_login_is_rate_limited():
    app = create_app(RateLimitedConfig)
    client = app.test_client()
    try:
        codes = [
            client.post('/auth/login', json={
                'email': 'nobody@example.com', 'password': 'whatever'
            }).status_code
            for _ in range(11)
        ]
        assert codes[:10] == [401] * 10
        assert codes[10] == 429
        assert client.post('/auth/login', json={
            'email': 'nobody@example.com', 'password': 'whatever'
        }).get_json()['error'] == 'rate_limit_exceeded'
    finally:
        with app.app_context():
            db.session.remove()
            db.drop_all()
