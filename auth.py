from functools import wraps

from flask import Blueprint, request, jsonify, current_app
from flask_jwt_extended import (
    create_access_token, jwt_required, get_jwt_identity, get_jwt, verify_jwt_in_request
)
from marshmallow import Schema, fields, validate, validates, ValidationError
from extensions import bcrypt, limiter
from models import db, User, ROLES
import logging

auth_bp = Blueprint('auth', __name__)
logger = logging.getLogger(__name__)


# ============================================
# Input Validation Schemas (用 marshmallow)
# ============================================

def _check_password_length(value):
    """密碼長度下限從 config 讀取"""
    min_length = current_app.config['PASSWORD_MIN_LENGTH']
    if len(value) < min_length:
        raise ValidationError(f'Password must be at least {min_length} characters')


class RegisterSchema(Schema):
    """註冊輸入驗證"""
    email = fields.Email(required=True, error_messages={
        'required': 'Email is required',
        'invalid': 'Invalid email format'
    })
    password = fields.String(
        required=True,
        validate=validate.Length(max=128, error='Password must be at most 128 characters'),
        error_messages={'required': 'Password is required'}
    )
    name = fields.String(validate=validate.Length(max=100), allow_none=True)
    role = fields.String(
        validate=validate.OneOf(ROLES, error='Role must be one of: user, admin'),
        load_default='user'
    )

    @validates('password')
    def validate_password(self, value, **kwargs):
        _check_password_length(value)


class LoginSchema(Schema):
    """登入輸入驗證"""
    email = fields.Email(required=True)
    password = fields.String(required=True)


class ChangePasswordSchema(Schema):
    """密碼修改驗證"""
    current_password = fields.String(required=True, data_key='currentPassword')
    new_password = fields.String(
        required=True,
        data_key='newPassword',
        validate=validate.Length(max=128)
    )

    @validates('new_password')
    def validate_new_password(self, value, **kwargs):
        _check_password_length(value)


# ============================================
# Helper Functions
# ============================================

def hash_password(password):
    """用 bcrypt 加密密碼"""
    return bcrypt.generate_password_hash(password).decode('utf-8')


def check_password(pw_hash, password):
    return bcrypt.check_password_hash(pw_hash, password)


def generate_token(user):
    """
    建立 access token

    identity 是 user id (字串),另外帶 userId 和 role claims,
    讓 role_required 不用查 DB 就能判斷權限
    """
    return create_access_token(
        identity=str(user.id),
        additional_claims={'userId': user.id, 'role': user.role}
    )


def validate_request_data(schema_class, data):
    """
    統一的輸入驗證函數

    Returns:
        tuple: (is_valid, data_or_errors)
    """
    schema = schema_class()
    try:
        validated_data = schema.load(data)
        return True, validated_data
    except ValidationError as err:
        return False, err.messages


def validation_error(details):
    return jsonify({
        'error': 'validation_error',
        'message': 'Validation error',
        'details': details
    }), 400


def json_body_required():
    return jsonify({
        'error': 'bad_request',
        'message': 'Request body must be JSON'
    }), 400


def serialize_user(user):
    return {
        'id': user.id,
        'email': user.email,
        'name': user.name,
        'role': user.role,
        'createdAt': user.created_at.isoformat() if user.created_at else None
    }


def get_current_user():
    """
    取得當前登入的使用者

    token 有效但使用者已被刪除時回傳 None
    """
    user_id = get_jwt_identity()
    if not user_id:
        return None
    return db.session.get(User, int(user_id))


def role_required(*roles):
    """
    角色權限檢查 decorator

    先驗證 JWT (缺少或無效 → 401),再檢查 role (不在允許清單 → 403)。
    token 裡的 role claim 可能過時 (被降級或刪除的帳號),所以會再查一次 DB
    """
    def wrapper(fn):
        @wraps(fn)
        def decorator(*args, **kwargs):
            verify_jwt_in_request()
            claims = get_jwt()
            user = get_current_user()
            if not user:
                return jsonify({
                    'error': 'authorization_required',
                    'message': 'User no longer exists'
                }), 401
            if claims.get('role') not in roles or user.role not in roles:
                logger.warning(
                    f"Role {claims.get('role')!r} denied on {request.method} {request.path} "
                    f"(user {get_jwt_identity()})"
                )
                return jsonify({
                    'error': 'forbidden',
                    'message': 'Access denied. Insufficient permissions.'
                }), 403
            return fn(*args, **kwargs)
        return decorator
    return wrapper


# ============================================
# 註冊 API
# ============================================

@auth_bp.route('/register', methods=['POST'])
@limiter.limit('5 per minute')
def register():
    """
    使用者註冊

    email 重複時回傳 400,不區分大小寫
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return json_body_required()

    is_valid, result = validate_request_data(RegisterSchema, data)
    if not is_valid:
        return validation_error(result)

    if result['role'] == 'admin' and not current_app.config['ALLOW_ADMIN_SIGNUP']:
        logger.warning(f"Admin self-registration refused for {result['email']}")
        return jsonify({
            'error': 'forbidden',
            'message': 'Admin accounts cannot be self-registered'
        }), 403

    email = result['email'].strip().lower()
    if User.query.filter_by(email=email).first():
        return jsonify({'error': 'user_exists', 'message': 'User already exists'}), 400

    user = User(
        email=email,
        name=result.get('name'),
        role=result['role'],
        password_hash=hash_password(result['password'])
    )

    try:
        db.session.add(user)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        # 不要把 exception 細節洩漏給前端
        logger.error(f"Registration error for {email}: {str(e)}", exc_info=True)
        return jsonify({
            'error': 'internal_server_error',
            'message': 'Registration failed due to server error'
        }), 500

    logger.info(f"New user registered: {user.email} ({user.role})")

    return jsonify({
        'message': 'User registered successfully',
        'user': {
            'id': user.id,
            'email': user.email,
            'name': user.name,
            'role': user.role
        }
    }), 201


# ============================================
# 登入 API
# ============================================

@auth_bp.route('/login', methods=['POST'])
@limiter.limit('10 per minute')
def login():
    """
    使用者登入

    不區分是 email 錯還是 password 錯,避免帳號枚舉攻擊
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return json_body_required()

    is_valid, result = validate_request_data(LoginSchema, data)
    if not is_valid:
        return validation_error(result)

    email = result['email'].strip().lower()
    user = User.query.filter_by(email=email).first()

    if not user or not check_password(user.password_hash, result['password']):
        logger.warning(f"Failed login attempt for email: {email}")
        return jsonify({
            'error': 'invalid_credentials',
            'message': 'Invalid email or password'
        }), 401

    token = generate_token(user)
    logger.info(f"User logged in: {user.email}")

    return jsonify({
        'message': 'Login successful',
        'token': token,
        'user': serialize_user(user)
    }), 200


# ============================================
# 修改密碼
# ============================================

@auth_bp.route('/change-password', methods=['POST'])
@jwt_required()
def change_password():
    user = get_current_user()
    if not user:
        return jsonify({'error': 'not_found', 'message': 'User not found'}), 404

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return json_body_required()

    is_valid, result = validate_request_data(ChangePasswordSchema, data)
    if not is_valid:
        return validation_error(result)

    if not check_password(user.password_hash, result['current_password']):
        return jsonify({
            'error': 'invalid_credentials',
            'message': 'Current password is incorrect'
        }), 401

    user.password_hash = hash_password(result['new_password'])
    db.session.commit()
    logger.info(f"Password changed for user: {user.email}")

    return jsonify({'message': 'Password changed successfully'}), 200
