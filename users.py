from flask import Blueprint, request, jsonify
from flask_jwt_extended import jwt_required, get_jwt_identity
from sqlalchemy import func, case
from marshmallow import Schema, fields, validate
from models import db, User, TaskAssignment, MAX_DB_ID
from auth import (
    get_current_user, role_required, serialize_user,
    validate_request_data, validation_error, json_body_required
)
import logging

users_bp = Blueprint('users', __name__)
logger = logging.getLogger(__name__)


class UpdateProfileSchema(Schema):
    """個人資料更新驗證"""
    name = fields.String(required=True, validate=validate.Length(max=100), allow_none=True)


# ============================================
# 個人資料
# ============================================

@users_bp.route('/profile', methods=['GET'])
@jwt_required()
def get_profile():
    """取得當前登入使用者的資訊"""
    user = get_current_user()
    if not user:
        logger.warning(f"Token valid but user not found: {get_jwt_identity()}")
        return jsonify({'error': 'not_found', 'message': 'User not found'}), 404

    return jsonify(serialize_user(user)), 200


@users_bp.route('/profile', methods=['PATCH'])
@jwt_required()
def update_profile():
    """更新顯示名稱"""
    user = get_current_user()
    if not user:
        return jsonify({'error': 'not_found', 'message': 'User not found'}), 404

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return json_body_required()

    is_valid, result = validate_request_data(UpdateProfileSchema, data)
    if not is_valid:
        return validation_error(result)

    user.name = result['name']
    db.session.commit()
    logger.info(f"User profile updated: {user.email}")

    return jsonify(serialize_user(user)), 200


# ============================================
# 使用者管理 (admin)
# ============================================

@users_bp.route('/admin/users', methods=['GET'])
@role_required('admin')
def get_all_users():
    """
    列出所有使用者

    每位使用者附上被指派的任務數和已完成數
    """
    completed = case((TaskAssignment.status == 'completed', 1), else_=0)
    counts = {
        user_id: (assigned, int(done or 0))
        for user_id, assigned, done in db.session.query(
            TaskAssignment.user_id,
            func.count(TaskAssignment.id),
            func.sum(completed)
        ).group_by(TaskAssignment.user_id).all()
    }

    users = []
    for user in User.query.order_by(User.id.asc()).all():
        assigned, done = counts.get(user.id, (0, 0))
        data = serialize_user(user)
        data['assignedCount'] = assigned
        data['completedCount'] = done
        users.append(data)

    return jsonify(users), 200


@users_bp.route('/admin/users/<int:user_id>', methods=['DELETE'])
@role_required('admin')
def delete_user(user_id):
    """
    刪除使用者

    不能刪除自己;他的指派和他建立的任務會一起刪除
    """
    user = db.session.get(User, user_id) if user_id <= MAX_DB_ID else None
    if not user:
        return jsonify({'error': 'not_found', 'message': 'User not found'}), 404

    if user_id == int(get_jwt_identity()):
        return jsonify({
            'error': 'bad_request',
            'message': 'Admins cannot delete themselves.'
        }), 400

    email = user.email
    db.session.delete(user)
    db.session.commit()

    logger.info(f"User deleted: {email} by admin {get_jwt_identity()}")

    return jsonify({'message': 'User deleted successfully'}), 200
