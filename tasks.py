from flask import Blueprint, request, jsonify
from flask_jwt_extended import jwt_required, get_jwt, get_jwt_identity
from sqlalchemy.orm import joinedload, selectinload
from marshmallow import Schema, fields, validate, ValidationError
from models import db, Task, TaskAssignment, User, ASSIGNMENT_STATUSES, MAX_DB_ID
from auth import (
    get_current_user, role_required, validate_request_data, validation_error, json_body_required
)
import logging

tasks_bp = Blueprint('tasks', __name__)
logger = logging.getLogger(__name__)


# ============================================
# Input Validation Schemas
# ============================================

def _reject_bool(value):
    """JSON 的 true/false 在 Python 是 int 的子類別,要另外擋掉"""
    if isinstance(value, bool):
        raise ValidationError('Not a valid integer.')


class CreateTaskSchema(Schema):
    """建立任務驗證"""
    title = fields.String(
        required=True,
        validate=validate.Length(min=1, max=255),
        error_messages={'required': 'Task title is required'}
    )
    description = fields.String(validate=validate.Length(max=5000), allow_none=True)
    assigned_user_ids = fields.List(
        fields.Integer(
            strict=True,
            validate=[_reject_bool, validate.Range(min=1, max=MAX_DB_ID)]
        ),
        required=True,
        data_key='assignedUserIds',
        validate=validate.Length(min=1, error='At least one user must be assigned'),
        error_messages={'required': 'At least one user must be assigned'}
    )


class UpdateTaskSchema(Schema):
    """更新任務驗證 (admin 改內容,一般使用者只改自己的狀態)"""
    title = fields.String(validate=validate.Length(min=1, max=255))
    description = fields.String(validate=validate.Length(max=5000), allow_none=True)
    status = fields.String(validate=validate.OneOf(ASSIGNMENT_STATUSES))


# ============================================
# 輔助函數
# ============================================

def serialize_assignment(assignment, include_user=True):
    data = {
        'id': assignment.id,
        'taskId': assignment.task_id,
        'userId': assignment.user_id,
        'status': assignment.status,
        'createdAt': assignment.created_at.isoformat() if assignment.created_at else None,
        'completedAt': assignment.completed_at.isoformat() if assignment.completed_at else None
    }
    if include_user:
        data['user'] = {
            'email': assignment.user.email,
            'name': assignment.user.name
        }
    return data


def _task_fields(task):
    return {
        'id': task.id,
        'title': task.title,
        'description': task.description,
        'creatorId': task.creator_id,
        'creator': {'name': task.creator.name},
        'created_at': task.created_at.isoformat() if task.created_at else None,
        'updated_at': task.updated_at.isoformat() if task.updated_at else None
    }


def serialize_task(task):
    """admin 看到的任務:包含所有指派和完成度統計"""
    data = _task_fields(task)
    data.update({
        'assignments': [serialize_assignment(a) for a in task.assignments],
        'totalAssignments': task.total_assignments,
        'completedAssignments': task.completed_assignments,
        'progress': task.progress,
        'isCompleted': task.is_completed
    })
    return data


def serialize_user_task(assignment):
    """一般使用者看到的任務:任務內容 + 自己那一份的狀態"""
    data = _task_fields(assignment.task)
    data.update({
        'status': assignment.status,
        'assignmentId': assignment.id,
        'completedAt': assignment.completed_at.isoformat() if assignment.completed_at else None
    })
    return data


def is_admin_token():
    return get_jwt().get('role') == 'admin'


# ============================================
# 建立任務 (admin)
# ============================================

@tasks_bp.route('/tasks', methods=['POST'])
@role_required('admin')
def create_task():
    """
    建立任務並指派給多位使用者

    每位使用者各有一筆 pending 的 TaskAssignment,重複的 id 只算一次
    """
    current_user = get_current_user()
    if not current_user:
        return jsonify({'error': 'authorization_required', 'message': 'Authentication required'}), 401

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return json_body_required()

    is_valid, result = validate_request_data(CreateTaskSchema, data)
    if not is_valid:
        return validation_error(result)

    # 保留順序去除重複
    user_ids = list(dict.fromkeys(result['assigned_user_ids']))

    found = {u.id for u in User.query.filter(User.id.in_(user_ids)).all()}
    unknown = [uid for uid in user_ids if uid not in found]
    if unknown:
        return validation_error({
            'assignedUserIds': [f"Unknown user id(s): {', '.join(str(uid) for uid in unknown)}"]
        })

    task = Task(
        title=result['title'],
        description=result.get('description'),
        creator=current_user,
        assignments=[TaskAssignment(user_id=uid) for uid in user_ids]
    )

    try:
        # task 和所有 assignments 一次 commit
        db.session.add(task)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Task creation error: {str(e)}", exc_info=True)
        return jsonify({
            'error': 'internal_server_error',
            'message': 'Task creation failed due to server error'
        }), 500

    logger.info(f"Task created: {task.title} ({len(user_ids)} assignees) by {current_user.email}")

    return jsonify(serialize_task(task)), 201


# ============================================
# 查詢任務
# ============================================

@tasks_bp.route('/tasks', methods=['GET'])
@jwt_required()
def get_tasks():
    """
    查詢任務列表

    admin: 所有任務 (含每個人的指派狀態)
    user: 只有指派給自己的任務,status 是自己那一份的狀態

    篩選: ?status=pending|completed
    """
    status = request.args.get('status')
    if status is not None and status not in ASSIGNMENT_STATUSES:
        return validation_error({'status': ['Must be one of: pending, completed.']})

    if is_admin_token():
        tasks = Task.query.options(
            joinedload(Task.creator),
            selectinload(Task.assignments).joinedload(TaskAssignment.user)
        ).order_by(Task.created_at.desc(), Task.id.desc()).all()

        # admin 的 completed = 所有人都完成
        if status == 'completed':
            tasks = [t for t in tasks if t.is_completed]
        elif status == 'pending':
            tasks = [t for t in tasks if not t.is_completed]

        return jsonify([serialize_task(t) for t in tasks]), 200

    query = TaskAssignment.query.filter_by(user_id=int(get_jwt_identity())).options(
        joinedload(TaskAssignment.task).joinedload(Task.creator)
    )
    if status:
        query = query.filter_by(status=status)

    assignments = query.order_by(
        TaskAssignment.created_at.desc(), TaskAssignment.id.desc()
    ).all()

    return jsonify([serialize_user_task(a) for a in assignments]), 200


# ============================================
# 更新任務
# ============================================

@tasks_bp.route('/tasks/<int:task_id>', methods=['PUT'])
@jwt_required()
def update_task(task_id):
    """
    更新任務

    admin 更新 title / description;
    一般使用者只能切換自己那份指派的 status
    """
    if task_id > MAX_DB_ID:
        return jsonify({'error': 'not_found', 'message': 'Task not found'}), 404

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return json_body_required()

    is_valid, result = validate_request_data(UpdateTaskSchema, data)
    if not is_valid:
        return validation_error(result)

    if is_admin_token():
        task = db.session.get(Task, task_id)
        if not task:
            return jsonify({'error': 'not_found', 'message': 'Task not found'}), 404

        for field in ('title', 'description'):
            if field in result:
                setattr(task, field, result[field])

        db.session.commit()
        logger.info(f"Task {task_id} updated by admin {get_jwt_identity()}")

        return jsonify(serialize_task(task)), 200

    if 'title' in result or 'description' in result:
        return jsonify({
            'error': 'forbidden',
            'message': 'Access denied. Only admins can edit task details.'
        }), 403

    if 'status' not in result:
        return validation_error({'status': ['Status is required']})

    assignment = TaskAssignment.query.filter_by(
        task_id=task_id,
        user_id=int(get_jwt_identity())
    ).first()

    if not assignment:
        return jsonify({'error': 'not_found', 'message': 'Assignment not found'}), 404

    old_status = assignment.status
    assignment.set_status(result['status'])
    db.session.commit()

    if old_status != assignment.status:
        logger.info(
            f"Assignment {assignment.id} of task {task_id}: {old_status} -> {assignment.status}"
        )

    return jsonify(serialize_assignment(assignment, include_user=False)), 200


# ============================================
# 刪除任務 (admin)
# ============================================

@tasks_bp.route('/tasks/<int:task_id>', methods=['DELETE'])
@role_required('admin')
def delete_task(task_id):
    """刪除任務 (cascade 會一併刪除所有指派)"""
    task = db.session.get(Task, task_id) if task_id <= MAX_DB_ID else None
    if not task:
        return jsonify({'error': 'not_found', 'message': 'Task not found'}), 404

    task_title = task.title
    db.session.delete(task)
    db.session.commit()

    logger.info(f"Task deleted: {task_title} by admin {get_jwt_identity()}")

    return jsonify({'message': 'Task deleted successfully'}), 200
