from flask_sqlalchemy import SQLAlchemy
from datetime import datetime

db = SQLAlchemy()

ROLES = ('user', 'admin')
ASSIGNMENT_STATUSES = ('pending', 'completed')

# INTEGER 主鍵上限 (SQLite / PostgreSQL BIGINT)
MAX_DB_ID = 2 ** 63 - 1


# ============================================
# 1. User 模型
# ============================================
class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    name = db.Column(db.String(100), nullable=True)
    role = db.Column(db.String(20), nullable=False, default='user')  # user or admin
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    # 關聯 (刪除使用者時一併刪除他建立的任務和他的指派)
    created_tasks = db.relationship('Task', back_populates='creator', lazy=True,
                                    cascade='all,delete-orphan')
    assignments = db.relationship('TaskAssignment', back_populates='user', lazy=True,
                                  cascade='all,delete-orphan')

    @property
    def is_admin(self):
        return self.role == 'admin'

    def __repr__(self):
        return f'<User {self.email} ({self.role})>'


# ============================================
# 2. Task 模型
# ============================================
class Task(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    creator_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # 關聯
    creator = db.relationship('User', back_populates='created_tasks')
    assignments = db.relationship('TaskAssignment', back_populates='task', lazy=True,
                                  cascade='all,delete-orphan',
                                  order_by='TaskAssignment.id')

    __table_args__ = (
        db.Index('idx_task_creator', 'creator_id'),
        db.Index('idx_task_created_at', 'created_at'),
    )

    # ----------------------------------------
    # 完成度統計 (從 assignments 計算,不存 DB)
    # ----------------------------------------

    @property
    def total_assignments(self):
        return len(self.assignments)

    @property
    def completed_assignments(self):
        return sum(1 for a in self.assignments if a.status == 'completed')

    @property
    def progress(self):
        """完成百分比 0-100,沒有指派時為 0"""
        if not self.assignments:
            return 0
        return round(self.completed_assignments / self.total_assignments * 100)

    @property
    def is_completed(self):
        """所有被指派的人都完成才算完成"""
        return bool(self.assignments) and self.completed_assignments == self.total_assignments

    def __repr__(self):
        return f'<Task {self.id} {self.title!r}>'


# ============================================
# 3. TaskAssignment 模型 (每個使用者對任務的個別狀態)
# ============================================
class TaskAssignment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(db.Integer, db.ForeignKey('task.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False, default='pending')  # pending, completed
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    completed_at = db.Column(db.DateTime, nullable=True)

    task = db.relationship('Task', back_populates='assignments')
    user = db.relationship('User', back_populates='assignments')

    # 唯一性約束
    __table_args__ = (
        db.UniqueConstraint('task_id', 'user_id', name='unique_task_assignment'),
        db.Index('idx_assignment_user_status', 'user_id', 'status'),
    )

    def set_status(self, status):
        """更新狀態,同時維護 completed_at"""
        if status == 'completed' and self.status != 'completed':
            self.completed_at = datetime.utcnow()
        elif status != 'completed':
            self.completed_at = None
        self.status = status

    def __repr__(self):
        return f'<TaskAssignment task={self.task_id} user={self.user_id} {self.status}>'
