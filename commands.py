import click
from flask.cli import with_appcontext
from sqlalchemy.orm import joinedload

from auth import hash_password
from models import db, User, Task, TaskAssignment

# ============================================
# 維護用 CLI (flask <command>)
# ============================================


@click.command('init-db')
@with_appcontext
def init_db_command():
    """建立所有資料表"""
    db.create_all()
    click.echo('Database tables created')


@click.command('create-admin')
@click.argument('email')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True)
@click.option('--name', default=None, help='Display name')
@with_appcontext
def create_admin_command(email, password, name):
    """建立 admin 帳號,email 已存在時直接升級為 admin"""
    email = email.strip().lower()
    user = User.query.filter_by(email=email).first()
    if user:
        user.role = 'admin'
        if name is not None:
            user.name = name
        click.echo(f'Promoted {email} to admin')
    else:
        user = User(email=email, name=name, role='admin', password_hash=hash_password(password))
        db.session.add(user)
        click.echo(f'Created admin {email}')
    db.session.commit()


@click.command('fix-names')
@with_appcontext
def fix_names_command():
    """把預設的 'User' 名稱清空"""
    count = User.query.filter_by(name='User').update({'name': ''})
    db.session.commit()
    click.echo(f'Cleanup complete. Updated {count} users.')


@click.command('check-db')
@with_appcontext
def check_db_command():
    """檢查資料庫連線"""
    try:
        count = User.query.count()
    except Exception as e:
        raise click.ClickException(f'Database connection failed: {e}')
    click.echo(f'Database connection successful. User count: {count}')


@click.command('show-db')
@with_appcontext
def show_db_command():
    """印出資料庫內容"""
    click.echo('=' * 60)

    users = User.query.order_by(User.id).all()
    click.echo(f'Users ({len(users)}):')
    for u in users:
        click.echo(f'  ID: {u.id}, Email: {u.email}, Name: {u.name or "-"}, Role: {u.role}')

    tasks = Task.query.options(joinedload(Task.creator)).order_by(Task.id).all()
    click.echo(f'Tasks ({len(tasks)}):')
    for t in tasks:
        click.echo(
            f'  ID: {t.id}, Title: {t.title}, Creator: {t.creator.email}, '
            f'Done: {t.completed_assignments}/{t.total_assignments}'
        )

    assignments = TaskAssignment.query.order_by(TaskAssignment.id).all()
    click.echo(f'Assignments ({len(assignments)}):')
    for a in assignments:
        click.echo(f'  Task: {a.task_id}, User: {a.user_id}, Status: {a.status}')

    click.echo('=' * 60)


def register_commands(app):
    for command in (init_db_command, create_admin_command, fix_names_command,
                    check_db_command, show_db_command):
        app.cli.add_command(command)
