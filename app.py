from flask import Flask, request, jsonify, current_app
from werkzeug.exceptions import HTTPException
from sqlalchemy import text
from datetime import datetime
import logging
from logging.handlers import RotatingFileHandler
import os

from config import get_config
from extensions import jwt, bcrypt, cors, limiter
from models import db


# ============================================
# Logging 設定
# ============================================

def setup_logging(app):
    """
    設定 logging 系統

    1. 分開 info 和 error logs
    2. 使用 RotatingFileHandler 避免 log 檔案過大
    3. 掛在 root logger,各 blueprint 的 module logger 也會寫進檔案
    """
    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )

    # Info log handler (記錄一般資訊)
    info_handler = RotatingFileHandler(
        os.path.join(log_dir, 'app.log'),
        maxBytes=10240000,  # 10MB
        backupCount=10
    )
    info_handler.setLevel(logging.INFO)
    info_handler.setFormatter(formatter)

    # Error log handler (只記錄錯誤)
    error_handler = RotatingFileHandler(
        os.path.join(log_dir, 'error.log'),
        maxBytes=10240000,  # 10MB
        backupCount=10
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)

    # 同一個 process 多次 create_app 時不要重複掛 handler
    root = logging.getLogger()
    existing = {getattr(h, 'baseFilename', None) for h in root.handlers}
    for handler in (info_handler, error_handler):
        if handler.baseFilename in existing:
            handler.close()
        else:
            root.addHandler(handler)
    root.setLevel(app.config['LOG_LEVEL'])

    app.logger.info('Application startup')


# ============================================
# JWT 錯誤處理
# ============================================

@jwt.expired_token_loader
def expired_token_callback(jwt_header, jwt_payload):
    """處理 token 過期"""
    current_app.logger.warning(f"Expired token attempt from: {request.remote_addr}")
    return jsonify({
        'error': 'token_expired',
        'message': 'The token has expired. Please login again.'
    }), 401


@jwt.invalid_token_loader
def invalid_token_callback(error):
    """處理無效的 token"""
    current_app.logger.warning(f"Invalid token attempt from: {request.remote_addr}, error: {error}")
    return jsonify({
        'error': 'invalid_token',
        'message': 'Invalid token.'
    }), 401


@jwt.unauthorized_loader
def unauthorized_callback(error):
    """處理缺少 token"""
    current_app.logger.warning(f"Unauthorized access attempt from: {request.remote_addr}, error: {error}")
    return jsonify({
        'error': 'authorization_required',
        'message': 'Access denied. No token provided.'
    }), 401


# ============================================
# 全域錯誤處理
# ============================================

def register_error_handlers(app):

    @app.errorhandler(400)
    def bad_request(error):
        return jsonify({
            'error': 'bad_request',
            'message': 'The request is malformed or invalid',
            'status': 400
        }), 400

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            'error': 'not_found',
            'message': 'Route not found',
            'status': 404
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({
            'error': 'method_not_allowed',
            'message': 'The HTTP method is not allowed for this endpoint',
            'status': 405
        }), 405

    @app.errorhandler(429)
    def rate_limit_exceeded(error):
        app.logger.warning(f"Rate limit exceeded from: {request.remote_addr}")
        return jsonify({
            'error': 'rate_limit_exceeded',
            'message': 'Too many requests. Please try again later.',
            'status': 429
        }), 429

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        """
        最後的防線

        其他 HTTP 錯誤照原本的 status code 回傳;
        未預期的 exception 一律 rollback 並回傳 500,不洩漏細節
        """
        if isinstance(error, HTTPException):
            return jsonify({
                'error': error.name.lower().replace(' ', '_'),
                'message': error.description,
                'status': error.code
            }), error.code

        db.session.rollback()
        app.logger.error(f"Unexpected error: {str(error)}", exc_info=True)

        return jsonify({
            'error': 'internal_server_error',
            'message': 'Something went wrong!',
            'status': 500
        }), 500


# ============================================
# Application Factory
# ============================================

def create_app(config_class=None):
    app = Flask(__name__)
    config_class = config_class or get_config()
    config_class.validate()
    app.config.from_object(config_class)

    # 擴展初始化
    db.init_app(app)
    jwt.init_app(app)
    bcrypt.init_app(app)
    limiter.init_app(app)
    cors.init_app(
        app,
        supports_credentials=True,
        origins=app.config['CORS_ORIGINS'],
        methods=['GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'OPTIONS'],
        allow_headers=['Content-Type', 'Authorization']
    )

    # 在 production 環境啟用檔案 logging
    if not app.debug and not app.testing:
        setup_logging(app)

    with app.app_context():
        db.create_all()

    # 註冊 Blueprints
    from auth import auth_bp
    from tasks import tasks_bp
    from users import users_bp
    from commands import register_commands

    app.register_blueprint(auth_bp, url_prefix='/auth')
    app.register_blueprint(tasks_bp)
    app.register_blueprint(users_bp)
    register_commands(app)

    register_error_handlers(app)

    # ----------------------------------------
    # Request/Response Logging
    # ----------------------------------------

    @app.before_request
    def log_request():
        app.logger.debug(f"Request: {request.method} {request.path} from {request.remote_addr}")

    @app.after_request
    def log_response(response):
        app.logger.info(f"Response: {response.status_code} for {request.method} {request.path}")

        # 加上 security headers
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        return response

    # ----------------------------------------
    # Health Check
    # ----------------------------------------

    @app.route('/health', methods=['GET'])
    @limiter.exempt
    def health_check():
        """用於 load balancer 或監控系統檢查服務是否正常"""
        try:
            db.session.execute(text('SELECT 1'))
        except Exception as e:
            app.logger.error(f"Health check failed: {str(e)}")
            return jsonify({
                'status': 'error',
                'database': 'disconnected',
                'timestamp': datetime.utcnow().isoformat()
            }), 503

        return jsonify({
            'status': 'ok',
            'database': 'connected',
            'timestamp': datetime.utcnow().isoformat()
        }), 200

    @app.route('/')
    def home():
        return jsonify({
            'message': 'Task Tracker API',
            'version': app.config['API_VERSION'],
            'endpoints': {
                'health': {'path': '/health', 'methods': ['GET']},
                'auth': {
                    'register': {'path': '/auth/register', 'methods': ['POST']},
                    'login': {'path': '/auth/login', 'methods': ['POST']},
                    'change_password': {'path': '/auth/change-password', 'methods': ['POST']}
                },
                'profile': {'path': '/profile', 'methods': ['GET', 'PATCH']},
                'tasks': {
                    'list': {'path': '/tasks', 'methods': ['GET', 'POST']},
                    'detail': {'path': '/tasks/:id', 'methods': ['PUT', 'DELETE']}
                },
                'admin': {
                    'users': {'path': '/admin/users', 'methods': ['GET']},
                    'user': {'path': '/admin/users/:id', 'methods': ['DELETE']}
                }
            }
        })

    return app


# ============================================
# 啟動應用
# ============================================

if __name__ == '__main__':
    # 在 production 環境不要用 Flask 內建的 server
    # 應該用 gunicorn: gunicorn "app:create_app()"
    app = create_app()
    app.run(
        debug=app.config['DEBUG'],
        port=int(os.getenv('PORT', 3000)),
        host='0.0.0.0'
    )
