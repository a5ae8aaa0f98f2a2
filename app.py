from flask import Flask, request, jsonify
from flask_cors import CORS
from sqlalchemy import text
from werkzeug.exceptions import HTTPException
from datetime import datetime, timedelta
import logging
from logging.handlers import RotatingFileHandler
import os

from authenticator import SessionAuthenticator
from config import get_config
from errors import ApiError
from extensions import bcrypt, jwt, limiter, mail
from models import db
from notifications import start_due_soon_scheduler
from realtime import RealtimeHub
from responses import error_response
from revocation import TokenRevocationLedger, start_blacklist_sweeper


# ============================================
# Logging 設定
# ============================================

def setup_logging(app):
    """
    設定 logging 系統

    1. 分開 info 和 error logs
    2. 使用 RotatingFileHandler 避免 log 檔案過大
    3. 設定統一的 log format
    """
    log_dir = app.config['LOG_DIR']
    if not os.path.exists(log_dir):
        os.mkdir(log_dir)

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

    # 模組的 logger (auth, realtime ...) 也寫進同樣的檔案
    level = getattr(logging, app.config['LOG_LEVEL'].upper(), logging.INFO)
    for target in (app.logger, logging.getLogger()):
        target.addHandler(info_handler)
        target.addHandler(error_handler)
        target.setLevel(level)

    app.logger.info('Application startup')


# ============================================
# 錯誤處理
# ============================================

def register_error_handlers(app):

    @app.errorhandler(ApiError)
    def handle_api_error(error):
        """所有預期內的錯誤都走這裡"""
        if error.status_code >= 500:
            db.session.rollback()
        return error_response(error.message, error.status_code, error.errors)

    @app.errorhandler(404)
    def not_found(error):
        return error_response('The requested resource does not exist', 404)

    @app.errorhandler(405)
    def method_not_allowed(error):
        return error_response('The HTTP method is not allowed for this endpoint', 405)

    @app.errorhandler(429)
    def rate_limit_exceeded(error):
        """處理 rate limit 超過"""
        app.logger.warning(f"Rate limit exceeded from: {request.remote_addr}")
        return error_response('Too many requests. Please try again later.', 429)

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        """
        處理所有未預期的錯誤

        不洩漏錯誤細節給前端, 完整的 stack trace 寫到 log
        """
        if isinstance(error, HTTPException):
            return error_response(error.description, error.code)

        db.session.rollback()
        app.logger.error(f"Unexpected error: {str(error)}", exc_info=True)
        return error_response('An unexpected error occurred. Please try again later.', 500)


# ============================================
# Request / Response hooks
# ============================================

def register_request_hooks(app):

    @app.before_request
    def log_request():
        """記錄每個請求"""
        if not app.debug:
            app.logger.info(f"Request: {request.method} {request.path} from {request.remote_addr}")

    @app.after_request
    def log_response(response):
        """記錄每個回應並加上 security headers"""
        if not app.debug:
            app.logger.info(f"Response: {response.status_code} for {request.method} {request.path}")

        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['X-XSS-Protection'] = '1; mode=block'
        return response


def register_blueprints(app):
    from activity import activity_bp
    from auth import auth_bp
    from comments import comments_bp
    from notifications import notifications_bp
    from projects import projects_bp
    from tasks import tasks_bp
    from teams import teams_bp
    from users import users_bp

    app.register_blueprint(auth_bp, url_prefix='/auth')
    app.register_blueprint(users_bp)
    app.register_blueprint(teams_bp)
    app.register_blueprint(projects_bp)
    app.register_blueprint(tasks_bp)
    app.register_blueprint(comments_bp)
    app.register_blueprint(notifications_bp)
    app.register_blueprint(activity_bp)


# ============================================
# App Factory
# ============================================

def create_app(config_class=None):
    """
    建立 Flask app

    authenticator 和 realtime hub 都放在 app.extensions,
    每次呼叫都是獨立的一組, 測試之間不會互相影響
    """
    config_class = config_class or get_config()
    config_class.validate()

    app = Flask(__name__)
    app.config.from_object(config_class)

    # 不要用 '*', 指定允許的來源
    CORS(app,
         supports_credentials=True,
         origins=app.config['CORS_ORIGINS'],
         methods=['GET', 'POST', 'PATCH', 'DELETE', 'OPTIONS'],
         allow_headers=['Content-Type', 'Authorization'])

    # ============================================
    # 擴展初始化
    # ============================================

    db.init_app(app)
    jwt.init_app(app)
    bcrypt.init_app(app)
    limiter.init_app(app)
    mail.init_app(app)

    app.extensions['bcrypt'] = bcrypt

    ledger = TokenRevocationLedger()
    authenticator = SessionAuthenticator.from_config(app.config, ledger, bcrypt)
    app.extensions['session_authenticator'] = authenticator

    hub = RealtimeHub(app, authenticator)

    if not app.debug and not app.testing:
        setup_logging(app)

    with app.app_context():
        db.create_all()

    register_error_handlers(app)
    register_request_hooks(app)
    register_blueprints(app)

    # ============================================
    # Health Check
    # ============================================

    @app.route('/health', methods=['GET'])
    def health_check():
        """
        健康檢查端點

        用於 load balancer 或監控系統檢查服務是否正常
        """
        try:
            db.session.execute(text('SELECT 1'))
        except Exception as e:
            app.logger.error(f"Health check failed: {str(e)}")
            return jsonify({
                'status': 'unhealthy',
                'database': 'disconnected',
                'error': 'Database connection failed'
            }), 503

        return jsonify({
            'status': 'healthy',
            'database': 'connected',
            'websocket_connections': hub.connection_count(),
            'version': app.config['API_VERSION'],
            'timestamp': datetime.utcnow().isoformat()
        }), 200

    start_blacklist_sweeper(app, hub.socketio, ledger, app.config['TOKEN_BLACKLIST_SWEEP_SECONDS'])
    start_due_soon_scheduler(app, hub.socketio, app.config['DUE_SOON_CHECK_SECONDS'],
                             timedelta(hours=app.config['DUE_SOON_WINDOW_HOURS']))

    return app


# ============================================
# 啟動應用
# ============================================

if __name__ == '__main__':
    app = create_app()

    debug_mode = os.getenv('FLASK_DEBUG', 'False').lower() == 'true'
    port = int(os.getenv('FLASK_PORT', 8888))

    # 用 socketio.run 才能同時提供 HTTP 和 WebSocket
    app.extensions['realtime_hub'].socketio.run(
        app,
        debug=debug_mode,
        port=port,
        host='0.0.0.0',  # 允許外部訪問
        allow_unsafe_werkzeug=debug_mode
    )
