from flask import Blueprint, request, g
from marshmallow import Schema, fields, validate
from functools import wraps
import logging

from authenticator import Identity, SessionAuthenticator, get_authenticator
from errors import Forbidden, MalformedToken, Unauthorized
from extensions import limiter
from mailer import send_verification_email
from models import db, User
from responses import success_response
from serializers import serialize_user
from validation import load_json_body

auth_bp = Blueprint('auth', __name__)
logger = logging.getLogger(__name__)

AUTH_RATE_LIMIT = '10 per 15 minutes'


# ============================================
# Input Validation Schemas (用 marshmallow)
# ============================================

class RegisterSchema(Schema):
    """註冊輸入驗證"""
    name = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=100, error='Name must be 1-100 characters'),
        error_messages={'required': 'Name is required'}
    )
    email = fields.Email(required=True, error_messages={
        'required': 'Email is required',
        'invalid': 'Invalid email format'
    })
    password = fields.Str(
        required=True,
        validate=validate.Length(min=6, max=128, error='Password must be 6-128 characters'),
        error_messages={'required': 'Password is required'}
    )
    phone = fields.Str(validate=validate.Length(max=20), allow_none=True)
    address = fields.Str(validate=validate.Length(max=255), allow_none=True)


class LoginSchema(Schema):
    """登入輸入驗證"""
    email = fields.Email(required=True)
    password = fields.Str(required=True)


class ResendVerificationSchema(Schema):
    email = fields.Email(required=True)


# ============================================
# 認證 Gate (供其他模組使用)
# ============================================

def get_bearer_token():
    """從 Authorization: Bearer <token> 取出 token, 沒有則回傳 None"""
    header = request.headers.get('Authorization', '')
    if not header.startswith('Bearer '):
        return None
    return header[len('Bearer '):].strip() or None


def authenticate_request(allowed_roles=None):
    """
    驗證目前的 request, 成功後身分放在 g.identity

    先查黑名單再驗簽章: 登出後、token 到期前回 'Token revoked',
    到期後黑名單紀錄失效, 改回 'Invalid or expired token' (都是 401)

    簽章通過後再讀一次帳號:
    - 帳號已刪除 -> 401
    - 帳號被停用 -> 403
    - role 以資料庫為準, 管理員改角色後舊 token 立即生效
    """
    identity = get_authenticator().authenticate(get_bearer_token())

    user = db.session.get(User, identity.subject_id)
    if not user:
        logger.warning(f"Token valid but user not found: {identity.subject_id}")
        raise Unauthorized('User not found')
    if not user.is_active:
        raise Forbidden('Account is disabled')

    identity = Identity(user.id, user.role)
    SessionAuthenticator.require_role(identity, allowed_roles)
    g.identity = identity
    return identity


def require_auth_for_blueprint():
    """給 blueprint.before_request 用: 整個 blueprint 都需要登入"""
    if request.method == 'OPTIONS':
        return None
    authenticate_request()
    return None


def auth_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        authenticate_request()
        return fn(*args, **kwargs)
    return wrapper


def roles_required(*roles):
    """限定角色, 例如 @roles_required('admin')"""
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            authenticate_request(roles)
            return fn(*args, **kwargs)
        return wrapper
    return decorator


def get_current_identity():
    return g.get('identity')


def get_current_user():
    """
    取得當前登入的使用者

    token 合法但帳號已被刪除時視為未登入
    """
    identity = get_current_identity()
    if identity is None:
        raise Unauthorized()

    user = db.session.get(User, identity.subject_id)
    if not user:
        logger.warning(f"Token valid but user not found: {identity.subject_id}")
        raise Unauthorized('User not found')
    return user


def _send_verification(email, token):
    # 寄信失敗不影響註冊結果,使用者可以再要求重寄
    try:
        send_verification_email(email, token)
    except Exception as e:
        logger.warning(f"Failed to send verification email to {email}: {str(e)}")


# ============================================
# 註冊 API
# ============================================

@auth_bp.route('/register', methods=['POST'])
@limiter.limit(AUTH_RATE_LIMIT)
def register():
    """
    使用者註冊

    帳號建立後是未驗證狀態,要點 email 裡的連結才能登入
    """
    result = load_json_body(RegisterSchema)

    user, verification_token = get_authenticator().register(
        name=result['name'],
        email=result['email'],
        password=result['password'],
        phone=result.get('phone'),
        address=result.get('address')
    )
    _send_verification(user.email, verification_token)

    return success_response(
        'User registered. Please verify your email',
        {'user': serialize_user(user)},
        201
    )


# ============================================
# 登入 / 登出
# ============================================

@auth_bp.route('/login', methods=['POST'])
@limiter.limit(AUTH_RATE_LIMIT)
def login():
    """
    使用者登入

    錯誤訊息不區分 email 或密碼錯誤,避免帳號枚舉
    """
    result = load_json_body(LoginSchema)

    token, expires_at, user = get_authenticator().login(result['email'], result['password'])

    return success_response('Login successful', {
        'token': token,
        'expires_at': expires_at.isoformat() if expires_at else None,
        'user': serialize_user(user)
    })


@auth_bp.route('/logout', methods=['POST'])
def logout():
    """
    登出 (將 token 加入黑名單)

    不驗證簽章,只讀 exp; 同一個 token 登出多次結果一樣
    """
    token = get_bearer_token()
    if not token:
        raise MalformedToken('No token provided')

    get_authenticator().logout(token)
    logger.info(f"Token revoked from {request.remote_addr}")

    return success_response('Logged out')


# ============================================
# Email 驗證
# ============================================

@auth_bp.route('/verify', methods=['GET'])
def verify():
    get_authenticator().verify_email(request.args.get('token'))
    return success_response('Email verified')


@auth_bp.route('/resend-verification', methods=['POST'])
@limiter.limit(AUTH_RATE_LIMIT)
def resend_verification():
    result = load_json_body(ResendVerificationSchema)

    user, verification_token = get_authenticator().resend_verification(result['email'])
    _send_verification(user.email, verification_token)

    return success_response('Verification email sent')


# ============================================
# 取得當前使用者資訊
# ============================================

@auth_bp.route('/me', methods=['GET'])
@auth_required
def get_me():
    user = get_current_user()
    return success_response('Current user', {'user': serialize_user(user)})
