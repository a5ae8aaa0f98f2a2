"""
Session 認證

負責:
1. 登入時簽發 JWT (subject id + role)
2. 每個 request / socket 連線都走同一個 authenticate() 驗證
3. 登出時把 token 放進撤銷清單
4. 連續登入失敗的帳號鎖定
5. Email 驗證流程
"""
from collections import namedtuple
from datetime import datetime, timedelta, timezone
import logging
import secrets

import jwt as pyjwt
from flask import current_app
from flask_jwt_extended import create_access_token, decode_token
from flask_jwt_extended.exceptions import JWTExtendedException
from sqlalchemy.exc import SQLAlchemyError

from errors import (
    AccountLocked, BadRequest, Conflict, EmailNotVerified, Forbidden, InternalError,
    InvalidCredentials, MalformedToken, NotFound, TokenExpiredOrInvalid, TokenRevoked,
    Unauthorized,
)
from models import db, User

logger = logging.getLogger(__name__)

Identity = namedtuple('Identity', ['subject_id', 'role'])


def get_authenticator():
    """從 app.extensions 取得 authenticator (不用 global variable)"""
    return current_app.extensions['session_authenticator']


class SessionAuthenticator:

    def __init__(self, ledger, bcrypt, token_ttl=timedelta(days=7), max_failed_attempts=5,
                 lock_duration=timedelta(hours=1), verification_ttl=timedelta(hours=24)):
        self.ledger = ledger
        self.bcrypt = bcrypt
        self.token_ttl = token_ttl
        self.max_failed_attempts = max_failed_attempts
        self.lock_duration = lock_duration
        self.verification_ttl = verification_ttl

    @classmethod
    def from_config(cls, config, ledger, bcrypt):
        return cls(
            ledger,
            bcrypt,
            token_ttl=config['JWT_ACCESS_TOKEN_EXPIRES'],
            max_failed_attempts=config['LOGIN_MAX_FAILED_ATTEMPTS'],
            lock_duration=timedelta(minutes=config['LOGIN_LOCK_MINUTES']),
            verification_ttl=timedelta(hours=config['VERIFICATION_TOKEN_HOURS'])
        )

    # ============================================
    # Token
    # ============================================

    def issue_token(self, subject_id, role):
        """簽發 session token, 回傳 (token, expires_at)"""
        token = create_access_token(
            identity=str(subject_id),
            additional_claims={'role': role},
            expires_delta=self.token_ttl
        )
        return token, self.read_expiry(token)

    @staticmethod
    def read_expiry(token):
        """
        不驗證簽章直接讀 exp

        Returns:
            datetime (naive UTC) 或 None
        """
        try:
            claims = pyjwt.decode(token, options={'verify_signature': False})
        except pyjwt.PyJWTError:
            return None

        exp = claims.get('exp')
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            return None
        try:
            return datetime.fromtimestamp(exp, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            # exp 超出 datetime 範圍 (1e20 / NaN / inf) 視同格式錯誤
            return None

    def authenticate(self, token):
        """
        驗證 token, 所有受保護的 route 和 socket 連線都走這裡

        順序: 缺 token -> 黑名單 -> 簽章/過期
        """
        if not token or not token.strip():
            raise Unauthorized()

        if self.ledger.contains(token):
            raise TokenRevoked()

        try:
            claims = decode_token(token)
        except (pyjwt.PyJWTError, JWTExtendedException) as e:
            logger.info(f"Token verification failed: {str(e)}")
            raise TokenExpiredOrInvalid()

        try:
            subject_id = int(claims['sub'])
        except (KeyError, TypeError, ValueError):
            raise TokenExpiredOrInvalid()

        return Identity(subject_id, claims.get('role', 'user'))

    def logout(self, token):
        """
        登出: token 放進黑名單,到期時間跟 token 的 exp 一樣

        重複登出同一個 token 不會出錯,黑名單只會有一筆
        """
        if not token:
            raise MalformedToken('No token provided')

        expires_at = self.read_expiry(token)
        if expires_at is None:
            raise MalformedToken()

        if expires_at <= datetime.utcnow():
            # 已經自然過期,不需要再記
            return expires_at

        self.ledger.add(token, expires_at)
        return expires_at

    @staticmethod
    def require_role(identity, allowed_roles):
        """allowed_roles 為空代表任何已登入的身分都可以"""
        if allowed_roles and identity.role not in allowed_roles:
            raise Forbidden()

    # ============================================
    # 登入 / 帳號鎖定
    # ============================================

    def login(self, email, password):
        """
        登入

        1. 找不到帳號 -> InvalidCredentials (不累計次數)
        2. 帳號鎖定中 -> AccountLocked, 不檢查密碼
        3. 密碼錯 -> 累計失敗次數, 達上限就鎖定
        4. 密碼對 -> 清除失敗次數, 未驗證 email 則 EmailNotVerified

        Returns:
            tuple: (token, expires_at, user)
        """
        email = email.strip().lower()
        user = User.query.filter_by(email=email).first()
        if not user:
            logger.warning(f"Failed login attempt for unknown email: {email}")
            raise InvalidCredentials()

        now = datetime.utcnow()
        if user.is_locked(now):
            logger.warning(f"Login attempt on locked account: {user.email}")
            raise AccountLocked()

        if not self.bcrypt.check_password_hash(user.password_hash, password):
            self._record_failed_attempt(user.id, user.email, now)
            raise InvalidCredentials()

        user.failed_login_attempts = 0
        user.lock_until = None
        user.last_login = now
        try:
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Failed to reset login counters for {user.email}: {str(e)}", exc_info=True)
            raise InternalError()

        # 密碼正確之後才檢查,避免密碼錯的人知道帳號有沒有驗證
        if not user.is_verified:
            raise EmailNotVerified()

        if not user.is_active:
            raise Forbidden('Account is disabled')

        token, expires_at = self.issue_token(user.id, user.role)
        logger.info(f"User logged in: {user.email}")
        return token, expires_at, user

    def _record_failed_attempt(self, user_id, email, now):
        """
        失敗次數 +1 (在 SQL 端做,避免同時登入造成 lost update)

        寫入失敗只記 log,不影響回傳 InvalidCredentials
        """
        try:
            User.query.filter_by(id=user_id).update(
                {User.failed_login_attempts: User.failed_login_attempts + 1},
                synchronize_session=False
            )
            attempts = db.session.query(User.failed_login_attempts).filter_by(id=user_id).scalar()

            if attempts >= self.max_failed_attempts:
                User.query.filter_by(id=user_id).update(
                    {User.failed_login_attempts: 0, User.lock_until: now + self.lock_duration},
                    synchronize_session=False
                )
                logger.warning(f"Account locked after {attempts} failed attempts: {email}")
            else:
                logger.warning(f"Failed login attempt {attempts} for email: {email}")

            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Failed to record failed login for {email}: {str(e)}", exc_info=True)

    # ============================================
    # 註冊 / Email 驗證
    # ============================================

    def hash_password(self, password):
        return self.bcrypt.generate_password_hash(password).decode('utf-8')

    def _new_verification_token(self):
        return secrets.token_hex(24), datetime.utcnow() + self.verification_ttl

    def register(self, name, email, password, phone=None, address=None):
        """
        建立尚未驗證的帳號

        Returns:
            tuple: (user, verification_token)
        """
        email = email.strip().lower()
        if User.query.filter_by(email=email).first():
            raise Conflict('Email already in use')

        verification_token, verification_expires = self._new_verification_token()
        user = User(
            name=name,
            email=email,
            password_hash=self.hash_password(password),
            phone=phone,
            address=address,
            verification_token=verification_token,
            verification_expires=verification_expires
        )

        try:
            db.session.add(user)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Registration error for {email}: {str(e)}", exc_info=True)
            raise InternalError('Registration failed due to server error')

        logger.info(f"New user registered: {user.email}")
        return user, verification_token

    def verify_email(self, token):
        if not token:
            raise BadRequest('Missing token')

        user = User.query.filter(
            User.verification_token == token,
            User.verification_expires > datetime.utcnow()
        ).first()
        if not user:
            raise BadRequest('Invalid or expired verification token')

        user.is_verified = True
        user.verification_token = None
        user.verification_expires = None
        db.session.commit()

        logger.info(f"Email verified: {user.email}")
        return user

    def resend_verification(self, email):
        """重新產生驗證 token, 回傳 (user, verification_token)"""
        user = User.query.filter_by(email=email.strip().lower()).first()
        if not user:
            raise NotFound('User not found')
        if user.is_verified:
            raise BadRequest('User already verified')

        user.verification_token, user.verification_expires = self._new_verification_token()
        db.session.commit()
        return user, user.verification_token
