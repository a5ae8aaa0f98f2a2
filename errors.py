"""
API 錯誤類型

所有錯誤都帶 status_code 和給前端看的 message,
由 app.py 的 errorhandler 統一轉成 {success: false, message, data: null}
"""


class ApiError(Exception):
    status_code = 500
    message = 'An unexpected error occurred'

    def __init__(self, message=None, errors=None):
        super().__init__(message or self.message)
        if message:
            self.message = message
        self.errors = errors


# ============================================
# 認證 / 授權
# ============================================

class InvalidCredentials(ApiError):
    status_code = 401
    message = 'Invalid credentials'


class AccountLocked(ApiError):
    status_code = 423
    message = 'Account locked due to too many failed login attempts'


class EmailNotVerified(ApiError):
    status_code = 403
    message = 'Please verify your email before logging in'


class Unauthorized(ApiError):
    status_code = 401
    message = 'Unauthorized'


class TokenRevoked(ApiError):
    status_code = 401
    message = 'Token revoked'


class TokenExpiredOrInvalid(ApiError):
    status_code = 401
    message = 'Invalid or expired token'


class Forbidden(ApiError):
    status_code = 403
    message = 'Forbidden'


class MalformedToken(ApiError):
    status_code = 400
    message = 'Invalid token'


class InternalError(ApiError):
    status_code = 500
    message = 'An internal error occurred'


# ============================================
# 一般請求錯誤
# ============================================

class BadRequest(ApiError):
    status_code = 400
    message = 'The request is malformed or invalid'


class NotFound(ApiError):
    status_code = 404
    message = 'The requested resource does not exist'


class Conflict(ApiError):
    status_code = 409
    message = 'Resource already exists'
