from datetime import datetime, timedelta

import jwt as pyjwt
import pytest
from sqlalchemy.exc import SQLAlchemyError

from authenticator import Identity, SessionAuthenticator
from errors import (
    AccountLocked, BadRequest, Conflict, EmailNotVerified, Forbidden, InvalidCredentials,
    MalformedToken, NotFound, TokenExpiredOrInvalid, TokenRevoked, Unauthorized,
)
from extensions import bcrypt
from models import db, TokenBlacklist, User
from tests.conftest import DEFAULT_PASSWORD


def _reload(user):
    db.session.expire_all()
    return db.session.get(User, user.id)


# ============================================
# Token
# ============================================

def test_issue_and_authenticate_round_trip(authenticator):
    token, expires_at = authenticator.issue_token(42, "admin")

    identity = authenticator.authenticate(token)

    assert identity == Identity(42, "admin")
    assert expires_at - datetime.utcnow() > timedelta(days=6)


@pytest.mark.parametrize("token", [None, "", "   "])
def test_authenticate_without_token(authenticator, token):
    with pytest.raises(Unauthorized):
        authenticator.authenticate(token)


def test_authenticate_garbage_token(authenticator):
    with pytest.raises(TokenExpiredOrInvalid):
        authenticator.authenticate("not-a-jwt")


def test_authenticate_expired_token(app, authenticator):
    expired = SessionAuthenticator(authenticator.ledger, bcrypt, token_ttl=timedelta(seconds=-10))
    token, _ = expired.issue_token(1, "user")

    with pytest.raises(TokenExpiredOrInvalid):
        authenticator.authenticate(token)


def test_authenticate_token_signed_with_other_secret(app, authenticator):
    token, _ = authenticator.issue_token(1, "user")
    app.config["JWT_SECRET_KEY"] = "a-completely-different-secret-value"

    with pytest.raises(TokenExpiredOrInvalid):
        authenticator.authenticate(token)


def test_revoked_token_is_rejected_before_verification(authenticator):
    token, _ = authenticator.issue_token(7, "user")

    authenticator.logout(token)

    with pytest.raises(TokenRevoked):
        authenticator.authenticate(token)


def test_revoked_token_past_expiry_reads_as_expired(authenticator):
    expired = SessionAuthenticator(authenticator.ledger, bcrypt, token_ttl=timedelta(seconds=-10))
    token, expires_at = expired.issue_token(7, "user")
    # 黑名單紀錄跟 token 同時到期, 還沒被清掉
    authenticator.ledger.add(token, expires_at)

    with pytest.raises(TokenExpiredOrInvalid):
        authenticator.authenticate(token)
    assert TokenBlacklist.query.filter_by(token=token).count() == 1


def test_logout_twice_keeps_one_entry(authenticator):
    token, expires_at = authenticator.issue_token(7, "user")

    assert authenticator.logout(token) == expires_at
    authenticator.logout(token)

    assert TokenBlacklist.query.filter_by(token=token).count() == 1


def test_logout_entry_expires_with_token(authenticator):
    token, expires_at = authenticator.issue_token(7, "user")

    authenticator.logout(token)

    assert TokenBlacklist.query.filter_by(token=token).one().expires_at == expires_at


@pytest.mark.parametrize("token", [None, "", "garbage"])
def test_logout_malformed_token(authenticator, token):
    with pytest.raises(MalformedToken):
        authenticator.logout(token)


@pytest.mark.parametrize("exp", [10**20, -(10**20), float("inf")])
def test_logout_token_with_out_of_range_exp(authenticator, exp):
    token = pyjwt.encode({"sub": "1", "exp": exp}, "some-long-secret-used-only-in-this-test",
                         algorithm="HS256")

    assert SessionAuthenticator.read_expiry(token) is None
    with pytest.raises(MalformedToken):
        authenticator.logout(token)
    assert TokenBlacklist.query.count() == 0


def test_read_expiry_without_exp_claim():
    token = pyjwt.encode({"sub": "1"}, "some-long-secret-used-only-in-this-test", algorithm="HS256")

    assert SessionAuthenticator.read_expiry(token) is None


def test_require_role():
    identity = Identity(1, "user")

    SessionAuthenticator.require_role(identity, [])
    SessionAuthenticator.require_role(identity, ["user", "admin"])
    with pytest.raises(Forbidden):
        SessionAuthenticator.require_role(identity, ["admin"])


# ============================================
# 登入 / 帳號鎖定
# ============================================

def test_login_success_resets_counters(authenticator, make_user):
    user = make_user()
    user.failed_login_attempts = 3
    db.session.commit()

    token, expires_at, logged_in = authenticator.login("ALICE@example.com", DEFAULT_PASSWORD)

    assert logged_in.id == user.id
    assert authenticator.authenticate(token).subject_id == user.id
    user = _reload(user)
    assert user.failed_login_attempts == 0
    assert user.lock_until is None
    assert user.last_login is not None


def test_unknown_email_touches_nothing(authenticator, make_user):
    user = make_user()

    with pytest.raises(InvalidCredentials):
        authenticator.login("nobody@example.com", DEFAULT_PASSWORD)

    assert _reload(user).failed_login_attempts == 0


def test_wrong_password_increments_counter(authenticator, make_user):
    user = make_user()

    for expected in range(1, 5):
        with pytest.raises(InvalidCredentials):
            authenticator.login(user.email, "wrong-password")
        assert _reload(user).failed_login_attempts == expected

    assert _reload(user).lock_until is None


def test_fifth_failure_locks_account_and_resets_counter(authenticator, make_user):
    user = make_user()
    before = datetime.utcnow()

    for _ in range(5):
        with pytest.raises(InvalidCredentials):
            authenticator.login(user.email, "wrong-password")

    user = _reload(user)
    assert user.failed_login_attempts == 0
    assert user.lock_until >= before + timedelta(minutes=59)
    assert user.lock_until <= datetime.utcnow() + timedelta(hours=1)


def test_locked_account_rejects_correct_password(authenticator, make_user):
    user = make_user()
    user.lock_until = datetime.utcnow() + timedelta(minutes=30)
    db.session.commit()

    with pytest.raises(AccountLocked):
        authenticator.login(user.email, DEFAULT_PASSWORD)

    user = _reload(user)
    assert user.failed_login_attempts == 0
    assert user.last_login is None


def test_locked_account_wrong_password_does_not_count(authenticator, make_user):
    user = make_user()
    user.lock_until = datetime.utcnow() + timedelta(minutes=30)
    db.session.commit()

    with pytest.raises(AccountLocked):
        authenticator.login(user.email, "wrong-password")

    assert _reload(user).failed_login_attempts == 0


def test_expired_lock_allows_login(authenticator, make_user):
    user = make_user()
    user.lock_until = datetime.utcnow() - timedelta(seconds=1)
    db.session.commit()

    _, _, logged_in = authenticator.login(user.email, DEFAULT_PASSWORD)

    assert logged_in.id == user.id
    assert _reload(user).lock_until is None


def test_unverified_user_gets_counter_reset_then_rejected(authenticator, make_user):
    user = make_user(verified=False)
    user.failed_login_attempts = 2
    db.session.commit()

    with pytest.raises(EmailNotVerified):
        authenticator.login(user.email, DEFAULT_PASSWORD)

    assert _reload(user).failed_login_attempts == 0


def test_disabled_account_is_forbidden(authenticator, make_user):
    user = make_user()
    user.is_active = False
    db.session.commit()

    with pytest.raises(Forbidden):
        authenticator.login(user.email, DEFAULT_PASSWORD)


def test_failed_attempt_bookkeeping_error_still_invalid_credentials(authenticator, make_user, monkeypatch):
    user = make_user()

    def broken_commit():
        raise SQLAlchemyError("database is gone")

    monkeypatch.setattr(db.session, "commit", broken_commit)

    with pytest.raises(InvalidCredentials):
        authenticator.login(user.email, "wrong-password")

    monkeypatch.undo()
    assert _reload(user).failed_login_attempts == 0


# ============================================
# 註冊 / Email 驗證
# ============================================

def test_register_creates_unverified_user(authenticator):
    user, token = authenticator.register("Bob", "Bob@Example.com", "secret-pass")

    assert user.email == "bob@example.com"
    assert not user.is_verified
    assert len(token) == 48
    assert user.verification_expires > datetime.utcnow() + timedelta(hours=23)


def test_register_duplicate_email(authenticator, make_user):
    make_user(email="bob@example.com")

    with pytest.raises(Conflict):
        authenticator.register("Bob", "bob@example.com", "secret-pass")


def test_verify_email(authenticator):
    user, token = authenticator.register("Bob", "bob@example.com", "secret-pass")

    authenticator.verify_email(token)

    user = _reload(user)
    assert user.is_verified
    assert user.verification_token is None


def test_verify_email_expired_token(authenticator):
    user, token = authenticator.register("Bob", "bob@example.com", "secret-pass")
    user.verification_expires = datetime.utcnow() - timedelta(minutes=1)
    db.session.commit()

    with pytest.raises(BadRequest):
        authenticator.verify_email(token)
    with pytest.raises(BadRequest):
        authenticator.verify_email(None)


def test_resend_verification(authenticator, make_user):
    user, old_token = authenticator.register("Bob", "bob@example.com", "secret-pass")

    _, new_token = authenticator.resend_verification("bob@example.com")

    assert new_token != old_token
    assert _reload(user).verification_token == new_token

    make_user(email="done@example.com")
    with pytest.raises(BadRequest):
        authenticator.resend_verification("done@example.com")
    with pytest.raises(NotFound):
        authenticator.resend_verification("ghost@example.com")
