"""
Token 撤銷清單 (登出黑名單)

每筆資料的 expires_at 等於 token 本身的 exp,
所以紀錄不會活得比 token 久; 過期的紀錄由背景清理刪除,
查詢時也會忽略已過期的紀錄
"""
from datetime import datetime
import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import db, TokenBlacklist

logger = logging.getLogger(__name__)


class TokenRevocationLedger:

    def __init__(self, session=None):
        self.session = session if session is not None else db.session

    def add(self, token, expires_at):
        """
        把 token 加入黑名單

        同一個 token 重複登出時以最後一次為準 (只更新 expires_at)
        """
        entry = self.session.query(TokenBlacklist).filter_by(token=token).first()
        if entry:
            entry.expires_at = expires_at
            self.session.commit()
            return entry

        entry = TokenBlacklist(token=token, expires_at=expires_at)
        try:
            self.session.add(entry)
            self.session.commit()
        except IntegrityError:
            # 另一個 request 剛好先寫入了同一個 token
            self.session.rollback()
            entry = self.session.query(TokenBlacklist).filter_by(token=token).one()
            entry.expires_at = expires_at
            self.session.commit()
        return entry

    def contains(self, token, now=None):
        now = now or datetime.utcnow()
        return self.session.query(
            self.session.query(TokenBlacklist).filter(
                TokenBlacklist.token == token,
                TokenBlacklist.expires_at > now
            ).exists()
        ).scalar()

    def prune_expired(self, now=None):
        """刪除已過期的紀錄,回傳刪除筆數"""
        now = now or datetime.utcnow()
        try:
            removed = self.session.query(TokenBlacklist).filter(
                TokenBlacklist.expires_at <= now
            ).delete(synchronize_session=False)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise

        if removed:
            logger.info(f"Pruned {removed} expired blacklist entries")
        return removed


def start_blacklist_sweeper(app, socketio, ledger, interval):
    """
    背景定期清理過期的黑名單

    用 socketio 的 background task,這樣 eventlet / gevent / threading 都能跑
    """
    if not interval:
        return None

    def sweep():
        while True:
            socketio.sleep(interval)
            with app.app_context():
                try:
                    ledger.prune_expired()
                except Exception as e:
                    logger.error(f"Blacklist sweep failed: {str(e)}", exc_info=True)
                finally:
                    db.session.remove()

    logger.info(f"Token blacklist sweeper started (every {interval}s)")
    return socketio.start_background_task(sweep)
