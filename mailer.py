from flask import current_app
from flask_mail import Message
import logging

from extensions import mail

logger = logging.getLogger(__name__)


def build_verify_url(token):
    return f"{current_app.config['APP_URL'].rstrip('/')}/auth/verify?token={token}"


def send_verification_email(to, token):
    """
    寄送驗證信

    沒開 MAIL_ENABLED 的時候 (開發環境) 只把連結寫到 log
    """
    verify_url = build_verify_url(token)

    if not current_app.config.get('MAIL_ENABLED'):
        logger.info(f"Mail disabled; verification link for {to}: {verify_url}")
        return False

    msg = Message(
        subject='Verify your email',
        recipients=[to],
        body=f'Please verify your email by clicking the link: {verify_url}',
        html=(
            '<p>Please verify your email by clicking the link below:</p>'
            f'<p><a href="{verify_url}">{verify_url}</a></p>'
        )
    )
    mail.send(msg)
    logger.info(f"Verification email sent to {to}")
    return True
