import logging
import smtplib
import ssl
from email.message import EmailMessage

from flask import current_app

logger = logging.getLogger(__name__)


def send_email(to, subject, body):
    """Send a plain-text email. Returns True when the message was handed to SMTP."""
    config = current_app.config
    if not config.get('MAIL_ENABLED'):
        logger.info(f"Mail disabled, not sending '{subject}' to {to}")
        return False

    msg = EmailMessage()
    msg['Subject'] = subject
    msg['From'] = config['EMAIL_USER']
    msg['To'] = to
    msg.set_content(body)

    try:
        context = ssl.create_default_context()
        with smtplib.SMTP_SSL(config['SMTP_HOST'], config['SMTP_PORT'], context=context) as smtp:
            smtp.login(config['EMAIL_USER'], config['EMAIL_PASS'])
            smtp.send_message(msg)
        return True
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Email to {to} failed: {e}")
        return False


def send_sms(phone, body):
    """Deliver a text message. The local backend has no SMS gateway, so it logs."""
    logger.info(f"SMS to {phone}: {body}")
