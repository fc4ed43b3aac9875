import logging
import smtplib
from email.mime.text import MIMEText

from app.config import settings
from app.database import SessionLocal
from app.models.user import User
from app.services import payment_events

logger = logging.getLogger(__name__)

_SUBJECTS = {
    payment_events.PAYMENT_SUCCEEDED: "Your subscription is active",
    payment_events.PAYMENT_FAILED: "Your payment did not go through",
    payment_events.PAYMENT_REFUNDED: "Your payment has been refunded",
}


def smtp_configured() -> bool:
    return bool(settings.SMTP_HOST and settings.FROM_EMAIL)


def send_email(to_email: str, subject: str, body: str):
    msg = MIMEText(body)
    msg["Subject"] = subject
    msg["From"] = settings.FROM_EMAIL
    msg["To"] = to_email

    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT) as server:
        server.starttls()
        if settings.SMTP_USER:
            server.login(settings.SMTP_USER, settings.SMTP_PASS)
        server.send_message(msg)


def _receipt_body(event_name: str, payment: dict) -> str:
    lines = [
        f"Transaction: {payment.get('transaction_id')}",
        f"Amount paid: {payment.get('final_amount')} {payment.get('currency')}",
    ]
    if event_name == payment_events.PAYMENT_SUCCEEDED and payment.get("subscription_end"):
        lines.append(f"Valid until: {payment['subscription_end']}")
    return "\n".join(lines)


def send_payment_email(event_name: str, payment: dict) -> None:
    subject = _SUBJECTS.get(event_name)
    if not subject:
        return
    session = SessionLocal()
    try:
        user = session.query(User).filter(User.id == payment.get("user_id")).first()
        email = user.email if user else None
    finally:
        session.close()
    if not email:
        logger.info("No email on file for user %s; skipping %s receipt", payment.get("user_id"), event_name)
        return
    send_email(email, subject, _receipt_body(event_name, payment))
    logger.info("Sent %s email for transaction %s", event_name, payment.get("transaction_id"))


def register_payment_emails() -> bool:
    if not smtp_configured():
        logger.warning("SMTP not configured. Payment emails disabled.")
        return False
    for event_name in _SUBJECTS:
        payment_events.subscribe(event_name, send_payment_email)
    return True
