from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from .settings import settings

logger = logging.getLogger(__name__)


def send_email(subject: str, body: str) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - ARC_ENABLE_EMAIL=true
      - ARC_SMTP_HOST / ARC_SMTP_PORT
      - ARC_SMTP_USER / ARC_SMTP_PASSWORD
      - ARC_EMAIL_FROM / ARC_EMAIL_TO
    """
    if not settings.enable_email:
        return False
    if not all(
        [
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
            settings.email_to,
        ]
    ):
        return False

    try:
        msg = MIMEMultipart()
        msg["From"] = settings.email_from
        msg["To"] = settings.email_to
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain"))

        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port)
        server.starttls()
        server.login(settings.smtp_user, settings.smtp_password)
        server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        server.quit()
        return True
    except (smtplib.SMTPException, OSError) as e:
        logger.warning("Alert email failed: %s", e)
        return False


def condition_alert(workload_id: str, condition: str, reason: str, raised: bool) -> bool:
    subject = f"{'RAISED' if raised else 'CLEARED'}: {condition} on {workload_id}"
    body = f"Workload: {workload_id}\nCondition: {condition}\nState: {'raised' if raised else 'cleared'}\nReason: {reason}"
    return send_email(subject, body)
