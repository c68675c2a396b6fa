from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from . import db
from .settings import settings


def send_email(subject: str, body: str) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - CCR_ENABLE_EMAIL=true
      - CCR_SMTP_HOST / CCR_SMTP_PORT
      - CCR_SMTP_USER / CCR_SMTP_PASSWORD
      - CCR_EMAIL_FROM / CCR_EMAIL_TO
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

        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10)
        server.starttls()
        server.login(settings.smtp_user, settings.smtp_password)
        server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        server.quit()
        return True
    except (smtplib.SMTPException, OSError) as e:
        db.log_event("WARN", f"Alert email not sent: {type(e).__name__}: {e}")
        return False


def _versions(versions: dict[str, int]) -> str:
    return ", ".join(f"{k}={v}" for k, v in sorted(versions.items())) or "(none)"


def alert_body(workload: str, reason: str, record: db.RolloutRecord | None = None, recent: int = 5) -> str:
    """Plain-text alert: the reason, the rollout record involved, and the workload's latest events."""
    lines = [f"Workload: {workload}", f"Reason: {reason}"]
    if record is not None:
        lines += [
            f"Record: #{record.id} {record.kind} ({record.status})",
            f"From: {_versions(record.from_versions)}",
            f"To: {_versions(record.to_versions)}",
        ]
    events = db.latest_events(limit=recent, workload=workload)
    if events:
        lines.append("")
        lines.append("Recent events:")
        lines += [f"  {e['ts']} {e['level']} {e['message']}" for e in events]
    return "\n".join(lines)


def notify(workload: str, subject: str, reason: str, record: db.RolloutRecord | None = None) -> bool:
    if not settings.enable_email:
        return False
    return send_email(f"[ccr] {subject}: {workload}", alert_body(workload, reason, record))
