from __future__ import annotations

import logging
import os
import smtplib
from email.message import EmailMessage

logger = logging.getLogger(__name__)

BCC_BATCH_SIZE = 100


def smtp_settings() -> dict[str, str | int | None]:
    smtp_user = os.environ.get("SMTP_USER")
    return {
        "host": os.environ.get("SMTP_HOST"),
        "port": int(os.environ.get("SMTP_PORT", "587")),
        "user": smtp_user,
        "password": os.environ.get("SMTP_PASSWORD"),
        "from": os.environ.get("SMTP_FROM", smtp_user or ""),
    }


def build_message(
    sender: str,
    to_email: str | None,
    subject: str,
    text: str,
    html: str | None = None,
    bcc: list[str] | None = None,
    attachments: list[tuple[str, bytes, str]] | None = None,
) -> EmailMessage:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = to_email or sender
    if bcc:
        msg["Bcc"] = ", ".join(bcc)
    msg.set_content(text)
    if html:
        msg.add_alternative(html, subtype="html")

    for file_name, content, mime in attachments or []:
        maintype, _, subtype = (mime or "application/octet-stream").partition("/")
        msg.add_attachment(
            content,
            maintype=maintype,
            subtype=subtype or "octet-stream",
            filename=file_name,
        )
    return msg


def send_email(
    to_email: str | None,
    subject: str,
    text: str,
    html: str | None = None,
    bcc: list[str] | None = None,
    attachments: list[tuple[str, bytes, str]] | None = None,
) -> tuple[bool, str]:
    settings = smtp_settings()
    if not settings["host"] or not settings["user"] or not settings["password"] or not settings["from"]:
        return False, "SMTP is not configured. Set SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASSWORD, SMTP_FROM."

    msg = build_message(str(settings["from"]), to_email, subject, text, html, bcc, attachments)

    try:
        with smtplib.SMTP(str(settings["host"]), int(settings["port"]), timeout=10) as server:
            server.starttls()
            server.login(str(settings["user"]), str(settings["password"]))
            server.send_message(msg)
        logger.info("Email sent: %s", subject)
        return True, "Email sent successfully."
    except (smtplib.SMTPException, OSError) as exc:
        logger.warning("Email send failed for %r: %s", subject, exc)
        return False, f"Email send failed: {exc}"


def send_bulk(
    recipients: list[str],
    subject: str,
    text: str,
    attachments: list[tuple[str, bytes, str]] | None = None,
) -> int:
    sent_batches = 0
    for start in range(0, len(recipients), BCC_BATCH_SIZE):
        batch = recipients[start:start + BCC_BATCH_SIZE]
        ok, detail = send_email(None, subject, text, bcc=batch, attachments=attachments)
        if ok:
            sent_batches += 1
        else:
            logger.warning("Email batch %d not sent: %s", start // BCC_BATCH_SIZE + 1, detail)
    return sent_batches
