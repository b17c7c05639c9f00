"""
Email Utilities for the Workflow Approval service
File: app/core/email.py
Sends workflow notifications with fallback for missing config
"""

from fastapi_mail import FastMail, MessageSchema, ConnectionConfig
from typing import Dict
import asyncio
import os
import logging

logger = logging.getLogger(__name__)

# sends scheduled on a running loop; held until done so they are not collected mid-flight
_background_tasks = set()

# Check if email credentials are configured
EMAIL_CONFIGURED = all([
    os.getenv("MAIL_USERNAME"),
    os.getenv("MAIL_PASSWORD")
])

# Email configuration (only if credentials are available)
conf = None
fm = None

if EMAIL_CONFIGURED:
    try:
        conf = ConnectionConfig(
            MAIL_USERNAME=os.getenv("MAIL_USERNAME"),
            MAIL_PASSWORD=os.getenv("MAIL_PASSWORD"),
            MAIL_FROM=os.getenv("MAIL_FROM", "noreply@workflow.local"),
            MAIL_PORT=int(os.getenv("MAIL_PORT", 587)),
            MAIL_SERVER=os.getenv("MAIL_SERVER", "smtp.gmail.com"),
            MAIL_STARTTLS=True,
            MAIL_SSL_TLS=False,
            USE_CREDENTIALS=True,
            VALIDATE_CERTS=True
        )
        fm = FastMail(conf)
        logger.info(" Email service configured successfully")
    except Exception as e:
        logger.warning(f" Email configuration failed: {str(e)}")
        EMAIL_CONFIGURED = False
else:
    logger.warning(" Email credentials not found in environment. Email features will be simulated.")


async def send_email(email: str, subject: str, html_body: str) -> Dict[str, str]:
    """
    Send one HTML email.
    If email is not configured, logs the message instead.
    """
    if not EMAIL_CONFIGURED or fm is None:
        # Simulate email sending for development
        logger.info("=" * 70)
        logger.info("📧 EMAIL SIMULATION (No SMTP configured)")
        logger.info("=" * 70)
        logger.info(f"To: {email}")
        logger.info(f"Subject: {subject}")
        logger.info("=" * 70)
        return {
            "status": "simulated",
            "message": "Email simulation logged to console"
        }

    try:
        message = MessageSchema(
            subject=subject,
            recipients=[email],
            body=html_body,
            subtype="html"
        )
        await fm.send_message(message)
        logger.info(f" Email '{subject}' sent to {email}")
        return {
            "status": "sent",
            "message": "Email sent successfully"
        }
    except Exception as e:
        logger.error(f" Failed to send email to {email}: {str(e)}")
        return {
            "status": "fallback",
            "message": "Email sending failed, logged to console"
        }


def send_email_smtp(email: str, subject: str, html_body: str) -> None:
    """
    Synchronous entry point used by services.
    Schedules the send on the running loop, or runs it to completion
    when called from a worker thread without one.
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop is not None:
        task = loop.create_task(send_email(email, subject, html_body))
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
    else:
        asyncio.run(send_email(email, subject, html_body))
