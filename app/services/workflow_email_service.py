# =====================================================
# FILE: app/services/workflow_email_service.py
# Workflow Email Notification Service
# Renders approval emails for workflow events
# =====================================================

import html
import logging
from datetime import datetime

from app.core.config import settings
from app.core.email import send_email_smtp

logger = logging.getLogger(__name__)

# Header colour per event family
EVENT_COLOURS = {
    "step_assigned": ("#1a5f7a", "#159895"),
    "step_escalated": ("#f39c12", "#e67e22"),
    "step_reassigned": ("#f39c12", "#e67e22"),
    "workflow_completed": ("#27ae60", "#2ecc71"),
    "workflow_rejected": ("#c0392b", "#e74c3c"),
    "approval_orphaned": ("#c0392b", "#e74c3c"),
    "approval_reminder": ("#2762cb", "#73B4E0"),
    "approval_urgent_reminder": ("#c0392b", "#e74c3c"),
}


class WorkflowEmailService:
    """Service for sending workflow-related email notifications"""

    @staticmethod
    def approval_url(event) -> str:
        if event.instance_id:
            return f"{settings.APP_BASE_URL}/workflows/{event.instance_id}"
        return f"{settings.APP_BASE_URL}/approvals"

    @staticmethod
    def render_event_email(recipient_name: str, event, title: str, summary: str) -> str:
        start, end = EVENT_COLOURS.get(event.type, ("#1a5f7a", "#159895"))
        # everything below comes from user input
        recipient_name = html.escape(recipient_name or "")
        title = html.escape(title or "")
        summary = html.escape(summary or "")
        reason = html.escape(str(event.detail["reason"])) if event.detail.get("reason") else None
        step_name = html.escape(str(event.detail["step_name"])) if event.detail.get("step_name") else None

        return f"""
        <html>
        <body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
            <div style="max-width: 600px; margin: 0 auto; padding: 20px; border: 1px solid #e0e0e0; border-radius: 8px;">
                <div style="background: linear-gradient(135deg, {start} 0%, {end} 100%); color: white; padding: 20px; border-radius: 8px 8px 0 0;">
                    <h2 style="margin: 0;">{title}</h2>
                </div>

                <div style="padding: 30px; background: #f9f9f9;">
                    <p style="font-size: 16px; margin-bottom: 10px;">Hello <strong>{recipient_name}</strong>,</p>

                    <div style="background: white; padding: 20px; border-left: 4px solid {start}; margin: 20px 0; border-radius: 4px;">
                        <p style="margin: 5px 0;"><strong>Request:</strong> {summary}</p>
                        {f'<p style="margin: 5px 0;"><strong>Step:</strong> {step_name}</p>' if step_name else ""}
                        {f'<p style="margin: 5px 0;"><strong>Reason:</strong> {reason}</p>' if reason else ""}
                        <p style="margin: 5px 0;"><strong>Date:</strong> {event.timestamp.strftime('%B %d, %Y %H:%M')} UTC</p>
                    </div>

                    <center>
                        <a href="{WorkflowEmailService.approval_url(event)}" style="display: inline-block; background: {start}; color: white; padding: 12px 30px; text-decoration: none; border-radius: 6px; font-weight: bold; margin: 10px 0;">
                            Open Approval →
                        </a>
                    </center>
                </div>

                <div style="background: #f0f0f0; padding: 15px; text-align: center; color: #666; font-size: 12px; border-radius: 0 0 8px 8px;">
                    <p style="margin: 5px 0;"><strong>{settings.APP_NAME}</strong></p>
                    <p style="margin: 5px 0;">© {datetime.now().year} {settings.APP_NAME}. All rights reserved.</p>
                </div>
            </div>
        </body>
        </html>
        """

    @staticmethod
    def send_event_email(email: str, recipient_name: str, event, title: str, summary: str) -> bool:
        """Send one workflow event email; failures are logged, never raised"""
        try:
            subject = f"{title} - {summary}"
            html_body = WorkflowEmailService.render_event_email(recipient_name, event, title, summary)
            send_email_smtp(email, subject, html_body)
            logger.info(f"✉️ {event.type} email queued for {email}")
            return True

        except Exception as e:
            logger.error(f"❌ Error sending {event.type} email to {email}: {str(e)}")
            return False
