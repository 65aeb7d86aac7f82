"""
Email Service using Resend

Handles sending emails for the admissions flow (visit reminders).
"""

import asyncio
import logging
import os
from datetime import datetime
from html import escape

import resend

logger = logging.getLogger(__name__)

# Initialize Resend with API key
resend.api_key = os.getenv("RESEND_API_KEY")

# Configurations
EMAIL_FROM = os.getenv("EMAIL_FROM", "Campus Admissions <admissions@campus.dev>")


async def send_email(
    to_email: str,
    subject: str,
    html_content: str,
) -> bool:
    """
    Send an email using Resend.

    Args:
        to_email: Recipient email address
        subject: Email subject line
        html_content: HTML content of the email

    Returns:
        True if email was sent successfully (or logged when no API key is set)
    """
    if not resend.api_key:
        logger.warning("RESEND_API_KEY not set - logging email instead of sending")
        logger.info(f"EMAIL TO: {to_email} | SUBJECT: {subject}")
        return True

    try:
        params: resend.Emails.SendParams = {
            "from": EMAIL_FROM,
            "to": [to_email],
            "subject": subject,
            "html": html_content,
        }

        # Run sync Resend call in thread pool to avoid blocking event loop
        email = await asyncio.to_thread(resend.Emails.send, params)
        logger.info(f"Email sent successfully to {to_email}, id: {email['id']}")
        return True
    except Exception as e:
        logger.error(f"Failed to send email to {to_email}: {e}")
        return False


async def send_visit_reminder(
    to_email: str,
    parent_name: str | None,
    session_title: str,
    start_time: datetime,
    window_label: str,
) -> bool:
    """Send a reminder for an upcoming taster visit."""
    # Escape user inputs to prevent XSS
    safe_parent_name = escape(parent_name or "there")
    safe_session_title = escape(session_title)

    starts_at = start_time.strftime("%A %d %B %Y, %H:%M UTC")
    lead_time = "tomorrow" if window_label == "24h" else "in about two hours"

    html_content = f"""
    <!DOCTYPE html>
    <html>
    <head>
        <style>
            body {{ font-family: system-ui, -apple-system, sans-serif; line-height: 1.6; color: #1f2937; }}
            .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
            .header {{ color: #1a365d; margin-bottom: 24px; }}
            .info-box {{ background-color: #f3f4f6; padding: 16px; border-radius: 8px; margin: 16px 0; }}
            .footer {{ margin-top: 40px; padding-top: 20px; border-top: 1px solid #e5e7eb; color: #6b7280; font-size: 14px; }}
        </style>
    </head>
    <body>
        <div class="container">
            <h1 class="header">See You Soon</h1>

            <p>Hello {safe_parent_name},</p>

            <p>This is a reminder that your visit <strong>{safe_session_title}</strong> starts {lead_time}.</p>

            <div class="info-box">
                <p><strong>When:</strong> {starts_at}</p>
            </div>

            <p>If you can no longer attend, please let the admissions team know so we can offer your place to another family.</p>

            <div class="footer">
                <p>Campus Admissions</p>
            </div>
        </div>
    </body>
    </html>
    """

    return await send_email(
        to_email=to_email,
        subject=f"Reminder: {safe_session_title} starts {lead_time}",
        html_content=html_content,
    )
