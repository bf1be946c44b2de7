# salonhub/services/email_service.py
"""
Email service for membership notifications.

Supports multiple providers:
- SMTP (standard smtplib)
- SendGrid API

Configuration via app config / environment variables:
- EMAIL_ENABLED: set to false to log instead of sending
- EMAIL_PROVIDER: 'smtp' or 'sendgrid'
- For SMTP:
  - SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASSWORD, SMTP_USE_TLS
- For SendGrid:
  - SENDGRID_API_KEY
"""

import os
import smtplib
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional

from flask import current_app, render_template_string
from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Content, Email, Mail, To


def get_email_config() -> Dict[str, Any]:
    """Get email configuration from app config or environment."""
    return {
        'enabled': current_app.config.get('EMAIL_ENABLED', True),
        'provider': current_app.config.get('EMAIL_PROVIDER', os.getenv('EMAIL_PROVIDER', 'smtp')),
        'from_email': current_app.config.get('EMAIL_FROM', os.getenv('EMAIL_FROM', 'noreply@salonhub.com')),
        'from_name': current_app.config.get('EMAIL_FROM_NAME', os.getenv('EMAIL_FROM_NAME', 'SalonHub')),

        # SMTP settings
        'smtp_host': current_app.config.get('SMTP_HOST', os.getenv('SMTP_HOST', 'localhost')),
        'smtp_port': int(current_app.config.get('SMTP_PORT', os.getenv('SMTP_PORT', '587'))),
        'smtp_user': current_app.config.get('SMTP_USER', os.getenv('SMTP_USER', '')),
        'smtp_password': current_app.config.get('SMTP_PASSWORD', os.getenv('SMTP_PASSWORD', '')),
        'smtp_use_tls': current_app.config.get('SMTP_USE_TLS', True),

        # SendGrid settings
        'sendgrid_api_key': current_app.config.get('SENDGRID_API_KEY', os.getenv('SENDGRID_API_KEY', '')),
    }


def send_email(
    to: str,
    subject: str,
    html_body: str,
    text_body: Optional[str] = None,
    reply_to: Optional[str] = None
) -> bool:
    """
    Send an email using configured provider.

    Args:
        to: Recipient email address
        subject: Email subject
        html_body: HTML email body
        text_body: Plain text fallback (optional)
        reply_to: Reply-to address (optional)

    Returns:
        True if email sent successfully, False otherwise
    """
    config = get_email_config()
    if not config['enabled']:
        current_app.logger.info(f"Email disabled, not sending to {to}: {subject}")
        return False

    try:
        if config['provider'] == 'sendgrid':
            return _send_via_sendgrid(to, subject, html_body, text_body, reply_to, config)
        return _send_via_smtp(to, subject, html_body, text_body, reply_to, config)
    except Exception as e:
        current_app.logger.error(f"Failed to send email to {to}: {e}", exc_info=True)
        return False


def _send_via_smtp(
    to: str,
    subject: str,
    html_body: str,
    text_body: Optional[str],
    reply_to: Optional[str],
    config: Dict[str, Any]
) -> bool:
    """Send email via SMTP."""
    msg = MIMEMultipart('alternative')
    msg['From'] = f"{config['from_name']} <{config['from_email']}>"
    msg['To'] = to
    msg['Subject'] = subject
    if reply_to:
        msg['Reply-To'] = reply_to

    if text_body:
        msg.attach(MIMEText(text_body, 'plain'))
    msg.attach(MIMEText(html_body, 'html'))

    smtp_host = config['smtp_host']
    if not smtp_host or smtp_host == 'localhost':
        current_app.logger.warning(f"SMTP not configured, email to {to} not sent: {subject}")
        return False

    with smtplib.SMTP(smtp_host, config['smtp_port']) as server:
        if config['smtp_use_tls']:
            server.starttls()
        if config['smtp_user'] and config['smtp_password']:
            server.login(config['smtp_user'], config['smtp_password'])
        server.send_message(msg)

    current_app.logger.info(f"Email sent via SMTP to {to}: {subject}")
    return True


def _send_via_sendgrid(
    to: str,
    subject: str,
    html_body: str,
    text_body: Optional[str],
    reply_to: Optional[str],
    config: Dict[str, Any]
) -> bool:
    """Send email via SendGrid API."""
    api_key = config['sendgrid_api_key']
    if not api_key:
        current_app.logger.warning(f"SendGrid API key not configured, email to {to} not sent")
        return False

    message = Mail(Email(config['from_email'], config['from_name']), To(to), subject, Content("text/html", html_body))
    if text_body:
        message.add_content(Content("text/plain", text_body))
    if reply_to:
        message.reply_to = Email(reply_to)

    response = SendGridAPIClient(api_key).send(message)
    if response.status_code in [200, 201, 202]:
        current_app.logger.info(f"Email sent via SendGrid to {to}: {subject}")
        return True

    current_app.logger.error(f"SendGrid returned status {response.status_code} for {to}")
    return False


# ===== Membership Email Templates =====

_LAYOUT = """
<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; background-color: #f9fafb; padding: 20px;">
    <div style="max-width: 600px; margin: 0 auto; background-color: #ffffff; border-radius: 8px; padding: 40px; border-left: 4px solid {{ accent }};">
        <h1 style="color: {{ accent }}; margin-bottom: 20px;">{{ title }}</h1>
        <p>Hi {{ user.name }},</p>
        {{ body | safe }}
        {% if cta_url %}
        <p style="margin-top: 30px;">
            <a href="{{ cta_url }}" style="display: inline-block; padding: 12px 28px; background-color: {{ accent }}; color: #ffffff; text-decoration: none; border-radius: 999px; font-weight: bold;">{{ cta_label }}</a>
        </p>
        {% endif %}
        <p style="margin-top: 30px; font-size: 12px; color: #9ca3af;">&copy; {{ year }} {{ app_name }}. All rights reserved.</p>
    </div>
</body>
</html>
"""


def _format_date(value: Optional[datetime]) -> str:
    return value.strftime('%B %d, %Y') if value else "-"


def _format_amount(amount: Optional[int], currency: Optional[str]) -> Optional[str]:
    if amount is None:
        return None
    suffix = f" {currency.upper()}" if currency else ""
    return f"{amount / 100:.2f}{suffix}"


def _membership_url() -> str:
    return f"{current_app.config.get('FRONTEND_URL', 'http://localhost:5173').rstrip('/')}/dashboard/membership"


def _render(user, title: str, accent: str, body: str, cta_url: Optional[str] = None, cta_label: str = "", **context) -> str:
    inner = render_template_string(body, user=user, **context)
    return render_template_string(
        _LAYOUT,
        user=user,
        title=title,
        accent=accent,
        body=inner,
        cta_url=cta_url,
        cta_label=cta_label,
        year=datetime.utcnow().year,
        app_name=current_app.config.get('APP_NAME', 'SalonHub'),
    )


def send_membership_activated_email(membership, amount_paid: Optional[int] = None, currency: Optional[str] = None) -> bool:
    """Send email confirming an activated membership, with invoice links when known."""
    user = membership.user
    if not user or not user.email:
        return False

    amount = _format_amount(amount_paid, currency)
    html_body = _render(
        user,
        title="Your membership is active",
        accent="#d57a2c",
        body="""
        <p>Your <strong>{{ plan.name }}</strong> membership is now active.</p>
        <p><strong>Started:</strong> {{ start }}<br>
           <strong>Active until:</strong> {{ expiry }}<br>
           {% if auto_renew %}<strong>Next billing date:</strong> {{ next_billing }}<br>{% endif %}
           {% if amount %}<strong>Amount paid:</strong> {{ amount }}{% endif %}</p>
        {% if invoice_pdf %}<p><a href="{{ invoice_pdf }}" style="color: #d57a2c;">Download PDF invoice</a></p>{% endif %}
        """,
        cta_url=membership.invoice_url or _membership_url(),
        cta_label="View invoice" if membership.invoice_url else "View membership",
        plan=membership.plan,
        start=_format_date(membership.start_date),
        expiry=_format_date(membership.expiry_date),
        next_billing=_format_date(membership.next_billing_date),
        auto_renew=membership.auto_renew,
        amount=amount,
        invoice_pdf=membership.invoice_pdf,
    )

    return send_email(
        to=user.email,
        subject=f"Your {membership.plan.name} membership is active",
        html_body=html_body,
    )


def send_membership_payment_failed_email(membership, reason: Optional[str] = None, failure_count: int = 1) -> bool:
    """Send email when a membership payment fails."""
    user = membership.user
    if not user or not user.email:
        return False

    html_body = _render(
        user,
        title="Payment failed",
        accent="#ef4444",
        body="""
        <p>We were unable to process the payment for your <strong>{{ plan.name }}</strong> membership.</p>
        {% if reason %}<p><strong>Reason:</strong> {{ reason }}</p>{% endif %}
        <p>Please check that your payment method is valid and has sufficient funds. Your membership
           access will be paused after {{ limit }} failed attempts (this was attempt {{ failure_count }}).</p>
        """,
        cta_url=_membership_url(),
        cta_label="Update payment method",
        plan=membership.plan,
        reason=reason,
        failure_count=failure_count,
        limit=current_app.config.get('FAILED_PAYMENT_LIMIT', 3),
    )

    return send_email(
        to=user.email,
        subject="Action Required: Membership payment failed",
        html_body=html_body,
    )


def send_membership_canceled_email(membership, at_period_end: bool = False) -> bool:
    user = membership.user
    if not user or not user.email:
        return False

    html_body = _render(
        user,
        title="Membership canceled" if not at_period_end else "Auto-renew turned off",
        accent="#6b7280",
        body="""
        {% if at_period_end %}
        <p>Your <strong>{{ plan.name }}</strong> membership will not renew. You keep access until {{ expiry }}.</p>
        {% else %}
        <p>Your <strong>{{ plan.name }}</strong> membership has been canceled and member access has ended.</p>
        {% endif %}
        """,
        cta_url=_membership_url(),
        cta_label="Rejoin",
        plan=membership.plan,
        at_period_end=at_period_end,
        expiry=_format_date(membership.expiry_date),
    )

    return send_email(
        to=user.email,
        subject="Your membership will not renew" if at_period_end else "Your membership has been canceled",
        html_body=html_body,
    )


def send_membership_archived_email(membership) -> bool:
    user = membership.user
    if not user or not user.email:
        return False

    html_body = _render(
        user,
        title="Membership closed",
        accent="#6b7280",
        body="""
        <p>Your <strong>{{ plan.name }}</strong> membership has been closed by our team and will not renew.</p>
        <p>If you think this is a mistake, reply to this email and we will sort it out.</p>
        """,
        plan=membership.plan,
    )

    return send_email(
        to=user.email,
        subject="Your membership has been closed",
        html_body=html_body,
    )
