"""SendGrid email service for grant-access notifications.

Sends access-request alerts to admins, decisions and payment links to agents,
and access-granted notices to renters. Uses asyncio.to_thread to wrap the
synchronous SendGrid client. Every public function returns False instead of
raising so callers never fail a state transition on email delivery.
"""

import asyncio
import html
import logging

import sendgrid
from sendgrid.helpers.mail import Email, HtmlContent, Mail, To

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration, read from Pydantic settings (which loads .env)
# ---------------------------------------------------------------------------


def _get_config():
    """Get email config from app settings (lazy to avoid import-time issues)."""
    from premarket_platform.app.config import get_settings
    s = get_settings()
    return s.sendgrid_api_key, s.email_from, s.admin_alert_email


def _get_client() -> sendgrid.SendGridAPIClient:
    """Return a configured SendGrid API client."""
    api_key, _, _ = _get_config()
    return sendgrid.SendGridAPIClient(api_key=api_key)


def _frontend_url() -> str:
    from premarket_platform.app.config import get_settings
    return get_settings().frontend_url.rstrip("/")


def _format_currency(value) -> str:
    """Format a number as $X,XXX.XX."""
    try:
        return f"${float(value):,.2f}"
    except (ValueError, TypeError):
        return "$0.00"


def _wrap(title: str, body_rows: str, cta_url: str | None = None, cta_label: str = "") -> str:
    """Shared HTML shell for all notification emails."""
    button = ""
    if cta_url:
        button = f"""
        <tr>
            <td style="padding: 24px 0;">
                <a href="{html.escape(cta_url)}" style="background:#111827; color:#ffffff; padding:12px 24px; border-radius:6px; text-decoration:none; font-weight:600;">{html.escape(cta_label)}</a>
            </td>
        </tr>
        """
    return f"""<!DOCTYPE html>
<html>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; background:#f9fafb; padding:24px;">
    <table width="100%" style="max-width:600px; margin:0 auto; background:#ffffff; border-radius:8px; padding:32px;">
        <tr>
            <td style="font-size:20px; font-weight:700; color:#111827; padding-bottom:16px;">{html.escape(title)}</td>
        </tr>
        {body_rows}
        {button}
    </table>
</body>
</html>
"""


def _row(text: str) -> str:
    return f"""
        <tr>
            <td style="padding: 6px 0; color: #4b5563; font-size: 15px;">{html.escape(text)}</td>
        </tr>
    """


def _send_mail(mail: Mail) -> bool:
    """Synchronous send via SendGrid. Returns True on success."""
    client = _get_client()
    response = client.send(mail)
    if response.status_code in (200, 201, 202):
        return True
    logger.error(
        "SendGrid returned status %s: %s",
        response.status_code,
        response.body,
    )
    return False


async def _deliver(to_email: str, subject: str, html_body: str, kind: str) -> bool:
    api_key, email_from, _ = _get_config()
    if not api_key:
        logger.warning("SENDGRID_API_KEY not set, skipping %s email", kind)
        return False
    if not to_email:
        logger.warning("No recipient for %s email, skipping", kind)
        return False

    try:
        mail = Mail(
            from_email=Email(email_from, "BeforeListed"),
            to_emails=To(to_email),
            subject=subject,
            html_content=HtmlContent(html_body),
        )
        result = await asyncio.to_thread(_send_mail, mail)
        if result:
            logger.info("%s email sent to %s", kind, to_email)
        return result
    except Exception:
        logger.exception("Failed to send %s email to %s", kind, to_email)
        return False


# ---------------------------------------------------------------------------
# Public async API
# ---------------------------------------------------------------------------


async def send_admin_access_request_alert(data: dict) -> bool:
    """Tell the admin inbox that an agent asked for access to a request."""
    _, _, admin_email = _get_config()
    listing = data.get("listing_title", "Pre-Market Listing")
    body = (
        _row(f"Agent: {data.get('agent_name', 'Unknown')} ({data.get('agent_email', '')})")
        + _row(f"Listing: {listing}")
        + _row(f"Access request id: {data.get('grant_access_id', '')}")
    )
    page = _wrap(
        "New grant access request",
        body,
        cta_url=f"{_frontend_url()}/admin/grant-access",
        cta_label="Review request",
    )
    return await _deliver(admin_email, f"[Grant Access] {listing}", page, "admin access request")


async def send_agent_access_approved(to_email: str, data: dict) -> bool:
    """Tell an agent their free access was approved."""
    listing = data.get("listing_title", "Pre-Market Listing")
    body = _row(f"Hi {data.get('agent_name', 'there')},") + _row(
        f"You now have access to the renter details for {listing}."
    )
    page = _wrap(
        "Access approved",
        body,
        cta_url=f"{_frontend_url()}/listings/{data.get('request_id', '')}",
        cta_label="View listing",
    )
    return await _deliver(to_email, f"Access approved: {listing}", page, "access approved")


async def send_agent_access_rejected(to_email: str, data: dict) -> bool:
    """Tell an agent their access request was rejected."""
    listing = data.get("listing_title", "Pre-Market Listing")
    body = _row(f"Hi {data.get('agent_name', 'there')},") + _row(
        f"Your request to access {listing} was not approved."
    )
    if data.get("notes"):
        body += _row(f"Notes: {data['notes']}")
    return await _deliver(
        to_email, f"Access request update: {listing}", _wrap("Access request update", body), "access rejected"
    )


async def send_agent_payment_link(to_email: str, data: dict) -> bool:
    """Send an agent the link to pay for access."""
    listing = data.get("listing_title", "Pre-Market Listing")
    body = (
        _row(f"Hi {data.get('agent_name', 'there')},")
        + _row(f"Access to {listing} is available for {_format_currency(data.get('amount'))}.")
    )
    page = _wrap(
        "Complete your payment",
        body,
        cta_url=f"{_frontend_url()}/grant-access/{data.get('grant_access_id', '')}/pay",
        cta_label="Pay now",
    )
    return await _deliver(to_email, f"Payment required: {listing}", page, "payment link")


async def send_renter_access_granted(to_email: str, data: dict) -> bool:
    """Tell a renter that an agent can now see their contact details."""
    listing = data.get("listing_title", "Pre-Market Listing")
    body = (
        _row(f"Hi {data.get('renter_name', 'there')},")
        + _row(f"{data.get('agent_name', 'An agent')} now has access to your request {listing}.")
        + _row(f"You can reach them at {data.get('agent_email', '')}.")
    )
    page = _wrap(
        "An agent has access to your request",
        body,
        cta_url=f"{_frontend_url()}/listings/{data.get('request_id', '')}",
        cta_label="View request",
    )
    return await _deliver(to_email, f"Agent access granted: {listing}", page, "renter access granted")
