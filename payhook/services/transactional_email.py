"""
Transactional email service - SendGrid-based billing and onboarding notifications.
"""
import asyncio
import logging
from typing import Optional

from payhook.config import get_settings

logger = logging.getLogger(__name__)

NOT_CONFIGURED = "SendGrid not configured"


def _format_amount(amount: Optional[int], currency: Optional[str]) -> str:
    if amount is None:
        return "N/A"
    return f"{amount / 100:,.2f} {(currency or 'usd').upper()}"


def _wrap_html(title: str, body: str) -> str:
    return f"""
    <div style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; max-width: 480px; margin: 0 auto; padding: 40px 20px;">
      <h2 style="margin: 0 0 24px; color: #111; font-size: 20px;">{title}</h2>
      {body}
      <hr style="border: none; border-top: 1px solid #eee; margin: 32px 0;" />
      <p style="color: #bbb; font-size: 11px; text-align: center;">This is an automated billing notification.</p>
    </div>
    """


async def _send_transactional(
    to_email: str,
    subject: str,
    html_content: str,
    text_content: str,
) -> dict:
    """
    Send a transactional email via SendGrid.

    Returns: {"message_id": str|None, "status": str, "error": str|None}
    """
    settings = get_settings()
    api_key = settings.sendgrid_api_key

    if not api_key:
        logger.error("No SendGrid API key configured for transactional email")
        return {"message_id": None, "status": "error", "error": NOT_CONFIGURED}

    try:
        from sendgrid import SendGridAPIClient
        from sendgrid.helpers.mail import Mail, Email, To, Content

        message = Mail(
            from_email=Email(settings.from_email_transactional, settings.from_name_transactional),
            to_emails=To(to_email),
            subject=subject,
        )
        message.content = [
            Content("text/plain", text_content),
            Content("text/html", html_content),
        ]

        sg = SendGridAPIClient(api_key=api_key)
        # Offload synchronous SendGrid SDK call to thread pool
        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(None, lambda: sg.send(message))
        message_id = response.headers.get("X-Message-Id", "")

        logger.info(
            "Transactional email sent: to=%s subject=%s",
            to_email[:20] + "***", subject[:40],
        )
        return {"message_id": message_id, "status": "sent", "error": None}

    except Exception as e:
        logger.error(
            "Transactional email failed: to=%s error=%s",
            to_email[:20] + "***", str(e),
        )
        return {"message_id": None, "status": "error", "error": str(e)}


async def send_payment_failed(
    email: str,
    amount: Optional[int],
    currency: Optional[str],
    failure_message: Optional[str] = None,
) -> dict:
    """Tell a payer their payment did not go through."""
    amount_str = _format_amount(amount, currency)
    reason = failure_message or "Your payment method was declined."
    html = _wrap_html(
        "Your payment failed",
        f"""
        <p style="color: #555; font-size: 15px; line-height: 1.6;">
          We could not process your payment of <strong>{amount_str}</strong>.
        </p>
        <p style="color: #555; font-size: 15px; line-height: 1.6;">{reason}</p>
        <p style="color: #555; font-size: 15px; line-height: 1.6;">
          Please try again with a different payment method.
        </p>
        """,
    )
    text = (
        f"Your payment of {amount_str} failed.\n\n{reason}\n\n"
        "Please try again with a different payment method."
    )
    return await _send_transactional(email, "Your payment failed", html, text)


async def send_invoice_payment_failed(
    email: str,
    amount_due: Optional[int],
    currency: Optional[str],
    hosted_invoice_url: Optional[str] = None,
) -> dict:
    """Subscription invoice could not be charged; link to the hosted invoice."""
    amount_str = _format_amount(amount_due, currency)
    link_html = ""
    link_text = ""
    if hosted_invoice_url:
        link_html = (
            f'<p style="text-align: center; margin: 32px 0;"><a href="{hosted_invoice_url}" '
            'style="background: #111; color: white; padding: 12px 32px; border-radius: 10px; '
            'text-decoration: none; font-weight: 600;">Update payment</a></p>'
        )
        link_text = f"\n\nPay or update your payment method here: {hosted_invoice_url}"
    html = _wrap_html(
        "Action required: subscription payment failed",
        f"""
        <p style="color: #555; font-size: 15px; line-height: 1.6;">
          We were unable to charge <strong>{amount_str}</strong> for your subscription.
          We will retry automatically, but please update your payment method to avoid
          interruption.
        </p>
        {link_html}
        """,
    )
    text = (
        f"We were unable to charge {amount_str} for your subscription. "
        "We will retry automatically, but please update your payment method."
        f"{link_text}"
    )
    return await _send_transactional(email, "Action required: payment failed", html, text)


async def send_onboarding_completed(email: str, name: Optional[str] = None) -> dict:
    """Connected account can now accept payments and receive payouts."""
    greeting = f"Hi {name}," if name else "Hi,"
    html = _wrap_html(
        "You're ready to get paid",
        f"""
        <p style="color: #555; font-size: 15px; line-height: 1.6;">{greeting}</p>
        <p style="color: #555; font-size: 15px; line-height: 1.6;">
          Your payment account setup is complete. You can now accept payments and
          receive payouts.
        </p>
        """,
    )
    text = (
        f"{greeting}\n\nYour payment account setup is complete. "
        "You can now accept payments and receive payouts."
    )
    return await _send_transactional(email, "Your payment account is ready", html, text)
