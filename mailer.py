import smtplib
from email.message import EmailMessage
from email.utils import formataddr
from html import escape

import structlog

from config import CLIENT_URL, FROM_EMAIL, FROM_NAME, SMTP_HOST, SMTP_PASS, SMTP_PORT, SMTP_USER
from text_parser import linkify

logger = structlog.get_logger()


def send_email(to: str, subject: str, html: str) -> bool:
    """Send an HTML email. Failures are logged and reported as False."""
    if not SMTP_HOST:
        logger.warning(f"SMTP not configured, skipping email '{subject}' to {to}")
        return False
    msg = EmailMessage()
    msg["From"] = formataddr((FROM_NAME, FROM_EMAIL))
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content("This message requires an HTML capable mail client.")
    msg.add_alternative(html, subtype="html")
    try:
        with smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=15) as smtp:
            smtp.starttls()
            if SMTP_USER:
                smtp.login(SMTP_USER, SMTP_PASS or "")
            smtp.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Email '{subject}' to {to} failed: {e}")
        return False
    logger.info(f"Email '{subject}' sent to {to}")
    return True


# ----------------------- Templates -----------------------
def send_welcome_email(user: dict):
    return send_email(
        user["email"],
        "Welcome to Cook-N-Crop!",
        f"<h1>Welcome, {user['username']}!</h1>"
        f"<p>Thanks for joining our farm-to-table community. "
        f'<a href="{CLIENT_URL}/feed">Start exploring</a> fresh produce and recipes.</p>',
    )


def send_password_reset_email(user: dict, reset_url: str):
    return send_email(
        user["email"],
        "Password Reset Request",
        f"<p>You requested a password reset. This link is valid for 10 minutes:</p>"
        f'<p><a href="{reset_url}">{reset_url}</a></p>'
        f"<p>If you did not request this, you can ignore this email.</p>",
    )


def _order_rows(order: dict) -> str:
    return "".join(
        f"<tr><td>{escape(i['name'])}</td><td>{i['qty']}</td><td>{i['price']:.2f}</td></tr>" for i in order.get("order_items", [])
    )


def send_order_confirmation(user: dict, order: dict):
    return send_email(
        user["email"],
        f"Order Confirmation #{order['id'][-6:]}",
        f"<h2>Thanks for your order, {user['username']}!</h2>"
        f"<table><tr><th>Item</th><th>Qty</th><th>Price</th></tr>{_order_rows(order)}</table>"
        f"<p>Total: <b>{order['total_price']:.2f}</b></p>"
        f'<p><a href="{CLIENT_URL}/order/{order["id"]}">View your order</a></p>',
    )


def send_order_status_email(user: dict, order: dict):
    return send_email(
        user["email"],
        f"Your order #{order['id'][-6:]} is now {order['status']}",
        f"<p>Hi {user['username']}, the status of your order is now <b>{order['status']}</b>.</p>"
        f'<p><a href="{CLIENT_URL}/order/{order["id"]}">Track your order</a></p>',
    )


def send_support_reply_email(ticket: dict, content: str):
    return send_email(
        ticket["email"],
        f"Re: {ticket['subject']}",
        f"<p>Hi {escape(ticket['name'])},</p><p>{linkify(escape(content, quote=False))}</p>"
        f"<p>You can follow up from your support tickets page.</p>",
    )
