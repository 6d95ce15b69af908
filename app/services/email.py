import logging
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from html import escape
from typing import Any

from app.config import settings
from app.models.notification import NotificationType
from app.services.common import env_bool, env_int, env_value

logger = logging.getLogger(__name__)


def _get_smtp_config() -> dict:
    return {
        "host": env_value("SMTP_HOST") or "localhost",
        "port": env_int("SMTP_PORT", 587),
        "username": env_value("SMTP_USERNAME"),
        "password": env_value("SMTP_PASSWORD"),
        "use_tls": env_bool("SMTP_USE_TLS", True),
        "use_ssl": env_bool("SMTP_USE_SSL", False),
        "from_email": env_value("SMTP_FROM_EMAIL") or "noreply@example.com",
        "from_name": env_value("SMTP_FROM_NAME") or settings.app_name,
    }


@dataclass(frozen=True)
class EmailSendResult:
    success: bool
    message_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    body_html: str
    body_text: str


def send_email(
    to_email: str,
    subject: str,
    body_html: str,
    body_text: str | None = None,
) -> EmailSendResult:
    config = _get_smtp_config()
    message_id = make_msgid(domain=config["from_email"].rsplit("@", 1)[-1])
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = f"{config['from_name']} <{config['from_email']}>"
    msg["To"] = to_email
    msg["Message-ID"] = message_id

    if body_text:
        msg.attach(MIMEText(body_text, "plain"))
    msg.attach(MIMEText(body_html, "html"))

    try:
        if config["use_ssl"]:
            server = smtplib.SMTP_SSL(config["host"], config["port"], timeout=30)
        else:
            server = smtplib.SMTP(config["host"], config["port"], timeout=30)

        if config["use_tls"] and not config["use_ssl"]:
            server.starttls()

        if config["username"] and config["password"]:
            server.login(config["username"], config["password"])

        server.sendmail(config["from_email"], to_email, msg.as_string())
        server.quit()

        logger.info("Email sent to %s", to_email)
        return EmailSendResult(success=True, message_id=message_id)
    except Exception as exc:
        logger.error("Failed to send email to %s: %s", to_email, exc)
        return EmailSendResult(success=False, error=str(exc))


def _link(path: str, token: str) -> str:
    return escape(
        f"{settings.frontend_url.rstrip('/')}/{path}?token={token}", quote=True
    )


def _format_amount(amount: int | None, currency: str | None) -> str:
    return f"{(amount or 0) / 100:.2f} {(currency or '').upper()}".strip()


def render_email(
    kind: NotificationType, name: str | None, context: dict[str, Any]
) -> RenderedEmail:
    """Build subject and bodies for one notification kind.

    ``context`` values are interpolated into HTML and are escaped here.
    """
    app_name = escape(settings.app_name)
    who = escape(name or "there")
    plan = escape(str(context.get("plan_name") or "your plan"))
    date = escape(str(context.get("date") or ""))

    if kind in (NotificationType.welcome, NotificationType.email_verification):
        link = _link("verify-email", context.get("token") or "")
        subject = f"Welcome to {settings.app_name} - Verify Your Email"
        lines = [
            f"Welcome to {app_name}!",
            "Please confirm your email address to finish setting up your account.",
        ]
        action = ("Verify email", link)
    elif kind == NotificationType.password_reset:
        link = _link("reset-password", context.get("token") or "")
        subject = "Password Reset Request"
        lines = [
            "We received a request to reset your password.",
            "If you did not ask for this, you can ignore this email.",
        ]
        action = ("Reset password", link)
    elif kind == NotificationType.subscription_created:
        subject = f"Your {context.get('plan_name') or 'new'} Subscription is Active"
        lines = [f"Thanks for subscribing to {plan}. Your subscription is now active."]
        action = None
    elif kind == NotificationType.payment_failed:
        amount = escape(_format_amount(context.get("amount"), context.get("currency")))
        subject = "Action Required: Payment Failed"
        lines = [
            f"Your payment of {amount} failed.",
            "Please update your payment method to keep your subscription active.",
        ]
        action = None
    elif kind == NotificationType.renewal_reminder:
        subject = "Subscription Renewal Reminder"
        lines = [f"Your {plan} subscription renews on {date}."]
        action = None
    elif kind == NotificationType.trial_ending:
        subject = "Your Trial is Ending Soon"
        lines = [
            f"Your {plan} trial ends on {date}.",
            "Add a payment method to keep your access.",
        ]
        action = None
    elif kind == NotificationType.subscription_canceled:
        subject = "Subscription Canceled"
        lines = [
            f"Your {plan} subscription has ended.",
            "You can resubscribe at any time.",
        ]
        action = None
    else:
        subject = f"A message from {settings.app_name}"
        lines = [escape(str(context.get("message") or ""))]
        action = None

    body_html = f"<p>Hi {who},</p>" + "".join(f"<p>{line}</p>" for line in lines)
    body_text = f"Hi {who}, " + " ".join(lines)
    if action is not None:
        label, link = action
        body_html += f'<p><a href="{link}">{label}</a></p>'
        body_text += f" {label}: {link}"
    return RenderedEmail(subject=subject, body_html=body_html, body_text=body_text)
