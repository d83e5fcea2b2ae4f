import smtplib
import uuid
from datetime import datetime, timezone
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Optional
from jinja2 import Environment, FileSystemLoader, select_autoescape
import os

from core.config import APP_NAME, APP_URL, SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASS, MAIL_FROM, MAIL_FROM_AFFILIATES, logger

# Jinja env
_templates_dir = os.path.join(os.path.dirname(__file__), "..", "templates")
_jinja_env = Environment(
    loader=FileSystemLoader(_templates_dir),
    autoescape=select_autoescape(["html", "xml"]),
)

EMAIL_BRAND_BUTTON_BG = os.getenv("EMAIL_BRAND_BUTTON_BG", "#7AA2F7")
EMAIL_BRAND_BUTTON_TEXT = os.getenv("EMAIL_BRAND_BUTTON_TEXT", "#000000")
EMAIL_BRAND_BG = os.getenv("EMAIL_BRAND_BG", "#0F1115")
EMAIL_LOGO_URL = os.getenv("EMAIL_LOGO_URL", (APP_URL + "/logo.png") if APP_URL else "")
REPLY_TO_AFFILIATES = os.getenv("REPLY_TO_AFFILIATES", MAIL_FROM_AFFILIATES)
MAIL_FROM_NAME_AFFILIATES = os.getenv("MAIL_FROM_NAME_AFFILIATES", f"{APP_NAME} Affiliates")


def render_email(template_name: str, **context) -> str:
    base = {
        "app_name": APP_NAME,
        "brand_bg": EMAIL_BRAND_BG,
        "button_bg": EMAIL_BRAND_BUTTON_BG,
        "button_text": EMAIL_BRAND_BUTTON_TEXT,
        "logo_url": EMAIL_LOGO_URL,
    }
    base.update(context or {})
    return _jinja_env.get_template(template_name).render(**base)


def send_email_smtp(
    to_addr: str,
    subject: str,
    html: str,
    text: Optional[str] = None,
    from_addr: Optional[str] = None,
    reply_to: Optional[str] = None,
    from_name: Optional[str] = None,
) -> bool:
    try:
        if not SMTP_HOST or not SMTP_PASS or not MAIL_FROM:
            logger.error("SMTP not configured; cannot send email")
            return False
        sender = (from_addr or MAIL_FROM).strip()
        effective_from_name = from_name or APP_NAME
        display_from = f"{effective_from_name} <{sender}>" if effective_from_name and "<" not in sender else sender

        domain = sender.split("@")[-1].rstrip(">") if "@" in sender else "progressly.so"
        message_id = f"<{uuid.uuid4()}@{domain}>"

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = display_from
        msg["To"] = to_addr
        msg["Message-ID"] = message_id
        msg["Date"] = datetime.now(timezone.utc).strftime("%a, %d %b %Y %H:%M:%S +0000")
        if reply_to:
            msg["Reply-To"] = reply_to
        if not text:
            text = "Open this link in an HTML-capable email client."
        msg.attach(MIMEText(text or "", "plain", _charset="utf-8"))
        msg.attach(MIMEText(html or "", "html", _charset="utf-8"))

        with smtplib.SMTP(SMTP_HOST, SMTP_PORT) as server:
            server.starttls()
            if SMTP_USER or SMTP_PASS:
                server.login(SMTP_USER, SMTP_PASS)
            server.sendmail(sender, [to_addr], msg.as_string())
        return True
    except Exception as ex:
        logger.exception(f"SMTP send failed: {ex}")
        return False


def send_affiliate_email(to_addr: str, subject: str, title: str, intro_html: str, text: str, button_label: str = "", button_url: str = "") -> bool:
    """Best-effort affiliate program mail from the partnerships sender."""
    if not to_addr:
        return False
    try:
        html = render_email(
            "email_basic.html",
            title=title,
            intro=intro_html,
            button_label=button_label,
            button_url=button_url,
        )
    except Exception as ex:
        logger.warning(f"[emailing] render failed template=email_basic.html: {ex}")
        return False
    return send_email_smtp(
        to_addr,
        subject,
        html,
        text,
        from_addr=MAIL_FROM_AFFILIATES,
        reply_to=REPLY_TO_AFFILIATES,
        from_name=MAIL_FROM_NAME_AFFILIATES,
    )
