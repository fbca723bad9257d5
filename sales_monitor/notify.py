"""
OTP delivery by email (SMTP or the Resend HTTP API) and by SMS through
carrier email-to-SMS gateways.
"""

import logging
import os
import re
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"

GLOBE_PREFIXES = {
    "905", "906", "915", "916", "917", "926", "927", "935", "936", "937",
    "945", "955", "965", "975", "995",
}
SMART_PREFIXES = {
    "907", "908", "909", "910", "912", "918", "919", "920", "921", "928",
    "929", "930", "938", "939", "946", "947", "949", "951", "961", "998", "999",
}
SUN_PREFIXES = {
    "922", "923", "924", "925", "931", "932", "933", "934", "940", "941",
    "942", "943", "973", "974",
}


class DeliveryError(Exception):
    """Raised when a code could not be handed to the mail or SMS transport."""


def _otp_ttl_minutes() -> int:
    return int(os.getenv("OTP_TTL_MINUTES", "5"))


def render_otp_email(otp: str) -> Dict[str, str]:
    minutes = _otp_ttl_minutes()
    html = f"""
      <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
        <h2 style="color: #0369a1;">Your OTP Code for Login</h2>
        <p style="font-size: 16px; color: #334155;">Your OTP code is:</p>
        <div style="background-color: #f0f9ff; padding: 20px; border-radius: 8px; text-align: center; margin: 20px 0;">
          <span style="font-size: 32px; font-weight: bold; color: #0369a1; letter-spacing: 4px;">{otp}</span>
        </div>
        <p style="font-size: 14px; color: #64748b;">This code will expire in {minutes} minutes.</p>
        <p style="font-size: 14px; color: #64748b;">If you didn't request this code, please ignore this email.</p>
      </div>
    """
    return {
        "subject": "Your OTP Code for Login",
        "text": f"Your OTP code is: {otp}. This code will expire in {minutes} minutes.",
        "html": html,
    }


def _env_smtp_settings() -> Dict[str, Any]:
    return {
        "smtp_host": os.getenv("SMTP_HOST"),
        "smtp_port": int(os.getenv("SMTP_PORT", "587")),
        "smtp_user": os.getenv("SMTP_USER"),
        "smtp_pass": os.getenv("SMTP_PASS"),
        "smtp_from": os.getenv("SMTP_FROM") or os.getenv("SMTP_USER"),
        "smtp_secure": os.getenv("SMTP_SECURE", "false").lower() in {"1", "true", "yes", "on"},
    }


def _resolve_smtp_settings(overrides: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    settings = _env_smtp_settings()
    if overrides and overrides.get("smtp_host"):
        settings.update(
            {
                "smtp_host": overrides["smtp_host"],
                "smtp_port": int(overrides.get("smtp_port") or 587),
                "smtp_user": overrides.get("smtp_user"),
                "smtp_pass": overrides.get("smtp_pass"),
                "smtp_from": overrides.get("smtp_from") or overrides.get("smtp_user"),
                "smtp_secure": int(overrides.get("smtp_port") or 587) == 465,
            }
        )
    return settings


def send_smtp(to: str, subject: str, text: str, html: Optional[str] = None,
              settings: Optional[Dict[str, Any]] = None) -> None:
    try:
        settings = _resolve_smtp_settings(settings)
    except ValueError as exc:
        raise DeliveryError(f"Invalid SMTP port: {exc}") from exc
    host = settings.get("smtp_host")
    if not host:
        raise DeliveryError("SMTP server is not configured")

    sender = settings.get("smtp_from")
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = f'"Online Sales System" <{sender}>' if sender else "Online Sales System"
    msg["To"] = to
    msg.attach(MIMEText(text, "plain"))
    if html:
        msg.attach(MIMEText(html, "html"))

    smtp_class = smtplib.SMTP_SSL if settings.get("smtp_secure") else smtplib.SMTP
    try:
        with smtp_class(host, settings["smtp_port"], timeout=15) as server:
            if smtp_class is smtplib.SMTP:
                server.ehlo()
                if server.has_extn("starttls"):
                    server.starttls()
                    server.ehlo()
            if settings.get("smtp_user"):
                server.login(settings["smtp_user"], settings.get("smtp_pass") or "")
            server.sendmail(sender or settings.get("smtp_user") or "", [to], msg.as_string())
    except (smtplib.SMTPException, OSError, UnicodeError) as exc:
        logger.error("SMTP delivery to %s failed: %s", to, exc)
        raise DeliveryError(f"SMTP delivery failed: {exc}") from exc

    logger.info("Email sent to %s: %s", to, subject)


def send_resend(to: str, subject: str, html: str) -> str:
    api_key = os.getenv("RESEND_API_KEY")
    if not api_key:
        raise DeliveryError("Email service not configured: missing RESEND_API_KEY")

    try:
        response = requests.post(
            RESEND_API_URL,
            json={
                "from": os.getenv("RESEND_FROM", "Sales Monitoring <onboarding@resend.dev>"),
                "to": to,
                "subject": subject,
                "html": html,
            },
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=10,
        )
    except requests.RequestException as exc:
        logger.error("Resend request for %s failed: %s", to, exc)
        raise DeliveryError(f"Failed to send email: {exc}") from exc

    if response.status_code >= 400:
        logger.error("Resend rejected email to %s: %s %s", to, response.status_code, response.text[:200])
        raise DeliveryError(f"Failed to send email: HTTP {response.status_code}")

    try:
        message_id = response.json().get("id", "")
    except ValueError:
        message_id = ""
    logger.info("Email sent to %s via Resend (%s)", to, message_id)
    return message_id


def send_otp_email(recipient: str, otp: str, smtp_settings: Optional[Dict[str, Any]] = None) -> None:
    message = render_otp_email(otp)
    transport = os.getenv("MAIL_TRANSPORT", "smtp").lower()
    user_smtp = bool(smtp_settings and smtp_settings.get("smtp_host"))

    if transport == "resend" and not user_smtp:
        send_resend(recipient, message["subject"], message["html"])
    else:
        send_smtp(recipient, message["subject"], message["text"], message["html"], settings=smtp_settings)


# --- SMS via carrier gateways ---

def format_phone_number(phone_number: str) -> Dict[str, str]:
    cleaned = re.sub(r"\D", "", phone_number or "")
    if cleaned.startswith("0"):
        number = cleaned[1:]
    elif cleaned.startswith("63"):
        number = cleaned[2:]
    else:
        number = cleaned
    return {"formatted": number, "prefix": number[:3]}


def sms_gateway_for(prefix: str, phone_number: str) -> Optional[str]:
    if prefix in GLOBE_PREFIXES:
        return f"{phone_number}@sms.globe.com.ph"
    if prefix in SMART_PREFIXES:
        return f"{phone_number}@sms.smart.com.ph"
    if prefix in SUN_PREFIXES:
        return f"{phone_number}@sms.sun.com.ph"
    return None


def send_sms_otp(phone_number: str, otp: str, smtp_settings: Optional[Dict[str, Any]] = None) -> None:
    if not phone_number:
        raise DeliveryError("Phone number is required")

    phone = format_phone_number(phone_number)
    gateway = sms_gateway_for(phone["prefix"], phone["formatted"])
    if not gateway:
        raise DeliveryError("Unsupported carrier or invalid phone number prefix")

    logger.info("Sending SMS OTP to %s via %s", phone["formatted"], gateway)
    send_smtp(
        gateway,
        "OTP",
        f"Your verification code is: {otp}. This code will expire in {_otp_ttl_minutes()} minutes.",
        settings=smtp_settings,
    )

    if os.getenv("APP_ENV", "development") != "production":
        logger.debug("TEST MODE: OTP for %s is %s", phone["formatted"], otp)
