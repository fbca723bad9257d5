"""One-time passwords for unrecognised devices, kept in ``user_otps``."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import logging
import os
import secrets

from sales_monitor.reports import coerce_datetime

logger = logging.getLogger(__name__)

OTP_TTL_MINUTES = int(os.getenv("OTP_TTL_MINUTES", "5"))


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_otp() -> str:
    return str(100000 + secrets.randbelow(900000))


def store_otp(cursor, user_id: int, otp: str, now: Optional[datetime] = None) -> datetime:
    """Replace any pending code for the user and return the new expiry."""
    expires_at = (now or utcnow()) + timedelta(minutes=OTP_TTL_MINUTES)

    cursor.execute("DELETE FROM user_otps WHERE user_id = %s", (user_id,))
    cursor.execute(
        "INSERT INTO user_otps (user_id, otp, expires_at) VALUES (%s, %s, %s)",
        (user_id, otp, expires_at.strftime("%Y-%m-%d %H:%M:%S")),
    )
    logger.info("Stored OTP for user %s expiring at %s", user_id, expires_at.isoformat())
    return expires_at


def find_otp(cursor, user_id: int, otp: str) -> Optional[Dict[str, Any]]:
    cursor.execute(
        "SELECT id, user_id, otp, expires_at FROM user_otps WHERE user_id = %s AND otp = %s",
        (user_id, otp),
    )
    return cursor.fetchone()


def delete_otps(cursor, user_id: int, otp: Optional[str] = None) -> None:
    if otp is None:
        cursor.execute("DELETE FROM user_otps WHERE user_id = %s", (user_id,))
    else:
        cursor.execute("DELETE FROM user_otps WHERE user_id = %s AND otp = %s", (user_id, otp))


def is_expired(record: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    expires_at = coerce_datetime(record.get("expires_at"))
    if expires_at is None:
        return True
    return expires_at < (now or utcnow())
