from fastapi import APIRouter, HTTPException, Depends, Request
from pydantic import BaseModel
import jwt, os, bcrypt, hmac
from typing import Any, Dict, Optional
from datetime import datetime, timedelta, timezone
import logging

from sales_monitor import devices, otp as otp_store
from sales_monitor.db_core import get_core_connection
from sales_monitor.notify import send_otp_email, send_sms_otp
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

logger = logging.getLogger(__name__)

router = APIRouter()
security = HTTPBearer()

SECRET = os.getenv("JWT_SECRET", "changeme")
TOKEN_TTL_HOURS = int(os.getenv("TOKEN_TTL_HOURS", "12"))

USER_COLUMNS = (
    "id, username, password, full_name, contact_email, contact_number, active, "
    "project_url, project_key, verified_devices, smtp_host, smtp_port, smtp_user, "
    "smtp_pass, smtp_from"
)


def _get_client_ip(request: Request) -> str:
    """Extract client IP address from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # X-Forwarded-For can contain multiple IPs, take the first one
        ip = forwarded_for.split(",")[0].strip()
        if ip:
            return ip

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client and request.client.host:
        return request.client.host

    return "unknown"


def _password_matches(raw: str, stored: Optional[str]) -> bool:
    if not stored:
        return False
    if stored.startswith("$2"):
        try:
            return bcrypt.checkpw(raw.encode(), stored.encode())
        except ValueError:
            logger.warning("Stored password hash is not a valid bcrypt hash")
            return False
    # accounts provisioned before hashing store the password as-is
    return hmac.compare_digest(raw.encode(), stored.encode())


def _fetch_user(cursor, *, user_id: Optional[int] = None, username: Optional[str] = None) -> Optional[Dict[str, Any]]:
    if user_id is not None:
        cursor.execute(f"SELECT {USER_COLUMNS} FROM myusers WHERE id = %s", (user_id,))
    else:
        cursor.execute(f"SELECT {USER_COLUMNS} FROM myusers WHERE username = %s", (username,))
    return cursor.fetchone()


def _smtp_settings(user: Dict[str, Any]) -> Dict[str, Any]:
    return {key: user.get(key) for key in ("smtp_host", "smtp_port", "smtp_user", "smtp_pass", "smtp_from")}


def _public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": user["id"],
        "username": user.get("username"),
        "full_name": user.get("full_name"),
    }


def issue_token(user: Dict[str, Any]) -> str:
    payload = {
        "sub": str(user["id"]),
        "username": user.get("username"),
        "full_name": user.get("full_name"),
        "project_url": user.get("project_url"),
        "project_key": user.get("project_key"),
        "exp": datetime.now(timezone.utc) + timedelta(hours=TOKEN_TTL_HOURS),
    }
    return jwt.encode(payload, SECRET, algorithm="HS256")


def _authenticated(user: Dict[str, Any]) -> Dict[str, Any]:
    return {"status": "authenticated", "token": issue_token(user), "user": _public_user(user)}


def _deliver_otp(cursor, conn, user: Dict[str, Any]) -> str:
    """Store a fresh code and send it; returns the channel used."""
    if user.get("contact_email"):
        channel = "email"
    elif user.get("contact_number"):
        channel = "sms"
    else:
        raise HTTPException(status_code=400, detail="No registered email found. Please contact administrator.")

    code = otp_store.generate_otp()
    try:
        otp_store.store_otp(cursor, user["id"], code)
        conn.commit()
    except Exception as e:
        conn.rollback()
        logger.error("Failed to store OTP for user %s: %s", user["id"], e)
        raise HTTPException(status_code=500, detail="Failed to store OTP")

    try:
        if channel == "email":
            send_otp_email(user["contact_email"], code, smtp_settings=_smtp_settings(user))
        else:
            send_sms_otp(user["contact_number"], code, smtp_settings=_smtp_settings(user))
    except Exception as e:
        logger.error("Failed to send OTP to user %s: %s", user["id"], e)
        otp_store.delete_otps(cursor, user["id"])
        conn.commit()
        raise HTTPException(status_code=500, detail="Failed to send OTP email")

    logger.info("Sent OTP to user %s by %s", user["id"], channel)
    return channel


class DeviceInfo(BaseModel):
    user_agent: Optional[str] = None
    platform: Optional[str] = None
    language: Optional[str] = None
    screen_resolution: Optional[str] = None
    time_zone: Optional[str] = None


class LoginInput(BaseModel):
    username: str = ""
    password: str = ""
    device: Optional[DeviceInfo] = None


class SendOtpInput(BaseModel):
    user_id: int


class VerifyOtpInput(BaseModel):
    user_id: int
    otp: str
    device: Optional[DeviceInfo] = None


def _user_agent(device: Optional[DeviceInfo], request: Request) -> str:
    if device and device.user_agent:
        return device.user_agent
    return request.headers.get("User-Agent", "")


@router.post("/login")
def login(data: LoginInput, request: Request):
    if not data.username or not data.password:
        raise HTTPException(status_code=400, detail="Username and password are required")

    logger.info("Login attempt for %s", data.username)

    conn = get_core_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        user = _fetch_user(cursor, username=data.username)

        if not user:
            raise HTTPException(status_code=401, detail="Account is not registered. Please contact administrator.")

        if not _password_matches(data.password, user.get("password")):
            raise HTTPException(status_code=401, detail="Invalid password")

        if not user.get("active"):
            raise HTTPException(status_code=403, detail="Account is inactive. Please contact administrator.")

        if not user.get("project_url") or not user.get("project_key"):
            raise HTTPException(status_code=400, detail="Project credentials not configured for this account")

        trusted = devices.is_device_trusted(
            devices.load_verified_devices(user.get("verified_devices")),
            _user_agent(data.device, request),
        )
        if trusted:
            logger.info("Device is trusted for %s, proceeding with login", data.username)
            return _authenticated(user)

        logger.info("Device not trusted for %s, initiating OTP verification", data.username)
        channel = _deliver_otp(cursor, conn, user)
        return {"status": "otp_required", "user_id": user["id"], "channel": channel}
    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.exception("Unexpected error during login: %s", e)
        raise HTTPException(status_code=500, detail="Login failed")
    finally:
        cursor.close()
        conn.close()


@router.post("/send-otp")
def send_otp(data: SendOtpInput):
    conn = get_core_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        user = _fetch_user(cursor, user_id=data.user_id)
        if not user:
            raise HTTPException(status_code=404, detail="User not found")

        channel = _deliver_otp(cursor, conn, user)
        return {"success": True, "channel": channel}
    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.exception("Error in send-otp: %s", e)
        raise HTTPException(status_code=500, detail="Internal server error")
    finally:
        cursor.close()
        conn.close()


@router.post("/verify-otp")
def verify_otp(data: VerifyOtpInput, request: Request):
    code = data.otp.strip()

    conn = get_core_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        record = otp_store.find_otp(cursor, data.user_id, code)
        if not record:
            raise HTTPException(status_code=400, detail="Invalid OTP number")

        if otp_store.is_expired(record):
            raise HTTPException(status_code=400, detail="OTP has expired")

        user = _fetch_user(cursor, user_id=data.user_id)
        if not user:
            raise HTTPException(status_code=400, detail="Invalid OTP number")

        known = devices.read_devices(cursor, data.user_id)
        updated = devices.add_trusted_device(known, _user_agent(data.device, request), _get_client_ip(request))
        if updated is not known:
            try:
                devices.write_devices(cursor, data.user_id, updated)
            except Exception as e:
                logger.error("Failed to store verified device for user %s: %s", data.user_id, e)
                raise HTTPException(status_code=500, detail="Failed to verify device")

        otp_store.delete_otps(cursor, data.user_id, code)
        conn.commit()

        return _authenticated(user)
    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.exception("Error verifying OTP: %s", e)
        raise HTTPException(status_code=400, detail="Invalid OTP number")
    finally:
        cursor.close()
        conn.close()


# This is the token auth dependency
def get_auth_user(token: HTTPAuthorizationCredentials = Depends(security)):
    try:
        payload = jwt.decode(token.credentials, SECRET, algorithms=["HS256"])
        return payload
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def current_user_id(user: dict) -> int:
    try:
        return int(user["sub"])
    except (KeyError, TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token")


@router.post("/logout")
def logout(user: dict = Depends(get_auth_user)):
    user_id = current_user_id(user)

    conn = get_core_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        devices.clear_devices(cursor, user_id)
        conn.commit()
        return {"success": True}
    except Exception as e:
        conn.rollback()
        logger.error("Error clearing verified devices for user %s: %s", user_id, e)
        raise HTTPException(status_code=500, detail="Failed to clear verified devices")
    finally:
        cursor.close()
        conn.close()


@router.get("/project-credentials")
def get_project_credentials(user: dict = Depends(get_auth_user)):
    user_id = current_user_id(user)

    conn = get_core_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        cursor.execute("SELECT project_url, project_key FROM myusers WHERE id = %s", (user_id,))
        row = cursor.fetchone()
        if not row:
            raise HTTPException(status_code=404, detail="User not found")
        return {"project_url": row.get("project_url"), "project_key": row.get("project_key")}
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Error fetching project credentials for user %s: %s", user_id, e)
        raise HTTPException(status_code=500, detail="Failed to fetch project credentials")
    finally:
        cursor.close()
        conn.close()


@router.get("/me")
def me(user: dict = Depends(get_auth_user)):
    return {
        "id": current_user_id(user),
        "username": user.get("username"),
        "full_name": user.get("full_name"),
        "project_url": user.get("project_url"),
    }
