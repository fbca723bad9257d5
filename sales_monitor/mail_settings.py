from typing import Optional
import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from sales_monitor.auth import current_user_id, get_auth_user
from sales_monitor.db_core import get_core_connection

logger = logging.getLogger(__name__)

router = APIRouter()


class SMTPSettings(BaseModel):
    smtp_host: str = ""
    smtp_port: int = Field(587, ge=1, le=65535)
    smtp_user: str = ""
    smtp_pass: Optional[str] = None
    smtp_from: Optional[str] = None


@router.get("/smtp")
def get_smtp_settings(user: dict = Depends(get_auth_user)):
    user_id = current_user_id(user)
    conn = get_core_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        cursor.execute(
            "SELECT smtp_host, smtp_port, smtp_user, smtp_pass, smtp_from FROM myusers WHERE id = %s",
            (user_id,),
        )
        row = cursor.fetchone()
        if not row:
            raise HTTPException(status_code=404, detail="User not found")

        return {
            "smtp_host": row.get("smtp_host") or "",
            "smtp_port": row.get("smtp_port") or 587,
            "smtp_user": row.get("smtp_user") or "",
            "smtp_from": row.get("smtp_from") or "",
            "has_password": bool(row.get("smtp_pass")),
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Error loading SMTP settings for user %s: %s", user_id, e)
        raise HTTPException(status_code=500, detail="Failed to load SMTP settings")
    finally:
        cursor.close()
        conn.close()


@router.put("/smtp")
def save_smtp_settings(settings: SMTPSettings, user: dict = Depends(get_auth_user)):
    user_id = current_user_id(user)
    conn = get_core_connection()
    cursor = conn.cursor(dictionary=True)

    updates = ["smtp_host = %s", "smtp_port = %s", "smtp_user = %s", "smtp_from = %s"]
    params = [
        settings.smtp_host,
        settings.smtp_port,
        settings.smtp_user,
        settings.smtp_from or settings.smtp_user,
    ]
    # an omitted password keeps the stored one
    if settings.smtp_pass is not None:
        updates.append("smtp_pass = %s")
        params.append(settings.smtp_pass)
    params.append(user_id)

    try:
        cursor.execute("SELECT id FROM myusers WHERE id = %s", (user_id,))
        if not cursor.fetchone():
            raise HTTPException(status_code=404, detail="User not found")

        cursor.execute(f"UPDATE myusers SET {', '.join(updates)} WHERE id = %s", tuple(params))
        conn.commit()
        logger.info("Saved SMTP settings for user %s", user_id)
        return {"message": "SMTP settings saved successfully"}
    except HTTPException:
        conn.rollback()
        raise
    except Exception as e:
        conn.rollback()
        logger.error("Error saving SMTP settings for user %s: %s", user_id, e)
        raise HTTPException(status_code=500, detail="Failed to save SMTP settings")
    finally:
        cursor.close()
        conn.close()
