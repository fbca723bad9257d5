from typing import Any, Dict, List, Optional

import bcrypt
import logging
import os
from fastapi import APIRouter, Depends, Header, HTTPException, status
from pydantic import BaseModel, EmailStr, Field

from sales_monitor import devices
from sales_monitor.db_core import get_core_connection

logger = logging.getLogger(__name__)

router = APIRouter()

ADMIN_USER_COLUMNS = (
    "id, username, full_name, contact_email, contact_number, active, "
    "project_url, project_key, verified_devices"
)


def _require_admin(api_key: str = Header(..., alias="X-Admin-Key")) -> None:
    expected_key = os.getenv("ADMIN_API_KEY")
    if not expected_key or api_key != expected_key:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin credentials")


class ProjectCredentials(BaseModel):
    project_url: str = Field(..., description="SQLAlchemy URL of the tenant POS database")
    project_key: str = Field(..., description="Credential used to connect to the tenant database")


class CreateUserRequest(BaseModel):
    username: str = Field(..., min_length=3)
    password: str = Field(..., min_length=8)
    full_name: Optional[str] = Field(None, description="Optional display name for the user")
    contact_email: Optional[EmailStr] = None
    contact_number: Optional[str] = None
    active: bool = True
    project: Optional[ProjectCredentials] = None


class UpdateUserRequest(BaseModel):
    full_name: Optional[str] = None
    contact_email: Optional[EmailStr] = None
    contact_number: Optional[str] = None
    active: Optional[bool] = None


class AdminUser(BaseModel):
    id: int
    username: str
    full_name: Optional[str] = None
    contact_email: Optional[str] = None
    contact_number: Optional[str] = None
    active: bool
    project_url: Optional[str] = None
    project_key: Optional[str] = None
    trusted_devices: int = 0


class AdminUsersResponse(BaseModel):
    users: List[AdminUser]


def _to_admin_user(row: Dict[str, Any]) -> AdminUser:
    return AdminUser(
        id=row["id"],
        username=row["username"],
        full_name=row.get("full_name"),
        contact_email=row.get("contact_email"),
        contact_number=row.get("contact_number"),
        active=bool(row.get("active")),
        project_url=row.get("project_url"),
        project_key=row.get("project_key"),
        trusted_devices=len(devices.load_verified_devices(row.get("verified_devices"))),
    )


def _load_user(cursor, user_id: int) -> AdminUser:
    cursor.execute(f"SELECT {ADMIN_USER_COLUMNS} FROM myusers WHERE id = %s", (user_id,))
    row = cursor.fetchone()
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return _to_admin_user(row)


@router.post("/users", response_model=AdminUser, status_code=status.HTTP_201_CREATED)
def create_user(payload: CreateUserRequest, _: None = Depends(_require_admin)):
    conn = get_core_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        cursor.execute("SELECT id FROM myusers WHERE username = %s", (payload.username,))
        if cursor.fetchone():
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="User already exists")

        password_hash = bcrypt.hashpw(payload.password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")

        columns = ["username", "password", "full_name", "contact_email", "contact_number", "active", "verified_devices"]
        values: List[Any] = [
            payload.username,
            password_hash,
            payload.full_name,
            payload.contact_email,
            payload.contact_number,
            payload.active,
            "[]",
        ]
        if payload.project:
            columns.extend(["project_url", "project_key"])
            values.extend([payload.project.project_url, payload.project.project_key])

        placeholders = ", ".join(["%s"] * len(values))
        cursor.execute(
            f"INSERT INTO myusers ({', '.join(columns)}) VALUES ({placeholders})",
            tuple(values),
        )
        user_id = cursor.lastrowid
        conn.commit()
        logger.info("Created user %s (%s)", payload.username, user_id)

        return _load_user(cursor, user_id)
    except HTTPException:
        conn.rollback()
        raise
    except Exception as exc:
        conn.rollback()
        logger.error("Failed to create user %s: %s", payload.username, exc)
        raise HTTPException(status_code=500, detail=f"Failed to create user: {exc}")
    finally:
        cursor.close()
        conn.close()


@router.get("/users", response_model=AdminUsersResponse)
def list_users(_: None = Depends(_require_admin)):
    conn = get_core_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        cursor.execute(f"SELECT {ADMIN_USER_COLUMNS} FROM myusers ORDER BY username")
        rows = cursor.fetchall() or []
        return AdminUsersResponse(users=[_to_admin_user(row) for row in rows])
    except Exception as err:
        raise HTTPException(status_code=500, detail=f"Failed to load users: {err}")
    finally:
        cursor.close()
        conn.close()


@router.get("/users/{user_id}", response_model=AdminUser)
def get_user(user_id: int, _: None = Depends(_require_admin)):
    conn = get_core_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        return _load_user(cursor, user_id)
    except HTTPException:
        raise
    except Exception as err:
        raise HTTPException(status_code=500, detail=f"Failed to load user: {err}")
    finally:
        cursor.close()
        conn.close()


def _update_user(user_id: int, assignments: Dict[str, Any], action: str) -> AdminUser:
    conn = get_core_connection()
    cursor = conn.cursor(dictionary=True)

    try:
        _load_user(cursor, user_id)

        if assignments:
            clause = ", ".join(f"{column} = %s" for column in assignments)
            cursor.execute(
                f"UPDATE myusers SET {clause} WHERE id = %s",
                tuple(assignments.values()) + (user_id,),
            )
            conn.commit()
            logger.info("Admin %s for user %s", action, user_id)

        return _load_user(cursor, user_id)
    except HTTPException:
        conn.rollback()
        raise
    except Exception as err:
        conn.rollback()
        raise HTTPException(status_code=500, detail=f"Failed to {action}: {err}")
    finally:
        cursor.close()
        conn.close()


@router.patch("/users/{user_id}", response_model=AdminUser)
def update_user(user_id: int, payload: UpdateUserRequest, _: None = Depends(_require_admin)):
    return _update_user(user_id, payload.model_dump(exclude_unset=True), "update user")


@router.put("/users/{user_id}/project", response_model=AdminUser)
def update_project(user_id: int, payload: ProjectCredentials, _: None = Depends(_require_admin)):
    return _update_user(user_id, payload.model_dump(), "update project credentials")


@router.delete("/users/{user_id}/devices", response_model=AdminUser)
def reset_devices(user_id: int, _: None = Depends(_require_admin)):
    return _update_user(user_id, {"verified_devices": "[]"}, "reset trusted devices")
