"""Bootstrap helpers that prepare the core database on startup."""

from __future__ import annotations

import logging
import os

import mysql.connector
from mysql.connector import errorcode

from sales_monitor.db_core import get_core_connection


logger = logging.getLogger(__name__)

MYUSERS_DDL = """
    CREATE TABLE IF NOT EXISTS myusers (
        id INT AUTO_INCREMENT PRIMARY KEY,
        username VARCHAR(150) NOT NULL UNIQUE,
        password VARCHAR(255) NOT NULL,
        full_name VARCHAR(255) NULL,
        contact_email VARCHAR(255) NULL,
        contact_number VARCHAR(50) NULL,
        active TINYINT(1) NOT NULL DEFAULT 1,
        project_url VARCHAR(512) NULL,
        project_key VARCHAR(512) NULL,
        verified_devices JSON NULL,
        smtp_host VARCHAR(255) NULL,
        smtp_port INT NULL,
        smtp_user VARCHAR(255) NULL,
        smtp_pass VARCHAR(255) NULL,
        smtp_from VARCHAR(255) NULL,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4 COLLATE=utf8mb4_unicode_ci
"""

USER_OTPS_DDL = """
    CREATE TABLE IF NOT EXISTS user_otps (
        id INT AUTO_INCREMENT PRIMARY KEY,
        user_id INT NOT NULL,
        otp VARCHAR(6) NOT NULL,
        expires_at DATETIME NOT NULL,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        INDEX idx_user_otp (user_id, otp)
    ) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4 COLLATE=utf8mb4_unicode_ci
"""

# Columns added after the first deployments of myusers
LATE_COLUMNS = {
    "contact_number": "VARCHAR(50) NULL",
    "verified_devices": "JSON NULL",
    "smtp_host": "VARCHAR(255) NULL",
    "smtp_port": "INT NULL",
    "smtp_user": "VARCHAR(255) NULL",
    "smtp_pass": "VARCHAR(255) NULL",
    "smtp_from": "VARCHAR(255) NULL",
}


def _has_column(cursor, table: str, column: str) -> bool:
    """Return True when the requested column exists on the given table."""

    try:
        cursor.execute(f"SHOW COLUMNS FROM {table} LIKE %s", (column,))
        return cursor.fetchone() is not None
    except mysql.connector.Error as err:
        if err.errno == errorcode.ER_NO_SUCH_TABLE:
            return False
        raise


def _auto_migrate_enabled() -> bool:
    return os.getenv("CORE_DB_AUTO_MIGRATE", "true").lower() in {"1", "true", "yes", "on"}


def ensure_core_schema() -> None:
    """Create the shared account tables and add columns missing from older installs."""

    if not _auto_migrate_enabled():
        logger.info("Skipping core schema bootstrap because CORE_DB_AUTO_MIGRATE is off")
        return

    try:
        conn = get_core_connection()
    except mysql.connector.Error as exc:
        logger.warning("Unable to connect to core database for schema bootstrap: %s", exc)
        return

    cursor = conn.cursor(dictionary=True)

    try:
        cursor.execute(MYUSERS_DDL)
        cursor.execute(USER_OTPS_DDL)

        for column, definition in LATE_COLUMNS.items():
            if not _has_column(cursor, "myusers", column):
                cursor.execute(f"ALTER TABLE myusers ADD COLUMN {column} {definition}")
                logger.info("Added myusers.%s", column)

        conn.commit()
        logger.debug("Core schema is up to date")
    except mysql.connector.Error as exc:
        conn.rollback()
        logger.error("Failed to bootstrap core schema: %s", exc)
    finally:
        cursor.close()
        conn.close()
