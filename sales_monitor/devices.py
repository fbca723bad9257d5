"""Device trust: the user agents that already passed an OTP challenge.

The list lives in the ``myusers.verified_devices`` JSON column as objects of
the form ``{"userAgent": ..., "ipAddress": ...}``.
"""

from typing import Any, Dict, List
import json
import logging

logger = logging.getLogger(__name__)


def load_verified_devices(value: Any) -> List[Dict[str, Any]]:
    if value is None:
        return []
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        if not value.strip():
            return []
        try:
            value = json.loads(value)
        except ValueError:
            logger.warning("Ignoring malformed verified_devices value")
            return []
    if not isinstance(value, list):
        return []
    return [device for device in value if isinstance(device, dict)]


def is_device_trusted(devices: List[Dict[str, Any]], user_agent: str) -> bool:
    if not user_agent:
        return False
    return any(device.get("userAgent") == user_agent for device in devices)


def add_trusted_device(devices: List[Dict[str, Any]], user_agent: str, ip_address: str) -> List[Dict[str, Any]]:
    if not user_agent or is_device_trusted(devices, user_agent):
        return devices
    return devices + [{"userAgent": user_agent, "ipAddress": ip_address}]


def read_devices(cursor, user_id: int) -> List[Dict[str, Any]]:
    cursor.execute("SELECT verified_devices FROM myusers WHERE id = %s", (user_id,))
    row = cursor.fetchone()
    return load_verified_devices(row.get("verified_devices") if row else None)


def write_devices(cursor, user_id: int, devices: List[Dict[str, Any]]) -> None:
    cursor.execute(
        "UPDATE myusers SET verified_devices = %s WHERE id = %s",
        (json.dumps(devices), user_id),
    )


def clear_devices(cursor, user_id: int) -> None:
    write_devices(cursor, user_id, [])
