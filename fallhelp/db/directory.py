"""Device directory lookups and the device-status writes made by the router."""

import logging
from datetime import datetime
from typing import Optional

from fallhelp.db.pool import persistence_errors
from fallhelp.shared.config import optional_env
from fallhelp.shared.models import (
    AccessLevel,
    Caregiver,
    Device,
    DeviceConfig,
    DeviceStatus,
    Elder,
    ElderWithCaregivers,
    WifiStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_FIRMWARE_VERSION = "1.0.0"
HR_LOW_DEFAULT = int(optional_env("HR_LOW_DEFAULT", "50"))
HR_HIGH_DEFAULT = int(optional_env("HR_HIGH_DEFAULT", "120"))

DEVICE_BY_SERIAL_SQL = """
SELECT d.id, d.serial_number, d.device_code, d.elder_id, d.status,
       d.last_online, d.firmware_version,
       c.device_id AS config_device_id, c.fall_threshold, c.hr_low_threshold,
       c.hr_high_threshold, c.sample_interval, c.wifi_status, c.ip_address,
       e.first_name AS elder_first_name, e.last_name AS elder_last_name
FROM devices d
LEFT JOIN device_configs c ON c.device_id = d.id
LEFT JOIN elders e ON e.id = d.elder_id
WHERE d.serial_number = $1
"""

ELDER_SQL = "SELECT id, first_name, last_name FROM elders WHERE id = $1"

CAREGIVERS_SQL = """
SELECT a.user_id, a.access_level, u.push_token
FROM user_elder_access a
JOIN users u ON u.id = a.user_id
WHERE a.elder_id = $1
ORDER BY a.created_at ASC, a.user_id ASC
"""

UPDATE_DEVICE_STATUS_SQL = """
UPDATE devices
SET last_online = $2, firmware_version = $3, status = $4, updated_at = $2
WHERE id = $1
"""

# An ERROR Wi-Fi state is left alone when a device reports offline.
CONFIG_ONLINE_SQL = """
UPDATE device_configs
SET wifi_status = 'CONNECTED', ip_address = $2, updated_at = $3
WHERE device_id = $1
"""

CONFIG_OFFLINE_SQL = """
UPDATE device_configs
SET wifi_status = 'DISCONNECTED', updated_at = $2
WHERE device_id = $1 AND wifi_status = 'CONFIGURING'
"""


def _device_from_row(row) -> Device:
    config = None
    if row["config_device_id"] is not None:
        config = DeviceConfig(
            fall_threshold=row["fall_threshold"],
            hr_low_threshold=row["hr_low_threshold"],
            hr_high_threshold=row["hr_high_threshold"],
            sample_interval=row["sample_interval"],
            wifi_status=WifiStatus(row["wifi_status"]),
            ip_address=row["ip_address"],
        )
    elder = None
    if row["elder_id"] is not None and row["elder_first_name"] is not None:
        elder = Elder(
            id=row["elder_id"],
            first_name=row["elder_first_name"],
            last_name=row["elder_last_name"] or "",
        )
    return Device(
        id=row["id"],
        serial_number=row["serial_number"],
        device_code=row["device_code"],
        status=DeviceStatus(row["status"]),
        elder_id=row["elder_id"],
        last_online=row["last_online"],
        firmware_version=row["firmware_version"],
        config=config,
        elder=elder,
    )


def heart_rate_thresholds(device: Device) -> tuple[int, int]:
    """Return (low, high) for a device, falling back to the service defaults."""
    if device.config is None:
        return HR_LOW_DEFAULT, HR_HIGH_DEFAULT
    low = device.config.hr_low_threshold
    high = device.config.hr_high_threshold
    return (
        HR_LOW_DEFAULT if low is None else low,
        HR_HIGH_DEFAULT if high is None else high,
    )


class DeviceDirectory:
    """Read devices and elders; write the status fields the router owns."""

    def __init__(self, pool):
        self.pool = pool

    async def get_device_by_serial(self, serial_number: str) -> Optional[Device]:
        with persistence_errors("get_device_by_serial"):
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(DEVICE_BY_SERIAL_SQL, serial_number)
        if row is None:
            return None
        return _device_from_row(row)

    async def get_elder_with_caregivers(self, elder_id: str) -> Optional[ElderWithCaregivers]:
        with persistence_errors("get_elder_with_caregivers"):
            async with self.pool.acquire() as conn:
                elder_row = await conn.fetchrow(ELDER_SQL, elder_id)
                if elder_row is None:
                    return None
                rows = await conn.fetch(CAREGIVERS_SQL, elder_id)
        elder = Elder(
            id=elder_row["id"],
            first_name=elder_row["first_name"],
            last_name=elder_row["last_name"] or "",
        )
        caregivers = [
            Caregiver(
                user_id=r["user_id"],
                access_level=AccessLevel(r["access_level"]),
                push_token=r["push_token"] or None,
            )
            for r in rows
        ]
        return ElderWithCaregivers(elder=elder, caregivers=caregivers)

    async def update_device_status(
        self,
        device: Device,
        *,
        online: bool,
        seen_at: datetime,
        firmware_version: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> str:
        """Record a heartbeat. Returns the firmware version that was stored."""
        firmware = firmware_version or device.firmware_version or DEFAULT_FIRMWARE_VERSION
        status = DeviceStatus.ACTIVE if online else DeviceStatus.INACTIVE
        with persistence_errors("update_device_status"):
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        UPDATE_DEVICE_STATUS_SQL, device.id, seen_at, firmware, status.value
                    )
                    if online:
                        await conn.execute(CONFIG_ONLINE_SQL, device.id, ip_address, seen_at)
                    else:
                        await conn.execute(CONFIG_OFFLINE_SQL, device.id, seen_at)
        return firmware
