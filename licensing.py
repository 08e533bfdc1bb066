# licensing.py
import json
import logging
import re
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from database import Database
from license_store import LicenseStore, LicenseStoreError

logger = logging.getLogger("billing_app.licensing")

LOCAL_LICENSE_KEY = "license_info"
DEVICE_ID_KEY = "device_id_cached"

MACHINE_ID_PATHS = ("/etc/machine-id", "/var/lib/dbus/machine-id")

WRITE_DENIED_REASON = ("Write denied while binding device. "
                       "Update store rules or bind device_id manually.")

# Store timestamps carry up to nanoseconds; fromisoformat takes microseconds
_FRACTION = re.compile(r"\.(\d+)")


@dataclass
class LocalLicenseInfo:
    vendor_phone: str
    license_key: str

    def to_json(self):
        return json.dumps({'vendorPhone': self.vendor_phone, 'licenseKey': self.license_key})

    @classmethod
    def from_json(cls, text: str):
        data = json.loads(text)
        return cls(data['vendorPhone'], data['licenseKey'])


@dataclass
class LicenseResult:
    ok: bool
    reason: Optional[str] = None

    @classmethod
    def rejected(cls, reason: str):
        return cls(False, reason)


class DeviceIdentityProvider:
    """
    Supplies a device id that stays the same for the life of the install:
    the OS machine id when one is readable, else a generated token kept in
    the local settings table.
    """
    def __init__(self, db: Database, machine_id_paths=MACHINE_ID_PATHS):
        self.db = db
        self.machine_id_paths = machine_id_paths

    def native_id(self) -> Optional[str]:
        for path in self.machine_id_paths:
            try:
                with open(path) as f:
                    value = f.read().strip()
            except OSError as e:
                logger.debug(f"Machine id not readable from {path}: {e}")
                continue
            if value:
                return value
        return None

    def ensure_device_id(self) -> str:
        native = self.native_id()
        if native:
            return native
        cached = self.db.get_setting(DEVICE_ID_KEY)
        if cached:
            return cached
        generated = f"dev_{secrets.token_hex(8)}_{int(time.time() * 1000)}"
        self.db.set_setting(DEVICE_ID_KEY, generated)
        logger.info("Generated new device id")
        return generated


def _utcnow():
    return datetime.now(timezone.utc)


def is_expired(expires_at: Optional[str], now: datetime) -> bool:
    """True when expires_at is set and lies before now. Naive values are UTC."""
    if not expires_at:
        return False
    text = expires_at.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        expiry = datetime.fromisoformat(text)
    except ValueError:
        logger.warning(f"Ignoring unparseable license expiry {expires_at!r}")
        return False
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=timezone.utc)
    return now > expiry


class LicenseService:
    """
    Gates app usage to one bound device per license key.

    store: the remote LicenseStore, or a callable building it, owned by the
    application entry point. Local-only paths never build the store.
    clock: returns the current aware UTC datetime; replaceable in tests.
    Neither public check raises; every failure comes back as a LicenseResult.
    """
    def __init__(self, store, db: Database,
                 device_provider: DeviceIdentityProvider = None, clock=None):
        self._store = store
        self.db = db
        self.device_provider = device_provider or DeviceIdentityProvider(db)
        self.clock = clock or _utcnow

    @property
    def store(self) -> LicenseStore:
        """The remote store; a factory passed in is called on first use."""
        if not isinstance(self._store, LicenseStore):
            self._store = self._store()
        return self._store

    # Local cache
    def get_local(self) -> Optional[LocalLicenseInfo]:
        data = self.db.get_setting(LOCAL_LICENSE_KEY)
        if not data:
            return None
        try:
            return LocalLicenseInfo.from_json(data)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable local license info: {e}")
            return None

    def save_local(self, info: LocalLicenseInfo):
        self.db.set_setting(LOCAL_LICENSE_KEY, info.to_json())

    def clear_local(self):
        self.db.delete_setting(LOCAL_LICENSE_KEY)
        logger.info("Local license info cleared")

    def _policy_rejection(self, record) -> Optional[str]:
        if record is None:
            return "License not found"
        if record.revoked:
            return "License revoked"
        if is_expired(record.expires_at, self.clock()):
            return "License expired"
        return None

    def validate_and_bind_license(self, vendor_phone: str, license_key: str) -> LicenseResult:
        """
        Activate a license on this device. An unbound record is bound to the
        current device; a record bound elsewhere is rejected.
        """
        try:
            device_id = self.device_provider.ensure_device_id()
            record = self.store.get(vendor_phone)
            reason = self._policy_rejection(record)
            if reason:
                logger.warning(f"License activation for {vendor_phone} rejected: {reason}")
                return LicenseResult.rejected(reason)
            if not record.license_key or record.license_key != license_key:
                return LicenseResult.rejected("Invalid license key")

            if not record.device_id:
                try:
                    self.store.bind_device(vendor_phone, device_id, record.update_time)
                except LicenseStoreError as e:
                    logger.error(f"Binding device for {vendor_phone} failed: {e.message}")
                    if e.is_permission_error:
                        return LicenseResult.rejected(WRITE_DENIED_REASON)
                    return LicenseResult.rejected(f"Failed to bind device: {e.message}")
                logger.info(f"License for {vendor_phone} bound to this device")
            elif record.device_id != device_id:
                return LicenseResult.rejected("License already used on another device")

            self.save_local(LocalLicenseInfo(vendor_phone, license_key))
            return LicenseResult(True)
        except Exception as e:
            logger.error(f"License activation error: {e}", exc_info=True)
            return LicenseResult.rejected(_failure_message(e))

    def check_license_status(self) -> LicenseResult:
        """Re-validate the cached license against the store at startup."""
        local = self.get_local()
        if local is None:
            return LicenseResult.rejected("No license saved")
        try:
            device_id = self.device_provider.ensure_device_id()
            record = self.store.get(local.vendor_phone)
            reason = self._policy_rejection(record)
            if reason:
                return LicenseResult.rejected(reason)
            if not record.license_key or record.license_key != local.license_key:
                return LicenseResult.rejected("License key mismatch")
            if record.device_id and record.device_id != device_id:
                return LicenseResult.rejected("Device mismatch")
            return LicenseResult(True)
        except Exception as e:
            logger.error(f"License status check failed: {e}", exc_info=True)
            return LicenseResult.rejected(_failure_message(e))


def _failure_message(error: Exception) -> str:
    if isinstance(error, LicenseStoreError):
        return error.message or "Network or permission error"
    return str(error) or "Network or permission error"
