import json
import os
import tempfile
import unittest
from datetime import datetime, timezone

from database import Database
from license_store import LicenseRecord, LicenseStore, LicenseStoreError
from licensing import (DEVICE_ID_KEY, LOCAL_LICENSE_KEY, DeviceIdentityProvider,
                       LicenseService, LocalLicenseInfo, WRITE_DENIED_REASON, is_expired)

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeStore(LicenseStore):
    """In-memory license store keyed by vendor phone."""
    def __init__(self, records=None, update_error=None, get_error=None):
        self.records = dict(records or {})
        self.update_error = update_error
        self.get_error = get_error
        self.updates = []

    def get(self, vendor_phone):
        if self.get_error:
            raise self.get_error
        record = self.records.get(vendor_phone)
        return LicenseRecord(**vars(record)) if record else None

    def update(self, vendor_phone, fields, update_time=None):
        if self.update_error:
            raise self.update_error
        self.updates.append((vendor_phone, fields, update_time))
        for key, value in fields.items():
            setattr(self.records[vendor_phone], key, value)


class ForbiddenStore(LicenseStore):
    def get(self, vendor_phone):
        raise AssertionError("store must not be queried")

    def update(self, vendor_phone, fields, update_time=None):
        raise AssertionError("store must not be written")


class FixedDevice(DeviceIdentityProvider):
    def __init__(self, db, device_id="device-A"):
        super().__init__(db, machine_id_paths=())
        self.device_id = device_id

    def ensure_device_id(self):
        return self.device_id


class LicenseTestCase(unittest.TestCase):
    def setUp(self):
        self.db = Database(":memory:")

    def tearDown(self):
        self.db.close()

    def service(self, store, device_id="device-A"):
        return LicenseService(store, self.db, FixedDevice(self.db, device_id), clock=lambda: NOW)

    def cache(self, phone="9876543210", key="KEY-1"):
        self.db.set_setting(LOCAL_LICENSE_KEY, LocalLicenseInfo(phone, key).to_json())


class CheckLicenseStatusTest(LicenseTestCase):
    def test_no_cache_does_not_touch_store(self):
        result = self.service(ForbiddenStore()).check_license_status()
        self.assertFalse(result.ok)
        self.assertEqual(result.reason, "No license saved")

    def test_revoked(self):
        self.cache()
        store = FakeStore({"9876543210": LicenseRecord("KEY-1", "device-A", revoked=True)})
        result = self.service(store).check_license_status()
        self.assertEqual((result.ok, result.reason), (False, "License revoked"))

    def test_bound_to_this_device(self):
        self.cache()
        store = FakeStore({"9876543210": LicenseRecord("KEY-1", "device-A", "2030-01-01")})
        result = self.service(store).check_license_status()
        self.assertTrue(result.ok)
        self.assertIsNone(result.reason)

    def test_bound_to_other_device(self):
        self.cache()
        store = FakeStore({"9876543210": LicenseRecord("KEY-1", "device-B")})
        result = self.service(store).check_license_status()
        self.assertEqual((result.ok, result.reason), (False, "Device mismatch"))

    def test_unbound_record_is_accepted(self):
        self.cache()
        store = FakeStore({"9876543210": LicenseRecord("KEY-1")})
        self.assertTrue(self.service(store).check_license_status().ok)
        self.assertEqual(store.updates, [])

    def test_not_found(self):
        self.cache()
        result = self.service(FakeStore()).check_license_status()
        self.assertEqual(result.reason, "License not found")

    def test_expired(self):
        self.cache()
        store = FakeStore({"9876543210": LicenseRecord("KEY-1", "device-A", "2025-05-31")})
        self.assertEqual(self.service(store).check_license_status().reason, "License expired")

    def test_rotated_key(self):
        self.cache()
        store = FakeStore({"9876543210": LicenseRecord("KEY-2", "device-A")})
        self.assertEqual(self.service(store).check_license_status().reason,
                         "License key mismatch")

    def test_store_error_becomes_reason(self):
        self.cache()
        store = FakeStore(get_error=LicenseStoreError("UNAVAILABLE: backend down"))
        result = self.service(store).check_license_status()
        self.assertFalse(result.ok)
        self.assertEqual(result.reason, "UNAVAILABLE: backend down")

    def test_unreadable_cache_counts_as_missing(self):
        self.db.set_setting(LOCAL_LICENSE_KEY, "not json")
        result = self.service(ForbiddenStore()).check_license_status()
        self.assertEqual(result.reason, "No license saved")


class ValidateAndBindTest(LicenseTestCase):
    def test_binds_unbound_record_and_caches(self):
        store = FakeStore({"9876543210": LicenseRecord("KEY-1", update_time="t1")})
        result = self.service(store).validate_and_bind_license("9876543210", "KEY-1")
        self.assertTrue(result.ok)
        self.assertEqual(store.records["9876543210"].device_id, "device-A")
        self.assertEqual(store.updates, [("9876543210", {"device_id": "device-A"}, "t1")])
        cached = json.loads(self.db.get_setting(LOCAL_LICENSE_KEY))
        self.assertEqual(cached, {"vendorPhone": "9876543210", "licenseKey": "KEY-1"})

    def test_empty_device_id_counts_as_unbound(self):
        store = FakeStore({"9876543210": LicenseRecord("KEY-1", device_id="")})
        self.assertTrue(self.service(store).validate_and_bind_license("9876543210", "KEY-1").ok)
        self.assertEqual(store.records["9876543210"].device_id, "device-A")

    def test_already_bound_here_is_not_rewritten(self):
        store = FakeStore({"9876543210": LicenseRecord("KEY-1", "device-A")})
        self.assertTrue(self.service(store).validate_and_bind_license("9876543210", "KEY-1").ok)
        self.assertEqual(store.updates, [])

    def test_bound_elsewhere(self):
        store = FakeStore({"9876543210": LicenseRecord("KEY-1", "device-B")})
        result = self.service(store).validate_and_bind_license("9876543210", "KEY-1")
        self.assertEqual(result.reason, "License already used on another device")
        self.assertEqual(store.records["9876543210"].device_id, "device-B")
        self.assertIsNone(self.db.get_setting(LOCAL_LICENSE_KEY))

    def test_key_is_case_sensitive(self):
        store = FakeStore({"9876543210": LicenseRecord("KEY-1")})
        result = self.service(store).validate_and_bind_license("9876543210", "key-1")
        self.assertEqual(result.reason, "Invalid license key")
        self.assertEqual(store.updates, [])

    def test_rejections_in_order(self):
        store = FakeStore({
            "revoked": LicenseRecord("KEY-1", revoked=True, expires_at="2020-01-01"),
            "expired": LicenseRecord("KEY-1", expires_at="2020-01-01T00:00:00Z"),
        })
        svc = self.service(store)
        self.assertEqual(svc.validate_and_bind_license("missing", "KEY-1").reason,
                         "License not found")
        self.assertEqual(svc.validate_and_bind_license("revoked", "KEY-1").reason,
                         "License revoked")
        self.assertEqual(svc.validate_and_bind_license("expired", "KEY-1").reason,
                         "License expired")

    def test_permission_denied_while_binding(self):
        error = LicenseStoreError("PERMISSION_DENIED: Missing or insufficient permissions.",
                                  "PERMISSION_DENIED", 403)
        store = FakeStore({"9876543210": LicenseRecord("KEY-1")}, update_error=error)
        result = self.service(store).validate_and_bind_license("9876543210", "KEY-1")
        self.assertEqual(result.reason, WRITE_DENIED_REASON)
        self.assertIsNone(self.db.get_setting(LOCAL_LICENSE_KEY))

    def test_other_bind_failure(self):
        error = LicenseStoreError("FAILED_PRECONDITION: the stored version does not match",
                                  "FAILED_PRECONDITION", 400)
        store = FakeStore({"9876543210": LicenseRecord("KEY-1")}, update_error=error)
        result = self.service(store).validate_and_bind_license("9876543210", "KEY-1")
        self.assertEqual(result.reason, "Failed to bind device: "
                                        "FAILED_PRECONDITION: the stored version does not match")

    def test_never_raises(self):
        store = FakeStore(get_error=RuntimeError("socket closed"))
        result = self.service(store).validate_and_bind_license("9876543210", "KEY-1")
        self.assertEqual((result.ok, result.reason), (False, "socket closed"))

    def test_activation_then_status(self):
        store = FakeStore({"9876543210": LicenseRecord("KEY-1")})
        svc = self.service(store)
        self.assertTrue(svc.validate_and_bind_license("9876543210", "KEY-1").ok)
        self.assertTrue(svc.check_license_status().ok)
        other = self.service(store, device_id="device-B")
        self.assertEqual(other.check_license_status().reason, "Device mismatch")

    def test_clear_local(self):
        self.cache()
        svc = self.service(ForbiddenStore())
        svc.clear_local()
        self.assertIsNone(svc.get_local())

    def test_store_factory_runs_once_on_first_remote_call(self):
        built = []
        store = FakeStore({"9876543210": LicenseRecord("KEY-1")})

        def factory():
            built.append(1)
            return store

        svc = self.service(factory)
        self.assertEqual(svc.check_license_status().reason, "No license saved")
        self.assertEqual(built, [])
        self.assertTrue(svc.validate_and_bind_license("9876543210", "KEY-1").ok)
        self.assertTrue(svc.check_license_status().ok)
        self.assertEqual(built, [1])

    def test_store_factory_failure_becomes_reason(self):
        def factory():
            raise ValueError("A Firestore project id is required for license checks.")

        result = self.service(factory).validate_and_bind_license("9876543210", "KEY-1")
        self.assertEqual((result.ok, result.reason),
                         (False, "A Firestore project id is required for license checks."))


class DeviceIdentityProviderTest(unittest.TestCase):
    def setUp(self):
        self.db = Database(":memory:")

    def tearDown(self):
        self.db.close()

    def test_generated_id_is_persisted_and_stable(self):
        provider = DeviceIdentityProvider(self.db, machine_id_paths=("/nonexistent/machine-id",))
        first = provider.ensure_device_id()
        self.assertTrue(first.startswith("dev_"))
        self.assertEqual(self.db.get_setting(DEVICE_ID_KEY), first)
        again = DeviceIdentityProvider(self.db, machine_id_paths=())
        self.assertEqual(again.ensure_device_id(), first)

    def test_machine_id_preferred(self):
        with tempfile.NamedTemporaryFile("w", delete=False) as f:
            f.write("abc123\n")
        try:
            provider = DeviceIdentityProvider(self.db, machine_id_paths=(f.name,))
            self.assertEqual(provider.ensure_device_id(), "abc123")
            self.assertIsNone(self.db.get_setting(DEVICE_ID_KEY))
        finally:
            os.unlink(f.name)


class IsExpiredTest(unittest.TestCase):
    def test_formats(self):
        self.assertFalse(is_expired(None, NOW))
        self.assertFalse(is_expired("", NOW))
        self.assertTrue(is_expired("2025-06-01T11:59:59Z", NOW))
        self.assertFalse(is_expired("2025-06-01T12:00:01+00:00", NOW))
        self.assertTrue(is_expired("2025-01-01", NOW))
        self.assertFalse(is_expired("2026-01-01", NOW))

    def test_fractional_seconds_of_any_precision(self):
        self.assertTrue(is_expired("2025-06-01T11:59:59.123456789Z", NOW))
        self.assertFalse(is_expired("2025-06-01T12:00:00.5Z", NOW))
        self.assertTrue(is_expired("2025-06-01T11:59:59.123Z", NOW))

    def test_nanosecond_expiry_rejects_status(self):
        db = Database(":memory:")
        try:
            db.set_setting(LOCAL_LICENSE_KEY, LocalLicenseInfo("9876543210", "KEY-1").to_json())
            store = FakeStore({"9876543210": LicenseRecord(
                "KEY-1", "device-A", "2025-05-31T00:00:00.000000001Z")})
            svc = LicenseService(store, db, FixedDevice(db), clock=lambda: NOW)
            self.assertEqual(svc.check_license_status().reason, "License expired")
        finally:
            db.close()

    def test_unparseable_is_not_expired(self):
        self.assertFalse(is_expired("next tuesday", NOW))


if __name__ == "__main__":
    unittest.main()
