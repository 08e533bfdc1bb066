# license_store.py
import logging
from dataclasses import dataclass
from typing import Optional

import requests

logger = logging.getLogger("billing_app.license_store")

FIRESTORE_BASE = "https://firestore.googleapis.com/v1"


class LicenseStoreError(Exception):
    """Raised when the remote license store cannot be read or written."""
    def __init__(self, message: str, status: str = None, code: int = None):
        self.message = message
        self.status = status
        self.code = code
        super().__init__(self.message)

    @property
    def is_permission_error(self):
        text = f"{self.status or ''} {self.message}".lower()
        return "permission" in text or self.code == 403


@dataclass
class LicenseRecord:
    """
    Remote license document, keyed by vendor phone.
    update_time is the store's revision of the document, used to make the
    device binding conditional.
    """
    license_key: str
    device_id: Optional[str] = None
    expires_at: Optional[str] = None
    revoked: bool = False
    update_time: Optional[str] = None


class LicenseStore:
    """Interface of the authoritative license record store."""

    def get(self, vendor_phone: str) -> Optional[LicenseRecord]:
        raise NotImplementedError

    def update(self, vendor_phone: str, fields: dict, update_time: str = None):
        raise NotImplementedError

    def bind_device(self, vendor_phone: str, device_id: str, update_time: str = None):
        """Set device_id, only if the record is still at update_time when given."""
        self.update(vendor_phone, {'device_id': device_id}, update_time=update_time)


def _decode_value(value: dict):
    if 'nullValue' in value:
        return None
    if 'booleanValue' in value:
        return bool(value['booleanValue'])
    if 'integerValue' in value:
        return int(value['integerValue'])
    if 'doubleValue' in value:
        return float(value['doubleValue'])
    if 'timestampValue' in value:
        return value['timestampValue']
    return value.get('stringValue')


def _encode_value(value):
    if value is None:
        return {'nullValue': None}
    if isinstance(value, bool):
        return {'booleanValue': value}
    if isinstance(value, int):
        return {'integerValue': str(value)}
    if isinstance(value, float):
        return {'doubleValue': value}
    return {'stringValue': str(value)}


def _error_message_from_response(resp: requests.Response):
    """Return (message, status) from a Firestore error body."""
    try:
        err = resp.json().get('error', {})
        status = err.get('status')
        message = err.get('message') or resp.text
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}", None
    return (f"{status}: {message}" if status else message), status


class FirestoreLicenseStore(LicenseStore):
    """
    License records kept as Firestore documents in `collection`, one per
    vendor phone, accessed through the Firestore REST API.
    """
    def __init__(self, project_id: str, api_key: str = None, collection: str = "licenses",
                 timeout: float = 15, session: requests.Session = None):
        if not project_id:
            raise ValueError("A Firestore project id is required for license checks.")
        self.project_id = project_id
        self.api_key = api_key
        self.collection = collection
        self.timeout = timeout
        self.session = session or requests.Session()

    def _document_url(self, vendor_phone: str):
        return (f"{FIRESTORE_BASE}/projects/{self.project_id}/databases/(default)"
                f"/documents/{self.collection}/{vendor_phone}")

    def _params(self, extra=None):
        params = list(extra or [])
        if self.api_key:
            params.append(('key', self.api_key))
        return params

    def _send(self, method: str, url: str, params=None, json=None):
        try:
            resp = self.session.request(method, url, params=params, json=json,
                                        timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"License store {method} failed: {e}")
            raise LicenseStoreError(str(e) or "Network or permission error") from e
        return resp

    def get(self, vendor_phone: str) -> Optional[LicenseRecord]:
        resp = self._send("GET", self._document_url(vendor_phone), params=self._params())
        if resp.status_code == 404:
            return None
        if not resp.ok:
            message, status = _error_message_from_response(resp)
            raise LicenseStoreError(message, status, resp.status_code)

        doc = resp.json()
        fields = {k: _decode_value(v) for k, v in doc.get('fields', {}).items()}
        return LicenseRecord(
            license_key=fields.get('license_key') or "",
            device_id=fields.get('device_id'),
            expires_at=fields.get('expires_at'),
            revoked=bool(fields.get('revoked')),
            update_time=doc.get('updateTime'),
        )

    def update(self, vendor_phone: str, fields: dict, update_time: str = None):
        """Patch only the given fields of an existing document."""
        params = [('updateMask.fieldPaths', name) for name in fields]
        if update_time:
            params.append(('currentDocument.updateTime', update_time))
        else:
            params.append(('currentDocument.exists', 'true'))
        body = {'fields': {k: _encode_value(v) for k, v in fields.items()}}

        resp = self._send("PATCH", self._document_url(vendor_phone),
                          params=self._params(params), json=body)
        if not resp.ok:
            message, status = _error_message_from_response(resp)
            raise LicenseStoreError(message, status, resp.status_code)
        logger.info(f"Updated license fields {sorted(fields)} for {vendor_phone}")
