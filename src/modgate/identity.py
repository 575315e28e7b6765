"""Per-installation device identity.

The identity is a stable random device id plus an Ed25519 key pair, persisted
in ``device.json``.  The private key is only ever written after passing
through a :class:`~modgate.protection.SecretProtector`.  A record that exists
but cannot be parsed or decrypted is a hard error: regenerating silently would
orphan every signature made with the old key.
"""

from __future__ import annotations

import base64
import binascii
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from .protection import SecretProtector
from .state_store import atomic_write_text, locked_file, safe_read_json

logger = logging.getLogger(__name__)

DEVICE_FILE = "device.json"
DEVICE_KEY_SCOPE = "device-key"


class IdentityError(RuntimeError):
    """Raised when a persisted device identity is missing fields, corrupt, or undecryptable."""


@dataclass(frozen=True)
class DeviceIdentity:
    device_id: str
    public_key: str
    private_key: str


class _StoredDeviceRecord(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    device_id: str
    public_key: str | None = None
    private_key: str | None = None


def _generate_key_pair() -> tuple[str, str]:
    private_key = Ed25519PrivateKey.generate()
    public_der = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    private_der = private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return base64.b64encode(public_der).decode("ascii"), base64.b64encode(private_der).decode("ascii")


def _load_private_key(private_key_b64: str) -> Ed25519PrivateKey:
    key = serialization.load_der_private_key(base64.b64decode(private_key_b64, validate=True), password=None)
    if not isinstance(key, Ed25519PrivateKey):
        raise ValueError("device private key is not an Ed25519 key")
    return key


def _public_key_b64(private_key: Ed25519PrivateKey) -> str:
    der = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return base64.b64encode(der).decode("ascii")


def get_device_record_path(state_path: Path) -> Path:
    return state_path / DEVICE_FILE


class DeviceIdentityStore:
    """Read-or-create store for the device identity record."""

    def __init__(self, path: Path, protector: SecretProtector) -> None:
        self.path = path
        self.protector = protector
        self._identity: DeviceIdentity | None = None

    def get_or_create(self) -> DeviceIdentity:
        """Return the device identity, creating it on first use.

        A legacy record carrying only a ``deviceId`` keeps its id and gains a
        fresh key pair.

        Raises:
            IdentityError: If the existing record is corrupt, incomplete, or
                its private key cannot be decrypted.
            ProtectedStorageUnavailableError: If the private key cannot be
                protected for writing.
        """
        if self._identity is not None:
            return self._identity
        with locked_file(self.path):
            if not self.path.exists():
                identity = self._create(str(uuid.uuid4()))
                logger.info("Created device identity %s", identity.device_id)
            else:
                stored = self._read()
                if stored.public_key is None and stored.private_key is None:
                    identity = self._create(stored.device_id)
                    logger.info("Upgraded device identity %s with a signing key pair", identity.device_id)
                else:
                    identity = self._unlock(stored)
        self._identity = identity
        return identity

    def get_or_create_device_id(self) -> str:
        return self.get_or_create().device_id

    def _read(self) -> _StoredDeviceRecord:
        try:
            text = safe_read_json(self.path, "device identity")
            stored = _StoredDeviceRecord.model_validate_json(text)
        except ValidationError as exc:
            raise IdentityError(f"device identity at {self.path} failed validation: {exc}") from exc
        except ValueError as exc:
            raise IdentityError(f"device identity at {self.path} is corrupt: {exc}") from exc
        if not stored.device_id.strip():
            raise IdentityError(f"device identity at {self.path} has an empty deviceId")
        return stored

    def _unlock(self, stored: _StoredDeviceRecord) -> DeviceIdentity:
        if not stored.public_key or not stored.private_key:
            raise IdentityError(f"device identity at {self.path} is missing half of its key pair")
        private_key = self.protector.unprotect(DEVICE_KEY_SCOPE, stored.private_key)
        if private_key is None:
            raise IdentityError(
                f"device private key at {self.path} could not be decrypted; refusing to regenerate it"
            )
        try:
            derived_public = _public_key_b64(_load_private_key(private_key))
        except (ValueError, TypeError, UnsupportedAlgorithm, binascii.Error) as exc:
            raise IdentityError(f"device private key at {self.path} is invalid") from exc
        if derived_public != stored.public_key:
            raise IdentityError(f"device identity at {self.path} has mismatched public and private keys")
        return DeviceIdentity(device_id=stored.device_id, public_key=stored.public_key, private_key=private_key)

    def _create(self, device_id: str) -> DeviceIdentity:
        public_key, private_key = _generate_key_pair()
        protected = self.protector.protect(DEVICE_KEY_SCOPE, private_key)
        record = _StoredDeviceRecord(device_id=device_id, public_key=public_key, private_key=protected)
        atomic_write_text(self.path, record.model_dump_json(indent=2, by_alias=True))
        return DeviceIdentity(device_id=device_id, public_key=public_key, private_key=private_key)


def heartbeat_payload(device_id: str, signed_at_ms: int) -> bytes:
    return f"{device_id}:{signed_at_ms}".encode("utf-8")


def sign_device_heartbeat(identity: DeviceIdentity, signed_at_ms: int) -> str:
    signature = _load_private_key(identity.private_key).sign(heartbeat_payload(identity.device_id, signed_at_ms))
    return base64.b64encode(signature).decode("ascii")


def verify_device_heartbeat(public_key: str, device_id: str, signed_at_ms: int, signature_b64: str) -> bool:
    try:
        key = serialization.load_der_public_key(base64.b64decode(public_key, validate=True))
        if not isinstance(key, Ed25519PublicKey):
            return False
        key.verify(base64.b64decode(signature_b64, validate=True), heartbeat_payload(device_id, signed_at_ms))
    except (InvalidSignature, UnsupportedAlgorithm, ValueError, TypeError, binascii.Error):
        return False
    return True
