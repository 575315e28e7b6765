from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .canonical import CanonicalHash, hash_canonical_json
from .protection import SecretProtector
from .state_store import atomic_write_text, locked_file, now_ms, safe_read_json

logger = logging.getLogger(__name__)

SIGNING_KEY_SCOPE = "signing-key"


class SigningKeyError(RuntimeError):
    """Raised when the persisted signing key cannot be trusted or recovered."""


@dataclass(frozen=True)
class SigningKeyRecord:
    public_key_pem: str
    private_key_pem: str
    created_at: int


@dataclass(frozen=True)
class SignedRecord:
    hash: CanonicalHash
    signature: str


class _StoredSigningKey(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    public_key_pem: str = Field(min_length=1)
    private_key_pem: str = Field(min_length=1)
    created_at: int


# ---------------------------------------------------------------------------
# Primitives
# ---------------------------------------------------------------------------

def _digest_bytes(hash_hex: str) -> bytes:
    if not hash_hex:
        raise ValueError("hash_hex must be non-empty")
    try:
        return bytes.fromhex(hash_hex)
    except ValueError as exc:
        raise ValueError(f"hash_hex must be a hex string: {hash_hex!r:.80}") from exc


def create_signing_keys() -> SigningKeyRecord:
    private_key = Ed25519PrivateKey.generate()
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
    return SigningKeyRecord(public_key_pem=public_pem, private_key_pem=private_pem, created_at=now_ms())


def load_private_key(private_key_pem: str) -> Ed25519PrivateKey:
    key = serialization.load_pem_private_key(private_key_pem.encode("ascii"), password=None)
    if not isinstance(key, Ed25519PrivateKey):
        raise ValueError("private key is not an Ed25519 key")
    return key


def public_key_pem_for(private_key: Ed25519PrivateKey) -> str:
    return private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


def sign_hash(private_key_pem: str, hash_hex: str) -> str:
    """Sign the raw digest bytes of *hash_hex* and return a base64 signature.

    Raises:
        ValueError: If *hash_hex* is not hex or the key is not an Ed25519 PEM key.
    """
    digest = _digest_bytes(hash_hex)
    signature = load_private_key(private_key_pem).sign(digest)
    return base64.b64encode(signature).decode("ascii")


def verify_signature(public_key_pem: str, hash_hex: str, signature_b64: str) -> bool:
    """Return True iff *signature_b64* is a valid signature of *hash_hex*.

    A malformed signature, a malformed or mismatched key, or a non-Ed25519 key
    all yield ``False``.  Only a non-hex *hash_hex* raises, since that is a
    caller bug rather than untrusted input.
    """
    digest = _digest_bytes(hash_hex)
    try:
        public_key = serialization.load_pem_public_key(public_key_pem.encode("ascii"))
        if not isinstance(public_key, Ed25519PublicKey):
            return False
        signature = base64.b64decode(signature_b64, validate=True)
        public_key.verify(signature, digest)
    except (InvalidSignature, UnsupportedAlgorithm, ValueError, TypeError, binascii.Error):
        return False
    return True


def sign_record(private_key_pem: str, record: Any) -> SignedRecord:
    canonical_hash = hash_canonical_json(record)
    return SignedRecord(hash=canonical_hash, signature=sign_hash(private_key_pem, canonical_hash.hash_hex))


def verify_record(public_key_pem: str, record: Any, signature_b64: str) -> bool:
    return verify_signature(public_key_pem, hash_canonical_json(record).hash_hex, signature_b64)


# ---------------------------------------------------------------------------
# SigningKeyStore
# ---------------------------------------------------------------------------

class SigningKeyStore:
    """Read-or-create holder of the installation's signing key pair.

    One instance is opened at startup and passed to whatever needs to sign.
    Creation runs under an exclusive file lock so two first launches cannot
    both generate a key.  The private key is written only in protected form.
    """

    def __init__(self, path: Path, protector: SecretProtector) -> None:
        self.path = path
        self.protector = protector
        self._record: SigningKeyRecord | None = None

    def ensure_signing_keys(self) -> SigningKeyRecord:
        """Return the persisted key pair, creating and persisting it on first use.

        Raises:
            SigningKeyError: If an existing record is corrupt or cannot be decrypted.
            ProtectedStorageUnavailableError: If no protector can encrypt the new key.
        """
        if self._record is not None:
            return self._record
        with locked_file(self.path):
            if self.path.exists():
                record = self._load()
            else:
                record = create_signing_keys()
                self._persist(record)
                logger.info("Created signing key at %s", self.path)
        self._record = record
        return record

    def _persist(self, record: SigningKeyRecord) -> None:
        protected = self.protector.protect(SIGNING_KEY_SCOPE, record.private_key_pem)
        stored = _StoredSigningKey(
            public_key_pem=record.public_key_pem,
            private_key_pem=protected,
            created_at=record.created_at,
        )
        atomic_write_text(self.path, stored.model_dump_json(indent=2, by_alias=True))

    def _load(self) -> SigningKeyRecord:
        try:
            text = safe_read_json(self.path, "signing key")
            stored = _StoredSigningKey.model_validate_json(text)
        except ValidationError as exc:
            raise SigningKeyError(f"signing key record at {self.path} failed validation: {exc}") from exc
        except ValueError as exc:
            raise SigningKeyError(f"signing key record at {self.path} is corrupt: {exc}") from exc

        private_pem = self.protector.unprotect(SIGNING_KEY_SCOPE, stored.private_key_pem)
        if private_pem is None:
            raise SigningKeyError(
                f"signing key at {self.path} could not be decrypted; refusing to regenerate it"
            )
        try:
            derived_public = public_key_pem_for(load_private_key(private_pem))
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise SigningKeyError(f"signing key at {self.path} holds an invalid private key") from exc
        if derived_public.strip() != stored.public_key_pem.strip():
            raise SigningKeyError(f"signing key at {self.path} has mismatched public and private keys")
        return SigningKeyRecord(
            public_key_pem=stored.public_key_pem,
            private_key_pem=private_pem,
            created_at=stored.created_at,
        )

    def sign(self, hash_hex: str) -> str:
        return sign_hash(self.ensure_signing_keys().private_key_pem, hash_hex)
