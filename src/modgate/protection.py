"""Encrypt-at-rest for private key material.

Tokens produced by a protector carry a versioned scope prefix::

    modgate-protected:{scope}:v1:{base64url payload}

so a value protected for one purpose cannot be unprotected for another, and a
reader can tell protected values from anything else.  ``unprotect`` returns
``None`` for anything it cannot decrypt; callers holding key material must
treat that as fatal.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from typing import Protocol

import keyring
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from keyring.backends import fail
from keyring.errors import KeyringError

logger = logging.getLogger(__name__)

PROTECTED_PREFIX = "modgate-protected"
_NONCE_BYTES = 12
_MASTER_KEY_ENTRY = "master-key"


class ProtectedStorageUnavailableError(RuntimeError):
    """Raised when no OS-backed secret store is available to protect key material."""


class SecretProtector(Protocol):
    def protect(self, scope: str, plaintext: str) -> str: ...

    def unprotect(self, scope: str, token: str) -> str | None: ...


def prefix_for_scope(scope: str) -> str:
    if not scope or ":" in scope:
        raise ValueError(f"protection scope must be non-empty and contain no ':': {scope!r}")
    return f"{PROTECTED_PREFIX}:{scope}:v1:"


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


class AesGcmSecretProtector:
    """AES-256-GCM protector over a caller-supplied master key.

    The scope string is bound as associated data.  This class holds no
    opinion about where the master key lives; :class:`KeyringSecretProtector`
    keeps it in the OS keyring.
    """

    def __init__(self, master_key: bytes) -> None:
        if len(master_key) != 32:
            raise ValueError("master key must be 32 bytes")
        self._aead = AESGCM(master_key)

    def protect(self, scope: str, plaintext: str) -> str:
        prefix = prefix_for_scope(scope)
        nonce = os.urandom(_NONCE_BYTES)
        ciphertext = self._aead.encrypt(nonce, plaintext.encode("utf-8"), scope.encode("utf-8"))
        return prefix + _b64url_encode(nonce + ciphertext)

    def unprotect(self, scope: str, token: str) -> str | None:
        if not isinstance(token, str):
            return None
        prefix = prefix_for_scope(scope)
        if not token.startswith(prefix):
            return None
        encoded = token[len(prefix):]
        if not encoded:
            return None
        try:
            payload = _b64url_decode(encoded)
        except (binascii.Error, ValueError):
            return None
        if len(payload) <= _NONCE_BYTES:
            return None
        nonce, ciphertext = payload[:_NONCE_BYTES], payload[_NONCE_BYTES:]
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext, scope.encode("utf-8"))
        except InvalidTag:
            return None
        return plaintext.decode("utf-8")


class KeyringSecretProtector:
    """Protector whose master key lives in the operating system keyring.

    The master key is created on first use and cached for the lifetime of the
    instance.  If the active keyring backend cannot store secrets, every
    operation raises :class:`ProtectedStorageUnavailableError`; nothing is
    ever written in plaintext.
    """

    def __init__(self, service: str = "modgate") -> None:
        self.service = service
        self._inner: AesGcmSecretProtector | None = None

    def _backend_available(self) -> bool:
        backend = keyring.get_keyring()
        return not isinstance(backend, fail.Keyring)

    def _protector(self) -> AesGcmSecretProtector:
        if self._inner is not None:
            return self._inner
        if not self._backend_available():
            raise ProtectedStorageUnavailableError(
                "OS protected storage is unavailable: no usable keyring backend is configured."
            )
        try:
            stored = keyring.get_password(self.service, _MASTER_KEY_ENTRY)
            if stored is None:
                master_key = AESGCM.generate_key(bit_length=256)
                keyring.set_password(self.service, _MASTER_KEY_ENTRY, _b64url_encode(master_key))
                logger.info("Created protected-storage master key in keyring service %s", self.service)
            else:
                master_key = _b64url_decode(stored)
            inner = AesGcmSecretProtector(master_key)
        except KeyringError as exc:
            raise ProtectedStorageUnavailableError(f"OS protected storage failed: {exc}") from exc
        except (binascii.Error, ValueError) as exc:
            raise ProtectedStorageUnavailableError(
                f"Master key in keyring service {self.service} is corrupt"
            ) from exc
        self._inner = inner
        return inner

    def protect(self, scope: str, plaintext: str) -> str:
        return self._protector().protect(scope, plaintext)

    def unprotect(self, scope: str, token: str) -> str | None:
        return self._protector().unprotect(scope, token)
