"""Password-derived encryption for OAuth tokens held at rest.

Inactive OAuth tokens are stored encrypted with a key derived from the admin
password hash.  Each call to :func:`encrypt` draws a fresh salt and IV, runs
PBKDF2-HMAC-SHA256 over ``(password_hash, salt)`` and seals the plaintext with
AES-256-GCM.  The persisted envelope is::

    {"data": base64(salt || tag || ciphertext), "iv": base64(iv)}

which is the layout earlier releases wrote to ``keys.json``, so existing
files remain readable.

In memory, secrets are carried as the tagged :data:`Secret` variant
(:class:`PlainSecret` or :class:`EncryptedSecret`).  Structural sniffing of
JSON values only happens at the persistence boundary via
:func:`secret_from_json`.
"""

from __future__ import annotations

import base64
import binascii
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from keygate.errors import DecryptionError

SALT_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
PBKDF2_ITERATIONS = 100_000


@dataclass(frozen=True)
class EncryptedBlob:
    """Base64 encoded ciphertext envelope."""

    data: str
    iv: str

    def to_json(self) -> Dict[str, str]:
        return {"data": self.data, "iv": self.iv}


@dataclass(frozen=True)
class PlainSecret:
    value: str


@dataclass(frozen=True)
class EncryptedSecret:
    blob: EncryptedBlob


Secret = Union[PlainSecret, EncryptedSecret]


def _derive_key(password_hash: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(password_hash.encode("utf-8"))


def encrypt(plaintext: str, password_hash: str) -> EncryptedBlob:
    """Encrypt *plaintext* with a key derived from *password_hash*."""

    if not password_hash:
        raise ValueError("password hash must not be empty")
    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    key = _derive_key(password_hash, salt)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    combined = salt + tag + ciphertext
    return EncryptedBlob(
        data=base64.b64encode(combined).decode("ascii"),
        iv=base64.b64encode(iv).decode("ascii"),
    )


def decrypt(blob: EncryptedBlob, password_hash: str) -> str:
    """Return the plaintext sealed in *blob*.

    Raises :class:`DecryptionError` when the envelope is malformed, the tag
    does not verify or *password_hash* is not the one used to encrypt.
    """

    try:
        combined = base64.b64decode(blob.data.encode("ascii"), validate=True)
        iv = base64.b64decode(blob.iv.encode("ascii"), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError("Encrypted token contained invalid base64") from exc

    if len(combined) < SALT_LENGTH + TAG_LENGTH or len(iv) != IV_LENGTH:
        raise DecryptionError("Encrypted token envelope is truncated")

    salt = combined[:SALT_LENGTH]
    tag = combined[SALT_LENGTH : SALT_LENGTH + TAG_LENGTH]
    ciphertext = combined[SALT_LENGTH + TAG_LENGTH :]
    key = _derive_key(password_hash, salt)
    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as exc:
        raise DecryptionError("Encrypted token could not be decrypted") from exc
    return plaintext.decode("utf-8")


def is_encrypted(value: Any) -> bool:
    """Return ``True`` when *value* has the persisted envelope shape."""

    if isinstance(value, EncryptedBlob):
        return True
    return (
        isinstance(value, Mapping)
        and isinstance(value.get("data"), str)
        and isinstance(value.get("iv"), str)
    )


def secret_from_json(value: Any) -> Secret:
    """Convert a persisted ``oauthToken`` value into a :data:`Secret`."""

    if isinstance(value, str):
        return PlainSecret(value)
    if is_encrypted(value):
        return EncryptedSecret(EncryptedBlob(data=value["data"], iv=value["iv"]))
    raise ValueError("oauthToken must be a string or an encrypted envelope")


def secret_to_json(secret: Secret) -> Union[str, Dict[str, str]]:
    if isinstance(secret, PlainSecret):
        return secret.value
    return secret.blob.to_json()


def seal(secret: Secret, password_hash: str) -> EncryptedSecret:
    """Return *secret* in encrypted form, encrypting plaintext if required."""

    if isinstance(secret, EncryptedSecret):
        return secret
    return EncryptedSecret(encrypt(secret.value, password_hash))


def unseal(secret: Secret, password_hash: str) -> PlainSecret:
    """Return *secret* in plaintext form, decrypting if required."""

    if isinstance(secret, PlainSecret):
        return secret
    return PlainSecret(decrypt(secret.blob, password_hash))


__all__ = [
    "EncryptedBlob",
    "EncryptedSecret",
    "PlainSecret",
    "Secret",
    "decrypt",
    "encrypt",
    "is_encrypted",
    "seal",
    "secret_from_json",
    "secret_to_json",
    "unseal",
]
