from __future__ import annotations

import base64
import binascii
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from tenantvault.core.errors import (
    BackupAuthenticationError,
    InvalidEncryptionMetadataError,
    PasswordRequiredError,
)


SALT_BYTES = 16
NONCE_BYTES = 12
TAG_BYTES = 16
KEY_BYTES = 32
# scrypt cost parameters; changing them breaks decryption of existing backups.
SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1


@dataclass(frozen=True)
class EncryptedPayload:
    ciphertext: bytes
    # base64(salt || nonce); stored on the backup record, never inside the blob.
    iv: str
    auth_tag: str


def _derive_key(password: str, salt: bytes) -> bytes:
    kdf = Scrypt(salt=salt, length=KEY_BYTES, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(password.encode("utf-8"))


def _b64decode(value: str, *, field_name: str) -> bytes:
    try:
        return base64.b64decode(value.encode("ascii"), validate=True)
    except (binascii.Error, ValueError, UnicodeEncodeError) as exc:
        raise InvalidEncryptionMetadataError(f"{field_name} is not valid base64") from exc


def encrypt_buffer(plaintext: bytes, password: str) -> EncryptedPayload:
    # Derive a per-backup key from a fresh salt so identical passwords never share keys.
    if not password:
        raise PasswordRequiredError("Password is required for encrypted backups")
    salt = os.urandom(SALT_BYTES)
    nonce = os.urandom(NONCE_BYTES)
    key = _derive_key(password, salt)
    sealed = AESGCM(key).encrypt(nonce, plaintext, None)
    ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
    return EncryptedPayload(
        ciphertext=ciphertext,
        iv=base64.b64encode(salt + nonce).decode("ascii"),
        auth_tag=base64.b64encode(tag).decode("ascii"),
    )


def decrypt_buffer(ciphertext: bytes, password: str, iv: str, auth_tag: str) -> bytes:
    # Verify the GCM tag before returning anything; garbage plaintext is never surfaced.
    if not password:
        raise PasswordRequiredError("Password is required to decrypt this backup")
    if not iv or not auth_tag:
        raise InvalidEncryptionMetadataError("Backup encryption metadata is missing")
    salt_and_nonce = _b64decode(iv, field_name="iv")
    tag = _b64decode(auth_tag, field_name="auth_tag")
    if len(salt_and_nonce) != SALT_BYTES + NONCE_BYTES or len(tag) != TAG_BYTES:
        raise InvalidEncryptionMetadataError("Backup encryption metadata is corrupted")
    salt, nonce = salt_and_nonce[:SALT_BYTES], salt_and_nonce[SALT_BYTES:]
    key = _derive_key(password, salt)
    try:
        return AESGCM(key).decrypt(nonce, ciphertext + tag, None)
    except InvalidTag as exc:
        raise BackupAuthenticationError() from exc
