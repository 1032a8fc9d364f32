from __future__ import annotations

import base64

import pytest

from tenantvault.core.errors import (
    BackupAuthenticationError,
    InvalidEncryptionMetadataError,
    PasswordRequiredError,
)
from tenantvault.services.backup.crypto import (
    NONCE_BYTES,
    SALT_BYTES,
    TAG_BYTES,
    decrypt_buffer,
    encrypt_buffer,
)


def test_encrypt_decrypt_roundtrip() -> None:
    # The envelope must return the exact plaintext for the right password.
    plaintext = b"PK\x03\x04 organization archive"
    sealed = encrypt_buffer(plaintext, "correct horse")
    assert sealed.ciphertext != plaintext
    assert len(sealed.ciphertext) == len(plaintext)
    assert len(base64.b64decode(sealed.iv)) == SALT_BYTES + NONCE_BYTES
    assert len(base64.b64decode(sealed.auth_tag)) == TAG_BYTES
    assert decrypt_buffer(sealed.ciphertext, "correct horse", sealed.iv, sealed.auth_tag) == plaintext


def test_same_password_produces_different_envelopes() -> None:
    first = encrypt_buffer(b"same", "pw")
    second = encrypt_buffer(b"same", "pw")
    assert first.iv != second.iv
    assert first.ciphertext != second.ciphertext


def test_wrong_password_fails_authentication() -> None:
    sealed = encrypt_buffer(b"secret rows", "right")
    with pytest.raises(BackupAuthenticationError) as excinfo:
        decrypt_buffer(sealed.ciphertext, "wrong", sealed.iv, sealed.auth_tag)
    assert str(excinfo.value) == "Incorrect password"


def test_tampered_ciphertext_fails_authentication() -> None:
    sealed = encrypt_buffer(b"secret rows", "right")
    tampered = bytes([sealed.ciphertext[0] ^ 0x01]) + sealed.ciphertext[1:]
    with pytest.raises(BackupAuthenticationError):
        decrypt_buffer(tampered, "right", sealed.iv, sealed.auth_tag)


def test_empty_password_is_rejected() -> None:
    with pytest.raises(PasswordRequiredError):
        encrypt_buffer(b"data", "")
    sealed = encrypt_buffer(b"data", "pw")
    with pytest.raises(PasswordRequiredError):
        decrypt_buffer(sealed.ciphertext, "", sealed.iv, sealed.auth_tag)


@pytest.mark.parametrize(
    ("iv", "auth_tag"),
    [
        ("", "AAAA"),
        ("not base64!!", base64.b64encode(b"t" * TAG_BYTES).decode()),
        (base64.b64encode(b"short").decode(), base64.b64encode(b"t" * TAG_BYTES).decode()),
    ],
)
def test_malformed_envelope_metadata(iv: str, auth_tag: str) -> None:
    with pytest.raises(InvalidEncryptionMetadataError):
        decrypt_buffer(b"ciphertext", "pw", iv, auth_tag)
