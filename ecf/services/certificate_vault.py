"""
Certificate vault: encrypted-at-rest storage for the company signing certificate and key.

Each blob is encrypted independently with AES-256-GCM under a key derived from the
operator passphrase (PBKDF2-HMAC-SHA256, per-blob random salt). Stored format,
base64-encoded:

    version (1 byte) | salt (16) | nonce (12) | ciphertext + tag

Decrypted material only exists inside an unlock() block, in bytearrays that are
zeroed on every exit path.
"""

import base64
import binascii
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from django.core.exceptions import PermissionDenied
from django.db import transaction

from ecf.errors import CertificateNotFound, InvalidPassphrase, VaultCorrupted
from ecf.models import SigningCertificate

logger = logging.getLogger("ecf")

AES_KEY_SIZE = 32
NONCE_SIZE = 12
SALT_SIZE = 16
AUTH_TAG_SIZE = 16
PBKDF2_ITERATIONS = 310_000
VERSION_AES256_GCM = b"\x01"

_HEADER_SIZE = len(VERSION_AES256_GCM) + SALT_SIZE + NONCE_SIZE
DELETE_PERMISSION = "ecf.delete_signingcertificate"


@dataclass
class UnlockedCertificate:
    """Decrypted PEM material. Valid only inside the unlock() block."""

    certificate: bytearray
    private_key: bytearray

    def wipe(self) -> None:
        _zero(self.certificate)
        _zero(self.private_key)


def _zero(buf: bytearray) -> None:
    for i in range(len(buf)):
        buf[i] = 0


def _derive_key(passphrase: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=AES_KEY_SIZE,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def encrypt_blob(plaintext: bytes, passphrase: str) -> str:
    salt = os.urandom(SALT_SIZE)
    nonce = os.urandom(NONCE_SIZE)
    ciphertext = AESGCM(_derive_key(passphrase, salt)).encrypt(nonce, bytes(plaintext), None)
    return base64.b64encode(VERSION_AES256_GCM + salt + nonce + ciphertext).decode("ascii")


def decrypt_blob(blob: str, passphrase: str) -> bytearray:
    """
    Decrypt a stored blob into a bytearray the caller must zero.
    Raises VaultCorrupted on a malformed blob and InvalidPassphrase on tag mismatch.
    """
    try:
        raw = base64.b64decode(blob.encode("ascii"), validate=True)
    except (binascii.Error, ValueError, AttributeError) as e:
        raise VaultCorrupted("Vault entry is not valid base64") from e
    if len(raw) < _HEADER_SIZE + AUTH_TAG_SIZE:
        raise VaultCorrupted("Vault entry is truncated")
    if raw[:1] != VERSION_AES256_GCM:
        raise VaultCorrupted(f"Unknown vault entry version {raw[0]}")
    salt = raw[1:1 + SALT_SIZE]
    nonce = raw[1 + SALT_SIZE:_HEADER_SIZE]
    try:
        return bytearray(AESGCM(_derive_key(passphrase, salt)).decrypt(nonce, raw[_HEADER_SIZE:], None))
    except InvalidTag as e:
        raise InvalidPassphrase("Passphrase does not decrypt the vault entry") from e


@transaction.atomic
def store(cert_bytes: bytes, key_bytes: bytes, passphrase: str, metadata: dict | None = None) -> SigningCertificate:
    """Encrypt and persist certificate + key, replacing any existing entry."""
    if not passphrase:
        raise ValueError("Vault passphrase must not be empty")
    if not cert_bytes or not key_bytes:
        raise ValueError("Certificate and private key are required")
    metadata = metadata or {}
    SigningCertificate.objects.all().delete()
    entry = SigningCertificate.objects.create(
        certificate_blob=encrypt_blob(cert_bytes, passphrase),
        private_key_blob=encrypt_blob(key_bytes, passphrase),
        issuer=metadata.get("issuer", ""),
        subject=metadata.get("subject", ""),
        serial_number=metadata.get("serial_number", ""),
        valid_from=metadata.get("valid_from"),
        valid_until=metadata.get("valid_until"),
    )
    logger.info("Signing certificate stored (serial %s)", entry.serial_number or "unknown")
    return entry


@contextmanager
def unlock(passphrase: str):
    """
    Yield an UnlockedCertificate for the stored entry.
    Both blobs must decrypt or nothing is returned; buffers are zeroed when the block exits.
    """
    entry = SigningCertificate.objects.first()
    if entry is None:
        raise CertificateNotFound("No signing certificate stored")
    if not passphrase:
        raise InvalidPassphrase("Vault passphrase is empty")

    certificate = decrypt_blob(entry.certificate_blob, passphrase)
    try:
        private_key = decrypt_blob(entry.private_key_blob, passphrase)
    except Exception:
        _zero(certificate)
        raise
    unlocked = UnlockedCertificate(certificate=certificate, private_key=private_key)
    try:
        yield unlocked
    finally:
        unlocked.wipe()


def exists() -> bool:
    return SigningCertificate.objects.exists()


def metadata() -> dict | None:
    entry = SigningCertificate.objects.first()
    if entry is None:
        return None
    return {
        "issuer": entry.issuer,
        "subject": entry.subject,
        "serial_number": entry.serial_number,
        "valid_from": entry.valid_from,
        "valid_until": entry.valid_until,
        "created_at": entry.created_at,
    }


def delete(authorized_by) -> None:
    """Remove the stored certificate. Requires a superuser or the delete permission."""
    has_perm = getattr(authorized_by, "has_perm", None)
    if authorized_by is None or not (
        getattr(authorized_by, "is_superuser", False) or (callable(has_perm) and has_perm(DELETE_PERMISSION))
    ):
        raise PermissionDenied("Deleting the signing certificate requires elevated permission")
    deleted, _ = SigningCertificate.objects.all().delete()
    logger.warning(
        "Signing certificate deleted by %s (%d row(s))",
        getattr(authorized_by, "username", authorized_by), deleted,
    )
