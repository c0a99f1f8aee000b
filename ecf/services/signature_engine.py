"""
Reusable signature engine for e-CF (RSA / ECDSA, SHA-256).
Signature values use the XMLDSig encoding: PKCS#1 v1.5 for RSA, raw r||s for ECDSA.
"""

import base64
import hashlib

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)

RSA_SHA256 = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256"
ECDSA_SHA256 = "http://www.w3.org/2001/04/xmldsig-more#ecdsa-sha256"

_ALGORITHM_URIS = {"RSA": RSA_SHA256, "ECC": ECDSA_SHA256}


def sha256_b64(data: bytes) -> str:
    return base64.b64encode(hashlib.sha256(data).digest()).decode("ascii")


def _load_certificate(certificate_pem: str | bytes | bytearray) -> x509.Certificate:
    if isinstance(certificate_pem, str):
        certificate_pem = certificate_pem.encode()
    return x509.load_pem_x509_certificate(bytes(certificate_pem))


def _curve_size_bytes(key) -> int:
    return (key.curve.key_size + 7) // 8


class SignatureEngine:
    """Signature engine with automatic algorithm detection."""

    def __init__(self, certificate_pem: str | bytes | bytearray, private_key_pem: str | bytes | bytearray):
        if isinstance(private_key_pem, str):
            private_key_pem = private_key_pem.encode()

        self.certificate = _load_certificate(certificate_pem)
        self.private_key = serialization.load_pem_private_key(bytes(private_key_pem), password=None)
        if not _keys_match(self.certificate.public_key(), self.private_key.public_key()):
            raise ValueError("Private key does not match certificate")

    def detect_algorithm(self) -> str:
        pub = self.certificate.public_key()
        if isinstance(pub, ec.EllipticCurvePublicKey):
            return "ECC"
        if isinstance(pub, rsa.RSAPublicKey):
            return "RSA"
        raise ValueError("Unsupported key type")

    def algorithm_uri(self) -> str:
        return _ALGORITHM_URIS[self.detect_algorithm()]

    def certificate_b64(self) -> str:
        """DER certificate, base64, for X509Certificate."""
        der = self.certificate.public_bytes(serialization.Encoding.DER)
        return base64.b64encode(der).decode("ascii")

    def sign_bytes(self, data: bytes) -> bytes:
        if self.detect_algorithm() == "ECC":
            der = self.private_key.sign(data, ec.ECDSA(hashes.SHA256()))
            r, s = decode_dss_signature(der)
            size = _curve_size_bytes(self.private_key)
            return r.to_bytes(size, "big") + s.to_bytes(size, "big")
        return self.private_key.sign(data, padding.PKCS1v15(), hashes.SHA256())

    def sign(self, data: bytes) -> dict:
        signature = self.sign_bytes(data)
        return {
            "hash": sha256_b64(data),
            "signature": base64.b64encode(signature).decode("ascii"),
        }


def _keys_match(cert_public, key_public) -> bool:
    fmt = serialization.PublicFormat.SubjectPublicKeyInfo
    enc = serialization.Encoding.DER
    return cert_public.public_bytes(enc, fmt) == key_public.public_bytes(enc, fmt)


def verify_signature(certificate: x509.Certificate | str | bytes, data: bytes, signature: bytes) -> bool:
    """Verify an XMLDSig-encoded signature value. Returns False on any mismatch."""
    if not isinstance(certificate, x509.Certificate):
        certificate = _load_certificate(certificate)
    pub = certificate.public_key()
    try:
        if isinstance(pub, ec.EllipticCurvePublicKey):
            size = _curve_size_bytes(pub)
            if len(signature) != 2 * size:
                return False
            r = int.from_bytes(signature[:size], "big")
            s = int.from_bytes(signature[size:], "big")
            pub.verify(encode_dss_signature(r, s), data, ec.ECDSA(hashes.SHA256()))
        elif isinstance(pub, rsa.RSAPublicKey):
            pub.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
        else:
            return False
    except InvalidSignature:
        return False
    return True
