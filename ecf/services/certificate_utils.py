"""
Certificate utilities for e-CF signing.
Opens PKCS#12 bundles issued by the certification authority and extracts
PEM certificate / private key plus descriptive metadata.
"""

from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from ecf.errors import InvalidCertificateBundle


def load_pkcs12_bundle(bundle: bytes, passphrase: str | None) -> tuple[bytes, bytes]:
    """
    Open a PKCS#12 (.p12/.pfx) bundle.

    Args:
        bundle: Raw bundle bytes.
        passphrase: Import passphrase set by the certification authority.

    Returns:
        tuple: (certificate_pem, private_key_pem) as bytes. The key is unencrypted PKCS8;
        callers must hand it straight to the vault.

    Raises:
        InvalidCertificateBundle: wrong passphrase, malformed bundle, or missing key/certificate.
    """
    if not bundle:
        raise InvalidCertificateBundle("Empty certificate bundle")
    password = passphrase.encode() if passphrase else None
    try:
        private_key, certificate, _chain = pkcs12.load_key_and_certificates(bundle, password)
    except (ValueError, TypeError) as e:
        raise InvalidCertificateBundle(f"Cannot open PKCS#12 bundle: {e}") from e
    if private_key is None or certificate is None:
        raise InvalidCertificateBundle("PKCS#12 bundle must contain a private key and a certificate")
    if not isinstance(private_key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        raise InvalidCertificateBundle("Unsupported key type (RSA or EC required)")

    certificate_pem = certificate.public_bytes(serialization.Encoding.PEM)
    private_key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return certificate_pem, private_key_pem


def describe_certificate(certificate_pem: bytes | str) -> dict:
    """Return non-sensitive metadata: issuer, subject, serial_number, valid_from, valid_until."""
    if isinstance(certificate_pem, str):
        certificate_pem = certificate_pem.encode()
    cert = x509.load_pem_x509_certificate(certificate_pem)
    return {
        "issuer": cert.issuer.rfc4514_string(),
        "subject": cert.subject.rfc4514_string(),
        "serial_number": format(cert.serial_number, "x"),
        "valid_from": cert.not_valid_before_utc,
        "valid_until": cert.not_valid_after_utc,
    }


def generate_self_signed_certificate(
    common_name: str,
    fiscal_id: str,
    key_type: str = "RSA",
    days: int = 365,
) -> tuple[bytes, bytes]:
    """
    Generate a self-signed certificate for sandbox signing.

    Returns:
        tuple: (certificate_pem, private_key_pem) as bytes
    """
    if key_type == "EC":
        private_key = ec.generate_private_key(ec.SECP256R1())
    else:
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name(
        [
            x509.NameAttribute(NameOID.COUNTRY_NAME, "DO"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, common_name),
            x509.NameAttribute(NameOID.SERIAL_NUMBER, fiscal_id),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ]
    )
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(days=days))
        .sign(private_key, hashes.SHA256())
    )
    certificate_pem = cert.public_bytes(serialization.Encoding.PEM)
    private_key_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return certificate_pem, private_key_pem


def build_pkcs12_bundle(certificate_pem: bytes, private_key_pem: bytes, passphrase: str, name: str = "ecf") -> bytes:
    """Package a certificate and key as a PKCS#12 bundle protected by passphrase."""
    cert = x509.load_pem_x509_certificate(certificate_pem)
    key = serialization.load_pem_private_key(private_key_pem, password=None)
    return pkcs12.serialize_key_and_certificates(
        name.encode(),
        key,
        cert,
        None,
        serialization.BestAvailableEncryption(passphrase.encode()),
    )
