"""
Enveloped XMLDSig signing of canonical e-CF documents.

The ds:Signature block is spliced in as the last child of the root element, so
every byte outside the block is identical to the canonical input. verify()
excises the block and digests the exact remaining bytes.
"""

import base64
import logging
from dataclasses import dataclass

from lxml import etree

from ecf.errors import SigningError
from ecf.services.signature_engine import SignatureEngine, sha256_b64, verify_signature

logger = logging.getLogger("ecf")

DS_NAMESPACE = "http://www.w3.org/2000/09/xmldsig#"
EXC_C14N = "http://www.w3.org/2001/10/xml-exc-c14n#"
ENVELOPED = "http://www.w3.org/2000/09/xmldsig#enveloped-signature"
SHA256 = "http://www.w3.org/2001/04/xmlenc#sha256"

_SIGNATURE_OPEN = b"<ds:Signature"
_SIGNATURE_CLOSE = b"</ds:Signature>"


def _ds(name: str) -> str:
    return f"{{{DS_NAMESPACE}}}{name}"


def _c14n(element) -> bytes:
    return etree.tostring(element, method="c14n", exclusive=True, with_comments=False)


@dataclass(frozen=True)
class SignedDocument:
    content: bytes
    fiscal_number: str
    digest: str
    signature_value: str
    algorithm: str


def _build_signature(digest_b64: str, algorithm_uri: str):
    signature = etree.Element(_ds("Signature"), nsmap={"ds": DS_NAMESPACE})
    signed_info = etree.SubElement(signature, _ds("SignedInfo"))
    etree.SubElement(signed_info, _ds("CanonicalizationMethod"), Algorithm=EXC_C14N)
    etree.SubElement(signed_info, _ds("SignatureMethod"), Algorithm=algorithm_uri)
    reference = etree.SubElement(signed_info, _ds("Reference"), URI="")
    transforms = etree.SubElement(reference, _ds("Transforms"))
    etree.SubElement(transforms, _ds("Transform"), Algorithm=ENVELOPED)
    etree.SubElement(transforms, _ds("Transform"), Algorithm=EXC_C14N)
    etree.SubElement(reference, _ds("DigestMethod"), Algorithm=SHA256)
    etree.SubElement(reference, _ds("DigestValue")).text = digest_b64
    return signature, signed_info


def _splice(canonical: bytes, block: bytes) -> bytes:
    close_at = canonical.rindex(b"</")
    return canonical[:close_at] + block + canonical[close_at:]


def sign(document, certificate) -> SignedDocument:
    """
    Sign a CanonicalDocument with an unlocked certificate.

    Args:
        document: CanonicalDocument (content = exclusive-C14N bytes).
        certificate: object exposing PEM `certificate` and `private_key` buffers.

    Raises:
        SigningError: on any failure; no partial document is ever returned.
    """
    canonical = document.content
    try:
        if _SIGNATURE_OPEN in canonical:
            raise SigningError("Document is already signed")
        engine = SignatureEngine(certificate.certificate, certificate.private_key)
        algorithm = engine.algorithm_uri()
        digest = sha256_b64(canonical)

        signature, signed_info = _build_signature(digest, algorithm)
        signature_value = base64.b64encode(engine.sign_bytes(_c14n(signed_info))).decode("ascii")
        etree.SubElement(signature, _ds("SignatureValue")).text = signature_value
        key_info = etree.SubElement(signature, _ds("KeyInfo"))
        x509_data = etree.SubElement(key_info, _ds("X509Data"))
        etree.SubElement(x509_data, _ds("X509Certificate")).text = engine.certificate_b64()

        signed = _splice(canonical, _c14n(signature))
    except SigningError:
        raise
    except Exception as e:
        logger.error("Signing failed for %s: %s", document.fiscal_number, e,
                     extra={"fiscal_number": document.fiscal_number})
        raise SigningError(f"Cannot sign document: {e}") from e

    logger.info("Signed e-CF %s", document.fiscal_number, extra={"fiscal_number": document.fiscal_number})
    return SignedDocument(
        content=signed,
        fiscal_number=document.fiscal_number,
        digest=digest,
        signature_value=signature_value,
        algorithm=algorithm,
    )


def verify(signed_bytes: bytes, public_cert) -> bool:
    """
    Check a signed document against a certificate (PEM or x509.Certificate).
    Returns False for any tampering, parse error or crypto failure.
    """
    try:
        start = signed_bytes.find(_SIGNATURE_OPEN)
        if start < 0:
            return False
        end = signed_bytes.find(_SIGNATURE_CLOSE, start)
        if end < 0:
            return False
        end += len(_SIGNATURE_CLOSE)
        remaining = signed_bytes[:start] + signed_bytes[end:]
        etree.fromstring(remaining)

        block = etree.fromstring(signed_bytes[start:end])
        signed_info = block.find(_ds("SignedInfo"))
        digest_value = block.findtext(f"{_ds('SignedInfo')}/{_ds('Reference')}/{_ds('DigestValue')}")
        signature_value = block.findtext(_ds("SignatureValue"))
        if signed_info is None or not digest_value or not signature_value:
            return False
        if sha256_b64(remaining) != digest_value.strip():
            return False
        return verify_signature(public_cert, _c14n(signed_info), base64.b64decode(signature_value))
    except Exception as e:
        logger.debug("Signature verification failed: %s", e)
        return False
