"""Utility functions for the ecf app."""

import json
from decimal import ROUND_HALF_UP, Decimal

SENSITIVE_KEYS = frozenset({
    "password", "passphrase", "token", "authorization",
    "privatekey", "privatekeypem", "privatekeyblob",
    "certificate", "certificatepem", "certificateblob",
    "x509certificate", "pkcs12",
})
SIGNATURE_KEYS = frozenset({"signaturevalue", "signature", "digestvalue"})

TWO_PLACES = Decimal("0.01")


def mask_sensitive_fields(payload):
    """
    Mask sensitive fields before saving to logs. Call before AuthorityApiLog.create.
    Masks: password, token, Authorization, private key and certificate material,
    SignatureValue / DigestValue.
    """
    return mask_sensitive_data(payload, mask_signatures=True)


def mask_sensitive_data(obj, mask_signatures: bool = True):
    """
    Recursively mask sensitive fields in a JSON-serializable object.
    Keys are compared case-insensitively with '_' and '-' removed.
    """
    if obj is None:
        return None
    if isinstance(obj, (str, int, float, bool)):
        return obj
    if isinstance(obj, list):
        return [mask_sensitive_data(i, mask_signatures) for i in obj]
    if isinstance(obj, dict):
        out = {}
        for k, v in obj.items():
            k_lower = str(k).lower().replace("_", "").replace("-", "")
            if k_lower in SENSITIVE_KEYS:
                out[k] = "[REDACTED]"
            elif mask_signatures and k_lower in SIGNATURE_KEYS:
                out[k] = "[REDACTED]"
            else:
                out[k] = mask_sensitive_data(v, mask_signatures)
        return out
    return obj


def safe_json_dumps(obj, indent: int = 2) -> str:
    """JSON dump with sensitive data masked."""
    return json.dumps(mask_sensitive_data(obj), indent=indent, default=str)


def to_decimal(val) -> Decimal:
    if val is None:
        return Decimal("0")
    if isinstance(val, Decimal):
        return val
    return Decimal(str(val))


def round2(val) -> Decimal:
    """Quantize to 2 decimal places, half-up (fiscal rounding)."""
    return to_decimal(val).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
