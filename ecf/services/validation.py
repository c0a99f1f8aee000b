"""
Validation for e-CF data: RNC / Cédula check digits, parties, lines and declared totals.

All checks collect every violation before raising, so the caller can show the
full list at once.
"""

import re

from ecf.errors import FieldError, ValidationError
from ecf.services.tax_calculator import compute_totals, within_tolerance
from ecf.utils import to_decimal

_RNC_WEIGHTS = (7, 9, 8, 6, 5, 4, 3, 2)
_CEDULA_WEIGHTS = (1, 2, 1, 2, 1, 2, 1, 2, 1, 2)
_SEPARATORS_RE = re.compile(r"[\s-]")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def normalize_fiscal_id(value: str | None) -> str:
    return _SEPARATORS_RE.sub("", value or "")


def is_valid_rnc(value: str | None) -> bool:
    """RNC: 9 digits, weighted mod-11 check digit."""
    rnc = normalize_fiscal_id(value)
    if len(rnc) != 9 or not rnc.isdigit():
        return False
    total = sum(int(d) * w for d, w in zip(rnc[:8], _RNC_WEIGHTS))
    remainder = total % 11
    if remainder == 0:
        expected = 2
    elif remainder == 1:
        expected = 1
    else:
        expected = 11 - remainder
    return int(rnc[8]) == expected


def is_valid_cedula(value: str | None) -> bool:
    """Cédula: 11 digits, Luhn-style mod-10 check digit."""
    cedula = normalize_fiscal_id(value)
    if len(cedula) != 11 or not cedula.isdigit():
        return False
    total = 0
    for d, w in zip(cedula[:10], _CEDULA_WEIGHTS):
        product = int(d) * w
        total += product // 10 + product % 10 if product > 9 else product
    remainder = total % 10
    expected = 0 if remainder == 0 else 10 - remainder
    return int(cedula[10]) == expected


def is_valid_fiscal_id(value: str | None) -> bool:
    fiscal_id = normalize_fiscal_id(value)
    if len(fiscal_id) == 9:
        return is_valid_rnc(fiscal_id)
    if len(fiscal_id) == 11:
        return is_valid_cedula(fiscal_id)
    return False


def format_fiscal_id(value: str | None) -> str:
    """Display format: RNC XXX-XXXXX-X, Cédula XXX-XXXXXXX-X."""
    fiscal_id = normalize_fiscal_id(value)
    if len(fiscal_id) == 9:
        return f"{fiscal_id[:3]}-{fiscal_id[3:8]}-{fiscal_id[8:]}"
    if len(fiscal_id) == 11:
        return f"{fiscal_id[:3]}-{fiscal_id[3:10]}-{fiscal_id[10:]}"
    return fiscal_id


def is_valid_email(value: str | None) -> bool:
    return bool(value) and _EMAIL_RE.match(value) is not None


def party_errors(party, prefix: str) -> list[FieldError]:
    errors = []
    if party is None:
        return [FieldError(prefix, "is required")]
    if not (party.name or "").strip():
        errors.append(FieldError(f"{prefix}.name", "is required"))
    if not is_valid_fiscal_id(party.fiscal_id):
        errors.append(FieldError(f"{prefix}.fiscalId", "invalid RNC or Cédula check digit or length"))
    if party.email and not is_valid_email(party.email):
        errors.append(FieldError(f"{prefix}.email", "invalid email address"))
    return errors


def line_errors(lines) -> list[FieldError]:
    if not lines:
        return [FieldError("lines", "at least one line is required")]
    errors = []
    for i, line in enumerate(lines):
        if not (line.description or "").strip():
            errors.append(FieldError(f"lines[{i}].description", "is required"))
        quantity = to_decimal(line.quantity)
        if quantity <= 0:
            errors.append(FieldError(f"lines[{i}].quantity", "must be greater than zero"))
        if to_decimal(line.unit_price) < 0:
            errors.append(FieldError(f"lines[{i}].unitPrice", "must be zero or greater"))
        rate = to_decimal(line.tax_rate)
        if rate < 0 or rate > 1:
            errors.append(FieldError(f"lines[{i}].taxRate", "must be between 0 and 1"))
    return errors


def totals_errors(lines, subtotal, tax, total) -> list[FieldError]:
    computed = compute_totals(lines)
    errors = []
    for name, declared, expected in (
        ("subtotal", subtotal, computed.subtotal),
        ("tax", tax, computed.tax),
        ("total", total, computed.total),
    ):
        if declared is None:
            errors.append(FieldError(name, "is required"))
        elif not within_tolerance(declared, expected):
            errors.append(FieldError(name, f"declared {to_decimal(declared)} does not match computed {expected}"))
    return errors


def collect_errors(issuer, recipient, lines, subtotal, tax, total) -> list[FieldError]:
    """Run every check and return the full list of violations (empty when valid)."""
    errors = []
    errors.extend(party_errors(issuer, "issuer"))
    errors.extend(party_errors(recipient, "recipient"))
    line_problems = line_errors(lines)
    errors.extend(line_problems)
    if not line_problems:
        errors.extend(totals_errors(lines, subtotal, tax, total))
    return errors


def validate_invoice(issuer, recipient, lines, subtotal, tax, total) -> None:
    """Raise ValidationError carrying every violation, or return None when valid."""
    errors = collect_errors(issuer, recipient, lines, subtotal, tax, total)
    if errors:
        raise ValidationError(errors)


def validate_draft(draft, issuer) -> None:
    validate_invoice(issuer, draft.recipient, draft.lines, draft.subtotal, draft.tax, draft.total)
