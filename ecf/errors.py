"""
Error hierarchy for the e-CF core.

ValidationError and CryptoError subclasses are not retryable.
TransientNetworkError is the only error the submission pipeline retries.
"""

from dataclasses import dataclass


class EcfError(Exception):
    """Base class for all e-CF errors."""


@dataclass(frozen=True)
class FieldError:
    field: str
    reason: str

    def as_dict(self) -> dict:
        return {"field": self.field, "reason": self.reason}


class ValidationError(EcfError):
    """Invoice or party data failed validation. Carries every violation found."""

    def __init__(self, errors: list[FieldError]):
        self.errors = list(errors)
        summary = "; ".join(f"{e.field}: {e.reason}" for e in self.errors)
        super().__init__(summary or "validation failed")

    @property
    def fields(self) -> list[str]:
        return [e.field for e in self.errors]


class CryptoError(EcfError):
    """Base for vault and signing failures."""


class InvalidPassphrase(CryptoError):
    pass


class VaultCorrupted(CryptoError):
    pass


class CertificateNotFound(CryptoError):
    pass


class SigningError(CryptoError):
    pass


class InvalidCertificateBundle(CryptoError):
    """PKCS#12 bundle could not be opened or holds no key/certificate."""


class TransientNetworkError(EcfError):
    """Timeout, connection failure or 5xx from the authority. Retryable."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AuthorityRejection(EcfError):
    """Authority rejected the request (4xx). Terminal for the fiscal number."""

    def __init__(self, reason: str, status_code: int | None = None):
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


class AuthenticationFailed(EcfError):
    """Authority refused the configured credentials. The invoice is left untouched."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class AllocationConflict(EcfError):
    """Lost a compare-and-swap race on the sequence counter. Internal, retried."""


class AllocationFailed(EcfError):
    pass


class InvalidTransition(EcfError):
    def __init__(self, current: str, target: str, reason: str = ""):
        message = f"Invalid status transition {current} -> {target}"
        super().__init__(f"{message}: {reason}" if reason else message)
        self.current = current
        self.target = target


class AlreadySubmittedError(EcfError):
    """Invoice already carries a track id; submitting again would double-submit."""


class InvoiceBusy(EcfError):
    """Another worker holds the per-invoice lock."""


class ImmutableInvoiceError(EcfError):
    pass


class ConfigurationError(EcfError):
    def __init__(self, problems: list[str]):
        self.problems = list(problems)
        super().__init__("Invalid e-CF configuration: " + "; ".join(self.problems))
