"""
e-CF runtime configuration. Loaded once from Django settings, validated, then
passed explicitly into the submission pipeline.
If the configuration is invalid, nothing may be submitted.
"""

from dataclasses import dataclass, field, replace

from django.conf import settings

from ecf.errors import ConfigurationError
from ecf.services.drafts import Party
from ecf.services.validation import is_valid_fiscal_id

DEFAULT_STATUS_MAP = {
    "ACEPTADO": "ACCEPTED",
    "ACEPTADO CONDICIONAL": "ACCEPTED",
    "RECHAZADO": "REJECTED",
}


@dataclass(frozen=True)
class EcfConfig:
    """Configuration for the e-CF pipeline and authority client."""

    authority_base_url: str
    authority_username: str
    authority_password: str
    issuer: Party
    default_document_type: str = "01"
    http_timeout: float = 30
    http_pool_size: int = 10
    max_submit_retries: int = 3
    retry_base_delay: float = 2.0
    retry_max_delay: float = 60.0
    retry_in_process: bool = True
    token_ttl_seconds: int = 3600
    invoice_lock_timeout: int = 120
    status_map: dict = field(default_factory=lambda: dict(DEFAULT_STATUS_MAP))
    auto_submit: bool = True
    vault_passphrase: str = field(default="", repr=False)

    @classmethod
    def from_settings(cls) -> "EcfConfig":
        """Create config from Django settings (ECF_* values)."""
        issuer = getattr(settings, "ECF_ISSUER", {}) or {}
        status_map = getattr(settings, "ECF_STATUS_MAP", None) or DEFAULT_STATUS_MAP
        return cls(
            authority_base_url=(getattr(settings, "ECF_AUTHORITY_BASE_URL", "") or "").rstrip("/"),
            authority_username=getattr(settings, "ECF_AUTHORITY_USERNAME", ""),
            authority_password=getattr(settings, "ECF_AUTHORITY_PASSWORD", ""),
            issuer=Party.from_dict(issuer),
            default_document_type=getattr(settings, "ECF_DEFAULT_DOCUMENT_TYPE", "01"),
            http_timeout=getattr(settings, "ECF_HTTP_TIMEOUT", 30),
            http_pool_size=getattr(settings, "ECF_HTTP_POOL_SIZE", 10),
            max_submit_retries=getattr(settings, "ECF_MAX_SUBMIT_RETRIES", 3),
            retry_base_delay=getattr(settings, "ECF_RETRY_BASE_DELAY", 2.0),
            retry_max_delay=getattr(settings, "ECF_RETRY_MAX_DELAY", 60.0),
            retry_in_process=getattr(settings, "ECF_RETRY_IN_PROCESS", True),
            token_ttl_seconds=getattr(settings, "ECF_TOKEN_TTL_SECONDS", 3600),
            invoice_lock_timeout=getattr(settings, "ECF_INVOICE_LOCK_TIMEOUT", 120),
            status_map={str(k).strip().upper(): v for k, v in status_map.items()},
            auto_submit=getattr(settings, "ECF_AUTO_SUBMIT", True),
            vault_passphrase=getattr(settings, "ECF_VAULT_PASSPHRASE", ""),
        )

    def validate(self) -> "EcfConfig":
        """Raise ConfigurationError listing every problem; return self when valid."""
        problems = []
        if not self.authority_base_url.startswith(("https://", "http://")):
            problems.append("ECF_AUTHORITY_BASE_URL must be an http(s) URL")
        if not self.authority_username or not self.authority_password:
            problems.append("ECF_AUTHORITY_USERNAME and ECF_AUTHORITY_PASSWORD are required")
        if not self.issuer.name:
            problems.append("ECF_ISSUER name is required")
        if not is_valid_fiscal_id(self.issuer.fiscal_id):
            problems.append("ECF_ISSUER fiscal_id is not a valid RNC or Cédula")
        if len(self.default_document_type) != 2 or not self.default_document_type.isdigit():
            problems.append("ECF_DEFAULT_DOCUMENT_TYPE must be two digits")
        if self.http_timeout <= 0:
            problems.append("ECF_HTTP_TIMEOUT must be positive")
        if self.http_pool_size < 1:
            problems.append("ECF_HTTP_POOL_SIZE must be at least 1")
        if self.max_submit_retries < 0:
            problems.append("ECF_MAX_SUBMIT_RETRIES must not be negative")
        if self.retry_base_delay < 0 or self.retry_max_delay < 0:
            problems.append("ECF_RETRY_BASE_DELAY and ECF_RETRY_MAX_DELAY must not be negative")
        if self.token_ttl_seconds <= 60:
            problems.append("ECF_TOKEN_TTL_SECONDS must exceed 60")
        bad_targets = {v for v in self.status_map.values() if v not in ("ACCEPTED", "REJECTED")}
        if bad_targets:
            problems.append(f"ECF_STATUS_MAP targets must be ACCEPTED or REJECTED, got {sorted(bad_targets)}")
        if not self.vault_passphrase:
            problems.append("ECF_VAULT_PASSPHRASE is required")
        if problems:
            raise ConfigurationError(problems)
        return self

    def with_overrides(self, **changes) -> "EcfConfig":
        return replace(self, **changes)


def load_config() -> EcfConfig:
    return EcfConfig.from_settings().validate()
