"""Shared fixtures for ecf tests: config, drafts, test certificates and a scripted authority client."""

from decimal import Decimal

from ecf.services import certificate_vault
from ecf.services.authority_client import StatusResult, SubmitResult
from ecf.services.certificate_utils import describe_certificate, generate_self_signed_certificate
from ecf.services.config_service import EcfConfig
from ecf.services.drafts import DraftLine, InvoiceDraft, Party

VAULT_PASSPHRASE = "vault-test-passphrase"

ISSUER = Party(
    name="Fumigaciones del Caribe SRL",
    fiscal_id="131000002",
    address="Av. Winston Churchill 10, Santo Domingo",
    phone="8095550101",
    email="facturas@fumicaribe.do",
)
RECIPIENT = Party(name="Hotel Playa Dorada", fiscal_id="101000007", email="compras@playadorada.do")

_certificates = {}


def make_config(**overrides) -> EcfConfig:
    config = EcfConfig(
        authority_base_url="https://authority.test/ecf",
        authority_username="ecf-user",
        authority_password="ecf-pass",
        issuer=ISSUER,
        http_timeout=5,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        vault_passphrase=VAULT_PASSPHRASE,
    )
    return config.with_overrides(**overrides) if overrides else config


def fumigation_draft(**overrides) -> InvoiceDraft:
    """One fumigation service at 1000.00 + 18% ITBIS = 1180.00."""
    values = {
        "recipient": RECIPIENT,
        "lines": [DraftLine("Fumigación", Decimal("1"), Decimal("1000.00"), Decimal("0.18"))],
        "subtotal": Decimal("1000.00"),
        "tax": Decimal("180.00"),
        "total": Decimal("1180.00"),
    }
    values.update(overrides)
    return InvoiceDraft(**values)


def certificate_pair(key_type: str = "RSA") -> tuple[bytes, bytes]:
    """Self-signed (certificate_pem, private_key_pem), generated once per key type."""
    if key_type not in _certificates:
        _certificates[key_type] = generate_self_signed_certificate(ISSUER.name, ISSUER.fiscal_id, key_type=key_type)
    return _certificates[key_type]


def store_test_certificate(key_type: str = "RSA", passphrase: str = VAULT_PASSPHRASE):
    certificate_pem, private_key_pem = certificate_pair(key_type)
    return certificate_vault.store(certificate_pem, private_key_pem, passphrase, describe_certificate(certificate_pem))


class FakeAuthorityClient:
    """
    Scripted stand-in for AuthorityClient.
    submit_outcomes / status_outcomes are consumed in order; an Exception instance is raised,
    anything else is returned. Once exhausted, submit succeeds and status reports processing.
    """

    def __init__(self, submit_outcomes=None, status_outcomes=None, token_error=None):
        self.submit_outcomes = list(submit_outcomes or [])
        self.status_outcomes = list(status_outcomes or [])
        self.token_error = token_error
        self.submitted = []
        self.status_queries = []
        self.token_requests = 0

    def get_token(self) -> str:
        self.token_requests += 1
        if self.token_error is not None:
            raise self.token_error
        return "test-token"

    def invalidate_token(self) -> None:
        pass

    def submit(self, signed, token, fiscal_number, issuer_fiscal_id):
        self.submitted.append((fiscal_number, signed.content, issuer_fiscal_id))
        outcome = self.submit_outcomes.pop(0) if self.submit_outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        return outcome or SubmitResult(track_id=f"TRK-{fiscal_number}", message="Recibido", raw={"trackId": f"TRK-{fiscal_number}"})

    def check_status(self, track_id, token):
        self.status_queries.append(track_id)
        outcome = self.status_outcomes.pop(0) if self.status_outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        return outcome or StatusResult(status="SUBMITTED", authority_status="En Proceso", raw={"status": "En Proceso"})


def accepted(detail: str = "Aceptado") -> StatusResult:
    return StatusResult(status="ACCEPTED", detail=detail, authority_status="Aceptado", raw={"status": "Aceptado"})


def rejected(detail: str) -> StatusResult:
    return StatusResult(status="REJECTED", detail=detail, authority_status="Rechazado",
                        raw={"status": "Rechazado", "message": detail})
