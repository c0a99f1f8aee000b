"""
e-CF submission pipeline.

create_and_submit: validate -> persist draft -> allocate fiscal number -> assemble
-> unlock certificate -> sign -> submit (bounded retries) -> status recorded.

Only the state machine writes Invoice.status. Submission and status polling for
one invoice are serialized by a per-invoice lease; different invoices run in parallel.
"""

import functools
import logging
import random
import time
from datetime import timedelta

from django.db import transaction
from django.utils import timezone

from ecf.errors import (
    AlreadySubmittedError,
    AllocationFailed,
    AuthenticationFailed,
    AuthorityRejection,
    CertificateNotFound,
    CryptoError,
    InvalidCertificateBundle,
    InvalidTransition,
    InvoiceBusy,
    TransientNetworkError,
    ValidationError,
)
from ecf.models import (
    ACCEPTED,
    DRAFT,
    FAILED_FATAL,
    FAILED_TRANSIENT,
    PENDING,
    REJECTED,
    SUBMITTED,
    SUBMITTING,
    Invoice,
    InvoiceLine,
)
from ecf.services import certificate_vault, document_signer, sequence_allocator
from ecf.services.authority_client import AuthorityClient
from ecf.services.certificate_utils import describe_certificate, load_pkcs12_bundle
from ecf.services.collaborators import ConfiguredIssuerStore, DjangoInvoiceStore, SignalNotificationDispatcher
from ecf.services.config_service import load_config
from ecf.services.document_assembler import assemble
from ecf.services.drafts import Party
from ecf.services.invoice_lock import invoice_lock
from ecf.services.submission_state_machine import SubmissionStateMachine
from ecf.services.validation import normalize_fiscal_id, validate_draft
from ecf.utils import round2

logger = logging.getLogger("ecf")


class StoredSignedDocument:
    """Signed bytes reloaded from the invoice row for (re)submission."""

    def __init__(self, invoice: Invoice):
        self.content = invoice.signed_document.encode("utf-8")
        self.digest = invoice.document_digest
        self.fiscal_number = invoice.fiscal_number


def _recipient_from_invoice(invoice: Invoice) -> Party:
    return Party(
        name=invoice.recipient_name,
        fiscal_id=invoice.recipient_fiscal_id,
        address=invoice.recipient_address,
        phone=invoice.recipient_phone,
        email=invoice.recipient_email,
    )


class SubmissionPipeline:
    """
    Orchestrates numbering, signing and submission for e-CF invoices.

    Collaborators are injected so tests can substitute a fake authority client,
    a different dispatcher, and a no-op sleep.
    """

    def __init__(
        self,
        config,
        client=None,
        invoice_store=None,
        issuer_store=None,
        dispatcher=None,
        sleep=time.sleep,
    ):
        self.config = config
        self.client = client or AuthorityClient(config)
        self.invoice_store = invoice_store or DjangoInvoiceStore()
        self.issuer_store = issuer_store or ConfiguredIssuerStore(config)
        self.machine = SubmissionStateMachine(dispatcher or SignalNotificationDispatcher())
        self.sleep = sleep

    # Creation

    def create_and_submit(self, draft) -> tuple[int, str]:
        """
        Create, number, sign and (when auto_submit is on) submit an invoice.

        Returns:
            tuple: (invoice_id, fiscal_number)

        Raises:
            ValidationError: parties, lines or totals invalid. Nothing is persisted or allocated.
            CertificateNotFound: no signing certificate stored. Nothing is allocated.
            CryptoError: unlock or signing failed; the invoice is FAILED_FATAL.
            AllocationFailed: sequence contention; the invoice is FAILED_FATAL.
        """
        issuer = self.issuer_store.get_issuer()
        validate_draft(draft, issuer)
        if not certificate_vault.exists():
            raise CertificateNotFound("No signing certificate stored; upload one first")

        document_type = draft.document_type or self.config.default_document_type
        invoice = self._persist_draft(draft, issuer, document_type)

        try:
            fiscal_number = sequence_allocator.allocate(document_type)
        except AllocationFailed as e:
            self.machine.transition(invoice.pk, FAILED_FATAL, detail=str(e))
            raise
        invoice = self.machine.transition(invoice.pk, PENDING, fiscal_number=fiscal_number)

        self._sign(invoice)

        if self.config.auto_submit:
            try:
                self.submit_invoice(invoice.pk)
            except (AuthenticationFailed, InvoiceBusy) as e:
                logger.error(
                    "Invoice %s left for retry: %s", invoice.pk, e,
                    extra={"invoice_id": invoice.pk, "fiscal_number": fiscal_number},
                )
        return invoice.pk, fiscal_number

    @transaction.atomic
    def _persist_draft(self, draft, issuer: Party, document_type: str) -> Invoice:
        recipient = draft.recipient
        invoice = Invoice(
            document_type=document_type,
            issued_at=draft.issued_at or timezone.now(),
            currency=draft.currency or "DOP",
            payment_method=draft.payment_method or "1",
            issuer_snapshot={**issuer.as_dict(), "fiscal_id": normalize_fiscal_id(issuer.fiscal_id)},
            recipient_name=recipient.name,
            recipient_fiscal_id=normalize_fiscal_id(recipient.fiscal_id),
            recipient_address=recipient.address,
            recipient_email=recipient.email,
            recipient_phone=recipient.phone,
            subtotal=round2(draft.subtotal),
            tax=round2(draft.tax),
            total=round2(draft.total),
            notes=draft.notes or "",
            status=DRAFT,
        )
        self.invoice_store.save_invoice(invoice)
        InvoiceLine.objects.bulk_create(
            InvoiceLine(
                invoice=invoice,
                line_number=i,
                description=line.description,
                quantity=line.quantity,
                unit_price=line.unit_price,
                tax_rate=line.tax_rate,
            )
            for i, line in enumerate(draft.lines, start=1)
        )
        return invoice

    def _sign(self, invoice: Invoice) -> None:
        issuer = Party.from_dict(invoice.issuer_snapshot or {})
        try:
            document = assemble(invoice, issuer, _recipient_from_invoice(invoice))
            with certificate_vault.unlock(self.config.vault_passphrase) as unlocked:
                signed = document_signer.sign(document, unlocked)
            self.machine.attach_signed_document(invoice.pk, signed)
        except (ValidationError, CryptoError) as e:
            logger.error(
                "Invoice %s cannot be signed: %s", invoice.pk, e,
                extra={"invoice_id": invoice.pk, "fiscal_number": invoice.fiscal_number},
            )
            self.machine.transition(invoice.pk, FAILED_FATAL, detail=str(e))
            raise

    # Submission

    def submit_invoice(self, invoice_id: int) -> str | None:
        """
        Submit a PENDING (or FAILED_TRANSIENT) invoice, retrying transient failures.

        Returns:
            The resulting status, or None when the invoice was deleted (cancelled) meanwhile.

        Raises:
            AlreadySubmittedError: the invoice already has a track id.
            InvoiceBusy: another worker holds the invoice.
            AuthenticationFailed: credentials refused; the invoice is back in PENDING.
        """
        with invoice_lock(invoice_id, self.config.invoice_lock_timeout):
            invoice = self.invoice_store.get_invoice(invoice_id)
            if invoice is None:
                raise Invoice.DoesNotExist(f"Invoice {invoice_id} not found")
            if invoice.track_id:
                raise AlreadySubmittedError(
                    f"Invoice {invoice_id} ({invoice.fiscal_number}) already submitted, track id {invoice.track_id}"
                )
            if invoice.status == FAILED_TRANSIENT:
                invoice = self.machine.transition(invoice_id, PENDING)
            if invoice.status != PENDING:
                raise InvalidTransition(invoice.status, SUBMITTING, "only PENDING invoices can be submitted")
            if not invoice.signed_document:
                self._sign(invoice)
            try:
                return self._submit_with_retries(invoice_id)
            except Invoice.DoesNotExist:
                logger.warning("Invoice %s deleted during submission", invoice_id, extra={"invoice_id": invoice_id})
                return None

    def _submit_with_retries(self, invoice_id: int) -> str | None:
        while True:
            invoice = self.invoice_store.get_invoice(invoice_id)
            if invoice is None:
                logger.info("Submission of invoice %s cancelled (deleted)", invoice_id, extra={"invoice_id": invoice_id})
                return None

            invoice = self.machine.transition(invoice_id, SUBMITTING)
            fiscal_number = invoice.fiscal_number
            try:
                result = self._send(invoice)
            except AuthorityRejection as e:
                self.machine.record_attempt(invoice_id, "REJECTED", status_code=e.status_code, error=e.reason)
                self.machine.transition(invoice_id, FAILED_FATAL, detail=e.reason)
                return FAILED_FATAL
            except AuthenticationFailed as e:
                self.machine.record_attempt(invoice_id, "TRANSIENT", status_code=e.status_code, error=e)
                self._after_transient(invoice, e)
                raise
            except TransientNetworkError as e:
                self.machine.record_attempt(invoice_id, "TRANSIENT", status_code=e.status_code, error=e)
                status = self._after_transient(invoice, e)
                if status == FAILED_FATAL or not self.config.retry_in_process:
                    return status
                delay = self._backoff(invoice.retry_count + 1)
                logger.warning(
                    "Submission of %s failed (attempt %d/%d): %s. Retrying in %.1fs.",
                    fiscal_number, invoice.retry_count + 1, self.config.max_submit_retries, e, delay,
                    extra={"invoice_id": invoice_id, "fiscal_number": fiscal_number},
                )
                self.sleep(delay)
                continue
            except Exception as e:
                # Never leave the invoice in SUBMITTING
                logger.exception(
                    "Unexpected error submitting %s", fiscal_number,
                    extra={"invoice_id": invoice_id, "fiscal_number": fiscal_number},
                )
                self.machine.record_attempt(invoice_id, "TRANSIENT", error=f"{e.__class__.__name__}: {e}")
                self._after_transient(invoice, e)
                raise

            self.machine.record_attempt(invoice_id, "SUBMITTED", status_code=200)
            self.machine.transition(invoice_id, SUBMITTED, track_id=result.track_id, raw_response=result.raw,
                                    detail=result.message)
            return SUBMITTED

    def _send(self, invoice: Invoice):
        """
        One reception call. A 401 means the authority no longer honours the cached token;
        the client has dropped it, so authenticate again and resend once under the same idempotency key.
        """
        document = StoredSignedDocument(invoice)
        issuer_fiscal_id = (invoice.issuer_snapshot or {}).get("fiscal_id", "")
        token = self.client.get_token()
        try:
            return self.client.submit(document, token, invoice.fiscal_number, issuer_fiscal_id)
        except AuthenticationFailed as e:
            logger.warning(
                "Token refused while submitting %s (%s); re-authenticating", invoice.fiscal_number, e,
                extra={"invoice_id": invoice.pk, "fiscal_number": invoice.fiscal_number},
            )
            return self.client.submit(document, self.client.get_token(), invoice.fiscal_number, issuer_fiscal_id)

    def _after_transient(self, invoice: Invoice, error: Exception) -> str:
        """SUBMITTING -> FAILED_TRANSIENT -> PENDING, or SUBMITTING -> FAILED_FATAL once the bound is reached."""
        if invoice.retry_count + 1 >= self.config.max_submit_retries:
            self.machine.transition(
                invoice.pk, FAILED_FATAL,
                detail=f"Gave up after {invoice.retry_count + 1} transient failures: {error}",
            )
            logger.error(
                "Invoice %s failed permanently after %d attempts", invoice.pk, invoice.retry_count + 1,
                extra={"invoice_id": invoice.pk, "fiscal_number": invoice.fiscal_number},
            )
            return FAILED_FATAL
        self.machine.transition(invoice.pk, FAILED_TRANSIENT, detail=str(error))
        self.machine.transition(invoice.pk, PENDING)
        return PENDING

    def _backoff(self, attempt: int) -> float:
        ceiling = min(self.config.retry_max_delay, self.config.retry_base_delay * (2 ** (attempt - 1)))
        return random.uniform(0, ceiling) if ceiling > 0 else 0.0

    # Status

    def refresh_status(self, invoice_id: int) -> str:
        """
        Poll the authority for a SUBMITTED invoice and apply ACCEPTED / REJECTED.
        Other statuses are returned unchanged; terminal statuses never regress.
        """
        with invoice_lock(invoice_id, self.config.invoice_lock_timeout):
            invoice = self.invoice_store.get_invoice(invoice_id)
            if invoice is None:
                raise Invoice.DoesNotExist(f"Invoice {invoice_id} not found")
            if invoice.status != SUBMITTED:
                return invoice.status

            token = self.client.get_token()
            try:
                result = self.client.check_status(invoice.track_id, token)
            except AuthenticationFailed:
                result = self.client.check_status(invoice.track_id, self.client.get_token())
            if result.status in (ACCEPTED, REJECTED):
                detail = result.detail or result.authority_status
                invoice = self.machine.transition(invoice_id, result.status, detail=detail, raw_response=result.raw)
                return invoice.status
            self.machine.record_status_check(invoice_id, result.raw)
            logger.debug(
                "Invoice %s still processing (%s)", invoice_id, result.authority_status,
                extra={"invoice_id": invoice_id, "track_id": invoice.track_id},
            )
            return SUBMITTED

    # Batch operations

    def retry_pending(self) -> dict:
        """
        Submit every numbered, unsubmitted invoice left in PENDING or FAILED_TRANSIENT.
        Invoices stranded in SUBMITTING by a worker that died mid-call are moved back first.
        """
        summary = {"submitted": 0, "failed": 0, "pending": 0, "skipped": 0}
        stale_before = timezone.now() - timedelta(seconds=self.config.invoice_lock_timeout)
        stranded = list(
            Invoice.objects.filter(status=SUBMITTING, track_id__isnull=True, updated_at__lt=stale_before)
            .values_list("pk", flat=True)
        )
        for invoice_id in stranded:
            try:
                self._recover_interrupted(invoice_id)
            except InvoiceBusy:
                summary["skipped"] += 1
        ids = list(
            Invoice.objects.filter(status__in=[PENDING, FAILED_TRANSIENT], track_id__isnull=True)
            .exclude(fiscal_number__isnull=True)
            .order_by("created_at")
            .values_list("pk", flat=True)
        )
        for invoice_id in ids:
            try:
                status = self.submit_invoice(invoice_id)
            except InvoiceBusy:
                summary["skipped"] += 1
                continue
            except AuthenticationFailed as e:
                logger.error("Stopping retry run: authority refused credentials: %s", e)
                summary["pending"] += 1
                break
            except (CryptoError, ValidationError, InvalidTransition, AlreadySubmittedError) as e:
                logger.error("Invoice %s not retried: %s", invoice_id, e, extra={"invoice_id": invoice_id})
                summary["failed"] += 1
                continue
            if status == SUBMITTED:
                summary["submitted"] += 1
            elif status == FAILED_FATAL:
                summary["failed"] += 1
            elif status is None:
                summary["skipped"] += 1
            else:
                summary["pending"] += 1
        return summary

    def _recover_interrupted(self, invoice_id: int) -> None:
        with invoice_lock(invoice_id, self.config.invoice_lock_timeout):
            invoice = self.invoice_store.get_invoice(invoice_id)
            if invoice is None or invoice.status != SUBMITTING or invoice.track_id:
                return
            logger.warning(
                "Invoice %s (%s) was left in SUBMITTING; treating the attempt as failed",
                invoice_id, invoice.fiscal_number,
                extra={"invoice_id": invoice_id, "fiscal_number": invoice.fiscal_number},
            )
            error = "Submission interrupted before the authority answered"
            self.machine.record_attempt(invoice_id, "TRANSIENT", error=error)
            self._after_transient(invoice, error)

    def poll_submitted(self) -> dict:
        """Refresh every SUBMITTED invoice; errors on one invoice do not stop the run."""
        summary = {"accepted": 0, "rejected": 0, "processing": 0, "errors": 0}
        ids = list(Invoice.objects.filter(status=SUBMITTED).order_by("submitted_at").values_list("pk", flat=True))
        for invoice_id in ids:
            try:
                status = self.refresh_status(invoice_id)
            except (TransientNetworkError, AuthorityRejection, AuthenticationFailed, InvoiceBusy) as e:
                logger.warning("Status check for invoice %s failed: %s", invoice_id, e, extra={"invoice_id": invoice_id})
                summary["errors"] += 1
                continue
            if status == ACCEPTED:
                summary["accepted"] += 1
            elif status == REJECTED:
                summary["rejected"] += 1
            else:
                summary["processing"] += 1
        return summary


def upload_certificate(
    file_bytes: bytes,
    unlock_passphrase: str,
    encryption_passphrase: str,
    metadata: dict | None = None,
) -> dict:
    """
    Import a PKCS#12 bundle into the vault.

    The plaintext key PEM returned by the PKCS#12 loader is immutable bytes and
    cannot be wiped; it is encrypted immediately and dropped when this call returns.
    Only vault unlocks (certificate_vault.unlock) hand out zeroable buffers.

    Args:
        file_bytes: .p12/.pfx content.
        unlock_passphrase: Import passphrase of the bundle.
        encryption_passphrase: Passphrase protecting the vault at rest.
        metadata: Optional overrides for the descriptive metadata.

    Returns:
        dict: Stored non-sensitive metadata.

    Raises:
        InvalidCertificateBundle: bundle cannot be opened, or the certificate is expired.
        ValueError: empty encryption passphrase.
    """
    if not encryption_passphrase:
        raise ValueError("Encryption passphrase must not be empty")
    certificate_pem, private_key_pem = load_pkcs12_bundle(file_bytes, unlock_passphrase)
    info = describe_certificate(certificate_pem)
    if info["valid_until"] <= timezone.now():
        raise InvalidCertificateBundle(f"Certificate expired on {info['valid_until']:%Y-%m-%d}")
    info.update(metadata or {})
    certificate_vault.store(certificate_pem, private_key_pem, encryption_passphrase, info)
    logger.info("Signing certificate uploaded: %s (valid until %s)", info["subject"], info["valid_until"])
    return certificate_vault.metadata()


@functools.lru_cache(maxsize=1)
def default_pipeline() -> SubmissionPipeline:
    """Process-wide pipeline built from validated settings (keeps the token cache warm)."""
    return SubmissionPipeline(config=load_config())


def create_and_submit(draft, pipeline: SubmissionPipeline | None = None) -> tuple[int, str]:
    return (pipeline or default_pipeline()).create_and_submit(draft)


def refresh_status(invoice_id: int, pipeline: SubmissionPipeline | None = None) -> str:
    return (pipeline or default_pipeline()).refresh_status(invoice_id)


def submit_invoice(invoice_id: int, pipeline: SubmissionPipeline | None = None) -> str | None:
    return (pipeline or default_pipeline()).submit_invoice(invoice_id)


def retry_pending(pipeline: SubmissionPipeline | None = None) -> dict:
    return (pipeline or default_pipeline()).retry_pending()
