"""e-CF models: invoices, sequence counters, the certificate vault row and submission audit."""

from decimal import Decimal

from django.db import models
from django.utils import timezone

from ecf.errors import ImmutableInvoiceError

DRAFT = "DRAFT"
PENDING = "PENDING"
SUBMITTING = "SUBMITTING"
SUBMITTED = "SUBMITTED"
ACCEPTED = "ACCEPTED"
REJECTED = "REJECTED"
FAILED_TRANSIENT = "FAILED_TRANSIENT"
FAILED_FATAL = "FAILED_FATAL"

INVOICE_STATUSES = (
    (DRAFT, "Draft"),
    (PENDING, "Pending"),
    (SUBMITTING, "Submitting"),
    (SUBMITTED, "Submitted"),
    (ACCEPTED, "Accepted"),
    (REJECTED, "Rejected"),
    (FAILED_TRANSIENT, "Failed (transient)"),
    (FAILED_FATAL, "Failed (fatal)"),
)

TERMINAL_STATUSES = frozenset({ACCEPTED, REJECTED, FAILED_FATAL})

ATTEMPT_OUTCOMES = (
    ("SUBMITTED", "Submitted"),
    ("TRANSIENT", "Transient failure"),
    ("REJECTED", "Rejected"),
    ("FATAL", "Fatal failure"),
)


class Invoice(models.Model):
    """Electronic fiscal document (e-CF) issued to a recipient."""

    fiscal_number = models.CharField(max_length=13, unique=True, null=True, blank=True)
    document_type = models.CharField(max_length=2, default="01")
    issued_at = models.DateTimeField(default=timezone.now)
    currency = models.CharField(max_length=3, default="DOP")
    payment_method = models.CharField(max_length=2, default="1")
    issuer_snapshot = models.JSONField(null=True, blank=True)
    recipient_name = models.CharField(max_length=255)
    recipient_fiscal_id = models.CharField(max_length=11)
    recipient_address = models.TextField(blank=True)
    recipient_email = models.EmailField(blank=True)
    recipient_phone = models.CharField(max_length=50, blank=True)
    subtotal = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal("0"))
    tax = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal("0"))
    total = models.DecimalField(max_digits=15, decimal_places=2, default=Decimal("0"))
    status = models.CharField(max_length=20, choices=INVOICE_STATUSES, default=DRAFT, db_index=True)
    track_id = models.CharField(max_length=128, null=True, blank=True, db_index=True)
    status_detail = models.TextField(blank=True)
    retry_count = models.PositiveIntegerField(default=0)
    submitted_at = models.DateTimeField(null=True, blank=True)
    last_status_check_at = models.DateTimeField(null=True, blank=True)
    signed_document = models.TextField(null=True, blank=True)
    document_digest = models.CharField(max_length=64, blank=True)
    notes = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Invoice"
        verbose_name_plural = "Invoices"
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.fiscal_number or 'draft'} ({self.status})"

    @property
    def is_signed(self) -> bool:
        return bool(self.signed_document)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class InvoiceLine(models.Model):
    """Single line of an invoice. Frozen once the invoice is signed."""

    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="lines")
    line_number = models.PositiveIntegerField()
    description = models.CharField(max_length=500)
    quantity = models.DecimalField(max_digits=15, decimal_places=4)
    unit_price = models.DecimalField(max_digits=15, decimal_places=2)
    tax_rate = models.DecimalField(max_digits=5, decimal_places=4, default=Decimal("0.18"))

    class Meta:
        verbose_name = "Invoice Line"
        verbose_name_plural = "Invoice Lines"
        ordering = ["invoice", "line_number"]
        constraints = [
            models.UniqueConstraint(fields=["invoice", "line_number"], name="ecf_unique_line_number"),
        ]

    def __str__(self):
        return f"{self.invoice_id}#{self.line_number} {self.description}"

    def save(self, *args, **kwargs):
        signed = Invoice.objects.filter(pk=self.invoice_id).values_list("signed_document", flat=True).first()
        if signed:
            raise ImmutableInvoiceError(f"Invoice {self.invoice_id} is signed; lines are immutable")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        signed = Invoice.objects.filter(pk=self.invoice_id).values_list("signed_document", flat=True).first()
        if signed:
            raise ImmutableInvoiceError(f"Invoice {self.invoice_id} is signed; lines are immutable")
        return super().delete(*args, **kwargs)


class SigningCertificate(models.Model):
    """
    Encrypted signing certificate and private key (single row).
    Blobs are version|salt|nonce|ciphertext+tag, base64. Plaintext and passphrase never stored.
    """

    certificate_blob = models.TextField()
    private_key_blob = models.TextField()
    issuer = models.CharField(max_length=500, blank=True)
    subject = models.CharField(max_length=500, blank=True)
    serial_number = models.CharField(max_length=100, blank=True)
    valid_from = models.DateTimeField(null=True, blank=True)
    valid_until = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = "Signing Certificate"
        verbose_name_plural = "Signing Certificates"

    def __str__(self):
        return self.subject or f"Certificate {self.serial_number}"


class SequenceCounter(models.Model):
    """Next fiscal sequence value per document type. Only the allocator writes it."""

    document_type = models.CharField(max_length=2, unique=True)
    next_value = models.PositiveBigIntegerField(default=1)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = "Sequence Counter"
        verbose_name_plural = "Sequence Counters"

    def __str__(self):
        return f"E{self.document_type}: next {self.next_value}"


class SubmissionRecord(models.Model):
    """Authority acknowledgement for a submitted invoice."""

    invoice = models.OneToOneField(Invoice, on_delete=models.CASCADE, related_name="submission")
    track_id = models.CharField(max_length=128, db_index=True)
    submitted_at = models.DateTimeField()
    raw_response = models.JSONField(null=True, blank=True)
    last_checked_at = models.DateTimeField(null=True, blank=True)
    last_status_response = models.JSONField(null=True, blank=True)

    class Meta:
        verbose_name = "Submission Record"
        verbose_name_plural = "Submission Records"

    def __str__(self):
        return f"{self.invoice_id} -> {self.track_id}"


class SubmissionAttempt(models.Model):
    """Audit log for every submission attempt."""

    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="submission_attempts")
    attempt_no = models.PositiveIntegerField()
    outcome = models.CharField(max_length=20, choices=ATTEMPT_OUTCOMES)
    response_status_code = models.IntegerField(null=True, blank=True)
    error_message = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = "Submission Attempt"
        verbose_name_plural = "Submission Attempts"
        ordering = ["invoice", "attempt_no"]

    def __str__(self):
        return f"{self.invoice_id} attempt {self.attempt_no}: {self.outcome}"


class AuthorityApiLog(models.Model):
    """Audit log for tax authority API calls."""

    endpoint = models.CharField(max_length=255)
    method = models.CharField(max_length=10)
    request_payload = models.JSONField(default=dict)
    response_payload = models.JSONField(null=True, blank=True)
    status_code = models.IntegerField(null=True, blank=True)
    error_message = models.TextField(null=True, blank=True)
    track_id = models.CharField(max_length=128, blank=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name = "Authority API Log"
        verbose_name_plural = "Authority API Logs"
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.method} {self.endpoint} - {self.status_code or 'error'}"
