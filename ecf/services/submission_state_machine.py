"""
Submission state machine: the only writer of Invoice.status, SubmissionRecord and
SubmissionAttempt.

    DRAFT -> PENDING (fiscal number assigned) | FAILED_FATAL
    PENDING -> SUBMITTING (numbered and signed) | FAILED_FATAL
    SUBMITTING -> SUBMITTED | FAILED_TRANSIENT | FAILED_FATAL
    FAILED_TRANSIENT -> PENDING | FAILED_FATAL
    SUBMITTED -> ACCEPTED | REJECTED
    ACCEPTED, REJECTED, FAILED_FATAL are terminal.

Every transition locks the invoice row (select_for_update) inside
transaction.atomic() and notifies the dispatcher after the write.
"""

import logging

from django.db import transaction
from django.utils import timezone

from ecf.errors import InvalidTransition
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
    SubmissionAttempt,
    SubmissionRecord,
)
from ecf.services.collaborators import SignalNotificationDispatcher

logger = logging.getLogger("ecf")

VALID_TRANSITIONS: dict[str, set[str]] = {
    DRAFT: {PENDING, FAILED_FATAL},
    PENDING: {SUBMITTING, FAILED_FATAL},
    SUBMITTING: {SUBMITTED, FAILED_TRANSIENT, FAILED_FATAL},
    FAILED_TRANSIENT: {PENDING, FAILED_FATAL},
    SUBMITTED: {ACCEPTED, REJECTED},
    ACCEPTED: set(),
    REJECTED: set(),
    FAILED_FATAL: set(),
}

# Re-entering these is a harmless no-op; SUBMITTING is a claim and never is.
_IDEMPOTENT_STATES = {ACCEPTED, REJECTED, FAILED_FATAL, SUBMITTED, PENDING}


def can_transition(current: str, target: str) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())


class SubmissionStateMachine:
    """Applies guarded status transitions and records submission history."""

    def __init__(self, dispatcher=None):
        self.dispatcher = dispatcher or SignalNotificationDispatcher()

    def transition(
        self,
        invoice_id: int,
        target: str,
        *,
        detail: str | None = None,
        fiscal_number: str | None = None,
        track_id: str | None = None,
        raw_response: dict | None = None,
    ) -> Invoice:
        """
        Move an invoice to target.

        Args:
            invoice_id: Invoice primary key.
            target: Target status.
            detail: Reason text stored verbatim in status_detail.
            fiscal_number: Required for DRAFT -> PENDING; written only if none is set.
            track_id: Required for SUBMITTING -> SUBMITTED.
            raw_response: Authority payload stored on the SubmissionRecord.

        Raises:
            InvalidTransition: transition not allowed or its guard fails.
            Invoice.DoesNotExist: invoice was deleted.
        """
        with transaction.atomic():
            invoice = Invoice.objects.select_for_update().get(pk=invoice_id)
            previous = invoice.status

            if previous == target and target in _IDEMPOTENT_STATES:
                logger.debug("Idempotent transition ignored: invoice %s already %s", invoice_id, target)
                return invoice
            if not can_transition(previous, target):
                raise InvalidTransition(previous, target)

            now = timezone.now()
            update_fields = ["status", "updated_at"]
            self._apply_guards(invoice, previous, target, fiscal_number, track_id, update_fields)

            invoice.status = target
            if detail is not None:
                invoice.status_detail = detail
                update_fields.append("status_detail")
            if target == FAILED_TRANSIENT:
                invoice.retry_count += 1
                update_fields.append("retry_count")
            if target == SUBMITTED:
                invoice.track_id = track_id
                invoice.submitted_at = now
                update_fields += ["track_id", "submitted_at"]
                SubmissionRecord.objects.update_or_create(
                    invoice=invoice,
                    defaults={"track_id": track_id, "submitted_at": now, "raw_response": raw_response},
                )
            if target in (ACCEPTED, REJECTED):
                invoice.last_status_check_at = now
                update_fields.append("last_status_check_at")
                SubmissionRecord.objects.filter(invoice=invoice).update(
                    last_checked_at=now, last_status_response=raw_response,
                )
            invoice.save(update_fields=update_fields)

        logger.info(
            "Invoice %s: %s -> %s", invoice.pk, previous, target,
            extra={"invoice_id": invoice.pk, "fiscal_number": invoice.fiscal_number, "track_id": invoice.track_id},
        )
        self._notify(invoice, previous)
        return invoice

    def _apply_guards(self, invoice, previous, target, fiscal_number, track_id, update_fields):
        if previous == DRAFT and target == PENDING:
            if invoice.fiscal_number and fiscal_number and invoice.fiscal_number != fiscal_number:
                raise InvalidTransition(previous, target, "fiscal number already assigned")
            if not invoice.fiscal_number:
                if not fiscal_number:
                    raise InvalidTransition(previous, target, "fiscal number required")
                invoice.fiscal_number = fiscal_number
                update_fields.append("fiscal_number")
        elif previous == PENDING and target == SUBMITTING:
            if not invoice.fiscal_number:
                raise InvalidTransition(previous, target, "invoice has no fiscal number")
            if not invoice.signed_document:
                raise InvalidTransition(previous, target, "invoice is not signed")
        elif target == SUBMITTED and not track_id:
            raise InvalidTransition(previous, target, "track id required")

    def _notify(self, invoice, previous):
        try:
            self.dispatcher.notify_invoice_status_changed(invoice, previous_status=previous)
        except Exception as e:
            # Notifications are fire-and-forget; status is already committed
            logger.error("Notification failed for invoice %s: %s", invoice.pk, e, extra={"invoice_id": invoice.pk})

    def attach_signed_document(self, invoice_id: int, signed) -> Invoice:
        """Store the signed bytes and digest on a PENDING invoice that has not been signed yet."""
        with transaction.atomic():
            invoice = Invoice.objects.select_for_update().get(pk=invoice_id)
            if invoice.status != PENDING:
                raise InvalidTransition(invoice.status, invoice.status, "only PENDING invoices can be signed")
            if invoice.signed_document:
                raise InvalidTransition(invoice.status, invoice.status, "invoice is already signed")
            invoice.signed_document = signed.content.decode("utf-8")
            invoice.document_digest = signed.digest
            invoice.save(update_fields=["signed_document", "document_digest", "updated_at"])
        return invoice

    def record_status_check(self, invoice_id: int, raw_response: dict | None) -> None:
        """Stamp a status check that did not change the status (still processing)."""
        now = timezone.now()
        Invoice.objects.filter(pk=invoice_id).update(last_status_check_at=now)
        SubmissionRecord.objects.filter(invoice_id=invoice_id).update(
            last_checked_at=now, last_status_response=raw_response,
        )

    def record_attempt(
        self,
        invoice_id: int,
        outcome: str,
        *,
        status_code: int | None = None,
        error: str | Exception | None = None,
    ) -> SubmissionAttempt:
        """Append to the attempt log. Raises Invoice.DoesNotExist if the invoice was deleted."""
        with transaction.atomic():
            invoice = Invoice.objects.select_for_update().get(pk=invoice_id)
            attempt_no = SubmissionAttempt.objects.filter(invoice=invoice).count() + 1
            return SubmissionAttempt.objects.create(
                invoice=invoice,
                attempt_no=attempt_no,
                outcome=outcome,
                response_status_code=status_code,
                error_message="" if error is None else str(error),
            )


_default_machine = None


def transition(invoice_id: int, target: str, **kwargs) -> Invoice:
    """Module-level shortcut using the signal-based dispatcher."""
    global _default_machine
    if _default_machine is None:
        _default_machine = SubmissionStateMachine()
    return _default_machine.transition(invoice_id, target, **kwargs)
