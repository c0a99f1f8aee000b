"""Tests for submission status transitions, guards and notifications."""

from decimal import Decimal
from unittest.mock import MagicMock

from django.test import TestCase

from ecf.errors import ImmutableInvoiceError, InvalidTransition
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
    SubmissionAttempt,
    SubmissionRecord,
)
from ecf.services.collaborators import DjangoInvoiceStore, SignalNotificationDispatcher
from ecf.services.submission_state_machine import VALID_TRANSITIONS, SubmissionStateMachine, can_transition
from ecf.signals import invoice_status_changed


def _invoice(status=DRAFT, **fields):
    values = {
        "recipient_name": "Hotel Playa Dorada",
        "recipient_fiscal_id": "101000007",
        "subtotal": Decimal("1000.00"),
        "tax": Decimal("180.00"),
        "total": Decimal("1180.00"),
        "status": status,
    }
    values.update(fields)
    return Invoice.objects.create(**values)


class TransitionTableTests(TestCase):
    def test_terminal_states_have_no_exits(self):
        for terminal in (ACCEPTED, REJECTED, FAILED_FATAL):
            self.assertEqual(VALID_TRANSITIONS[terminal], set())

    def test_can_transition(self):
        self.assertTrue(can_transition(DRAFT, PENDING))
        self.assertTrue(can_transition(SUBMITTING, FAILED_TRANSIENT))
        self.assertFalse(can_transition(DRAFT, SUBMITTED))
        self.assertFalse(can_transition(SUBMITTED, PENDING))
        self.assertFalse(can_transition(ACCEPTED, REJECTED))


class SubmissionStateMachineTests(TestCase):
    def setUp(self):
        self.dispatcher = MagicMock()
        self.machine = SubmissionStateMachine(self.dispatcher)

    def test_draft_to_pending_assigns_fiscal_number(self):
        invoice = _invoice()
        updated = self.machine.transition(invoice.pk, PENDING, fiscal_number="E0100000001")
        self.assertEqual(updated.status, PENDING)
        self.assertEqual(Invoice.objects.get(pk=invoice.pk).fiscal_number, "E0100000001")
        self.dispatcher.notify_invoice_status_changed.assert_called_once()
        _, kwargs = self.dispatcher.notify_invoice_status_changed.call_args
        self.assertEqual(kwargs["previous_status"], DRAFT)

    def test_pending_requires_fiscal_number(self):
        invoice = _invoice()
        with self.assertRaises(InvalidTransition):
            self.machine.transition(invoice.pk, PENDING)

    def test_fiscal_number_never_replaced(self):
        invoice = _invoice(fiscal_number="E0100000001")
        with self.assertRaises(InvalidTransition):
            self.machine.transition(invoice.pk, PENDING, fiscal_number="E0100000002")

    def test_submitting_requires_signature(self):
        invoice = _invoice(PENDING, fiscal_number="E0100000001")
        with self.assertRaises(InvalidTransition):
            self.machine.transition(invoice.pk, SUBMITTING)

    def test_submitted_requires_track_id_and_records_submission(self):
        invoice = _invoice(SUBMITTING, fiscal_number="E0100000001", signed_document="<ECF/>")
        with self.assertRaises(InvalidTransition):
            self.machine.transition(invoice.pk, SUBMITTED)
        self.machine.transition(invoice.pk, SUBMITTED, track_id="TRK-1", raw_response={"trackId": "TRK-1"})
        invoice.refresh_from_db()
        self.assertEqual(invoice.track_id, "TRK-1")
        self.assertIsNotNone(invoice.submitted_at)
        self.assertEqual(SubmissionRecord.objects.get(invoice=invoice).raw_response, {"trackId": "TRK-1"})

    def test_illegal_transition_rejected(self):
        invoice = _invoice()
        with self.assertRaises(InvalidTransition) as ctx:
            self.machine.transition(invoice.pk, SUBMITTED, track_id="TRK-1")
        self.assertEqual(ctx.exception.current, DRAFT)
        self.assertEqual(Invoice.objects.get(pk=invoice.pk).status, DRAFT)
        self.dispatcher.notify_invoice_status_changed.assert_not_called()

    def test_terminal_states_never_regress(self):
        for terminal in (ACCEPTED, REJECTED, FAILED_FATAL):
            invoice = _invoice(terminal, fiscal_number=None)
            for target in (PENDING, SUBMITTING, SUBMITTED, FAILED_TRANSIENT):
                with self.assertRaises(InvalidTransition):
                    self.machine.transition(invoice.pk, target, track_id="TRK", fiscal_number="E0100000009")
            self.assertEqual(Invoice.objects.get(pk=invoice.pk).status, terminal)

    def test_reentering_terminal_state_is_noop(self):
        invoice = _invoice(ACCEPTED)
        result = self.machine.transition(invoice.pk, ACCEPTED, detail="again")
        self.assertEqual(result.status, ACCEPTED)
        self.assertEqual(Invoice.objects.get(pk=invoice.pk).status_detail, "")
        self.dispatcher.notify_invoice_status_changed.assert_not_called()

    def test_submitting_is_never_reentered(self):
        invoice = _invoice(SUBMITTING, fiscal_number="E0100000001", signed_document="<ECF/>")
        with self.assertRaises(InvalidTransition):
            self.machine.transition(invoice.pk, SUBMITTING)

    def test_transient_failure_counts_retry(self):
        invoice = _invoice(SUBMITTING, fiscal_number="E0100000001", signed_document="<ECF/>")
        self.machine.transition(invoice.pk, FAILED_TRANSIENT, detail="Timeout")
        self.machine.transition(invoice.pk, PENDING)
        invoice.refresh_from_db()
        self.assertEqual(invoice.retry_count, 1)
        self.assertEqual(invoice.status, PENDING)
        self.assertEqual(invoice.fiscal_number, "E0100000001")

    def test_detail_stored_verbatim(self):
        invoice = _invoice(SUBMITTED, fiscal_number="E0100000001", track_id="TRK-1")
        self.machine.transition(invoice.pk, REJECTED, detail="Error 145: RNC comprador inválido")
        self.assertEqual(Invoice.objects.get(pk=invoice.pk).status_detail, "Error 145: RNC comprador inválido")

    def test_dispatcher_failure_does_not_undo_transition(self):
        self.dispatcher.notify_invoice_status_changed.side_effect = RuntimeError("mail server down")
        invoice = _invoice(SUBMITTED, fiscal_number="E0100000001", track_id="TRK-1")
        self.machine.transition(invoice.pk, ACCEPTED)
        self.assertEqual(Invoice.objects.get(pk=invoice.pk).status, ACCEPTED)

    def test_attach_signed_document_once(self):
        invoice = _invoice(PENDING, fiscal_number="E0100000001")
        signed = MagicMock(content=b"<ECF>signed</ECF>", digest="abc=")
        self.machine.attach_signed_document(invoice.pk, signed)
        self.assertEqual(Invoice.objects.get(pk=invoice.pk).signed_document, "<ECF>signed</ECF>")
        with self.assertRaises(InvalidTransition):
            self.machine.attach_signed_document(invoice.pk, signed)

    def test_record_attempt_numbers_sequentially(self):
        invoice = _invoice(PENDING, fiscal_number="E0100000001")
        self.machine.record_attempt(invoice.pk, "TRANSIENT", status_code=503, error="Service Unavailable")
        self.machine.record_attempt(invoice.pk, "SUBMITTED", status_code=200)
        attempts = list(SubmissionAttempt.objects.filter(invoice=invoice).values_list("attempt_no", "outcome"))
        self.assertEqual(attempts, [(1, "TRANSIENT"), (2, "SUBMITTED")])


class DjangoInvoiceStoreTests(TestCase):
    def test_status_updates_go_through_state_machine(self):
        store = DjangoInvoiceStore()
        invoice = _invoice(SUBMITTED, fiscal_number="E0100000001", track_id="TRK-1")
        store.update_invoice_status(invoice.pk, ACCEPTED, detail="Aceptado")
        self.assertEqual(store.get_invoice(invoice.pk).status, ACCEPTED)
        with self.assertRaises(InvalidTransition):
            store.update_invoice_status(invoice.pk, PENDING)

    def test_missing_invoice(self):
        self.assertIsNone(DjangoInvoiceStore().get_invoice(999))


class SignalDispatcherTests(TestCase):
    def test_receiver_errors_are_swallowed(self):
        received = []

        def failing(sender, **kwargs):
            raise RuntimeError("receiver broke")

        def recording(sender, invoice, previous_status, status, **kwargs):
            received.append((previous_status, status))

        invoice_status_changed.connect(failing)
        invoice_status_changed.connect(recording)
        self.addCleanup(invoice_status_changed.disconnect, failing)
        self.addCleanup(invoice_status_changed.disconnect, recording)

        machine = SubmissionStateMachine(SignalNotificationDispatcher())
        invoice = _invoice()
        machine.transition(invoice.pk, PENDING, fiscal_number="E0100000001")
        self.assertEqual(received, [(DRAFT, PENDING)])


class InvoiceLineImmutabilityTests(TestCase):
    def test_lines_editable_before_signing(self):
        invoice = _invoice(PENDING, fiscal_number="E0100000001")
        line = InvoiceLine.objects.create(invoice=invoice, line_number=1, description="Fumigación",
                                          quantity=1, unit_price=Decimal("1000.00"))
        line.description = "Fumigación general"
        line.save()

    def test_lines_frozen_after_signing(self):
        invoice = _invoice(PENDING, fiscal_number="E0100000001")
        line = InvoiceLine.objects.create(invoice=invoice, line_number=1, description="Fumigación",
                                          quantity=1, unit_price=Decimal("1000.00"))
        Invoice.objects.filter(pk=invoice.pk).update(signed_document="<ECF>signed</ECF>")
        line.unit_price = Decimal("1.00")
        with self.assertRaises(ImmutableInvoiceError):
            line.save()
        with self.assertRaises(ImmutableInvoiceError):
            line.delete()
        with self.assertRaises(ImmutableInvoiceError):
            InvoiceLine.objects.create(invoice=invoice, line_number=2, description="Extra",
                                       quantity=1, unit_price=Decimal("5.00"))
