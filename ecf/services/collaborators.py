"""
Contracts for the collaborators the fiscal core consumes, with Django-backed defaults.

The core depends on these protocols, not on the concrete implementations, so
tests and other deployments can swap them.
"""

import logging
from typing import Protocol

from ecf.models import Invoice
from ecf.services.drafts import Party
from ecf.signals import invoice_status_changed

logger = logging.getLogger("ecf")


class InvoiceStore(Protocol):
    def get_invoice(self, invoice_id: int) -> Invoice | None: ...

    def save_invoice(self, invoice: Invoice) -> Invoice: ...

    def update_invoice_status(self, invoice_id: int, status: str, detail: str = "") -> None: ...


class IssuerStore(Protocol):
    def get_issuer(self) -> Party: ...


class NotificationDispatcher(Protocol):
    def notify_invoice_status_changed(self, invoice: Invoice, previous_status: str | None = None) -> None: ...


class DjangoInvoiceStore:
    """Invoices persisted through the Django ORM."""

    def get_invoice(self, invoice_id: int) -> Invoice | None:
        return Invoice.objects.filter(pk=invoice_id).first()

    def save_invoice(self, invoice: Invoice) -> Invoice:
        invoice.save()
        return invoice

    def update_invoice_status(self, invoice_id: int, status: str, detail: str = "") -> None:
        # Delegates to the state machine so status writes stay in one place
        from ecf.services.submission_state_machine import transition

        transition(invoice_id, status, detail=detail)


class ConfiguredIssuerStore:
    """Issuer taken from the injected EcfConfig."""

    def __init__(self, config):
        self.config = config

    def get_issuer(self) -> Party:
        return self.config.issuer


class SignalNotificationDispatcher:
    """Fire-and-forget: sends invoice_status_changed; receiver errors are logged, never raised."""

    def notify_invoice_status_changed(self, invoice: Invoice, previous_status: str | None = None) -> None:
        results = invoice_status_changed.send_robust(
            sender=Invoice, invoice=invoice, previous_status=previous_status, status=invoice.status,
        )
        for receiver_fn, result in results:
            if isinstance(result, Exception):
                logger.error(
                    "Status notification receiver %r failed for invoice %s: %s",
                    receiver_fn, invoice.pk, result,
                    extra={"invoice_id": invoice.pk, "fiscal_number": invoice.fiscal_number},
                )
