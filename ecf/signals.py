"""Signals for invoice status notifications and deletion auditing."""

import logging

from django.db.models.signals import pre_delete
from django.dispatch import Signal, receiver

from .models import Invoice

logger = logging.getLogger("ecf")

# Sent after every status transition. kwargs: invoice, previous_status, status
invoice_status_changed = Signal()


@receiver(pre_delete, sender=Invoice)
def log_numbered_invoice_deletion(sender, instance, **kwargs):
    """A deleted invoice that already holds a fiscal number leaves a gap in the sequence."""
    if instance.fiscal_number:
        logger.warning(
            "Invoice %s deleted in status %s; fiscal number %s will not be reused",
            instance.pk, instance.status, instance.fiscal_number,
            extra={"invoice_id": instance.pk, "fiscal_number": instance.fiscal_number},
        )
