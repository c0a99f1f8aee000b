"""
Per-invoice lease lock in the Django cache.
At most one worker submits or polls a given invoice at a time; other invoices proceed in parallel.
"""

import logging
import uuid
from contextlib import contextmanager

from django.core.cache import cache

from ecf.errors import InvoiceBusy

logger = logging.getLogger("ecf")

LOCK_KEY = "ecf:invoice-lock:{invoice_id}"


@contextmanager
def invoice_lock(invoice_id: int, timeout: int = 120):
    """
    Hold the lease for invoice_id for the duration of the block.
    Raises InvoiceBusy immediately if another holder has it.
    The lease expires after timeout seconds so a crashed worker cannot wedge the invoice.
    """
    key = LOCK_KEY.format(invoice_id=invoice_id)
    token = uuid.uuid4().hex
    if not cache.add(key, token, timeout):
        raise InvoiceBusy(f"Invoice {invoice_id} is being processed by another worker")
    try:
        yield
    finally:
        if cache.get(key) == token:
            cache.delete(key)
        else:
            logger.warning("Lock for invoice %s expired before release", invoice_id, extra={"invoice_id": invoice_id})
