"""
Celery tasks for the e-CF engine.

Tasks: submit_invoice_task, refresh_status_task, poll_submitted_task, retry_pending_task.
Each returns a JSON-serializable dict: {"success": bool, ...} or {"success": False, "error": str}.
"""

import logging
from typing import Any

from celery import shared_task

from ecf.errors import EcfError
from ecf.models import Invoice
from ecf.services.submission_service import default_pipeline

logger = logging.getLogger("ecf")


@shared_task(bind=True, name="ecf.submit_invoice_task")
def submit_invoice_task(self, invoice_id: int) -> dict[str, Any]:
    """Submit one numbered, signed invoice. Returns {"success": True, "status": ...} or an error dict."""
    try:
        status = default_pipeline().submit_invoice(invoice_id)
    except Invoice.DoesNotExist:
        return {"success": False, "error": f"Invoice {invoice_id} not found"}
    except EcfError as e:
        logger.warning("submit_invoice_task(%s) failed: %s", invoice_id, e, extra={"invoice_id": invoice_id})
        return {"success": False, "error": str(e)}
    return {"success": True, "invoice_id": invoice_id, "status": status}


@shared_task(bind=True, name="ecf.refresh_status_task")
def refresh_status_task(self, invoice_id: int) -> dict[str, Any]:
    """Poll the authority once for a SUBMITTED invoice."""
    try:
        status = default_pipeline().refresh_status(invoice_id)
    except Invoice.DoesNotExist:
        return {"success": False, "error": f"Invoice {invoice_id} not found"}
    except EcfError as e:
        logger.warning("refresh_status_task(%s) failed: %s", invoice_id, e, extra={"invoice_id": invoice_id})
        return {"success": False, "error": str(e)}
    return {"success": True, "invoice_id": invoice_id, "status": status}


@shared_task(bind=True, name="ecf.poll_submitted_task")
def poll_submitted_task(self) -> dict[str, Any]:
    """Periodic: refresh every SUBMITTED invoice."""
    summary = default_pipeline().poll_submitted()
    logger.info("Status poll: %s", summary)
    return {"success": True, **summary}


@shared_task(bind=True, name="ecf.retry_pending_task")
def retry_pending_task(self) -> dict[str, Any]:
    """Periodic: resubmit invoices left in PENDING or FAILED_TRANSIENT."""
    summary = default_pipeline().retry_pending()
    logger.info("Retry run: %s", summary)
    return {"success": True, **summary}
