"""
Authority API call logging utility.
Stores masked request/response payloads, status codes, track ids and errors for audit.
"""

import json
import logging

from ecf.models import AuthorityApiLog
from ecf.utils import mask_sensitive_fields

logger = logging.getLogger("ecf")

_MAX_RAW_LENGTH = 10000


def _safe_json(value):
    """Convert value to a JSON-serializable dict for JSONField storage."""
    if value is None:
        return None
    if isinstance(value, dict):
        return value
    if hasattr(value, "text"):
        text = value.text or ""
        try:
            return json.loads(text) if text else {}
        except (json.JSONDecodeError, TypeError):
            return {"raw": text[:_MAX_RAW_LENGTH]}
    return {"raw": str(value)[:_MAX_RAW_LENGTH]}


def log_authority_call(
    endpoint: str,
    method: str,
    request_payload: dict | None = None,
    response=None,
    error: str | Exception | None = None,
    track_id: str | None = None,
    status_code: int | None = None,
) -> AuthorityApiLog:
    """
    Log an authority API call to the database for audit and debugging.

    Args:
        endpoint: API endpoint path (e.g. "/recepcion").
        method: HTTP method.
        request_payload: Request summary as dict, or None. Masked before storage.
        response: requests.Response or dict, or None.
        error: Error message string or Exception.
        track_id: Authority tracking id when known.
        status_code: Explicit status code when there is no response object (e.g. 5xx raised as error).

    Returns:
        AuthorityApiLog: The created log record.
    """
    request_json = _safe_json(request_payload) if request_payload is not None else {}
    request_json = mask_sensitive_fields(request_json)

    response_json = None
    if response is not None:
        if getattr(response, "status_code", None) is not None:
            status_code = response.status_code
        response_json = mask_sensitive_fields(_safe_json(response))

    error_message = None
    if error is not None:
        error_message = error if isinstance(error, str) else str(error)

    log_entry = AuthorityApiLog.objects.create(
        endpoint=endpoint,
        method=method.upper(),
        request_payload=request_json,
        response_payload=response_json,
        status_code=status_code,
        error_message=error_message,
        track_id=track_id or "",
    )
    logger.info(
        "Authority call logged: %s %s -> %s",
        method, endpoint, status_code or error_message or "unknown",
        extra={"endpoint": endpoint, "status_code": status_code, "track_id": track_id},
    )
    return log_entry
