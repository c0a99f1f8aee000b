"""
Fiscal number (e-NCF) allocation: E + two-digit document type + eight-digit sequence.

Counters advance with a conditional UPDATE (compare-and-swap) so concurrent
callers never receive the same number. A number that is allocated but never
used leaves an explainable gap; it is never handed out again.
"""

import logging
import random
import re
import time

from django.db import transaction
from django.db.utils import IntegrityError

from ecf.errors import AllocationConflict, AllocationFailed
from ecf.models import SequenceCounter

logger = logging.getLogger("ecf")

_MAX_SEQUENCE_RETRIES = 5
_BACKOFF_MIN_SECONDS = 0.010
_BACKOFF_MAX_SECONDS = 0.100
_SEQUENCE_DIGITS = 8

FISCAL_NUMBER_RE = re.compile(r"^E(\d{2})(\d{8})$")
_DOCUMENT_TYPE_RE = re.compile(r"^\d{2}$")


def format_fiscal_number(document_type: str, sequence: int) -> str:
    """Format a fiscal number from type and sequence. Does not advance the counter."""
    _check_document_type(document_type)
    if sequence < 1 or sequence >= 10 ** _SEQUENCE_DIGITS:
        raise ValueError(f"Sequence {sequence} out of range")
    return f"E{document_type}{sequence:0{_SEQUENCE_DIGITS}d}"


def is_valid_fiscal_number(value: str) -> bool:
    return bool(value) and FISCAL_NUMBER_RE.match(value) is not None


def peek(document_type: str) -> int:
    """Return the sequence the next allocate() would use, without mutating anything."""
    _check_document_type(document_type)
    value = (
        SequenceCounter.objects.filter(document_type=document_type)
        .values_list("next_value", flat=True)
        .first()
    )
    return value or 1


def allocate(document_type: str) -> str:
    """
    Allocate the next fiscal number for a document type.
    Retries lost compare-and-swap races with jittered backoff; raises AllocationFailed
    after _MAX_SEQUENCE_RETRIES attempts.
    """
    _check_document_type(document_type)
    for attempt in range(1, _MAX_SEQUENCE_RETRIES + 1):
        try:
            sequence = _try_allocate(document_type)
        except AllocationConflict:
            if attempt == _MAX_SEQUENCE_RETRIES:
                break
            delay = _backoff(attempt)
            logger.debug(
                "Sequence conflict for type %s (attempt %d/%d). Retrying in %.3fs.",
                document_type, attempt, _MAX_SEQUENCE_RETRIES, delay,
            )
            time.sleep(delay)
            continue
        fiscal_number = format_fiscal_number(document_type, sequence)
        logger.info("Allocated fiscal number %s", fiscal_number, extra={"fiscal_number": fiscal_number})
        return fiscal_number
    logger.error("Sequence allocation for type %s failed after %d attempts", document_type, _MAX_SEQUENCE_RETRIES)
    raise AllocationFailed(
        f"allocate({document_type}): too many retries (concurrent contention)"
    )


def _try_allocate(document_type: str) -> int:
    with transaction.atomic():
        current = _read_counter(document_type)
        updated = SequenceCounter.objects.filter(
            document_type=document_type, next_value=current
        ).update(next_value=current + 1)
        if updated != 1:
            raise AllocationConflict(f"Counter for type {document_type} moved past {current}")
        return current


def _read_counter(document_type: str) -> int:
    value = (
        SequenceCounter.objects.filter(document_type=document_type)
        .values_list("next_value", flat=True)
        .first()
    )
    if value is not None:
        return value
    try:
        with transaction.atomic():
            SequenceCounter.objects.create(document_type=document_type, next_value=1)
    except IntegrityError as exc:
        # Another process created the row first
        raise AllocationConflict(str(exc)) from exc
    return 1


def _backoff(attempt: int) -> float:
    ceiling = min(_BACKOFF_MAX_SECONDS, _BACKOFF_MIN_SECONDS * (2 ** attempt))
    return random.uniform(_BACKOFF_MIN_SECONDS, ceiling)


def _check_document_type(document_type: str) -> None:
    if not isinstance(document_type, str) or not _DOCUMENT_TYPE_RE.match(document_type):
        raise ValueError(f"Document type must be two digits, got {document_type!r}")
