"""
Tax authority (DGII) e-CF client.

Wire protocol:
    POST {base}/auth/token          {username, password, fiscalId} -> {token, expiresIn?}
    POST {base}/recepcion           signed XML, Bearer token        -> {trackId, message}
    GET  {base}/consulta/{trackId}  Bearer token                    -> {status, message}

Every call carries an explicit timeout and is audited to AuthorityApiLog with
masked payloads.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Protocol
from urllib.parse import quote

from django.utils import timezone

from ecf.errors import AuthenticationFailed, AuthorityRejection, TransientNetworkError
from ecf.services.api_logger import log_authority_call
from ecf.services.http_client import authority_request, pooled_session

logger = logging.getLogger("ecf")

AUTH_ENDPOINT = "/auth/token"
SUBMIT_ENDPOINT = "/recepcion"
STATUS_ENDPOINT = "/consulta/{track_id}"

TOKEN_REFRESH_MARGIN = timedelta(seconds=60)

STATUS_ACCEPTED = "ACCEPTED"
STATUS_REJECTED = "REJECTED"
STATUS_SUBMITTED = "SUBMITTED"


@dataclass(frozen=True)
class SubmitResult:
    track_id: str
    message: str = ""
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class StatusResult:
    """Status as reported by the authority, mapped to ACCEPTED / REJECTED / SUBMITTED."""

    status: str
    detail: str = ""
    authority_status: str = ""
    raw: dict = field(default_factory=dict)


@dataclass
class AuthToken:
    value: str
    expires_at: datetime

    @property
    def is_expired(self) -> bool:
        return timezone.now() >= self.expires_at - TOKEN_REFRESH_MARGIN


class AuthorityClientProtocol(Protocol):
    def get_token(self) -> str: ...

    def invalidate_token(self) -> None: ...

    def submit(self, signed, token: str, fiscal_number: str, issuer_fiscal_id: str) -> SubmitResult: ...

    def check_status(self, track_id: str, token: str) -> StatusResult: ...


def map_status(authority_status: str | None, status_map: dict) -> str:
    """Map the authority's vocabulary to a canonical status; unknown values mean still processing."""
    key = (authority_status or "").strip().upper()
    return status_map.get(key, STATUS_SUBMITTED)


def _json_body(response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {"data": data}


def _rejection_reason(response, body: dict) -> str:
    for key in ("message", "mensaje", "error", "detail"):
        if body.get(key):
            return str(body[key])
    if body.get("errors"):
        return str(body["errors"])
    return (response.text or f"HTTP {response.status_code}").strip()


class AuthorityClient:
    """HTTP client for the authority with a cached bearer token."""

    def __init__(self, config, session=None):
        self.config = config
        self.base_url = config.authority_base_url.rstrip("/")
        self.timeout = config.http_timeout
        self.session = session or pooled_session(config.http_pool_size)
        self._token: AuthToken | None = None
        self._token_lock = threading.Lock()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def authenticate(self, credentials: dict | None = None) -> str:
        """
        Obtain a fresh bearer token and cache it.

        Args:
            credentials: {username, password, fiscalId}; defaults to the configured ones.

        Raises:
            AuthenticationFailed: credentials refused (4xx) or no token in the response.
            TransientNetworkError: timeout, connection error or 5xx.
        """
        payload = credentials or {
            "username": self.config.authority_username,
            "password": self.config.authority_password,
            "fiscalId": self.config.issuer.fiscal_id,
        }
        try:
            response = authority_request(
                self.session, "POST", self._url(AUTH_ENDPOINT), json=payload, timeout=self.timeout,
            )
        except TransientNetworkError as e:
            log_authority_call(AUTH_ENDPOINT, "POST", payload, error=e, status_code=e.status_code)
            raise

        body = _json_body(response)
        log_authority_call(AUTH_ENDPOINT, "POST", payload, response=response)
        if response.status_code >= 300:
            raise AuthenticationFailed(_rejection_reason(response, body), status_code=response.status_code)
        token = body.get("token")
        if not token:
            raise AuthenticationFailed("Authority response has no token", status_code=response.status_code)

        ttl = body.get("expiresIn") or self.config.token_ttl_seconds
        try:
            ttl = int(ttl)
        except (TypeError, ValueError):
            ttl = self.config.token_ttl_seconds
        self._token = AuthToken(value=token, expires_at=timezone.now() + timedelta(seconds=ttl))
        logger.info("Authority token obtained (ttl %ss)", ttl, extra={"endpoint": AUTH_ENDPOINT})
        return token

    def get_token(self) -> str:
        """Return the cached token, refreshing it shortly before expiry."""
        with self._token_lock:
            if self._token is None or self._token.is_expired:
                self.authenticate()
            return self._token.value

    def invalidate_token(self) -> None:
        with self._token_lock:
            self._token = None

    def submit(self, signed, token: str, fiscal_number: str, issuer_fiscal_id: str) -> SubmitResult:
        """
        Send a signed document for reception.

        Raises:
            AuthenticationFailed: 401; the cached token is dropped, the document was not judged.
            AuthorityRejection: any other 4xx; the reason text is kept verbatim.
            TransientNetworkError: timeout, connection error, 5xx, or a 2xx without trackId.
        """
        headers = {
            "Content-Type": "application/xml",
            "Authorization": f"Bearer {token}",
            "X-Fiscal-Id": issuer_fiscal_id,
            "Idempotency-Key": fiscal_number,
        }
        summary = {
            "fiscal_number": fiscal_number,
            "issuer_fiscal_id": issuer_fiscal_id,
            "document_bytes": len(signed.content),
            "digest": getattr(signed, "digest", ""),
        }
        try:
            response = authority_request(
                self.session, "POST", self._url(SUBMIT_ENDPOINT),
                data=signed.content, headers=headers, timeout=self.timeout,
            )
        except TransientNetworkError as e:
            log_authority_call(SUBMIT_ENDPOINT, "POST", summary, error=e, status_code=e.status_code)
            raise

        body = _json_body(response)
        track_id = body.get("trackId") or body.get("track_id")
        log_authority_call(SUBMIT_ENDPOINT, "POST", summary, response=response, track_id=track_id)

        if response.status_code == 401:
            self.invalidate_token()
            raise AuthenticationFailed(_rejection_reason(response, body), status_code=401)
        if 400 <= response.status_code < 500:
            reason = _rejection_reason(response, body)
            logger.warning(
                "Authority rejected %s: %s", fiscal_number, reason,
                extra={"fiscal_number": fiscal_number, "status_code": response.status_code},
            )
            raise AuthorityRejection(reason, status_code=response.status_code)
        if not 200 <= response.status_code < 300:
            raise TransientNetworkError(
                f"Unexpected status {response.status_code} from reception", status_code=response.status_code
            )
        if not track_id:
            raise TransientNetworkError("Reception response has no trackId", status_code=response.status_code)

        logger.info(
            "Submitted %s, track id %s", fiscal_number, track_id,
            extra={"fiscal_number": fiscal_number, "track_id": track_id},
        )
        return SubmitResult(track_id=str(track_id), message=str(body.get("message") or ""), raw=body)

    def check_status(self, track_id: str, token: str) -> StatusResult:
        """
        Poll the processing status of a submitted document.

        Raises:
            AuthenticationFailed: 401; the cached token is dropped.
            AuthorityRejection: any other 4xx on the status query itself.
            TransientNetworkError: timeout, connection error or 5xx.
        """
        endpoint = STATUS_ENDPOINT.format(track_id=quote(track_id, safe=""))
        headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        try:
            response = authority_request(
                self.session, "GET", self._url(endpoint), headers=headers, timeout=self.timeout,
            )
        except TransientNetworkError as e:
            log_authority_call(endpoint, "GET", {"track_id": track_id}, error=e, track_id=track_id,
                               status_code=e.status_code)
            raise

        body = _json_body(response)
        log_authority_call(endpoint, "GET", {"track_id": track_id}, response=response, track_id=track_id)
        if response.status_code == 401:
            self.invalidate_token()
            raise AuthenticationFailed(_rejection_reason(response, body), status_code=401)
        if 400 <= response.status_code < 500:
            raise AuthorityRejection(_rejection_reason(response, body), status_code=response.status_code)
        if not 200 <= response.status_code < 300:
            raise TransientNetworkError(
                f"Unexpected status {response.status_code} from status query", status_code=response.status_code
            )

        authority_status = str(body.get("status") or body.get("estado") or "")
        return StatusResult(
            status=map_status(authority_status, self.config.status_map),
            detail=str(body.get("message") or body.get("mensaje") or ""),
            authority_status=authority_status,
            raw=body,
        )
