"""
Secure HTTP transport for the tax authority.
Pooled session, explicit timeout on every call, strict TLS (never verify=False).
Timeouts, connection failures, any other transport error and 5xx responses surface as TransientNetworkError;
retry policy lives in the submission pipeline, not here.
"""

import logging

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ecf.errors import TransientNetworkError

logger = logging.getLogger("ecf")

DEFAULT_TIMEOUT = 30
DEFAULT_POOL_SIZE = 10


def pooled_session(pool_size: int = DEFAULT_POOL_SIZE) -> requests.Session:
    """
    Create a session with a bounded connection pool.
    Transport-level retries are disabled so a POST is never replayed behind the caller's back.
    """
    session = requests.Session()
    adapter = HTTPAdapter(
        pool_connections=pool_size,
        pool_maxsize=pool_size,
        pool_block=True,
        max_retries=Retry(total=0, connect=0, read=0, redirect=0, raise_on_status=False),
    )
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


def authority_request(
    session: requests.Session,
    method: str,
    url: str,
    *,
    json: dict | None = None,
    data: str | bytes | None = None,
    headers: dict | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> requests.Response:
    """
    Make one authority request. Returns the response for any status below 500.
    Raises TransientNetworkError on timeout, connection failure, other transport errors or a 5xx status.
    """
    kwargs = {"method": method, "url": url, "headers": headers, "timeout": timeout, "verify": True}
    if data is not None:
        kwargs["data"] = data
    else:
        kwargs["json"] = json
    try:
        response = session.request(**kwargs)
    except requests.Timeout as e:
        logger.warning("Authority request timed out: %s %s (%ss)", method, url, timeout, extra={"endpoint": url})
        raise TransientNetworkError(f"Timeout after {timeout}s: {e}") from e
    except requests.ConnectionError as e:
        logger.warning("Authority connection failed: %s %s: %s", method, url, e, extra={"endpoint": url})
        raise TransientNetworkError(f"Connection error: {e}") from e
    except requests.RequestException as e:
        # Reset mid-body, undecodable content, redirect loops
        logger.warning("Authority transport failure: %s %s: %r", method, url, e, extra={"endpoint": url})
        raise TransientNetworkError(f"Transport error: {e.__class__.__name__}: {e}") from e

    if response.status_code >= 500:
        logger.warning(
            "Authority returned %s for %s %s", response.status_code, method, url,
            extra={"endpoint": url, "status_code": response.status_code},
        )
        raise TransientNetworkError(
            f"Authority server error {response.status_code}", status_code=response.status_code
        )
    return response
