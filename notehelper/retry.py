"""HTTP request with retry on transient failures, shared by both API clients."""

import logging
import time

import requests

from notehelper import config

log = logging.getLogger(__name__)

MAX_RETRIES = 3
_RETRY_DELAY_BASE = 2  # seconds; exponential: 2, 4, 8
_RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def request_with_retry(
    method: str, url: str, service: str = "Server", max_retries: int = MAX_RETRIES, **kwargs,
) -> requests.Response:
    """Retries on ConnectionError, Timeout, and 5xx/429 with exponential backoff.

    4xx client errors (except 429) propagate immediately. *service* only
    names the remote side in log messages.
    """
    last_exc = None
    for attempt in range(max_retries + 1):
        try:
            resp = requests.request(method, url, timeout=config.HTTP_TIMEOUT, **kwargs)
            _handle_backoff(resp, service)

            if resp.status_code in _RETRYABLE_STATUS and attempt < max_retries:
                delay = _RETRY_DELAY_BASE * (2 ** attempt)
                log.warning(
                    "%s returned %d, retrying in %ds (%d/%d)",
                    service, resp.status_code, delay, attempt + 1, max_retries,
                )
                time.sleep(delay)
                continue

            resp.raise_for_status()
            return resp

        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as exc:
            last_exc = exc
            if attempt < max_retries:
                delay = _RETRY_DELAY_BASE * (2 ** attempt)
                log.warning(
                    "%s request failed (%s), retrying in %ds (%d/%d)",
                    service, type(exc).__name__, delay, attempt + 1, max_retries,
                )
                time.sleep(delay)
            else:
                raise

    raise last_exc  # type: ignore[misc]


def _handle_backoff(resp: requests.Response, service: str) -> None:
    backoff = resp.headers.get("Backoff") or resp.headers.get("Retry-After")
    if backoff:
        try:
            wait = int(backoff)
        except ValueError:
            return
        log.warning("%s asked to back off for %d seconds", service, wait)
        time.sleep(wait)
