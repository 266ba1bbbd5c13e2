"""HTTP and SDK error translation shared by provider and vector-store backends.

Provides:
- post_json: requests wrapper with timeouts that raise the kb_rag error
  taxonomy instead of requests exceptions
- translate_sdk_error: maps openai/anthropic SDK exceptions (same class layout) onto
  TransientProviderError / ProviderError

Upstream response bodies are logged but never placed in exception messages that may
reach end users.
"""
import logging
from typing import Any, Dict, Optional

import requests

from kb_rag.exceptions import ProviderError, TransientProviderError, is_transient_status

logger = logging.getLogger(__name__)

JSON_HEADERS = {"Content-Type": "application/json", "Accept": "application/json"}


def _raise_for_response(resp: requests.Response, backend: str, what: str) -> None:
    if resp.ok:
        return
    logger.error("%s %s failed: HTTP %d body=%s", backend, what, resp.status_code, resp.text[:500])
    exc_cls = TransientProviderError if is_transient_status(resp.status_code) else ProviderError
    raise exc_cls(f"{backend} {what} failed with HTTP {resp.status_code}", backend=backend, status_code=resp.status_code)


def _request(method: str, url: str, backend: str, what: str, timeout: float, **kwargs) -> Any:
    try:
        resp = requests.request(method, url, timeout=timeout, **kwargs)
    except (requests.Timeout, requests.ConnectionError) as e:
        raise TransientProviderError(f"{backend} {what} unreachable: {type(e).__name__}", backend=backend) from e
    except requests.RequestException as e:
        raise ProviderError(f"{backend} {what} request error: {type(e).__name__}", backend=backend) from e
    _raise_for_response(resp, backend, what)
    if not resp.content:
        return {}
    try:
        return resp.json()
    except ValueError as e:
        raise ProviderError(f"{backend} {what} returned invalid JSON", backend=backend) from e


def post_json(
    url: str,
    payload: Dict[str, Any],
    *,
    backend: str,
    what: str,
    timeout: float,
    headers: Optional[Dict[str, str]] = None,
) -> Any:
    """POST a JSON payload and return the decoded JSON body.

    Args:
        url: Absolute endpoint URL.
        payload: JSON-serializable request body.
        backend: Backend label used in logs and errors.
        what: Operation label used in logs and errors (e.g. "embeddings").
        timeout: Request timeout in seconds.
        headers: Extra headers merged over JSON_HEADERS.

    Returns:
        Any: Decoded JSON ({} for an empty body).
    """
    return _request(
        "POST", url, backend, what, timeout, json=payload, headers={**JSON_HEADERS, **(headers or {})}
    )


def translate_sdk_error(e: Exception, backend: str, what: str) -> ProviderError:
    """Map an openai/anthropic SDK exception onto the kb_rag taxonomy.

    Both SDKs expose APITimeoutError, APIConnectionError, RateLimitError and
    APIStatusError (with status_code); they are matched by class name so either SDK
    can be passed in.

    Args:
        e: Exception raised by the SDK.
        backend: Backend label.
        what: Operation label.

    Returns:
        ProviderError: Exception to raise (caller chains with `from e`).
    """
    names = {cls.__name__ for cls in type(e).__mro__}
    status = getattr(e, "status_code", None)
    logger.error("%s %s failed: %s", backend, what, type(e).__name__)
    if names & {"APITimeoutError", "APIConnectionError", "RateLimitError", "InternalServerError"}:
        return TransientProviderError(f"{backend} {what} failed: {type(e).__name__}", backend=backend, status_code=status)
    if status is not None and is_transient_status(status):
        return TransientProviderError(f"{backend} {what} failed with HTTP {status}", backend=backend, status_code=status)
    return ProviderError(f"{backend} {what} failed: {type(e).__name__}", backend=backend, status_code=status)


def translate_google_error(e: Exception, backend: str, what: str) -> ProviderError:
    """Map a google.api_core exception onto the kb_rag taxonomy (see translate_sdk_error)."""
    from google.api_core import exceptions as gexc

    logger.error("%s %s failed: %s", backend, what, type(e).__name__)
    status = getattr(e, "code", None)
    status = status if isinstance(status, int) else None
    if isinstance(e, (gexc.ServerError, gexc.TooManyRequests, gexc.DeadlineExceeded, gexc.RetryError)):
        return TransientProviderError(f"{backend} {what} failed: {type(e).__name__}", backend=backend, status_code=status)
    return ProviderError(f"{backend} {what} failed: {type(e).__name__}", backend=backend, status_code=status)
