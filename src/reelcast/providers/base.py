"""Shared HTTP plumbing for the external provider clients."""

import logging
from typing import Any, Dict, Optional

import httpx

from ..errors import PollTimeout, TerminalProviderError, TransientProviderError

logger = logging.getLogger(__name__)

# Retrying these can succeed; any other 4xx will fail the same way again
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429})


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS_CODES or status_code >= 500


def _error_detail(response: httpx.Response) -> str:
    """Best-effort error message from a JSON or text error body."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error)
        if error:
            return str(error)
        return str(body.get("message") or body)[:200]
    return str(body)[:200]


class HTTPProviderClient:
    """Wraps an ``httpx.Client`` and maps its failures onto the error taxonomy.

    - timeouts, connection errors, 408/425/429 and 5xx -> TransientProviderError
    - other 4xx -> TerminalProviderError
    - a timeout on a request sent with ``poll=True`` -> PollTimeout
    """

    provider_name = "provider"

    def __init__(
        self,
        base_url: str,
        timeout_s: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout_s,
            headers=headers or {},
            transport=transport,
        )

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def close(self) -> None:
        self._client.close()

    def _request(
        self,
        method: str,
        path: str,
        timeout_s: Optional[float] = None,
        poll: bool = False,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        if timeout_s is not None:
            kwargs["timeout"] = timeout_s
        try:
            r = self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            if poll:
                raise PollTimeout(f"{self.provider_name}: {method} {path} timed out") from e
            raise TransientProviderError(f"{self.provider_name}: {method} {path} timed out") from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"{self.provider_name}: {method} {path}: {e}") from e

        if r.is_error:
            detail = _error_detail(r)
            message = f"{self.provider_name}: {method} {path} -> HTTP {r.status_code}: {detail}"
            if is_retryable_status(r.status_code):
                raise TransientProviderError(message)
            raise TerminalProviderError(message)

        try:
            return r.json()
        except ValueError as e:
            raise TransientProviderError(
                f"{self.provider_name}: {method} {path} returned a non-JSON body"
            ) from e
