"""
Lightweight BPIQ API client.

One call fetches one page of a paginated collection:

    GET <base>/<resource>/?limit=<n>&offset=<m>
    Authorization: Token <key>

Failures are classified so callers can tell a bad credential (stop now)
from a flaky network (try again later).
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional

import requests

from ..config import get_api_key
from .retry import RetryPolicy
from .types import Page, RecordValidationError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.bpiq.com/api/v1"

RESOURCE_PATHS: Dict[str, str] = {
    "drugs": "drugs/",
    "historical": "historical-catalysts/screener/",
}

FATAL_STATUS_CODES = (401, 403)


class FetchError(Exception):
    """Base class for page fetch failures."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class FatalFetchError(FetchError):
    """Authentication/authorization or contract failure; never retried."""
    pass


class RetryableFetchError(FetchError):
    """Network error, timeout or server-side failure; safe to try again."""
    pass


def is_retryable(error: Exception) -> bool:
    return isinstance(error, RetryableFetchError)


class BpiqClient:
    """Page fetcher for the BPIQ drug-pipeline API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30,
        retry_policy: Optional[RetryPolicy] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not api_key:
            raise ValueError("api_key is required")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy(is_retryable=is_retryable)
        self.sleep = sleep
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "Authorization": f"Token {api_key}",
        })

    @classmethod
    def from_config(cls, config: Dict[str, Any], **kwargs) -> "BpiqClient":
        """Build a client from the loaded configuration and BPIQ_API_KEY."""
        api_cfg = config.get("api", {})
        return cls(
            api_key=get_api_key(required=True),
            base_url=api_cfg.get("base_url", DEFAULT_BASE_URL),
            timeout=api_cfg.get("timeout_seconds", 30),
            retry_policy=RetryPolicy.from_config(config.get("retry", {}), is_retryable=is_retryable),
            **kwargs,
        )

    def url_for(self, resource: str) -> str:
        try:
            path = RESOURCE_PATHS[resource]
        except KeyError:
            raise ValueError(f"Unknown resource: {resource!r} (expected one of {sorted(RESOURCE_PATHS)})")
        return f"{self.base_url}/{path}"

    def fetch_page(self, resource: str, offset: int, limit: int) -> Page:
        """
        Fetch one page, retrying transient failures per the retry policy.

        Args:
            resource: ``drugs`` or ``historical``
            offset: Zero-based record offset
            limit: Page size

        Raises:
            FatalFetchError: 401/403, other client errors, malformed envelope
            RetryableFetchError: transient failure that outlived the retry policy
        """
        if limit <= 0:
            raise ValueError("limit must be positive")
        if offset < 0:
            raise ValueError("offset must not be negative")

        url = self.url_for(resource)
        return self.retry_policy.call(
            lambda: self._request_page(url, offset, limit),
            description=f"{resource} page at offset={offset}",
            sleep=self.sleep,
        )

    def _request_page(self, url: str, offset: int, limit: int) -> Page:
        params = {"limit": limit, "offset": offset}
        logger.debug(f"GET {url} limit={limit} offset={offset}")
        try:
            resp = self.session.get(url, params=params, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            # Timeout, ConnectionError and friends
            raise RetryableFetchError(f"Request failed at offset {offset}: {e}") from e

        status = resp.status_code
        if status in FATAL_STATUS_CODES:
            raise FatalFetchError(f"API Error: {status} {resp.reason} (check BPIQ_API_KEY)", status)
        if status == 429 or status >= 500:
            raise RetryableFetchError(f"API Error: {status} {resp.reason}", status)
        if status >= 400:
            raise FatalFetchError(f"API Error: {status} {resp.reason}", status)

        try:
            payload = resp.json()
        except ValueError as e:
            # truncated bodies show up here; another attempt usually succeeds
            raise RetryableFetchError(f"Undecodable response at offset {offset}: {e}", status) from e

        try:
            return Page.from_payload(payload)
        except RecordValidationError as e:
            raise FatalFetchError(f"Malformed page at offset {offset}: {e}", status) from e
