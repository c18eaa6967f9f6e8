"""
Shared async HTTP plumbing for vendor adapters.

Every outbound vendor call goes through `VendorHttpClient.request()`, which
retries 429 / 5xx / transport errors with exponential backoff plus jitter and
turns the final outcome into the typed errors of `errors.py`:

  401, 403          → VendorAuthError
  429, 5xx          → retried, then VendorUnavailable
  other 4xx         → VendorRejected
  timeout / network → retried, then VendorUnavailable
  bad JSON          → MalformedVendorResponse

Calls that create a billed vendor task go through `submit_json()`, which is
never retried here: a lost response may still have started the task, and the
orchestrator owns the retry decision for a whole scene.
"""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional

import httpx

from .errors import (
    MalformedVendorResponse,
    VendorAuthError,
    VendorRejected,
    VendorUnavailable,
)

logger = logging.getLogger(__name__)

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = 3
BASE_DELAY = 2.0        # seconds, doubles each retry: 2, 4, 8
JITTER_MAX = 1.0        # random jitter 0-1s added to each delay
MAX_RETRY_AFTER = 60    # cap on a vendor-supplied Retry-After
RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
AUTH_STATUS_CODES = {401, 403}


def _error_detail(response: httpx.Response) -> str:
    text = response.text or ""
    return text[:300]


class VendorHttpClient:
    """
    Thin wrapper over `httpx.AsyncClient` bound to one vendor name.

    The underlying client is injected so tests can pass one built on
    `httpx.MockTransport`.
    """

    def __init__(
        self,
        vendor: str,
        client: httpx.AsyncClient,
        max_retries: int = MAX_RETRIES,
        base_delay: float = BASE_DELAY,
        jitter_max: float = JITTER_MAX,
    ):
        self.vendor = vendor
        self.client = client
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.jitter_max = jitter_max

    def _backoff(self, attempt: int) -> float:
        if self.base_delay <= 0:
            return 0.0
        return self.base_delay * (2 ** attempt) + random.uniform(0, self.jitter_max)

    async def request(
        self, method: str, url: str, retries: Optional[int] = None, **kwargs
    ) -> httpx.Response:
        """
        Make an HTTP request with exponential backoff on retryable errors.

        `retries` overrides the client's retry count for this one call.
        Returns the successful response. Raises a VendorError subclass otherwise.
        """
        max_retries = self.max_retries if retries is None else max(0, retries)
        for attempt in range(max_retries + 1):
            last_attempt = attempt >= max_retries
            try:
                response = await self.client.request(method, url, **kwargs)
            except httpx.TimeoutException as e:
                if last_attempt:
                    raise VendorUnavailable(f"request timed out ({type(e).__name__})", vendor=self.vendor)
                delay = self._backoff(attempt)
                logger.warning(
                    f"{self.vendor} timeout on attempt {attempt + 1}/{max_retries + 1} "
                    f"(retrying in {delay:.1f}s)"
                )
                await asyncio.sleep(delay)
                continue
            except httpx.TransportError as e:
                if last_attempt:
                    raise VendorUnavailable(f"transport error: {type(e).__name__}", vendor=self.vendor)
                delay = self._backoff(attempt)
                logger.warning(
                    f"{self.vendor} transport error on attempt {attempt + 1}/{max_retries + 1}: "
                    f"{type(e).__name__} (retrying in {delay:.1f}s)"
                )
                await asyncio.sleep(delay)
                continue

            status = response.status_code
            if status < 400:
                return response

            if status in AUTH_STATUS_CODES:
                raise VendorAuthError(
                    f"credential rejected (HTTP {status})", vendor=self.vendor, status_code=status
                )

            if status in RETRYABLE_STATUS_CODES:
                if last_attempt:
                    raise VendorUnavailable(
                        f"HTTP {status} after {max_retries + 1} attempts: {_error_detail(response)}",
                        vendor=self.vendor,
                        status_code=status,
                    )
                retry_after = response.headers.get("Retry-After")
                if retry_after and retry_after.isdigit() and self.base_delay > 0:
                    delay = min(int(retry_after), MAX_RETRY_AFTER)
                else:
                    delay = self._backoff(attempt)
                logger.warning(
                    f"{self.vendor} {status} on attempt {attempt + 1}/{max_retries + 1} "
                    f"(retrying in {delay:.1f}s)"
                )
                await asyncio.sleep(delay)
                continue

            raise VendorRejected(
                f"HTTP {status}: {_error_detail(response)}", vendor=self.vendor, status_code=status
            )

        raise VendorUnavailable(f"request failed after {max_retries + 1} attempts", vendor=self.vendor)

    async def request_json(self, method: str, url: str, **kwargs) -> dict:
        response = await self.request(method, url, **kwargs)
        try:
            data = response.json()
        except ValueError:
            raise MalformedVendorResponse(
                "response body is not JSON",
                vendor=self.vendor,
                status_code=response.status_code,
                raw_text=response.text[:2000],
            )
        if not isinstance(data, dict):
            raise MalformedVendorResponse(
                f"expected a JSON object, got {type(data).__name__}",
                vendor=self.vendor,
                status_code=response.status_code,
                raw_text=response.text[:2000],
            )
        return data

    async def submit_json(self, url: str, **kwargs) -> dict:
        """POST that starts a billed vendor task. Sent exactly once."""
        return await self.request_json("POST", url, retries=0, **kwargs)

    async def request_bytes(self, method: str, url: str, **kwargs) -> bytes:
        response = await self.request(method, url, **kwargs)
        if not response.content:
            raise MalformedVendorResponse(
                "empty response body", vendor=self.vendor, status_code=response.status_code
            )
        return response.content

    async def poll(
        self,
        check: Callable[[int], Awaitable[Optional[Any]]],
        interval: float,
        max_attempts: int,
        what: str = "task",
    ) -> Any:
        """
        Call `check(attempt)` until it returns something other than None.

        `check` raises to signal a terminal vendor failure. Exhausting
        `max_attempts` raises VendorUnavailable.
        """
        for attempt in range(max_attempts):
            result = await check(attempt)
            if result is not None:
                return result
            await asyncio.sleep(interval)
        raise VendorUnavailable(
            f"{what} did not finish after {max_attempts} polls ({max_attempts * interval:.0f}s)",
            vendor=self.vendor,
        )
