"""
Rate-limited HTTP client for the ClickUp v2 REST API.

One ``ClickUpClient`` is created per workspace per sync run. Quota state
(``RateLimitState``) lives on the instance and is refreshed from the
``x-ratelimit-remaining`` / ``x-ratelimit-reset`` headers of every response:

- before a request, if remaining quota is at or below the low-water mark and
  the reset time is still ahead, the client sleeps until the reset
- a 429 response is retried with identical parameters after ``retry-after``
  seconds (default 60), up to ``RATE_LIMIT_MAX_RETRIES`` times
- every other HTTP error propagates unchanged as ``httpx.HTTPStatusError``

Each attempt is recorded in ``api_request_logs`` when the workspace id is a
real UUID (credential validation uses a sentinel id and is never logged).

ClickUp API docs: https://clickup.com/api
"""
from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

import httpx

from config import settings
from connectors.base import CredentialError, RateLimitExhaustedError

if TYPE_CHECKING:
    from services.task_store import TaskStore

logger = logging.getLogger(__name__)

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
_INVALID_SECRET_RE = re.compile(r"[\s\x00-\x1f\x7f]")


def is_workspace_uuid(value: str) -> bool:
    return bool(value) and bool(_UUID_RE.match(value))


@dataclass
class RateLimitState:
    """Quota as last reported by ClickUp; reset_at is epoch seconds."""

    remaining: int = 100
    reset_at: float = 0.0

    def refresh(self, headers: httpx.Headers) -> None:
        remaining = headers.get("x-ratelimit-remaining")
        reset = headers.get("x-ratelimit-reset")
        if remaining is not None:
            try:
                self.remaining = int(remaining)
            except ValueError:
                logger.debug("Ignoring malformed x-ratelimit-remaining: %r", remaining)
        if reset is not None:
            try:
                self.reset_at = float(reset)
            except ValueError:
                logger.debug("Ignoring malformed x-ratelimit-reset: %r", reset)

    def seconds_until_reset(self, now: float, low_water: int) -> float:
        """Time to wait before the next request (0 when quota is fine)."""
        if self.remaining <= low_water and self.reset_at > now:
            return self.reset_at - now
        return 0.0


@dataclass
class ResponseMeta:
    """What the caller learns about the HTTP exchange besides the body."""

    status_code: int
    attempts: int
    response_time_ms: int
    rate_limit_remaining: int


def _retry_after_seconds(headers: httpx.Headers, default: float) -> float:
    raw = headers.get("retry-after")
    if raw is None:
        return default
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return default


class ClickUpClient:
    """Per-workspace ClickUp API wrapper with quota tracking and audit logging."""

    def __init__(
        self,
        workspace_id: str,
        api_key: str,
        store: Optional["TaskStore"] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        max_retries: Optional[int] = None,
    ) -> None:
        if not isinstance(api_key, str) or not api_key:
            raise CredentialError("ClickUp API key is empty")
        if _INVALID_SECRET_RE.search(api_key):
            raise CredentialError("ClickUp API key contains whitespace or control characters")

        self.workspace_id = workspace_id
        self.store = store
        self.rate_limit = RateLimitState()
        self.page_size: int = settings.CLICKUP_PAGE_SIZE
        self.max_retries: int = (
            settings.RATE_LIMIT_MAX_RETRIES if max_retries is None else max_retries
        )
        self._sleep = sleep
        self._clock = clock
        self._audit_enabled: bool = store is not None and is_workspace_uuid(workspace_id)
        self._http = httpx.AsyncClient(
            base_url=settings.CLICKUP_API_BASE,
            headers={
                "Authorization": api_key,
                "Content-Type": "application/json",
            },
            timeout=settings.CLICKUP_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def __aenter__(self) -> "ClickUpClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ── Requests ─────────────────────────────────────────────────────────

    async def _wait_for_quota(self) -> None:
        wait: float = self.rate_limit.seconds_until_reset(
            self._clock(), settings.RATE_LIMIT_LOW_WATER
        )
        if wait > 0:
            logger.info(
                "Waiting %.1fs for ClickUp rate limit reset",
                wait,
                extra={"workspace_id": self.workspace_id, "remaining": self.rate_limit.remaining},
            )
            await self._sleep(wait)

    async def request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict[str, Any]] = None,
    ) -> tuple[Any, ResponseMeta]:
        """Issue one logical request, retrying 429s; returns (json, meta)."""
        attempts: int = 0
        while True:
            await self._wait_for_quota()
            attempts += 1
            started: float = time.perf_counter()
            try:
                response: httpx.Response = await self._http.request(
                    method, endpoint, params=params
                )
            except httpx.HTTPError as exc:
                await self._audit(endpoint, method, 0, started, str(exc) or type(exc).__name__)
                raise

            self.rate_limit.refresh(response.headers)

            if response.status_code == 429:
                await self._audit(endpoint, method, 429, started, "Rate limited")
                if attempts > self.max_retries:
                    raise RateLimitExhaustedError(endpoint, attempts)
                retry_after: float = _retry_after_seconds(
                    response.headers, settings.RATE_LIMIT_DEFAULT_RETRY_AFTER
                )
                logger.warning(
                    "ClickUp API rate limit reached, retrying %s in %.1fs",
                    endpoint,
                    retry_after,
                    extra={"workspace_id": self.workspace_id, "attempt": attempts},
                )
                await self._sleep(retry_after)
                continue

            elapsed_ms: int = await self._audit(
                endpoint,
                method,
                response.status_code,
                started,
                f"HTTP {response.status_code}" if response.is_error else None,
            )
            response.raise_for_status()
            meta = ResponseMeta(
                status_code=response.status_code,
                attempts=attempts,
                response_time_ms=elapsed_ms,
                rate_limit_remaining=self.rate_limit.remaining,
            )
            return response.json(), meta

    async def get_json(
        self, endpoint: str, query: Optional[dict[str, Any]] = None
    ) -> dict[str, Any]:
        payload, _ = await self.request("GET", endpoint, query)
        return payload

    async def fetch_page(
        self,
        endpoint: str,
        query: Optional[dict[str, Any]] = None,
        records_key: str = "tasks",
    ) -> tuple[list[dict[str, Any]], ResponseMeta]:
        """GET one page and pull the record collection out of the body."""
        payload, meta = await self.request("GET", endpoint, query)
        records: list[dict[str, Any]] = (payload or {}).get(records_key) or []
        return records, meta

    async def fetch_all_pages(
        self,
        endpoint: str,
        query: Optional[dict[str, Any]] = None,
        records_key: str = "tasks",
    ) -> list[dict[str, Any]]:
        """
        Follow ``page=0,1,...`` until a page is empty or shorter than the
        page size. A full page always triggers one more request.
        """
        all_records: list[dict[str, Any]] = []
        page: int = 0
        while True:
            records, _ = await self.fetch_page(
                endpoint, {**(query or {}), "page": page}, records_key
            )
            if not records:
                break
            all_records.extend(records)
            logger.debug(
                "Fetched page %d with %d records from %s",
                page,
                len(records),
                endpoint,
                extra={"workspace_id": self.workspace_id},
            )
            if len(records) < self.page_size:
                break
            page += 1
        return all_records

    # ── Audit ────────────────────────────────────────────────────────────

    async def _audit(
        self,
        endpoint: str,
        method: str,
        status_code: int,
        started: float,
        error_message: Optional[str],
    ) -> int:
        elapsed_ms: int = int((time.perf_counter() - started) * 1000)
        if not self._audit_enabled:
            return elapsed_ms
        try:
            await self.store.log_api_request(
                self.workspace_id,
                endpoint=endpoint,
                method=method,
                status_code=status_code,
                response_time_ms=elapsed_ms,
                rate_limit_remaining=self.rate_limit.remaining,
                error_message=error_message,
            )
        except Exception:
            logger.exception(
                "Failed to log API request",
                extra={"workspace_id": self.workspace_id, "endpoint": endpoint},
            )
        return elapsed_ms
