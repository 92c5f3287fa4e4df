"""
Pipedrive API client for deal stage histories.

This module provides an async client for the parts of the Pipedrive API the
flow metrics engine consumes:
- Per-deal change log (/deals/{id}/flow), filtered to stage changes
- Deal listing by update time, for incremental and full syncs
- Sliding-window rate limiting shared by all concurrent requests
- Error classification into auth / not-found / rate-limited / transient
"""

import asyncio
import time
from collections import deque
from datetime import datetime
from typing import Any, Callable, Optional

import httpx
import structlog

from flowmetrics.config import SourceConfig
from flowmetrics.models.enums import FailureKind
from flowmetrics.models.events import RawStageEvent, to_naive_utc

logger = structlog.get_logger(__name__)


class SourceUnavailable(Exception):
    """Raised when the CRM could not deliver an entity's data."""

    kind = FailureKind.UNKNOWN

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class SourceAuthError(SourceUnavailable):
    """401/403: the API token is missing, invalid or lacks permission."""

    kind = FailureKind.AUTH


class SourceNotFoundError(SourceUnavailable):
    """404: the entity does not exist (or was deleted)."""

    kind = FailureKind.NOT_FOUND


class SourceRateLimitedError(SourceUnavailable):
    """429: the CRM rejected the request for exceeding its rate limit."""

    kind = FailureKind.RATE_LIMITED


class SourceTransientError(SourceUnavailable):
    """5xx, timeouts and transport failures."""

    kind = FailureKind.TRANSIENT


def classify_status(status_code: int, body: str = "") -> Optional[SourceUnavailable]:
    """Map an HTTP status to the matching source error, or None for success."""
    if status_code < 400:
        return None
    message = f"Pipedrive returned HTTP {status_code}: {body[:200]}"
    if status_code in (401, 403):
        return SourceAuthError(message, status_code)
    if status_code == 404:
        return SourceNotFoundError(message, status_code)
    if status_code == 429:
        return SourceRateLimitedError(message, status_code)
    if status_code >= 500:
        return SourceTransientError(message, status_code)
    return SourceUnavailable(message, status_code)


def parse_pipedrive_time(value: str) -> datetime:
    """Parse Pipedrive's 'YYYY-MM-DD HH:MM:SS' (UTC) or ISO-8601 timestamps."""
    text = value.strip().replace("Z", "+00:00")
    return to_naive_utc(datetime.fromisoformat(text))


class SlidingWindowRateLimiter:
    """
    Admits at most `max_requests` acquisitions in any `window_seconds` span.

    All tasks in a batch share one limiter; the lock serializes admission so
    two tasks never take the same free slot.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._request_times: deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                now = self._clock()
                cutoff = now - self.window_seconds
                while self._request_times and self._request_times[0] <= cutoff:
                    self._request_times.popleft()

                if len(self._request_times) < self.max_requests:
                    self._request_times.append(now)
                    return

                sleep_time = self._request_times[0] - cutoff
                logger.debug("rate_limit_throttling", sleep_seconds=round(sleep_time, 3))
                await asyncio.sleep(sleep_time)


class PipedriveClient:
    """
    Async Pipedrive API client.

    Use as an async context manager so the underlying connection pool is
    closed when the run finishes.

    Attributes:
        config: Base URL, token, timeout, rate limit and retry settings

    Example:
        >>> async with PipedriveClient(SourceConfig(api_token="...")) as client:
        ...     events = await client.fetch_stage_events(4711)
    """

    RETRY_BACKOFF_SECONDS = 1.0

    def __init__(
        self,
        config: SourceConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
    ):
        self.config = config
        self._transport = transport
        self._rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            config.rate_limit_requests, config.rate_limit_window_seconds
        )
        self._http_client: Optional[httpx.AsyncClient] = None

        logger.info(
            "pipedrive_client_initialized",
            base_url=config.base_url,
            has_token=bool(config.api_token),
            rate_limit=f"{config.rate_limit_requests}/{config.rate_limit_window_seconds}s",
        )

    async def __aenter__(self):
        """Async context manager entry."""
        self._http_client = httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=self.config.timeout_seconds,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _get(self, path: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        """
        Rate-limited GET with classification and in-client retry of transient errors.

        Raises:
            SourceUnavailable: Classified failure after max_attempts
        """
        if self._http_client is None:
            raise RuntimeError("PipedriveClient must be used as an async context manager")

        query = dict(params or {})
        query["api_token"] = self.config.api_token
        last_error: Optional[SourceUnavailable] = None

        for attempt in range(self.config.max_attempts):
            await self._rate_limiter.acquire()
            try:
                response = await self._http_client.get(path, params=query)
            except httpx.TimeoutException as e:
                last_error = SourceTransientError(f"Timed out calling {path}: {e}")
            except httpx.TransportError as e:
                last_error = SourceTransientError(f"Transport error calling {path}: {e}")
            else:
                error = classify_status(response.status_code, response.text)
                if error is None:
                    logger.debug(
                        "pipedrive_request_success",
                        path=path,
                        status_code=response.status_code,
                        attempt=attempt + 1,
                    )
                    return response.json()
                if not isinstance(error, SourceTransientError):
                    logger.warning(
                        "pipedrive_request_failed",
                        path=path,
                        status_code=response.status_code,
                        kind=error.kind.value,
                    )
                    raise error
                last_error = error

            logger.warning(
                "pipedrive_request_transient_error",
                path=path,
                error=str(last_error),
                attempt=attempt + 1,
                max_attempts=self.config.max_attempts,
            )
            if attempt < self.config.max_attempts - 1:
                await asyncio.sleep(self.RETRY_BACKOFF_SECONDS * 2**attempt)

        raise last_error

    async def fetch_stage_events(self, entity_id: int) -> list[RawStageEvent]:
        """
        Fetch one deal's stage-change history.

        Pages through /deals/{id}/flow and keeps only dealChange items whose
        field_key is stage_id.

        Raises:
            SourceUnavailable: If the history could not be fetched
        """
        events: list[RawStageEvent] = []
        start = 0
        while True:
            payload = await self._get(
                f"/deals/{entity_id}/flow",
                {"start": start, "limit": self.config.page_size},
            )
            for item in payload.get("data") or []:
                event = self._to_stage_event(entity_id, item)
                if event is not None:
                    events.append(event)

            pagination = (payload.get("additional_data") or {}).get("pagination") or {}
            if not pagination.get("more_items_in_collection"):
                break
            start = pagination.get("next_start", start + self.config.page_size)

        logger.debug("stage_events_fetched", entity_id=entity_id, count=len(events))
        return events

    def _to_stage_event(self, entity_id: int, item: dict[str, Any]) -> Optional[RawStageEvent]:
        if item.get("object") != "dealChange":
            return None
        data = item.get("data") or {}
        if data.get("field_key") != "stage_id":
            return None

        additional = data.get("additional_data") or {}
        pipeline_id = additional.get("pipeline_id") or self.config.default_pipeline_id
        timestamp = item.get("timestamp") or data.get("log_time")

        return RawStageEvent(
            event_id=data["id"],
            entity_id=data.get("item_id") or entity_id,
            pipeline_id=pipeline_id,
            new_stage_id=data.get("new_value"),
            new_stage_name=additional.get("new_value_formatted"),
            old_stage_id=data.get("old_value"),
            timestamp=parse_pipedrive_time(timestamp),
        )

    async def list_deals_updated_since(self, since: datetime) -> list[dict[str, Any]]:
        """
        List deals updated at or after `since`, newest first.

        Returns:
            Deal descriptors: {"id", "title", "status", "pipeline_id", "stage_id",
            "update_time"}
        """
        deals: list[dict[str, Any]] = []
        start = 0
        while True:
            payload = await self._get(
                "/deals",
                {
                    "start": start,
                    "limit": self.config.page_size,
                    "sort": "update_time DESC",
                    "status": "all_not_deleted",
                },
            )
            reached_older = False
            for deal in payload.get("data") or []:
                update_time = deal.get("update_time")
                if update_time and parse_pipedrive_time(update_time) < since:
                    reached_older = True
                    break
                deals.append(
                    {
                        "id": deal["id"],
                        "title": deal.get("title"),
                        "status": deal.get("status"),
                        "pipeline_id": deal.get("pipeline_id"),
                        "stage_id": deal.get("stage_id"),
                        "update_time": update_time,
                    }
                )

            pagination = (payload.get("additional_data") or {}).get("pagination") or {}
            if reached_older or not pagination.get("more_items_in_collection"):
                break
            start = pagination.get("next_start", start + self.config.page_size)

        logger.info("deals_listed", since=since.isoformat(), count=len(deals))
        return deals
