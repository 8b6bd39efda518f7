"""
Paginated API feed source with authentication, rate limiting, and retry logic.

This module provides robust API extraction with:
- Exponential backoff retry logic for transient failures
- Circuit breaker pattern to prevent cascading failures
- Rate limiting protection honouring Retry-After
- Page-number cursors so a failed pass resumes at the next unread page
"""

import httpx
import asyncio
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple
from datetime import datetime, timedelta
from ingestion.base import FeedSource
from ingestion.results import SourceUnit
from models.base import SourceType
from core.backoff import backoff_delay
from core.config import settings
from core.exceptions import (
    APIExtractionError,
    NetworkError,
    RateLimitError,
    AuthenticationError,
    ResourceNotFoundError
)
import logging

logger = logging.getLogger(__name__)


class PaginatedAPIFeedSource(FeedSource):
    """
    Page through a JSON API and yield its items one by one.

    Features:
    - Bearer token authentication
    - ``page``/``pageSize`` pagination plus extra query params
    - Retry logic with exponential backoff
    - Circuit breaker pattern

    Pagination ends on an empty page, a falsy ``next_page_url`` or
    ``has_next``, or a page shorter than ``page_size``.

    Attributes:
        max_retries: Maximum number of attempts per request (default: MAX_RETRIES)
        retry_delay: Initial retry delay in seconds (default: 1.0)
        timeout: Request timeout in seconds (default: HTTP_TIMEOUT_SECONDS)
        circuit_breaker_threshold: Failures before circuit opens (default: 5)
        circuit_breaker_timeout: Seconds before circuit reset (default: 60)
    """

    source_type = SourceType.API
    checkpoint_type = "page"

    def __init__(
        self,
        source_name: str,
        api_url: str,
        api_token: Optional[str] = None,
        page_size: int = 100,
        extra_params: Optional[Dict[str, Any]] = None,
        max_retries: Optional[int] = None,
        retry_delay: float = 1.0,
        max_retry_delay: float = 30.0,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        super().__init__(source_name)
        self.api_url = api_url
        self.api_token = api_token or settings.FEED_API_TOKEN
        self.page_size = page_size
        self.extra_params = extra_params or {}
        self.max_retries = max_retries or settings.MAX_RETRIES
        self.retry_delay = retry_delay
        self.max_retry_delay = max_retry_delay
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self._transport = transport
        self._sleep = sleep

        # Circuit breaker state
        self._circuit_breaker_failures = 0
        self._circuit_breaker_threshold = 5
        self._circuit_breaker_open_until: Optional[datetime] = None
        self._circuit_breaker_timeout = 60  # seconds

    def _is_circuit_open(self) -> bool:
        """Check if circuit breaker is open."""
        if self._circuit_breaker_open_until is None:
            return False

        if datetime.utcnow() >= self._circuit_breaker_open_until:
            logger.info(f"Circuit breaker reset for {self.source_name}")
            self._circuit_breaker_failures = 0
            self._circuit_breaker_open_until = None
            return False

        return True

    def _record_failure(self):
        """Record a failure and potentially open circuit breaker."""
        self._circuit_breaker_failures += 1

        if self._circuit_breaker_failures >= self._circuit_breaker_threshold:
            self._circuit_breaker_open_until = datetime.utcnow() + timedelta(
                seconds=self._circuit_breaker_timeout
            )
            logger.warning(
                f"Circuit breaker opened for {self.source_name}. "
                f"Will retry after {self._circuit_breaker_timeout} seconds."
            )

    def _record_success(self):
        self._circuit_breaker_failures = 0
        self._circuit_breaker_open_until = None

    def _delay(self, attempt: int) -> float:
        return backoff_delay(attempt, base=self.retry_delay, cap=self.max_retry_delay)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    async def _make_request_with_retry(
        self,
        client: httpx.AsyncClient,
        params: Dict[str, Any]
    ) -> httpx.Response:
        """
        Make HTTP request with retry logic and exponential backoff.

        Returns:
            HTTP response with a 2xx status

        Raises:
            AuthenticationError: On 401/403
            ResourceNotFoundError: On 404
            RateLimitError: When still rate limited after max retries
            NetworkError: For timeouts, transport errors and 5xx after max retries
            APIExtractionError: For other client errors or an open circuit
        """
        url = self.api_url

        if self._is_circuit_open():
            raise APIExtractionError(
                f"Circuit breaker is open for {self.source_name}",
                context={
                    "source_name": self.source_name,
                    "api_url": url,
                    "open_until": self._circuit_breaker_open_until.isoformat()
                }
            )

        for attempt in range(self.max_retries):
            last_attempt = attempt == self.max_retries - 1
            try:
                logger.debug(f"Request attempt {attempt + 1}/{self.max_retries} to {url}")
                response = await client.get(url, headers=self._headers(), params=params)
            except httpx.TimeoutException as e:
                if last_attempt:
                    self._record_failure()
                    raise NetworkError(
                        f"Request timeout after {self.max_retries} retries",
                        context={
                            "api_url": url,
                            "source_name": self.source_name,
                            "timeout": self.timeout,
                            "retry_count": attempt + 1
                        },
                        original_exception=e
                    )
                delay = self._delay(attempt)
                logger.warning(f"Request timeout. Retrying in {delay} seconds")
                await self._sleep(delay)
                continue
            except httpx.TransportError as e:
                if last_attempt:
                    self._record_failure()
                    raise NetworkError(
                        f"Network error after {self.max_retries} retries",
                        context={
                            "api_url": url,
                            "source_name": self.source_name,
                            "retry_count": attempt + 1
                        },
                        original_exception=e
                    )
                delay = self._delay(attempt)
                logger.warning(f"Network error. Retrying in {delay} seconds")
                await self._sleep(delay)
                continue

            status = response.status_code

            if status in (401, 403):
                self._record_failure()
                raise AuthenticationError(
                    f"Authentication failed for {url}",
                    context={"status_code": status, "api_url": url, "source_name": self.source_name}
                )

            if status == 404:
                self._record_failure()
                raise ResourceNotFoundError(
                    f"Resource not found: {url}",
                    context={"status_code": 404, "api_url": url, "source_name": self.source_name}
                )

            if status == 429:
                retry_after = self._retry_after(response, attempt)
                if last_attempt:
                    self._record_failure()
                    raise RateLimitError(
                        f"Rate limit exceeded for {url}",
                        context={
                            "status_code": 429,
                            "api_url": url,
                            "source_name": self.source_name,
                            "retry_count": attempt + 1
                        },
                        retry_after=retry_after
                    )
                logger.warning(f"Rate limited. Retrying after {retry_after} seconds")
                await self._sleep(retry_after)
                continue

            if status >= 500:
                if last_attempt:
                    self._record_failure()
                    raise NetworkError(
                        f"Server error after {self.max_retries} retries",
                        context={
                            "status_code": status,
                            "api_url": url,
                            "source_name": self.source_name,
                            "retry_count": attempt + 1,
                            "response_body": response.text[:500]
                        }
                    )
                delay = self._delay(attempt)
                logger.warning(
                    f"Server error {status}. "
                    f"Retrying in {delay} seconds (attempt {attempt + 1}/{self.max_retries})"
                )
                await self._sleep(delay)
                continue

            if status >= 400:
                self._record_failure()
                raise APIExtractionError(
                    f"Request rejected with HTTP {status}",
                    context={
                        "status_code": status,
                        "api_url": url,
                        "source_name": self.source_name,
                        "response_body": response.text[:500]
                    }
                )

            self._record_success()
            return response

        raise APIExtractionError(
            "Max retries exceeded",
            context={"api_url": url, "source_name": self.source_name}
        )

    def _retry_after(self, response: httpx.Response, attempt: int) -> float:
        header = response.headers.get("Retry-After")
        if header is not None:
            try:
                return float(header)
            except ValueError:
                pass
        return self._delay(attempt)

    def _parse_page(self, response: httpx.Response, page: int) -> Tuple[List[Any], bool]:
        """
        Split a page response into items and a "more pages" flag.
        """
        try:
            data = response.json()
        except ValueError as e:
            raise APIExtractionError(
                "Failed to parse JSON response",
                context={
                    "api_url": self.api_url,
                    "source_name": self.source_name,
                    "page": page,
                    "response_body": response.text[:500]
                },
                original_exception=e
            )

        if isinstance(data, list):
            return data, len(data) >= self.page_size

        if not isinstance(data, dict):
            return [], False

        items = data.get("data", data.get("results", []))
        if not isinstance(items, list):
            items = []

        if "has_next" in data:
            has_more = bool(data["has_next"])
        elif "next_page_url" in data:
            has_more = bool(data["next_page_url"])
        else:
            has_more = len(items) >= self.page_size

        return items, has_more

    async def fetch_source(self, cursor: Optional[str] = None) -> AsyncIterator[SourceUnit]:
        """
        Yield items page by page, starting after the page in ``cursor``.

        Every item but the last of page p carries cursor p-1: a page counts
        as consumed only once its last item was handed out.
        """
        page = self._parse_cursor(cursor) + 1
        total = 0

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            while True:
                params = {**self.extra_params, "page": page, "pageSize": self.page_size}
                logger.info(f"Fetching page {page} from {self.api_url}")

                response = await self._make_request_with_retry(client, params)
                items, has_more = self._parse_page(response, page)

                if not items:
                    break

                for index, item in enumerate(items):
                    item_cursor = page if index == len(items) - 1 else page - 1
                    yield SourceUnit(payload=item, cursor=str(item_cursor))

                total += len(items)
                logger.debug(f"Fetched {len(items)} records from page {page}")

                if not has_more:
                    break
                page += 1

        logger.info(f"Fetched {total} records from {self.source_name} (last page {page})")

    @staticmethod
    def _parse_cursor(cursor: Optional[str]) -> int:
        if not cursor:
            return 0
        try:
            return max(int(cursor), 0)
        except ValueError:
            logger.warning(f"Ignoring malformed page cursor {cursor!r}")
            return 0
