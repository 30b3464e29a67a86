"""
Async Microsoft Graph client for the directory reads the toolkit needs:
single objects, paged collections, throttling retry and read-only enforcement.
Requests are issued one at a time; callers await each call in turn.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncGenerator, Optional

import httpx

from ..config import (
    GRAPH_BASE_URL,
    GRAPH_API_VERSION,
    MAX_RETRIES,
    INITIAL_BACKOFF_SECONDS,
    MAX_BACKOFF_SECONDS,
    BACKOFF_MULTIPLIER,
    DEFAULT_PAGE_SIZE,
    MAX_PAGES_PER_ENDPOINT,
)
from ..safety.guardian import SafetyGuardian

logger = logging.getLogger("m365_admin_toolkit.graph")

THROTTLE_STATUSES = (429, 503, 504)


class GraphAPIError(Exception):
    """Raised when Graph answers with an error status."""
    def __init__(self, status_code: int, message: str, url: str):
        self.status_code = status_code
        self.url = url
        super().__init__(f"Graph API Error {status_code} for {url}: {message}")

    @property
    def not_found(self) -> bool:
        return self.status_code == 404

    @property
    def forbidden(self) -> bool:
        return self.status_code == 403


def extract_error_message(response: httpx.Response, default: str) -> str:
    """Pull error.message out of a Graph/Exchange error body."""
    try:
        body: Any = response.json() if response.content else {}
    except ValueError:
        return default
    if not isinstance(body, dict):
        return default
    error = body.get("error")
    if isinstance(error, dict):
        return error.get("message") or default
    if isinstance(error, str):
        return error
    return default


def retry_delay(response: httpx.Response, backoff: float) -> float:
    """Seconds to wait before retrying a throttled response."""
    try:
        retry_after = float(response.headers.get("Retry-After", backoff))
    except ValueError:
        # HTTP-date form; fall back to our own schedule
        retry_after = backoff
    return max(retry_after, backoff)


class GraphClient:
    """
    Async Microsoft Graph API client (v1.0).
    Usage:
        async with GraphClient(token, guardian) as graph:
            group = await graph.get("groups/<id>")
            members = await graph.get_all_pages("groups/<id>/members")
    """

    def __init__(
        self,
        access_token: str,
        guardian: SafetyGuardian,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.guardian = guardian
        self._transport = transport
        self._request_count = 0
        self._throttle_count = 0
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(60.0, connect=30.0),
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Accept": "application/json",
                "ConsistencyLevel": "eventual",  # Advanced $filter on directory objects
            },
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()

    @property
    def stats(self) -> dict:
        return {
            "total_requests": self._request_count,
            "throttle_events": self._throttle_count,
        }

    def url_for(self, endpoint: str) -> str:
        if endpoint.startswith("http"):
            return endpoint
        return f"{GRAPH_BASE_URL}/{GRAPH_API_VERSION}/{endpoint.lstrip('/')}"

    async def get(self, endpoint: str, params: Optional[dict] = None) -> dict:
        """GET one resource. Raises GraphAPIError (404 included) on failure."""
        return await self._get(self.url_for(endpoint), params)

    async def get_all_pages(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        page_size: Optional[int] = DEFAULT_PAGE_SIZE,
    ) -> list[dict]:
        """Every item of a collection, following @odata.nextLink."""
        return [item async for item in self.iter_pages(endpoint, params, page_size)]

    async def iter_pages(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        page_size: Optional[int] = DEFAULT_PAGE_SIZE,
    ) -> AsyncGenerator[dict, None]:
        """
        Yield the items of a collection page by page.
        page_size=None leaves $top off for endpoints that reject it (domains).
        """
        request_params: Optional[dict] = dict(params or {})
        if page_size and "$top" not in request_params:
            request_params["$top"] = str(min(page_size, DEFAULT_PAGE_SIZE))

        url: Optional[str] = self.url_for(endpoint)
        pages = 0
        while url and pages < MAX_PAGES_PER_ENDPOINT:
            data = await self._get(url, request_params)
            for item in data.get("value", []):
                yield item
            # nextLink already carries the query
            url = data.get("@odata.nextLink")
            request_params = None
            pages += 1

        if url:
            logger.warning(
                f"Pagination safety cap reached ({MAX_PAGES_PER_ENDPOINT} pages) "
                f"for endpoint: {endpoint}"
            )

    async def _get(self, url: str, params: Optional[dict]) -> dict:
        if not self._client:
            raise RuntimeError("GraphClient not initialized. Use 'async with' context.")
        self.guardian.validate_request("GET", url)

        backoff = INITIAL_BACKOFF_SECONDS
        for attempt in range(MAX_RETRIES + 1):
            try:
                response = await self._client.get(url, params=params)
            except (httpx.TimeoutException, httpx.ConnectError) as e:
                logger.warning(f"{type(e).__name__} on {url}, attempt {attempt + 1}/{MAX_RETRIES}")
                if attempt == MAX_RETRIES:
                    raise
                await asyncio.sleep(backoff)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)
                continue
            self._request_count += 1

            if response.status_code == 200:
                if not response.content.strip():
                    return {"value": []}
                return response.json()

            if response.status_code in THROTTLE_STATUSES:
                self._throttle_count += 1
                wait_time = retry_delay(response, backoff)
                logger.warning(
                    f"Throttled ({response.status_code}) on {url}. "
                    f"Retry {attempt + 1}/{MAX_RETRIES} in {wait_time:.1f}s"
                )
                await asyncio.sleep(wait_time)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)
                continue

            error_msg = extract_error_message(response, response.text[:200] or response.reason_phrase)
            if response.status_code == 404:
                logger.debug(f"404 Not Found: {url}")
            else:
                logger.warning(f"{response.status_code} on {url}: {error_msg}")
            raise GraphAPIError(response.status_code, error_msg, url)

        raise GraphAPIError(429, f"Max retries ({MAX_RETRIES}) exceeded", url)
