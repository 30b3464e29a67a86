"""
Async Exchange Online admin client.
Runs Exchange cmdlets through the REST InvokeCommand endpoint with the same
retry/backoff behaviour as the Graph client. Every cmdlet is checked by the
SafetyGuardian first; dry-run writes are never sent.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx

from ..config import (
    EXCHANGE_BASE_URL,
    MAX_RETRIES,
    INITIAL_BACKOFF_SECONDS,
    MAX_BACKOFF_SECONDS,
    BACKOFF_MULTIPLIER,
    MAX_PAGES_PER_ENDPOINT,
)
from ..graph.client import THROTTLE_STATUSES, extract_error_message, retry_delay
from ..safety.guardian import SafetyGuardian

logger = logging.getLogger("m365_admin_toolkit.exchange")


class ExchangeAPIError(Exception):
    """Raised when a cmdlet fails on the Exchange side."""
    def __init__(self, status_code: int, message: str, cmdlet: str):
        self.status_code = status_code
        self.cmdlet = cmdlet
        self.message = message
        super().__init__(f"Exchange {cmdlet} failed ({status_code}): {message}")


class ExchangeClient:
    """
    Async Exchange Online admin API client.
    Usage:
        async with ExchangeClient(token, tenant_id, guardian) as exo:
            rows = await exo.invoke("Get-MailboxPermission", {"Identity": "x@y.com"})
    """

    def __init__(
        self,
        access_token: str,
        tenant_id: str,
        guardian: SafetyGuardian,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.tenant_id = tenant_id
        self.guardian = guardian
        self._transport = transport
        self._request_count = 0
        self._throttle_count = 0
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(120.0, connect=30.0),
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()

    @property
    def endpoint(self) -> str:
        return f"{EXCHANGE_BASE_URL}/{self.tenant_id}/InvokeCommand"

    @property
    def dry_run(self) -> bool:
        return self.guardian.dry_run

    async def invoke(self, cmdlet: str, parameters: Optional[dict] = None) -> list[dict]:
        """Run a cmdlet and return its output objects."""
        values, _ = await self.invoke_with_warnings(cmdlet, parameters)
        return values

    async def invoke_with_warnings(
        self, cmdlet: str, parameters: Optional[dict] = None
    ) -> tuple[list[dict], list[str]]:
        """
        Run a cmdlet and return (output objects, warning messages).
        Follows @odata.nextLink for cmdlets that page their output.
        Returns ([], []) without sending anything when the guardian holds
        the cmdlet back (dry run).
        """
        parameters = {k: v for k, v in (parameters or {}).items() if v is not None}
        if not self.guardian.validate_cmdlet(cmdlet, parameters):
            return [], []

        body = {"CmdletInput": {"CmdletName": cmdlet, "Parameters": parameters}}
        results: list[dict] = []
        warnings: list[str] = []
        url: Optional[str] = self.endpoint
        pages = 0

        while url and pages < MAX_PAGES_PER_ENDPOINT:
            data = await self._execute_with_retry(url, body, cmdlet)
            results.extend(data.get("value", []))
            warnings.extend(str(w) for w in data.get("@adminapi.warnings", []))
            url = data.get("@odata.nextLink")
            pages += 1

        for w in warnings:
            logger.debug(f"{cmdlet} warning: {w}")
        logger.debug(f"{cmdlet} returned {len(results)} objects")
        return results, warnings

    async def _execute_with_retry(self, url: str, body: dict, cmdlet: str) -> dict:
        """POST with exponential backoff on throttling."""
        if not self._client:
            raise RuntimeError("ExchangeClient not initialized. Use 'async with' context.")

        backoff = INITIAL_BACKOFF_SECONDS

        for attempt in range(MAX_RETRIES + 1):
            try:
                response = await self._client.post(url, json=body)
                self._request_count += 1

                if response.status_code in (200, 201):
                    if not response.content or not response.content.strip():
                        return {"value": []}
                    data: Any = response.json()
                    return data if isinstance(data, dict) else {"value": data}

                if response.status_code == 204:
                    return {"value": []}

                if response.status_code in THROTTLE_STATUSES:
                    self._throttle_count += 1
                    wait_time = retry_delay(response, backoff)
                    logger.warning(
                        f"Throttled ({response.status_code}) on {cmdlet}. "
                        f"Retry {attempt + 1}/{MAX_RETRIES} in {wait_time:.1f}s"
                    )
                    await asyncio.sleep(wait_time)
                    backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)
                    continue

                error_msg = extract_error_message(response, response.text[:300])
                raise ExchangeAPIError(response.status_code, error_msg, cmdlet)

            except httpx.TimeoutException:
                logger.warning(f"Timeout on {cmdlet}, attempt {attempt + 1}/{MAX_RETRIES}")
                if attempt == MAX_RETRIES:
                    raise
                await asyncio.sleep(backoff)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)

            except httpx.ConnectError as e:
                logger.warning(f"Connection error on {cmdlet}: {e}")
                if attempt == MAX_RETRIES:
                    raise
                await asyncio.sleep(backoff)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)

        raise ExchangeAPIError(429, f"Max retries ({MAX_RETRIES}) exceeded", cmdlet)

    @property
    def stats(self) -> dict:
        return {
            "total_requests": self._request_count,
            "throttle_events": self._throttle_count,
        }
