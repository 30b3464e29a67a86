"""
Base collector class — Abstract interface for the directory report collectors.
Each collector builds one report's rows from Graph and records timing,
errors and permission gaps alongside them.
"""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime, timezone
from abc import ABC, abstractmethod
from typing import Any, AsyncGenerator, Optional

from ..graph.client import GraphClient, GraphAPIError
from ..config import ReportConfig, DEFAULT_PAGE_SIZE

logger = logging.getLogger("m365_admin_toolkit.collectors")

_FRACTION = re.compile(r"\.\d+")

# Graph application permission behind each top-level endpoint
PERMISSION_HINTS = {
    "users": "User.Read.All",
    "domains": "Domain.Read.All",
    "auditLogs": "AuditLog.Read.All",
    "servicePrincipals": "Application.Read.All",
}


def permission_hint(endpoint: str) -> str:
    permission = PERMISSION_HINTS.get(endpoint.lstrip("/").split("/", 1)[0])
    return f" (requires {permission})" if permission else ""


class CollectorResult:
    """Rows of one report plus supporting data and run metadata."""

    def __init__(self, collector_name: str):
        self.collector_name = collector_name
        self.rows: list[dict] = []
        self.data: dict[str, Any] = {}
        self.metadata: dict[str, Any] = {
            "collector": collector_name,
            "started_at": None,
            "completed_at": None,
            "duration_seconds": 0,
            "row_count": 0,
            "errors": [],
            "warnings": [],
            "endpoints_queried": 0,
        }

    def set_rows(self, rows: list[dict]):
        self.rows = rows
        self.metadata["row_count"] = len(rows)

    def add_data(self, key: str, value: Any):
        self.data[key] = value

    def add_error(self, error: str):
        self.metadata["errors"].append(error)
        logger.error(f"[{self.collector_name}] {error}")

    def add_warning(self, warning: str):
        self.metadata["warnings"].append(warning)
        logger.warning(f"[{self.collector_name}] {warning}")

    @property
    def ok(self) -> bool:
        return not self.metadata["errors"]

    def to_dict(self) -> dict:
        return {
            "rows": self.rows,
            "data": self.data,
            "metadata": self.metadata,
        }


class BaseCollector(ABC):
    """
    Abstract base class for the report collectors.

    Subclasses implement collect(). Graph failures inside the fetch helpers
    are recorded on the result instead of aborting the report; anything
    else raised from collect() is caught by execute().
    """

    name: str = "base"
    description: str = "Base collector"

    def __init__(self, graph: GraphClient, config: ReportConfig | None = None):
        self.graph = graph
        self.config = config or ReportConfig()

    async def execute(self) -> CollectorResult:
        result = CollectorResult(self.name)
        result.metadata["started_at"] = time.time()
        logger.info(f"[{self.name}] {self.description}...")

        try:
            await self.collect(result)
        except Exception as e:
            result.add_error(f"Collection failed: {type(e).__name__}: {e}")
            logger.exception(f"[{self.name}] Collection failed")

        result.metadata["completed_at"] = time.time()
        result.metadata["duration_seconds"] = round(
            result.metadata["completed_at"] - result.metadata["started_at"], 2
        )
        logger.info(
            f"[{self.name}] Completed in {result.metadata['duration_seconds']}s — "
            f"{len(result.rows)} rows"
        )
        return result

    @abstractmethod
    async def collect(self, result: CollectorResult):
        """Fill result.rows (and optionally result.data)."""
        raise NotImplementedError

    def _record_failure(self, endpoint: str, result: CollectorResult, error: GraphAPIError):
        if error.forbidden:
            result.add_error(f"Permission denied on {endpoint}{permission_hint(endpoint)}: {error}")
        else:
            result.add_error(f"Failed to query {endpoint}: {error}")

    async def fetch_one(
        self, endpoint: str, result: CollectorResult, params: Optional[dict] = None
    ) -> Optional[dict]:
        """One object, or None when it does not exist or the query failed."""
        result.metadata["endpoints_queried"] += 1
        try:
            return await self.graph.get(endpoint, params=params)
        except GraphAPIError as e:
            if not e.not_found:
                self._record_failure(endpoint, result, e)
            return None

    async def fetch_all(
        self,
        endpoint: str,
        result: CollectorResult,
        params: Optional[dict] = None,
        page_size: Optional[int] = DEFAULT_PAGE_SIZE,
    ) -> list[dict]:
        return [item async for item in self.iter_all(endpoint, result, params, page_size)]

    async def iter_all(
        self,
        endpoint: str,
        result: CollectorResult,
        params: Optional[dict] = None,
        page_size: Optional[int] = DEFAULT_PAGE_SIZE,
    ) -> AsyncGenerator[dict, None]:
        result.metadata["endpoints_queried"] += 1
        try:
            async for item in self.graph.iter_pages(endpoint, params, page_size):
                yield item
        except GraphAPIError as e:
            self._record_failure(endpoint, result, e)


def parse_graph_datetime(value: str | None) -> datetime | None:
    """Parse Graph's ISO-8601 timestamps ('...Z'); None on missing/bad input."""
    if not value:
        return None
    # Sign-in logs carry 7 fractional digits; fromisoformat wants at most 6
    value = _FRACTION.sub(lambda m: m.group(0)[:7], value)
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
