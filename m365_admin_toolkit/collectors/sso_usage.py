"""
SSO Usage Collector
Summarises which applications a user signed in to over a look-back window,
from the Entra sign-in logs.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from ..config import ReportConfig
from ..graph.client import GraphClient
from .base import BaseCollector, CollectorResult, parse_graph_datetime

logger = logging.getLogger("m365_admin_toolkit.collectors.sso_usage")


def summarize_sign_ins(records: Iterable[dict]) -> list[dict]:
    """
    Group sign-in records by application.
    Returns one row per app, most recently used first.
    """
    apps: dict[str, dict] = {}
    for r in records:
        app_id = r.get("appId") or r.get("appDisplayName") or "unknown"
        when = parse_graph_datetime(r.get("createdDateTime"))
        status = r.get("status") or {}
        succeeded = status.get("errorCode", 0) == 0

        entry = apps.setdefault(app_id, {
            "appId": r.get("appId", ""),
            "appDisplayName": r.get("appDisplayName", ""),
            "resourceDisplayName": r.get("resourceDisplayName", ""),
            "signInCount": 0,
            "successCount": 0,
            "failureCount": 0,
            "clientApps": set(),
            "_last": None,
            "lastStatus": "",
        })
        entry["signInCount"] += 1
        if succeeded:
            entry["successCount"] += 1
        else:
            entry["failureCount"] += 1
        if r.get("clientAppUsed"):
            entry["clientApps"].add(r["clientAppUsed"])

        if when and (entry["_last"] is None or when > entry["_last"]):
            entry["_last"] = when
            entry["lastStatus"] = (
                "Success" if succeeded
                else status.get("failureReason") or f"Error {status.get('errorCode')}"
            )

    rows = []
    for entry in apps.values():
        last = entry.pop("_last")
        entry["lastSignIn"] = last.isoformat() if last else ""
        entry["clientApps"] = ", ".join(sorted(entry["clientApps"]))
        rows.append((last, entry))

    rows.sort(key=lambda pair: pair[0] or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
    return [entry for _, entry in rows]


class SsoUsageCollector(BaseCollector):
    name = "sso_usage"
    description = "Applications a user signed in to"

    def __init__(
        self,
        graph: GraphClient,
        user: str,
        config: Optional[ReportConfig] = None,
        days: Optional[int] = None,
        now: Optional[datetime] = None,
    ):
        super().__init__(graph, config)
        self.user = user
        self.days = days if days is not None else self.config.sso_usage_days
        self.now = now or datetime.now(timezone.utc)

    @property
    def since(self) -> datetime:
        return self.now - timedelta(days=self.days)

    def sign_in_filter(self) -> str:
        upn = self.user.replace("'", "''")
        since = self.since.strftime("%Y-%m-%dT%H:%M:%SZ")
        return f"userPrincipalName eq '{upn}' and createdDateTime ge {since}"

    async def collect(self, result: CollectorResult):
        records = await self.fetch_all(
            "auditLogs/signIns",
            result,
            params={
                "$filter": self.sign_in_filter(),
                "$orderby": "createdDateTime desc",
            },
        )
        rows = summarize_sign_ins(records)
        result.set_rows(rows)
        result.metadata["sign_in_records"] = len(records)
        result.metadata["window_days"] = self.days
        logger.info(
            f"[{self.name}] {self.user}: {len(records)} sign-ins across {len(rows)} apps "
            f"in the last {self.days} days"
        )
