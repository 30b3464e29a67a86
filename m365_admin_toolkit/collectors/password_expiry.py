"""
Password Expiry Collector
Computes when each user's password expires from the last change date and the
password validity period of the user's domain.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from ..config import DEFAULT_PASSWORD_VALIDITY_DAYS, PASSWORD_NEVER_EXPIRES_DAYS, ReportConfig
from ..graph.client import GraphClient
from .base import BaseCollector, CollectorResult, parse_graph_datetime

logger = logging.getLogger("m365_admin_toolkit.collectors.password_expiry")

USER_SELECT = (
    "id,displayName,userPrincipalName,mail,accountEnabled,"
    "lastPasswordChangeDateTime,passwordPolicies,onPremisesSyncEnabled"
)


def domain_of(upn: str) -> str:
    return upn.rsplit("@", 1)[-1].lower() if "@" in upn else ""


def password_expiry_row(
    user: dict,
    validity_by_domain: dict[str, Optional[int]],
    now: datetime,
    warning_days: int = 14,
) -> dict:
    """Build one report row for a Graph user object."""
    upn = user.get("userPrincipalName", "") or ""
    policies = user.get("passwordPolicies") or ""
    validity = validity_by_domain.get(domain_of(upn))
    if validity is None:
        validity = DEFAULT_PASSWORD_VALIDITY_DAYS

    last_change = parse_graph_datetime(user.get("lastPasswordChangeDateTime"))
    never_expires = (
        "DisablePasswordExpiration" in policies
        or validity >= PASSWORD_NEVER_EXPIRES_DAYS
    )

    expires_at = None
    days_remaining = None
    if not never_expires and last_change:
        expires_at = last_change + timedelta(days=validity)
        days_remaining = (expires_at - now).days

    return {
        "userPrincipalName": upn,
        "displayName": user.get("displayName", ""),
        "accountEnabled": user.get("accountEnabled"),
        "onPremisesSyncEnabled": bool(user.get("onPremisesSyncEnabled")),
        "lastPasswordChange": last_change.isoformat() if last_change else "",
        "validityDays": None if never_expires else validity,
        "passwordExpires": expires_at.isoformat() if expires_at else "",
        "daysRemaining": days_remaining,
        "neverExpires": never_expires,
        "expired": days_remaining is not None and days_remaining < 0,
        "expiringSoon": days_remaining is not None and 0 <= days_remaining <= warning_days,
    }


def _sort_key(row: dict):
    days = row["daysRemaining"]
    return (days is None, days if days is not None else 0, row["userPrincipalName"].lower())


class PasswordExpiryCollector(BaseCollector):
    name = "password_expiry"
    description = "Password expiry dates per user"

    def __init__(
        self,
        graph: GraphClient,
        config: Optional[ReportConfig] = None,
        user: Optional[str] = None,
        now: Optional[datetime] = None,
    ):
        super().__init__(graph, config)
        self.user = user
        self.now = now or datetime.now(timezone.utc)

    async def collect(self, result: CollectorResult):
        domains = await self.fetch_all("domains", result, page_size=None)
        validity_by_domain = {
            d.get("id", "").lower(): d.get("passwordValidityPeriodInDays")
            for d in domains
        }
        result.add_data("domains", [
            {"id": d, "passwordValidityPeriodInDays": v}
            for d, v in sorted(validity_by_domain.items())
        ])

        if self.user:
            failures = len(result.metadata["errors"])
            user = await self.fetch_one(
                f"users/{self.user}", result, params={"$select": USER_SELECT}
            )
            if user is None:
                if len(result.metadata["errors"]) == failures:
                    result.add_error(f"User not found: {self.user}")
                return
            users = [user]
        else:
            users = []
            async for user in self.iter_all(
                "users", result, params={"$select": USER_SELECT}
            ):
                if user.get("accountEnabled") is False and not self.config.include_disabled_users:
                    continue
                users.append(user)

        rows = [
            password_expiry_row(u, validity_by_domain, self.now, self.config.password_warning_days)
            for u in users
        ]
        rows.sort(key=_sort_key)
        result.set_rows(rows)

        expired = sum(1 for r in rows if r["expired"])
        soon = sum(1 for r in rows if r["expiringSoon"])
        logger.info(f"[{self.name}] {len(rows)} users, {expired} expired, {soon} expiring soon")
