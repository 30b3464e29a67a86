"""
SSO Application Collector
Enumerates enterprise applications (service principals) configured for
single sign-on.
"""

from __future__ import annotations

import logging
from typing import Optional

from .base import BaseCollector, CollectorResult, parse_graph_datetime

logger = logging.getLogger("m365_admin_toolkit.collectors.sso_apps")

ENTERPRISE_APP_TAG = "WindowsAzureActiveDirectoryIntegratedApp"

# preferredSingleSignOnMode values that mean SSO is configured
SSO_MODES = {"saml", "password", "oidc"}

SP_SELECT = (
    "id,appId,displayName,accountEnabled,appRoleAssignmentRequired,"
    "preferredSingleSignOnMode,loginUrl,notificationEmailAddresses,"
    "preferredTokenSigningKeyEndDateTime,keyCredentials,tags,"
    "appOwnerOrganizationId,homepage"
)


def signing_cert_expiry(sp: dict) -> Optional[str]:
    """Earliest signing certificate end date, as reported by Graph."""
    preferred = sp.get("preferredTokenSigningKeyEndDateTime")
    if preferred:
        return preferred
    ends = [
        parse_graph_datetime(k.get("endDateTime"))
        for k in sp.get("keyCredentials", [])
        if k.get("usage") in ("Sign", "Verify")
    ]
    ends = [e for e in ends if e]
    return min(ends).isoformat() if ends else None


def sso_app_row(sp: dict) -> dict:
    return {
        "displayName": sp.get("displayName", ""),
        "appId": sp.get("appId", ""),
        "servicePrincipalId": sp.get("id", ""),
        "ssoMode": sp.get("preferredSingleSignOnMode", ""),
        "loginUrl": sp.get("loginUrl") or sp.get("homepage") or "",
        "accountEnabled": sp.get("accountEnabled"),
        "assignmentRequired": sp.get("appRoleAssignmentRequired"),
        "notificationEmails": "; ".join(sp.get("notificationEmailAddresses") or []),
        "signingCertExpiry": signing_cert_expiry(sp) or "",
    }


class SsoAppCollector(BaseCollector):
    name = "sso_apps"
    description = "Enterprise applications with single sign-on configured"

    async def collect(self, result: CollectorResult):
        rows = []
        seen = 0
        async for sp in self.iter_all(
            "servicePrincipals",
            result,
            params={
                "$filter": f"tags/any(t:t eq '{ENTERPRISE_APP_TAG}')",
                "$select": SP_SELECT,
            },
        ):
            seen += 1
            if (sp.get("preferredSingleSignOnMode") or "") not in SSO_MODES:
                continue
            rows.append(sso_app_row(sp))

        rows.sort(key=lambda r: r["displayName"].lower())
        result.set_rows(rows)
        logger.info(f"[{self.name}] {len(rows)} of {seen} enterprise apps use SSO")
