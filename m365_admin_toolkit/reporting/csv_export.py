"""
CSV exporter — Writes report rows as Excel-friendly CSV (UTF-8 with BOM).
"""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Any, Iterable, Optional

PASSWORD_EXPIRY_FIELDS = [
    "userPrincipalName", "displayName", "accountEnabled", "onPremisesSyncEnabled",
    "lastPasswordChange", "validityDays", "passwordExpires", "daysRemaining",
    "neverExpires", "expired", "expiringSoon",
]

SSO_USAGE_FIELDS = [
    "appDisplayName", "appId", "resourceDisplayName", "signInCount",
    "successCount", "failureCount", "lastSignIn", "lastStatus", "clientApps",
]

SSO_APP_FIELDS = [
    "displayName", "appId", "servicePrincipalId", "ssoMode", "loginUrl",
    "accountEnabled", "assignmentRequired", "notificationEmails",
    "signingCertExpiry",
]

SYNC_ACTION_FIELDS = [
    "kind", "subject", "access_level", "scope", "outcome", "detail",
]

S3_OBJECT_FIELDS = ["key", "size", "last_modified", "etag", "storage_class"]

REPORT_FIELDS = {
    "password_expiry": PASSWORD_EXPIRY_FIELDS,
    "sso_usage": SSO_USAGE_FIELDS,
    "sso_apps": SSO_APP_FIELDS,
    "mailbox_sync": SYNC_ACTION_FIELDS,
    "s3_objects": S3_OBJECT_FIELDS,
}


def export_csv(
    rows: Iterable[dict],
    output_dir: Path,
    report_name: str,
    run_id: str,
    fields: Optional[list[str]] = None,
) -> Path:
    """
    Write one report's rows to `<report_name>_<run_id>.csv`.

    Returns:
        Path to the created CSV file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    fields = fields or REPORT_FIELDS[report_name]
    path = output_dir / f"{report_name}_{run_id}.csv"

    with open(path, "w", newline="", encoding="utf-8-sig") as fh:
        writer = csv.DictWriter(fh, fieldnames=fields, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            writer.writerow({field: _cell(row.get(field)) for field in fields})

    return path


def _cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, (list, tuple, set)):
        return "; ".join(str(v) for v in value)
    return value
