"""
Safety Guardian — Keeps Graph traffic read-only and gates Exchange writes.
Validates HTTP methods and cmdlet names, records planned writes in dry-run
mode, and logs safety events.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger("m365_admin_toolkit.safety")

# ─── Blocked HTTP Methods ────────────────────────────────────────────────────

WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}

# Known read-only POST endpoints (Graph uses POST for some queries)
SAFE_POST_ENDPOINTS = [
    re.compile(r"/\$batch$"),                        # Batch read requests
    re.compile(r"/microsoft\.graph\.getByIds$"),     # Resolve IDs
]

# ─── Exchange cmdlets ────────────────────────────────────────────────────────

READ_CMDLET_PREFIXES = ("Get-",)

# The only write cmdlets the toolkit is allowed to run
ALLOWED_WRITE_CMDLETS = {
    "Add-MailboxPermission",
    "Remove-MailboxPermission",
    "Add-MailboxFolderPermission",
    "Remove-MailboxFolderPermission",
    "New-Mailbox",
}


class SafetyViolation(Exception):
    """Raised when a disallowed operation is attempted."""
    pass


class SafetyGuardian:
    """
    Validates every outbound request before execution.
    Graph requests must be read-only. Exchange cmdlets must be reads or on
    the write allow-list; in dry-run mode allowed writes are recorded as
    planned instead of being sent.
    """

    def __init__(self, dry_run: bool = False):
        self.dry_run = dry_run
        self.violations: list[dict] = []
        self.planned_writes: list[dict] = []
        self.checks_performed: int = 0
        self.started_at: str = datetime.now(timezone.utc).isoformat()

    def validate_request(self, method: str, url: str, body: Optional[dict] = None) -> bool:
        """
        Validate that a Graph request is read-only.
        Returns True if safe, raises SafetyViolation if not.
        """
        self.checks_performed += 1
        method_upper = method.upper()

        if method_upper in ("GET", "HEAD", "OPTIONS"):
            return True

        if method_upper == "POST":
            for pattern in SAFE_POST_ENDPOINTS:
                if pattern.search(url):
                    return True

        if method_upper in WRITE_METHODS:
            self._record_violation(method_upper, url, "Write HTTP method blocked")
            raise SafetyViolation(
                f"SAFETY VIOLATION: Write method blocked: {method_upper} {url}"
            )

        return True

    def validate_cmdlet(self, cmdlet: str, parameters: Optional[dict] = None) -> bool:
        """
        Validate an Exchange cmdlet.
        Returns True if the cmdlet should be sent, False if it was recorded
        as a planned write (dry-run). Raises SafetyViolation otherwise.
        """
        self.checks_performed += 1

        if cmdlet.startswith(READ_CMDLET_PREFIXES):
            return True

        if cmdlet not in ALLOWED_WRITE_CMDLETS:
            self._record_violation("InvokeCommand", cmdlet, "Cmdlet not on allow-list")
            raise SafetyViolation(f"SAFETY VIOLATION: Cmdlet not allowed: {cmdlet}")

        if self.dry_run:
            self.planned_writes.append({
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "cmdlet": cmdlet,
                "parameters": dict(parameters or {}),
            })
            logger.info(f"Dry run: {cmdlet} {parameters or {}} not sent")
            return False

        return True

    def _record_violation(self, method: str, target: str, reason: str):
        """Record a safety violation for audit."""
        violation = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "method": method,
            "target": target,
            "reason": reason,
        }
        self.violations.append(violation)
        logger.critical(f"SAFETY VIOLATION: {reason} — {method} {target}")

    def get_audit_record(self) -> dict:
        """Return the full safety audit record."""
        return {
            "safety_guardian": {
                "mode": "DRY-RUN" if self.dry_run else "LIVE",
                "started_at": self.started_at,
                "checks_performed": self.checks_performed,
                "planned_writes": self.planned_writes,
                "violations_detected": len(self.violations),
                "violations": self.violations,
                "status": "CLEAN" if not self.violations else "VIOLATIONS_DETECTED",
            }
        }

    def print_banner(self):
        """Print the run-mode banner."""
        print("=" * 75)
        if self.dry_run:
            print("  DRY RUN -- Exchange writes are recorded, never sent")
        else:
            print("  LIVE RUN -- Exchange permission changes WILL be applied")
        print("  * Microsoft Graph access is read-only")
        print("  * Only allow-listed Exchange cmdlets may write")
        print("=" * 75)
