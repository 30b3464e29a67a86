"""
Configuration module for the M365 Admin Toolkit.
Defines all tunable parameters, API endpoints, and operational settings.
"""

from __future__ import annotations

import os
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from datetime import datetime, timezone


# ─── Tenant Authentication ───────────────────────────────────────────────────

@dataclass
class CertificateAuth:
    """Certificate-based app-only authentication configuration."""
    tenant_id: str
    client_id: str
    certificate_path: str          # Path to base64-encoded PFX
    certificate_password: str = "" # Will be prompted if empty
    thumbprint: str = ""

@dataclass
class DelegatedAuth:
    """Delegated (interactive) authentication configuration."""
    tenant_id: str
    client_id: str

@dataclass
class AuthConfig:
    """Authentication configuration — supports both modes."""
    mode: str = "certificate"  # "certificate" or "delegated"
    certificate: Optional[CertificateAuth] = None
    delegated: Optional[DelegatedAuth] = None

    @property
    def tenant_id(self) -> str:
        if self.mode == "delegated" and self.delegated:
            return self.delegated.tenant_id
        if self.certificate:
            return self.certificate.tenant_id
        return ""


# ─── Graph API Settings ─────────────────────────────────────────────────────

GRAPH_BASE_URL = "https://graph.microsoft.com"
GRAPH_API_VERSION = "v1.0"
GRAPH_SCOPES = ["https://graph.microsoft.com/.default"]

# ─── Exchange Online Admin API ──────────────────────────────────────────────

EXCHANGE_BASE_URL = "https://outlook.office365.com/adminapi/beta"
EXCHANGE_SCOPES = ["https://outlook.office365.com/.default"]

# Rate limiting / throttling
MAX_RETRIES = 5                   # Retry count for throttled requests
INITIAL_BACKOFF_SECONDS = 2.0     # First retry delay
MAX_BACKOFF_SECONDS = 120.0       # Cap on exponential backoff
BACKOFF_MULTIPLIER = 2.0          # Exponential factor

# Pagination
DEFAULT_PAGE_SIZE = 999           # Maximum items per page ($top)
MAX_PAGES_PER_ENDPOINT = 10000   # Safety cap on pagination loops

# Domain password policy value meaning "never expires"
PASSWORD_NEVER_EXPIRES_DAYS = 2147483647
DEFAULT_PASSWORD_VALIDITY_DAYS = 90


# ─── Mailbox Sync Settings ──────────────────────────────────────────────────

# Built-in principals on mailbox permissions. Literal, case-insensitive prefixes.
DEFAULT_MAILBOX_EXCLUSIONS = [
    "NT AUTHORITY\\",
    "S-1-5-",
    "NAMPR",
    "EURPR",
    "APCPR",
    "Exchange Servers",
    "Exchange Trusted Subsystem",
    "Exchange Windows Permissions",
    "Managed Availability Servers",
    "Organization Management",
    "Discovery Management",
    "Public Folder Management",
    "Delegated Setup",
    "JitUsers",
]

# Placeholder subjects on folder permissions.
DEFAULT_FOLDER_EXCLUSIONS = [
    "Default",
    "Anonymous",
    "Owner@local",
    "Member@local",
]

@dataclass
class SyncConfig:
    """Controls for the mailbox permission reconciliation."""
    mailbox_exclusions: list[str] = field(
        default_factory=lambda: list(DEFAULT_MAILBOX_EXCLUSIONS)
    )
    folder_exclusions: list[str] = field(
        default_factory=lambda: list(DEFAULT_FOLDER_EXCLUSIONS)
    )
    folder_path: str = ""            # "" = top of information store
    dry_run: bool = False            # Record writes without sending them


# ─── Report Settings ───────────────────────────────────────────────────────

@dataclass
class ReportConfig:
    """Controls for the directory reports."""
    sso_usage_days: int = 30              # Sign-in look-back for sso-usage
    password_warning_days: int = 14       # Flag passwords expiring within N days
    include_disabled_users: bool = False  # password-expiry over disabled accounts


# ─── Output Configuration ───────────────────────────────────────────────────

DEFAULT_LOG_PATH = "./m365_admin_toolkit.log"

@dataclass
class OutputConfig:
    """Output directory and run-log settings."""
    base_dir: str = ""
    timestamp: str = ""
    log_path: str = DEFAULT_LOG_PATH

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        if not self.base_dir:
            self.base_dir = os.path.join(os.getcwd(), "m365_admin_output")

    @property
    def output_dir(self) -> Path:
        return Path(self.base_dir)

    def create_directories(self):
        self.output_dir.mkdir(parents=True, exist_ok=True)


# ─── Master Configuration ───────────────────────────────────────────────────

@dataclass
class ToolkitConfig:
    """Top-level configuration for every toolkit command."""
    auth: AuthConfig = field(default_factory=AuthConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    reports: ReportConfig = field(default_factory=ReportConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    verbose: bool = False

    @classmethod
    def from_file(cls, path: str) -> "ToolkitConfig":
        """Load configuration from a JSON file."""
        with open(path, "r") as f:
            data = json.load(f)
        config = cls()
        if "auth" in data:
            auth_data = data["auth"]
            config.auth.mode = auth_data.get("mode", "certificate")
            if "certificate" in auth_data:
                c = auth_data["certificate"]
                config.auth.certificate = CertificateAuth(
                    tenant_id=c["tenant_id"],
                    client_id=c["client_id"],
                    certificate_path=c.get("certificate_path", "./base64.txt"),
                    certificate_password=c.get("certificate_password", ""),
                    thumbprint=c.get("thumbprint", ""),
                )
            if "delegated" in auth_data:
                d = auth_data["delegated"]
                config.auth.delegated = DelegatedAuth(
                    tenant_id=d["tenant_id"],
                    client_id=d["client_id"],
                )
        if "sync" in data:
            for k, v in data["sync"].items():
                if hasattr(config.sync, k):
                    setattr(config.sync, k, v)
        if "reports" in data:
            for k, v in data["reports"].items():
                if hasattr(config.reports, k):
                    setattr(config.reports, k, v)
        if "output" in data:
            for k, v in data["output"].items():
                if hasattr(config.output, k):
                    setattr(config.output, k, v)
        config.verbose = data.get("verbose", False)
        return config


# ─── Required API Permissions (Least Privilege) ─────────────────────────────

REQUIRED_PERMISSIONS = {
    # Graph
    "GroupMember.Read.All": "Read group owners and members for mailbox sync",
    "User.Read.All": "Read user password metadata for expiry reports",
    "Domain.Read.All": "Read domain password validity period",
    "Application.Read.All": "Read service principals for the SSO app export",
    "AuditLog.Read.All": "Read sign-in logs for SSO usage",

    # Exchange Online (Office 365 Exchange Online resource)
    "Exchange.ManageAsApp": "Run mailbox and folder permission cmdlets",
}
