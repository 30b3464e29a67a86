"""
Tenant Profile Manager — Named profiles for multi-tenant support.

Profiles are stored in:
    ~/.m365_admin_toolkit/profiles.json

Set M365_ADMIN_TOOLKIT_HOME to keep them somewhere else.

Each profile contains tenant_id, client_id, cert_path, an optional display
name and optional run-log path and extra mailbox exclusions. Admins managing
several tenants switch between them via `--profile <name>` on the CLI.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger("m365_admin_toolkit.profiles")


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_CERT_PATH = "./base64.txt"


def config_dir() -> Path:
    override = os.environ.get("M365_ADMIN_TOOLKIT_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".m365_admin_toolkit"


def profiles_file() -> Path:
    return config_dir() / "profiles.json"


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass
class TenantProfile:
    """A single named tenant profile."""
    name: str                               # Unique short name (e.g. "contoso-prod")
    tenant_id: str                          # Entra tenant ID
    client_id: str                          # App registration client ID
    cert_path: str = DEFAULT_CERT_PATH      # Base64-encoded PFX certificate
    tenant_display_name: str = ""
    log_path: str = ""                      # Run log for this tenant
    mailbox_exclusions: list[str] = field(default_factory=list)  # Added to the defaults
    notes: str = ""

    def resolve_cert_path(self) -> str:
        """Return absolute cert path, resolving ~ and relative paths."""
        p = Path(self.cert_path).expanduser()
        if not p.is_absolute():
            p = Path.cwd() / p
        return str(p)

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "client_id": self.client_id,
            "cert_path": self.cert_path,
            "tenant_display_name": self.tenant_display_name,
            "log_path": self.log_path,
            "mailbox_exclusions": list(self.mailbox_exclusions),
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, name: str, data: dict) -> "TenantProfile":
        return cls(
            name=name,
            tenant_id=data["tenant_id"],
            client_id=data["client_id"],
            cert_path=data.get("cert_path", DEFAULT_CERT_PATH),
            tenant_display_name=data.get("tenant_display_name", ""),
            log_path=data.get("log_path", ""),
            mailbox_exclusions=list(data.get("mailbox_exclusions", [])),
            notes=data.get("notes", ""),
        )


@dataclass
class ProfileStore:
    """Manages the collection of tenant profiles on disk."""
    profiles: dict[str, TenantProfile] = field(default_factory=dict)
    default_profile: str = ""
    path: Optional[Path] = None

    # --- Persistence ---

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "ProfileStore":
        """Load profiles from disk. Returns an empty store if the file doesn't exist."""
        path = path or profiles_file()
        store = cls(path=path)
        if not path.exists():
            return store
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            store.default_profile = data.get("default_profile", "")
            for name, pdata in data.get("profiles", {}).items():
                store.profiles[name] = TenantProfile.from_dict(name, pdata)
        except (json.JSONDecodeError, KeyError) as e:
            logger.warning(f"Failed to parse {path}: {e}")
            return cls(path=path)
        return store

    def save(self) -> None:
        """Persist profiles to disk."""
        path = self.path or profiles_file()
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "default_profile": self.default_profile,
            "profiles": {name: p.to_dict() for name, p in self.profiles.items()},
        }
        path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")

    # --- CRUD ---

    def add(self, profile: TenantProfile, set_default: bool = False) -> None:
        """Add or overwrite a profile."""
        self.profiles[profile.name] = profile
        if set_default or not self.default_profile:
            self.default_profile = profile.name
        self.save()

    def remove(self, name: str) -> bool:
        """Remove a profile by name. Returns True if it existed."""
        if name not in self.profiles:
            return False
        del self.profiles[name]
        if self.default_profile == name:
            self.default_profile = next(iter(self.profiles), "")
        self.save()
        return True

    def get(self, name: str) -> Optional[TenantProfile]:
        """Get a profile by name (case-insensitive)."""
        key = name.lower()
        for pname, profile in self.profiles.items():
            if pname.lower() == key:
                return profile
        return None

    def get_default(self) -> Optional[TenantProfile]:
        if self.default_profile:
            return self.profiles.get(self.default_profile)
        if self.profiles:
            return next(iter(self.profiles.values()))
        return None

    def set_default(self, name: str) -> bool:
        """Set the default profile. Returns True if profile exists."""
        if name not in self.profiles:
            return False
        self.default_profile = name
        self.save()
        return True

    def list_profiles(self) -> list[TenantProfile]:
        return sorted(self.profiles.values(), key=lambda p: p.name)


def resolve_profile(
    profile_name: Optional[str] = None,
    path: Optional[Path] = None,
) -> Optional[TenantProfile]:
    """
    Look up a tenant profile by name.
    If no name given, returns the default profile.
    Returns None if no profiles are configured.
    """
    store = ProfileStore.load(path)
    if profile_name:
        return store.get(profile_name)
    return store.get_default()
