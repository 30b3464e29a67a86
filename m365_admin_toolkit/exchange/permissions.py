"""
Exchange Online implementation of the mailbox PermissionStore.
Maps each store operation onto a single cmdlet and turns Exchange's
"already there" responses into GrantOutcome.ALREADY_PRESENT.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Iterable

import httpx

from ..config import DEFAULT_FOLDER_EXCLUSIONS
from ..mailbox.base import PermissionStore, PermissionStoreError
from ..mailbox.models import AccessLevel, GrantOutcome, PermissionGrant, PermissionScope
from .client import ExchangeAPIError, ExchangeClient

logger = logging.getLogger("m365_admin_toolkit.exchange.permissions")

# Fragments Exchange uses when a grant being added is already in place,
# either as a cmdlet error or as an @adminapi.warnings entry.
ALREADY_PRESENT_MARKERS = (
    "already present",
    "already exists",
    "already has",
    "existing permission entry was found",
)


def is_already_present(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in ALREADY_PRESENT_MARKERS)


def folder_identity(mailbox: str, folder: str) -> str:
    """Exchange folder identity: 'mailbox:\\' for the root, 'mailbox:\\Inbox' etc."""
    folder = folder.strip("\\")
    return f"{mailbox}:\\{folder}"


def _access_rights(value: Any) -> list[str]:
    """AccessRights arrive as a list or as a comma-separated string."""
    if value is None:
        return []
    if isinstance(value, str):
        return [r.strip() for r in value.split(",") if r.strip()]
    return [str(r).strip() for r in value if str(r).strip()]


def _folder_subject(user: Any) -> str:
    """Folder permission users come back as a display string or a recipient object."""
    if isinstance(user, dict):
        principal = user.get("RecipientPrincipal") or {}
        return (
            principal.get("PrimarySmtpAddress")
            or user.get("PrimarySmtpAddress")
            or user.get("UserPrincipalName")
            or user.get("DisplayName")
            or ""
        )
    return str(user or "")


def _explode(rows: Iterable[dict], scope: PermissionScope, subject_of) -> list[PermissionGrant]:
    grants = []
    for row in rows:
        if row.get("Deny"):
            continue
        subject = subject_of(row.get("User"))
        if not subject:
            continue
        for right in _access_rights(row.get("AccessRights")):
            grants.append(PermissionGrant(
                subject=subject,
                access_level=right,
                scope=scope,
                is_inherited=bool(row.get("IsInherited", False)),
            ))
    return grants


class ExchangePermissionStore(PermissionStore):
    """
    PermissionStore backed by Exchange Online cmdlets.

    Folder permission rows may name a holder by display name only; those are
    looked up with Get-Recipient so they can be matched to group members.
    Names starting with one of `placeholders` (Default, Anonymous, ...) are
    never looked up.
    """

    def __init__(
        self,
        exchange: ExchangeClient,
        placeholders: Iterable[str] = DEFAULT_FOLDER_EXCLUSIONS,
    ):
        self.exchange = exchange
        self.placeholders = [p.casefold() for p in placeholders if p]
        self._recipients: dict[str, str] = {}

    async def resolve_recipient(self, name: str) -> str:
        """Primary SMTP address for a display name, or the name when it does not resolve."""
        if "@" in name or name.casefold().startswith(tuple(self.placeholders)):
            return name
        if name not in self._recipients:
            try:
                rows = await self.exchange.invoke("Get-Recipient", {"Identity": name})
            except ExchangeAPIError as e:
                logger.debug(f"Get-Recipient {name!r} failed: {e.message}")
                rows = []
            addresses = {r.get("PrimarySmtpAddress") for r in rows if r.get("PrimarySmtpAddress")}
            if len(addresses) == 1:
                self._recipients[name] = addresses.pop()
            else:
                logger.warning(f"Could not resolve permission holder {name!r} to one recipient")
                self._recipients[name] = name
        return self._recipients[name]

    async def get_mailbox_permissions(self, mailbox: str) -> list[PermissionGrant]:
        rows = await self.exchange.invoke(
            "Get-MailboxPermission", {"Identity": mailbox, "ResultSize": "Unlimited"}
        )
        return _explode(rows, PermissionScope.MAILBOX, lambda u: str(u or ""))

    async def get_folder_permissions(self, mailbox: str, folder: str) -> list[PermissionGrant]:
        rows = await self.exchange.invoke(
            "Get-MailboxFolderPermission", {"Identity": folder_identity(mailbox, folder)}
        )
        grants = _explode(rows, PermissionScope.FOLDER, _folder_subject)
        resolved = []
        for grant in grants:
            subject = await self.resolve_recipient(grant.subject)
            resolved.append(replace(grant, subject=subject) if subject != grant.subject else grant)
        return resolved

    async def add_mailbox_permission(
        self, mailbox: str, subject: str, level: AccessLevel, auto_mapping: bool
    ) -> GrantOutcome:
        return await self._add("Add-MailboxPermission", subject, {
            "Identity": mailbox,
            "User": subject,
            "AccessRights": [level.value],
            "AutoMapping": auto_mapping,
            "Confirm": False,
        })

    async def remove_mailbox_permission(
        self, mailbox: str, subject: str, level: str
    ) -> GrantOutcome:
        return await self._remove("Remove-MailboxPermission", subject, {
            "Identity": mailbox,
            "User": subject,
            "AccessRights": [level],
            "InheritanceType": "All",
            "Confirm": False,
        })

    async def add_folder_permission(
        self, mailbox: str, folder: str, subject: str, level: AccessLevel
    ) -> GrantOutcome:
        return await self._add("Add-MailboxFolderPermission", subject, {
            "Identity": folder_identity(mailbox, folder),
            "User": subject,
            "AccessRights": [level.value],
        })

    async def remove_folder_permission(
        self, mailbox: str, folder: str, subject: str
    ) -> GrantOutcome:
        return await self._remove("Remove-MailboxFolderPermission", subject, {
            "Identity": folder_identity(mailbox, folder),
            "User": subject,
            "Confirm": False,
        })

    async def _add(self, cmdlet: str, subject: str, parameters: dict) -> GrantOutcome:
        if self.exchange.dry_run:
            await self.exchange.invoke(cmdlet, parameters)
            return GrantOutcome.PLANNED
        try:
            _, warnings = await self.exchange.invoke_with_warnings(cmdlet, parameters)
        except ExchangeAPIError as e:
            if is_already_present(e.message):
                return GrantOutcome.ALREADY_PRESENT
            raise PermissionStoreError(e.message, subject) from e
        except httpx.HTTPError as e:
            raise PermissionStoreError(f"{cmdlet} transport error: {e}", subject) from e

        if any(is_already_present(w) for w in warnings):
            return GrantOutcome.ALREADY_PRESENT
        return GrantOutcome.APPLIED

    async def _remove(self, cmdlet: str, subject: str, parameters: dict) -> GrantOutcome:
        if self.exchange.dry_run:
            await self.exchange.invoke(cmdlet, parameters)
            return GrantOutcome.PLANNED
        try:
            await self.exchange.invoke(cmdlet, parameters)
        except ExchangeAPIError as e:
            raise PermissionStoreError(e.message, subject) from e
        except httpx.HTTPError as e:
            raise PermissionStoreError(f"{cmdlet} transport error: {e}", subject) from e
        return GrantOutcome.APPLIED
