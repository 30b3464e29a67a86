"""
Graph-backed group directory — resolves a group by id, mail or display name
and lists its owners and members with every SMTP address they hold.
"""

from __future__ import annotations

import logging
import re

from ..mailbox.base import MembershipSource
from ..mailbox.models import DirectoryUser
from .client import GraphAPIError, GraphClient

logger = logging.getLogger("m365_admin_toolkit.graph.directory")

GUID_PATTERN = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)

USER_SELECT = "id,mail,userPrincipalName,displayName,proxyAddresses"


class GroupNotFoundError(LookupError):
    """Raised when a group identity does not resolve to exactly one group."""
    pass


def primary_address(user: dict) -> str:
    """Primary SMTP address, falling back to the UPN for unlicensed users."""
    return user.get("mail") or user.get("userPrincipalName") or ""


def smtp_addresses(user: dict) -> list[str]:
    """Addresses from proxyAddresses; "SMTP:" is the primary, "smtp:" secondaries."""
    return [
        p.split(":", 1)[1]
        for p in user.get("proxyAddresses") or []
        if p.lower().startswith("smtp:") and p.split(":", 1)[1]
    ]


def directory_user(user: dict) -> DirectoryUser | None:
    address = primary_address(user)
    if not address:
        return None
    aliases = {user.get("mail"), user.get("userPrincipalName"), *smtp_addresses(user)}
    return DirectoryUser(address=address, aliases=frozenset(a for a in aliases if a and a != address))


class GraphGroupDirectory(MembershipSource):
    """MembershipSource reading Entra ID groups through Microsoft Graph."""

    def __init__(self, graph: GraphClient):
        self.graph = graph
        self._resolved: dict[str, str] = {}

    async def resolve_group(self, identity: str) -> str:
        """Return the object id for a group id, mail address or display name."""
        identity = identity.strip()
        if GUID_PATTERN.match(identity):
            return identity
        if identity in self._resolved:
            return self._resolved[identity]

        escaped = identity.replace("'", "''")
        groups = await self.graph.get_all_pages(
            "groups",
            params={
                "$filter": f"mail eq '{escaped}' or displayName eq '{escaped}'",
                "$select": "id,displayName,mail",
            },
        )
        if not groups:
            raise GroupNotFoundError(f"No group found matching '{identity}'")
        if len(groups) > 1:
            names = ", ".join(g.get("displayName", "?") for g in groups)
            raise GroupNotFoundError(f"'{identity}' matches {len(groups)} groups: {names}")

        group_id = groups[0]["id"]
        logger.info(f"Resolved group '{identity}' to {group_id}")
        self._resolved[identity] = group_id
        return group_id

    async def get_group(self, identity: str) -> dict:
        group_id = await self.resolve_group(identity)
        try:
            return await self.graph.get(
                f"groups/{group_id}",
                params={"$select": "id,displayName,mail,resourceProvisioningOptions"},
            )
        except GraphAPIError as e:
            if e.not_found:
                raise GroupNotFoundError(f"Group {group_id} does not exist") from e
            raise

    async def list_owners(self, group: str) -> list[DirectoryUser]:
        return await self._list_users(group, "owners")

    async def list_members(self, group: str) -> list[DirectoryUser]:
        return await self._list_users(group, "members")

    async def _list_users(self, group: str, relation: str) -> list[DirectoryUser]:
        group_id = await self.resolve_group(group)
        users = await self.graph.get_all_pages(
            f"groups/{group_id}/{relation}/microsoft.graph.user",
            params={"$select": USER_SELECT},
        )
        records = [directory_user(u) for u in users]
        skipped = records.count(None)
        if skipped:
            logger.warning(f"{skipped} {relation} of {group} have no mail or UPN; ignored")
        return [r for r in records if r is not None]

