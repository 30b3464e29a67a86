"""
Shared mailbox provisioning — creates (or finds) a shared mailbox and wires
it to a Team by reconciling its permissions with the Team's backing group.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..config import SyncConfig
from ..exchange.client import ExchangeAPIError, ExchangeClient
from ..exchange.permissions import is_already_present
from ..graph.directory import GraphGroupDirectory
from ..runlog import RunLog
from .base import PermissionStore, SyncFatalError
from .models import SyncResult
from .sync import run_mailbox_sync

logger = logging.getLogger("m365_admin_toolkit.mailbox.provision")

# New-Mailbox reports an existing address with one of these
ADDRESS_IN_USE_MARKERS = ("already being used", "proxy address", "already exists")


@dataclass
class ProvisionResult:
    mailbox: str
    created: bool
    team_id: str = ""
    team_name: str = ""
    sync: Optional[SyncResult] = None


async def ensure_shared_mailbox(
    exchange: ExchangeClient,
    name: str,
    address: str,
    display_name: str = "",
) -> bool:
    """
    Create a shared mailbox. Returns True if created, False if a mailbox
    with that address already exists. Any other failure is raised.
    """
    existing = await _find_mailbox(exchange, address)
    if existing:
        logger.info(f"Shared mailbox {address} already exists")
        return False

    try:
        await exchange.invoke("New-Mailbox", {
            "Shared": True,
            "Name": name,
            "DisplayName": display_name or name,
            "PrimarySmtpAddress": address,
        })
    except ExchangeAPIError as e:
        lowered = e.message.lower()
        if is_already_present(e.message) or any(m in lowered for m in ADDRESS_IN_USE_MARKERS):
            logger.info(f"Shared mailbox {address} already exists")
            return False
        raise
    logger.info(f"Created shared mailbox {address}")
    return True


async def _find_mailbox(exchange: ExchangeClient, address: str) -> Optional[dict]:
    try:
        rows = await exchange.invoke("Get-Mailbox", {"Identity": address})
    except ExchangeAPIError as e:
        if e.status_code == 404 or "couldn't be found" in e.message.lower():
            return None
        raise
    return rows[0] if rows else None


async def provision_shared_mailbox(
    exchange: ExchangeClient,
    directory: GraphGroupDirectory,
    store: PermissionStore,
    runlog: RunLog,
    name: str,
    address: str,
    team: str,
    display_name: str = "",
    config: Optional[SyncConfig] = None,
) -> ProvisionResult:
    """
    Provision the mailbox, then grant the Team's owners FullAccess and its
    members ReadPermission through the regular mailbox sync.
    """
    runlog.event(f"Provisioning shared mailbox {address} for team {team}")
    try:
        team_group = await directory.get_group(team)
        created = await ensure_shared_mailbox(exchange, name, address, display_name)
    except Exception as e:
        runlog.fatal(f"Provisioning {address} failed: {e}")
        raise SyncFatalError(f"Provisioning {address} failed: {e}") from e

    if "Team" not in (team_group.get("resourceProvisioningOptions") or []):
        logger.warning(f"Group {team_group.get('displayName')} is not Teams-enabled")
    runlog.event(f"Shared mailbox {address} {'created' if created else 'already existed'}")

    result = ProvisionResult(
        mailbox=address,
        created=created,
        team_id=team_group.get("id", ""),
        team_name=team_group.get("displayName", ""),
    )
    if created and exchange.dry_run:
        runlog.event(f"Dry run: {address} does not exist yet, permission sync skipped")
        return result

    result.sync = await run_mailbox_sync(
        result.team_id or team, address, directory, store, runlog, config
    )
    return result
