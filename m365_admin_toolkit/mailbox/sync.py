"""
Mailbox sync runner — runs the reconciliation and writes its outcome to the
run log.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..config import SyncConfig
from ..runlog import RunLog
from .base import MembershipSource, PermissionStore, SyncFatalError
from .models import SyncResult
from .reconcile import reconcile_mailbox_permissions

logger = logging.getLogger("m365_admin_toolkit.mailbox.sync")


async def run_mailbox_sync(
    group: str,
    mailbox: str,
    directory: MembershipSource,
    store: PermissionStore,
    runlog: RunLog,
    config: Optional[SyncConfig] = None,
) -> SyncResult:
    """
    Reconcile and log. Fatal errors are logged with the FATAL marker and
    re-raised; per-grant failures are logged and returned on the result.
    """
    config = config or SyncConfig()
    mode = " (dry run)" if config.dry_run else ""
    runlog.event(f"Starting mailbox sync{mode}: group={group} mailbox={mailbox}")

    try:
        result = await reconcile_mailbox_permissions(group, mailbox, directory, store, config)
    except SyncFatalError as e:
        runlog.fatal(str(e))
        logger.error(f"Mailbox sync aborted: {e}")
        raise

    snapshot = result.snapshot
    runlog.event(
        f"Group {group}: {len(snapshot.owners)} owners, {len(snapshot.members)} members"
    )
    for subject in result.excluded_subjects:
        logger.debug(f"Skipped built-in principal {subject}")
    for subject in result.unresolved_subjects:
        runlog.event(f"Left unresolved permission holder untouched: {subject}")

    for action in result.actions:
        if action.failed:
            runlog.error(action.describe())
        else:
            runlog.event(action.describe())

    summary = result.summary()
    runlog.event(
        "Mailbox sync finished: "
        + ", ".join(f"{k}={v}" for k, v in summary.items())
    )
    logger.info(f"Mailbox sync {group} -> {mailbox}: {summary}")
    return result
