"""
Group-to-mailbox permission reconciliation.

Makes a mailbox's permissions mirror a directory group:
  - owners get FullAccess with auto-mapping,
  - members who are not owners get ReadPermission without auto-mapping,
  - everyone else loses their explicit grants.

Grant holders are matched to users through every address the directory
knows for them. Holders that are not addresses and match nobody are left
alone and reported as unresolved.

The routine performs no logging or I/O of its own beyond the two interfaces
it is handed; it returns a SyncResult describing every action.
"""

from __future__ import annotations

from typing import Iterable, Optional

from ..config import SyncConfig
from .base import MembershipSource, PermissionStore, PermissionStoreError, SyncFatalError
from .models import (
    AccessLevel,
    ActionKind,
    GroupMembershipSnapshot,
    OUTCOME_FAILED,
    PermissionGrant,
    PermissionScope,
    SyncAction,
    SyncResult,
    identity_key,
    looks_like_address,
)

# Rights a current user holds that contradict their desired level
MISMATCHED_LEVELS = {
    AccessLevel.FULL_ACCESS: (AccessLevel.READ_PERMISSION.value,),
    AccessLevel.READ_PERMISSION: (AccessLevel.FULL_ACCESS.value,),
}


def is_excluded(subject: str, prefixes: Iterable[str]) -> bool:
    """Literal, case-insensitive prefix match against an exclusion list."""
    folded = subject.casefold()
    return any(folded.startswith(p.casefold()) for p in prefixes if p)


def managed_grants(
    grants: Iterable[PermissionGrant],
    exclusions: Iterable[str],
    result: Optional[SyncResult] = None,
) -> list[PermissionGrant]:
    """Drop inherited grants and built-in principals."""
    exclusions = list(exclusions)
    kept = []
    for grant in grants:
        if grant.is_inherited:
            continue
        if is_excluded(grant.subject, exclusions):
            if result is not None and grant.subject not in result.excluded_subjects:
                result.excluded_subjects.append(grant.subject)
            continue
        kept.append(grant)
    return kept


def desired_level(snapshot: GroupMembershipSnapshot, subject: str) -> Optional[AccessLevel]:
    """The mailbox-level right a subject should hold, or None."""
    if snapshot.is_owner(subject):
        return AccessLevel.FULL_ACCESS
    if snapshot.is_current(subject):
        return AccessLevel.READ_PERMISSION
    return None


def revoke_reason(snapshot: GroupMembershipSnapshot, grant: PermissionGrant) -> Optional[str]:
    """
    Why a mailbox grant should go, or None to keep it. Current users only
    lose ReadPermission (owners) or FullAccess (plain members); any other
    right they hold is left alone.
    """
    wanted = desired_level(snapshot, grant.subject)
    if wanted is None:
        return "no longer in group"
    if grant.access_level in MISMATCHED_LEVELS.get(wanted, ()):
        return f"should hold {wanted.value}"
    return None


def _unresolved(snapshot: GroupMembershipSnapshot, grant: PermissionGrant, result: SyncResult) -> bool:
    """A holder that is neither a member nor an address cannot be shown to be stale."""
    if snapshot.is_current(grant.subject) or looks_like_address(grant.subject):
        return False
    if grant.subject not in result.unresolved_subjects:
        result.unresolved_subjects.append(grant.subject)
    return True


async def reconcile_mailbox_permissions(
    group: str,
    mailbox: str,
    directory: MembershipSource,
    store: PermissionStore,
    config: Optional[SyncConfig] = None,
) -> SyncResult:
    """
    Reconcile mailbox and folder permissions for one group/mailbox pair.

    Raises SyncFatalError if membership or the baseline permissions cannot
    be read. Individual revokes and grants never raise; failures are
    recorded on the returned SyncResult and the run carries on.
    """
    if not group or not group.strip():
        raise ValueError("group identity must be a non-empty string")
    if not mailbox or not mailbox.strip():
        raise ValueError("mailbox identity must be a non-empty string")

    config = config or SyncConfig()
    folder = config.folder_path
    result = SyncResult(group=group, mailbox=mailbox)

    # ── Phase 1: authoritative membership ───────────────────────────────────
    try:
        owners = await directory.list_owners(group)
        members = await directory.list_members(group)
    except Exception as e:
        raise SyncFatalError(f"Unable to resolve membership of group {group}: {e}") from e

    snapshot = GroupMembershipSnapshot.from_lists(owners, members)
    result.snapshot = snapshot

    # ── Phase 2: baseline permissions ───────────────────────────────────────
    try:
        mailbox_grants = await store.get_mailbox_permissions(mailbox)
        folder_grants = await store.get_folder_permissions(mailbox, folder)
    except Exception as e:
        raise SyncFatalError(f"Unable to read permissions on {mailbox}: {e}") from e

    mailbox_grants = managed_grants(mailbox_grants, config.mailbox_exclusions, result)
    folder_grants = managed_grants(folder_grants, config.folder_exclusions, result)

    # ── Phase 3: revoke stale and mismatched grants ─────────────────────────
    for grant in mailbox_grants:
        if _unresolved(snapshot, grant, result):
            continue
        reason = revoke_reason(snapshot, grant)
        if reason is not None:
            await _revoke_mailbox(store, result, mailbox, grant, reason)

    revoked_folder_subjects: set[str] = set()
    for grant in folder_grants:
        key = identity_key(grant.subject)
        if snapshot.is_current(grant.subject) or key in revoked_folder_subjects:
            continue
        if _unresolved(snapshot, grant, result):
            continue
        revoked_folder_subjects.add(key)
        await _revoke_folder(store, result, mailbox, folder, grant)

    # ── Phase 4: (re)apply desired grants ───────────────────────────────────
    for owner in sorted(snapshot.owners):
        await _grant_mailbox(store, result, mailbox, owner, AccessLevel.FULL_ACCESS, True)

    for reader in snapshot.readers():
        await _grant_mailbox(store, result, mailbox, reader, AccessLevel.READ_PERMISSION, False)

    # Owners also get folder visibility in Outlook
    for owner in sorted(snapshot.owners):
        await _grant_folder(store, result, mailbox, folder, owner, AccessLevel.REVIEWER)

    return result


async def _revoke_mailbox(
    store: PermissionStore,
    result: SyncResult,
    mailbox: str,
    grant: PermissionGrant,
    reason: str,
):
    action = SyncAction(ActionKind.REVOKE, grant.subject, grant.access_level,
                        PermissionScope.MAILBOX, detail=reason)
    try:
        outcome = await store.remove_mailbox_permission(mailbox, grant.subject, grant.access_level)
        action.outcome = outcome.value
    except PermissionStoreError as e:
        action.outcome = OUTCOME_FAILED
        action.detail = str(e)
    result.record(action)


async def _revoke_folder(
    store: PermissionStore,
    result: SyncResult,
    mailbox: str,
    folder: str,
    grant: PermissionGrant,
):
    action = SyncAction(ActionKind.REVOKE, grant.subject, grant.access_level,
                        PermissionScope.FOLDER, detail="no longer in group")
    try:
        outcome = await store.remove_folder_permission(mailbox, folder, grant.subject)
        action.outcome = outcome.value
    except PermissionStoreError as e:
        action.outcome = OUTCOME_FAILED
        action.detail = str(e)
    result.record(action)


async def _grant_mailbox(
    store: PermissionStore,
    result: SyncResult,
    mailbox: str,
    subject: str,
    level: AccessLevel,
    auto_mapping: bool,
):
    action = SyncAction(ActionKind.GRANT, subject, level.value, PermissionScope.MAILBOX,
                        detail=f"AutoMapping={'on' if auto_mapping else 'off'}")
    try:
        outcome = await store.add_mailbox_permission(mailbox, subject, level, auto_mapping)
        action.outcome = outcome.value
    except PermissionStoreError as e:
        action.outcome = OUTCOME_FAILED
        action.detail = str(e)
    result.record(action)


async def _grant_folder(
    store: PermissionStore,
    result: SyncResult,
    mailbox: str,
    folder: str,
    subject: str,
    level: AccessLevel,
):
    action = SyncAction(ActionKind.GRANT, subject, level.value, PermissionScope.FOLDER)
    try:
        outcome = await store.add_folder_permission(mailbox, folder, subject, level)
        action.outcome = outcome.value
    except PermissionStoreError as e:
        action.outcome = OUTCOME_FAILED
        action.detail = str(e)
    result.record(action)
