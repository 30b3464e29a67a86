from .base import MembershipSource, PermissionStore, PermissionStoreError, SyncFatalError
from .models import (
    AccessLevel,
    ActionKind,
    DirectoryUser,
    GrantOutcome,
    GroupMembershipSnapshot,
    PermissionGrant,
    PermissionScope,
    SyncAction,
    SyncResult,
)
from .reconcile import reconcile_mailbox_permissions
from .sync import run_mailbox_sync

__all__ = [
    "MembershipSource",
    "PermissionStore",
    "PermissionStoreError",
    "SyncFatalError",
    "AccessLevel",
    "ActionKind",
    "DirectoryUser",
    "GrantOutcome",
    "GroupMembershipSnapshot",
    "PermissionGrant",
    "PermissionScope",
    "SyncAction",
    "SyncResult",
    "reconcile_mailbox_permissions",
    "run_mailbox_sync",
]
