"""
Mailbox sync data models — membership snapshots, permission grants, and the
actions a reconciliation run produced.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping, Optional


class AccessLevel(str, Enum):
    FULL_ACCESS = "FullAccess"
    READ_PERMISSION = "ReadPermission"
    REVIEWER = "Reviewer"


class PermissionScope(str, Enum):
    MAILBOX = "mailbox"
    FOLDER = "folder"


class GrantOutcome(str, Enum):
    """Result of asking the permission store to add a grant."""
    APPLIED = "applied"
    ALREADY_PRESENT = "already_present"
    PLANNED = "planned"              # dry run, nothing sent


# Outcome recorded when the store raised; never returned by a store
OUTCOME_FAILED = "failed"


class ActionKind(str, Enum):
    REVOKE = "revoke"
    GRANT = "grant"


def identity_key(identity: str) -> str:
    """SMTP addresses and UPNs compare case-insensitively."""
    return identity.strip().casefold()


def looks_like_address(identity: str) -> bool:
    return "@" in identity


@dataclass(frozen=True)
class DirectoryUser:
    """
    A group owner or member. Grants are written to `address`; Exchange may
    report an existing grant under any of `aliases` (UPN, proxy addresses).
    """
    address: str
    aliases: frozenset[str] = frozenset()

    @classmethod
    def coerce(cls, value: "DirectoryUser | str") -> "DirectoryUser":
        if isinstance(value, DirectoryUser):
            return value
        return cls(address=value)

    def keys(self) -> set[str]:
        return {identity_key(a) for a in (self.address, *self.aliases) if a and a.strip()}


@dataclass(frozen=True)
class GroupMembershipSnapshot:
    """
    Owners and members of a directory group at one point in time, as primary
    addresses. `aliases` maps every known address of a user to its primary one.
    """
    owners: frozenset[str] = frozenset()
    members: frozenset[str] = frozenset()
    aliases: Mapping[str, str] = field(default_factory=dict, compare=False)

    @classmethod
    def from_lists(
        cls,
        owners: Iterable["DirectoryUser | str"],
        members: Iterable["DirectoryUser | str"],
    ) -> "GroupMembershipSnapshot":
        owner_users = [DirectoryUser.coerce(o) for o in owners if o]
        member_users = [DirectoryUser.coerce(m) for m in members if m]
        aliases: dict[str, str] = {}
        for user in owner_users + member_users:
            primary = identity_key(user.address)
            for key in user.keys():
                aliases.setdefault(key, primary)
        return cls(
            owners=frozenset(u.address for u in owner_users),
            members=frozenset(u.address for u in member_users),
            aliases=aliases,
        )

    @property
    def current_users(self) -> frozenset[str]:
        return self.owners | self.members

    def canonical(self, identity: str) -> Optional[str]:
        """Primary address key for any alias of a current user, else None."""
        return self.aliases.get(identity_key(identity))

    def is_owner(self, identity: str) -> bool:
        key = self.canonical(identity)
        return key is not None and key in {identity_key(o) for o in self.owners}

    def is_current(self, identity: str) -> bool:
        return self.canonical(identity) is not None

    def readers(self) -> list[str]:
        """Members that are not also owners, sorted for stable output."""
        owner_keys = {identity_key(o) for o in self.owners}
        return sorted(m for m in self.members if identity_key(m) not in owner_keys)


@dataclass(frozen=True)
class PermissionGrant:
    """One access right held by one subject on a mailbox or folder."""
    subject: str
    access_level: str
    scope: PermissionScope
    is_inherited: bool = False


@dataclass
class SyncAction:
    """A revoke or grant attempted during reconciliation."""
    kind: ActionKind
    subject: str
    access_level: str
    scope: PermissionScope
    outcome: str = GrantOutcome.APPLIED.value
    detail: str = ""

    @property
    def failed(self) -> bool:
        return self.outcome == OUTCOME_FAILED

    def describe(self) -> str:
        verb = "Removed" if self.kind == ActionKind.REVOKE else "Granted"
        if self.outcome == OUTCOME_FAILED:
            verb = f"FAILED to {'remove' if self.kind == ActionKind.REVOKE else 'grant'}"
        elif self.outcome == GrantOutcome.ALREADY_PRESENT.value:
            verb = "Already granted"
        elif self.outcome == GrantOutcome.PLANNED.value:
            verb = f"Would {'remove' if self.kind == ActionKind.REVOKE else 'grant'}"
        text = f"{verb} {self.access_level} ({self.scope.value}) for {self.subject}"
        if self.detail:
            text += f": {self.detail}"
        return text

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "subject": self.subject,
            "access_level": self.access_level,
            "scope": self.scope.value,
            "outcome": self.outcome,
            "detail": self.detail,
        }


@dataclass
class SyncResult:
    """Everything a reconciliation run did, for the caller to log or report."""
    group: str
    mailbox: str
    snapshot: GroupMembershipSnapshot = field(default_factory=GroupMembershipSnapshot)
    actions: list[SyncAction] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    excluded_subjects: list[str] = field(default_factory=list)
    # Holders that match no member and are not addresses; left untouched
    unresolved_subjects: list[str] = field(default_factory=list)

    def record(self, action: SyncAction) -> SyncAction:
        self.actions.append(action)
        if action.failed:
            self.errors.append(action.describe())
        return action

    @property
    def applied(self) -> list[SyncAction]:
        return self.by_outcome(GrantOutcome.APPLIED.value)

    @property
    def failed(self) -> list[SyncAction]:
        return [a for a in self.actions if a.failed]

    def by_outcome(self, outcome: str, kind: Optional[ActionKind] = None) -> list[SyncAction]:
        return [
            a for a in self.actions
            if a.outcome == outcome and (kind is None or a.kind == kind)
        ]

    def summary(self) -> dict[str, Any]:
        return {
            "owners": len(self.snapshot.owners),
            "members": len(self.snapshot.members),
            "revoked": len(self.by_outcome(GrantOutcome.APPLIED.value, ActionKind.REVOKE)),
            "granted": len(self.by_outcome(GrantOutcome.APPLIED.value, ActionKind.GRANT)),
            "already_present": len(self.by_outcome(GrantOutcome.ALREADY_PRESENT.value)),
            "planned": len(self.by_outcome(GrantOutcome.PLANNED.value)),
            "failed": len(self.failed),
        }

    def to_dict(self) -> dict:
        return {
            "group": self.group,
            "mailbox": self.mailbox,
            "owners": sorted(self.snapshot.owners),
            "members": sorted(self.snapshot.members),
            "summary": self.summary(),
            "actions": [a.to_dict() for a in self.actions],
            "errors": list(self.errors),
            "unresolved_subjects": list(self.unresolved_subjects),
        }
