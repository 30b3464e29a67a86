import asyncio

import pytest

from conftest import FakeDirectory, FakeStore, grant
from m365_admin_toolkit.config import SyncConfig
from m365_admin_toolkit.mailbox.base import SyncFatalError
from m365_admin_toolkit.mailbox.models import (
    AccessLevel,
    ActionKind,
    DirectoryUser,
    GrantOutcome,
    GroupMembershipSnapshot,
    OUTCOME_FAILED,
    PermissionScope,
)
from m365_admin_toolkit.mailbox.reconcile import (
    desired_level,
    is_excluded,
    managed_grants,
    reconcile_mailbox_permissions,
)

FULL = AccessLevel.FULL_ACCESS.value
READ = AccessLevel.READ_PERMISSION.value


def reconcile(directory, store, config=None):
    return asyncio.run(
        reconcile_mailbox_permissions("sales-team", "sales@x.com", directory, store, config)
    )


def test_owner_member_and_stale_grant():
    directory = FakeDirectory(owners=["alice@x.com"], members=["alice@x.com", "bob@x.com"])
    store = FakeStore(mailbox=[grant("carol@x.com", FULL)])

    result = reconcile(directory, store)

    assert store.mailbox_state() == {("alice@x.com", FULL), ("bob@x.com", READ)}
    revoked = [a for a in result.actions if a.kind == ActionKind.REVOKE]
    assert [(a.subject, a.access_level) for a in revoked] == [("carol@x.com", FULL)]
    granted = {(a.subject, a.access_level) for a in result.actions
               if a.kind == ActionKind.GRANT and a.scope == PermissionScope.MAILBOX}
    assert granted == {("alice@x.com", FULL), ("bob@x.com", READ)}
    assert result.errors == []


def test_owner_who_is_also_member_gets_full_access_only():
    directory = FakeDirectory(owners=["alice@x.com"], members=["alice@x.com"])
    store = FakeStore()

    reconcile(directory, store)

    mailbox_adds = [c for c in store.calls if c[0] == "add_mailbox"]
    assert mailbox_adds == [("add_mailbox", "alice@x.com", FULL, True)]


def test_members_get_read_permission_without_auto_mapping():
    directory = FakeDirectory(owners=[], members=["bob@x.com"])
    store = FakeStore()

    reconcile(directory, store)

    assert ("add_mailbox", "bob@x.com", READ, False) in store.calls


def test_failed_revoke_does_not_stop_the_run():
    directory = FakeDirectory(owners=["alice@x.com"], members=["bob@x.com"])
    store = FakeStore(mailbox=[grant("carol@x.com", FULL), grant("dave@x.com", READ)])
    store.fail_on.add(("remove_mailbox", "carol@x.com"))

    result = reconcile(directory, store)

    assert ("carol@x.com", FULL) in store.mailbox_state()
    assert ("dave@x.com", READ) not in store.mailbox_state()
    assert ("alice@x.com", FULL) in store.mailbox_state()
    assert ("bob@x.com", READ) in store.mailbox_state()
    assert len(result.failed) == 1
    failed = result.failed[0]
    assert failed.subject == "carol@x.com"
    assert failed.outcome == OUTCOME_FAILED
    assert "carol@x.com" in result.errors[0]


def test_failed_grant_is_recorded_and_others_continue():
    directory = FakeDirectory(owners=["alice@x.com", "erin@x.com"], members=[])
    store = FakeStore()
    store.fail_on.add(("add_mailbox", "alice@x.com"))

    result = reconcile(directory, store)

    assert ("erin@x.com", FULL) in store.mailbox_state()
    assert [a.subject for a in result.failed] == ["alice@x.com"]
    # Folder pass still runs for the owner whose mailbox grant failed
    assert ("add_folder", "alice@x.com", AccessLevel.REVIEWER.value) in store.calls


def test_second_run_makes_no_changes():
    directory = FakeDirectory(owners=["alice@x.com"], members=["alice@x.com", "bob@x.com"])
    store = FakeStore(mailbox=[grant("carol@x.com", FULL)])

    reconcile(directory, store)
    state_after_first = store.mailbox_state()
    folder_after_first = list(store.folder)
    store.calls.clear()

    result = reconcile(directory, store)

    assert store.mailbox_state() == state_after_first
    assert store.folder == folder_after_first
    assert not any(c[0].startswith("remove") for c in store.calls)
    outcomes = {a.outcome for a in result.actions}
    assert outcomes == {GrantOutcome.ALREADY_PRESENT.value}
    assert result.summary()["revoked"] == 0
    assert result.summary()["granted"] == 0


def test_excluded_principals_are_never_touched():
    directory = FakeDirectory(owners=["alice@x.com"], members=[])
    store = FakeStore(
        mailbox=[
            grant("NT AUTHORITY\\SELF", FULL),
            grant("S-1-5-21-1234", FULL),
            grant("NAMPR01A001\\admin", READ),
        ],
        folder=[
            grant("Default", "None", PermissionScope.FOLDER),
            grant("Anonymous", "None", PermissionScope.FOLDER),
        ],
    )

    result = reconcile(directory, store)

    assert not any(c[0].startswith("remove") for c in store.calls)
    assert "NT AUTHORITY\\SELF" in result.excluded_subjects
    assert "Default" in result.excluded_subjects


def test_custom_exclusion_prefix_is_case_insensitive():
    config = SyncConfig(mailbox_exclusions=["svc-"])
    directory = FakeDirectory(owners=["alice@x.com"], members=[])
    store = FakeStore(mailbox=[grant("SVC-backup@x.com", FULL)])

    reconcile(directory, store, config)

    assert ("svc-backup@x.com", FULL) in store.mailbox_state()


def test_inherited_grants_are_ignored():
    directory = FakeDirectory(owners=["alice@x.com"], members=[])
    store = FakeStore(mailbox=[grant("carol@x.com", FULL, inherited=True)])

    reconcile(directory, store)

    assert not any(c[0] == "remove_mailbox" for c in store.calls)


def test_mismatched_levels_are_revoked():
    directory = FakeDirectory(owners=["alice@x.com"], members=["bob@x.com"])
    store = FakeStore(mailbox=[grant("alice@x.com", READ), grant("bob@x.com", FULL)])

    result = reconcile(directory, store)

    assert store.mailbox_state() == {("alice@x.com", FULL), ("bob@x.com", READ)}
    details = {a.subject: a.detail for a in result.actions
               if a.kind == ActionKind.REVOKE}
    assert details["alice@x.com"] == f"should hold {FULL}"
    assert details["bob@x.com"] == f"should hold {READ}"


def test_other_rights_held_by_current_users_are_kept():
    directory = FakeDirectory(owners=["alice@x.com"], members=["bob@x.com"])
    store = FakeStore(mailbox=[
        grant("alice@x.com", FULL),
        grant("alice@x.com", "ChangePermission"),
        grant("bob@x.com", READ),
        grant("bob@x.com", "DeleteItem"),
    ])

    result = reconcile(directory, store)

    assert not any(c[0] == "remove_mailbox" for c in store.calls)
    assert ("alice@x.com", "ChangePermission") in store.mailbox_state()
    assert ("bob@x.com", "DeleteItem") in store.mailbox_state()
    assert result.summary()["revoked"] == 0


def test_grants_held_under_another_address_of_a_member_are_kept():
    alice = DirectoryUser("alice@x.com", frozenset({"alice@x.onmicrosoft.com", "a.smith@x.com"}))
    bob = DirectoryUser("bob@x.com", frozenset({"bob@x.onmicrosoft.com"}))
    directory = FakeDirectory(owners=[alice], members=[alice, bob])
    store = FakeStore(
        mailbox=[grant("Alice@X.onmicrosoft.com", FULL), grant("bob@x.onmicrosoft.com", READ)],
        folder=[grant("a.smith@x.com", "Reviewer", PermissionScope.FOLDER)],
    )

    result = reconcile(directory, store)

    assert not any(c[0].startswith("remove") for c in store.calls)
    assert result.snapshot.owners == frozenset({"alice@x.com"})
    assert result.unresolved_subjects == []


def test_holders_that_match_nobody_and_are_not_addresses_are_left_alone():
    directory = FakeDirectory(owners=["alice@x.com"], members=[])
    store = FakeStore(
        mailbox=[grant("CONTOSO\\olduser", FULL)],
        folder=[grant("Former Contractor", "Reviewer", PermissionScope.FOLDER)],
    )

    result = reconcile(directory, store)

    assert not any(c[0].startswith("remove") for c in store.calls)
    assert result.unresolved_subjects == ["CONTOSO\\olduser", "Former Contractor"]
    assert result.to_dict()["unresolved_subjects"] == result.unresolved_subjects


def test_snapshot_resolves_aliases_to_primary_address():
    alice = DirectoryUser("alice@x.com", frozenset({"alice@x.onmicrosoft.com"}))
    snapshot = GroupMembershipSnapshot.from_lists([alice], ["bob@x.com", alice])

    assert snapshot.canonical("ALICE@x.onmicrosoft.com") == "alice@x.com"
    assert snapshot.is_owner("alice@x.onmicrosoft.com")
    assert snapshot.is_current("Bob@x.com")
    assert not snapshot.is_owner("bob@x.com")
    assert snapshot.canonical("carol@x.com") is None
    assert snapshot.readers() == ["bob@x.com"]


def test_identity_comparison_ignores_case():
    directory = FakeDirectory(owners=["Alice@X.com"], members=[])
    store = FakeStore(mailbox=[grant("alice@x.com", FULL)])

    reconcile(directory, store)

    assert not any(c[0] == "remove_mailbox" for c in store.calls)


def test_stale_folder_grants_revoked_once_per_subject():
    directory = FakeDirectory(owners=["alice@x.com"], members=[])
    store = FakeStore(folder=[
        grant("carol@x.com", "Reviewer", PermissionScope.FOLDER),
        grant("carol@x.com", "FolderVisible", PermissionScope.FOLDER),
    ])

    reconcile(directory, store)

    assert [c for c in store.calls if c[0] == "remove_folder"] == [("remove_folder", "carol@x.com")]
    assert [g.subject for g in store.folder] == ["alice@x.com"]


def test_owners_get_folder_reviewer():
    directory = FakeDirectory(owners=["alice@x.com"], members=["bob@x.com"])
    store = FakeStore()

    result = reconcile(directory, store)

    folder_grants = [a for a in result.actions if a.scope == PermissionScope.FOLDER]
    assert [(a.subject, a.access_level) for a in folder_grants] == [
        ("alice@x.com", AccessLevel.REVIEWER.value)
    ]


def test_membership_failure_is_fatal_and_nothing_is_written():
    directory = FakeDirectory(error=RuntimeError("group lookup failed"))
    store = FakeStore(mailbox=[grant("carol@x.com", FULL)])

    with pytest.raises(SyncFatalError, match="group lookup failed"):
        reconcile(directory, store)
    assert store.calls == []


def test_mailbox_baseline_failure_is_fatal():
    directory = FakeDirectory(owners=["alice@x.com"], members=[])
    store = FakeStore()
    store.read_error = RuntimeError("mailbox not found")

    with pytest.raises(SyncFatalError, match="mailbox not found"):
        reconcile(directory, store)
    assert store.calls == []


def test_folder_baseline_failure_is_fatal_before_any_write():
    directory = FakeDirectory(owners=["alice@x.com"], members=[])
    store = FakeStore(mailbox=[grant("carol@x.com", FULL)])
    store.folder_read_error = RuntimeError("folder missing")

    with pytest.raises(SyncFatalError):
        reconcile(directory, store)
    assert store.calls == []


def test_blank_identities_are_rejected():
    with pytest.raises(ValueError):
        asyncio.run(reconcile_mailbox_permissions(" ", "sales@x.com", FakeDirectory(), FakeStore()))
    with pytest.raises(ValueError):
        asyncio.run(reconcile_mailbox_permissions("team", "", FakeDirectory(), FakeStore()))


def test_empty_group_revokes_everyone():
    directory = FakeDirectory(owners=[], members=[])
    store = FakeStore(mailbox=[grant("carol@x.com", FULL), grant("dave@x.com", READ)])

    result = reconcile(directory, store)

    assert store.mailbox_state() == set()
    assert result.summary()["revoked"] == 2


def test_is_excluded_matches_literal_prefixes():
    assert is_excluded("NT AUTHORITY\\SYSTEM", ["nt authority\\"])
    assert not is_excluded("alice@x.com", ["NT AUTHORITY\\"])
    # Prefixes are literal, not patterns
    assert not is_excluded("abc", ["a*"])
    assert not is_excluded("anything", [""])


def test_managed_grants_and_desired_level():
    snapshot = GroupMembershipSnapshot.from_lists(["alice@x.com"], ["alice@x.com", "bob@x.com"])
    grants = [
        grant("alice@x.com", FULL),
        grant("S-1-5-10", FULL),
        grant("carol@x.com", FULL, inherited=True),
    ]
    assert [g.subject for g in managed_grants(grants, ["S-1-5-"])] == ["alice@x.com"]
    assert desired_level(snapshot, "ALICE@x.com") == AccessLevel.FULL_ACCESS
    assert desired_level(snapshot, "bob@x.com") == AccessLevel.READ_PERMISSION
    assert desired_level(snapshot, "carol@x.com") is None


def test_dry_run_store_outcomes_are_reported_as_planned():
    class PlanningStore(FakeStore):
        async def add_mailbox_permission(self, mailbox, subject, level, auto_mapping):
            self.calls.append(("add_mailbox", subject, level.value, auto_mapping))
            return GrantOutcome.PLANNED

        async def add_folder_permission(self, mailbox, folder, subject, level):
            return GrantOutcome.PLANNED

        async def remove_mailbox_permission(self, mailbox, subject, level):
            return GrantOutcome.PLANNED

    directory = FakeDirectory(owners=["alice@x.com"], members=[])
    store = PlanningStore(mailbox=[grant("carol@x.com", FULL)])

    result = reconcile(directory, store)

    assert result.summary()["planned"] == 3
    assert ("carol@x.com", FULL) in store.mailbox_state()
    assert all(a.describe().startswith("Would") for a in result.actions)
