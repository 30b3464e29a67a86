"""
Shared fixtures: an in-memory group directory, an in-memory permission store
and helpers for driving the httpx clients through MockTransport.
"""

from __future__ import annotations

import json

import httpx
import pytest

from m365_admin_toolkit.mailbox.base import MembershipSource, PermissionStore, PermissionStoreError
from m365_admin_toolkit.mailbox.models import (
    AccessLevel,
    GrantOutcome,
    PermissionGrant,
    PermissionScope,
)
from m365_admin_toolkit.runlog import RunLog

TENANT = "00000000-0000-0000-0000-000000000001"


def grant(subject, level, scope=PermissionScope.MAILBOX, inherited=False):
    if isinstance(level, AccessLevel):
        level = level.value
    return PermissionGrant(subject=subject, access_level=level, scope=scope, is_inherited=inherited)


class FakeDirectory(MembershipSource):
    def __init__(self, owners=(), members=(), error=None):
        self.owners = list(owners)
        self.members = list(members)
        self.error = error

    async def list_owners(self, group):
        if self.error:
            raise self.error
        return list(self.owners)

    async def list_members(self, group):
        if self.error:
            raise self.error
        return list(self.members)


class FakeStore(PermissionStore):
    """Holds grants in lists and records every call made against it."""

    def __init__(self, mailbox=(), folder=()):
        self.mailbox = list(mailbox)
        self.folder = list(folder)
        self.calls: list[tuple] = []
        self.fail_on: set[tuple[str, str]] = set()
        self.read_error: Exception | None = None
        self.folder_read_error: Exception | None = None

    def _check(self, op, subject):
        if (op, subject.casefold()) in self.fail_on:
            raise PermissionStoreError(f"{op} rejected for {subject}", subject)

    async def get_mailbox_permissions(self, mailbox):
        if self.read_error:
            raise self.read_error
        return list(self.mailbox)

    async def get_folder_permissions(self, mailbox, folder):
        if self.folder_read_error:
            raise self.folder_read_error
        return list(self.folder)

    async def add_mailbox_permission(self, mailbox, subject, level, auto_mapping):
        self.calls.append(("add_mailbox", subject, level.value, auto_mapping))
        self._check("add_mailbox", subject)
        if any(g.subject.casefold() == subject.casefold() and g.access_level == level.value
               for g in self.mailbox):
            return GrantOutcome.ALREADY_PRESENT
        self.mailbox.append(grant(subject, level))
        return GrantOutcome.APPLIED

    async def remove_mailbox_permission(self, mailbox, subject, level):
        self.calls.append(("remove_mailbox", subject, level))
        self._check("remove_mailbox", subject)
        self.mailbox = [
            g for g in self.mailbox
            if not (g.subject.casefold() == subject.casefold() and g.access_level == level)
        ]
        return GrantOutcome.APPLIED

    async def add_folder_permission(self, mailbox, folder, subject, level):
        self.calls.append(("add_folder", subject, level.value))
        self._check("add_folder", subject)
        if any(g.subject.casefold() == subject.casefold() for g in self.folder):
            return GrantOutcome.ALREADY_PRESENT
        self.folder.append(grant(subject, level, PermissionScope.FOLDER))
        return GrantOutcome.APPLIED

    async def remove_folder_permission(self, mailbox, folder, subject):
        self.calls.append(("remove_folder", subject))
        self._check("remove_folder", subject)
        self.folder = [g for g in self.folder if g.subject.casefold() != subject.casefold()]
        return GrantOutcome.APPLIED

    def mailbox_state(self) -> set[tuple[str, str]]:
        return {(g.subject.casefold(), g.access_level) for g in self.mailbox if not g.is_inherited}


@pytest.fixture
def runlog(tmp_path):
    log = RunLog(str(tmp_path / "logs" / "sync.log"))
    log.open()
    yield log
    log.close()


def read_log(path) -> list[str]:
    with open(path, encoding="utf-8") as fh:
        return [line.rstrip("\n") for line in fh]


def json_response(payload, status_code=200, headers=None):
    return httpx.Response(status_code, content=json.dumps(payload).encode(), headers={
        "Content-Type": "application/json",
        **(headers or {}),
    })


@pytest.fixture
def no_sleep(monkeypatch):
    """Retry loops back off with asyncio.sleep; make it instant."""
    async def _sleep(_seconds):
        return None
    monkeypatch.setattr("asyncio.sleep", _sleep)


class ExchangeStub:
    """Answers InvokeCommand requests from a per-cmdlet handler table."""

    def __init__(self, handlers=None):
        self.handlers = handlers or {}
        self.requests: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        cmdlet = body["CmdletInput"]["CmdletName"]
        self.requests.append({"url": str(request.url), **body["CmdletInput"]})
        handler = self.handlers.get(cmdlet)
        if handler is None:
            return json_response({"value": []})
        if callable(handler):
            return handler(request, body["CmdletInput"]["Parameters"])
        return handler

    @property
    def cmdlets(self):
        return [r["CmdletName"] for r in self.requests]
