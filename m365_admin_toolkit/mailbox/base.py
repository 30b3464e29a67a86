"""
Base interfaces for mailbox sync — the directory that says who should have
access and the store that holds who does.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from .models import AccessLevel, DirectoryUser, GrantOutcome, PermissionGrant


class PermissionStoreError(Exception):
    """Raised when a single permission read or write fails."""
    def __init__(self, message: str, subject: str = ""):
        self.subject = subject
        super().__init__(message)


class SyncFatalError(Exception):
    """Raised when membership or baseline permissions cannot be read."""
    pass


class MembershipSource(ABC):
    """
    Authoritative owners/members of a group. Each entry is a primary SMTP
    address or a DirectoryUser carrying the user's other addresses too.
    """

    @abstractmethod
    async def list_owners(self, group: str) -> list[DirectoryUser | str]:
        raise NotImplementedError

    @abstractmethod
    async def list_members(self, group: str) -> list[DirectoryUser | str]:
        raise NotImplementedError


class PermissionStore(ABC):
    """
    Mailbox and folder permissions as held by the mail system.

    Adds and removes return a GrantOutcome; any failure raises
    PermissionStoreError. An add for a grant that already exists returns
    GrantOutcome.ALREADY_PRESENT rather than raising.
    """

    @abstractmethod
    async def get_mailbox_permissions(self, mailbox: str) -> list[PermissionGrant]:
        raise NotImplementedError

    @abstractmethod
    async def get_folder_permissions(self, mailbox: str, folder: str) -> list[PermissionGrant]:
        raise NotImplementedError

    @abstractmethod
    async def add_mailbox_permission(
        self, mailbox: str, subject: str, level: AccessLevel, auto_mapping: bool
    ) -> GrantOutcome:
        raise NotImplementedError

    @abstractmethod
    async def remove_mailbox_permission(
        self, mailbox: str, subject: str, level: str
    ) -> GrantOutcome:
        raise NotImplementedError

    @abstractmethod
    async def add_folder_permission(
        self, mailbox: str, folder: str, subject: str, level: AccessLevel
    ) -> GrantOutcome:
        raise NotImplementedError

    @abstractmethod
    async def remove_folder_permission(
        self, mailbox: str, folder: str, subject: str
    ) -> GrantOutcome:
        raise NotImplementedError
