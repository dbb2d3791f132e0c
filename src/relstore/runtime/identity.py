"""
Identity contract consumed by the data layer.

Authentication lives outside relstore. The layer only needs the current
actor's id (to stamp ``createdBy``/``updatedBy``) and its ACL tokens (to
resolve ``$userId`` in filters).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

ANONYMOUS = "anonymous"


@runtime_checkable
class Identity(Protocol):
    """Who is acting on the data layer."""

    def get_user_id(self) -> str: ...

    def get_acl(self) -> list[str]: ...

    def get_account_id(self) -> str | None: ...


@dataclass(frozen=True)
class StaticIdentity:
    """Fixed identity, for servers acting on behalf of one user and for tests."""

    user_id: str = ANONYMOUS
    groups: tuple[str, ...] = ()
    account_id: str | None = None

    def get_user_id(self) -> str:
        return self.user_id

    def get_acl(self) -> list[str]:
        # The user id always comes first, then group ids
        return [self.user_id, *self.groups]

    def get_account_id(self) -> str | None:
        return self.account_id


@dataclass
class SessionIdentity:
    """Mutable identity for long-lived client sessions (login/logout)."""

    user_id: str = ANONYMOUS
    groups: list[str] = field(default_factory=list)
    account_id: str | None = None

    def login(self, user_id: str, groups: list[str] | None = None) -> None:
        self.user_id = user_id
        self.groups = list(groups or [])

    def logout(self) -> None:
        self.user_id = ANONYMOUS
        self.groups = []

    def get_user_id(self) -> str:
        return self.user_id

    def get_acl(self) -> list[str]:
        return [self.user_id, *self.groups]

    def get_account_id(self) -> str | None:
        return self.account_id


def current_user_id(identity: Identity | None) -> str | None:
    """User id of ``identity`` or None when nobody is acting."""
    return identity.get_user_id() if identity is not None else None
