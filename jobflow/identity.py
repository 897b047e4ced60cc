"""Identity and authorization facts consumed by the controller."""

from __future__ import annotations

from typing import Dict, Optional, Protocol

from pydantic import BaseModel

from .config import DirectoryConfig


class Actor(BaseModel):
    id: str
    role: str


class IdentityDirectory(Protocol):
    """Read-only view of users, roles, permissions and project membership."""

    def current_actor(self) -> Optional[Actor]:
        """Return the user the caller is acting as."""

    def get_actor(self, user_id: str) -> Optional[Actor]:
        """Resolve a user id to an actor, or ``None`` if unknown."""

    def has_permission(self, role: str, permission: str) -> bool:
        """Return ``True`` if ``role`` holds ``permission``."""

    def is_project_member(self, user_id: str, project_id: str) -> bool:
        """Return ``True`` if the user belongs to the project."""

    def display_name(self, user_id: str) -> str:
        """Human readable name for narration."""


class StaticDirectory(IdentityDirectory):
    """Directory backed by the ``directory`` section of the config file.

    Useful for the CLI and for tests. Unknown users resolve to ``None`` and
    display as their raw id.
    """

    def __init__(self, config: Optional[DirectoryConfig] = None) -> None:
        config = config or DirectoryConfig()
        self._current = config.current_user
        self._users = {user.id: user for user in config.users}
        self._permissions: Dict[str, set[str]] = {
            role: set(perms) for role, perms in config.permissions.items()
        }

    def current_actor(self) -> Optional[Actor]:
        return self.get_actor(self._current) if self._current else None

    def get_actor(self, user_id: str) -> Optional[Actor]:
        user = self._users.get(user_id)
        return Actor(id=user.id, role=user.role) if user else None

    def has_permission(self, role: str, permission: str) -> bool:
        return permission in self._permissions.get(role, set())

    def is_project_member(self, user_id: str, project_id: str) -> bool:
        user = self._users.get(user_id)
        return bool(user and project_id in user.project_ids)

    def display_name(self, user_id: str) -> str:
        user = self._users.get(user_id)
        return user.name if user else user_id
