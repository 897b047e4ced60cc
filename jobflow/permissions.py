"""Permission matrix: which roles count as privileged for each transition.

Role sets are data loaded from :class:`~jobflow.config.WorkflowConfig` rather
than inline checks, so they can be tuned per deployment and tested alone.
"""

from __future__ import annotations

from typing import Dict, FrozenSet, Iterable, Mapping, Optional

from .config import WorkflowConfig
from .contracts import Transition


class PermissionMatrix:
    """Transition -> privileged roles, plus the unassigned-step allow-list."""

    def __init__(
        self,
        roles: Mapping[Transition, Iterable[str]],
        unassigned_steps: Optional[Mapping[str, Iterable[str]]] = None,
        view_all_roles: Iterable[str] = (),
    ) -> None:
        self._roles: Dict[Transition, FrozenSet[str]] = {
            transition: frozenset(allowed) for transition, allowed in roles.items()
        }
        self._unassigned: Dict[str, FrozenSet[str]] = {
            name: frozenset(allowed) for name, allowed in (unassigned_steps or {}).items()
        }
        self._view_all = frozenset(view_all_roles)

    @classmethod
    def from_config(cls, config: WorkflowConfig) -> "PermissionMatrix":
        roles = {
            Transition(name): allowed
            for name, allowed in config.roles.model_dump().items()
        }
        return cls(roles, config.unassigned_steps, config.view_all_roles)

    def privileged_roles(self, transition: Transition) -> FrozenSet[str]:
        return self._roles.get(transition, frozenset())

    def is_privileged(self, role: str, transition: Transition) -> bool:
        return role in self.privileged_roles(transition)

    def is_unassigned_eligible(self, step_name: str) -> bool:
        """Step names that may be worked without a named assignee."""
        return step_name in self._unassigned

    def unassigned_roles(self, step_name: str) -> FrozenSet[str]:
        return self._unassigned.get(step_name, frozenset())

    def can_view_all(self, role: str) -> bool:
        return role in self._view_all
