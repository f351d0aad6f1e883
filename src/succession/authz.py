"""Caller identity and capability checks.

The surrounding system authenticates the caller and hands the core an
Actor: a member id, a global role and optionally an explicit capability
set. Which capabilities a role carries is external policy, reached only
through the CapabilityLookup interface (PolicyResolver implements it).

The override capability (admin:full by default) satisfies every check.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from succession.errors import ForbiddenError

TRANSITIONS_VIEW = "transitions:view"
MEMBERS_VIEW = "members:view"
USERS_MANAGE = "users:manage"


class CapabilityLookup(Protocol):
    def capabilities_for(self, role: str) -> frozenset[str]: ...


@dataclass(frozen=True)
class Actor:
    """An authenticated caller."""
    member_id: str
    role: str
    capabilities: frozenset[str] = field(default_factory=frozenset)


class CapabilityChecker:
    """Answers "may this actor use capability X?"."""

    def __init__(
        self,
        lookup: CapabilityLookup,
        override_capability: str = "admin:full",
    ) -> None:
        self._lookup = lookup
        self._override = override_capability

    def granted(self, actor: Actor) -> frozenset[str]:
        return frozenset(actor.capabilities) | self._lookup.capabilities_for(actor.role)

    def has_override(self, actor: Actor) -> bool:
        return self._override in self.granted(actor)

    def has(self, actor: Actor, capability: str) -> bool:
        granted = self.granted(actor)
        return capability in granted or self._override in granted

    def require(self, actor: Actor, capability: str) -> None:
        if not actor.member_id or not actor.member_id.strip():
            raise ForbiddenError("Authenticated member required")
        if not self.has(actor, capability):
            raise ForbiddenError(
                f"Role {actor.role!r} lacks capability {capability}"
            )
