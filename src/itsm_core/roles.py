"""Actor identity and role resolution.

Authentication happens upstream: the identity provider hands us a user id
and a list of role tags. This module turns those tags into an Actor with a
closed set of Role values. Every actor holds Role.REQUESTOR as a fallback.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from .models import Role

logger = logging.getLogger("itsm-core.roles")


@dataclass(frozen=True)
class Actor:
    """An authenticated user with an ordered, de-duplicated set of roles."""

    user_id: int
    roles: tuple[Role, ...]

    @property
    def primary_role(self) -> Role:
        """First granted role; REQUESTOR when nothing else was granted."""
        return self.roles[0]

    def has_role(self, role: Role) -> bool:
        return role in self.roles

    @property
    def role_names(self) -> list[str]:
        return [r.value for r in self.roles]


def parse_role_tags(role_tags: Iterable[str]) -> list[Role]:
    """Convert raw role tags to Role values, dropping unknown tags."""
    roles: list[Role] = []
    for tag in role_tags:
        normalized = tag.strip().lower()
        if not normalized:
            continue
        try:
            role = Role(normalized)
        except ValueError:
            logger.debug(f"Ignoring unknown role tag: {tag!r}")
            continue
        if role not in roles:
            roles.append(role)
    return roles


def resolve_actor(user_id: int, role_tags: Optional[Iterable[str]] = None) -> Actor:
    """
    Build an Actor from the identity provider's output.

    Args:
        user_id: Authenticated user id
        role_tags: Role tags in priority order (e.g. ["head_of_it", "it_officer"])

    Returns:
        Actor whose roles always end with Role.REQUESTOR
    """
    roles = parse_role_tags(role_tags or [])
    if Role.REQUESTOR not in roles:
        roles.append(Role.REQUESTOR)
    return Actor(user_id=user_id, roles=tuple(roles))
