"""Role hierarchy checks.

Identity and role lookup happen upstream; services receive an ``Actor``
describing who is calling and compare roles by rank.
"""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from concierge.core.exceptions import PermissionDeniedError
from concierge.db.enums import ROLE_RANK, Role


@dataclass(frozen=True)
class Actor:
    user_id: UUID
    role: Role
    email: str | None = None


def has_role(role: Role | str, minimum: Role | str) -> bool:
    """True when ``role`` ranks at or above ``minimum``. Unknown roles rank 0."""
    try:
        rank = ROLE_RANK[Role(role)]
    except ValueError:
        return False
    return rank >= ROLE_RANK[Role(minimum)]


def role_name(role: Role | str) -> str:
    return role.value if isinstance(role, Role) else str(role)


def require_role(actor: Actor, minimum: Role | str, action: str) -> None:
    if not has_role(actor.role, minimum):
        raise PermissionDeniedError(
            f"Role {role_name(actor.role)} cannot {action} (requires {Role(minimum).value})"
        )


def require_any_role(actor: Actor, roles: tuple[Role, ...], action: str) -> None:
    if actor.role not in tuple(role.value for role in roles):
        allowed = ", ".join(role.value for role in roles)
        raise PermissionDeniedError(f"Only {allowed} can {action}")
