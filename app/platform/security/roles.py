from __future__ import annotations

from enum import StrEnum


class Role(StrEnum):
    VIEWER = "viewer"
    EDITOR = "editor"
    ADMIN = "admin"
    OWNER = "owner"


class PlatformRole(StrEnum):
    VISITOR = "visitor"
    MEMBER = "member"
    ENTERPRISE_OWNER = "enterprise_owner"
    ADMIN = "admin"


_ROLE_RANK: dict[Role, int] = {
    Role.VIEWER: 1,
    Role.EDITOR: 2,
    Role.ADMIN: 3,
    Role.OWNER: 4,
}

_PLATFORM_ROLE_RANK: dict[PlatformRole, int] = {
    PlatformRole.VISITOR: 1,
    PlatformRole.MEMBER: 2,
    PlatformRole.ENTERPRISE_OWNER: 3,
    PlatformRole.ADMIN: 4,
}

INVITABLE_ROLES = frozenset({Role.VIEWER, Role.EDITOR, Role.ADMIN})


def rank(role: Role | str) -> int:
    return _ROLE_RANK[Role(role)]


def platform_rank(role: PlatformRole | str) -> int:
    return _PLATFORM_ROLE_RANK[PlatformRole(role)]


def satisfies(actual: Role | str, required: Role | str) -> bool:
    return rank(actual) >= rank(required)


def can_change_role(acting: Role | str, target: Role | str, current: Role | str | None = None) -> bool:
    """Whether `acting` may move a member from `current` to `target`.

    Grants are capped at the actor's own rank, and only owners may grant or
    revoke the owner role.
    """
    acting_role = Role(acting)
    if not satisfies(acting_role, target):
        return False
    if current is not None and not satisfies(acting_role, current):
        return False
    touches_owner = Role(target) is Role.OWNER or (current is not None and Role(current) is Role.OWNER)
    return not touches_owner or acting_role is Role.OWNER


def can_view(role: Role | str) -> bool:
    return satisfies(role, Role.VIEWER)


def can_edit(role: Role | str) -> bool:
    return satisfies(role, Role.EDITOR)


def can_manage_team(role: Role | str) -> bool:
    return satisfies(role, Role.ADMIN)


def can_invite(role: Role | str) -> bool:
    return satisfies(role, Role.ADMIN)


def can_remove(role: Role | str) -> bool:
    return satisfies(role, Role.ADMIN)
