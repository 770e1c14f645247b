"""
Role & permission model for LayerSync.

The role ladder is fixed at import time and never mutated:

    USER < ADMIN < SUPER_ADMIN      (ladder version "v1")

Each role carries a permission set, a mobility class, a sync priority and a
conflict-resolution strategy.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple, Union, TYPE_CHECKING

from models.errors import PermissionDenied, Unauthenticated, UnknownRole

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from models.records import Identity


ROLE_LADDER_VERSION = "v1"


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


class Permission(str, Enum):
    READ = "READ"
    WRITE = "WRITE"
    DELETE = "DELETE"
    SYNC = "SYNC"
    MANAGE_USERS = "MANAGE_USERS"
    MANAGE_ROLES = "MANAGE_ROLES"
    AUDIT = "AUDIT"


class MobilityClass(str, Enum):
    AMOVIBLE = "AMOVIBLE"
    SEMI_AMOVIBLE = "SEMI_AMOVIBLE"
    NON_AMOVIBLE = "NON_AMOVIBLE"


class ConflictStrategy(str, Enum):
    AUTO = "AUTO"
    MANUAL = "MANUAL"
    HIERARCHICAL = "HIERARCHICAL"


class DeviceType(str, Enum):
    PC = "PC"
    MOBILE = "MOBILE"
    TABLET = "TABLET"
    SERVER = "SERVER"


@dataclass(frozen=True)
class RoleProfile:
    role: Role
    permissions: FrozenSet[Permission]
    mobility: MobilityClass
    sync_priority: int
    conflict_strategy: ConflictStrategy
    prompts: Tuple[str, ...] = ()


# Lowest authority first.
ROLE_LADDER: Tuple[Role, ...] = (Role.USER, Role.ADMIN, Role.SUPER_ADMIN)

ROLE_PROFILES: Dict[Role, RoleProfile] = {
    Role.USER: RoleProfile(
        role=Role.USER,
        permissions=frozenset({Permission.READ}),
        mobility=MobilityClass.AMOVIBLE,
        sync_priority=3,
        conflict_strategy=ConflictStrategy.AUTO,
        prompts=(
            "Explore the data carefully",
            "Your annotations are valuable to the community",
            "Respect the integrity of the information you consult",
        ),
    ),
    Role.ADMIN: RoleProfile(
        role=Role.ADMIN,
        permissions=frozenset({
            Permission.READ,
            Permission.WRITE,
            Permission.DELETE,
            Permission.SYNC,
        }),
        mobility=MobilityClass.SEMI_AMOVIBLE,
        sync_priority=7,
        conflict_strategy=ConflictStrategy.MANUAL,
        prompts=(
            "Your responsibility drives the quality of the dataset",
            "Check every entry rigorously",
            "Train users in good practices",
            "Document every significant change",
        ),
    ),
    Role.SUPER_ADMIN: RoleProfile(
        role=Role.SUPER_ADMIN,
        permissions=frozenset(Permission),
        mobility=MobilityClass.NON_AMOVIBLE,
        sync_priority=10,
        conflict_strategy=ConflictStrategy.HIERARCHICAL,
        prompts=(
            "Your vision shapes how the system evolves",
            "Prioritise data integrity and consistency",
            "Audit critical activity regularly",
            "Anticipate the future needs of the network",
        ),
    ),
}


def parse_role(value: Union[Role, str]) -> Role:
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value).strip().upper())
    except ValueError:
        raise UnknownRole(value) from None


def get_role_profile(role: Union[Role, str]) -> RoleProfile:
    return ROLE_PROFILES[parse_role(role)]


def has_permission(role: Union[Role, str], permission: Union[Permission, str]) -> bool:
    """Return True iff ``permission`` is in the role's static permission set."""
    profile = get_role_profile(role)
    try:
        permission = Permission(permission)
    except ValueError:
        return False
    return permission in profile.permissions


def role_rank(role: Union[Role, str]) -> int:
    return ROLE_LADDER.index(parse_role(role))


def compare_roles(a: Union[Role, str], b: Union[Role, str]) -> int:
    """Compare two roles on the ladder.

    Returns 1 when ``a`` is higher, 0 when equal and -1 when ``b`` is higher.
    """
    rank_a, rank_b = role_rank(a), role_rank(b)
    return (rank_a > rank_b) - (rank_a < rank_b)


def resolve_conflict_by_role(a: Union[Role, str], b: Union[Role, str]) -> Role:
    """Return the strictly higher of two roles.

    Equal roles return that role; the sync queue breaks such ties with its own
    deterministic rule since the role alone cannot.
    """
    role_a, role_b = parse_role(a), parse_role(b)
    return role_b if compare_roles(role_a, role_b) < 0 else role_a


def get_role_prompts(role: Union[Role, str]) -> List[str]:
    return list(get_role_profile(role).prompts)


def authorize(identity: Optional["Identity"], permission: Union[Permission, str]) -> "Identity":
    """Check that an authenticated identity holds ``permission``.

    Raises ``Unauthenticated`` when there is no identity and ``PermissionDenied``
    when its role lacks the permission.
    """
    if identity is None:
        raise Unauthenticated("No authenticated identity")
    if not has_permission(identity.role, permission):
        raise PermissionDenied(
            f"Role {parse_role(identity.role).value} lacks {Permission(permission).value}")
    return identity
