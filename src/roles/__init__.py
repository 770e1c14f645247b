from roles.config import (
    ROLE_LADDER,
    ROLE_LADDER_VERSION,
    ROLE_PROFILES,
    ConflictStrategy,
    DeviceType,
    MobilityClass,
    Permission,
    Role,
    RoleProfile,
    authorize,
    compare_roles,
    get_role_profile,
    get_role_prompts,
    has_permission,
    parse_role,
    resolve_conflict_by_role,
    role_rank,
)

__all__ = [
    'ROLE_LADDER',
    'ROLE_LADDER_VERSION',
    'ROLE_PROFILES',
    'ConflictStrategy',
    'DeviceType',
    'MobilityClass',
    'Permission',
    'Role',
    'RoleProfile',
    'authorize',
    'compare_roles',
    'get_role_profile',
    'get_role_prompts',
    'has_permission',
    'parse_role',
    'resolve_conflict_by_role',
    'role_rank',
]
