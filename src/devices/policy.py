"""
Device admission policy.

Two independent checks, evaluated in order so the reason reflects the first
rule violated:

1. type gating  - each device type has a minimum role on the ladder
2. quota gating - each role has a cap on the total number of devices
"""

from dataclasses import dataclass
from typing import Dict, Optional, Union

from roles.config import DeviceType, Role, compare_roles, parse_role

TYPE_NOT_AUTHORIZED = "type not authorized for this role"


@dataclass(frozen=True)
class DevicePolicy:
    device_type: DeviceType
    minimum_role: Role
    requires_approval: bool
    session_timeout: int  # minutes
    auto_sync: bool


DEVICE_POLICIES: Dict[DeviceType, DevicePolicy] = {
    DeviceType.SERVER: DevicePolicy(DeviceType.SERVER, Role.SUPER_ADMIN, True, 1440, True),
    DeviceType.PC: DevicePolicy(DeviceType.PC, Role.ADMIN, True, 480, True),
    DeviceType.MOBILE: DevicePolicy(DeviceType.MOBILE, Role.USER, False, 240, False),
    DeviceType.TABLET: DevicePolicy(DeviceType.TABLET, Role.USER, False, 240, False),
}

ROLE_DEVICE_LIMITS: Dict[Role, int] = {
    Role.USER: 3,
    Role.ADMIN: 5,
    Role.SUPER_ADMIN: 10,
}


@dataclass(frozen=True)
class AdmissionResult:
    allowed: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


def get_device_policy(device_type: Union[DeviceType, str]) -> Optional[DevicePolicy]:
    try:
        return DEVICE_POLICIES.get(DeviceType(device_type))
    except ValueError:
        return None


def can_add_device(
    device_type: Union[DeviceType, str],
    role: Union[Role, str],
    current_device_count: int,
) -> AdmissionResult:
    role = parse_role(role)
    policy = get_device_policy(device_type)

    if policy is None or compare_roles(role, policy.minimum_role) < 0:
        return AdmissionResult(False, TYPE_NOT_AUTHORIZED)

    limit = ROLE_DEVICE_LIMITS[role]
    if current_device_count >= limit:
        return AdmissionResult(False, f"limit reached: {limit} devices max")

    return AdmissionResult(True)
