from devices.policy import (
    DEVICE_POLICIES,
    ROLE_DEVICE_LIMITS,
    AdmissionResult,
    DevicePolicy,
    can_add_device,
    get_device_policy,
)
from devices.registry import DeviceListener, DeviceRegistry, RegistrationResult

__all__ = [
    'DEVICE_POLICIES',
    'ROLE_DEVICE_LIMITS',
    'AdmissionResult',
    'DeviceListener',
    'DevicePolicy',
    'DeviceRegistry',
    'RegistrationResult',
    'can_add_device',
    'get_device_policy',
]
