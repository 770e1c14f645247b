import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Tuple, Union

from database.base import StorageBackend
from devices.policy import (
    ROLE_DEVICE_LIMITS,
    TYPE_NOT_AUTHORIZED,
    AdmissionResult,
    can_add_device,
    get_device_policy,
)
from models.errors import UnknownDevice, UnknownUser
from models.records import Device, Identity, User
from roles.config import (
    DeviceType,
    MobilityClass,
    Permission,
    authorize,
    compare_roles,
    get_role_profile,
)
from sync.listeners import ListenerGroup

logger = logging.getLogger(__name__)

# Preferred sync targets first.
_MOBILITY_RANK = {
    MobilityClass.NON_AMOVIBLE: 0,
    MobilityClass.SEMI_AMOVIBLE: 1,
    MobilityClass.AMOVIBLE: 2,
}


class DeviceListener:

    def on_device_registered(self, device: Device) -> None:
        pass

    def on_device_removed(self, device: Device) -> None:
        pass


@dataclass(frozen=True)
class RegistrationResult:
    allowed: bool
    reason: Optional[str] = None
    device: Optional[Device] = None


class DeviceRegistry:

    def __init__(self, store: StorageBackend, listeners: Iterable[DeviceListener] = ()):
        self.store = store
        self.listeners = ListenerGroup(listeners)
        self._lock = store.lock("devices")

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise UnknownUser(user_id)
        return user

    def _require_device(self, device_id: str) -> Device:
        device = self.store.get_device(device_id)
        if device is None:
            raise UnknownDevice(device_id)
        return device

    def check_admission(self, user_id: str, device_type: Union[DeviceType, str]) -> AdmissionResult:
        user = self._require_user(user_id)
        count = len(self.store.get_user_devices(user_id))
        return can_add_device(device_type, user.role, count)

    def register_device(
        self,
        user_id: str,
        device_type: Union[DeviceType, str],
        device_name: str = "",
    ) -> RegistrationResult:
        user = self._require_user(user_id)
        # Counting and saving under one lock keeps concurrent registrations within quota.
        with self._lock:
            admission = self.check_admission(user_id, device_type)
            if not admission.allowed:
                logger.warning(
                    f"Device registration rejected for {user_id} ({device_type}): {admission.reason}")
                return RegistrationResult(False, admission.reason)

            policy = get_device_policy(device_type)
            device = Device(
                user_id=user_id,
                device_name=device_name,
                device_type=policy.device_type,
                mobility=get_role_profile(user.role).mobility,
                is_approved=not policy.requires_approval,
            )
            self.store.save_device(device)
        logger.info(f"Device registered: {device.device_id} ({device.device_type.value}) for {user_id}")
        self.listeners.notify("on_device_registered", device)
        return RegistrationResult(True, device=device)

    def approve_device(self, device_id: str, approver: Optional[Identity]) -> Device:
        authorize(approver, Permission.MANAGE_USERS)
        device = self._require_device(device_id)
        device.is_approved = True
        self.store.save_device(device)
        logger.info(f"Device {device_id} approved by {approver.user_id}")
        return device

    def remove_device(self, device_id: str) -> Device:
        device = self._require_device(device_id)
        self.store.delete_device(device_id)
        logger.info(f"Device removed: {device_id}")
        self.listeners.notify("on_device_removed", device)
        return device

    def set_online(self, device_id: str, is_online: bool) -> Device:
        device = self._require_device(device_id)
        device.is_online = is_online
        device.last_seen = datetime.now()
        self.store.save_device(device)
        return device

    def get_device(self, device_id: str) -> Device:
        return self._require_device(device_id)

    def get_user_devices(self, user_id: str) -> List[Device]:
        return self.store.get_user_devices(user_id)

    def preferred_sync_target(self, user_id: str,
                              exclude_device_id: Optional[str] = None) -> Optional[Device]:
        """Online, approved device to sync towards; fixed devices first."""
        candidates = [
            d for d in self.store.get_user_devices(user_id)
            if d.is_online and d.is_approved and d.device_id != exclude_device_id
        ]
        if not candidates:
            return None
        candidates.sort(key=lambda d: (_MOBILITY_RANK[d.mobility], -d.last_seen.timestamp()))
        return candidates[0]

    def find_inadmissible_devices(self, user_id: str) -> List[Tuple[Device, str]]:
        """Devices the owner's current role would no longer admit.

        Report only: devices are never removed retroactively when a role
        changes.
        """
        user = self._require_user(user_id)
        devices = sorted(self.store.get_user_devices(user_id), key=lambda d: d.created_at)
        limit = ROLE_DEVICE_LIMITS[user.role]
        report = []
        for index, device in enumerate(devices):
            policy = get_device_policy(device.device_type)
            if compare_roles(user.role, policy.minimum_role) < 0:
                report.append((device, TYPE_NOT_AUTHORIZED))
            elif index >= limit:
                report.append((device, f"limit reached: {limit} devices max"))
        return report
