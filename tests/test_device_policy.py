import pytest

from devices.policy import TYPE_NOT_AUTHORIZED, can_add_device, get_device_policy
from roles.config import DeviceType, Role


def test_server_requires_super_admin():
    result = can_add_device(DeviceType.SERVER, Role.USER, 0)
    assert not result.allowed
    assert result.reason == TYPE_NOT_AUTHORIZED

    assert can_add_device(DeviceType.SERVER, Role.SUPER_ADMIN, 0).allowed


def test_pc_requires_admin():
    assert not can_add_device(DeviceType.PC, Role.USER, 0)
    assert can_add_device(DeviceType.PC, Role.ADMIN, 0)


@pytest.mark.parametrize("device_type", [DeviceType.MOBILE, DeviceType.TABLET])
@pytest.mark.parametrize("role", list(Role))
def test_mobile_types_open_to_every_role(device_type, role):
    assert can_add_device(device_type, role, 0).allowed


def test_quota_reached():
    result = can_add_device(DeviceType.MOBILE, Role.USER, 3)
    assert not result.allowed
    assert "limit" in result.reason
    assert result.reason == "limit reached: 3 devices max"


@pytest.mark.parametrize("role, limit", [(Role.USER, 3), (Role.ADMIN, 5), (Role.SUPER_ADMIN, 10)])
def test_quota_boundary(role, limit):
    assert can_add_device(DeviceType.TABLET, role, limit - 1).allowed
    assert not can_add_device(DeviceType.TABLET, role, limit).allowed


def test_type_checked_before_quota():
    result = can_add_device(DeviceType.SERVER, Role.USER, 3)
    assert result.reason == TYPE_NOT_AUTHORIZED


def test_unknown_device_type():
    assert get_device_policy("TOASTER") is None
    assert can_add_device("TOASTER", Role.SUPER_ADMIN, 0).reason == TYPE_NOT_AUTHORIZED


def test_string_arguments():
    assert can_add_device("PC", "admin", 2).allowed
