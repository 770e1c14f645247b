import sys
from pathlib import Path

import pytest

# Make src importable
REPO_ROOT = Path(__file__).resolve().parent.parent
SRC = REPO_ROOT / "src"
sys.path.insert(0, str(SRC))

from roles.config import DeviceType, Role  # noqa: E402
from services.sync_service import SyncService  # noqa: E402


@pytest.fixture
def service():
    with SyncService() as svc:
        yield svc


@pytest.fixture
def queue(service):
    return service.queue


@pytest.fixture
def make_user(service):
    def _make(role=Role.ADMIN):
        return service.create_user(role)
    return _make


@pytest.fixture
def make_device(service):
    def _make(user, device_type=DeviceType.MOBILE, name=""):
        result = service.register_device(user.user_id, device_type, name)
        assert result.allowed, result.reason
        return result.device
    return _make


@pytest.fixture
def admin(make_user):
    return make_user(Role.ADMIN)


@pytest.fixture
def super_admin(make_user):
    return make_user(Role.SUPER_ADMIN)


@pytest.fixture
def plain_user(make_user):
    return make_user(Role.USER)
