from typing import Optional

from config.settings import RedisConfig, SyncSettings
from database.base import StorageBackend
from database.memory import MemoryManager


def get_storage_backend(settings: SyncSettings,
                        redis_config: Optional[RedisConfig] = None) -> StorageBackend:
    if settings.backend == "memory":
        return MemoryManager()
    elif settings.backend == "redis":
        return (redis_config or RedisConfig.from_env()).create_manager()
    else:
        raise NotImplementedError(f"Storage backend '{settings.backend}' is not supported")
