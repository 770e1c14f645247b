from config.settings import MySQLConfig, RedisConfig, SyncSettings

__all__ = [
    'MySQLConfig',
    'RedisConfig',
    'SyncSettings',
]
