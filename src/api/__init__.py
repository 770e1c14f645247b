from api.main import STATUS_CODES, create_app

__all__ = [
    'STATUS_CODES',
    'create_app',
]
