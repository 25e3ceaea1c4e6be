"""
MongoDB store adapter built on Motor.
"""

from .connection import ConnectionEvents, MongoConnection, open_connection
from .documents import MongoEntity, MongoModel, MongoQuery, parse_projection, parse_sort, translate_error


__all__ = [
    'ConnectionEvents', 'MongoConnection', 'open_connection',
    'MongoEntity', 'MongoModel', 'MongoQuery', 'parse_projection', 'parse_sort', 'translate_error',
]
