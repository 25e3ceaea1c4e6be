"""
mongocrud package.

Thin data-access layer over MongoDB: a multi-schema connection registry with an
aggregate health signal, public identifier encoding, and a base CRUD service with
soft-delete (conceal) semantics.
"""

__version__ = "1.0.0"

from .config import Config, MongoConfig, SchemaConfig
from .db import ConnectionRegistry, QueryDescription, QueryOptions, SchemaState, build_query
from .exceptions import (
    CollisionError,
    ConfigurationError,
    DatabaseError,
    DuplicateConstraintError,
    ModelNotFound,
    PersistenceError,
)
from .ids import IdentifierCodec
from .services.crud import CrudService, is_collision
from .services.notify import Notification

__all__ = [
    "Config", "MongoConfig", "SchemaConfig",
    "ConnectionRegistry", "QueryDescription", "QueryOptions", "SchemaState", "build_query",
    "CollisionError", "ConfigurationError", "DatabaseError", "DuplicateConstraintError",
    "ModelNotFound", "PersistenceError",
    "IdentifierCodec",
    "CrudService", "is_collision", "Notification",
]
