"""
Database layer.

Architecture:
- ConnectionRegistry: named connections, per-schema health, aggregate health_change
- QueryComposer (query.py): conceal-aware criteria and query shaping
- mongodb: Motor-backed connection, model handle, entity and query builder
"""

from .query import QueryDescription, QueryOptions, apply_query, build_query, conceal_criteria
from .registry import HEALTH_CHANGE, ConnectionRegistry, ModelMap, SchemaState

__all__ = [
    'QueryDescription', 'QueryOptions', 'apply_query', 'build_query', 'conceal_criteria',
    'HEALTH_CHANGE', 'ConnectionRegistry', 'ModelMap', 'SchemaState',
]
