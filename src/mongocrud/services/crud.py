"""
Base CRUD service that entity services extend.

Subclasses bind a model handle and expose public wrappers around the protected
operations below. Deleting is a soft delete: the record's status is set to the
deleted status and, while concealing is on, reads stop returning it.
"""

import inspect
import logging
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Union

from bson import ObjectId

from mongocrud.db.query import (
    DEFAULT_DELETED_STATUS,
    QueryDescription,
    QueryOptions,
    apply_query,
    build_query,
    dead_filter,
)
from mongocrud.exceptions import DuplicateConstraintError
from mongocrud.ids import IdentifierCodec
from mongocrud.services.notify import Notification
from mongocrud.utils import utc_now

logger = logging.getLogger(__name__)

# MongoDB duplicate key error code
COLLISION_ERROR_CODE = 11000

Options = Union[QueryOptions, Mapping[str, Any], None]
ReviseFunction = Callable[[Any, int], Union[Any, Awaitable[Any]]]


def is_collision(error: BaseException) -> bool:
    """Whether an error is a unique constraint violation"""
    if isinstance(error, DuplicateConstraintError):
        return True
    return getattr(error, 'code', None) == COLLISION_ERROR_CODE


class CrudService:
    """
    Base service for entity CRUD.

    Args:
        model: Model handle; may be bound later by assigning `service.model`
        registry: ConnectionRegistry used to resolve identifiers
        reporter: Diagnostic sink (see Notification)
    """

    def __init__(self, model: Any = None, registry: Any = None, reporter: Any = Notification):
        self.model = model
        self.registry = registry
        self.reporter = reporter

        # Number of attempts _create_with_retry makes before giving up
        self.create_retry_count = 3

        # Fields _update is allowed to copy from caller data
        self.modifiable_keys: List[str] = []

        # Status that marks a record as deleted
        self.deleted_status = DEFAULT_DELETED_STATUS

        # Keep deleted records out of _retrieve, _find and _count
        self.conceal_dead_resources = True

        self._ids = registry if registry is not None else IdentifierCodec(reporter=reporter)

    @property
    def model_name(self) -> str:
        return getattr(self.model, 'model_name', None) or getattr(self.model, '__name__', type(self.model).__name__)

    def get_object_id(self, mixed_id: Any) -> Optional[ObjectId]:
        return self._ids.get_object_id(mixed_id)

    # Create ---------------------------------------------------------------

    async def _create(self, data: Any, suppress_collision_report: bool = False) -> Any:
        """
        Create and persist a new entity.

        Args:
            data: Entity properties
            suppress_collision_report: Don't report unique constraint violations (quiet retries)

        Raises:
            DuplicateConstraintError: unique constraint violated
            DatabaseError: any other store failure
        """
        try:
            entity = self.model(data)
            return await entity.save()
        except Exception as e:
            if not (suppress_collision_report and is_collision(e)):
                self.reporter.report(f"Failed to create new model: {self.model_name}", e, data)
            raise

    async def _create_with_retry(
        self,
        data: Any,
        revise: ReviseFunction,
        max_attempts: Optional[int] = None
    ) -> Any:
        """
        Create an entity, regenerating the payload on unique constraint collisions.

        `revise(data, attempt)` is called before every attempt (attempt counts from 0)
        and returns the payload to save; it may be a coroutine function. Attempts run
        one after another. Anything other than a collision ends the loop at once.
        """
        attempts = max(1, max_attempts if max_attempts is not None else self.create_retry_count)

        for attempt in range(attempts):
            payload = revise(data, attempt)
            if inspect.isawaitable(payload):
                payload = await payload
            try:
                return await self._create(payload, suppress_collision_report=True)
            except Exception as e:
                if not is_collision(e):
                    raise
                if attempt == attempts - 1:
                    # reported here because _create was told to stay quiet about collisions
                    self.reporter.report(
                        f"All attempts failed to create model due to collisions! Model: {self.model_name}",
                        e,
                        data
                    )
                    raise
                logger.debug(f"Collision creating {self.model_name} on attempt {attempt}, retrying")

    # Read -----------------------------------------------------------------

    async def _retrieve(self, mixed_id: Any) -> Any:
        """
        Retrieve an entity by any supported identifier shape.

        Returns None for empty or unresolvable identifiers (without querying) and
        when nothing matches.
        """
        object_id = self.get_object_id(mixed_id)
        if object_id is None:
            return None

        criteria = {'_id': object_id}
        if self.conceal_dead_resources:
            criteria.update(dead_filter(self.deleted_status))

        try:
            return await self.model.find_one(criteria)
        except Exception as e:
            self.reporter.report(f"Failed to retrieve model: {self.model_name}", e, mixed_id, object_id)
            raise

    def _build_query(self, criteria: Any, options: Options = None) -> Any:
        """Compose criteria and options into the model's query builder"""
        return apply_query(self.model, self._describe_query(criteria, options))

    def _describe_query(self, criteria: Any, options: Options = None) -> QueryDescription:
        return build_query(criteria, options, self.conceal_dead_resources, self.deleted_status)

    async def _find(self, criteria: Any = None, options: Options = None) -> List[Any]:
        """
        Find entities matching criteria.

        Args:
            criteria: Filter mapping
            options: skip, take, fields, sort, conceal and passthrough store options

        Returns:
            Matching entities; empty list when nothing matches
        """
        query = None
        try:
            query = self._build_query(criteria, options)
            docs = await query.exec()
        except Exception as e:
            self.reporter.report(f"Failed to find models: {self.model_name}", e, self._query_context(query, criteria))
            raise
        return list(docs or [])

    async def _count(self, criteria: Any = None, options: Options = None) -> int:
        """Count entities matching criteria without fetching them"""
        query = None
        try:
            query = self._build_query(criteria, options)
            return await query.count_documents()
        except Exception as e:
            self.reporter.report(f"Failed to count models: {self.model_name}", e, self._query_context(query, criteria))
            raise

    @staticmethod
    def _query_context(query: Any, criteria: Any) -> Any:
        # invalid options fail before a query exists
        return query.get_query() if query is not None else criteria

    # Update ---------------------------------------------------------------

    def _apply_updates(self, entity: Any, data: Any) -> None:
        """Copy allowed fields from data onto entity; anything not in modifiable_keys is ignored"""
        if not isinstance(data, Mapping):
            return
        for key in self.modifiable_keys:
            if key in data:
                setattr(entity, key, data[key])

    async def _update(self, entity: Any, data: Any = None) -> Any:
        """Apply allowed updates, stamp `updated` and persist"""
        self._apply_updates(entity, data)

        entity.updated = utc_now()
        try:
            return await entity.save()
        except Exception as e:
            self.reporter.report(f"Failed to update model: {self.model_name}", e, entity)
            raise

    # Delete ---------------------------------------------------------------

    async def _delete(self, entity: Any) -> Any:
        """Soft delete: mark the entity with the deleted status and update it"""
        entity.status = self.deleted_status
        return await self._update(entity)

    async def _delete_permanently(self, entity: Any) -> Any:
        """Physically remove the entity. Irreversible."""
        try:
            result = await entity.remove()
        except Exception as e:
            self.reporter.report(f"Failed to permanently remove model: {self.model_name}", e, entity)
            raise
        return result if result is not None else entity
