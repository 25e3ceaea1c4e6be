"""
MongoDB connection with lifecycle events.

pymongo reports topology and heartbeat changes on its own monitor threads. The
ConnectionEvents listener turns them into four events, delivered on the event loop
that created the connection:

- open: first time a writable server becomes available
- reconnected: a writable server is available again after a disconnect
- disconnected: no writable server is available any more
- error: a heartbeat or ping failed (once per failure streak)
"""

import asyncio
import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Sequence

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import monitoring
from pymongo.errors import ConfigurationError as MongoConfigurationError, PyMongoError

from mongocrud.exceptions import ConfigurationError
from .documents import MongoModel

logger = logging.getLogger(__name__)

CONNECTION_EVENTS = ('open', 'error', 'reconnected', 'disconnected')


class ConnectionEvents(monitoring.TopologyListener, monitoring.ServerHeartbeatListener):
    """Driver monitoring listener; runs on pymongo threads and only forwards"""

    def __init__(self):
        self._connection: Optional['MongoConnection'] = None
        self._failing = False
        self._lock = threading.Lock()

    def bind(self, connection: 'MongoConnection') -> None:
        self._connection = connection

    # TopologyListener
    def opened(self, event) -> None:
        logger.debug(f"Topology opened: {event.topology_id}")

    def description_changed(self, event) -> None:
        was_available = event.previous_description.has_writable_server()
        is_available = event.new_description.has_writable_server()
        if is_available and not was_available:
            self._forward('up')
        elif was_available and not is_available:
            self._forward('down')

    def closed(self, event) -> None:
        logger.debug(f"Topology closed: {event.topology_id}")

    # ServerHeartbeatListener
    def started(self, event) -> None:
        pass

    def succeeded(self, event) -> None:
        with self._lock:
            self._failing = False

    def failed(self, event) -> None:
        with self._lock:
            if self._failing:
                return
            self._failing = True
        self._forward('error', event.reply)

    def _forward(self, kind: str, *args: Any) -> None:
        if self._connection is not None:
            self._connection.dispatch_threadsafe(kind, *args)


class MongoConnection:
    """
    One client connection to a MongoDB deployment.

    Must be created while an event loop is running; events are delivered on that loop.

    Args:
        uri: MongoDB connection string; its path names the database
        database_name: Database to use when the uri does not name one
        options: Passed to AsyncIOMotorClient
    """

    def __init__(self, uri: str, database_name: Optional[str] = None, **options: Any):
        self.uri = uri
        self._loop = asyncio.get_running_loop()
        self._handlers: Dict[str, List[Callable[..., Any]]] = defaultdict(list)
        self._models: Dict[str, MongoModel] = {}
        self._ever_opened = False
        self._tasks: set = set()
        self.is_open = False

        self._listener = ConnectionEvents()
        self._listener.bind(self)
        options.setdefault('tz_aware', True)
        listeners = list(options.pop('event_listeners', [])) + [self._listener]

        self.client = AsyncIOMotorClient(uri, event_listeners=listeners, **options)
        try:
            self.database: AsyncIOMotorDatabase = self.client.get_default_database(database_name)
        except MongoConfigurationError as e:
            self.client.close()
            raise ConfigurationError(f"No database named in uri {uri!r}: {e}") from e

    def on(self, event: str, handler: Callable[..., Any]) -> 'MongoConnection':
        if event not in CONNECTION_EVENTS:
            raise ValueError(f"Unknown connection event: {event}")
        self._handlers[event].append(handler)
        return self

    def model(
        self,
        name: str,
        schema: Any = None,
        uniques: Sequence[Sequence[str]] = (),
        indexes: Sequence[Sequence[str]] = ()
    ) -> MongoModel:
        """Bind a model handle to the collection `name` of this connection's database"""
        model = MongoModel(self.database[name], name, schema, uniques, indexes)
        self._models[name] = model
        return model

    async def open(self) -> bool:
        """Ping the server; emits open (or reconnected) on success and error on failure"""
        try:
            await self.client.admin.command('ping')
        except PyMongoError as e:
            self.dispatch('error', e)
            return False
        self.dispatch('up')
        return True

    async def reopen(self) -> bool:
        return await self.open()

    async def close(self) -> None:
        self.client.close()
        self.is_open = False
        logger.info(f"MongoConnection: closed {self.database.name}")

    def dispatch_threadsafe(self, kind: str, *args: Any) -> None:
        try:
            self._loop.call_soon_threadsafe(self.dispatch, kind, *args)
        except RuntimeError:
            # loop already closed: nobody left to notify
            logger.debug(f"Dropped connection event {kind} after loop shutdown")

    def dispatch(self, kind: str, *args: Any) -> None:
        """Translate a raw availability change into a connection event (loop thread only)"""
        if kind == 'up':
            if self.is_open:
                return
            self.is_open = True
            if self._ever_opened:
                self._fire('reconnected')
            else:
                self._ever_opened = True
                task = self._loop.create_task(self._ensure_indexes())
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
                self._fire('open')
        elif kind == 'down':
            if not self.is_open:
                return
            self.is_open = False
            self._fire('disconnected')
        else:
            self._fire(kind, *args)

    def _fire(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers[event]):
            handler(*args)

    async def _ensure_indexes(self) -> None:
        for model in list(self._models.values()):
            await model.ensure_indexes()


def open_connection(uri: str, options: Optional[Dict[str, Any]] = None) -> MongoConnection:
    """Default connector used by ConnectionRegistry"""
    return MongoConnection(uri, **(options or {}))
