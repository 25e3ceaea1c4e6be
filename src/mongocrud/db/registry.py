"""
Multi-schema connection registry.

Keeps one connection per registered schema, tracks each connection's health and
reports a single aggregate: healthy exactly when every registered schema's
connection is open. Aggregate changes are announced with a `health_change` event,
dispatched on the next loop iteration so listeners never run inside the state
transition that caused them.
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from bson import ObjectId
from pydantic import ValidationError

from mongocrud.config import MongoConfig, SchemaConfig
from mongocrud.exceptions import ConfigurationError, ModelNotFound
from mongocrud.ids import IdentifierCodec
from mongocrud.services.notify import Notification
from mongocrud.utils import import_callable
from .mongodb import MongoEntity, open_connection

logger = logging.getLogger(__name__)

HEALTH_CHANGE = 'health_change'
DEFAULT_RECONNECT_DELAY = 5.0


class SchemaState(str, Enum):
    PENDING = 'pending'
    OPEN = 'open'
    ERROR = 'error'
    RECONNECTING = 'reconnecting'
    DISCONNECTED = 'disconnected'


class ModelMap(dict):
    """Model handles of one schema; also reachable as attributes (registry.widgets.Doodad)"""

    def __getattr__(self, name: str) -> Any:
        try:
            return self[name]
        except KeyError:
            raise AttributeError(name) from None


class ConnectionRegistry:
    """
    Owns the named connections of an application.

    Usage:
        registry = ConnectionRegistry({
            "schemas": [{"name": "widgets", "uri": "mongodb://localhost/widgets",
                         "path": "myapp.schema.widgets:load_models"}],
            "prefixes": {"doodad": "dood"},
            "prefixAliases": {"doodad": "DD"},
        })
        registry.connect()
        await registry.wait_until_ready()
        Doodad = registry.widgets.Doodad

    Args:
        config: MongoConfig or the equivalent plain mapping
        reporter: Diagnostic sink (see Notification)
        connector: (uri, options) -> connection; defaults to a Motor connection
        reconnect_delay: Seconds to wait after an error before trying to reopen
    """

    def __init__(
        self,
        config: Union[MongoConfig, Mapping[str, Any], None] = None,
        reporter: Any = Notification,
        connector: Optional[Callable[[str, Dict[str, Any]], Any]] = None,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY
    ):
        if isinstance(config, MongoConfig):
            self.config = config
        else:
            try:
                self.config = MongoConfig.model_validate(dict(config or {}))
            except ValidationError as e:
                raise ConfigurationError(f"Invalid mongo configuration: {e}") from e

        self.reporter = reporter
        self.connector = connector or open_connection
        self.reconnect_delay = reconnect_delay
        self.ids = IdentifierCodec(
            self.config.prefixes,
            self.config.prefix_aliases,
            self.config.environment,
            reporter
        )

        self._schemas: List[SchemaConfig] = []
        self._registered = False
        self._expected = 0
        self._states: Dict[str, SchemaState] = {}
        self._connections: Dict[str, Any] = {}
        self._models: Dict[str, ModelMap] = {}
        self._listeners: Dict[str, List[Tuple[Callable[..., Any], bool]]] = defaultdict(list)
        self._reconnect_timers: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: set = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # Registration ---------------------------------------------------------

    def register(self, schemas: Optional[Iterable[Any]] = None) -> 'ConnectionRegistry':
        """
        Validate and register schemas (defaults to the config's schemas).

        Raises:
            ConfigurationError: an entry is malformed or a name is used twice
        """
        if self._connections:
            raise ConfigurationError("Schemas cannot be registered after connect()")
        if schemas is None:
            schemas = self.config.schemas

        validated: List[SchemaConfig] = []
        names = set()
        for entry in schemas:
            schema = self._validate_schema(entry)
            if schema.name in names:
                raise ConfigurationError(f"Duplicate schema name: {schema.name}", entry)
            names.add(schema.name)
            validated.append(schema)

        self._schemas = validated
        self._expected = len(validated)
        self._states = {schema.name: SchemaState.PENDING for schema in validated}
        self._registered = True

        if not validated:
            self.reporter.warning('No MongoDB schemas defined! The registry will never report healthy.')

        return self

    @staticmethod
    def _validate_schema(entry: Any) -> SchemaConfig:
        if isinstance(entry, SchemaConfig):
            return entry
        if isinstance(entry, Mapping):
            try:
                return SchemaConfig.model_validate(dict(entry))
            except ValidationError as e:
                raise ConfigurationError(
                    f"Schema definition must be an object with keys: name, uri and path (or loader). {e}",
                    entry
                ) from e
        raise ConfigurationError(
            "Schema definition must be an object with keys: name, uri and path (or loader).",
            entry
        )

    # Connection -----------------------------------------------------------

    def connect(self) -> 'ConnectionRegistry':
        """Open every registered schema without waiting; needs a running event loop"""
        if not self._registered:
            self.register()
        self._loop = asyncio.get_running_loop()

        for schema in self._schemas:
            if schema.name not in self._connections:
                self._connect_schema(schema)

        return self

    def _connect_schema(self, schema: SchemaConfig) -> None:
        name = schema.name
        loader = schema.loader
        if loader is None:
            try:
                loader = import_callable(schema.path or '')
            except (ImportError, AttributeError, TypeError, ValueError) as e:
                raise ConfigurationError(f"Cannot load models for schema {name} from {schema.path}: {e}", schema) from e

        connection = self.connector(schema.uri, dict(schema.options))
        try:
            models = ModelMap(loader(connection) or {})
        except Exception as e:
            self.reporter.report(f"Failed to load models for schema: {name}", e, schema.uri)
            self._discard(connection)
            raise ConfigurationError(f"Model loader for schema {name} failed: {e}", schema) from e

        self._connections[name] = connection
        self._models[name] = models

        connection.on('open', partial(self._on_connection_open, name))
        connection.on('error', partial(self._on_connection_error, name))
        connection.on('reconnected', partial(self._on_reconnection, name))
        connection.on('disconnected', partial(self._on_disconnection, name))

        self._spawn(self._open(name, connection, connection.open))

    async def _open(self, name: str, connection: Any, opener: Callable[[], Any]) -> None:
        try:
            result = opener()
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            self._on_connection_error(name, e)
            return
        if result is True and self._connections.get(name) is connection:
            self._on_connection_open(name)

    def _handle_reconnect(self, name: str) -> None:
        self._reconnect_timers.pop(name, None)
        connection = self._connections.get(name)
        if connection is None or self._states.get(name) == SchemaState.OPEN:
            return
        self._set_state(name, SchemaState.RECONNECTING)
        self._spawn(self._open(name, connection, connection.reopen))

    def _discard(self, connection: Any) -> None:
        result = connection.close()
        if inspect.isawaitable(result):
            self._spawn(result)

    def _spawn(self, coroutine: Any) -> None:
        task = self._loop.create_task(coroutine)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # Connection events ----------------------------------------------------

    def _on_connection_open(self, name: str) -> None:
        self._cancel_reconnect(name)
        if self._states.get(name) != SchemaState.OPEN:
            logger.info(f"Connected to MongoDB: {name}")
        self._set_state(name, SchemaState.OPEN)

    def _on_connection_error(self, name: str, error: Any = None) -> None:
        self.reporter.report('MongoDB connection problem! Retrying...', error, name)
        self._set_state(name, SchemaState.ERROR)

        if name not in self._reconnect_timers and self._loop is not None:
            self._reconnect_timers[name] = self._loop.call_later(
                self.reconnect_delay, self._handle_reconnect, name
            )

    def _on_reconnection(self, name: str) -> None:
        self._cancel_reconnect(name)
        logger.info(f" >> Reconnected to MongoDB: {name}")
        self._set_state(name, SchemaState.OPEN)

    def _on_disconnection(self, name: str) -> None:
        logger.warning(f" !! Disconnected from MongoDB: {name}")
        self._set_state(name, SchemaState.DISCONNECTED)

    def _cancel_reconnect(self, name: str) -> None:
        timer = self._reconnect_timers.pop(name, None)
        if timer is not None:
            timer.cancel()

    def _set_state(self, name: str, state: SchemaState) -> None:
        if name not in self._states:
            return
        before = self.health_status()
        self._states[name] = state
        after = self.health_status()
        if before != after:
            self._loop.call_soon(self._emit, HEALTH_CHANGE, after)

    # Health ---------------------------------------------------------------

    def health_status(self) -> bool:
        """True exactly when every registered schema's connection is open"""
        if self._expected == 0:
            return False
        readies = sum(1 for state in self._states.values() if state == SchemaState.OPEN)
        return readies == self._expected

    get_health_status = health_status

    def states(self) -> Dict[str, SchemaState]:
        return dict(self._states)

    async def wait_until_ready(self) -> None:
        """Return once healthy: immediately if already so, otherwise at the first health_change(True)"""
        if self.health_status():
            return
        ready = asyncio.get_running_loop().create_future()

        def _on_health_change(state: bool) -> None:
            if state and not ready.done():
                ready.set_result(True)

        self.on(HEALTH_CHANGE, _on_health_change)
        try:
            await ready
        finally:
            self.off(HEALTH_CHANGE, _on_health_change)

    def on_ready(self, callback: Callable[[], Any]) -> None:
        """Call back once healthy; immediately when already healthy"""
        if self.health_status():
            callback()
            return

        def _on_health_change(state: bool) -> None:
            if state:
                self.off(HEALTH_CHANGE, _on_health_change)
                callback()

        self.on(HEALTH_CHANGE, _on_health_change)

    # Events ---------------------------------------------------------------

    def on(self, event: str, listener: Callable[..., Any]) -> 'ConnectionRegistry':
        self._listeners[event].append((listener, False))
        return self

    def once(self, event: str, listener: Callable[..., Any]) -> 'ConnectionRegistry':
        self._listeners[event].append((listener, True))
        return self

    def off(self, event: str, listener: Callable[..., Any]) -> 'ConnectionRegistry':
        self._listeners[event] = [entry for entry in self._listeners[event] if entry[0] != listener]
        return self

    def _emit(self, event: str, *args: Any) -> None:
        for entry in list(self._listeners[event]):
            listener, once = entry
            if once and entry in self._listeners[event]:
                self._listeners[event].remove(entry)
            try:
                listener(*args)
            except Exception as e:
                self.reporter.report(f"Listener for {event} failed", e, listener)

    # Models ---------------------------------------------------------------

    def get_models(self, name: str) -> ModelMap:
        try:
            return self._models[name]
        except KeyError:
            raise ModelNotFound(name) from None

    def __getitem__(self, name: str) -> ModelMap:
        return self.get_models(name)

    def __getattr__(self, name: str) -> ModelMap:
        models = self.__dict__.get('_models', {})
        if name in models:
            return models[name]
        raise AttributeError(f"{type(self).__name__} has no attribute or schema '{name}'")

    @property
    def schema_names(self) -> List[str]:
        return [schema.name for schema in self._schemas]

    # Identifiers ----------------------------------------------------------

    def get_object_id(self, mixed_id: Any) -> Optional[ObjectId]:
        return self.ids.to_object_id(mixed_id)

    def get_comparable_id(self, mixed_id: Any) -> Any:
        return self.ids.decode(mixed_id)

    def compare_ids(self, a: Any, b: Any) -> bool:
        return self.ids.compare(a, b)

    def get_public_id(self, id: Any, prefix: Optional[str]) -> str:
        return self.ids.encode(id, prefix)

    def environment_id_prefix(self) -> str:
        return self.ids.environment_prefix(self.ids.environment)

    def is_model(self, mixed: Any) -> bool:
        """Whether the value is an entity produced by a model handle"""
        return isinstance(mixed, MongoEntity)

    # Teardown -------------------------------------------------------------

    async def close(self) -> None:
        """Close every connection; the registry can connect() again afterwards"""
        for name in list(self._reconnect_timers):
            self._cancel_reconnect(name)
        for task in list(self._tasks):
            task.cancel()

        was_healthy = self.health_status()
        for name, connection in list(self._connections.items()):
            result = connection.close()
            if inspect.isawaitable(result):
                await result
            logger.info(f"Closed MongoDB connection: {name}")

        self._connections.clear()
        self._models.clear()
        self._states = {name: SchemaState.PENDING for name in self._states}
        if was_healthy and self._loop is not None:
            self._loop.call_soon(self._emit, HEALTH_CHANGE, False)
