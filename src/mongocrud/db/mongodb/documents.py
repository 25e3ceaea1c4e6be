"""
MongoDB document operations implementation.
Contains the model handle (MongoModel), the entity (MongoEntity) and the query builder (MongoQuery).
"""

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import pymongo
from bson import ObjectId
from pymongo.errors import DuplicateKeyError, PyMongoError

from mongocrud.exceptions import DatabaseError, DuplicateConstraintError
from mongocrud.services.notify import Notification

logger = logging.getLogger(__name__)

# Options that count_documents understands; the rest only make sense for find
COUNT_OPTIONS = ('collation', 'hint', 'maxTimeMS', 'max_time_ms', 'comment')


def translate_error(e: Exception, operation: str) -> DatabaseError:
    """Wrap a driver error in the library's taxonomy"""
    if isinstance(e, DuplicateKeyError):
        return DuplicateConstraintError(e)
    return DatabaseError(e, f"MongoDB {operation} error: {str(e)}")


def parse_projection(fields: Any) -> Optional[Dict[str, int]]:
    """Build a MongoDB projection from "name -status", ["name", "-status"] or a dict"""
    if fields is None:
        return None
    if isinstance(fields, Mapping):
        return dict(fields)
    if isinstance(fields, str):
        fields = fields.split()

    projection: Dict[str, int] = {}
    for field in fields:
        if field.startswith('-'):
            projection[field[1:]] = 0
        elif field.startswith('+'):
            projection[field[1:]] = 1
        else:
            projection[field] = 1
    return projection


def _direction(value: Any) -> int:
    if isinstance(value, str):
        return pymongo.DESCENDING if value.lower() in ('desc', 'descending', '-1') else pymongo.ASCENDING
    return pymongo.DESCENDING if value is not None and int(value) < 0 else pymongo.ASCENDING


def parse_sort(spec: Any) -> Optional[List[Tuple[str, int]]]:
    """Build a MongoDB sort specification from "name -created", [("name", "asc")] or {"name": -1}"""
    if spec is None:
        return None
    if isinstance(spec, Mapping):
        return [(field, _direction(direction)) for field, direction in spec.items()]
    if isinstance(spec, str):
        spec = spec.split()

    sort_spec: List[Tuple[str, int]] = []
    for item in spec:
        if isinstance(item, str):
            if item.startswith('-'):
                sort_spec.append((item[1:], pymongo.DESCENDING))
            else:
                sort_spec.append((item.lstrip('+'), pymongo.ASCENDING))
        else:
            field, direction = item
            sort_spec.append((field, _direction(direction)))
    return sort_spec


class MongoEntity:
    """A document with attribute access, bound to the model that created it"""

    def __init__(self, model: 'MongoModel', data: Optional[Dict[str, Any]] = None, is_new: bool = True):
        self.__dict__['_model'] = model
        self.__dict__['_data'] = dict(data or {})
        self.__dict__['is_new'] = is_new

    def __getattr__(self, name: str) -> Any:
        if name.startswith('__'):
            raise AttributeError(name)
        try:
            return self.__dict__['_data'][name]
        except KeyError:
            raise AttributeError(f"{type(self).__name__} has no field '{name}'") from None

    def __setattr__(self, name: str, value: Any) -> None:
        if name in self.__dict__:
            self.__dict__[name] = value
        else:
            self._data[name] = value

    def __contains__(self, name: str) -> bool:
        return name in self._data

    def __repr__(self) -> str:
        return f"<{self._model.model_name} {self._data.get('_id')}>"

    @property
    def id(self) -> Optional[ObjectId]:
        return self._data.get('_id')

    @property
    def model(self) -> 'MongoModel':
        return self._model

    def get(self, name: str, default: Any = None) -> Any:
        return self._data.get(name, default)

    def to_dict(self) -> Dict[str, Any]:
        return dict(self._data)

    async def save(self) -> 'MongoEntity':
        """Insert when new, otherwise replace the stored document"""
        collection = self._model.collection
        try:
            if self.is_new:
                self._data.setdefault('_id', ObjectId())
                await collection.insert_one(self._data)
                self.is_new = False
            else:
                await collection.replace_one({'_id': self._data['_id']}, self._data, upsert=False)
        except PyMongoError as e:
            raise translate_error(e, 'save')
        return self

    async def remove(self) -> 'MongoEntity':
        """Physically delete the stored document"""
        try:
            await self._model.collection.delete_one({'_id': self._data.get('_id')})
        except PyMongoError as e:
            raise translate_error(e, 'remove')
        return self


class MongoQuery:
    """Chainable find builder; nothing runs until exec() or count_documents()"""

    def __init__(self, model: 'MongoModel', criteria: Any = None):
        self.model = model
        self._criteria = criteria if criteria is not None else {}
        self._skip: Optional[int] = None
        self._limit: Optional[int] = None
        self._projection: Optional[Dict[str, int]] = None
        self._sort: Optional[List[Tuple[str, int]]] = None
        self._options: Dict[str, Any] = {}

    def skip(self, count: int) -> 'MongoQuery':
        self._skip = count
        return self

    def limit(self, count: int) -> 'MongoQuery':
        self._limit = count
        return self

    def select(self, fields: Any) -> 'MongoQuery':
        self._projection = parse_projection(fields)
        return self

    def sort(self, spec: Any) -> 'MongoQuery':
        self._sort = parse_sort(spec)
        return self

    def set_options(self, options: Mapping[str, Any]) -> 'MongoQuery':
        self._options.update(options)
        return self

    def get_query(self) -> Any:
        return self._criteria

    async def exec(self) -> List[MongoEntity]:
        """Run the find and return hydrated entities"""
        collection = self.model.collection
        try:
            cursor = collection.find(self._criteria, self._projection, **self._options)
            if self._sort:
                cursor = cursor.sort(self._sort)
            if self._skip:
                cursor = cursor.skip(self._skip)
            if self._limit:
                cursor = cursor.limit(self._limit)
            documents = await cursor.to_list(length=None)
        except PyMongoError as e:
            raise translate_error(e, 'find')
        return [self.model.hydrate(doc) for doc in documents]

    async def count_documents(self) -> int:
        """Count matching documents without fetching them"""
        kwargs: Dict[str, Any] = {key: value for key, value in self._options.items() if key in COUNT_OPTIONS}
        if self._skip:
            kwargs['skip'] = self._skip
        if self._limit:
            kwargs['limit'] = self._limit
        try:
            return await self.model.collection.count_documents(self._criteria, **kwargs)
        except PyMongoError as e:
            raise translate_error(e, 'count')


class MongoModel:
    """
    Model handle for one collection.

    Args:
        collection: Motor collection
        name: Model name used in diagnostics
        schema: Optional pydantic model; fills defaults and validates the non-_id fields
        uniques: Field groups that get unique indexes, e.g. [["key"], ["owner", "name"]]
        indexes: Field groups that get plain indexes
    """

    def __init__(
        self,
        collection: Any,
        name: str,
        schema: Any = None,
        uniques: Sequence[Sequence[str]] = (),
        indexes: Sequence[Sequence[str]] = ()
    ):
        self.collection = collection
        self.model_name = name
        self.schema = schema
        self.uniques = [list(fields) for fields in uniques]
        self.indexes = [list(fields) for fields in indexes]

    def __call__(self, data: Optional[Mapping[str, Any]] = None) -> MongoEntity:
        return self.new(data)

    def __repr__(self) -> str:
        return f"<MongoModel {self.model_name}>"

    def new(self, data: Optional[Mapping[str, Any]] = None) -> MongoEntity:
        return MongoEntity(self, self._apply_schema(dict(data or {})))

    def hydrate(self, document: Dict[str, Any]) -> MongoEntity:
        return MongoEntity(self, document, is_new=False)

    async def find_one(self, criteria: Any) -> Optional[MongoEntity]:
        try:
            document = await self.collection.find_one(criteria)
        except PyMongoError as e:
            raise translate_error(e, 'find_one')
        return self.hydrate(document) if document else None

    def find(self, criteria: Any = None) -> MongoQuery:
        return MongoQuery(self, criteria)

    async def delete_many(self, criteria: Any) -> int:
        """Bulk physical delete for fixtures and test cleanup; services use _delete_permanently"""
        try:
            result = await self.collection.delete_many(criteria)
        except PyMongoError as e:
            raise translate_error(e, 'delete_many')
        return result.deleted_count

    async def ensure_indexes(self) -> None:
        """Create the declared indexes; failures are reported, not raised"""
        for fields, unique in self._index_specs():
            index_spec = [(field, pymongo.ASCENDING) for field in fields]
            try:
                await self.collection.create_index(index_spec, unique=unique)
            except PyMongoError as e:
                Notification.report(f"MongoDB create index error: {self.model_name}", e, fields)

    def _index_specs(self) -> Iterable[Tuple[List[str], bool]]:
        for fields in self.uniques:
            yield fields, True
        for fields in self.indexes:
            yield fields, False

    def _apply_schema(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if self.schema is None:
            return data
        fields = {key: value for key, value in data.items() if key != '_id'}
        validated = self.schema.model_validate(fields).model_dump()
        merged = {**data, **validated}
        if '_id' in data:
            merged['_id'] = data['_id']
        return merged
