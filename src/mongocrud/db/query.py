"""
Query composition with conceal policy.

Turns caller criteria plus options into a QueryDescription. When concealing, records
whose status equals the deleted status are excluded, even when the caller supplied
a status filter of their own. The caller's criteria object is never modified.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_DELETED_STATUS = 'dead'
AND_OPERATOR = '$and'
NOT_EQUAL_OPERATOR = '$ne'


class QueryOptions(BaseModel):
    """Recognized query options; any other key is forwarded to the store untouched"""
    model_config = ConfigDict(frozen=True, extra='allow')

    skip: Optional[int] = Field(default=None, ge=0)
    take: Optional[int] = Field(default=None, ge=0)
    fields: Any = None
    sort: Any = None
    conceal: bool = True

    @classmethod
    def parse(cls, options: Union['QueryOptions', Mapping[str, Any], None]) -> 'QueryOptions':
        if options is None:
            return cls()
        if isinstance(options, QueryOptions):
            return options
        return cls.model_validate(dict(options))

    @property
    def passthrough(self) -> Dict[str, Any]:
        """Options the composer does not recognize"""
        return dict(self.model_extra or {})


@dataclass(frozen=True)
class QueryDescription:
    """Everything needed to run a find or count against a model"""
    criteria: Any
    skip: Optional[int] = None
    limit: Optional[int] = None
    fields: Any = None
    sort: Any = None
    options: Dict[str, Any] = field(default_factory=dict)


def dead_filter(deleted_status: str = DEFAULT_DELETED_STATUS) -> Dict[str, Any]:
    return {'status': {NOT_EQUAL_OPERATOR: deleted_status}}


def conceal_criteria(criteria: Any, deleted_status: str = DEFAULT_DELETED_STATUS) -> Any:
    """
    Merge the soft-delete exclusion into criteria.

    - no criteria: the dead filter alone
    - no status predicate: status is set to "not deleted"
    - a status predicate: it moves into the $and list alongside the dead filter,
      appended to an existing $and when there is one
    """
    dead = dead_filter(deleted_status)
    if criteria is None:
        return dead
    if not isinstance(criteria, Mapping):
        # malformed criteria are the store's to reject
        return criteria

    concealed = dict(criteria)
    if 'status' not in concealed:
        concealed['status'] = dead['status']
        return concealed

    composite_conditions = [{'status': concealed.pop('status')}, dead]
    existing = concealed.get(AND_OPERATOR)
    if existing is not None:
        concealed[AND_OPERATOR] = list(existing) + composite_conditions
    else:
        concealed[AND_OPERATOR] = composite_conditions
    return concealed


def build_query(
    criteria: Any,
    options: Union[QueryOptions, Mapping[str, Any], None] = None,
    conceal_default: bool = True,
    deleted_status: str = DEFAULT_DELETED_STATUS
) -> QueryDescription:
    """
    Build a query description.

    Args:
        criteria: Filter mapping, may already hold a status predicate and/or $and list
        options: skip, take, fields, sort, conceal and passthrough store options
        conceal_default: The service level conceal switch; both it and options.conceal must be on
        deleted_status: Status value that marks a record as deleted

    Returns:
        QueryDescription with the effective filter and shaping directives
    """
    opts = QueryOptions.parse(options)
    if conceal_default and opts.conceal:
        criteria = conceal_criteria(criteria, deleted_status)

    return QueryDescription(
        criteria=criteria,
        skip=opts.skip,
        limit=opts.take,
        fields=opts.fields,
        sort=opts.sort,
        options=opts.passthrough
    )


def apply_query(model: Any, description: QueryDescription) -> Any:
    """Create the model's query builder for a description"""
    query = model.find(description.criteria)

    if description.skip is not None:
        query = query.skip(description.skip)
    if description.limit is not None:
        query = query.limit(description.limit)
    if description.fields is not None:
        query = query.select(description.fields)
    if description.sort is not None:
        query = query.sort(description.sort)
    if description.options:
        query = query.set_options(description.options)

    return query
