"""
### Slice Operation
Slicing corresponds to the `LIMIT .. OFFSET ..` part of an SQL query.

The Slice operation consists of two optional parts:

* `limit` would limit the number of items returned by the API
* `skip` would shift the "window" a number of items

Together, these two elements implement pagination:

```python
await Audit.find({}).sort({'createdAt': -1}).skip(20).limit(10)
```

Results are always sorted when paginated, so that pages are stable.
"""

from .base import QueryHandlerBase, Compiled
from ..exc import InvalidQueryError


class QueryLimit(QueryHandlerBase):
    """ Limits and offsets

        Handles two keys:
        * 'limit': None, or int: LIMIT for the query
        * 'skip': None, or int: OFFSET for the query
    """

    query_object_section_name = 'limit'

    def __init__(self, entity, bags, max_items=None):
        """ Init a limit

        :param entity: Entity class to work with
        :param bags: Entity bags
        :param max_items: The maximum number of items that can be loaded with this query.
            The user can never go any higher than that, and this value is forced onto every query.
        """
        super(QueryLimit, self).__init__(entity, bags)

        # Config
        self.max_items = max_items
        assert self.max_items is None or self.max_items > 0

        # On input
        self.skip = None
        self.limit = None

    def input(self, skip=None, limit=None):
        # Super
        super(QueryLimit, self).input((skip, limit))
        self.skip, self.limit = self._validate(skip, limit)
        return self

    def merge(self, skip=None, limit=None):
        """ Change the skip, the limit, or both """
        skip, limit = self._validate(skip, limit)
        if skip is not None:
            self.skip = skip
        if limit is not None:
            self.limit = limit
        return self

    def _validate(self, skip, limit):
        # Validate
        if not _is_int_or_none(skip):
            raise InvalidQueryError('Skip must be either an integer, or null')
        if not _is_int_or_none(limit):
            raise InvalidQueryError('Limit must be either an integer, or null')
        if (skip is not None and skip < 0) or (limit is not None and limit < 0):
            raise InvalidQueryError('Skip and limit must not be negative')

        # Clamp
        skip = None if skip is None or skip <= 0 else skip
        limit = None if limit is None or limit <= 0 else limit

        # Max limit
        if self.max_items:
            limit = min(self.max_items, limit or self.max_items)

        # Done
        return skip, limit

    def _get_supported_bags(self):
        return None  # not used by this class

    def compile_statement(self, dialect) -> Compiled:
        """ Compile the LIMIT/OFFSET clause. Must follow an ORDER BY """
        sql, params = dialect.paginate(self.limit, self.skip)
        return Compiled(sql, params)

    def get_final_input_value(self):
        return dict(skip=self.skip, limit=self.limit)


def _is_int_or_none(value):
    return value is None or (isinstance(value, int) and not isinstance(value, bool))
