"""
### Sort Operation

Sorting corresponds to the `ORDER BY` part of an SQL query.

```python
await Audit.find({}).sort({'createdAt': -1})
```

#### Syntax

* Object syntax. Keys are sorted in the order they are listed.

    ```python
    .sort({'order': 1, 'createdAt': 'desc'})
    ```

    Directions: `1`, `-1`, `'asc'`, `'desc'`, `'ascending'`, `'descending'`.

* Array syntax.

    List of field names, optionally suffixed by the sort direction: `-` for `DESC`, `+` for `ASC`.
    The default is `+`.

    ```python
    .sort(['a+', 'b-', 'c'])  # -> a ASC, b DESC, c ASC
    ```

* String syntax

    List of fields, separated by whitespace.
    A field may be prefixed with `-` for `DESC`, or suffixed like in the array syntax.

    ```python
    .sort('-createdAt name')
    ```

JSON object columns support dot-notation: `.sort('-meta.rank')`.

Results are always ordered deterministically: the primary key is the final tie-breaker.
"""

from collections import OrderedDict

from .base import QueryHandlerBase, Compiled
from .filter import json_path_string
from ..exc import InvalidQueryError, InvalidColumnError


class QuerySort(QueryHandlerBase):
    """ Sorting

        * None: no explicit sorting: use the default sort, then the primary key
        * OrderedDict({ a: +1, b: -1 }), or a dict: sorted in the order of its keys
        * [ 'a+', 'b-', 'c' ]  - array of strings '<column>[<+|->]'. default direction = +1
        * '-a b' - string syntax

        Supports: Columns
    """

    query_object_section_name = 'sort'

    # Recognized directions
    _directions = {
        1: +1, -1: -1,
        'asc': +1, 'ascending': +1,
        'desc': -1, 'descending': -1,
    }

    def __init__(self, entity, bags, default_sort=None):
        """ Init a sort

        :param entity: Entity class to work with
        :param bags: Entity bags
        :param default_sort: Sort to use when none was given
        """
        # Parent
        super(QuerySort, self).__init__(entity, bags)

        # Config
        self.default_sort = self._input(default_sort) if default_sort else OrderedDict()

        # On input
        #: OrderedDict() of a sort spec: {key: +1|-1}
        self.sort_spec = None

    def _get_supported_bags(self):
        return self.bags.columns

    def _input(self, spec):
        # Empty
        if not spec:
            spec = []

        # String syntax
        if isinstance(spec, str):
            # Split by whitespace and convert to a list
            spec = spec.split()

        # List
        if isinstance(spec, (list, tuple)):
            if not all(isinstance(v, str) and v for v in spec):
                raise InvalidQueryError('{} list must only contain field names'
                                        .format(self.query_object_section_name))
            spec = OrderedDict(self._parse_sort_string(v) for v in spec)

        # Dict
        if not isinstance(spec, dict):
            raise InvalidQueryError('{name} must be either a list, a string, or an object; {type} provided.'
                                    .format(name=self.query_object_section_name, type=type(spec)))

        # Validate directions
        sort_spec = OrderedDict()
        for field, direction in spec.items():
            if isinstance(direction, str):
                direction = direction.lower()
            if isinstance(direction, bool) or direction not in self._directions:
                raise InvalidQueryError('{} direction for `{}` can be either 1, -1, "asc", or "desc"'
                                        .format(self.query_object_section_name, field))
            sort_spec[field] = self._directions[direction]

        # Validate columns
        self.validate_properties(sort_spec.keys())
        for field in sort_spec:
            json_path = self.bags.columns.get_json_path(field)
            if json_path:
                # Dot-notation only goes into JSON objects: an array has no single value to sort by
                if not self.bags.columns.is_column_json_object(field):
                    raise InvalidColumnError(self.bags.entity_name, field, self.query_object_section_name)
                json_path_string(json_path)  # validate
        return sort_spec

    @staticmethod
    def _parse_sort_string(v):
        """ '-a', 'a-', 'a+', 'a' -> (name, direction) """
        if v[0] in '+-' and len(v) > 1:
            return v[1:], -1 if v[0] == '-' else +1
        if v[-1] in '+-' and len(v) > 1:
            return v[:-1], -1 if v[-1] == '-' else +1
        return v, +1

    def input(self, sort_spec):
        super(QuerySort, self).input(sort_spec)
        self.sort_spec = self._input(sort_spec)
        return self

    def merge(self, sort_spec):
        self.sort_spec.update(self._input(sort_spec))
        return self

    def get_effective_sort(self) -> OrderedDict:
        """ The sort that is actually applied: explicit or default, then the primary key """
        spec = OrderedDict(self.sort_spec or self.default_sort)

        # Tie-breaker
        pk_name = self.bags.pk_name
        if not any(self.bags.columns.is_primary_key(name) for name in spec):
            spec[pk_name] = +1
        return spec

    def compile_statement(self, dialect) -> Compiled:
        """ Compile the ORDER BY clause """
        table = self.bags.table_name
        columns = self.bags.columns

        def compile_key(name, direction):
            col = Compiled(dialect.quote_column(table, columns[name].name))
            json_path = columns.get_json_path(name)
            if json_path:
                # 'meta.rank': a value from within the JSON object
                col = Compiled(dialect.json_extract(col.sql), [json_path_string(json_path)])
            return col + (' DESC' if direction == -1 else ' ASC')

        return 'ORDER BY ' + Compiled.join(', ', [compile_key(name, d)
                                                   for name, d in self.get_effective_sort().items()])

    def get_final_input_value(self):
        return [f'{name}{"-" if d == -1 else ""}'
                for name, d in self.sort_spec.items()]
