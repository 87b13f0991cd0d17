"""
### Select Operation

Selection (projection) corresponds to the `SELECT` part of an SQL query.

Your entities have many fields, but you do not always need them all.
List the fields that you want (called *include mode*), or the fields that you *do not* want
(called *exclude mode*). Only the selected columns are fetched from the database.

```python
await Employee.find({}).select('name email')  # include mode
await Employee.find({}).select('-photo')  # exclude mode
```

#### Syntax

* String syntax: field names separated by whitespace: `'name email'`, `'-photo -notes'`
* Array syntax: `['name', 'email']`, `['-photo']`
* Object syntax: `{'name': 1, 'email': 1}`, `{'photo': 0}`

You can't intermix the two modes.
The primary key (`_id`) is always selected.

#### Hidden fields
Some fields are hidden: not selected by default (e.g. a password hash).
They are declared with `Column(..., info={'select': False})`.

To get a hidden field, name it in include mode, or prefix it with a `+`: `select('+password')`.
"""

from collections import OrderedDict

from .base import QueryHandlerBase
from ..exc import InvalidQueryError, InvalidColumnError


class QueryProject(QueryHandlerBase):
    """ Projection: choose which fields to select

        Syntax in Python:

        * None: use default (include all, except hidden fields)
        * { a: 1, b: 1 } - include only the given fields; exclude all the rest
        * { a: 0, b: 0 } - exclude the given fields; include all the rest
        * [ a, b, c ] - include only the given fields
        * '+a' - additionally include a hidden field

        Other useful methods:
        * compile_columns() gives the list of fields to select
        * __contains__() will test whether a field was requested by this projection operator:
            p = QueryProject(Employee, bags).input(...)
            if 'email' in p: ...
    """

    query_object_section_name = 'select'

    #: Include mode: only listed fields
    MODE_INCLUDE = 1
    #: Exclude mode: all fields except listed ones
    MODE_EXCLUDE = 0

    def __init__(self, entity, bags, include_hidden=False):
        """ Init projection

        :param entity: Entity class to work with
        :param bags: Entity bags
        :param include_hidden: Select hidden fields as well
        """
        super(QueryProject, self).__init__(entity, bags)

        # Settings
        self.include_hidden = include_hidden

        # On input
        #: Projection mode
        self.mode = self.MODE_EXCLUDE
        #: Projection: { field name: 1|0 }
        self.projection = OrderedDict()
        #: Hidden fields explicitly requested with a '+'
        self.plus = set()

    def _get_supported_bags(self):
        return self.bags.columns

    def _parse(self, projection):
        """ Parse a projection into (projection dict, plus set) """
        # Empty
        if not projection:
            return OrderedDict(), set()

        # String syntax
        if isinstance(projection, str):
            projection = projection.split()

        # Array syntax
        plus = set()
        if isinstance(projection, (list, tuple)):
            parsed = OrderedDict()
            for name in projection:
                if not isinstance(name, str) or not name:
                    raise InvalidQueryError('{} list must only contain field names'
                                            .format(self.query_object_section_name))
                if name[0] == '-':
                    parsed[name[1:]] = 0
                elif name[0] == '+':
                    plus.add(name[1:])
                else:
                    parsed[name] = 1
            projection = parsed

        # Object syntax
        if not isinstance(projection, dict):
            raise InvalidQueryError('{name} must be either a list, a string, or an object; {type} provided.'
                                    .format(name=self.query_object_section_name, type=type(projection)))
        if not all(v in (0, 1) for v in projection.values()):
            raise InvalidQueryError('{} values can be either 0 or 1'.format(self.query_object_section_name))

        # Validate
        names = list(projection.keys()) + list(plus)
        for name in names:
            if '.' in name:
                raise InvalidColumnError(self.bags.entity_name, name, self.query_object_section_name)
        self.validate_properties(names)

        return OrderedDict((k, int(v)) for k, v in projection.items()), plus

    def input(self, projection):
        super(QueryProject, self).input(projection)
        self.merge(projection)
        return self

    def merge(self, projection):
        """ Add more fields to the projection """
        parsed, plus = self._parse(projection)

        # The primary key can't be excluded: it's always selected
        parsed = OrderedDict((k, v) for k, v in parsed.items()
                             if not (v == 0 and self.bags.columns.is_primary_key(k)))

        projection = OrderedDict(self.projection)
        projection.update(parsed)

        # Modes can't be mixed
        values = set(projection.values())
        if len(values) > 1:
            raise InvalidQueryError('{} cannot mix included and excluded fields'
                                    .format(self.query_object_section_name))

        self.projection = projection
        self.mode = self.MODE_INCLUDE if values == {1} else self.MODE_EXCLUDE
        self.plus |= plus
        return self

    def __contains__(self, name: str) -> bool:
        """ Test whether a field is selected """
        name = self.bags.columns.get_column_name(name)
        return name in self.compile_columns()

    def compile_columns(self):
        """ Get the list of selected fields, in the order of table columns

        :rtype: list[str]
        """
        columns = self.bags.columns
        hidden = self.bags.hidden
        projection = {columns.get_column_name(k): v for k, v in self.projection.items()}
        plus = {columns.get_column_name(k) for k in self.plus}

        selected = []
        for name, column in columns:
            if columns.is_primary_key(name):
                selected.append(name)
            elif self.mode == self.MODE_INCLUDE:
                if projection.get(name) == 1 or name in plus:
                    selected.append(name)
            else:
                if projection.get(name) == 0:
                    continue
                if name in hidden and not self.include_hidden and name not in plus:
                    continue
                selected.append(name)
        return selected

    def get_final_input_value(self):
        value = OrderedDict(self.projection)
        value.update((k, 1) for k in sorted(self.plus))
        return value
