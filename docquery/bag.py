from collections import OrderedDict
from typing import Set, Mapping, Iterable, Tuple, FrozenSet, List, Optional

from sqlalchemy import Column, Table

from .types import JsonText, JsonObject, JsonArray, ReferenceSet


class EntityPropertyBags:
    """ Entity Property Bags is the class that lets you get information about the entity's fields.

    All the meta-information about a certain Entity is stored here:

    - Columns: by their logical field names, with storage names available
    - The primary key, always exposed as `_id`
    - JSON columns and reference sets
    - References: foreign keys, reference sets, and references nested into JSON arrays
    - Hidden fields, not selected by default
    - Writable fields

    Fields are named by `Column.key`, and stored under `Column.name`.
    A foreign key column is typically declared as `Column('line_id', ForeignKey('lines.id'), key='line')`:
    the entity sees a `line` field, the database sees a `line_id` column.
    """
    __bags_per_entity_cache = {}

    @classmethod
    def for_entity(cls, entity: type) -> 'EntityPropertyBags':
        """ Get bags for an entity.

        Please use this method over __init__(), because it initializes those bags only once
        """
        try:
            return cls.__bags_per_entity_cache[entity]
        except KeyError:
            cls.__bags_per_entity_cache[entity] = bags = cls(entity)
            return bags

    def __init__(self, entity: type):
        """ Init bags

        :param entity: Entity class with a `__table__`
        """
        table = getattr(entity, '__table__', None)
        if not isinstance(table, Table):
            raise TypeError('{} has no __table__'.format(entity.__name__))

        # Initialize
        self.entity = entity
        self.entity_name = entity.__name__
        self.table = table
        self.table_name = table.name

        # Init bags
        self.pk = self._init_primary_key(table)
        self.pk_name = next(iter(self.pk.names))
        self.columns = self._init_columns(table)
        self.references = self._init_references(table)
        self.nested_references = self._init_nested_references(table)

        # Additional informational bags
        self.hidden = self._init_hidden_columns(table)
        self.writable = self._init_writable_columns(table)

    # region: Initialize bags

    def _init_primary_key(self, table):
        """ Initialize: the primary key. Only single-column keys are supported """
        pk_columns = list(table.primary_key.columns)
        if len(pk_columns) != 1:
            raise TypeError('{} must have a single-column primary key'.format(self.entity_name))
        return PrimaryKeyBag(OrderedDict((c.key, c) for c in pk_columns))

    def _init_columns(self, table):
        """ Initialize: columns, by field name """
        return DotColumnsBag(OrderedDict((c.key, c) for c in table.columns),
                             pk_name=self.pk_name)

    def _init_references(self, table):
        """ Initialize: direct references (foreign keys) and reference sets """
        references = OrderedDict()
        for c in table.columns:
            if isinstance(c.type, ReferenceSet):
                references[c.key] = Reference(c.key, c.key, None, c.type.target, Reference.MANY)
            elif c.foreign_keys:
                target = _target_table_name(next(iter(c.foreign_keys)))
                references[c.key] = Reference(c.key, c.key, None, target, Reference.ONE)
        return ReferencesBag(references)

    def _init_nested_references(self, table):
        """ Initialize: references nested into arrays of objects: `answers.question` """
        references = OrderedDict()
        for c in table.columns:
            if isinstance(c.type, JsonArray) and not isinstance(c.type, ReferenceSet):
                for key, target in c.type.refs.items():
                    path = '{}.{}'.format(c.key, key)
                    references[path] = Reference(path, c.key, key, target, Reference.NESTED)
        return ReferencesBag(references)

    def _init_hidden_columns(self, table):
        """ Initialize: fields excluded from results unless asked for: `Column(info={'select': False})` """
        return ColumnsBag(OrderedDict((c.key, c)
                                      for c in table.columns
                                      if c.info.get('select', True) is False))

    def _init_writable_columns(self, table):
        """ Initialize: fields that can be written: everything but the primary key """
        return ColumnsBag(OrderedDict((c.key, c)
                                      for c in table.columns
                                      if c.key not in self.pk))

    # endregion

    def all_references(self) -> 'ReferencesBag':
        """ Get direct and nested references together """
        return ReferencesBag(OrderedDict(list(self.references) + list(self.nested_references)))


class _PropertiesBagBase:
    """ Base class for Property bags

    A container that keeps meta-information about:
    - Columns
    - Primary keys
    - References
    """

    def __contains__(self, name: str) -> bool:
        raise NotImplementedError

    def __getitem__(self, name: str):
        raise NotImplementedError

    @property
    def names(self) -> FrozenSet[str]:
        """ Get the set of names """
        raise NotImplementedError

    def __iter__(self):
        """ Get all items """
        raise NotImplementedError

    def __len__(self):
        return len(self.names)

    def get_invalid_names(self, names: Iterable[str]) -> Set[str]:
        """ Get the names of invalid items

        Use this for validation.
        """
        return {name for name in names if name not in self}


class ColumnsBag(_PropertiesBagBase):
    """ Columns bag

    Contains meta-information about columns:
    - which of them are JSON arrays, JSON objects, or reference sets
    - list of their names
    - getting a column by name: bag[field_name]
    """

    def __init__(self, columns: Mapping[str, Column]):
        """ Init columns

        :param columns: Columns, by field name
        """
        self._columns = columns
        self._column_names = frozenset(self._columns.keys())

        # More info about columns based on their type
        self._json_column_names = frozenset(name
                                            for name, col in self._columns.items()
                                            if isinstance(col.type, JsonText))
        self._array_column_names = frozenset(name
                                             for name, col in self._columns.items()
                                             if isinstance(col.type, JsonArray))
        self._object_column_names = frozenset(name
                                              for name, col in self._columns.items()
                                              if isinstance(col.type, JsonObject))

    @property
    def names(self) -> FrozenSet[str]:
        return self._column_names

    def __iter__(self) -> Iterable[Tuple[str, Column]]:
        return iter(self._columns.items())

    def __contains__(self, name: str) -> bool:
        return name in self._column_names

    def __getitem__(self, name: str) -> Column:
        return self._columns[name]

    def is_column_array(self, name: str) -> bool:
        """ Is the column a JSON array (or a reference set) """
        return get_plain_column_name(name) in self._array_column_names

    def is_column_json(self, name: str) -> bool:
        """ Is the column stored as JSON """
        return get_plain_column_name(name) in self._json_column_names

    def is_column_json_object(self, name: str) -> bool:
        """ Is the column a JSON object """
        return get_plain_column_name(name) in self._object_column_names

    def get_storage_name(self, name: str) -> str:
        """ Get the name of the database column that stores the field """
        return self[name].name


class PrimaryKeyBag(ColumnsBag):
    """ Primary Key Bag

    Like ColumnBag, but with a fancy name :)
    """


class DotColumnsBag(ColumnsBag):
    """ Columns bag with additional capabilities:

        - `_id` is an alias for the primary key
        - For JSON fields: field.prop.prop -- dot-notation access to sub-properties
    """

    def __init__(self, columns: Mapping[str, Column], pk_name: str):
        super(DotColumnsBag, self).__init__(columns)
        self.pk_name = pk_name

    def __contains__(self, name: str) -> bool:
        column_name, path = _dot_notation(name)
        column_name = self._unalias(column_name)
        if not super(DotColumnsBag, self).__contains__(column_name):
            return False
        return not path or self.is_column_json(column_name)

    def __getitem__(self, name: str) -> Column:
        if name not in self:
            raise KeyError(name)
        return super(DotColumnsBag, self).__getitem__(self.get_column_name(name))

    def _unalias(self, name: str) -> str:
        return self.pk_name if name == '_id' else name

    def get_column_name(self, name: str) -> str:
        """ Get the field name, without the JSON path and with `_id` resolved """
        return self._unalias(get_plain_column_name(name))

    def get_column(self, name: str) -> Column:
        """ Get a column, not a JSON path """
        return self[self.get_column_name(name)]

    def get_json_path(self, name: str) -> Optional[List[str]]:
        """ Get the JSON path of a dot-notation name: 'settings.a.b' -> ['a', 'b'] """
        return _dot_notation(name)[1] or None

    def is_primary_key(self, name: str) -> bool:
        return self._unalias(name) == self.pk_name


class Reference:
    """ A reference from one entity to another

        * ONE: a foreign key column holds a single id
        * MANY: a reference set column holds a list of ids
        * NESTED: every object in a JSON array column holds an id under `key`
    """
    __slots__ = ('path', 'field', 'key', 'target_table', 'kind')

    ONE = 'one'
    MANY = 'many'
    NESTED = 'nested'

    def __init__(self, path: str, field: str, key: Optional[str], target_table: str, kind: str):
        #: The populate() path
        self.path = path
        #: The field that holds the reference
        self.field = field
        #: For NESTED references: the key within every array element
        self.key = key
        #: Name of the referenced table
        self.target_table = target_table
        #: Kind of reference
        self.kind = kind

    def __repr__(self):
        return '{}({!r} -> {!r}, {})'.format(self.__class__.__name__, self.path, self.target_table, self.kind)


class ReferencesBag(_PropertiesBagBase):
    """ References bag: populate() paths """

    def __init__(self, references: Mapping[str, Reference]):
        self._references = references
        self._names = frozenset(references.keys())

    @property
    def names(self) -> FrozenSet[str]:
        return self._names

    def __iter__(self) -> Iterable[Tuple[str, Reference]]:
        return iter(self._references.items())

    def __contains__(self, name: str) -> bool:
        return name in self._names

    def __getitem__(self, name: str) -> Reference:
        return self._references[name]


def _target_table_name(fk) -> str:
    """ Get the name of the table a ForeignKey points to, without resolving it """
    # 'lines.id', or 'schema.lines.id'
    return fk.target_fullname.rsplit('.', 1)[0].split('.')[-1]


def _dot_notation(name: str) -> Tuple[str, List[str]]:
    """ Split a property name that's using dot-notation.

    This is used to navigate the internals of JSON types:

        "json_column.property.property"
    """
    path = name.split('.')
    return path[0], path[1:]


def get_plain_column_name(name: str) -> str:
    """ Get a plain column name, dropping any dot-notation that may follow """
    return name.split('.')[0]
