"""
DocQuery comes with a CRUD helper that turns document-style writes into SQL statements.

* Create: a sparse INSERT: only the fields present in the data are written
* Update: a sparse UPDATE with the `$set`, `$inc`, and `$unset` operators: fields that are not mentioned stay intact
* Save: a full-row UPDATE of the fields an instance holds
* Delete: a hard DELETE

Arrays and objects are serialized by their column types.
Populated references are written back as their ids.
"""

from collections import OrderedDict
from datetime import datetime, timezone
from typing import Iterable, Mapping, MutableMapping, Set

from . import exc
from .bag import EntityPropertyBags, Reference
from .handlers import Compiled
from .types import JsonText


class CrudHelper:
    """ Crud helper: an object that helps implement the write path for an Entity

        * Validate incoming entity dicts
        * Parse update specs
        * Build INSERT, UPDATE, and DELETE statements

        This object is supposed to be initialized only once per entity: see Entity.get_crudhelper()
    """

    # The class to use for getting structural data from an entity
    _ENTITY_PROPERTY_BAGS_CLS = EntityPropertyBags

    # Supported update operators
    UPDATE_OPERATORS = frozenset(('$set', '$inc', '$unset'))

    def __init__(self, entity):
        """ Init CRUD helper

        :param entity: The Entity class to work with
        """
        self.entity = entity
        self.bags = self._ENTITY_PROPERTY_BAGS_CLS.for_entity(entity)

        # Timestamp fields, maintained automatically
        self.created_field, self.updated_field = _timestamp_fields(entity)
        for name in (self.created_field, self.updated_field):
            if name is not None and name not in self.bags.writable:
                raise TypeError('{} has timestamps, but no `{}` field'.format(self.bags.entity_name, name))

    # region Validation

    def _validate_writable_attributes(self, attr_names: Iterable[str], where: str) -> Set[str]:
        """ Validate field names that are writable

            :raises exc.InvalidColumnError: Field name was not writable
        """
        attr_names = set(attr_names)
        unk_cols = self.bags.writable.get_invalid_names(attr_names)
        if unk_cols:
            raise exc.InvalidColumnError(self.bags.entity_name, sorted(unk_cols)[0], where)
        return attr_names

    def validate_incoming_entity_dict_fields(self, entity_dict: Mapping, action: str) -> dict:
        """ Validate the incoming data

        :param entity_dict: The data
        :param action: 'create' or 'update'
        :return: A copy of the data, with read-only fields removed
        :raises exc.InvalidQueryError: not an object
        :raises exc.InvalidColumnError: unknown field
        """
        # Validate
        if not isinstance(entity_dict, Mapping):
            raise exc.InvalidQueryError(f'Entity "{action}": the value has to be an object, '
                                        f'not {type(entity_dict)}')

        # Remove certain fields from the entity dict
        entity_dict = dict(entity_dict)
        if action in ('create', 'update'):
            self._remove_entity_dict_fields(entity_dict, self._read_only_fields)
        else:
            raise ValueError(action)

        # Check fields
        self._validate_writable_attributes(entity_dict.keys(), action)

        # Done
        return entity_dict

    @property
    def _read_only_fields(self) -> Set[str]:
        """ Fields that are silently dropped from the incoming data: the key, and timestamps """
        fields = {'_id', self.bags.pk_name}
        fields.update(name for name in (self.created_field, self.updated_field) if name)
        return fields

    def _remove_entity_dict_fields(self, entity_dict: MutableMapping, rm_fields: Set[str]):
        """ Remove certain fields from the incoming entity dict """
        for k in set(entity_dict.keys()) & rm_fields:
            entity_dict.pop(k)

    def parse_update(self, update: Mapping) -> OrderedDict:
        """ Parse an update spec

            Plain keys are values to set: `{name: 'A'}` is the same as `{$set: {name: 'A'}}`.

            * `$set`: {field: value}
            * `$inc`: {field: number}
            * `$unset`: {field: ''}, or [field, ...]

        :return: { field: (operator, value) }
        :raises exc.InvalidQueryError: unsupported operator, or a field updated twice
        :raises exc.InvalidColumnError: unknown field
        """
        if not isinstance(update, Mapping):
            raise exc.InvalidQueryError(f'Entity "update": the value has to be an object, not {type(update)}')

        changes = OrderedDict()

        def add(name, operator, value):
            if name in changes:
                raise exc.InvalidQueryError('Field `{}` is updated more than once'.format(name))
            changes[name] = (operator, value)

        plain = {}
        for key, value in update.items():
            if not key.startswith('$'):
                plain[key] = value
            elif key not in self.UPDATE_OPERATORS:
                raise exc.InvalidQueryError('Unsupported update operator "{}"'.format(key))
            elif key == '$unset':
                names = value.keys() if isinstance(value, Mapping) else value
                if not isinstance(names, Iterable) or isinstance(names, str):
                    raise exc.InvalidQueryError('$unset argument must be an object or a list')
                for name in self.validate_incoming_entity_dict_fields(dict.fromkeys(names), 'update'):
                    add(name, '$unset', None)
            else:
                if not isinstance(value, Mapping):
                    raise exc.InvalidQueryError('{} argument must be an object'.format(key))
                for name, v in self.validate_incoming_entity_dict_fields(value, 'update').items():
                    if key == '$inc':
                        if self.bags.columns.is_column_json(name):
                            raise exc.InvalidQueryError('$inc is not supported for the JSON field `{}`'.format(name))
                        if not isinstance(v, (int, float)) or isinstance(v, bool):
                            raise exc.InvalidQueryError('$inc argument for `{}` must be a number'.format(name))
                    add(name, key, v)

        for name, v in self.validate_incoming_entity_dict_fields(plain, 'update').items():
            add(name, '$set', v)

        return changes

    def upsert_document(self, criteria: Mapping, update: Mapping) -> dict:
        """ Make the document to insert when an upsert found nothing

            Equality conditions of the filter are copied over, then the update is applied.
        """
        doc = {}
        for key, value in (criteria or {}).items():
            if isinstance(value, Mapping):
                if set(value) != {'$eq'}:
                    continue
                value = value['$eq']
            if key in self.bags.writable and not self.bags.columns.is_column_array(key):
                doc[key] = value

        for name, (operator, value) in self.parse_update(update).items():
            if operator == '$unset':
                doc.pop(name, None)
            elif operator == '$inc':
                doc[name] = (doc.get(name) or 0) + value
            else:
                doc[name] = value
        return doc

    # endregion

    # region Values

    @staticmethod
    def now() -> datetime:
        """ Timestamps are naive UTC """
        return datetime.now(timezone.utc).replace(tzinfo=None)

    def prepare_value(self, name: str, value):
        """ Convert a field value for storage

            Populated references become ids again, containers become JSON text.
        """
        value = self._depopulate(name, value)
        column_type = self.bags.writable[name].type
        if isinstance(column_type, JsonText):
            return column_type.serialize(value)
        return value

    def _depopulate(self, name, value):
        references = self.bags.all_references()
        if name in references.names:
            reference = references[name]
            if reference.kind == Reference.MANY and isinstance(value, list):
                return [_ref_id(v) for v in value]
            if reference.kind == Reference.ONE:
                return _ref_id(value)

        # References nested into arrays of objects
        if isinstance(value, list):
            keys = [r.key for _, r in self.bags.nested_references if r.field == name]
            if keys:
                value = [_depopulate_element(element, keys) for element in value]
        return value

    def _timestamps(self, action: str, now: datetime) -> dict:
        values = {}
        if action == 'create' and self.created_field:
            values[self.created_field] = now
        if self.updated_field:
            values[self.updated_field] = now
        return values

    # endregion

    # region Statements

    def insert_statement(self, dialect, data: Mapping, now: datetime = None) -> Compiled:
        """ A sparse INSERT of validated data

        :param dialect: The dialect to compile for
        :param data: Validated data: see validate_incoming_entity_dict_fields()
        :param now: The value for timestamps
        """
        values = OrderedDict((name, self.prepare_value(name, value)) for name, value in data.items())
        values.update(self._timestamps('create', now or self.now()))

        storage = self.bags.writable
        sql = dialect.insert(dialect.quote(self.bags.table_name),
                             [dialect.quote(storage.get_storage_name(name)) for name in values],
                             dialect.quote(self.bags.pk.get_storage_name(self.bags.pk_name)))
        return Compiled(sql, values.values())

    def get_inserted_id(self, rows, meta):
        """ Get the generated key from the result of insert_statement() """
        if rows:
            return rows[0][self.bags.pk.get_storage_name(self.bags.pk_name)]
        return meta[0]['lastrowid']

    def _compile_set(self, dialect, changes: Mapping) -> Compiled:
        """ Compile the SET clause from { field: (operator, value) } """
        parts = []
        for name, (operator, value) in changes.items():
            column = dialect.quote(self.bags.writable.get_storage_name(name))
            if operator == '$unset':
                parts.append(Compiled(column + ' = NULL'))
            elif operator == '$inc':
                parts.append('{0} = COALESCE({0}, 0) + '.format(column) + Compiled.param(value))
            else:
                parts.append(column + ' = ' + Compiled.param(self.prepare_value(name, value)))
        return Compiled.join(', ', parts)

    def _with_timestamps(self, changes: Mapping, now: datetime) -> OrderedDict:
        changes = OrderedDict(changes)
        for name, value in self._timestamps('update', now or self.now()).items():
            changes[name] = ('$set', value)
        return changes

    def update_statement(self, dialect, id, update: Mapping, full: bool = False, now: datetime = None) -> Compiled:
        """ UPDATE a single row by its primary key

        :param dialect: The dialect to compile for
        :param id: Primary key value
        :param update: For partial updates, an update spec: see parse_update().
            For full updates, the document: every writable field it has is written.
        :param full: Full-row update
        :param now: The value for timestamps
        :return: The statement; empty when there's nothing to update
        """
        where = dialect.quote_column(self.bags.table_name, self.bags.pk.get_storage_name(self.bags.pk_name)) \
                + ' = ' + Compiled.param(id)
        return self.update_many_statement(dialect, where, update, full=full, now=now)

    def update_many_statement(self, dialect, where: Compiled, update: Mapping, full: bool = False,
                              now: datetime = None) -> Compiled:
        """ UPDATE all rows that match a compiled filter """
        if full:
            document = {k: v for k, v in update.items() if k in self.bags.writable}
            changes = OrderedDict((name, ('$set', value))
                                  for name, value in self.validate_incoming_entity_dict_fields(document,
                                                                                               'update').items())
        else:
            changes = self.parse_update(update)

        if not changes and not self.updated_field:
            return Compiled()
        changes = self._with_timestamps(changes, now)

        stmt = 'UPDATE {} SET '.format(dialect.quote(self.bags.table_name)) + self._compile_set(dialect, changes)
        if where:
            stmt += ' WHERE ' + where
        return stmt

    def delete_statement(self, dialect, where: Compiled) -> Compiled:
        """ DELETE all rows that match a compiled filter """
        stmt = Compiled('DELETE FROM {}'.format(dialect.quote(self.bags.table_name)))
        if where:
            stmt += ' WHERE ' + where
        return stmt

    def delete_by_id_statement(self, dialect, id) -> Compiled:
        """ DELETE a single row by its primary key """
        where = dialect.quote_column(self.bags.table_name, self.bags.pk.get_storage_name(self.bags.pk_name)) \
                + ' = ' + Compiled.param(id)
        return self.delete_statement(dialect, where)

    # endregion


def _timestamp_fields(entity):
    """ Get the (created, updated) field names of an entity

        `__timestamps__ = True` means `createdAt` and `updatedAt`.
        A tuple of two names can be given instead; either can be None.
    """
    timestamps = getattr(entity, '__timestamps__', False)
    if not timestamps:
        return None, None
    if timestamps is True:
        return 'createdAt', 'updatedAt'
    created, updated = timestamps
    return created, updated


def _ref_id(value):
    """ Get the id of a populated reference, or the value itself """
    if isinstance(value, Mapping):
        return value.get('_id')
    if hasattr(value, 'to_dict'):
        return value._id
    return value


def _depopulate_element(element, keys):
    if not isinstance(element, Mapping):
        return element
    element = dict(element)
    for key in keys:
        if key in element:
            element[key] = _ref_id(element[key])
    return element
