"""
Entities are document-style models backed by SQL tables.

```python
from sqlalchemy import MetaData, Table, Column, Integer, String, ForeignKey
from docquery import Entity, ReferenceSet

metadata = MetaData()

class Line(Entity):
    __table__ = Table('lines', metadata,
        Column('id', Integer, primary_key=True),
        Column('name', String),
        Column('department_id', ForeignKey('departments.id'), key='department'),
        Column('machines', ReferenceSet('machines')),
    )

line = await Line.create({'name': 'Assembly', 'department': 5})
lines = await Line.find({'machines': 7}).sort('name').populate('department')
```

An entity instance is a document: read its fields as attributes (`line.name`) or items (`line['name']`).
The primary key is always available as `_id`.
Every instance holds its own copy of the data: changing one never affects another.
"""

import copy
from contextlib import asynccontextmanager
from typing import Mapping, Optional

from . import connection
from .bag import EntityPropertyBags
from .connection import execute
from .crud import CrudHelper
from .exc import InvalidColumnError
from .handlers import QueryFilter, QueryPopulate
from .query import Cursor


class Entity:
    """ Base class for entities

        Class attributes:

        * `__table__`: the SQLAlchemy Table
        * `__timestamps__`: True to maintain `createdAt` and `updatedAt`, or a tuple of (created, updated) field names
        * `__default_sort__`: the sort to use when none is given. The primary key is always the final tie-breaker
        * `__database__`: the Database to use. Default: the `docquery.db` singleton
    """

    __table__ = None
    __timestamps__ = False
    __default_sort__ = None
    __database__ = None

    # The class to use for getting structural data from an entity
    _ENTITY_PROPERTY_BAGS_CLS = EntityPropertyBags
    # The class to use for queries
    _CURSOR_CLS = Cursor
    # The class to use for writes
    _CRUDHELPER_CLS = CrudHelper

    # Registered entities
    __entities_by_name = {}
    __entities_by_table = {}
    __crudhelpers = {}

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        if cls.__dict__.get('__table__') is not None:
            Entity.__entities_by_name[cls.__name__] = cls
            Entity.__entities_by_table[cls.__table__.name] = cls

    def __init__(self, doc: Mapping = None, **fields):
        """ Make a new document. It's not saved until save() is called

        :raises InvalidColumnError: unknown field
        """
        doc = dict(doc or {}, **fields)
        bags = self.get_bags()
        invalid = bags.columns.get_invalid_names(set(doc) - {'_id'})
        if invalid:
            raise InvalidColumnError(bags.entity_name, sorted(invalid)[0], 'init')
        object.__setattr__(self, '_doc', copy.deepcopy(doc))

    # region Registry

    @classmethod
    def entity_for_table(cls, table_name: str) -> Optional[type]:
        """ Get the entity class for a table """
        return Entity.__entities_by_table.get(table_name)

    @classmethod
    def entity_for_name(cls, name: str) -> Optional[type]:
        """ Get the entity class by its name """
        return Entity.__entities_by_name.get(name)

    @classmethod
    def get_bags(cls) -> EntityPropertyBags:
        return cls._ENTITY_PROPERTY_BAGS_CLS.for_entity(cls)

    @classmethod
    def get_crudhelper(cls) -> CrudHelper:
        try:
            return Entity.__crudhelpers[cls]
        except KeyError:
            Entity.__crudhelpers[cls] = helper = cls._CRUDHELPER_CLS(cls)
            return helper

    @classmethod
    def get_database(cls) -> 'connection.Database':
        """ The Database this entity lives in """
        return cls.__database__ if cls.__database__ is not None else connection.db

    @classmethod
    def _get_executor(cls, tx):
        return tx if tx is not None else cls.get_database()

    @classmethod
    @asynccontextmanager
    async def _transaction(cls, tx):
        """ Run in the given transaction, or in a new one """
        if tx is not None:
            yield tx
        else:
            async with cls.get_database().get_connection() as new_tx:
                yield new_tx

    # endregion

    # region Document

    @classmethod
    def from_document(cls, doc: dict) -> 'Entity':
        """ Wrap a document loaded from the database. The document is not copied """
        instance = cls.__new__(cls)
        object.__setattr__(instance, '_doc', doc)
        return instance

    @property
    def _id(self):
        return self._doc.get('_id')

    @property
    def id(self):
        return self._doc.get('_id')

    def __getattr__(self, name):
        # Only called when normal lookup fails
        if name.startswith('__') or name == '_doc':
            raise AttributeError(name)
        try:
            return self._doc[name]
        except KeyError:
            if name in self.get_bags().columns:
                return None  # not loaded
            raise AttributeError('{} has no field `{}`'.format(type(self).__name__, name))

    def __setattr__(self, name, value):
        if name == '_id' or name == 'id':
            raise AttributeError('The primary key is read-only')
        if name not in self.get_bags().writable:
            raise AttributeError('{} has no writable field `{}`'.format(type(self).__name__, name))
        self._doc[name] = value

    def __getitem__(self, name):
        return self._doc[name]

    def __setitem__(self, name, value):
        self.__setattr__(name, value)

    def __contains__(self, name):
        return name in self._doc

    def to_dict(self) -> dict:
        """ Get the document as a plain dict: a deep copy, with populated entities as dicts """
        return _to_plain(self._doc)

    def __repr__(self):
        return '{}(_id={!r})'.format(type(self).__name__, self._id)

    # endregion

    # region Read

    @classmethod
    def find(cls, criteria: Mapping = None, tx=None) -> Cursor:
        """ Find documents

        :param criteria: Filter criteria
        :param tx: Transaction to run in
        :return: A lazy Cursor. Await it to get a list
        :raises InvalidQueryError
        """
        return cls._CURSOR_CLS(cls, criteria).session(tx)

    @classmethod
    def find_one(cls, criteria: Mapping = None, tx=None) -> Cursor:
        """ Find the first document

        :return: A lazy Cursor. Await it to get a document, or None
        """
        return cls._CURSOR_CLS(cls, criteria, single=True).session(tx)

    @classmethod
    def find_by_id(cls, id, tx=None) -> Cursor:
        """ Find a document by its primary key

        :return: A lazy Cursor. Await it to get a document, or None. A `None` id never touches the database
        """
        cursor = cls._CURSOR_CLS(cls, {'_id': id}, single=True).session(tx)
        cursor.operation = 'find_by_id'
        if id is None:
            cursor.none()
        return cursor

    @classmethod
    async def count_documents(cls, criteria: Mapping = None, tx=None) -> int:
        """ Count documents that match the filter """
        return await cls.find(criteria, tx=tx).count()

    @classmethod
    async def exists(cls, criteria: Mapping = None, tx=None) -> bool:
        """ Test whether any document matches the filter """
        found = await cls.find_one(criteria, tx=tx).select('_id').lean()
        return found is not None

    # endregion

    # region Write

    @classmethod
    async def create(cls, data: Mapping, tx=None) -> 'Entity':
        """ Insert a new document

        Only the fields present in `data` are written; the database provides defaults for the rest.

        :return: The new document, as stored, with its `_id`
        :raises InvalidColumnError: unknown field
        :raises ConstraintViolation
        """
        helper = cls.get_crudhelper()
        data = helper.validate_incoming_entity_dict_fields(data, 'create')

        executor = cls._get_executor(tx)
        rows, meta = await execute(executor, helper.insert_statement(executor.dialect, data),
                                   'create', cls.__name__)
        id = helper.get_inserted_id(rows, meta)

        # Read it back: defaults and generated values
        cursor = cls._CURSOR_CLS(cls, {'_id': id}, single=True, include_hidden=True).session(executor)
        cursor.operation = 'create'
        return await cursor

    @classmethod
    async def find_by_id_and_update(cls, id, update: Mapping, new: bool = True, tx=None) -> Optional['Entity']:
        """ Partially update a document by its primary key

        Only the fields mentioned in `update` are written.

        :param id: Primary key
        :param update: Update spec: `{name: 'A'}`, `{'$set': ..., '$inc': ..., '$unset': ...}`
        :param new: Return the updated document. False: the document before the update
        :return: The document, or None if not found
        """
        if id is None:
            return None
        cls.get_crudhelper().parse_update(update)  # validate before any I/O
        async with cls._transaction(tx) as executor:
            before = await cls.find_by_id(id, tx=executor)
            return await cls._update_found(before, update, new, executor, 'find_by_id_and_update')

    @classmethod
    async def find_one_and_update(cls, criteria: Mapping, update: Mapping,
                                  upsert: bool = False, new: bool = True, tx=None) -> Optional['Entity']:
        """ Partially update the first document that matches the filter

        :param upsert: Create a document when none matches.
            It's made of the filter's equality conditions and the update.
        :param new: Return the updated document. False: the document before the update (None for upserts)
        """
        helper = cls.get_crudhelper()
        helper.parse_update(update)  # validate before any I/O
        cursor = cls.find_one(criteria)  # validate as well

        async with cls._transaction(tx) as executor:
            before = await cursor.session(executor)
            if before is None:
                if not upsert:
                    return None
                created = await cls.create(helper.upsert_document(criteria, update), tx=executor)
                return created if new else None
            return await cls._update_found(before, update, new, executor, 'find_one_and_update')

    @classmethod
    async def _update_found(cls, before, update, new, executor, operation):
        if before is None:
            return None

        helper = cls.get_crudhelper()
        stmt = helper.update_statement(executor.dialect, before._id, update)
        if stmt:
            await execute(executor, stmt, operation, cls.__name__)

        if not new:
            return before
        return await cls.find_by_id(before._id, tx=executor)

    @classmethod
    async def find_by_id_and_delete(cls, id, tx=None) -> Optional['Entity']:
        """ Delete a document by its primary key

        :return: The document as it was before deletion, or None if not found
        """
        if id is None:
            return None
        async with cls._transaction(tx) as executor:
            snapshot = await cls.find_by_id(id, tx=executor)
            if snapshot is None:
                return None
            stmt = cls.get_crudhelper().delete_by_id_statement(executor.dialect, snapshot._id)
            await execute(executor, stmt, 'find_by_id_and_delete', cls.__name__)
            return snapshot

    @classmethod
    async def update_many(cls, criteria: Mapping, update: Mapping, tx=None) -> int:
        """ Partially update all documents that match the filter

        :return: The number of updated documents
        """
        helper = cls.get_crudhelper()
        query_filter = QueryFilter(cls, cls.get_bags()).input(criteria)

        executor = cls._get_executor(tx)
        stmt = helper.update_many_statement(executor.dialect, query_filter.compile_statement(executor.dialect), update)
        if not stmt:
            return 0
        _, meta = await execute(executor, stmt, 'update_many', cls.__name__)
        return meta[0]['rowcount']

    @classmethod
    async def delete_many(cls, criteria: Mapping, tx=None) -> int:
        """ Delete all documents that match the filter

        :return: The number of deleted documents
        """
        helper = cls.get_crudhelper()
        query_filter = QueryFilter(cls, cls.get_bags()).input(criteria)

        executor = cls._get_executor(tx)
        stmt = helper.delete_statement(executor.dialect, query_filter.compile_statement(executor.dialect))
        _, meta = await execute(executor, stmt, 'delete_many', cls.__name__)
        return meta[0]['rowcount']

    async def save(self, tx=None) -> 'Entity':
        """ Save the document

        A new document (no `_id`) is inserted.
        An existing one is written as a whole: every field it holds is written, populated references as ids.
        """
        cls = type(self)
        helper = cls.get_crudhelper()

        # Insert
        if self._id is None:
            created = await cls.create(self._doc, tx=tx)
            object.__setattr__(self, '_doc', created._doc)
            return self

        # Full update
        executor = cls._get_executor(tx)
        now = helper.now()
        stmt = helper.update_statement(executor.dialect, self._id, self._doc, full=True, now=now)
        if stmt:
            await execute(executor, stmt, 'save', cls.__name__)
            if helper.updated_field:
                self._doc[helper.updated_field] = now
        return self

    async def populate(self, path, fields=None, tx=None) -> 'Entity':
        """ Replace referenced ids with documents, in place

        :param path: Reference path(s): 'line', 'answers.question'
        :param fields: Fields to select from the referenced entity
        """
        cls = type(self)
        handler = QueryPopulate(cls, cls.get_bags()).input(path, fields)
        await handler.populate([self._doc], cls._get_executor(tx), as_entities=True)
        return self

    async def delete(self, tx=None) -> 'Entity':
        """ Delete the document """
        cls = type(self)
        executor = cls._get_executor(tx)
        stmt = cls.get_crudhelper().delete_by_id_statement(executor.dialect, self._id)
        await execute(executor, stmt, 'delete', cls.__name__)
        return self

    # endregion


def _to_plain(value):
    """ Deep-copy a document, converting entities into dicts """
    if isinstance(value, Entity):
        return value.to_dict()
    if isinstance(value, dict):
        return {k: _to_plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_to_plain(v) for v in value]
    return copy.deepcopy(value)
