from typing import Optional, Union

from . import handlers
from .bag import EntityPropertyBags
from .connection import execute
from .handlers import Compiled
from .mapper import EntityMapper


class Cursor:
    """ A lazy document-style query

        A Cursor is created by Entity.find() and friends. Chain methods refine it, and return the same Cursor:

            cursor = Audit.find({'line': 1}).sort('-createdAt').limit(10).populate('line')

        Nothing happens until it's executed: `await cursor`, `await cursor.exec()`, or `async for`.
        Every execution runs the query anew: compile, execute, map, populate.

        All validation errors are raised by the chain methods, before anything is sent to the database.
    """

    # The class to use for getting structural data from an entity
    _ENTITY_PROPERTY_BAGS_CLS = EntityPropertyBags
    # The class to convert rows into documents
    _ENTITY_MAPPER_CLS = EntityMapper

    _QO_HANDLER_FILTER = handlers.QueryFilter
    _QO_HANDLER_SORT = handlers.QuerySort
    _QO_HANDLER_PROJECT = handlers.QueryProject
    _QO_HANDLER_LIMIT = handlers.QueryLimit
    _QO_HANDLER_POPULATE = handlers.QueryPopulate

    def __init__(self, entity, criteria=None, single=False, include_hidden=False):
        """ Init a query

        :param entity: The Entity class to query
        :param criteria: Filter criteria
        :param single: Return a single document (or None) instead of a list
        :param include_hidden: Select hidden fields as well
        :raises InvalidQueryError: invalid criteria
        :raises InvalidColumnError: unknown field in the criteria
        """
        self._entity = entity
        self._bags = self._ENTITY_PROPERTY_BAGS_CLS.for_entity(entity)
        self._single = single

        # Execution options
        self._lean = False
        self._none = False
        self._executor = None
        #: Operation name, for error messages
        self.operation = 'find_one' if single else 'find'

        # Query Object handlers
        self.handler_filter = self._QO_HANDLER_FILTER(entity, self._bags).input(criteria)
        self.handler_sort = self._QO_HANDLER_SORT(
            entity, self._bags,
            default_sort=getattr(entity, '__default_sort__', None)).input(None)
        self.handler_project = self._QO_HANDLER_PROJECT(entity, self._bags,
                                                        include_hidden=include_hidden).input(None)
        # A single cursor always has LIMIT 1
        self.handler_limit = self._QO_HANDLER_LIMIT(entity, self._bags,
                                                    max_items=1 if single else None).input()
        self.handler_populate = self._QO_HANDLER_POPULATE(entity, self._bags).input()

    def __repr__(self):
        return 'Cursor({}, {!r}{})'.format(self._entity.__name__,
                                           self.handler_filter.get_final_input_value(),
                                           ', single' if self._single else '')

    # region Chain methods

    def where(self, criteria: dict) -> 'Cursor':
        """ Add more filter criteria. They are ANDed together """
        self.handler_filter.merge(criteria)
        return self

    def sort(self, spec) -> 'Cursor':
        """ Sort the results: `{'createdAt': -1}`, `'-createdAt name'`, `['createdAt-', 'name']` """
        self.handler_sort.merge(spec)
        return self

    def limit(self, n: Optional[int]) -> 'Cursor':
        """ Load at most `n` documents """
        self.handler_limit.merge(limit=n)
        return self

    def skip(self, n: Optional[int]) -> 'Cursor':
        """ Skip `n` documents """
        self.handler_limit.merge(skip=n)
        return self

    def select(self, projection) -> 'Cursor':
        """ Choose fields to load: `'name email'`, `'-photo'`, `'+password'`, `{'name': 1}` """
        self.handler_project.merge(projection)
        return self

    def populate(self, path, fields=None) -> 'Cursor':
        """ Replace referenced ids with documents: `populate('line')`, `populate('answers.question', 'questionText')` """
        self.handler_populate.merge(path, fields)
        return self

    def lean(self, lean: bool = True) -> 'Cursor':
        """ Return plain dicts instead of Entity instances """
        self._lean = lean
        return self

    def session(self, executor) -> 'Cursor':
        """ Run with the given Database or Transaction. None means the entity's default database """
        self._executor = executor
        return self

    def none(self) -> 'Cursor':
        """ Return no results, and don't query the database at all """
        self._none = True
        return self

    # endregion

    # region Compile

    def compile(self, dialect) -> Compiled:
        """ Compile the SELECT statement

        :type dialect: docquery.dialect.Dialect
        """
        bags = self._bags
        table = bags.table_name
        columns = ', '.join(dialect.quote_column(table, bags.columns[name].name)
                            for name in self.handler_project.compile_columns())

        stmt = Compiled('SELECT {} FROM {}'.format(columns, dialect.quote(table)))

        where = self.handler_filter.compile_statement(dialect)
        if where:
            stmt += ' WHERE ' + where

        # Always ordered: pages have to be stable
        stmt += ' ' + self.handler_sort.compile_statement(dialect)

        pagination = self.handler_limit.compile_statement(dialect)
        if pagination:
            stmt += ' ' + pagination
        return stmt

    def compile_count(self, dialect) -> Compiled:
        """ Compile the SELECT COUNT(*) statement. Sorting and pagination are ignored """
        stmt = Compiled('SELECT COUNT(*) AS n FROM {}'.format(dialect.quote(self._bags.table_name)))
        where = self.handler_filter.compile_statement(dialect)
        if where:
            stmt += ' WHERE ' + where
        return stmt

    # endregion

    # region Execute

    def _get_executor(self):
        if self._executor is not None:
            return self._executor
        return self._entity.get_database()

    async def exec(self) -> Union[list, object, None]:
        """ Run the query

        :return: a list of results, or a single result (or None) for single cursors.
            Results are Entity instances, or dicts when lean()
        :raises RuntimeQueryError
        """
        if self._none:
            return None if self._single else []

        executor = self._get_executor()
        rows, _ = await execute(executor, self.compile(executor.dialect),
                                self.operation, self._bags.entity_name)

        # Map
        docs = self._ENTITY_MAPPER_CLS(self._bags).map_rows(rows)

        # Populate
        if not self.handler_populate.is_input_empty():
            await self.handler_populate.populate(docs, executor, as_entities=not self._lean)

        # Results
        if self._lean:
            results = docs
        else:
            results = [self._entity.from_document(doc) for doc in docs]

        if self._single:
            return results[0] if results else None
        return results

    async def count(self) -> int:
        """ Count the documents that match the filter """
        if self._none:
            return 0

        executor = self._get_executor()
        rows, _ = await execute(executor, self.compile_count(executor.dialect),
                                'count_documents', self._bags.entity_name)
        return int(rows[0]['n'])

    def __await__(self):
        return self.exec().__await__()

    async def __aiter__(self):
        results = await self.exec()
        if self._single:
            results = [] if results is None else [results]
        for result in results:
            yield result

    # endregion

    def get_final_query_object(self) -> dict:
        """ Get the query as an object: useful for debugging and logging """
        return dict(
            filter=self.handler_filter.get_final_input_value(),
            sort=self.handler_sort.get_final_input_value(),
            select=self.handler_project.get_final_input_value(),
            **self.handler_limit.get_final_input_value(),
            populate=self.handler_populate.get_final_input_value(),
        )
