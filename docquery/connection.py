"""
Connection pool adapter.

A thin layer over the SQLAlchemy asyncio engine:

```python
from docquery import db

await db.connect(DATABASE_URL='mssql+aioodbc://...')  # at startup; fails fast
rows, meta = await db.query('SELECT * FROM lines WHERE id = ?', [1])

async with db.get_connection() as tx:  # one connection, one transaction
    await tx.query('UPDATE lines SET name = ? WHERE id = ?', ['A', 1])

await db.disconnect()  # at shutdown
```

SQL uses positional `?` placeholders; they are rewritten into named binds for SQLAlchemy.
The pool is bounded: when all connections are busy, requests wait for `POOL_TIMEOUT` seconds.
"""

import logging
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import exc as sa_exc
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool

from .config import DocQuerySettings
from .dialect import Dialect, get_dialect
from .exc import (ConstraintViolation, DatabaseConnectionError, PlaceholderMismatchError,
                  RuntimeQueryError, TransactionClosedError)

logger = logging.getLogger(__name__)

#: (rows, meta) as returned by query()
QueryResult = Tuple[List[dict], List[dict]]


class Database:
    """ A database: a connection pool, and the dialect to generate SQL for """

    def __init__(self):
        self._engine = None
        self._dialect = None
        #: Settings used by connect()
        self.settings = None

    def __repr__(self):
        state = self._engine.url.render_as_string(hide_password=True) if self._engine else 'not connected'
        return '<{}: {}>'.format(self.__class__.__name__, state)

    async def connect(self, settings: Optional[DocQuerySettings] = None, **overrides) -> 'Database':
        """ Create the connection pool, and make sure the database is reachable

        :param settings: Connection settings. Default: from the environment
        :param overrides: Override individual settings: connect(DATABASE_URL=...)
        :raises DatabaseConnectionError: the database is unreachable. This is fatal at startup
        """
        if self._engine is not None:
            raise DatabaseConnectionError('Already connected; disconnect() first')

        if settings is None:
            settings = DocQuerySettings(**overrides)
        elif overrides:
            settings = settings.model_copy(update=overrides)

        try:
            engine = create_async_engine(settings.DATABASE_URL,
                                         **settings.engine_kwargs(poolclass=AsyncAdaptedQueuePool))
            dialect = get_dialect(engine.dialect.name)
        except (sa_exc.ArgumentError, ImportError, ValueError) as e:
            raise DatabaseConnectionError('Cannot create a database engine: {}'.format(e)) from e

        # Health check
        if settings.HEALTH_CHECK:
            try:
                async with engine.connect() as conn:
                    await conn.execute(text('SELECT 1'))
            except (sa_exc.SQLAlchemyError, OSError) as e:
                await engine.dispose()
                raise DatabaseConnectionError('Database is unreachable: {}'.format(e)) from e

        self._engine = engine
        self._dialect = dialect
        self.settings = settings
        logger.info('Connected to %s (pool size: %d)',
                    engine.url.render_as_string(hide_password=True), settings.POOL_SIZE)
        return self

    async def disconnect(self):
        """ Close all connections. Safe to call when not connected """
        if self._engine is None:
            return
        engine, self._engine, self._dialect = self._engine, None, None
        await engine.dispose()
        logger.info('Disconnected from %s', engine.url.render_as_string(hide_password=True))

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> AsyncEngine:
        """ The SQLAlchemy engine """
        if self._engine is None:
            raise DatabaseConnectionError('The database is not connected; call connect() first')
        return self._engine

    @property
    def dialect(self) -> Dialect:
        """ The dialect to generate SQL for """
        if self._dialect is None:
            raise DatabaseConnectionError('The database is not connected; call connect() first')
        return self._dialect

    async def query(self, sql: str, params: Sequence = ()) -> QueryResult:
        """ Run a statement on a pooled connection, in its own transaction

        :param sql: SQL with `?` placeholders
        :param params: Values for the placeholders
        :return: (rows, meta). See execute_statement()
        :raises PlaceholderMismatchError
        """
        statement, binds = bind_placeholders(sql, params, self.dialect)
        async with self.engine.begin() as conn:
            return await execute_statement(conn, statement, binds)

    def get_connection(self) -> 'Transaction':
        """ Get a dedicated connection with a transaction

        Use it with `await`, or as an async context manager:

            tx = await db.get_connection()
            try:
                ...
                await tx.commit()
            finally:
                await tx.release()

            async with db.get_connection() as tx:
                ...
        """
        return Transaction(self)


class Transaction:
    """ A transaction on a dedicated pooled connection

        commit() and rollback() release the connection, and are idempotent.
        The handle can't be used after that.
    """

    def __init__(self, database: Database):
        self._database = database
        self._connection = None
        self._transaction = None
        self._closed = False

    def __repr__(self):
        return '<{}: {}>'.format(self.__class__.__name__, 'closed' if self._closed else 'open')

    async def begin(self) -> 'Transaction':
        """ Check out a connection and begin a transaction. Called automatically """
        if self._closed:
            raise TransactionClosedError('The transaction is already closed')
        if self._connection is None:
            self._connection = await self._database.engine.connect()
            self._transaction = await self._connection.begin()
        return self

    def __await__(self):
        return self.begin().__await__()

    @property
    def dialect(self) -> Dialect:
        return self._database.dialect

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def query(self, sql: str, params: Sequence = ()) -> QueryResult:
        """ Run a statement within this transaction

        :raises TransactionClosedError: the transaction was committed or rolled back
        """
        if self._closed:
            raise TransactionClosedError('The transaction is already closed')
        await self.begin()
        statement, binds = bind_placeholders(sql, params, self.dialect)
        return await execute_statement(self._connection, statement, binds)

    async def commit(self):
        """ Commit, and release the connection """
        if self._closed:
            return
        try:
            if self._transaction is not None and self._transaction.is_active:
                await self._transaction.commit()
        finally:
            await self.release()

    async def rollback(self):
        """ Roll back, and release the connection """
        if self._closed:
            return
        try:
            if self._transaction is not None and self._transaction.is_active:
                await self._transaction.rollback()
        finally:
            await self.release()

    async def release(self):
        """ Return the connection to the pool. An uncommitted transaction is rolled back """
        if self._closed:
            return
        self._closed = True
        if self._connection is not None:
            connection, self._connection, self._transaction = self._connection, None, None
            await connection.close()

    async def __aenter__(self) -> 'Transaction':
        return await self.begin()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            await self.commit()
        else:
            await self.rollback()
        return False


async def execute_statement(conn, statement: str, binds: dict) -> QueryResult:
    """ Execute a statement on a SQLAlchemy connection

    :return: (rows, meta)
        For statements that return rows: rows are dicts, meta is [{'name': column name}]
        For other statements: rows are empty, meta is [{'rowcount': ..., 'lastrowid': ...}]
    """
    logger.debug('%s %r', statement, binds)
    result = await conn.execute(text(statement), binds)

    if result.returns_rows:
        meta = [{'name': name} for name in result.keys()]
        rows = [dict(row) for row in result.mappings()]
        return rows, meta

    info = {'rowcount': result.rowcount, 'lastrowid': None}
    if statement.lstrip()[:6].upper() == 'INSERT':
        info['lastrowid'] = result.lastrowid
    return [], [info]


async def execute(executor, compiled, operation: str, entity: str) -> QueryResult:
    """ Run a compiled statement on a Database or a Transaction, and report errors in terms of the entity

    :param executor: Database or Transaction
    :param compiled: The statement
    :type compiled: docquery.handlers.Compiled
    :param operation: Name of the operation, for error messages: 'find', 'create', ...
    :param entity: Name of the entity, for error messages
    :raises ConstraintViolation: integrity error
    :raises RuntimeQueryError: any other driver error
    :raises DatabaseConnectionError: the connection was lost
    """
    try:
        return await executor.query(compiled.sql, compiled.params)
    except sa_exc.IntegrityError as e:
        raise ConstraintViolation(operation, entity, e) from e
    except sa_exc.DBAPIError as e:
        if e.connection_invalidated:
            raise DatabaseConnectionError('{}.{}(): connection lost: {}'.format(entity, operation, e.orig)) from e
        raise RuntimeQueryError(operation, entity, e) from e


# Quotes that start a literal or a quoted identifier, and the characters that end them
_QUOTES = {"'": "'", '"': '"', '`': '`', '[': ']'}


def bind_placeholders(sql: str, params: Sequence = (), dialect: Optional[Dialect] = None) -> Tuple[str, dict]:
    """ Rewrite `?` placeholders into SQLAlchemy named binds: `:p0`, `:p1`, ...

    Placeholders within quoted literals and quoted identifiers are left alone.
    Colons are escaped, so that SQLAlchemy does not take them for binds.

    :param sql: SQL with `?` placeholders
    :param params: Values
    :param dialect: The dialect to convert values for
    :return: (SQL with named binds, { name: value })
    :raises PlaceholderMismatchError: the number of placeholders differs from the number of values
    """
    params = list(params)
    out = []
    binds = {}
    quote = None  # the closing quote we're waiting for
    n = 0

    for c in sql:
        if quote is not None:
            if c == quote:
                quote = None
            out.append('\\:' if c == ':' else c)
        elif c in _QUOTES:
            quote = _QUOTES[c]
            out.append(c)
        elif c == '?':
            if n < len(params):
                name = 'p{}'.format(n)
                binds[name] = dialect.bind_value(params[n]) if dialect is not None else params[n]
                out.append(':' + name)
            n += 1
        elif c == ':':
            out.append('\\:')
        else:
            out.append(c)

    if n != len(params):
        raise PlaceholderMismatchError(n, len(params))
    return ''.join(out), binds


#: The database singleton. Connected at startup, disconnected at shutdown
db = Database()
