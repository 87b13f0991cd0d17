"""
SQL dialects.

The query compiler emits plain SQL with `?` placeholders.
Everything that differs between databases is behind a Dialect: identifier quoting, pagination,
JSON array enumeration, JSON path extraction, pattern matching, and getting generated keys.
"""

from collections import namedtuple
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from sqlalchemy.dialects.mssql.base import MSDialect
from sqlalchemy.dialects.mysql.base import MySQLDialect
from sqlalchemy.dialects.sqlite.base import SQLiteDialect

#: How to enumerate the elements of a JSON array inside an EXISTS() subquery
#: * source: the FROM clause
#: * element: the element itself, as a JSON value: pass it to json_extract()
#: * scalar: the element as a comparable scalar
JsonElements = namedtuple('JsonElements', ('source', 'element', 'scalar'))


class Dialect:
    """ SQL dialect: generates the database-specific pieces of SQL """

    #: Dialect name, as reported by SQLAlchemy
    name = None

    #: SQLAlchemy dialect class that knows how to quote identifiers
    _SA_DIALECT_CLS = None

    #: The character used with LIKE ... ESCAPE
    like_escape_char = '!'

    #: Characters that have special meaning in LIKE patterns
    _like_special_chars = ('%', '_')

    #: Collation that makes LIKE case-sensitive
    _case_sensitive_collation = None

    #: The longest `IN (...)` list to put into a single statement.
    #: Databases limit the number of bound parameters per statement.
    max_in_list_size = 1000

    def __init__(self):
        self._preparer = self._SA_DIALECT_CLS().identifier_preparer

    def __repr__(self):
        return '{}()'.format(self.__class__.__name__)

    def quote(self, name: str) -> str:
        """ Quote an identifier """
        return self._preparer.quote_identifier(name)

    def quote_column(self, table: str, column: str) -> str:
        """ Quote a table-qualified column """
        return '{}.{}'.format(self.quote(table), self.quote(column))

    def paginate(self, limit: Optional[int], skip: Optional[int]) -> Tuple[str, list]:
        """ Get the LIMIT/OFFSET clause and its params. Always used after an ORDER BY """
        if limit is None and skip is None:
            return '', []
        if skip is None:
            return 'LIMIT ?', [limit]
        if limit is None:
            return 'LIMIT {} OFFSET ?'.format(self._no_limit), [skip]
        return 'LIMIT ? OFFSET ?', [limit, skip]

    #: LIMIT value to use when there's only an OFFSET
    _no_limit = -1

    def json_array(self, column_sql: str) -> str:
        """ The column, if it holds a well-formed JSON array; NULL otherwise

            JSON functions fail the whole statement on a single malformed cell.
            Wrapped with this, such a cell reads as an empty array, just like the mapper reads it.
        """
        raise NotImplementedError

    def json_elements(self, column_sql: str) -> JsonElements:
        """ Enumerate elements of a JSON array column. Malformed and NULL cells have no elements """
        raise NotImplementedError

    def json_extract(self, expression: str) -> str:
        """ Extract a value from JSON using a path. The path is a bound parameter: `?` """
        raise NotImplementedError

    def json_array_length(self, column_sql: str) -> str:
        """ Length of a JSON array column; NULL and malformed cells count as empty arrays """
        raise NotImplementedError

    def element_candidates(self, values: List) -> List:
        """ Representations of the given values to look for among JSON array elements

            Ids may be stored as numbers or as strings: `[7]` and `["7"]`.
            To find both, digit-like values are matched in both forms.
        """
        candidates = []
        for value in values:
            for v in _both_representations(value):
                if not any(v == c and type(v) is type(c) for c in candidates):
                    candidates.append(v)
        return candidates

    def like_escape(self, text: str) -> str:
        """ Escape a literal for use within a LIKE pattern """
        text = text.replace(self.like_escape_char, self.like_escape_char * 2)
        for c in self._like_special_chars:
            text = text.replace(c, self.like_escape_char + c)
        return text

    def like(self, expression: str, case_insensitive: bool) -> str:
        """ Pattern comparison with a bound pattern

            The pattern is written with like_syntax().
            Default collations often ignore case: a case-sensitive comparison has to ask for a collation that does not.
        """
        if case_insensitive:
            return "LOWER({}) LIKE LOWER(?) ESCAPE '{}'".format(expression, self.like_escape_char)
        return "{} COLLATE {} LIKE ? ESCAPE '{}'".format(expression, self._case_sensitive_collation,
                                                          self.like_escape_char)

    def like_syntax(self, case_insensitive: bool) -> Tuple[Callable[[str], str], str, str]:
        """ How to write a pattern for like()

        :return: (escape a literal, the any-string wildcard, the any-character wildcard)
        """
        return self.like_escape, '%', '_'

    def bind_value(self, value):
        """ Convert a parameter value before handing it to the driver """
        return value

    def insert(self, table: str, columns: List[str], pk: str) -> str:
        """ INSERT statement that reports the generated primary key """
        if not columns:
            return 'INSERT INTO {} DEFAULT VALUES RETURNING {}'.format(table, pk)
        return 'INSERT INTO {} ({}) VALUES ({}) RETURNING {}'.format(
            table, ', '.join(columns), ', '.join('?' * len(columns)), pk)


class SqliteDialect(Dialect):
    """ SQLite with the JSON1 functions """
    name = 'sqlite'
    _SA_DIALECT_CLS = SQLiteDialect

    def bind_value(self, value):
        # Stored as text: keep the format the mapper reads back
        if isinstance(value, datetime):
            return value.isoformat(sep=' ')
        if isinstance(value, date):
            return value.isoformat()
        if isinstance(value, Decimal):
            return str(value)
        return value

    # Older SQLite builds allow 999 bound parameters
    max_in_list_size = 900

    def like(self, expression, case_insensitive):
        if case_insensitive:
            return super(SqliteDialect, self).like(expression, case_insensitive)
        # LIKE ignores ASCII case; GLOB does not
        return '{} GLOB ?'.format(expression)

    def like_syntax(self, case_insensitive):
        if case_insensitive:
            return super(SqliteDialect, self).like_syntax(case_insensitive)
        return _glob_escape, '*', '?'

    def json_array(self, column_sql):
        # CASE evaluates in order: json_type() never sees malformed JSON
        return "CASE WHEN NOT json_valid({0}) THEN NULL WHEN json_type({0}) = 'array' THEN {0} END".format(column_sql)

    def json_elements(self, column_sql):
        return JsonElements('json_each({})'.format(self.json_array(column_sql)), 'json_each.value', 'json_each.value')

    def json_extract(self, expression):
        return 'json_extract({}, ?)'.format(expression)

    def json_array_length(self, column_sql):
        return 'COALESCE(json_array_length({}), 0)'.format(self.json_array(column_sql))


class MssqlDialect(Dialect):
    """ Microsoft SQL Server 2016+ """
    name = 'mssql'
    _SA_DIALECT_CLS = MSDialect
    _like_special_chars = ('%', '_', '[')
    _case_sensitive_collation = 'Latin1_General_CS_AS'

    # 2100 bound parameters per statement
    max_in_list_size = 2000

    def paginate(self, limit, skip):
        if limit is None and skip is None:
            return '', []
        sql = 'OFFSET ? ROWS'
        params = [skip or 0]
        if limit is not None:
            sql += ' FETCH NEXT ? ROWS ONLY'
            params.append(limit)
        return sql, params

    def json_array(self, column_sql):
        return "CASE WHEN ISJSON({0}) = 1 AND LTRIM({0}) LIKE '[[]%' THEN {0} END".format(column_sql)

    def json_elements(self, column_sql):
        return JsonElements('OPENJSON({}) AS je'.format(self.json_array(column_sql)), 'je.[value]', 'je.[value]')

    def json_extract(self, expression):
        return 'JSON_VALUE({}, ?)'.format(expression)

    def json_array_length(self, column_sql):
        return '(SELECT COUNT(*) FROM OPENJSON({}))'.format(self.json_array(column_sql))

    def element_candidates(self, values):
        # OPENJSON yields nvarchar values: compare as strings
        return list(dict.fromkeys(_as_json_text(v) for v in values))

    def insert(self, table, columns, pk):
        if not columns:
            return 'INSERT INTO {} OUTPUT INSERTED.{} DEFAULT VALUES'.format(table, pk)
        return 'INSERT INTO {} ({}) OUTPUT INSERTED.{} VALUES ({})'.format(
            table, ', '.join(columns), pk, ', '.join('?' * len(columns)))


class MysqlDialect(Dialect):
    """ MySQL 8+ and MariaDB """
    name = 'mysql'
    _SA_DIALECT_CLS = MySQLDialect
    _no_limit = 18446744073709551615

    # Text columns are expected in utf8mb4, the MySQL 8 default
    _case_sensitive_collation = 'utf8mb4_bin'

    def json_array(self, column_sql):
        return "CASE WHEN NOT JSON_VALID({0}) THEN NULL WHEN JSON_TYPE({0}) = 'ARRAY' THEN {0} END".format(column_sql)

    def json_elements(self, column_sql):
        return JsonElements(
            "JSON_TABLE({}, '$[*]' COLUMNS (doc JSON PATH '$')) AS je".format(self.json_array(column_sql)),
            'je.doc',
            'JSON_UNQUOTE(je.doc)',
        )

    def json_extract(self, expression):
        return 'JSON_UNQUOTE(JSON_EXTRACT({}, ?))'.format(expression)

    def json_array_length(self, column_sql):
        return 'COALESCE(JSON_LENGTH({}), 0)'.format(self.json_array(column_sql))

    def element_candidates(self, values):
        # JSON_UNQUOTE() yields text
        return list(dict.fromkeys(_as_json_text(v) for v in values))

    def insert(self, table, columns, pk):
        # No RETURNING: the key is reported as `lastrowid`
        if not columns:
            return 'INSERT INTO {} () VALUES ()'.format(table)
        return 'INSERT INTO {} ({}) VALUES ({})'.format(
            table, ', '.join(columns), ', '.join('?' * len(columns)))


_DIALECTS = {
    'sqlite': SqliteDialect,
    'mssql': MssqlDialect,
    'mysql': MysqlDialect,
    'mariadb': MysqlDialect,
}


def get_dialect(name: str) -> Dialect:
    """ Get a Dialect by SQLAlchemy dialect name

    :raises ValueError: unsupported database
    """
    try:
        return _DIALECTS[name]()
    except KeyError:
        raise ValueError('Unsupported database dialect: {!r}'.format(name))


def _is_digit_like(value: str) -> bool:
    return value.lstrip('-').isdecimal()


def _both_representations(value):
    """ 7 -> (7, '7'); '7' -> ('7', 7) """
    if isinstance(value, bool):
        return (value,)
    if isinstance(value, int):
        return (value, str(value))
    if isinstance(value, str) and _is_digit_like(value.strip()):
        return (value, int(value))
    return (value,)


def _glob_escape(text: str) -> str:
    """ Escape a literal for use within a GLOB pattern: a special character goes into brackets """
    return ''.join('[{}]'.format(c) if c in '*?[' else c for c in text)


def _as_json_text(value):
    if isinstance(value, bool):
        return 'true' if value else 'false'
    return str(value)
