"""
If you know how to query documents in MongoDB, you can query your database with the same language.
DocQuery uses the familiar [MongoDB Query Operators](https://docs.mongodb.com/manual/reference/operator/query/)
language, and compiles it into SQL.

A query is built with a Cursor, every section of which is handled by a separate handler:

* `select`: [Select Operation](#select-operation) selects the fields to be loaded
* `sort`: [Sort Operation](#sort-operation) determines the sorting of the results
* `filter`: [Filter Operation](#filter-operation) filters the results, using your criteria
* `limit`, `skip`: [Slice Operation](#slice-operation) implements pagination
* `populate`: [Populate Operation](#populate-operation) loads referenced documents

Every handler has two phases: `input()` parses and validates its section,
and `compile_statement(dialect)` generates SQL with `?` placeholders.
All validation errors are raised during input(), before anything is sent to the database.
"""

from .base import QueryHandlerBase, Compiled
from .project import QueryProject
from .sort import QuerySort
from .filter import QueryFilter, compile_filter, \
    FilterExpressionBase, FilterBooleanExpression, FilterColumnExpression, FilterElementExpression, LikePattern
from .limit import QueryLimit
from .populate import QueryPopulate, RelationResolver, EntityResolver
