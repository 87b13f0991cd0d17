"""
DocQuery is a document-style query layer that lets you query [SqlAlchemy](http://www.sqlalchemy.org/) tables
like a MongoDB database.

The main use case is an application written for a document database that has to live on top of SQL:
its models keep their familiar API, its filters keep their familiar operators,
and arrays of references keep being arrays:

```python
from docquery import db

await db.connect()  # DOCQUERY_DATABASE_URL

audits = await (Audit.find({'machines': 7, 'answers': {'$elemMatch': {'answer': 'No'}}})
    .sort('-createdAt')
    .limit(10)
    .populate('line')
    .populate('answers.question', 'questionText'))

await Audit.find_by_id_and_update(audits[0]._id, {'$set': {'status': 'closed'}})
```

Every filter is compiled into parameterized SQL. Every populated path costs exactly one query.
"""

# Exceptions that are used here and there
from .exc import *

# Settings, from the environment
from .config import DocQuerySettings

# Column types for arrays, objects, and sets of references stored as JSON text
from .types import JsonObject, JsonArray, ReferenceSet

# DocQuery needs a lot of information about the fields of your entities.
# All this is handled by the following class:
from .bag import EntityPropertyBags

# The heart of DocQuery are the handlers:
# that's where your filter objects are converted to actual SQL!
from . import handlers
from .handlers import compile_filter, Compiled, RelationResolver

# Dialects generate the database-specific SQL
from .dialect import Dialect, get_dialect

# The pool, and the database singleton
from .connection import Database, Transaction, db

# Rows into documents
from .mapper import EntityMapper

# Cursor is the lazy query: it's what find() returns
from .query import Cursor

# CrudHelper turns writes into SQL statements
from .crud import CrudHelper

# Entity is the base class for your models
from .entity import Entity
