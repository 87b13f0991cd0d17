"""
Column types for document-shaped data stored in plain text columns.

Arrays and objects are stored as JSON text, so that any SQL database can hold them:

```python
Table('audits', metadata,
    Column('id', Integer, primary_key=True),
    Column('machines', ReferenceSet('machines')),  # [1, 2, 3]
    Column('answers', JsonArray(refs={'question': 'questions'})),  # [{question: 1, answer: 'Yes'}]
    Column('settings', JsonObject),  # {key: value}
)
```

`serialize()` and `deserialize()` are the only places where JSON text is converted.
Deserialization never fails: a NULL, empty, malformed, or a wrong-shape value becomes an empty container.
"""

import copy
import json
import logging
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Text
from sqlalchemy.types import TypeDecorator

logger = logging.getLogger(__name__)


def json_default(value):
    """ JSON encoder for values json.dumps() does not know """
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    # Entity instances
    to_dict = getattr(value, 'to_dict', None)
    if to_dict is not None:
        return to_dict()
    raise TypeError('Object of type {} is not JSON serializable'.format(type(value).__name__))


class JsonText(TypeDecorator):
    """ Base for JSON containers stored as text """

    impl = Text
    cache_ok = False

    #: The Python container type: dict or list
    container = None

    def empty(self):
        """ Get an empty container """
        return self.container()

    def serialize(self, value) -> str:
        """ Convert a Python container into JSON text """
        if value is None:
            value = self.empty()
        return json.dumps(value, default=json_default, separators=(',', ':'), ensure_ascii=False)

    def deserialize(self, value):
        """ Convert stored JSON text into a Python container """
        if value is None or value == '':
            return self.empty()

        # Some drivers decode JSON themselves
        if isinstance(value, self.container):
            return copy.deepcopy(value)

        try:
            decoded = json.loads(value)
        except (TypeError, ValueError) as e:
            logger.warning('Malformed JSON in a %s column, using an empty value: %s', type(self).__name__, e)
            return self.empty()

        if not isinstance(decoded, self.container):
            logger.warning('Unexpected JSON %s in a %s column, using an empty value',
                           type(decoded).__name__, type(self).__name__)
            return self.empty()
        return decoded

    def process_bind_param(self, value, dialect):
        return self.serialize(value)

    def process_result_value(self, value, dialect):
        return self.deserialize(value)


class JsonObject(JsonText):
    """ A dict stored as JSON text. Fields are reachable with the dot-notation in filters: `settings.key` """
    container = dict


class JsonArray(JsonText):
    """ A list of objects or scalars stored as JSON text

        :param refs: Embedded object keys that hold references: {'question': 'questions'}.
            Maps a key of every array element to the name of the referenced table,
            and makes `answers.question` a populate()-able path.
    """
    container = list

    def __init__(self, refs=None, *args, **kwargs):
        super(JsonArray, self).__init__(*args, **kwargs)
        self.refs = dict(refs or {})


class ReferenceSet(JsonArray):
    """ A list of referenced ids stored as JSON text

        :param target: Name of the referenced table
    """

    def __init__(self, target: str, *args, **kwargs):
        super(ReferenceSet, self).__init__(None, *args, **kwargs)
        self.target = target
