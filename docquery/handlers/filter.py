"""
### Filter Operation
Filtering corresponds to the `WHERE` part of an SQL query.

Example of filtering:

```python
await Audit.find({
    # all conditions are AND-ed together
    'line': 3,  # line_id = 3
    'createdAt': {'$gte': start, '$lt': end},
    'machines': 7,  # reference set contains 7
})
```

#### Field Operators
The following [MongoDB query operators](https://docs.mongodb.com/manual/reference/operator/query/)
operators are supported:

* `{ a: 1 }` - equality check: `field = value`. This is a shortcut for the `$eq` operator.
* `{ a: None }` - `field IS NULL`
* `{ a: { $eq: 1 } }` - equality check: `field = value` (alias).
* `{ a: { $ne: 1 } }` - inequality check: `field != value`. Rows with NULL are included.
* `{ a: { $lt: 1 } }`, `$lte`, `$gt`, `$gte` - comparisons
* `{ a: { $in: [...] } }` - any of. An empty list matches nothing.
    Every value is a bound parameter, and databases limit their number: MSSQL takes 2100 per statement.
* `{ a: { $nin: [...] } }` - none of. An empty list matches everything.
* `{ a: { $exists: true } }` - value is not `null`.
* `{ a: { $regex: '^abc', $options: 'i' } }` - pattern match, translated into `LIKE`.
    Supported: `^` and `$` anchors, `.`, `.*`, `.+`, and escaped characters.
    Anything else is an error. A compiled `re.compile()` pattern works as well.
    Without the `i` option, the match is case-sensitive: SQLite uses `GLOB`, other databases a binary collation.
* `{ a: { $search: 'abc' } }` - case-insensitive substring search
* `{ a: { $not: { $gt: 1 } } }` - negation of the operators

JSON object columns support dot-notation: `{ 'settings.lang': 'en' }`.

Supports the following operators on JSON array and reference set columns:

* `{ arr: 1 }`  - containment check: the array contains the value
* `{ arr: [...] }`  - equality check: the arrays are completely equal
* `{ arr: { $ne: 1 } }` - non-containment check
* `{ arr: { $in: [...] } }` - intersection check: the arrays have common elements
* `{ arr: { $nin: [...] } }` - no intersection check
* `{ arr: { $all: [...] } }` - contains all values from the given array
* `{ arr: { $size: 0 } }` - has a length of N
* `{ arr: { $elemMatch: { answer: 'No' } } }` - an element matches the criteria
* `{ arr: { $not: { $elemMatch: { answer: 'No' } } } }` - no element matches the criteria
* `{ 'arr.answer': 'No' }` - a shortcut for `$elemMatch`

Ids are matched both as numbers and as strings: `{ machines: 7 }` finds `[7]` and `["7"]`.

#### Boolean Operators

* `{ $or: [ {..criteria..}, .. ] }`  - any is true. An empty list matches nothing.
* `{ $and: [ {..criteria..}, .. ] }` - all are true
* `{ $nor: [ {..criteria..}, .. ] }` - none is true
* `{ $not: { ..criteria.. } }` - negation

All values are sent as bound parameters, never as SQL literals.
"""

import re

from .base import QueryHandlerBase, Compiled
from ..bag import EntityPropertyBags
from ..dialect import get_dialect
from ..exc import InvalidQueryError, InvalidColumnError
from ..types import JsonArray


# region Filter Expression Classes

def _is_array(value):
    return isinstance(value, (list, tuple, set, frozenset))


def _is_scalar(value):
    return not isinstance(value, (dict, list, tuple, set, frozenset))


class FilterExpressionBase:
    """ An expression from the QueryFilter object """

    __slots__ = ('operator_str', 'value')

    def __init__(self, operator_str, value):
        self.operator_str = operator_str
        self.value = value

    def compile_expression(self, dialect, elements=None):
        """ Compiles the expression into SQL

        :type dialect: docquery.dialect.Dialect
        :param elements: When compiling within $elemMatch: how to access the array element
        :type elements: docquery.dialect.JsonElements
        :rtype: Compiled
        """
        raise NotImplementedError()

    @staticmethod
    def sql_anded_together(conditions):
        """ Take a list of conditions and AND then together

            No conditions: a condition that's always true
        """
        if not conditions:
            return Compiled('1=1')
        return Compiled.join(' AND ', conditions)


class FilterBooleanExpression(FilterExpressionBase):
    """ A boolean expression.

        Consists of: an operator ($and, etc), and a value (list of FilterExpressionBase)
    """

    # What a boolean operator gives when it has nothing to work with
    _empty_results = {
        '$or': '1=0',
        '$and': '1=1',
        '$nor': '1=1',
    }

    def __repr__(self):
        return '({}: {})'.format(self.operator_str, self.value)

    def compile_expression(self, dialect, elements=None):
        # self.operator_str: $and, $or, $nor, $not
        # self.value: list[list[FilterExpressionBase]], or just list[FilterExpressionBase] for $not

        if self.operator_str == '$not':
            # This operator has a list of conditions
            criterion = self.sql_anded_together([
                c.compile_expression(dialect, elements)
                for c in self.value
            ])
            return 'NOT ' + criterion.parenthesized()

        # Those operators have a list of criteria; every one is a list of conditions
        criteria = [self.sql_anded_together([c.compile_expression(dialect, elements) for c in cs])
                    for cs in self.value]
        if not criteria:
            return Compiled(self._empty_results[self.operator_str])

        # Build an expression for the boolean operator
        # for $nor, it will be negated later
        if self.operator_str in ('$or', '$nor'):
            cc = Compiled.join(' OR ', [c.parenthesized() for c in criteria]).parenthesized()
        elif self.operator_str == '$and':
            cc = Compiled.join(' AND ', [c.parenthesized() for c in criteria]).parenthesized()
        else:
            raise NotImplementedError('Unknown operator: {}'.format(self.operator_str))

        # for $nor, we promised to negate the result
        if self.operator_str == '$nor':
            return 'NOT ' + cc
        return cc


class FilterColumnExpression(FilterExpressionBase):
    """ An expression involving a column

        Consists of: an operator ($eq, etc), a column, and a value to compare the column to
    """

    __slots__ = ('bag', 'table_name', 'column_name', 'column', 'json_path', 'operator_lambda')

    def __init__(self,
                 bag, table_name, column_name, column,
                 operator_str, operator_lambda,
                 value):
        """ Init a column expression

        :param bag: the bag that contains information about the column
        :type bag: docquery.bag.DotColumnsBag
        :param table_name: Name of the table to qualify the column with
        :param column_name: Name of the field referenced (possibly, with a dot!)
        :param column: The actual column
        :param operator_str: The operator to use, e.g. $eq
        :param operator_lambda: A callable that implements an SQL expression handling the operator
        :param value: The value the operator is applied to
        """
        super(FilterColumnExpression, self).__init__(operator_str, value)
        self.bag = bag
        self.table_name = table_name
        self.column_name = column_name
        self.column = column
        self.json_path = bag.get_json_path(column_name)
        self.operator_lambda = operator_lambda

    def __repr__(self):
        return '{} {} {!r}'.format(self.column_name, self.operator_str, self.value)

    def is_column_array(self):
        return self.bag.is_column_array(self.column_name)

    def is_column_json(self):
        return self.bag.is_column_json(self.column_name)

    def compile_column(self, dialect):
        """ Compile the column reference: a qualified column, or a JSON path into it """
        col = dialect.quote_column(self.table_name, self.column.name)
        if self.json_path:
            return Compiled(dialect.json_extract(col), [json_path_string(self.json_path)])
        return Compiled(col)

    def compile_expression(self, dialect, elements=None):
        return self.operator_lambda(self.compile_column(dialect), self.value, dialect)


class FilterElementExpression(FilterExpressionBase):
    """ An expression on an element of a JSON array: used within $elemMatch

        Consists of: a path within the element (or None for the element itself), an operator, and a value
    """

    __slots__ = ('path', 'operator_lambda')

    def __init__(self, path, operator_str, operator_lambda, value):
        super(FilterElementExpression, self).__init__(operator_str, value)
        self.path = path
        self.operator_lambda = operator_lambda

    def __repr__(self):
        return '{} {} {!r}'.format('.'.join(self.path or ['$']), self.operator_str, self.value)

    def compile_expression(self, dialect, elements=None):
        assert elements is not None, 'Element expressions are only compiled within $elemMatch'
        if self.path:
            element = Compiled(dialect.json_extract(elements.element), [json_path_string(self.path)])
        else:
            element = Compiled(elements.scalar)
        return self.operator_lambda(element, self.value, dialect)


class LikePattern:
    """ A regular expression, translated to a LIKE pattern

        Only the subset of regular expressions that LIKE can express is supported.
    """

    __slots__ = ('tokens', 'anchored_start', 'anchored_end', 'case_insensitive')

    LITERAL, ANY, ONE = 'lit', '%', '_'

    def __init__(self, tokens, anchored_start=False, anchored_end=False, case_insensitive=False):
        self.tokens = tokens
        self.anchored_start = anchored_start
        self.anchored_end = anchored_end
        self.case_insensitive = case_insensitive

    @classmethod
    def substring(cls, text: str) -> 'LikePattern':
        """ A case-insensitive substring search """
        return cls([(cls.LITERAL, text)], case_insensitive=True)

    @classmethod
    def from_regex(cls, pattern: str, options: str = '') -> 'LikePattern':
        """ Translate a regular expression

        :raises InvalidQueryError: unsupported regular expression
        """
        unsupported_options = set(options) - set('ims')
        if unsupported_options:
            raise InvalidQueryError('Unsupported $options: {!r}'.format(''.join(sorted(unsupported_options))))

        tokens = []
        literal = []
        i, n = 0, len(pattern)

        anchored_start = pattern.startswith('^')
        if anchored_start:
            i = 1
        anchored_end = False

        while i < n:
            c = pattern[i]
            nxt = pattern[i + 1] if i + 1 < n else ''
            if c == '\\':
                # Escaped character: a literal. Character classes, like \d, are not supported
                if not nxt or nxt.isalnum():
                    raise InvalidQueryError('Unsupported $regex escape: {!r}'.format(pattern[i:i + 2]))
                literal.append(nxt)
                i += 2
            elif c == '$' and i == n - 1:
                anchored_end = True
                i += 1
            elif c == '.':
                if literal:
                    tokens.append((cls.LITERAL, ''.join(literal)))
                    literal = []
                if nxt == '*':
                    tokens.append((cls.ANY, None))
                    i += 2
                elif nxt == '+':
                    tokens.extend([(cls.ONE, None), (cls.ANY, None)])
                    i += 2
                else:
                    tokens.append((cls.ONE, None))
                    i += 1
            elif c in _REGEX_SPECIAL_CHARS:
                raise InvalidQueryError('Unsupported $regex construct {!r} in {!r}'.format(c, pattern))
            else:
                literal.append(c)
                i += 1
        if literal:
            tokens.append((cls.LITERAL, ''.join(literal)))

        return cls(tokens, anchored_start, anchored_end, 'i' in options)

    def render(self, dialect) -> str:
        """ Render as a pattern for the dialect's like() """
        escape, any_string, any_char = dialect.like_syntax(self.case_insensitive)
        wildcards = {self.ANY: any_string, self.ONE: any_char}
        pattern = ''.join(
            escape(text) if kind == self.LITERAL else wildcards[kind]
            for kind, text in self.tokens
        )
        if not self.anchored_start:
            pattern = any_string + pattern
        if not self.anchored_end:
            pattern += any_string
        return pattern

    def __repr__(self):
        return '{}({!r}, i={})'.format(self.__class__.__name__, self.tokens, self.case_insensitive)


_REGEX_SPECIAL_CHARS = frozenset('^$*+?()[]{}|')

# Arrays are compared as JSON text, serialized exactly the way the columns store them
_JSON_ARRAY = JsonArray()

# endregion


# region Operators

# Every operator is: lambda col, val, dialect -> Compiled
# `col` is the compiled column reference, `val` is the value from the filter

def _sql_in(col, values, dialect):
    """ field IN(values) """
    values = list(values)
    has_null = None in values
    values = [v for v in values if v is not None]
    if not values:
        return col + ' IS NULL' if has_null else Compiled('1=0')
    cc = col + ' IN (' + Compiled.param_list(values) + ')'
    if has_null:
        cc = '(' + cc + ' OR ' + col + ' IS NULL)'
    return cc


def _sql_not_in(col, values, dialect):
    """ field NOT IN(values): NULLs are not in the list, unless listed """
    values = list(values)
    has_null = None in values
    values = [v for v in values if v is not None]
    if not values:
        return col + ' IS NOT NULL' if has_null else Compiled('1=1')
    if has_null:
        return col + ' NOT IN (' + Compiled.param_list(values) + ')'
    return '(' + col + ' IS NULL OR ' + col + ' NOT IN (' + Compiled.param_list(values) + '))'


def _sql_ne(col, val, dialect):
    # We can't actually use '<>' alone: with nullable columns, it will give unexpected results.
    # {'name': {'$ne': 'brad'}} won't select a row with name=NULL, because comparing with NULL gives NULL.
    if val is None:
        return col + ' IS NOT NULL'
    return '(' + col + ' IS NULL OR ' + col + ' <> ' + Compiled.param(val) + ')'


def _sql_like(col, pattern, dialect):
    """ field LIKE pattern """
    return Compiled(dialect.like(col.sql, pattern.case_insensitive),
                    col.params + [pattern.render(dialect)])


def _sql_compare(operator):
    return lambda col, val, dialect: col + ' ' + operator + ' ' + Compiled.param(val)


def _sql_array_membership(col, values, dialect):
    """ The JSON array contains any of the values """
    values = list(values)
    if not values:
        return Compiled('1=0')
    # Array columns are plain names: repeating col.sql inside the dialect's JSON guard needs no extra params
    elements = dialect.json_elements(col.sql)
    return (Compiled('EXISTS (SELECT 1 FROM ' + elements.source + ' WHERE ' + elements.scalar + ' IN (', col.params)
            + Compiled.param_list(dialect.element_candidates(values))
            + '))')


def _sql_array_equals(col, value, dialect):
    """ The JSON array is exactly the given array """
    return col + ' = ' + Compiled.param(_JSON_ARRAY.serialize(list(value)))


def _sql_array_eq(col, val, dialect):
    # array value: Array equality
    # scalar value: the array contains the value
    if val is None:
        return col + ' IS NULL'
    if _is_array(val):
        return _sql_array_equals(col, val, dialect)
    return _sql_array_membership(col, [val], dialect)


def _sql_array_ne(col, val, dialect):
    # array value: Array inequality
    # scalar value: the array does not contain the value
    if val is None:
        return col + ' IS NOT NULL'
    if _is_array(val):
        return '(' + col + ' IS NULL OR ' + col + ' <> ' + Compiled.param(_JSON_ARRAY.serialize(list(val))) + ')'
    return 'NOT ' + _sql_array_membership(col, [val], dialect)


def _sql_array_nin(col, values, dialect):
    values = list(values)
    if not values:
        return Compiled('1=1')
    return 'NOT ' + _sql_array_membership(col, values, dialect)


def _sql_array_all(col, values, dialect):
    # Contains all values. Like in MongoDB, an empty list matches nothing
    values = list(values)
    if not values:
        return Compiled('1=0')
    return Compiled.join(' AND ', [_sql_array_membership(col, [v], dialect) for v in values]).parenthesized()


def _sql_array_size(col, val, dialect):
    return Compiled(dialect.json_array_length(col.sql), col.params) + ' = ' + Compiled.param(val)


def _sql_elem_match(col, expressions, dialect):
    """ EXISTS(an element that matches all conditions) """
    elements = dialect.json_elements(col.sql)
    condition = FilterExpressionBase.sql_anded_together([
        e.compile_expression(dialect, elements)
        for e in expressions
    ])
    return Compiled('EXISTS (SELECT 1 FROM ' + elements.source + ' WHERE ', col.params) + condition + ')'


def _sql_exists(col, val, dialect):
    return col + (' IS NOT NULL' if val else ' IS NULL')

# endregion


class QueryFilter(QueryHandlerBase):
    """ Filter expression.

        Parses the criteria object into a tree of expressions (dialect-independent),
        and compiles it into SQL for a particular dialect.

        Supported: Columns, JSON object paths, JSON arrays, reference sets
    """

    query_object_section_name = 'filter'

    def __init__(self, entity, bags, scalar_operators=None, array_operators=None):
        """ Init a filter expression

        :param entity: Entity class to work with
        :param bags: Entity bags
        :param scalar_operators: A dict of additional operators for scalar columns to recognize.
            A mapping: {'$operator': lambda}. See class body for examples.
        :type scalar_operators: dict[str, lambda]
        :param array_operators: A dict of additional operators for array columns to recognize
        :type array_operators: dict[str, lambda]
        """
        # Parent
        super(QueryFilter, self).__init__(entity, bags)

        # On input
        self.expressions = None
        self._criteria = []

        # Extra configuration
        self._extra_scalar_ops = scalar_operators or {}
        self._extra_array_ops = array_operators or {}

    def _get_supported_bags(self):
        return self.bags.columns

    # Operators for scalar (e.g. non-array) columns
    _operators_scalar = {
        # operator => lambda column, value, dialect
        '$eq':  lambda col, val, dialect: col + ' IS NULL' if val is None else col + ' = ' + Compiled.param(val),
        '$ne':  _sql_ne,
        '$lt':  _sql_compare('<'),
        '$lte': _sql_compare('<='),
        '$gt':  _sql_compare('>'),
        '$gte': _sql_compare('>='),
        '$in':  _sql_in,
        '$nin': _sql_not_in,
        '$exists': _sql_exists,
        '$regex': _sql_like,
        '$search': _sql_like,
    }

    # Operators for JSON array columns
    _operators_array = {
        '$eq':  _sql_array_eq,
        '$ne':  _sql_array_ne,
        # the arrays have common elements
        '$in':  _sql_array_membership,
        # NOT( the arrays have common elements )
        '$nin': _sql_array_nin,
        # is not NULL
        '$exists': _sql_exists,
        # contains all values
        '$all': _sql_array_all,
        # length of the array
        '$size': _sql_array_size,
        # an element matches the criteria
        '$elemMatch': _sql_elem_match,
    }

    # List of operators that always require array argument
    _operators_require_array_value = frozenset(('$all', '$in', '$nin'))

    # List of boolean operators, handled by a separate method
    _boolean_operators = frozenset(('$and', '$or', '$nor', '$not'))

    # These classes implement compilation
    # You can override them, if necessary
    _COLUMN_EXPRESSION_CLS = FilterColumnExpression
    _ELEMENT_EXPRESSION_CLS = FilterElementExpression
    _BOOLEAN_EXPRESSION_CLS = FilterBooleanExpression

    def input(self, criteria):
        # Process input
        super(QueryFilter, self).input(criteria)
        self.expressions = self._parse_criteria(criteria)
        if criteria:
            self._criteria.append(criteria)
        return self

    def merge(self, criteria):
        """ AND more criteria to the filter """
        self.expressions.extend(self._parse_criteria(criteria))
        if criteria:
            self._criteria.append(criteria)
        return self

    def is_input_empty(self):
        return not self.expressions

    def _parse_criteria(self, criteria):
        """ Parse criteria and return a list of parsed objects.

        Parsing and compilation are two separate phases:
        parsing validates everything and raises errors before any SQL is generated.

        :type criteria: dict | None
        :rtype: list[FilterExpressionBase]
        """
        # None
        if not criteria:
            criteria = {}

        # So, this is what we expect here
        if not isinstance(criteria, dict):
            raise InvalidQueryError('Filter criteria must be one of: null, object')

        # Transform the boolean expression into a list of conditions
        # In the end, those will be ANDed together
        expressions = []

        # Assuming a dict of mixed { column: value }s and  { column: { $op: value } }s
        for key, criteria in criteria.items():
            # Boolean expressions? ($op: value}
            if key in self._boolean_operators:
                expressions.append(self._parse_boolean_operator(key, criteria, self._parse_criteria))
                continue  # nothing else to do here

            # Unknown top-level operators
            if key.startswith('$'):
                raise InvalidQueryError('Unsupported operator "{}" found in filter'.format(key))

            # Alright, now we're handling a column
            column_name = key
            if column_name not in self.supported_bags:
                raise InvalidColumnError(self.bags.entity_name, column_name, self.query_object_section_name)

            # Dot-notation into an array of objects: {'answers.answer': 'No'}
            # This is a shortcut for {answers: {$elemMatch: {answer: 'No'}}}
            bag = self.supported_bags
            if bag.get_json_path(column_name):
                _validate_json_path(bag.get_json_path(column_name))
            if bag.get_json_path(column_name) and bag.is_column_array(column_name):
                plain_name, _, path = column_name.partition('.')
                column_name, criteria = plain_name, {'$elemMatch': {path: criteria}}

            expressions.extend(self._parse_column_criteria(column_name, criteria))

        # Done
        return expressions

    def _parse_column_criteria(self, column_name, criteria):
        """ Parse the criteria for a single column: { $gt: 18, $lt: 25 }

        :rtype: list[FilterExpressionBase]
        """
        bag = self.supported_bags
        column = bag[column_name]
        is_array = bag.is_column_array(column_name)

        # Fake equality
        # The shorthand syntax ({name: "Kevin"}) is transformed into {name: {$eq: Kevin}}
        # so that we don't have to implement special cases.
        criteria = _normalize_regex(criteria)
        if not isinstance(criteria, dict) or not criteria:
            criteria = {'$eq': criteria}

        # $regex with $options
        criteria = dict(criteria)
        if '$options' in criteria:
            if '$regex' not in criteria:
                raise InvalidQueryError('$options requires $regex for column `{}`'.format(column_name))
            options = criteria.pop('$options')
            if not isinstance(options, str):
                raise InvalidQueryError('$options must be a string for column `{}`'.format(column_name))
            criteria['$regex'] = (criteria['$regex'], options)

        expressions = []
        for operator, value in criteria.items():
            # Negation
            if operator == '$not':
                value = _normalize_regex(value)
                if not isinstance(value, dict) or not value:
                    raise InvalidQueryError('$not argument must be an object for column `{}`'.format(column_name))
                expressions.append(self._BOOLEAN_EXPRESSION_CLS(
                    '$not', self._parse_column_criteria(column_name, value)))
                continue

            # Operator lookup
            try:
                operator_lambda = self._lookup_operator(is_array, operator)
            except KeyError:
                raise InvalidQueryError('Unsupported operator "{}" found in filter for column `{}`'
                                        .format(operator, column_name))

            # Validate and prepare the operator argument
            value = self._prepare_value(column_name, is_array, operator, value)

            expressions.append(self._COLUMN_EXPRESSION_CLS(
                bag, self.bags.table_name, column_name, column,
                operator, operator_lambda,
                value
            ))
        return expressions

    def _prepare_value(self, column_name, is_array, operator, value):
        """ Validate an operator argument, and convert it to what the operator lambda expects """
        # Validate operator argument
        if operator in self._operators_require_array_value:
            if not _is_array(value):
                raise InvalidQueryError('Filter: {} argument must be an array for column `{}`'
                                        .format(operator, column_name))
            if not all(_is_scalar(v) for v in value):
                raise InvalidQueryError('Filter: {} argument must be an array of scalars for column `{}`'
                                        .format(operator, column_name))
            return list(value)

        if operator == '$regex':
            pattern, options = value if isinstance(value, tuple) else (value, '')
            pattern, options = _regex_pattern_and_options(pattern, options)
            if not isinstance(pattern, str):
                raise InvalidQueryError('$regex must be a string for column `{}`'.format(column_name))
            return LikePattern.from_regex(pattern, options)

        if operator == '$search':
            if not isinstance(value, str):
                raise InvalidQueryError('$search must be a string for column `{}`'.format(column_name))
            return LikePattern.substring(value)

        if operator == '$size':
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise InvalidQueryError('$size must be a non-negative integer for column `{}`'.format(column_name))
            return value

        if operator == '$elemMatch':
            if not isinstance(value, dict) or not value:
                raise InvalidQueryError('$elemMatch argument must be an object for column `{}`'.format(column_name))
            return self._parse_element_criteria(value)

        if operator == '$exists':
            return bool(value)

        # Array equality is allowed for array columns; scalars only for everything else
        if is_array and operator in ('$eq', '$ne') and _is_array(value):
            if not all(_is_scalar(v) or isinstance(v, dict) for v in value):
                raise InvalidQueryError('Filter: nested arrays are not supported for column `{}`'.format(column_name))
            return list(value)
        if not _is_scalar(value):
            raise InvalidQueryError('Filter: {} argument must be a scalar for column `{}`'
                                    .format(operator, column_name))
        return value

    def _parse_element_criteria(self, criteria):
        """ Parse $elemMatch criteria: conditions on the fields of an array element

            Example:
                {answer: 'No', score: {$lt: 3}}
                {$gte: 3}  -- conditions on the element itself (for arrays of scalars)

        :rtype: list[FilterExpressionBase]
        """
        if not isinstance(criteria, dict):
            raise InvalidQueryError('$elemMatch criteria must be an object')

        expressions = []
        for key, value in criteria.items():
            # Boolean expressions within the element
            if key in self._boolean_operators:
                expressions.append(self._parse_boolean_operator(key, value, self._parse_element_criteria))
                continue

            # Operators on the element itself; fields of the element otherwise
            if key.startswith('$'):
                path, ops = None, {key: value}
            else:
                path = _validate_json_path(key.split('.'))
                ops = _normalize_regex(value)
                if not isinstance(ops, dict) or not ops:
                    ops = {'$eq': ops}

            ops = dict(ops)
            if '$options' in ops:
                if '$regex' not in ops:
                    raise InvalidQueryError('$options requires $regex in $elemMatch')
                ops['$regex'] = (ops['$regex'], ops.pop('$options'))

            for operator, operand in ops.items():
                if operator == '$not':
                    operand = _normalize_regex(operand)
                    if not isinstance(operand, dict) or not operand:
                        raise InvalidQueryError('$not argument must be an object in $elemMatch')
                    inner = {key: operand} if path else operand
                    expressions.append(self._BOOLEAN_EXPRESSION_CLS('$not', self._parse_element_criteria(inner)))
                    continue
                operator_lambda = self._operators_scalar.get(operator)
                if operator_lambda is None:
                    raise InvalidQueryError('Unsupported operator "{}" found in $elemMatch'.format(operator))
                operand = self._prepare_value('$elemMatch', False, operator, operand)
                expressions.append(self._ELEMENT_EXPRESSION_CLS(path, operator, operator_lambda, operand))
        return expressions

    def _parse_boolean_operator(self, op, criteria, parse):
        """ Used in _parse_criteria() to handle boolean operators from self._boolean_operators

            Example:
                Input: { $and: [ {}, ... ] }
                -> _parse_boolean_operator('$and', [ {}, ... ])

            :param parse: the function that parses nested criteria
        """
        if op == '$not':
            # This operator accepts a dict (not a list), which is a query object itself.
            if not isinstance(criteria, dict):
                raise InvalidQueryError('{}: $not argument must be an object'
                                        .format(self.query_object_section_name))

            # Recurse
            return self._BOOLEAN_EXPRESSION_CLS(op, parse(criteria))
        else:
            # All other operators accept a list: $and, $or, $nor
            if not isinstance(criteria, (list, tuple)):
                raise InvalidQueryError('{}: {} argument must be a list'
                                        .format(self.query_object_section_name, op))

            # Because the argument of a boolean expression is always a list of other query objects,
            # we have to recurse here and parse it.
            # An empty list is fine: see FilterBooleanExpression._empty_results
            return self._BOOLEAN_EXPRESSION_CLS(op, [parse(s) for s in criteria])

    def _lookup_operator(self, column_is_array, operator):
        """ Lookup an operator in `self`, or extra operators

        :param column_is_array: Is the column a JSON array column?
            Lookup will be limited to array operators
        :param operator: Operator string
        :return: lambda
        :raises: KeyError
        """
        if not column_is_array:
            return self._operators_scalar.get(operator) or self._extra_scalar_ops[operator]
        else:
            return self._operators_array.get(operator) or self._extra_array_ops[operator]

    def compile_statement(self, dialect) -> Compiled:
        """ Compile the WHERE condition

        :type dialect: docquery.dialect.Dialect
        :return: Compiled condition; empty when there are no conditions
        """
        conditions = [e.compile_expression(dialect) for e in self.expressions]
        if not conditions:
            return Compiled()
        return self._BOOLEAN_EXPRESSION_CLS.sql_anded_together(conditions)

    def get_final_input_value(self):
        if not self._criteria:
            return {}
        if len(self._criteria) == 1:
            return self._criteria[0]
        return {'$and': list(self._criteria)}


def compile_filter(entity, criteria, dialect='sqlite') -> Compiled:
    """ Compile filter criteria for an entity into a WHERE condition

    :param entity: Entity class
    :param criteria: Filter object
    :param dialect: Dialect, or its name
    :rtype: Compiled
    :raises InvalidQueryError
    """
    if isinstance(dialect, str):
        dialect = get_dialect(dialect)
    bags = EntityPropertyBags.for_entity(entity)
    return QueryFilter(entity, bags).input(criteria).compile_statement(dialect)


_JSON_PATH_SEGMENT = re.compile(r'^(?:[A-Za-z_][A-Za-z0-9_]*|\d+)$')


def _validate_json_path(path):
    for segment in path:
        if not _JSON_PATH_SEGMENT.match(segment):
            raise InvalidQueryError('Invalid JSON path segment: {!r}'.format(segment))
    return path


def json_path_string(path) -> str:
    """ ['a', '0', 'b'] -> '$.a[0].b' """
    _validate_json_path(path)
    return '$' + ''.join('[{}]'.format(s) if s.isdigit() else '.' + s
                         for s in path)


def _normalize_regex(value):
    """ re.compile('abc', re.I) -> {'$regex': ('abc', 'i')} """
    if isinstance(value, re.Pattern):
        return {'$regex': (value.pattern, 'i' if value.flags & re.IGNORECASE else '')}
    return value


def _regex_pattern_and_options(pattern, options):
    if isinstance(pattern, re.Pattern):
        if pattern.flags & re.IGNORECASE:
            options += 'i'
        pattern = pattern.pattern
    return pattern, options
