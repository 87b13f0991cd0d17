class BaseDocQueryException(Exception):
    pass


class InvalidQueryError(BaseDocQueryException):
    """ Invalid query provided by the caller: malformed filter, unknown operator, bad sort or projection """

    def __init__(self, err: str):
        super(InvalidQueryError, self).__init__('Query object error: {err}'.format(err=err))


#: Filters that cannot be compiled fail with this error, before any network I/O
QueryCompileError = InvalidQueryError


class InvalidColumnError(InvalidQueryError):
    """ Query mentioned an invalid field name """

    def __init__(self, entity: str, column_name: str, where: str):
        self.entity = entity
        self.column_name = column_name
        self.where = where

        super(InvalidQueryError, self).__init__(
            'Invalid field "{column_name}" for "{entity}" specified in {where}'.format(
                column_name=column_name,
                entity=entity,
                where=where)
        )


class InvalidRelationError(InvalidColumnError):
    """ Query mentioned an invalid reference path """

    def __init__(self, entity: str, column_name: str, where: str):
        self.entity = entity
        self.column_name = column_name
        self.where = where

        super(InvalidQueryError, self).__init__(
            'Invalid reference "{column_name}" for "{entity}" specified in {where}'.format(
                column_name=column_name,
                entity=entity,
                where=where)
        )


class PlaceholderMismatchError(BaseDocQueryException):
    """ The number of `?` placeholders differs from the number of parameters """

    def __init__(self, placeholders: int, params: int):
        self.placeholders = placeholders
        self.params = params

        super(PlaceholderMismatchError, self).__init__(
            'SQL has {} placeholders, but {} parameters were given'.format(placeholders, params)
        )


class DatabaseConnectionError(BaseDocQueryException):
    """ The database is unreachable, or was used before connect() """


class RuntimeQueryError(BaseDocQueryException):
    """ Driver error while executing an operation

    This class is used to augment driver errors with the operation and the entity name.
    The original error is available as `orig`, and is also chained as `__cause__`.
    """

    def __init__(self, operation: str, entity: str, orig: Exception):
        self.operation = operation
        self.entity = entity
        self.orig = orig

        super(RuntimeQueryError, self).__init__(
            '{entity}.{operation}() failed: {orig}'.format(
                entity=entity,
                operation=operation,
                orig=getattr(orig, 'orig', None) or orig)
        )


class ConstraintViolation(RuntimeQueryError):
    """ Duplicate key, foreign key, or another integrity constraint violation """


class TransactionClosedError(BaseDocQueryException):
    """ The transaction handle was already committed, rolled back, or released """
