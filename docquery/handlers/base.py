from typing import Iterable, List

from ..bag import EntityPropertyBags
from ..exc import InvalidColumnError


class Compiled:
    """ A piece of SQL with `?` placeholders, and the list of its parameters

        Pieces are glued together with `+`, which keeps parameters in placeholder order:

            Compiled('a = ?', [1]) + ' AND ' + Compiled('b = ?', [2])
            #-> Compiled('a = ? AND b = ?', [1, 2])
    """
    __slots__ = ('sql', 'params')

    def __init__(self, sql: str = '', params: Iterable = ()):
        self.sql = sql
        self.params = list(params)

    @classmethod
    def param(cls, value) -> 'Compiled':
        """ A single bound parameter """
        return cls('?', [value])

    @classmethod
    def param_list(cls, values: Iterable) -> 'Compiled':
        """ A comma-separated list of bound parameters: `?, ?, ?` """
        values = list(values)
        return cls(', '.join('?' * len(values)), values)

    @classmethod
    def join(cls, separator: str, parts: Iterable['Compiled']) -> 'Compiled':
        """ Join multiple pieces with a separator """
        parts = list(parts)
        return cls(separator.join(p.sql for p in parts),
                   [v for p in parts for v in p.params])

    def parenthesized(self) -> 'Compiled':
        return '(' + self + ')'

    def __add__(self, other) -> 'Compiled':
        if isinstance(other, str):
            return Compiled(self.sql + other, self.params)
        return Compiled(self.sql + other.sql, self.params + other.params)

    def __radd__(self, other: str) -> 'Compiled':
        return Compiled(other + self.sql, self.params)

    def __iter__(self):
        # Unpacking: sql, params = compiled
        return iter((self.sql, self.params))

    def __bool__(self):
        return bool(self.sql)

    def __eq__(self, other):
        if isinstance(other, Compiled):
            return self.sql == other.sql and self.params == other.params
        return NotImplemented

    def __repr__(self):
        return '{}({!r}, {!r})'.format(self.__class__.__name__, self.sql, self.params)


class QueryHandlerBase:
    """ An implementation of a handler for a Cursor

        Every subclass handles a single section of the query: filter, sort, select, etc.
    """

    #: Name of the query section that this object is capable of handling
    query_object_section_name = None

    def __init__(self, entity, bags: EntityPropertyBags):
        """ Initialize the section handler with an entity.

        This method does *not* receive any input data just yet, with the purpose of having an
        object that can be extended with some interesting defaults right at init time.

        :param entity: The Entity class it's being applied to
        :param bags: Entity bags.
            We have to have `bags` provided to us, because then someone may use a different
            EntityPropertyBags, and customize the way an entity is analyzed.
        :type bags: EntityPropertyBags

        NOTE: Any arguments that have default values will be treated as handler settings!!
        """
        #: The entity to handle the query section for
        self.entity = entity
        #: Entity property bags: because we need access to the lists of its fields
        self.bags = bags
        #: The bag of names this handler accepts
        self.supported_bags = self._get_supported_bags()

        # Has the input() method been called already?
        self.input_received = False
        self.input_value = None

    def __copy__(self):
        """ Handlers are copied when a Cursor is copied """
        cls = self.__class__
        result = cls.__new__(cls)
        result.__dict__.update(self.__dict__)
        return result

    def _get_supported_bags(self):
        """ Get the bag of properties supported by this handler

        :rtype: docquery.bag._PropertiesBagBase
        """
        raise NotImplementedError()

    def validate_properties(self, prop_names, bag=None, where=None):
        """ Validate the given list of property names against `self.supported_bags`

        :param prop_names: List of property names
        :param bag: A specific bag to use
        :raises InvalidColumnError
        """
        # Bag to check against
        if bag is None:
            bag = self.supported_bags

        # Validate
        invalid = bag.get_invalid_names(prop_names)
        if invalid:
            raise InvalidColumnError(self.bags.entity_name,
                                     sorted(invalid)[0],
                                     where or self.query_object_section_name)

    def input(self, qo_value):
        """ Get a section of the query.

        The purpose of this method is to receive the input, validate it, and store as a public
        property so that external tools may export its value.

        :param qo_value: the value of the section it's handling
        :rtype: QueryHandlerBase
        :raises InvalidRelationError
        :raises InvalidColumnError
        :raises InvalidQueryError
        """
        self.input_value = qo_value  # no copying. Try not to modify it.

        # Set the flag
        self.input_received = True

        # Make sure that input() can only be used once
        self.input = self.__raise_input_not_reusable

        return self

    def is_input_empty(self):
        """ Test whether the input value was empty """
        return not self.input_value

    def __raise_input_not_reusable(self, *args, **kwargs):
        raise RuntimeError("You can't use the {}.input() method twice. "
                           "Use merge() to add more input"
                           .format(self.__class__.__name__))

    # These methods implement the logic of individual handlers
    # Note that not all methods are going to be implemented by subclasses!

    def compile_columns(self, dialect) -> List[str]:
        """ Compile a list of column names to select """
        raise NotImplementedError()

    def compile_statement(self, dialect) -> Compiled:
        """ Compile an SQL clause

        :type dialect: docquery.dialect.Dialect
        """
        raise NotImplementedError()

    def get_final_input_value(self):
        """ Get the final input of the handler """
        return self.input_value
