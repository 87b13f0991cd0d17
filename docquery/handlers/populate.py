"""
### Populate Operation

Populating replaces stored ids with the documents they reference.

```python
audits = await (Audit.find({})
    .populate('line', 'name')  # a foreign key: line_id
    .populate('machines')  # a reference set: [1, 2, 3]
    .populate('answers.question', 'questionText'))  # ids within an array of objects
```

Every path is loaded with exactly one extra query, no matter how many rows reference it
(unless there are more distinct ids than a statement can take: see `EntityResolver`):
`SELECT ... WHERE id IN (...)`. There are no JOINs.

#### Syntax

* `populate('line')` - a path
* `populate('line', 'name code')` - a path, with the fields to select from the referenced entity
* `populate('line machines')` - several paths at once
* `populate({'path': 'answers.question', 'select': 'questionText'})` - object syntax
* `populate({'path': 'line', 'options': {'lean': True}})` - plain dicts, even when the results are entities
* `populate([...])` - a list of the above

Calling populate() several times adds more paths.

#### Missing references
When a referenced document does not exist, the id is left in place, and a warning is logged.
"""

import copy
import logging
from collections import OrderedDict

from .base import QueryHandlerBase
from ..bag import Reference
from ..exc import InvalidQueryError, InvalidRelationError

logger = logging.getLogger(__name__)


class RelationResolver:
    """ Batch-loads referenced documents by their ids """

    async def fetch(self, ids, fields=None, executor=None) -> dict:
        """ Load documents by ids

        :param ids: List of ids to load
        :param fields: Projection for the referenced entity, or None for the default
        :param executor: Database or Transaction to run the query with
        :return: { id: document }. Missing ids are simply not in the dict
        """
        raise NotImplementedError


class EntityResolver(RelationResolver):
    """ Loads documents of an entity with one `WHERE pk IN (...)` query

        Databases limit the number of parameters in a statement.
        When there are more ids than the dialect's `max_in_list_size`, they are loaded in chunks: one query per chunk.
    """

    def __init__(self, entity, chunk_size=None):
        """ Init a resolver

        :param entity: The entity to load
        :param chunk_size: The number of ids per query. Default: the dialect's `max_in_list_size`
        """
        self.entity = entity
        self.chunk_size = chunk_size

    async def fetch(self, ids, fields=None, executor=None):
        ids = list(OrderedDict.fromkeys(ids))
        if not ids:
            return {}

        chunk_size = self.chunk_size or (executor or self.entity.get_database()).dialect.max_in_list_size

        found = {}
        for i in range(0, len(ids), chunk_size):
            cursor = self.entity.find({'_id': {'$in': ids[i:i + chunk_size]}}).lean().session(executor)
            if fields:
                cursor.select(fields)
            for doc in await cursor.exec():
                found[id_key(doc['_id'])] = doc
        return found


class QueryPopulate(QueryHandlerBase):
    """ Populate references

        Accepts:
        * 'line' - a path
        * 'line machines' - multiple paths
        * {'path': 'line', 'select': 'name'} - a path, with a projection
        * {'path': 'line', 'options': {'lean': True}} - a path that's populated with dicts
        * a list of the above

        Supports: foreign key columns, reference sets, references within arrays of objects
    """

    query_object_section_name = 'populate'

    def __init__(self, entity, bags, resolvers=None):
        """ Init populate

        :param entity: Entity class to work with
        :param bags: Entity bags
        :param resolvers: Custom RelationResolvers: { path: resolver }
        :type resolvers: dict[str, RelationResolver]
        """
        super(QueryPopulate, self).__init__(entity, bags)

        # Settings
        self.resolvers = resolvers or {}

        # On input
        #: { path: list of field names, or None for the default projection }
        self.paths = OrderedDict()

        #: Paths that are populated with plain dicts, even into entities
        self.lean_paths = set()

    def _get_supported_bags(self):
        return self.bags.all_references()

    def _parse(self, path, fields=None, lean=False):
        """ Parse populate() arguments into a list of (path, fields, lean) """
        # List
        if isinstance(path, (list, tuple)):
            return [item for p in path for item in self._parse(p, fields, lean)]

        # Object syntax
        if isinstance(path, dict):
            unknown = set(path) - {'path', 'select', 'options'}
            if unknown or 'path' not in path:
                raise InvalidQueryError('{} object must have a "path", and may have a "select" and "options"'
                                        .format(self.query_object_section_name))
            options = path.get('options') or {}
            if not isinstance(options, dict) or set(options) - {'lean'}:
                raise InvalidQueryError('{} options may only have "lean"'.format(self.query_object_section_name))
            return self._parse(path['path'], path.get('select', fields), bool(options.get('lean', lean)))

        # String syntax
        if not isinstance(path, str) or not path.strip():
            raise InvalidQueryError('{} path must be a string; {} provided'
                                    .format(self.query_object_section_name, type(path)))
        fields = _parse_fields(fields)
        paths = [(p, fields, lean) for p in path.split()]

        # Validate
        for p, _, _ in paths:
            if p not in self.supported_bags:
                raise InvalidRelationError(self.bags.entity_name, p, self.query_object_section_name)
        return paths

    def input(self, path=None, fields=None):
        super(QueryPopulate, self).input(path)
        if path:
            self.merge(path, fields)
        return self

    def merge(self, path, fields=None):
        """ Add paths to populate. The same path given twice combines the fields """
        for p, f, lean in self._parse(path, fields):
            if p not in self.paths:
                self.paths[p] = f
            elif self.paths[p] is None or f is None:
                self.paths[p] = None
            else:
                self.paths[p] = list(OrderedDict.fromkeys(self.paths[p] + f))

            if lean:
                self.lean_paths.add(p)
        return self

    def is_input_empty(self):
        return not self.paths

    def get_resolver(self, path):
        """ Get the resolver for a path

        :rtype: RelationResolver
        """
        if path in self.resolvers:
            return self.resolvers[path]
        return EntityResolver(self.get_target_entity(path))

    def get_target_entity(self, path):
        """ Get the entity class a path refers to """
        reference = self.supported_bags[path]
        target = self.entity.entity_for_table(reference.target_table)
        if target is None:
            raise InvalidRelationError(self.bags.entity_name, path,
                                       '{} (no entity for table "{}")'.format(self.query_object_section_name,
                                                                              reference.target_table))
        return target

    async def populate(self, docs, executor=None, as_entities=False):
        """ Populate all paths in the given documents, in place

        Every path is handled independently, with one query.

        :param docs: Documents (dicts) to populate
        :param executor: Database or Transaction to run queries with
        :param as_entities: Splice Entity instances instead of dicts. Lean paths always get dicts
        :return: docs
        """
        for path, fields in self.paths.items():
            await self.populate_path(docs, path, fields, executor, as_entities and path not in self.lean_paths)
        return docs

    async def populate_path(self, docs, path, fields=None, executor=None, as_entities=False):
        """ Populate a single path """
        reference = self.supported_bags[path]
        target = self.get_target_entity(path)
        resolver = self.get_resolver(path)

        # Collect the ids from all documents
        holders = list(_iter_reference_holders(docs, reference))
        ids = [id_key(v) for container, k in holders
               for v in _as_list(container.get(k), reference)
               if _is_id(v)]
        if not ids:
            return docs

        # Load them all at once
        found = await resolver.fetch(ids, fields, executor)

        # Splice them in. Every splice is a copy, so no two documents share an object
        def splice(value):
            if not _is_id(value):
                return value
            doc = found.get(id_key(value))
            if doc is None:
                missing.add(value)
                return value
            doc = copy.deepcopy(doc)
            return target.from_document(doc) if as_entities else doc

        missing = set()
        for container, k in holders:
            value = container.get(k)
            if reference.kind == Reference.MANY:
                if isinstance(value, list):
                    container[k] = [splice(v) for v in value]
            else:
                container[k] = splice(value)

        if missing:
            logger.warning('%s.populate(%r): %d referenced %s not found: %r',
                           self.bags.entity_name, path, len(missing), target.__name__,
                           sorted(missing, key=str))
        return docs

    def get_final_input_value(self):
        ret = []
        for path, fields in self.paths.items():
            if not fields and path not in self.lean_paths:
                ret.append(path)
                continue
            item = {'path': path}
            if fields:
                item['select'] = fields
            if path in self.lean_paths:
                item['options'] = {'lean': True}
            ret.append(item)
        return ret


def id_key(value):
    """ Normalize an id for lookups: '7' and 7 are the same id """
    if isinstance(value, str) and value.strip().lstrip('-').isdecimal():
        return int(value)
    return value


def _is_id(value):
    """ Is this a reference id (rather than an already populated document, or nothing)? """
    return value is not None and not isinstance(value, (dict, list, bool)) and not hasattr(value, 'to_dict')


def _as_list(value, reference):
    if reference.kind == Reference.MANY:
        return value if isinstance(value, list) else []
    return [value]


def _iter_reference_holders(docs, reference):
    """ Iterate over (container, key) pairs that hold references """
    for doc in docs:
        if reference.kind == Reference.NESTED:
            elements = doc.get(reference.field)
            if isinstance(elements, list):
                for element in elements:
                    if isinstance(element, dict) and reference.key in element:
                        yield element, reference.key
        elif reference.field in doc:
            yield doc, reference.field


def _parse_fields(fields):
    """ Normalize a populate() projection into a list of tokens """
    if not fields:
        return None
    if isinstance(fields, str):
        return fields.split()
    if isinstance(fields, (list, tuple)):
        return list(fields)
    if isinstance(fields, dict):
        return [name if include else '-' + name for name, include in fields.items()]
    raise InvalidQueryError('populate select must be a string, a list, or an object')
