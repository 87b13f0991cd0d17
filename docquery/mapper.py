"""
Entity Mapper: converts database rows into documents.

A row has storage column names and storage types; a document has field names and Python types:

* the primary key becomes `_id`,
* `line_id` becomes `line` (see `Column.key`),
* JSON text becomes lists and dicts,
* integer booleans become `bool`, and ISO datetime text becomes `datetime`.
"""

from datetime import date, datetime
from typing import Mapping

from sqlalchemy import Boolean, Date, DateTime

from .bag import EntityPropertyBags
from .types import JsonText


class EntityMapper:
    """ Maps rows of one entity's table. Pure: performs no I/O """

    def __init__(self, bags: EntityPropertyBags):
        self.bags = bags

        # [(field name, storage name, converter)], primary key first
        fields = []
        for name, column in bags.columns:
            field = '_id' if bags.columns.is_primary_key(name) else name
            fields.append((field, column.name, _get_converter(column)))
        fields.sort(key=lambda f: f[0] != '_id')
        self._fields = fields

    def map_row(self, row: Mapping) -> dict:
        """ Convert a database row into a new document

            Only the columns that are present in the row are mapped:
            that's how a projected SELECT becomes a projected document.
        """
        doc = {}
        for field, storage_name, convert in self._fields:
            if storage_name in row:
                value = row[storage_name]
                doc[field] = convert(value) if convert is not None else value
        return doc

    def map_rows(self, rows) -> list:
        return [self.map_row(row) for row in rows]


def _get_converter(column):
    """ Get a function that converts the stored value of a column, or None """
    type_ = column.type
    if isinstance(type_, JsonText):
        return type_.deserialize
    if isinstance(type_, Boolean):
        return _to_bool
    if isinstance(type_, DateTime):
        return _to_datetime
    if isinstance(type_, Date):
        return _to_date
    return None


def _to_bool(value):
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 't', 'yes')
    return bool(value)


def _to_datetime(value):
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return value
    return value


def _to_date(value):
    if isinstance(value, str):
        try:
            return date.fromisoformat(value)
        except ValueError:
            return value
    if isinstance(value, datetime):
        return value.date()
    return value
