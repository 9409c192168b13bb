"""
@file odm/core/data/store.py
@package odm.core.data.ICollection Interface for the document persistence backend
@package odm.core.data.Collection In-memory implementation of ICollection
@brief Backend that models save into. The in-memory collection stores plain
dicts and understands the update operators documents produce.
"""
import copy

from zope.interface import Interface
from zope.interface import implementer

from twisted.internet import defer

from odm.core.exception import OdmError
from odm.core.document.object_utils import split_path, get_nested, deep_equal

import odm.util.odmlog
log = odm.util.odmlog.getLogger(__name__)


class DuplicateKeyError(OdmError):
    """
    insert_one with an _id that is already stored.
    """


class ICollection(Interface):
    """
    Interface all collection backends implement.
    All operations return deferreds and operate asynchronously.

    @var name
    """

    def insert_one(doc):
        """
        @param doc plain dict with an _id
        @retval Deferred, for the _id of the inserted document
        """

    def find_one(filter):
        """
        @param filter dict of path -> value (or {'$in': [...]})
        @retval Deferred, for a copy of the first matching document or None
        """

    def update_one(filter, update):
        """
        @param update dict of update operators ($set, $unset, $push, ...)
        @retval Deferred, for the number of matched documents (0 or 1)
        """

    def delete_one(filter):
        """
        @retval Deferred, for the number of deleted documents (0 or 1)
        """

    def exists(filter):
        """
        @retval Deferred, for a bool
        """

    def count(filter=None):
        """
        @retval Deferred, for the number of matching documents
        """


@implementer(ICollection)
class Collection(object):
    """
    Memory implementation of a document collection, using a list of dicts.
    Simulates typical usage of a client connection to a database.
    """

    def __init__(self, name=None):
        self.name = name
        self.docs = []

    def __repr__(self):
        return '<Collection %s (%d documents)>' % (self.name, len(self.docs))

    def _find(self, filter):
        for doc in self.docs:
            if matches(doc, filter):
                return doc
        return None

    def insert_one(self, doc):
        """
        @see ICollection.insert_one
        """
        if '_id' in doc and self._find({'_id': doc['_id']}) is not None:
            return defer.fail(DuplicateKeyError('E11000 duplicate key error collection: %s _id: %s'
                                                % (self.name, doc['_id'])))
        self.docs.append(copy.deepcopy(doc))
        log.debug('%s: inserted %s' % (self.name, doc.get('_id')))
        return defer.succeed(doc.get('_id'))

    def find_one(self, filter):
        """
        @see ICollection.find_one
        """
        doc = self._find(filter)
        return defer.succeed(copy.deepcopy(doc) if doc is not None else None)

    def update_one(self, filter, update):
        """
        @see ICollection.update_one
        """
        doc = self._find(filter)
        if doc is None:
            return defer.succeed(0)
        try:
            apply_update(doc, update)
        except Exception as ex:
            return defer.fail(ex)
        log.debug('%s: updated %s with %s' % (self.name, doc.get('_id'), update))
        return defer.succeed(1)

    def delete_one(self, filter):
        """
        @see ICollection.delete_one
        """
        doc = self._find(filter)
        if doc is None:
            return defer.succeed(0)
        self.docs.remove(doc)
        return defer.succeed(1)

    def exists(self, filter):
        """
        @see ICollection.exists
        """
        return defer.succeed(self._find(filter) is not None)

    def count(self, filter=None):
        """
        @see ICollection.count
        """
        return defer.succeed(len([d for d in self.docs if matches(d, filter or {})]))


_MISSING = object()


def matches(doc, filter):
    for path, expected in filter.items():
        value = get_nested(doc, path, _MISSING)
        if isinstance(expected, dict) and '$in' in expected:
            if not any(deep_equal(value, e) for e in expected['$in']):
                return False
        elif value is _MISSING:
            if expected is not None:
                return False
        elif not deep_equal(value, expected):
            return False
    return True


def _parent_of(doc, path, create=True):
    parts = split_path(path)
    cur = doc
    for part in parts[:-1]:
        if isinstance(cur, list):
            cur = cur[int(part)]
            continue
        if part not in cur or not isinstance(cur[part], (dict, list)):
            if not create:
                return None, parts[-1]
            cur[part] = {}
        cur = cur[part]
    return cur, parts[-1]


def _set(doc, path, value):
    parent, key = _parent_of(doc, path)
    if isinstance(parent, list):
        parent[int(key)] = value
    else:
        parent[key] = value


def _array_at(doc, path):
    parent, key = _parent_of(doc, path)
    if isinstance(parent, list):
        return parent[int(key)]
    if parent.get(key) is None:
        parent[key] = []
    if not isinstance(parent[key], list):
        raise OdmError('Cannot apply array operator to non-array field `%s`' % path)
    return parent[key]


def apply_update(doc, update):
    """
    Applies update operators to the stored dict in place.
    """
    for op, fields in update.items():
        for path, operand in fields.items():
            operand = copy.deepcopy(operand)
            if op == '$set':
                _set(doc, path, operand)
            elif op == '$unset':
                parent, key = _parent_of(doc, path, create=False)
                if isinstance(parent, dict):
                    parent.pop(key, None)
            elif op == '$push':
                arr = _array_at(doc, path)
                if isinstance(operand, dict) and '$each' in operand:
                    position = operand.get('$position')
                    if position is None:
                        arr.extend(operand['$each'])
                    else:
                        arr[position:position] = operand['$each']
                else:
                    arr.append(operand)
            elif op == '$addToSet':
                arr = _array_at(doc, path)
                values = operand['$each'] if isinstance(operand, dict) and '$each' in operand \
                    else [operand]
                for value in values:
                    if not any(deep_equal(item, value) for item in arr):
                        arr.append(value)
            elif op == '$pullAll':
                arr = _array_at(doc, path)
                arr[:] = [item for item in arr if not any(deep_equal(item, v) for v in operand)]
            elif op == '$pull':
                arr = _array_at(doc, path)
                if isinstance(operand, dict):
                    arr[:] = [item for item in arr
                              if not (isinstance(item, dict) and matches(item, operand))]
                else:
                    arr[:] = [item for item in arr if not deep_equal(item, operand)]
            elif op == '$pop':
                arr = _array_at(doc, path)
                if arr:
                    if operand == -1:
                        arr.pop(0)
                    else:
                        arr.pop()
            else:
                raise OdmError('Unsupported update operator %s' % op)
