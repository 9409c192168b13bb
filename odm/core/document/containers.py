#!/usr/bin/env python
"""
@file odm/core/document/containers.py
@brief Change tracking list and dict types stored under array and map paths.

Every mutating operation casts its input through the path's schema type,
marks the owning path modified and records the atomic operation a later
update should use. Different atomic operations in one change window
collapse into a $set of the whole array.
"""

import weakref

from bson import ObjectId

from odm.core.document.errors import ArrayAtomicsError
from odm.core.document.object_utils import UNDEFINED, is_document, is_plain_mapping, \
    deep_equal, clone, to_object_id

import odm.util.odmlog
log = odm.util.odmlog.getLogger(__name__)


def _owner_ref(owner):
    if owner is None:
        return None
    return weakref.ref(owner)


class CoreArray(list):
    """
    List stored under an array path of a document.
    """

    def __init__(self, values=(), owner=None, path=None, schematype=None):
        list.__init__(self, values)
        self._owner = _owner_ref(owner)
        self._path = path
        self._schematype = schematype
        self._atomics = {}
        self._popped = False
        self._shifted = False

    def owner(self):
        if self._owner is None:
            return None
        return self._owner()

    @property
    def path(self):
        return self._path

    def _cast(self, value, index=None):
        if self._schematype is None:
            return value
        return self._schematype.cast_element(value, self.owner(), False, index)

    def _mark_modified(self, index=None):
        owner = self.owner()
        if owner is None or self._path is None:
            return
        if index is None:
            owner.mark_modified(self._path)
        else:
            owner.mark_modified('%s.%s' % (self._path, index))

    def _register_atomic(self, op, val):
        if op == '$set':
            self._atomics = {'$set': val}
            return op
        key = '$pull' if op == '$pullDocs' else op
        atomics = self._atomics
        if '$set' in atomics or (atomics and key not in atomics):
            # Only one atomic operation per path and update
            self._atomics = {'$set': self}
            return op
        if op in ('$pullAll', '$addToSet'):
            atomics.setdefault(op, []).extend(val)
        elif op == '$pullDocs':
            selector = atomics.setdefault('$pull', {}).setdefault('_id', {'$in': []})
            selector['$in'].extend(val)
        else:
            atomics[op] = val
        return op

    def _register_push(self, values, position):
        atomics = self._atomics
        if '$set' in atomics or (atomics and '$push' not in atomics):
            self._atomics = {'$set': self}
            return
        pending = atomics.setdefault('$push', {'$each': []})
        if position is None:
            pending['$each'].extend(values)
        else:
            # Later inserts at the same position land in front
            pending['$each'] = list(values) + pending['$each']
            pending['$position'] = position

    def reset_atomics(self):
        self._atomics = {}
        self._popped = False
        self._shifted = False
        for item in self:
            if isinstance(item, CoreArray):
                item.reset_atomics()

    def atomics(self):
        return dict(self._atomics)

    def _check_manual_population(self, values):
        owner = self.owner()
        if owner is None or self._path is None:
            return
        if owner.populated(self._path) is not None and \
                not all(is_document(v) for v in values):
            owner.depopulate(self._path)

    #-----------------------------------------------------------------#
    # Mutators
    #-----------------------------------------------------------------#

    def push(self, *values):
        """
        Appends values, or inserts them at a position with
        push({'$each': [...], '$position': n}).
        @retval new length
        """
        position = None
        if len(values) == 1 and is_plain_mapping(values[0]) and '$each' in values[0]:
            position = values[0].get('$position')
            values = values[0]['$each']
        self._check_manual_population(values)
        start = len(self) if position is None else position
        values = [self._cast(v, start + i) for i, v in enumerate(values)]

        pending = self._atomics.get('$push')
        if pending and pending['$each'] and pending.get('$position') != position:
            raise ArrayAtomicsError('Cannot call `push()` multiple times with different `$position`')

        if position is None:
            list.extend(self, values)
        else:
            list.__setitem__(self, slice(position, position), values)
        self._mark_modified()
        self._register_push(values, position)
        return len(self)

    def append(self, value):
        self.push(value)

    def extend(self, values):
        self.push(*list(values))

    def nonatomic_push(self, *values):
        values = [self._cast(v, len(self) + i) for i, v in enumerate(values)]
        list.extend(self, values)
        self._register_atomic('$set', self)
        self._mark_modified()
        return len(self)

    def insert(self, index, value):
        value = self._cast(value, index)
        list.insert(self, index, value)
        self._register_atomic('$set', self)
        self._mark_modified()

    def unshift(self, *values):
        values = [self._cast(v, i) for i, v in enumerate(values)]
        list.__setitem__(self, slice(0, 0), values)
        self._register_atomic('$set', self)
        self._mark_modified()
        return len(self)

    def pop(self, index=-1):
        ret = list.pop(self, index)
        self._register_atomic('$set', self)
        self._mark_modified()
        return ret

    def shift(self):
        if not len(self):
            return None
        return self.pop(0)

    def atomic_pop(self):
        """
        Removes the last element with a $pop, at most once per update.
        """
        self._register_atomic('$pop', 1)
        self._mark_modified()
        if self._popped or not len(self):
            return None
        self._popped = True
        return list.pop(self)

    def atomic_shift(self):
        """
        Removes the first element with a $pop -1, at most once per update.
        """
        self._register_atomic('$pop', -1)
        self._mark_modified()
        if self._shifted or not len(self):
            return None
        self._shifted = True
        return list.pop(self, 0)

    def _matches(self, item, value):
        return deep_equal(item, value)

    def pull(self, *values):
        """
        Removes every element equal to one of values.
        """
        values = [self._cast(v) for v in values]
        kept = [item for item in self if not any(self._matches(item, v) for v in values)]
        self._mark_modified()
        list.__setitem__(self, slice(None), kept)
        self._register_atomic('$pullAll', values)
        return self

    def remove(self, *values):
        return self.pull(*values)

    def splice(self, start, delete_count=None, *items):
        """
        @retval list of the removed elements
        """
        length = len(self)
        if start < 0:
            start = max(length + start, 0)
        start = min(start, length)
        if delete_count is None:
            delete_count = length - start
        items = [self._cast(v, start + i) for i, v in enumerate(items)]
        removed = list.__getitem__(self, slice(start, start + delete_count))
        list.__setitem__(self, slice(start, start + delete_count), items)
        self._register_atomic('$set', self)
        self._mark_modified()
        return removed

    def sort(self, key=None, reverse=False):
        list.sort(self, key=key, reverse=reverse)
        self._register_atomic('$set', self)
        self._mark_modified()

    def reverse(self):
        list.reverse(self)
        self._register_atomic('$set', self)
        self._mark_modified()

    def clear(self):
        list.clear(self)
        self._register_atomic('$set', self)
        self._mark_modified()

    def set(self, index, value):
        """
        Replaces one element; only 'path.index' is marked modified.
        """
        value = self._cast(value, index)
        while len(self) <= index:
            list.append(self, None)
        list.__setitem__(self, index, value)
        if self._atomics:
            # Pending operators cannot express a positional write
            self._register_atomic('$set', self)
            self._mark_modified()
        else:
            self._mark_modified(index)
        return self

    def __setitem__(self, index, value):
        if isinstance(index, slice):
            list.__setitem__(self, index, [self._cast(v) for v in value])
            self._register_atomic('$set', self)
            self._mark_modified()
            return
        if index < 0:
            index += len(self)
        self.set(index, value)

    def __delitem__(self, index):
        list.__delitem__(self, index)
        self._register_atomic('$set', self)
        self._mark_modified()

    def __iadd__(self, values):
        self.push(*list(values))
        return self

    def add_to_set(self, *values):
        """
        Appends the values not already present.
        @retval list of the values actually added
        """
        added = []
        for value in values:
            value = self._cast(value, len(self))
            if any(self._matches(item, value) for item in self):
                continue
            list.append(self, value)
            added.append(value)
        if added:
            self._register_atomic('$addToSet', added)
            self._mark_modified()
        return added

    def index_of(self, value):
        if isinstance(value, ObjectId):
            value = str(value)
        for i, item in enumerate(self):
            if isinstance(item, ObjectId) and str(item) == value:
                return i
            if self._matches(item, value):
                return i
        return -1

    def includes(self, value):
        return self.index_of(value) != -1

    #-----------------------------------------------------------------#
    # Output
    #-----------------------------------------------------------------#

    def to_object(self, **options):
        result = []
        for item in self:
            if is_document(item):
                if options.get('depopulate') and not getattr(item, '_embedded', False):
                    result.append(item.get_value('_id'))
                else:
                    result.append(item.to_object(**options))
            elif isinstance(item, (CoreArray, DocumentMap)):
                result.append(item.to_object(**options))
            else:
                result.append(clone(item))
        return result

    def __copy__(self):
        return list(self)

    def __deepcopy__(self, memo):
        return clone(list(self))

    def __reduce__(self):
        return (list, (list(self),))


class DocumentArray(CoreArray):
    """
    List of embedded documents sharing one child schema.
    """

    def _cast(self, value, index=None):
        return self._schematype.cast_element(value, self, self.owner())

    def _id_of(self, value):
        if is_document(value):
            return value.get_value('_id')
        if is_plain_mapping(value):
            value = value.get('_id', UNDEFINED)
        if value is UNDEFINED or value is None:
            return UNDEFINED
        try:
            return to_object_id(value)
        except Exception:
            return value

    def _matches(self, item, value):
        if item is value:
            return True
        item_id = self._id_of(item)
        value_id = self._id_of(value)
        if item_id is UNDEFINED or value_id is UNDEFINED:
            return False
        return deep_equal(item_id, value_id)

    def id(self, value):
        """
        @retval the element whose _id equals value, or None
        """
        for item in self:
            if is_document(item) and self._matches(item, value):
                return item
        return None

    def create(self, obj):
        """
        Casts obj to an embedded document of this array without adding it.
        """
        return self._schematype.cast_element(obj, self, self.owner())

    def pull(self, *values):
        ids = []
        for value in values:
            _id = self._id_of(value)
            ids.append(_id if _id is not UNDEFINED else value)
        kept = [item for item in self if not any(self._matches(item, v) for v in values)]
        removed = [item for item in self if not any(item is k for k in kept)]
        self._mark_modified()
        list.__setitem__(self, slice(None), kept)
        for item in removed:
            item._detach()
        self._register_atomic('$pullDocs', ids)
        return self

    def pop(self, index=-1):
        ret = CoreArray.pop(self, index)
        if is_document(ret):
            ret._detach()
        return ret


class DocumentMap(dict):
    """
    String keyed map stored under a Map path.
    """

    def __init__(self, values=None, owner=None, path=None, schematype=None):
        dict.__init__(self, values or {})
        self._owner = _owner_ref(owner)
        self._path = path
        self._schematype = schematype

    def owner(self):
        if self._owner is None:
            return None
        return self._owner()

    def _mark_modified(self, key):
        owner = self.owner()
        if owner is not None and self._path is not None:
            owner.mark_modified('%s.%s' % (self._path, key))

    def set(self, key, value):
        if self._schematype is not None:
            value = self._schematype.cast_value(key, value, self.owner())
        prior = dict.get(self, key, UNDEFINED)
        if deep_equal(prior, value):
            return self
        dict.__setitem__(self, key, value)
        self._mark_modified(key)
        return self

    def __setitem__(self, key, value):
        self.set(key, value)

    def delete(self, key):
        if key in self:
            dict.__delitem__(self, key)
            self._mark_modified(key)

    def __delitem__(self, key):
        if key not in self:
            raise KeyError(key)
        self.delete(key)

    def update(self, *args, **kwargs):
        for key, value in dict(*args, **kwargs).items():
            self.set(key, value)

    def to_object(self, **options):
        result = {}
        for key, value in self.items():
            if hasattr(value, 'to_object'):
                result[key] = value.to_object(**options)
            else:
                result[key] = clone(value)
        return result

    def __copy__(self):
        return dict(self)

    def __deepcopy__(self, memo):
        return clone(dict(self))

    def __reduce__(self):
        return (dict, (dict(self),))
