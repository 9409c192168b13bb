#!/usr/bin/env python
"""
@file odm/core/document/object_utils.py
@brief Value classification, path helpers and deep comparison used by the
document core.
"""

import copy
import datetime
import functools
import re

from bson import ObjectId
from bson.errors import InvalidId

import odm.util.odmlog
log = odm.util.odmlog.getLogger(__name__)


class _Undefined(object):
    """
    Marker for a path that holds no value at all. None is a stored value
    (null); UNDEFINED means the key is absent.
    """
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = object.__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return 'UNDEFINED'

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self

    def __reduce__(self):
        return (_Undefined, ())

UNDEFINED = _Undefined()


def is_nullish(value):
    return value is None or value is UNDEFINED


class ValueKind(object):
    """
    Closed set of value shapes the caster and serializer dispatch on. A value
    is classified once with value_kind() and handled by kind afterwards.
    """
    PRIMITIVE = 'primitive'
    PLAIN_MAPPING = 'plain_mapping'
    EMBEDDED_DOCUMENT = 'embedded_document'
    ARRAY_CONTAINER = 'array_container'
    EXTERNAL_CONVERTIBLE = 'external_convertible'

    ALL = (PRIMITIVE, PLAIN_MAPPING, EMBEDDED_DOCUMENT, ARRAY_CONTAINER, EXTERNAL_CONVERTIBLE)


def _is_document(value):
    # Documents carry the change tracker; avoids importing document.py here
    return hasattr(value, '_tracker') and hasattr(value, 'schema')


def value_kind(value):
    """
    @param value any python value
    @retval one of the ValueKind constants
    """
    if _is_document(value):
        return ValueKind.EMBEDDED_DOCUMENT
    if isinstance(value, (list, tuple)):
        return ValueKind.ARRAY_CONTAINER
    if isinstance(value, dict):
        return ValueKind.PLAIN_MAPPING
    if value is None or value is UNDEFINED or isinstance(value, PRIMITIVE_TYPES):
        return ValueKind.PRIMITIVE
    if hasattr(value, 'to_object') or hasattr(value, '__dict__'):
        return ValueKind.EXTERNAL_CONVERTIBLE
    return ValueKind.PRIMITIVE


PRIMITIVE_TYPES = (str, bytes, bytearray, bool, int, float, datetime.datetime,
                   datetime.date, ObjectId, type(re.compile('')))


def is_plain_mapping(value):
    return isinstance(value, dict) and not _is_document(value)


def is_document(value):
    return _is_document(value)


def external_to_mapping(value):
    """
    Converts a class instance (or anything exposing to_object) into a plain
    dict so it can be merged key by key into an embedded document.
    """
    if hasattr(value, 'to_object') and callable(value.to_object):
        return value.to_object()
    return dict((k, v) for k, v in vars(value).items() if not k.startswith('_'))


RESERVED_KEYS = frozenset(['constructor', 'prototype'])

def is_reserved_key(key):
    """
    Keys that could reach object internals if they were used as attribute or
    dict keys in a document; writes to them are ignored.
    """
    if not isinstance(key, str):
        return False
    return key in RESERVED_KEYS or (key.startswith('__') and key.endswith('__'))


# Paths include array indexes and map keys from user data
@functools.lru_cache(maxsize=4096)
def split_path(path):
    """
    @param path dotted path string
    @retval tuple of the path segments
    """
    return tuple(path.split('.'))


def parent_paths(path):
    """
    Every prefix of the dotted path, shortest first, including the path
    itself: 'a.b.c' -> ['a', 'a.b', 'a.b.c']
    """
    parts = split_path(path)
    return ['.'.join(parts[:i + 1]) for i in range(len(parts))]


def get_nested(obj, path, default=None):
    """
    Walks plain dicts and lists by a dotted path.
    """
    cur = obj
    for part in split_path(path):
        if isinstance(cur, dict):
            if part not in cur:
                return default
            cur = cur[part]
        elif isinstance(cur, list) and part.isdigit():
            idx = int(part)
            if idx >= len(cur):
                return default
            cur = cur[idx]
        else:
            return default
    return cur


def set_nested(obj, path, value):
    """
    Sets a value in nested plain dicts, creating intermediate dicts.
    """
    parts = split_path(path)
    cur = obj
    for part in parts[:-1]:
        nxt = cur.get(part)
        if not isinstance(nxt, dict):
            nxt = cur[part] = {}
        cur = nxt
    cur[parts[-1]] = value


def flatten_keys(obj, prefix=''):
    """
    Dotted leaf paths of a nested plain dict, in key order. Empty dicts are
    reported as leaves.
    """
    result = []
    for key, value in obj.items():
        path = prefix + key
        if is_plain_mapping(value) and value:
            result.append(path)
            result.extend(flatten_keys(value, path + '.'))
        else:
            result.append(path)
    return result


def deep_equal(a, b):
    """
    Structural equality that does not coerce between types: '2' != 2 and
    True != 1. Documents compare by their plain projections, ObjectIds by
    value.
    """
    if a is b:
        return True
    if a is UNDEFINED or b is UNDEFINED or a is None or b is None:
        return False

    if _is_document(a) or _is_document(b):
        if not (_is_document(a) and _is_document(b)):
            return False
        return deep_equal(a.to_object(transform=False, virtuals=False, getters=False,
                                      depopulate=True, minimize=False),
                          b.to_object(transform=False, virtuals=False, getters=False,
                                      depopulate=True, minimize=False))

    if isinstance(a, ObjectId) or isinstance(b, ObjectId):
        return isinstance(a, ObjectId) and isinstance(b, ObjectId) and a == b

    if isinstance(a, (list, tuple)):
        if not isinstance(b, (list, tuple)) or len(a) != len(b):
            return False
        for x, y in zip(a, b):
            if not deep_equal(x, y):
                return False
        return True

    if isinstance(a, dict):
        if not isinstance(b, dict) or len(a) != len(b):
            return False
        for key in a:
            if key not in b or not deep_equal(a[key], b[key]):
                return False
        return True

    if isinstance(a, str) or isinstance(b, str):
        return type(a) is type(b) and a == b

    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b

    try:
        return a == b
    except Exception:
        return False


def clone(value):
    """
    Deep copy of plain data; documents are projected to plain dicts first.
    """
    if _is_document(value):
        return value.to_object(transform=False, virtuals=False, getters=False,
                               depopulate=True, minimize=False)
    if isinstance(value, list):
        return [clone(v) for v in value]
    if isinstance(value, dict):
        return dict((k, clone(v)) for k, v in value.items())
    if isinstance(value, (ObjectId, str, bytes, int, float, bool)) or value is None or value is UNDEFINED:
        return value
    return copy.deepcopy(value)


def utcnow():
    """
    Naive UTC now, millisecond precision as stored by the database.
    """
    now = datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def to_object_id(value):
    """
    Casts 24 character hex strings and 12 character strings (or bytes) to
    ObjectId.
    @retval ObjectId
    @exception InvalidId for anything else
    """
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str):
        if len(value) == 24:
            return ObjectId(value)
        if len(value) == 12:
            try:
                return ObjectId(value.encode('latin-1'))
            except UnicodeEncodeError:
                raise InvalidId('%r is not a valid ObjectId' % value)
    if isinstance(value, (bytes, bytearray)) and len(value) == 12:
        return ObjectId(bytes(value))
    raise InvalidId('%r is not a valid ObjectId, it must be a 12-byte input or a 24-character hex string' % (value,))
