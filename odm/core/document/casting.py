#!/usr/bin/env python
"""
@file odm/core/document/casting.py
@brief Primitive cast functions and the boolean cast table.

The cast functions return the canonical value or raise ValueError/TypeError;
the schema types turn those into path scoped CastErrors.
"""

import datetime
import re

from bson import ObjectId
from bson.errors import InvalidId

from odm.core.document.object_utils import UNDEFINED, is_document, to_object_id

import odm.util.odmlog
from odm.core import odminit

CONF = odminit.config(__name__)
log = odm.util.odmlog.getLogger(__name__)


DEFAULT_TRUE_VALUES = (True, 'true', 1, '1', 'yes')
DEFAULT_FALSE_VALUES = (False, 'false', 0, '0', 'no')


class BooleanCastTable(object):
    """
    The values that cast to True and to False for Boolean paths. A table is
    created explicitly and handed to the schema types that use it; the module
    level default_boolean_table is shared by schemas that do not bring their
    own. reset() restores the configured initial values.

    None may be added to either side, in which case None casts to that
    boolean instead of staying None.
    """

    def __init__(self, true_values=None, false_values=None):
        if true_values is None:
            true_values = CONF.getValue('convert_to_true', DEFAULT_TRUE_VALUES)
        if false_values is None:
            false_values = CONF.getValue('convert_to_false', DEFAULT_FALSE_VALUES)
        self._initial = (tuple(true_values), tuple(false_values))
        self.reset()

    def reset(self):
        self.convert_to_true = list(self._initial[0])
        self.convert_to_false = list(self._initial[1])

    def add_true(self, value):
        if not self._contains(self.convert_to_true, value):
            self.convert_to_true.append(value)
        self._remove(self.convert_to_false, value)
        return self

    def add_false(self, value):
        if not self._contains(self.convert_to_false, value):
            self.convert_to_false.append(value)
        self._remove(self.convert_to_true, value)
        return self

    def remove(self, value):
        self._remove(self.convert_to_true, value)
        self._remove(self.convert_to_false, value)
        return self

    def _contains(self, values, value):
        # bool and int compare equal in python; match on type as well
        for candidate in values:
            if type(candidate) is type(value) and candidate == value:
                return True
        return False

    def _remove(self, values, value):
        values[:] = [v for v in values if not (type(v) is type(value) and v == value)]

    def is_true(self, value):
        return self._contains(self.convert_to_true, value)

    def is_false(self, value):
        return self._contains(self.convert_to_false, value)

    def cast(self, value):
        """
        @retval True, False or the unchanged None/UNDEFINED
        @exception ValueError if the value is in neither table
        """
        if self.is_true(value):
            return True
        if self.is_false(value):
            return False
        if value is None or value is UNDEFINED:
            return value
        raise ValueError('%r is not a boolean' % (value,))


default_boolean_table = BooleanCastTable()


def cast_string(value):
    if value is None or value is UNDEFINED:
        return value
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, (int, float, ObjectId)):
        return str(value)
    if isinstance(value, datetime.datetime):
        return value.isoformat()
    if is_document(value):
        _id = value.get_value('_id')
        if _id is not UNDEFINED and _id is not None:
            return str(_id)
    if isinstance(value, dict) and '_id' in value:
        return cast_string(value['_id'])
    raise TypeError('%r is not a string' % (value,))


_NUMBER_RE = re.compile(r'^[-+]?\d+$')

def cast_number(value):
    if value is None or value is UNDEFINED:
        return value
    if isinstance(value, bool):
        return 1 if value else 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value != value:
            raise ValueError('NaN is not a number')
        return value
    if isinstance(value, str):
        text = value.strip()
        if text == '':
            return None
        if _NUMBER_RE.match(text):
            return int(text)
        result = float(text)
        if result != result:
            raise ValueError('NaN is not a number')
        return result
    if isinstance(value, (list, tuple)) and len(value) == 1:
        return cast_number(value[0])
    raise TypeError('%r is not a number' % (value,))


def _from_epoch_millis(millis):
    return datetime.datetime(1970, 1, 1) + datetime.timedelta(milliseconds=millis)


def cast_date(value):
    if value is None or value is UNDEFINED:
        return value
    if isinstance(value, bool):
        raise TypeError('%r is not a date' % (value,))
    if isinstance(value, datetime.datetime):
        return value
    if isinstance(value, datetime.date):
        return datetime.datetime(value.year, value.month, value.day)
    if isinstance(value, (int, float)):
        return _from_epoch_millis(value)
    if isinstance(value, str):
        text = value.strip()
        if text == '':
            return None
        if _NUMBER_RE.match(text):
            return _from_epoch_millis(int(text))
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        return datetime.datetime.fromisoformat(text)
    raise TypeError('%r is not a date' % (value,))


def cast_object_id(value):
    if value is None or value is UNDEFINED:
        return value
    if isinstance(value, ObjectId):
        return value
    if is_document(value):
        return cast_object_id(value.get_value('_id'))
    if isinstance(value, dict) and '_id' in value:
        return cast_object_id(value['_id'])
    try:
        return to_object_id(value)
    except InvalidId as ex:
        raise ValueError(str(ex))


def cast_buffer(value):
    if value is None or value is UNDEFINED:
        return value
    if isinstance(value, bytes):
        return value
    if isinstance(value, bytearray):
        return bytes(value)
    if isinstance(value, str):
        return value.encode('utf-8')
    if isinstance(value, (list, tuple)) and all(isinstance(v, int) and not isinstance(v, bool) for v in value):
        return bytes(value)
    if isinstance(value, dict) and value.get('type') == 'Buffer' and 'data' in value:
        return cast_buffer(value['data'])
    raise TypeError('%r is not a buffer' % (value,))
