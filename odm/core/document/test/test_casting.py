#!/usr/bin/env python

"""
@file odm/core/document/test/test_casting.py
@brief test primitive casts and the boolean cast table
"""

import datetime

from bson import ObjectId

from odm.core.document import casting
from odm.core.document.casting import BooleanCastTable, cast_string, cast_number, \
    cast_date, cast_object_id, cast_buffer
from odm.core.document.object_utils import UNDEFINED
from odm.test.odmtest import OdmTestCase


class CastingTest(OdmTestCase):

    def test_string(self):
        self.assertEqual(cast_string('a'), 'a')
        self.assertEqual(cast_string(42), '42')
        self.assertEqual(cast_string(True), 'true')
        oid = ObjectId()
        self.assertEqual(cast_string(oid), str(oid))
        self.assertEqual(cast_string({'_id': oid}), str(oid))
        self.assertIs(cast_string(None), None)
        self.assertRaises(TypeError, cast_string, [1, 2])

    def test_number(self):
        self.assertEqual(cast_number('42'), 42)
        self.assertEqual(cast_number(' 1.5 '), 1.5)
        self.assertEqual(cast_number(True), 1)
        self.assertEqual(cast_number([3]), 3)
        self.assertIs(cast_number(''), None)
        self.assertRaises(ValueError, cast_number, 'abc')
        self.assertRaises(ValueError, cast_number, float('nan'))
        self.assertRaises(TypeError, cast_number, {})

    def test_date(self):
        d = datetime.datetime(2020, 1, 2, 3, 4, 5)
        self.assertEqual(cast_date(d), d)
        self.assertEqual(cast_date(datetime.date(2020, 1, 2)), datetime.datetime(2020, 1, 2))
        self.assertEqual(cast_date(0), datetime.datetime(1970, 1, 1))
        self.assertEqual(cast_date('86400000'), datetime.datetime(1970, 1, 2))
        self.assertEqual(cast_date('2020-01-02T03:04:05'), d)
        self.assertRaises(ValueError, cast_date, 'not a date')
        self.assertRaises(TypeError, cast_date, True)

    def test_object_id(self):
        oid = ObjectId()
        self.assertEqual(cast_object_id(str(oid)), oid)
        self.assertEqual(cast_object_id({'_id': str(oid)}), oid)
        self.assertRaises(ValueError, cast_object_id, 'short')

    def test_buffer(self):
        self.assertEqual(cast_buffer('abc'), b'abc')
        self.assertEqual(cast_buffer([1, 2]), b'\x01\x02')
        self.assertEqual(cast_buffer({'type': 'Buffer', 'data': [65]}), b'A')
        self.assertRaises(TypeError, cast_buffer, 1.5)

    def test_boolean_table(self):
        table = BooleanCastTable()
        self.assertIs(table.cast('true'), True)
        self.assertIs(table.cast(0), False)
        self.assertIs(table.cast(None), None)
        self.assertIs(table.cast(UNDEFINED), UNDEFINED)
        self.assertRaises(ValueError, table.cast, 'nope')

        table.add_true('y')
        self.assertIs(table.cast('y'), True)
        table.add_false('y')
        self.assertIs(table.cast('y'), False)
        table.remove('y')
        self.assertRaises(ValueError, table.cast, 'y')

        table.add_false(None)
        self.assertIs(table.cast(None), False)
        table.reset()
        self.assertIs(table.cast(None), None)

    def test_default_table_reset(self):
        casting.default_boolean_table.add_true('si')
        self.assertIs(casting.default_boolean_table.cast('si'), True)
        casting.default_boolean_table.reset()
        self.assertRaises(ValueError, casting.default_boolean_table.cast, 'si')
