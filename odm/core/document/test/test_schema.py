#!/usr/bin/env python

"""
@file odm/core/document/test/test_schema.py
@brief test schema compilation and path resolution
"""

import datetime

from bson import ObjectId

import odm.util.odmlog
log = odm.util.odmlog.getLogger(__name__)

from odm.core.exception import OdmError
from odm.core.document import schematypes
from odm.core.document import schema as schema_module
from odm.core.document.schema import Schema, Map, Mixed
from odm.test.odmtest import OdmTestCase


class SchemaTest(OdmTestCase):

    def test_paths(self):
        schema = Schema({
            'name': str,
            'age': {'type': int, 'min': 0},
            'born': datetime.datetime,
            'alive': bool,
            'meta': {},
            'owner': ObjectId,
            'raw': bytes,
            'nested': {'first': str, 'deep': {'x': float}},
        })
        self.assertIsInstance(schema.path('name'), schematypes.String)
        self.assertIsInstance(schema.path('age'), schematypes.Number)
        self.assertIsInstance(schema.path('born'), schematypes.Date)
        self.assertIsInstance(schema.path('alive'), schematypes.Boolean)
        self.assertIsInstance(schema.path('meta'), schematypes.Mixed)
        self.assertIsInstance(schema.path('owner'), schematypes.ObjectIdType)
        self.assertIsInstance(schema.path('raw'), schematypes.Buffer)
        self.assertIsInstance(schema.path('nested.deep.x'), schematypes.Number)
        self.assertIsInstance(schema.path('_id'), schematypes.ObjectIdType)

        self.assertIn('nested', schema.nested)
        self.assertIn('nested.deep', schema.nested)
        self.assertNotIn('nested', schema.paths)
        self.assertEqual(schema.path_type('nested'), 'nested')
        self.assertEqual(schema.path_type('nested.first'), 'real')
        self.assertEqual(schema.path_type('id'), 'virtual')
        self.assertEqual(schema.path_type('unknown'), 'adhocOrUndefined')

    def test_type_names(self):
        schema = Schema({'a': 'String', 'b': {'type': 'Number'}, 'c': Mixed})
        self.assertIsInstance(schema.path('a'), schematypes.String)
        self.assertIsInstance(schema.path('b'), schematypes.Number)
        self.assertIsInstance(schema.path('c'), schematypes.Mixed)

    def test_invalid_type(self):
        self.assertRaises(TypeError, Schema, {'a': 'Nope'})
        self.assertRaises(TypeError, Schema, {'a': None})

    def test_reserved_names(self):
        self.assertRaises(OdmError, Schema, {'save': str})
        self.assertRaises(OdmError, Schema, {'__proto__': str})
        schema = Schema({'name': str})
        self.assertRaises(OdmError, schema.method, 'validate', lambda doc: None)

    def test_nested_type_key(self):
        schema = Schema({'asset': {'type': {'type': str}, 'name': str}})
        self.assertIn('asset', schema.nested)
        self.assertIsInstance(schema.path('asset.type'), schematypes.String)

    def test_arrays(self):
        child = Schema({'title': str})
        schema = Schema({
            'tags': [str],
            'any': [],
            'matrix': [[int]],
            'comments': [child],
            'inline': [{'body': str}],
        })
        tags = schema.path('tags')
        self.assertIsInstance(tags, schematypes.Array)
        self.assertIsInstance(tags.caster, schematypes.String)
        self.assertIsInstance(schema.path('any').caster, schematypes.Mixed)
        self.assertEqual(schema.path('matrix').depth(), 2)
        self.assertIsInstance(schema.path('comments'), schematypes.DocumentArray)
        self.assertIs(schema.path('comments').schema, child)
        self.assertIsInstance(schema.path('inline'), schematypes.DocumentArray)

        # Positional and subdocument paths resolve through the containers
        self.assertIsInstance(schema.path('tags.0'), schematypes.String)
        self.assertIsInstance(schema.path('comments.0.title'), schematypes.String)
        self.assertIsInstance(schema.path('comments.$.title'), schematypes.String)
        self.assertIsInstance(schema.path('matrix.0.1'), schematypes.Number)

    def test_single_nested_and_map(self):
        child = Schema({'street': str})
        schema = Schema({
            'address': child,
            'scores': {'type': Map, 'of': int},
        })
        self.assertIsInstance(schema.path('address'), schematypes.SingleNested)
        self.assertIsInstance(schema.path('address.street'), schematypes.String)
        scores = schema.path('scores')
        self.assertIsInstance(scores, schematypes.Map)
        self.assertIsInstance(scores.value_type, schematypes.Number)
        self.assertIsInstance(schema.path('scores.math'), schematypes.Number)

    def test_nested_under_real_path(self):
        schema = Schema({'name': str})
        self.assertRaises(TypeError, schema.path, 'name.first', str)

    def test_options(self):
        schema = Schema({'name': str}, strict='throw', _id=False)
        self.assertEqual(schema.get('strict'), 'throw')
        self.assertNotIn('_id', schema.paths)
        self.assertNotIn('id', schema.virtuals)
        schema.set('minimize', False)
        self.assertEqual(schema.get('minimize'), False)

        child_schema = Schema({'inline': {'type': {'x': str}}}, strict=False)
        child = child_schema.path('inline').schema
        self.assertEqual(child.get('strict'), False)

    def test_required_paths(self):
        schema = Schema({'name': {'type': str, 'required': True}, 'age': int})
        self.assertEqual(schema.required_paths(), ['name'])

    def test_virtuals_and_aliases(self):
        schema = Schema({'n': {'type': str, 'alias': 'name'}})
        self.assertEqual(schema.path_type('name'), 'virtual')
        self.assertTrue(schema.virtuals.is_alias('name'))
        full = schema.virtual('info.full').get(lambda v, virtual, doc: 'x')
        self.assertEqual(schema.virtuals.get('info.full'), full)
        self.assertEqual(schema.path_type('info'), 'nested')
        self.assertRaises(OdmError, schema.virtual, 'n')

    def test_timestamps(self):
        schema = Schema({'name': str}, timestamps=True)
        self.assertIsInstance(schema.path('created_at'), schematypes.Date)
        self.assertIsInstance(schema.path('updated_at'), schematypes.Date)
        self.assertEqual(schema.timestamps, ('created_at', 'updated_at'))
        self.assertTrue(schema.hooks.has_hooks('save'))

        schema = Schema({'name': str}, timestamps={'created_at': 'born'})
        self.assertIsInstance(schema.path('born'), schematypes.Date)

    def test_is_mixed_subpath(self):
        schema = Schema({'meta': Mixed, 'tags': [str]})
        self.assertTrue(schema.is_mixed_subpath('meta.a.b'))
        self.assertFalse(schema.is_mixed_subpath('meta'))
        self.assertFalse(schema.is_mixed_subpath('tags.0'))

    def test_subpath_cache_bounded(self):
        self.patch(schema_module, 'SUBPATH_CACHE_SIZE', 2)
        schema = Schema({'items': [{'name': str}]})
        name = schema.path('items.0.name')
        self.assertIsInstance(name, schematypes.String)
        for i in range(5):
            self.assertIs(schema.path('items.%d.name' % i), name)
        self.assertTrue(len(schema.subpaths) <= 2)

    def test_deselected_paths(self):
        schema = Schema({'name': str, 'hidden': {'type': str, 'select': False}})
        self.assertEqual(schema.deselected_paths(), ['hidden'])
        self.assertEqual(schema.default_fields(None), {'hidden': 0})
        self.assertEqual(schema.default_fields({'age': 0}), {'age': 0, 'hidden': 0})
        self.assertEqual(schema.default_fields({'name': 1}), {'name': 1})
        self.assertEqual(schema.default_fields({'hidden': 1}), {'hidden': 1})
        self.assertIs(Schema({'name': str}).default_fields(None), None)
