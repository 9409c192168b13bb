#!/usr/bin/env python

"""
@file odm/core/document/test/test_change_tracker.py
@brief test dirty path bookkeeping and update deltas
"""

from bson import ObjectId

from odm.core.document.change_tracker import ActivePaths
from odm.core.document.document import Document
from odm.core.document.schema import Schema
from odm.test.odmtest import OdmTestCase


class ActivePathsTest(OdmTestCase):

    def test_one_state_per_path(self):
        active = ActivePaths()
        active.require('a')
        active.modify('a')
        active.init('b')
        self.assertEqual(active.state_of('a'), 'modify')
        self.assertEqual(active.get_state_paths('require'), [])
        self.assertEqual(active.paths_in_states('modify', 'init'), ['a', 'b'])
        active.clear('modify')
        self.assertIs(active.state_of('a'), None)
        self.assertEqual(active.get_state_paths('init'), ['b'])


class ChangeTrackerTest(OdmTestCase):

    def setUp(self):
        OdmTestCase.setUp(self)
        self.Doc = Document.for_schema(Schema({
            'name': str,
            'age': int,
            'meta': {'a': str, 'b': str},
            'nums': [int],
            'items': [{'name': str}],
        }))

    def _loaded(self):
        doc = self.Doc(skip_id=True)
        doc.init({'_id': ObjectId(), 'name': 'a', 'age': 1, 'meta': {'a': 'x', 'b': 'y'},
                  'nums': [1, 2], 'items': [{'_id': ObjectId(), 'name': 'one'}]})
        return doc

    def test_new_document(self):
        doc = self.Doc({'name': 'a'})
        changes = doc.get_changes()
        self.assertEqual(changes['$set']['name'], 'a')
        # Defaults go out with the first update, _id excepted
        self.assertEqual(changes['$set']['nums'], [])
        self.assertNotIn('_id', changes['$set'])

    def test_clean_after_init(self):
        doc = self._loaded()
        self.assertEqual(doc.get_changes(), {})
        self.assertFalse(doc.is_modified())
        self.assertTrue(doc.is_init('name'))

    def test_set_unset_null(self):
        doc = self._loaded()
        doc.name = 'b'
        doc.unset('age')
        doc.set('meta.a', None)
        self.assertEqual(doc.get_changes(), {'$set': {'name': 'b', 'meta.a': None},
                                             '$unset': {'age': 1}})

    def test_revert_unmarks(self):
        doc = self._loaded()
        doc.name = 'b'
        self.assertTrue(doc.is_modified('name'))
        doc.name = 'a'
        self.assertFalse(doc.is_modified('name'))
        self.assertEqual(doc.get_changes(), {})

    def test_modified_paths(self):
        doc = self._loaded()
        doc.set('meta.a', 'z')
        self.assertEqual(doc.direct_modified_paths(), ['meta.a'])
        self.assertEqual(sorted(doc.modified_paths()), ['meta', 'meta.a'])
        self.assertTrue(doc.is_modified('meta'))
        self.assertTrue(doc.is_direct_modified('meta.a'))
        self.assertFalse(doc.is_direct_modified('meta'))

    def test_replace_nested_subsumes_children(self):
        doc = self._loaded()
        doc.set('meta.a', 'z')
        doc.meta = {'a': 'q', 'b': 'y'}
        self.assertEqual(doc.get_changes(), {'$set': {'meta': {'a': 'q', 'b': 'y'}}})
        self.assertEqual(sorted(doc.modified_paths(include_children=True)),
                         ['meta', 'meta.a', 'meta.b'])

    def test_subsumed_mark(self):
        doc = self._loaded()
        doc.mark_modified('meta')
        doc.mark_modified('meta.a')
        self.assertEqual(doc.direct_modified_paths(), ['meta'])
        doc.unmark_modified('meta')
        self.assertFalse(doc.is_modified())

    def test_positional_write_after_atomic(self):
        doc = self._loaded()
        doc.nums.push(3)
        doc.nums[0] = 9
        self.assertEqual(doc.get_changes(), {'$set': {'nums': [9, 2, 3]}})

        doc = self._loaded()
        doc.nums[0] = 9
        doc.nums.push(3)
        self.assertEqual(doc.get_changes(), {'$set': {'nums': [9, 2, 3]}})

    def test_subdocument_write_after_atomic(self):
        doc = self._loaded()
        doc.items.push({'name': 'two'})
        doc.items[0].name = 'ONE'
        changes = doc.get_changes()
        self.assertEqual([i['name'] for i in changes['$set']['items']], ['ONE', 'two'])

    def test_subdocument_change(self):
        doc = self._loaded()
        doc.items[0].name = 'ONE'
        self.assertEqual(doc.get_changes(), {'$set': {'items.0.name': 'ONE'}})
        self.assertTrue(doc.is_modified('items'))
        self.assertIn('items.0.name', doc.modified_paths(include_children=True))

    def test_ignore(self):
        doc = self._loaded()
        doc.name = 'b'
        doc.age = 2
        doc.ignore('name')
        self.assertEqual(doc.get_changes(), {'$set': {'age': 2}})
        self.assertEqual(doc.name, 'b')

    def test_reset(self):
        doc = self._loaded()
        doc.name = 'b'
        doc.nums.push(3)
        doc.reset()
        self.assertEqual(doc.get_changes(), {})
        self.assertTrue(doc.is_init('name'))
        self.assertEqual(doc.nums._atomics, {})
