#!/usr/bin/env python

"""
@file odm/core/document/test/test_model.py
@brief test model registry, save/remove lifecycle and hooks
"""

import datetime

from bson import ObjectId
from bson.errors import InvalidId
from twisted.internet import defer

import odm.util.odmlog
log = odm.util.odmlog.getLogger(__name__)

from odm.core.exception import OdmError
from odm.core.data.store import Collection
from odm.core.document.errors import ValidationError, DocumentNotFoundError
from odm.core.document.model import model, get_model
from odm.core.document.schema import Schema
from odm.test.odmtest import OdmTestCase


def person_schema(**options):
    item = Schema({'name': str})
    return Schema({
        'name': {'type': str, 'required': True},
        'age': {'type': int, 'min': 0},
        'items': [item],
    }, **options)


class ModelRegistryTest(OdmTestCase):

    def test_compile_once(self):
        schema = person_schema()
        Person = model('Person', schema)
        self.assertIs(model('Person', schema), Person)
        self.assertIs(model('Person'), Person)
        self.assertIs(get_model('Person'), Person)
        self.assertEqual(Person.model_name, 'Person')
        self.assertEqual(Person.collection.name, 'persons')
        self.assertRaises(OdmError, model, 'Person', person_schema())
        self.assertRaises(OdmError, get_model, 'Nobody')

    def test_statics_and_methods(self):
        schema = person_schema()
        schema.static('by_name', lambda cls, name: cls.find_one({'name': name}))
        schema.method('greet', lambda doc: 'hi ' + doc.name)
        Person = model('Person', schema)
        self.assertEqual(Person({'name': 'a'}).greet(), 'hi a')
        self.assertTrue(callable(Person.by_name))

    def test_validation_error_names_model(self):
        Person = model('Person', person_schema())
        err = Person().validate_sync()
        self.assertTrue(err.message.startswith('Person validation failed'))


class ModelSaveTest(OdmTestCase):

    def setUp(self):
        OdmTestCase.setUp(self)
        self.collection = Collection('people')
        self.schema = person_schema()
        self.Person = model('Person', self.schema, collection=self.collection)

    @defer.inlineCallbacks
    def test_insert(self):
        doc = self.Person({'name': 'a', 'age': 3, 'items': [{'name': 'x'}]})
        saved = yield doc.save()
        self.assertIs(saved, doc)
        self.assertFalse(doc.is_new)
        self.assertEqual(doc.get_changes(), {})
        self.assertFalse(doc.items[0].is_new)

        stored = self.collection.docs[0]
        self.assertEqual(stored['_id'], doc._id)
        self.assertEqual(stored['name'], 'a')
        self.assertEqual(stored['items'][0]['name'], 'x')
        self.assertIs(type(stored['items']), list)

    @defer.inlineCallbacks
    def test_update(self):
        doc = yield self.Person.create({'name': 'a', 'age': 3, 'items': [{'name': 'x'}]})
        doc.age = 4
        doc.items.push({'name': 'y'})
        doc.items[0].name = 'X'
        yield doc.save()

        found = yield self.Person.find_by_id(str(doc._id))
        self.assertEqual(found.age, 4)
        self.assertEqual([i.name for i in found.items], ['X', 'y'])
        self.assertFalse(found.is_new)
        self.assertEqual(found.get_changes(), {})

        found.items.pull(found.items[1]._id)
        found.unset('age')
        yield found.save()
        stored = self.collection.docs[0]
        self.assertNotIn('age', stored)
        self.assertEqual(len(stored['items']), 1)

    @defer.inlineCallbacks
    def test_validation_blocks_save(self):
        doc = self.Person({'age': -1})
        try:
            yield doc.save()
            self.fail('expected ValidationError')
        except ValidationError as ex:
            self.assertValidationError(ex, 'name', 'age')
        self.assertEqual(self.collection.docs, [])
        self.assertTrue(doc.is_new)

        yield doc.save(validate_before_save=False)
        self.assertEqual(len(self.collection.docs), 1)

    @defer.inlineCallbacks
    def test_hook_order(self):
        calls = []
        item_schema = Schema({'name': str})
        item_schema.pre('save', lambda doc: calls.append('item pre'))
        item_schema.post('save', lambda doc, result: calls.append('item post'))
        schema = Schema({'name': str, 'items': [item_schema]})
        schema.pre('validate', lambda doc: calls.append('validate'))
        schema.pre('save', lambda doc: calls.append('pre'))
        schema.post('save', lambda doc, result: calls.append('post'))
        Thing = model('Thing', schema)
        yield Thing({'name': 'a', 'items': [{'name': 'x'}]}).save()
        self.assertEqual(calls, ['validate', 'item pre', 'pre', 'post', 'item post'])

    @defer.inlineCallbacks
    def test_pre_save_hook_aborts(self):
        def refuse(doc):
            raise ValueError('read only')
        self.schema.pre('save', refuse)
        try:
            yield self.Person({'name': 'a'}).save()
            self.fail('expected ValueError')
        except ValueError:
            pass
        self.assertEqual(self.collection.docs, [])

    @defer.inlineCallbacks
    def test_deleted_document(self):
        doc = yield self.Person.create({'name': 'a'})
        yield self.Person.delete_one({'_id': doc._id})

        doc.name = 'b'
        try:
            yield doc.save()
            self.fail('expected DocumentNotFoundError')
        except DocumentNotFoundError as ex:
            self.assertEqual(ex.filter, {'_id': doc._id})
            self.assertEqual(ex.model_name, 'Person')
        # Changes stay pending
        self.assertTrue(doc.is_modified('name'))

        doc.reset()
        try:
            yield doc.save()
            self.fail('expected DocumentNotFoundError')
        except DocumentNotFoundError:
            pass

    @defer.inlineCallbacks
    def test_ignore(self):
        doc = yield self.Person.create({'name': 'a', 'items': [{'name': 'x'}]})
        doc.name = 'b'
        doc.ignore('name')
        doc.items[0].name = 'y'
        doc.items[0].ignore('name')
        yield doc.save()
        stored = self.collection.docs[0]
        self.assertEqual(stored['name'], 'a')
        self.assertEqual(stored['items'][0]['name'], 'x')
        self.assertEqual(doc.name, 'b')

    @defer.inlineCallbacks
    def test_callback(self):
        results = []
        doc = self.Person({'name': 'a'})
        yield doc.save(callback=lambda err, saved: results.append((err, saved)))
        self.assertEqual(results, [(None, doc)])

        results = []
        yield self.Person().save(callback=lambda err, saved: results.append((err, saved)))
        self.assertIsInstance(results[0][0], ValidationError)
        self.assertIs(results[0][1], None)

    @defer.inlineCallbacks
    def test_callback_error_emitted(self):
        emitted = []
        self.Person.on_error(emitted.append)

        def broken(err, saved):
            raise RuntimeError('callback failed')
        doc = self.Person({'name': 'a'})
        result = yield doc.save(callback=broken)
        self.assertIs(result, doc)
        self.assertEqual(len(emitted), 1)
        self.assertIsInstance(emitted[0], RuntimeError)

    @defer.inlineCallbacks
    def test_create_many_and_find(self):
        docs = yield self.Person.create([{'name': 'a'}, {'name': 'b'}])
        self.assertEqual([d.name for d in docs], ['a', 'b'])
        count = yield self.collection.count()
        self.assertEqual(count, 2)

        found = yield self.Person.find_one({'name': 'b'})
        self.assertTrue(found.equals(docs[1]))
        missing = yield self.Person.find_one({'name': 'c'})
        self.assertIs(missing, None)

        found = yield self.Person.find_by_id(docs[0]._id, fields={'name': 1})
        self.assertTrue(found.is_selected('name'))
        self.assertFalse(found.is_selected('age'))

    @defer.inlineCallbacks
    def test_find_by_bad_id(self):
        try:
            yield self.Person.find_by_id('nope')
            self.fail('expected InvalidId')
        except InvalidId:
            pass

    @defer.inlineCallbacks
    def test_remove(self):
        calls = []
        self.schema.pre('remove', lambda doc: calls.append('pre'))
        self.schema.post('remove', lambda doc, result: calls.append('post'))
        doc = yield self.Person.create({'name': 'a'})
        yield doc.remove()
        self.assertEqual(calls, ['pre', 'post'])
        self.assertEqual(self.collection.docs, [])


class ModelFeatureTest(OdmTestCase):

    @defer.inlineCallbacks
    def test_timestamps(self):
        Stamped = model('Stamped', Schema({'name': str}, timestamps=True))
        doc = Stamped({'name': 'a'})
        yield doc.save()
        self.assertIsInstance(doc.created_at, datetime.datetime)
        self.assertEqual(doc.created_at, doc.updated_at)
        created = doc.created_at

        doc.name = 'b'
        doc.created_at = datetime.datetime(2000, 1, 1)
        yield doc.save()
        self.assertEqual(doc.created_at, created)
        self.assertTrue(doc.updated_at >= created)

    @defer.inlineCallbacks
    def test_populated_reference(self):
        User = model('User', Schema({'name': str}))
        Post = model('Post', Schema({'title': str, 'author': {'type': ObjectId, 'ref': 'User'}}))
        user = yield User.create({'name': 'ada'})
        post = Post({'title': 't'})
        post.author = user
        self.assertIs(post.author, user)
        self.assertEqual(post.populated('author'), user._id)
        self.assertEqual(post.to_object()['author']['name'], 'ada')
        self.assertEqual(post.to_object(depopulate=True)['author'], user._id)

        yield post.save()
        self.assertEqual(Post.collection.docs[0]['author'], user._id)

        post.depopulate('author')
        self.assertEqual(post.author, user._id)
        self.assertIs(post.populated('author'), None)

    @defer.inlineCallbacks
    def test_deselected_path_not_loaded(self):
        Secret = model('Secret', Schema({'name': str, 'hidden': {'type': str, 'select': False}}))
        doc = yield Secret.create({'name': 'John', 'hidden': 'A secret'})
        self.assertEqual(Secret.collection.docs[0]['hidden'], 'A secret')

        found = yield Secret.find_by_id(doc._id)
        self.assertEqual(found.name, 'John')
        self.assertIs(found.hidden, None)
        self.assertFalse(found.is_selected('hidden'))

        found = yield Secret.find_by_id(doc._id, fields={'name': 1, 'hidden': 1})
        self.assertEqual(found.hidden, 'A secret')


class ModelScenarioTest(OdmTestCase):

    @defer.inlineCallbacks
    def test_validator_and_required_on_save(self):
        calls = []

        def check(value, doc):
            calls.append(value)
            return True
        Thing = model('Thing', Schema({
            'prop': {'type': str, 'required': True, 'validate': [check, 'BAM']},
            'nick': {'type': str, 'required': True},
        }))
        yield Thing({'prop': 'lambda', 'nick': 'no'}).save()
        self.assertEqual(calls, ['lambda'])

        calls = []
        try:
            yield Thing({'nick': 'no'}).save()
            self.fail('expected ValidationError')
        except ValidationError as ex:
            self.assertValidationError(ex, 'prop')
            self.assertEqual(ex.errors['prop'].kind, 'required')
        self.assertEqual(calls, [])

    @defer.inlineCallbacks
    def test_ignored_subdocument_path_kept_on_reload(self):
        child = Schema({'name': {'type': str, 'required': True}})
        Parent = model('Parent', Schema({'child': child, 'items': [child]}))
        doc = yield Parent.create({'child': {'name': 'a'}, 'items': [{'name': 'b'}]})

        doc.child.name = None
        doc.child.ignore('name')
        doc.items[0].name = None
        doc.items[0].ignore('name')
        yield doc.save()

        found = yield Parent.find_by_id(doc._id)
        self.assertEqual(found.child.name, 'a')
        self.assertEqual(found.items[0].name, 'b')
