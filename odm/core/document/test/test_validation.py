#!/usr/bin/env python

"""
@file odm/core/document/test/test_validation.py
@brief test validation passes: required, validators, subdocuments, concurrency
"""

import gc

from twisted.internet import defer, reactor, task

import odm.util.odmlog
log = odm.util.odmlog.getLogger(__name__)

from odm.core.exception import OdmError
from odm.core.document.document import Document, ValidationState
from odm.core.document.errors import ValidationError, ValidatorError, \
    ParallelValidateError
from odm.core.document.schema import Schema
from odm.test.odmtest import OdmTestCase


class ValidationTest(OdmTestCase):

    @defer.inlineCallbacks
    def test_required(self):
        Doc = Document.for_schema(Schema({'name': {'type': str, 'required': True}}))
        doc = Doc()
        try:
            yield doc.validate()
            self.fail('expected ValidationError')
        except ValidationError as ex:
            self.assertValidationError(ex, 'name')
            self.assertEqual(ex.errors['name'].kind, 'required')
            self.assertEqual(ex.errors['name'].message, 'Path `name` is required.')
        self.assertEqual(doc.validation_state, ValidationState.INVALID)
        self.assertIn('name', doc.errors)

        doc.name = 'x'
        yield doc.validate()
        self.assertEqual(doc.validation_state, ValidationState.VALID)
        self.assertIs(doc.errors, None)

    def test_required_short_circuits(self):
        calls = []

        def check(value, doc):
            calls.append(value)
            return True
        Doc = Document.for_schema(Schema({'name': {'type': str, 'required': True,
                                                   'validate': check}}))
        err = Doc().validate_sync()
        self.assertValidationError(err, 'name')
        self.assertEqual(calls, [])

    def test_validator_runs_once(self):
        calls = []

        def check(value, doc):
            calls.append(value)
            return True
        Doc = Document.for_schema(Schema({'name': {'type': str, 'validate': check},
                                          'nested': {'inner': {'type': str, 'validate': check}}}))
        doc = Doc({'name': 'a', 'nested': {'inner': 'b'}})
        self.assertIs(doc.validate_sync(), None)
        self.assertEqual(sorted(calls), ['a', 'b'])

    def test_builtin_validators(self):
        Doc = Document.for_schema(Schema({
            'age': {'type': int, 'min': 0, 'max': 10},
            'kind': {'type': str, 'enum': ['a', 'b']},
            'code': {'type': str, 'match': '^[0-9]+$', 'minlength': 2},
        }))
        err = Doc({'age': 11, 'kind': 'c', 'code': 'x'}).validate_sync()
        self.assertValidationError(err, 'age', 'kind', 'code')
        self.assertEqual(err.errors['age'].kind, 'max')
        self.assertEqual(err.errors['kind'].kind, 'enum')
        self.assertEqual(err.errors['code'].kind, 'regexp')
        self.assertIs(Doc({'age': 5, 'kind': 'a', 'code': '12'}).validate_sync(), None)

    def test_custom_message(self):
        Doc = Document.for_schema(Schema({
            'n': {'type': int, 'validate': [lambda v, doc: v > 0, '{PATH} must be positive, got {VALUE}']}}))
        err = Doc({'n': -2}).validate_sync()
        self.assertEqual(err.errors['n'].message, 'n must be positive, got -2')

    def test_array_elements(self):
        Doc = Document.for_schema(Schema({'nums': [{'type': int, 'min': 0}]}))
        err = Doc({'nums': [1, -1]}).validate_sync()
        self.assertValidationError(err, 'nums')
        self.assertEqual(err.errors['nums'].path, 'nums.1')

    def test_subdocuments(self):
        child = Schema({'name': {'type': str, 'required': True}})
        Doc = Document.for_schema(Schema({'items': [child], 'single': child}))
        doc = Doc({'items': [{'name': 'ok'}, {}], 'single': {}})
        err = doc.validate_sync()
        self.assertIn('items.1.name', err.errors)
        self.assertIn('single.name', err.errors)
        self.assertIsInstance(err.errors['single'], ValidationError)
        self.assertNotIn('items.1', err.errors)

    @defer.inlineCallbacks
    def test_async_validator(self):
        def later(value, doc):
            return task.deferLater(reactor, 0, lambda: value == 'good')
        Doc = Document.for_schema(Schema({'name': {'type': str, 'validate': later}}))
        yield Doc({'name': 'good'}).validate()
        try:
            yield Doc({'name': 'bad'}).validate()
            self.fail('expected ValidationError')
        except ValidationError as ex:
            self.assertIsInstance(ex.errors['name'], ValidatorError)

        # Skipped by the synchronous pass
        self.assertIs(Doc({'name': 'bad'}).validate_sync(), None)
        yield task.deferLater(reactor, 0, lambda: None)

    @defer.inlineCallbacks
    def test_parallel_validate(self):
        def slow(value, doc):
            return task.deferLater(reactor, 0.01, lambda: True)
        Doc = Document.for_schema(Schema({'name': {'type': str, 'validate': slow},
                                          'age': int}))
        doc = Doc({'name': 'a', 'age': 1})
        first = doc.validate()
        self.assertEqual(doc.validation_state, ValidationState.VALIDATING)
        try:
            yield doc.validate()
            self.fail('expected ParallelValidateError')
        except ParallelValidateError:
            pass
        yield first
        self.assertEqual(doc.validation_state, ValidationState.VALID)

        # Disjoint path sets may run together
        d1 = doc.validate(paths=['name'])
        d2 = doc.validate(paths=['age'])
        yield defer.gatherResults([d1, d2])

    @defer.inlineCallbacks
    def test_concurrent_validators(self):
        # Two slow validators overlap instead of running back to back
        order = []

        def slow(tag):
            def check(value, doc):
                order.append('start ' + tag)
                def done():
                    order.append('end ' + tag)
                    return True
                return task.deferLater(reactor, 0.01, done)
            return check
        Doc = Document.for_schema(Schema({'a': {'type': str, 'validate': slow('a')},
                                          'b': {'type': str, 'validate': slow('b')}}))
        yield Doc({'a': 'x', 'b': 'y'}).validate()
        self.assertEqual(order[:2], ['start a', 'start b'])

    @defer.inlineCallbacks
    def test_hooks(self):
        calls = []
        schema = Schema({'name': str})
        schema.pre('validate', lambda doc: calls.append('pre'))
        schema.post('validate', lambda doc, result: calls.append('post'))
        Doc = Document.for_schema(schema)
        yield Doc({'name': 'a'}).validate()
        self.assertEqual(calls, ['pre', 'post'])

    @defer.inlineCallbacks
    def test_pre_hook_failure(self):
        schema = Schema({'name': str})

        def refuse(doc):
            raise ValueError('no')
        schema.pre('validate', refuse)
        doc = Document.for_schema(schema)({'name': 'a'})
        try:
            yield doc.validate()
            self.fail('expected ValueError')
        except ValueError:
            pass
        self.assertEqual(doc.validation_state, ValidationState.INVALID)
        # Guard released
        schema.hooks._pres['validate'] = []
        yield doc.validate()

    def test_modified_only(self):
        Doc = Document.for_schema(Schema({'a': {'type': int, 'min': 0}, 'b': {'type': int, 'min': 0}}))
        doc = Doc(skip_id=True)
        doc.init({'a': -1, 'b': 1})
        doc.b = 2
        self.assertIs(doc.validate_sync(modified_only=True), None)
        self.assertValidationError(doc.validate_sync(), 'a')

    def test_explicit_paths(self):
        Doc = Document.for_schema(Schema({'a': {'type': int, 'min': 0}, 'b': {'type': int, 'min': 0}}))
        doc = Doc({'a': -1, 'b': -1})
        self.assertValidationError(doc.validate_sync('b'), 'b')

    def test_invalidate(self):
        Doc = Document.for_schema(Schema({'name': str}))
        doc = Doc({'name': 'a'})
        doc.invalidate('name', 'bad name', 'a')
        self.assertFalse(doc.is_valid('name'))
        self.assertEqual(doc.errors['name'].message, 'bad name')
        err = doc.validate_sync()
        self.assertValidationError(err, 'name')
        # Consumed by the pass
        self.assertIs(doc.validate_sync(), None)

        doc.invalidate('name', 'bad')
        doc.mark_valid('name')
        self.assertTrue(doc.is_valid())
        self.assertIs(doc.validate_sync(), None)

    def test_ignored_path_skipped(self):
        Doc = Document.for_schema(Schema({'name': {'type': str, 'required': True}}))
        doc = Doc(skip_id=True)
        doc.init({'name': 'a'})
        doc.name = None
        doc.ignore('name')
        self.assertIs(doc.validate_sync(), None)

    def test_error_to_dict(self):
        Doc = Document.for_schema(Schema({'age': {'type': int, 'min': 0}}))
        err = Doc({'age': -1}).validate_sync()
        data = err.to_dict()
        self.assertEqual(data['name'], 'ValidationError')
        self.assertEqual(data['errors']['age']['kind'], 'min')
        self.assertIn('age', err.to_json())

    @defer.inlineCallbacks
    def test_validator_once_per_document(self):
        calls = []

        def check(value, doc):
            calls.append(value)
            return True
        Doc = Document.for_schema(Schema({'name': {'type': str, 'validate': check}}))
        docs = [Doc({'name': 'n%d' % i}) for i in range(5)]
        for doc in docs:
            for _ in range(3):
                self.assertEqual(doc.name, doc.get('name'))
        for doc in docs:
            yield doc.validate()
        self.assertEqual(calls, ['n0', 'n1', 'n2', 'n3', 'n4'])

    @defer.inlineCallbacks
    def test_sync_failure_settles_running_validators(self):
        def rejects_later(value, doc):
            return defer.fail(ValueError('rejected later'))
        Doc = Document.for_schema(Schema({'name': {'type': str, 'validate': [
            {'validator': rejects_later},
            {'validator': lambda v, doc: False, 'message': 'rejected now'}]}}))
        try:
            yield Doc({'name': 'a'}).validate()
            self.fail('expected ValidationError')
        except ValidationError as ex:
            self.assertEqual(ex.errors['name'].message, 'rejected now')
        gc.collect()
        self.assertEqual(self.flushLoggedErrors(ValueError), [])

    def test_error_cannot_contain_itself(self):
        err = ValidationError()
        self.assertRaises(OdmError, err.add_error, 'x', err)
