#!/usr/bin/env python
"""
@file odm/core/document/schematypes.py
@brief Per path casting, setters, getters, defaults and validators.

A SchemaType is bound to one path of a compiled Schema. Document.set routes
every write through apply_setters (user setters in declaration order, then
the type cast); validation asks the type to check required and run its
validators once per pass.
"""

import datetime
import inspect
import re

from twisted.internet import defer
from twisted.python import failure

from bson import ObjectId

from odm.core.document import casting
from odm.core.document.errors import CastError, ValidatorError, ObjectExpectedError, \
    ObjectParameterError, MESSAGES
from odm.core.document.object_utils import UNDEFINED, is_nullish, is_document, \
    is_plain_mapping, value_kind, ValueKind, external_to_mapping, clone
from odm.core.document.validation import PathOutcome

import odm.util.odmlog
log = odm.util.odmlog.getLogger(__name__)


class SchemaType(object):
    """
    Base schema type: Mixed semantics, no cast.
    """

    instance = 'Mixed'

    # (option name, method name), applied in this order
    OPTION_METHODS = (('default', 'default'), ('set', 'set_fn'), ('get', 'get_fn'),
                      ('required', 'required'), ('validate', 'validate'),
                      ('immutable', 'immutable'), ('select', 'select'), ('ref', 'set_ref'),
                      ('transform', 'transform'), ('alias', 'alias'))

    is_array = False
    is_document_array = False
    is_single_nested = False
    is_map = False

    def __init__(self, path, options=None, schema=None):
        self.path = path
        self.options = dict(options or {})
        self.schema_owner = schema
        self.setters = []
        self.getters = []
        self.validators = []
        self.default_value = UNDEFINED
        self.is_required = False
        self.required_message = None
        self.selected = None
        self.ref = None
        self.transform_fn = None
        self.alias_name = None
        self._immutable = False
        self._apply_options(self.options)

    def _apply_options(self, options):
        methods = list(self.OPTION_METHODS) + [(name, name) for name in self.type_options()]
        for name, method_name in methods:
            if name in options:
                value = options[name]
                method = getattr(self, method_name)
                if name in ('set', 'get') and isinstance(value, (list, tuple)):
                    for fn in value:
                        method(fn)
                elif name == 'required' and isinstance(value, (list, tuple)):
                    method(*value)
                else:
                    method(value)

    def type_options(self):
        return ()

    def __repr__(self):
        return '<%s path=%s>' % (self.__class__.__name__, self.path)

    #-----------------------------------------------------------------#
    # Option methods
    #-----------------------------------------------------------------#

    def default(self, value):
        """
        Sets the default: a constant (copied per document) or a callable
        taking the document.
        """
        self.default_value = value
        return self

    def set_fn(self, fn):
        """
        Adds a user setter fn(value, doc); setters run in declaration order.
        """
        self.setters.append(fn)
        return self

    def get_fn(self, fn):
        """
        Adds a getter fn(value, doc), applied on read.
        """
        self.getters.append(fn)
        return self

    def required(self, required=True, message=None):
        """
        @param required bool or callable(doc) returning bool
        """
        if required is False:
            self.is_required = False
            self.required_message = None
            return self
        self.is_required = required
        self.required_message = message
        return self

    def validate(self, obj, message=None, kind='user defined'):
        """
        Adds validators. Accepts a callable fn(value, doc), a pair
        [fn, message], a dict {validator, message, type, is_async} or a list
        of such dicts. A compiled regexp validates strings.
        """
        if isinstance(obj, (list, tuple)):
            if obj and (callable(obj[0]) or _is_regexp(obj[0])) and not isinstance(obj[0], dict):
                # [fn, message(, type)]
                self._add_validator(obj[0], obj[1] if len(obj) > 1 else message,
                                    obj[2] if len(obj) > 2 else kind)
            else:
                for item in obj:
                    self.validate(item, message, kind)
            return self
        if isinstance(obj, dict):
            self._add_validator(obj['validator'], obj.get('message', message),
                                obj.get('type', kind), obj.get('is_async', False))
            return self
        self._add_validator(obj, message, kind)
        return self

    def _add_validator(self, fn, message=None, kind='user defined', is_async=False, **props):
        if _is_regexp(fn):
            regexp = fn
            fn = lambda v, doc: v is None or bool(regexp.search(v))
        if not callable(fn):
            raise TypeError('Invalid validator for path `%s`: %r' % (self.path, fn))
        validator = dict(props)
        validator.update({'validator': fn, 'message': message, 'type': kind, 'is_async': is_async})
        self.validators.append(validator)
        return validator

    def immutable(self, value):
        self._immutable = value
        return self

    def select(self, value):
        self.selected = bool(value)
        return self

    def set_ref(self, model_name):
        self.ref = model_name
        return self

    def transform(self, fn):
        self.transform_fn = fn
        return self

    def alias(self, name):
        self.alias_name = name
        return self

    #-----------------------------------------------------------------#
    # Casting
    #-----------------------------------------------------------------#

    def get_default(self, doc, init=False):
        """
        @retval the cast default for this path on doc, or UNDEFINED
        @exception anything the default function or cast raises
        """
        if self.default_value is UNDEFINED:
            return UNDEFINED
        if callable(self.default_value) and not isinstance(self.default_value, type):
            ret = self.default_value(doc)
        else:
            ret = clone(self.default_value)
        if is_nullish(ret):
            return ret
        return self.apply_setters(ret, doc, init)

    def apply_setters(self, value, doc, init=False, prior=UNDEFINED):
        """
        Runs user setters in declaration order, then the type cast. Nothing
        but the cast runs when init is True (trusted data from storage).
        """
        v = value
        if not init:
            for fn in self.setters:
                v = fn(v, doc)
        if is_nullish(v):
            return v
        return self.cast(v, doc, init, prior)

    def apply_getters(self, value, doc):
        v = value
        for fn in self.getters:
            v = fn(v, doc)
        return v

    def cast(self, value, doc=None, init=False, prior=UNDEFINED):
        return value

    def _cast_with(self, fn, value):
        try:
            return fn(value)
        except (TypeError, ValueError) as ex:
            raise CastError(self.instance, value, self.path, ex, self)

    #-----------------------------------------------------------------#
    # Validation
    #-----------------------------------------------------------------#

    def is_required_for(self, doc):
        if callable(self.is_required):
            return bool(self.is_required(doc))
        return bool(self.is_required)

    def is_immutable_for(self, doc):
        if callable(self._immutable):
            return bool(self._immutable(doc))
        return bool(self._immutable)

    def check_required(self, value, doc=None):
        return not is_nullish(value)

    def required_error(self, value):
        message = self.required_message or MESSAGES['general']['required']
        return ValidatorError(path=self.path, value=value, kind='required', message=message)

    def do_validate(self, value, doc, sync=False):
        """
        Checks required, then runs each validator once, in declaration order,
        stopping at the first failure. Asynchronous validators (returning a
        Deferred or awaitable) run concurrently; they are skipped when sync.

        @retval (PathOutcome, error or None), or a Deferred firing with that
            pair when async validators are pending
        """
        if self.is_required_for(doc) and not self.check_required(value, doc):
            return (PathOutcome.REQUIRED_FAILED, self.required_error(value))

        if value is UNDEFINED or not self.validators:
            return (PathOutcome.PASSED, None)

        pending = []
        for validator in self.validators:
            try:
                if validator.get('is_async'):
                    if sync:
                        continue
                    ok = self._call_async_style(validator, value, doc)
                else:
                    ok = validator['validator'](value, doc)
            except Exception as ex:
                _discard(pending)
                return (PathOutcome.VALIDATOR_FAILED, self._validator_error(validator, value, ex))

            if inspect.isawaitable(ok) and not isinstance(ok, defer.Deferred):
                if sync:
                    if hasattr(ok, 'close'):
                        ok.close()
                    continue
                ok = defer.ensureDeferred(ok)

            if isinstance(ok, defer.Deferred):
                if sync:
                    # Result is never consumed in sync mode
                    ok.addErrback(lambda f: None)
                    continue
                pending.append((validator, ok))
                continue

            if ok is not None and not ok:
                _discard(pending)
                return (PathOutcome.VALIDATOR_FAILED, self._validator_error(validator, value))

        if not pending:
            return (PathOutcome.PASSED, None)

        d = defer.DeferredList([p[1] for p in pending], consumeErrors=True)

        def _collect(results):
            for (validator, _), (success, result) in zip(pending, results):
                if not success:
                    return (PathOutcome.VALIDATOR_FAILED,
                            self._validator_error(validator, value, result.value))
                if result is not None and not result:
                    return (PathOutcome.VALIDATOR_FAILED, self._validator_error(validator, value))
            return (PathOutcome.PASSED, None)
        d.addCallback(_collect)
        return d

    def _call_async_style(self, validator, value, doc):
        d = defer.Deferred()
        def respond(ok, message=None):
            if d.called:
                return
            if not ok and message:
                d.errback(failure.Failure(ValueError(message)))
            else:
                d.callback(ok)
        validator['validator'](value, respond, doc)
        return d

    def _validator_error(self, validator, value, reason=None):
        props = dict((k, v) for k, v in validator.items() if k not in ('validator', 'is_async'))
        props['path'] = self.path
        props['value'] = value
        if props.get('message') is None:
            props['message'] = MESSAGES['general']['default']
        if reason is not None:
            if isinstance(reason, ValidatorError):
                return reason
            props['reason'] = reason
            if str(reason):
                props['message'] = str(reason)
        return ValidatorError(props)


def _discard(pending):
    # Outcome already decided; results of validators still running are dropped
    for _, d in pending:
        d.addErrback(lambda f: None)


def _is_regexp(obj):
    return isinstance(obj, type(re.compile('')))


class Mixed(SchemaType):
    instance = 'Mixed'


class String(SchemaType):
    instance = 'String'

    def type_options(self):
        return ('enum', 'match', 'minlength', 'maxlength', 'lowercase', 'uppercase', 'trim')

    def cast(self, value, doc=None, init=False, prior=UNDEFINED):
        return self._cast_with(casting.cast_string, value)

    def check_required(self, value, doc=None):
        return isinstance(value, str) and len(value) > 0

    def enum(self, values, message=None):
        if isinstance(values, dict) and 'values' in values:
            message = values.get('message', message)
            values = values['values']
        values = list(values)
        self.enum_values = values
        self._add_validator(lambda v, doc: v is None or v in values,
                            message or MESSAGES['String']['enum'], 'enum', enum_values=values)
        return self

    def match(self, regexp, message=None):
        if isinstance(regexp, (list, tuple)):
            regexp, message = regexp[0], regexp[1]
        if isinstance(regexp, str):
            regexp = re.compile(regexp)
        self._add_validator(lambda v, doc: v is None or v == '' or bool(regexp.search(v)),
                            message or MESSAGES['String']['match'], 'regexp', regexp=regexp.pattern)
        return self

    def minlength(self, length, message=None):
        if isinstance(length, (list, tuple)):
            length, message = length[0], length[1]
        self._add_validator(lambda v, doc: v is None or len(v) >= length,
                            message or MESSAGES['String']['minlength'], 'minlength', minlength=length)
        return self

    def maxlength(self, length, message=None):
        if isinstance(length, (list, tuple)):
            length, message = length[0], length[1]
        self._add_validator(lambda v, doc: v is None or len(v) <= length,
                            message or MESSAGES['String']['maxlength'], 'maxlength', maxlength=length)
        return self

    def lowercase(self, flag=True):
        if flag:
            self.set_fn(lambda v, doc: v.lower() if isinstance(v, str) else v)
        return self

    def uppercase(self, flag=True):
        if flag:
            self.set_fn(lambda v, doc: v.upper() if isinstance(v, str) else v)
        return self

    def trim(self, flag=True):
        if flag:
            self.set_fn(lambda v, doc: v.strip() if isinstance(v, str) else v)
        return self


class Number(SchemaType):
    instance = 'Number'

    def type_options(self):
        return ('min', 'max', 'enum')

    def cast(self, value, doc=None, init=False, prior=UNDEFINED):
        return self._cast_with(casting.cast_number, value)

    def check_required(self, value, doc=None):
        return isinstance(value, (int, float)) and not isinstance(value, bool)

    def min(self, bound, message=None):
        if isinstance(bound, (list, tuple)):
            bound, message = bound[0], bound[1]
        self._add_validator(lambda v, doc: v is None or v >= bound,
                            message or MESSAGES['Number']['min'], 'min', min=bound)
        return self

    def max(self, bound, message=None):
        if isinstance(bound, (list, tuple)):
            bound, message = bound[0], bound[1]
        self._add_validator(lambda v, doc: v is None or v <= bound,
                            message or MESSAGES['Number']['max'], 'max', max=bound)
        return self

    def enum(self, values, message=None):
        values = list(values)
        self._add_validator(lambda v, doc: v is None or v in values,
                            message or MESSAGES['Number']['enum'], 'enum', enum_values=values)
        return self


class Boolean(SchemaType):
    instance = 'Boolean'

    def boolean_table(self):
        table = None
        if self.schema_owner is not None:
            table = self.schema_owner.options.get('boolean_table')
        return table or casting.default_boolean_table

    def cast(self, value, doc=None, init=False, prior=UNDEFINED):
        return self._cast_with(self.boolean_table().cast, value)

    def apply_setters(self, value, doc, init=False, prior=UNDEFINED):
        # The table may map None to a boolean, so always reach the cast
        v = value
        if not init:
            for fn in self.setters:
                v = fn(v, doc)
        if v is UNDEFINED:
            return v
        return self.cast(v, doc, init, prior)

    def check_required(self, value, doc=None):
        return value is True or value is False


class Date(SchemaType):
    instance = 'Date'

    def type_options(self):
        return ('min', 'max')

    def cast(self, value, doc=None, init=False, prior=UNDEFINED):
        return self._cast_with(casting.cast_date, value)

    def check_required(self, value, doc=None):
        return isinstance(value, datetime.datetime)

    def min(self, bound, message=None):
        bound = casting.cast_date(bound)
        self._add_validator(lambda v, doc: v is None or v >= bound,
                            message or MESSAGES['Date']['min'], 'min', min=bound)
        return self

    def max(self, bound, message=None):
        bound = casting.cast_date(bound)
        self._add_validator(lambda v, doc: v is None or v <= bound,
                            message or MESSAGES['Date']['max'], 'max', max=bound)
        return self


class ObjectIdType(SchemaType):
    instance = 'ObjectId'

    def type_options(self):
        return ('auto',)

    def auto(self, flag=True):
        if flag:
            self.default(lambda doc: ObjectId())
        return self

    def cast(self, value, doc=None, init=False, prior=UNDEFINED):
        return self._cast_with(casting.cast_object_id, value)

    def check_required(self, value, doc=None):
        return isinstance(value, ObjectId) or is_document(value)


class Buffer(SchemaType):
    instance = 'Buffer'

    def cast(self, value, doc=None, init=False, prior=UNDEFINED):
        return self._cast_with(casting.cast_buffer, value)

    def check_required(self, value, doc=None):
        return isinstance(value, bytes) and len(value) > 0


def array_depth(value):
    """
    @retval (min depth, max depth, contains non-array item) of nested lists
    """
    if not isinstance(value, (list, tuple)):
        return (0, 0, True)
    if len(value) == 0:
        return (1, 1, False)
    depths = [array_depth(v) for v in value]
    return (1 + min(d[0] for d in depths), 1 + max(d[1] for d in depths),
            any(d[2] for d in depths))


class Array(SchemaType):
    """
    Array of primitives, mixed values or nested arrays.
    """
    instance = 'Array'
    is_array = True

    CASTER_OPTIONS = ('enum', 'match', 'minlength', 'maxlength', 'lowercase', 'uppercase',
                      'trim', 'min', 'max')

    def __init__(self, path, caster, options=None, schema=None):
        options = dict(options or {})
        caster_options = dict((k, options.pop(k)) for k in list(options) if k in self.CASTER_OPTIONS)
        if caster_options:
            caster._apply_options(caster_options)
        self.caster = caster
        SchemaType.__init__(self, path, options, schema)
        if 'default' not in options:
            self.default_value = lambda doc: []

    def depth(self):
        depth = 1
        caster = self.caster
        while caster.is_array:
            depth += 1
            caster = caster.caster
        return depth

    def apply_setters(self, value, doc, init=False, prior=UNDEFINED):
        if isinstance(value, (list, tuple)) and len(value) > 0 and self.caster.is_array:
            depth = self.depth()
            lo, hi, has_items = array_depth(value)
            if lo == hi and hi < depth and has_items:
                for _ in range(hi, depth):
                    value = [value]
        return SchemaType.apply_setters(self, value, doc, init, prior)

    def cast(self, value, doc=None, init=False, prior=UNDEFINED):
        from odm.core.document.containers import CoreArray

        if not isinstance(value, (list, tuple)):
            value = [value]
        arr = CoreArray(owner=doc, path=self.path, schematype=self)
        for i, item in enumerate(value):
            list.append(arr, self.cast_element(item, doc, init, i))
        return arr

    def cast_element(self, item, doc, init=False, index=None):
        if is_nullish(item) and not self.caster.is_array:
            return None
        try:
            return self.caster.apply_setters(item, doc, init)
        except CastError as ex:
            path = self.path if index is None else '%s.%s' % (self.path, index)
            raise CastError('[%s]' % ex.kind, item, path, ex, self)

    def check_required(self, value, doc=None):
        return value is not None and value is not UNDEFINED

    def do_validate(self, value, doc, sync=False):
        """
        Validates the array itself, then each element against the element
        type's validators. Element errors are reported at 'path.index'.
        """
        result = SchemaType.do_validate(self, value, doc, sync)
        if not self.caster.validators or not isinstance(value, list):
            return result

        def _elements(result):
            if result[0] != PathOutcome.PASSED:
                return result
            outcomes = [self.caster.do_validate(item, doc, sync) for item in value]
            if not any(isinstance(o, defer.Deferred) for o in outcomes):
                return self._first_element_error(outcomes)
            d = defer.gatherResults([_as_deferred(o) for o in outcomes], consumeErrors=True)
            d.addCallback(self._first_element_error)
            return d

        if isinstance(result, defer.Deferred):
            return result.addCallback(_elements)
        return _elements(result)

    def _first_element_error(self, outcomes):
        for i, (outcome, error) in enumerate(outcomes):
            if outcome != PathOutcome.PASSED:
                error.path = '%s.%s' % (self.path, i)
                if hasattr(error, 'properties'):
                    error.properties['path'] = error.path
                return (outcome, error)
        return (PathOutcome.PASSED, None)


def _as_deferred(result):
    if isinstance(result, defer.Deferred):
        return result
    return defer.succeed(result)


class DocumentArray(SchemaType):
    """
    Array of embedded documents sharing a child schema.
    """
    instance = 'DocumentArray'
    is_array = True
    is_document_array = True

    def __init__(self, path, schema, options=None, parent_schema=None):
        self.schema = schema
        SchemaType.__init__(self, path, options, parent_schema)
        if 'default' not in (options or {}):
            self.default_value = lambda doc: []

    def embedded_class(self):
        from odm.core.document.subdocument import EmbeddedDocument
        return EmbeddedDocument.for_schema(self.schema)

    def cast(self, value, doc=None, init=False, prior=UNDEFINED):
        from odm.core.document.containers import DocumentArray as DocumentArrayContainer

        if not isinstance(value, (list, tuple)):
            value = [value]
        arr = DocumentArrayContainer(owner=doc, path=self.path, schematype=self)
        for item in value:
            list.append(arr, self.cast_element(item, arr, doc, init))
        return arr

    def cast_element(self, item, arr, doc, init=False):
        if item is None:
            return None
        cls = self.embedded_class()
        if is_document(item) and item._embedded and item.schema is self.schema:
            parent = item.parent()
            if parent is None:
                item._adopt(doc, arr)
                return item
            if parent is doc and item.parent_array() is arr:
                return item
            # Owned elsewhere: copy rather than share
            return cls(clone(item), parent=doc, parent_array=arr)
        if is_document(item):
            item = clone(item)
        kind = value_kind(item)
        if kind == ValueKind.EXTERNAL_CONVERTIBLE:
            item = external_to_mapping(item)
        elif kind != ValueKind.PLAIN_MAPPING:
            raise ObjectParameterError(item, 'obj', 'Document')
        if init:
            sub = cls(parent=doc, parent_array=arr, skip_id=True)
            sub.init(item)
            return sub
        return cls(item, parent=doc, parent_array=arr)

    def check_required(self, value, doc=None):
        return value is not None and value is not UNDEFINED


class SingleNested(SchemaType):
    """
    A single embedded document under one path.
    """
    instance = 'Embedded'
    is_single_nested = True

    def __init__(self, path, schema, options=None, parent_schema=None):
        self.schema = schema
        SchemaType.__init__(self, path, options, parent_schema)

    def embedded_class(self):
        from odm.core.document.subdocument import SingleNestedDocument
        return SingleNestedDocument.for_schema(self.schema)

    def cast(self, value, doc=None, init=False, prior=UNDEFINED):
        cls = self.embedded_class()
        if is_document(value) and value._embedded and value.schema is self.schema:
            parent = value.parent()
            if parent is None:
                value._adopt(doc, self.path)
                return value
            if parent is doc and value.base_path() == self.path:
                return value
            value = clone(value)
        elif is_document(value):
            value = clone(value)

        kind = value_kind(value)
        if kind == ValueKind.EXTERNAL_CONVERTIBLE:
            value = external_to_mapping(value)
        elif kind != ValueKind.PLAIN_MAPPING:
            raise CastError('Embedded', value, self.path, ObjectExpectedError(self.path, value), self)

        if init:
            sub = cls(parent=doc, path=self.path, skip_id=True)
            sub.init(value)
            return sub
        return cls(value, parent=doc, path=self.path)

    def check_required(self, value, doc=None):
        return not is_nullish(value)


class Map(SchemaType):
    """
    String keyed map whose values share one schema type.
    """
    instance = 'Map'
    is_map = True

    def __init__(self, path, value_type, options=None, schema=None):
        self.value_type = value_type
        SchemaType.__init__(self, path, options, schema)

    def cast(self, value, doc=None, init=False, prior=UNDEFINED):
        from odm.core.document.containers import DocumentMap

        if not isinstance(value, dict):
            raise CastError('Map', value, self.path, TypeError('%r is not a mapping' % (value,)), self)
        result = DocumentMap(owner=doc, path=self.path, schematype=self)
        for key, item in value.items():
            dict.__setitem__(result, key, self.cast_value(key, item, doc, init))
        return result

    def check_key(self, key):
        if not isinstance(key, str):
            raise CastError('Map', key, self.path, TypeError('Map keys must be strings'), self)
        if '.' in key or key.startswith('$'):
            raise CastError('Map', key, self.path,
                            ValueError('Map key `%s` may not contain "." or start with "$"' % key), self)

    def cast_value(self, key, item, doc, init=False):
        self.check_key(key)
        try:
            return self.value_type.apply_setters(item, doc, init)
        except CastError as ex:
            ex.set_path('%s.%s' % (self.path, key))
            raise
