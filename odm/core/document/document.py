#!/usr/bin/env python
"""
@file odm/core/document/document.py
@brief The schema bound, change tracked document node.

A Document holds its already cast values in a raw dict (_doc). Every write
goes through set(), which resolves the path against the schema, runs the
path's setters and cast, and records the change with the ChangeTracker.
Classes are generated per schema by the DocumentType metaclass, with one
descriptor per top level path so that doc.name = 'x' is doc.set('name', 'x').
"""

import weakref

from twisted.internet import defer
from twisted.python import failure

from odm.core.exception import OdmError
from odm.core.document import serializer
from odm.core.document.change_tracker import ChangeTracker
from odm.core.document.containers import CoreArray
from odm.core.document.errors import CastError, ValidatorError, ValidationError, \
    ParallelValidateError, StrictModeError, ObjectParameterError, ObjectExpectedError
from odm.core.document.object_utils import UNDEFINED, is_nullish, is_document, \
    is_plain_mapping, is_reserved_key, split_path, set_nested, deep_equal, clone, \
    value_kind, ValueKind, external_to_mapping
from odm.core.document.validation import ValidationPass, build_error
from odm.util.fsm import FSM

import odm.util.odmlog
log = odm.util.odmlog.getLogger(__name__)


# to_object options for internal plain copies
PLAIN = {'transform': False, 'virtuals': False, 'getters': False,
         'depopulate': True, 'minimize': False, 'flatten_maps': True}


class ValidationState(object):
    UNVALIDATED = 'UNVALIDATED'
    VALIDATING = 'VALIDATING'
    VALID = 'VALID'
    INVALID = 'INVALID'

    ALL = (UNVALIDATED, VALIDATING, VALID, INVALID)


def validation_fsm():
    """
    start: any -> VALIDATING; passed/failed: any -> VALID/INVALID;
    modified: VALID/INVALID -> UNVALIDATED, a pass in flight is unaffected.
    """
    fsm = FSM(ValidationState.UNVALIDATED)
    for state in ValidationState.ALL:
        fsm.add_transition('start', state, ValidationState.VALIDATING)
        fsm.add_transition('passed', state, ValidationState.VALID)
        fsm.add_transition('failed', state, ValidationState.INVALID)
    fsm.add_transition_list(['modified', 'reset'], ValidationState.VALID,
                            ValidationState.UNVALIDATED)
    fsm.add_transition_list(['modified', 'reset'], ValidationState.INVALID,
                            ValidationState.UNVALIDATED)
    fsm.add_transition_list(['modified', 'reset'], ValidationState.UNVALIDATED)
    fsm.add_transition_list(['modified', 'reset'], ValidationState.VALIDATING)
    return fsm


def normalize_fields(fields):
    """
    Accepts {'name': 1}, ['name', 'age'] or 'name -age'.
    @retval dict path -> 0/1, or None for "everything selected"
    """
    if fields is None:
        return None
    if isinstance(fields, str):
        result = {}
        for field in fields.split():
            if field.startswith('-'):
                result[field[1:]] = 0
            else:
                result[field.lstrip('+')] = 1
        return result or None
    if isinstance(fields, (list, tuple)):
        return dict((field, 1) for field in fields) or None
    return dict((k, 1 if v else 0) for k, v in fields.items()) or None


def as_mapping(value):
    """
    @retval a plain dict for dicts, documents, nested proxies and convertible
        objects; None for anything else
    """
    if is_document(value):
        return value.to_object(**PLAIN)
    if isinstance(value, NestedPath):
        return value.to_object()
    if is_plain_mapping(value):
        return value
    if value_kind(value) == ValueKind.EXTERNAL_CONVERTIBLE:
        return external_to_mapping(value)
    return None


#-----------------------------------------------------------------#
# Attribute access
#-----------------------------------------------------------------#

class PathProperty(object):
    """
    Data descriptor routing attribute access of a top level real or virtual
    path through Document.get/set.
    """

    def __init__(self, name, doc=None):
        self.name = name
        if doc:
            self.__doc__ = doc

    def __get__(self, doc, objtype=None):
        if doc is None:
            return self
        return doc.get(self.name)

    def __set__(self, doc, value):
        doc.set(self.name, value)

    def __delete__(self, doc):
        doc.unset(self.name)


class NestedProperty(PathProperty):
    """
    Descriptor for a nested (plain object) path; reads return a NestedPath.
    """

    def __get__(self, doc, objtype=None):
        if doc is None:
            return self
        if doc.get_value(self.name) is None:
            return None
        return NestedPath(doc, self.name)


class NestedPath(object):
    """
    Live view of a nested object inside a document. Attribute and item
    access resolve against the owning document.
    """

    def __init__(self, doc, path):
        object.__setattr__(self, '_doc', doc)
        object.__setattr__(self, '_path', path)

    def _child(self, name):
        path = '%s.%s' % (self._path, name)
        if self._doc.schema.path_type(path) == 'nested':
            if self._doc.get_value(path) is None:
                return None
            return NestedPath(self._doc, path)
        return self._doc.get(path)

    def __getattr__(self, name):
        if name.startswith('_'):
            raise AttributeError(name)
        return self._child(name)

    def __setattr__(self, name, value):
        if name.startswith('_'):
            object.__setattr__(self, name, value)
            return
        self._doc.set('%s.%s' % (self._path, name), value)

    def __delattr__(self, name):
        self._doc.unset('%s.%s' % (self._path, name))

    def __getitem__(self, key):
        return self._child(key)

    def __setitem__(self, key, value):
        self._doc.set('%s.%s' % (self._path, key), value)

    def __contains__(self, key):
        return key in self.keys()

    def keys(self):
        raw = self._doc.get_value(self._path)
        if not isinstance(raw, dict):
            return []
        return [k for k, v in raw.items() if v is not UNDEFINED]

    def __iter__(self):
        return iter(self.keys())

    def __len__(self):
        return len(self.keys())

    def items(self):
        return [(k, self._child(k)) for k in self.keys()]

    def to_object(self, getters=False):
        return self._doc._nested_object(self._path, getters)

    def __eq__(self, other):
        if isinstance(other, NestedPath):
            other = other.to_object()
        return deep_equal(self.to_object(), other)

    def __ne__(self, other):
        return not self.__eq__(other)

    __hash__ = None

    def __repr__(self):
        return 'NestedPath(%s, %r)' % (self._path, self.to_object())


class DocumentType(type):
    """
    Metaclass for documents. A class declaring a schema gets a descriptor per
    top level path and the schema's instance methods (wrapped with their
    hooks). compile() builds and caches such classes per (base, schema).
    """

    _type_cache = {}

    def __new__(mcs, name, bases, attrs):
        schema = attrs.get('schema')
        if schema is not None:
            mcs._add_properties(bases, attrs, schema)
            mcs._add_methods(bases, attrs, schema)
        return type.__new__(mcs, name, bases, attrs)

    @staticmethod
    def _defined(bases, attrs, name):
        return name in attrs or any(hasattr(base, name) for base in bases)

    @classmethod
    def _add_properties(mcs, bases, attrs, schema):
        tops = []
        for path in list(schema.paths) + list(schema.nested) + list(schema.virtuals):
            top = split_path(path)[0]
            if top not in tops:
                tops.append(top)
        for top in tops:
            if mcs._defined(bases, attrs, top):
                log.warning('Path `%s` shadows a document attribute; use get()/set()' % top)
                continue
            if top in schema.paths or top in schema.virtuals:
                attrs[top] = PathProperty(top)
            else:
                attrs[top] = NestedProperty(top)

    @classmethod
    def _add_methods(mcs, bases, attrs, schema):
        for name, fn in schema.methods.items():
            if name in attrs:
                continue
            if schema.hooks.has_hooks(name):
                fn = schema.hooks.wrap_method(name, fn)
            attrs[name] = fn

    @classmethod
    def compile(mcs, base, schema, name=None):
        key = (base, schema)
        cls = mcs._type_cache.get(key)
        if cls is None:
            name = name or '%s_%x' % (base.__name__, id(schema))
            cls = mcs(name, (base,), {'schema': schema})
            mcs._type_cache[key] = cls
        return cls


class Document(object, metaclass=DocumentType):
    """
    A document node bound to a schema.

    @param obj initial values, set through the setters and marked modified
    @param fields projection the document was loaded with (paths outside it
        get no default and are not validated)
    @param skip_id do not generate an _id default
    @param defaults apply path defaults after setting obj
    @param strict overrides the schema strict option: True drops writes to
        unknown paths, False keeps them, 'throw' raises StrictModeError
    """

    schema = None
    model_name = None
    _embedded = False

    def __init__(self, obj=None, fields=None, skip_id=False, defaults=True, strict=None):
        if self.schema is None:
            raise OdmError('%s has no schema; use Document.for_schema()' % self.__class__.__name__)
        self._constructing = True
        self._doc = {}
        self._tracker = ChangeTracker(self)
        self._cast_errors = {}
        self._pending_errors = {}
        self._validation_error = None
        self._validating = []
        self._populated = {}
        self._selected = normalize_fields(fields)
        self._strict = self.schema.options.get('strict', True) if strict is None else strict
        self._state = validation_fsm()
        self.is_new = True

        self._build_doc()
        for path in self.schema.required_paths():
            if self.is_selected(path):
                self._tracker.active.require(path)

        if obj is not None:
            mapping = as_mapping(obj)
            if mapping is None:
                self._constructing = False
                raise ObjectParameterError(obj, 'obj', 'Document')
            self.set(mapping)
        if defaults:
            self._apply_defaults(skip_id)
        self._constructing = False

    @classmethod
    def for_schema(cls, schema, name=None):
        """
        @retval the document class of this kind for schema
        """
        return DocumentType.compile(cls, schema, name)

    def _build_doc(self):
        for path in self.schema.nested:
            if self.is_selected(path):
                set_nested(self._doc, path, {})

    def _apply_defaults(self, skip_id=False):
        for path, schematype in self.schema.paths.items():
            if schematype.default_value is UNDEFINED:
                continue
            if skip_id and path == '_id':
                continue
            if not self.is_selected(path):
                continue
            if self.get_value(path) is not UNDEFINED:
                continue
            if not self._parent_container_exists(path):
                continue
            try:
                value = schematype.get_default(self)
            except CastError as ex:
                self._cast_errors[path] = ex
                continue
            except Exception as ex:
                self._cast_errors[path] = CastError(schematype.instance, UNDEFINED, path, ex, schematype)
                continue
            if value is UNDEFINED:
                continue
            self.set_value(path, value)
            if self._tracker.active.state_of(path) != 'modify':
                self._tracker.active.default(path)

    def _parent_container_exists(self, path):
        parts = split_path(path)
        cur = self._doc
        for part in parts[:-1]:
            cur = cur.get(part, UNDEFINED) if isinstance(cur, dict) else UNDEFINED
            if cur is UNDEFINED:
                return True
            if not isinstance(cur, dict):
                return False
        return True

    def init(self, raw, fields=UNDEFINED):
        """
        Hydrates the document with data loaded from storage. Values are cast
        without setters and recorded as init, not modified.

        @param raw dict as stored
        @param fields projection raw was loaded with
        @retval self
        """
        if fields is not UNDEFINED:
            self._selected = normalize_fields(fields)
        self.is_new = False
        self._constructing = True
        try:
            self._init_object(raw, '')
        finally:
            self._constructing = False
        return self

    def _init_object(self, obj, prefix):
        for key, value in obj.items():
            path = prefix + key
            if not self.is_selected(path):
                continue
            schematype = self.schema.paths.get(path)
            if schematype is None:
                if path in self.schema.nested and is_plain_mapping(value):
                    if not isinstance(self.get_value(path), dict):
                        self.set_value(path, {})
                    self._init_object(value, path + '.')
                else:
                    # Unknown keys are kept as stored
                    self.set_value(path, value)
                continue
            if is_nullish(value):
                self.set_value(path, value)
                self._tracker.active.init(path)
                continue
            try:
                cast = schematype.apply_setters(value, self, True)
            except Exception as ex:
                log.warning('Cannot cast stored value at `%s`: %s' % (path, ex))
                if not isinstance(ex, CastError):
                    ex = CastError(schematype.instance, value, path, ex, schematype)
                self._cast_errors[path] = ex
                cast = value
            self.set_value(path, cast)
            self._tracker.active.init(path)

    #-----------------------------------------------------------------#
    # Tree
    #-----------------------------------------------------------------#

    def parent(self):
        return None

    def owner_document(self):
        return self

    def _subdocs(self):
        """
        @retval the embedded documents directly under this node
        """
        result = []
        for path, schematype in self.schema.paths.items():
            if schematype.is_single_nested:
                value = self.get_value(path)
                if is_document(value):
                    result.append(value)
            elif schematype.is_document_array:
                value = self.get_value(path)
                if isinstance(value, list):
                    result.extend([item for item in value if is_document(item)])
        return result

    def all_subdocs(self):
        result = []
        for sub in self._subdocs():
            result.append(sub)
            result.extend(sub.all_subdocs())
        return result

    #-----------------------------------------------------------------#
    # Raw access
    #-----------------------------------------------------------------#

    def get_value(self, path):
        """
        Raw stored value at path, without getters.
        @retval the value or UNDEFINED
        """
        cur = self._doc
        for part in split_path(path):
            if is_document(cur):
                cur = cur._doc
            if isinstance(cur, dict):
                cur = dict.get(cur, part, UNDEFINED)
            elif isinstance(cur, list) and part.isdigit():
                idx = int(part)
                cur = list.__getitem__(cur, idx) if idx < len(cur) else UNDEFINED
            else:
                return UNDEFINED
            if cur is UNDEFINED:
                return UNDEFINED
        return cur

    def set_value(self, path, value):
        """
        Writes the raw value at path: no setters, no cast, no tracking.
        UNDEFINED removes the key.
        """
        parts = split_path(path)
        cur = self._doc
        for i, part in enumerate(parts[:-1]):
            if is_document(cur):
                cur.set_value('.'.join(parts[i:]), value)
                return self
            if isinstance(cur, list) and part.isdigit():
                nxt = list.__getitem__(cur, int(part))
            else:
                nxt = dict.get(cur, part, UNDEFINED)
                if not isinstance(nxt, (dict, list)) and not is_document(nxt):
                    if value is UNDEFINED:
                        return self
                    nxt = {}
                    dict.__setitem__(cur, part, nxt)
            cur = nxt
        last = parts[-1]
        if is_document(cur):
            cur.set_value(last, value)
        elif isinstance(cur, list) and last.isdigit():
            list.__setitem__(cur, int(last), None if value is UNDEFINED else value)
        elif value is UNDEFINED:
            if last in cur:
                dict.__delitem__(cur, last)
        else:
            dict.__setitem__(cur, last, value)
        return self

    #-----------------------------------------------------------------#
    # Reading
    #-----------------------------------------------------------------#

    def _find_subdoc(self, path):
        """
        @retval (embedded document, path inside it) for paths that cross into
            an embedded document, else (None, None)
        """
        parts = split_path(path)
        for i in range(1, len(parts)):
            value = self.get_value('.'.join(parts[:i]))
            if is_document(value):
                return value, '.'.join(parts[i:])
            if is_nullish(value):
                break
        return None, None

    def get(self, path, getters=True):
        """
        Value at path with getters applied. Nested paths give a plain dict,
        virtual paths the getter result. Missing values read as None.
        """
        if not isinstance(path, str):
            raise TypeError('path must be a string, got %r' % (path,))
        if path == '':
            return None
        path_type = self.schema.path_type(path)
        if path_type == 'virtual':
            value = self.schema.virtuals.get(path).apply_getters(None, self)
            return None if value is UNDEFINED else value
        if path_type == 'nested':
            return self._nested_object(path, getters)

        sub, rest = self._find_subdoc(path)
        if sub is not None:
            return sub.get(rest, getters)

        value = self.get_value(path)
        schematype = self.schema.path(path) if path_type == 'real' else None
        if value is UNDEFINED:
            value = None
        if getters and schematype is not None and schematype.getters:
            value = schematype.apply_getters(value, self)
        return value

    def _nested_object(self, path, getters=False):
        raw = self.get_value(path)
        if raw is None:
            return None
        result = {}
        if isinstance(raw, dict):
            for key, value in raw.items():
                if value is UNDEFINED:
                    continue
                result[key] = self.get('%s.%s' % (path, key), getters)
        if self.schema.virtuals.is_prefix(path) and getters:
            prefix = path + '.'
            for vpath in self.schema.virtuals:
                if vpath.startswith(prefix) and '.' not in vpath[len(prefix):]:
                    value = self.get(vpath)
                    if value is not None:
                        result[vpath[len(prefix):]] = value
        return result

    def __getattr__(self, name):
        # Only reached for names that are not class attributes: extra keys
        # kept by non strict documents
        if name.startswith('_'):
            raise AttributeError(name)
        doc = self.__dict__.get('_doc')
        if doc is not None and name in doc:
            return self.get(name)
        raise AttributeError("'%s' object has no attribute '%s'" % (self.__class__.__name__, name))

    def __setattr__(self, name, value):
        if name.startswith('_') or name == 'is_new' or hasattr(type(self), name):
            object.__setattr__(self, name, value)
            return
        self.set(name, value)

    #-----------------------------------------------------------------#
    # Writing
    #-----------------------------------------------------------------#

    def set(self, path, value=UNDEFINED, merge=False, strict=None):
        """
        Sets path to value, or with a dict as the only argument, every key of
        it. Nested objects in a dict argument are merged key by key; a dict
        assigned to a nested path replaces it unless merge is True.
        @retval self
        """
        if strict is None:
            strict = self._strict
        if not isinstance(path, str):
            mapping = as_mapping(path)
            if mapping is None:
                raise ObjectParameterError(path, 'obj', 'set')
            self._set_object(mapping, '', merge, strict)
            return self

        for segment in split_path(path):
            if is_reserved_key(segment):
                log.warning('Ignoring write to reserved path `%s`' % path)
                return self

        path_type = self.schema.path_type(path)
        if path_type == 'nested':
            self._set_nested(path, value, merge, strict)
        elif path_type == 'virtual':
            self.schema.virtuals.get(path).apply_setters(value, self)
        elif path_type == 'real':
            if not self._set_deep(path, value, merge):
                self._set_path(path, value, merge)
        else:
            self._set_adhoc(path, value, strict)
        return self

    def unset(self, path):
        return self.set(path, UNDEFINED)

    def _set_object(self, obj, prefix, merge, strict):
        for key, value in obj.items():
            if is_reserved_key(key):
                log.warning('Ignoring write to reserved key `%s`' % key)
                continue
            path = prefix + key
            path_type = self.schema.path_type(path)
            mapping = as_mapping(value) if not is_nullish(value) else None
            if path_type == 'nested' and mapping is not None:
                self._set_object(mapping, path + '.', merge, strict)
            elif path_type == 'nested' and not is_nullish(value) and strict == 'throw':
                raise ObjectExpectedError(path, value)
            elif path_type in ('real', 'virtual', 'nested'):
                self.set(path, value, merge=merge, strict=strict)
            else:
                self._set_adhoc(path, value, strict)

    def _set_adhoc(self, path, value, strict):
        if self.schema.is_mixed_subpath(path):
            self._set_path(path, value, False)
            return
        if strict == 'throw':
            raise StrictModeError(path)
        if strict:
            log.debug('Dropping write to `%s`, not in schema' % path)
            return
        prior = self.get_value(path)
        if deep_equal(prior, value):
            return
        self.set_value(path, value)
        self._record(path, prior, value)

    def _set_nested(self, path, value, merge, strict):
        if not is_nullish(value):
            mapping = as_mapping(value)
            if mapping is None:
                if strict == 'throw':
                    raise ObjectExpectedError(path, value)
                self._cast_errors[path] = CastError('Object', value, path,
                                                    ObjectExpectedError(path, value))
                return
            value = mapping

        if path not in self.schema.nested:
            # Prefix of dotted virtuals only: nothing stored here
            if value:
                self._set_object(value, path + '.', merge, strict)
            return

        prior = self.get_value(path)
        if is_nullish(value):
            if deep_equal(prior, value):
                return
            self.set_value(path, value)
            self._clear_below(path)
            self._record(path, prior, value)
            return

        if merge:
            self._set_object(value, path + '.', True, strict)
            return

        tracker = self._tracker
        baseline = tracker.saved_state.get(path, clone(prior))
        if not self.is_new and path not in tracker.saved_state:
            tracker.saved_state[path] = baseline

        self.set_value(path, {})
        self._clear_below(path)
        tracker.mark_modified(path)
        for key, item in value.items():
            self.set('%s.%s' % (path, key), item, strict=strict)

        if not is_nullish(prior) and deep_equal(baseline, clone(self.get_value(path))):
            self.unmark_modified(path)
        else:
            self._after_modified(path)
        tracker.clear_subpaths(path)

    def _clear_below(self, path):
        self._tracker.clear_subpaths(path)
        prefix = path + '.'
        for p in list(self._cast_errors):
            if p.startswith(prefix):
                del self._cast_errors[p]

    def _set_deep(self, path, value, merge):
        """
        Routes a path that crosses into an embedded document, array element
        or map entry to its container.
        @retval True if handled
        """
        parts = split_path(path)
        for i in range(1, len(parts)):
            prefix = '.'.join(parts[:i])
            schematype = self.schema.paths.get(prefix)
            if schematype is None:
                continue
            rest = parts[i:]
            container = self.get_value(prefix)
            if schematype.is_single_nested:
                if is_nullish(container):
                    self.set(prefix, {})
                    container = self.get_value(prefix)
                if is_document(container):
                    container.set('.'.join(rest), value, merge=merge)
                    return True
                return False
            if schematype.is_map:
                if is_nullish(container):
                    self.set(prefix, {})
                    container = self.get_value(prefix)
                if not isinstance(container, dict):
                    return False
                if len(rest) == 1:
                    container.set(rest[0], value)
                    return True
                sub = container.get(rest[0])
                if is_document(sub):
                    sub.set('.'.join(rest[1:]), value, merge=merge)
                    return True
                return False
            if schematype.is_array:
                if is_nullish(container) and rest[0].isdigit():
                    self.set(prefix, [])
                    container = self.get_value(prefix)
                while len(rest) and rest[0].isdigit() and isinstance(container, list):
                    idx = int(rest[0])
                    if len(rest) == 1:
                        container.set(idx, value)
                        return True
                    if idx >= len(container):
                        if not schematype.is_document_array:
                            log.warning('Ignoring write to `%s`, index out of range' % path)
                            return True
                        # Fill up to idx with empty embedded documents
                        for i in range(len(container), idx + 1):
                            container.set(i, {})
                    container = list.__getitem__(container, idx)
                    rest = rest[1:]
                if is_document(container):
                    container.set('.'.join(rest), value, merge=merge)
                    return True
                return False
            return False
        return False

    def _ref_of(self, schematype):
        if schematype.ref:
            return schematype.ref
        if schematype.is_array and not schematype.is_document_array:
            return schematype.caster.ref
        return None

    def _set_populated(self, path, schematype, value):
        """
        Stores documents assigned to a ref path as populated.
        @retval True if value was stored as populated
        """
        if is_document(value) and not value._embedded and not schematype.is_array:
            self._populated[path] = value.get_value('_id')
            return value
        if schematype.is_array and isinstance(value, (list, tuple)) and len(value) and \
                all(is_document(v) and not v._embedded for v in value):
            self._populated[path] = [v.get_value('_id') for v in value]
            return CoreArray(value, owner=self, path=path, schematype=schematype)
        # Ids, or documents mixed with ids: the whole path is unpopulated
        self._populated.pop(path, None)
        return None

    def _set_path(self, path, value, merge):
        schematype = self.schema.paths.get(path)
        if schematype is None:
            schematype = self.schema.path(path)
        prior = self.get_value(path)

        if schematype is not None and not self.is_new and schematype.is_immutable_for(self):
            if self._strict == 'throw':
                raise StrictModeError(path, 'Path `%s` is immutable and strict mode is set to throw.'
                                      % path, immutable=True)
            log.debug('Ignoring write to immutable path `%s`' % path)
            return

        if merge and schematype is not None and schematype.is_single_nested and \
                is_document(prior) and not is_document(value):
            mapping = as_mapping(value)
            if mapping is not None:
                prior.set(mapping, merge=True)
                return

        if schematype is not None and self._ref_of(schematype) is not None:
            populated = self._set_populated(path, schematype, value)
            if populated is not None:
                self._cast_errors.pop(path, None)
                self.set_value(path, populated)
                self._record(path, prior, populated)
                return

        if deep_equal(prior, value):
            self._cast_errors.pop(path, None)
            return

        try:
            if schematype is None:
                cast = value
            else:
                cast = schematype.apply_setters(value, self, False, prior)
        except (CastError, ObjectParameterError) as ex:
            log.debug('Cast failed at `%s`: %s' % (path, ex))
            self._cast_errors[path] = ex
            return
        except Exception as ex:
            kind = schematype.instance if schematype is not None else 'Mixed'
            self._cast_errors[path] = CastError(kind, value, path, ex, schematype)
            return

        self._cast_errors.pop(path, None)
        if deep_equal(prior, cast):
            return

        if is_document(prior) and prior is not cast:
            prior._detach()
        if schematype is not None and (schematype.is_single_nested or schematype.is_array):
            self._clear_below(path)
        if isinstance(cast, CoreArray):
            cast._register_atomic('$set', cast)

        self.set_value(path, cast)
        self._record(path, prior, cast)

    def _record(self, path, prior, value):
        if self._tracker.record_change(path, prior, value):
            self._after_modified(path)
        else:
            self._after_unmarked(path)

    def _after_modified(self, path):
        self._state.process('modified')

    def _after_unmarked(self, path):
        pass

    #-----------------------------------------------------------------#
    # Change tracking
    #-----------------------------------------------------------------#

    def mark_modified(self, path):
        """
        Marks path modified, e.g. after changing a Mixed value in place.
        """
        if self._tracker.mark_modified(path) or self._tracker.is_modified(path):
            self._after_modified(path)
        return self

    def unmark_modified(self, path):
        self._tracker.unmark_modified(path)
        self._after_unmarked(path)
        return self

    def is_modified(self, paths=None, include_children=False):
        return self._tracker.is_modified(paths, include_children)

    def is_direct_modified(self, paths):
        return self._tracker.is_direct_modified(paths)

    def modified_paths(self, include_children=False):
        return self._tracker.modified_paths(include_children)

    def direct_modified_paths(self):
        return self._tracker.direct_modified_paths()

    def is_init(self, path):
        return self._tracker.active.state_of(path) == 'init'

    def is_default(self, path):
        return self._tracker.active.state_of(path) == 'default'

    def ignore(self, path):
        """
        Leaves path out of the next update and validation without reverting
        its value.
        """
        self._tracker.ignore(path)
        return self

    def get_changes(self):
        """
        @retval the update ({'$set': ..., '$unset': ..., array operators})
            that would persist the pending changes, {} when clean
        """
        return self._tracker.get_changes()

    def reset(self):
        """
        Acknowledges persistence: clears change records in the whole tree,
        drops array atomics and marks the document as no longer new.
        """
        for sub in self._subdocs():
            sub.reset()
        self._tracker.reset()
        self._pending_errors = {}
        self._validation_error = None
        self.is_new = False
        self._state.process('reset')
        return self

    def is_selected(self, path):
        fields = self._selected
        if fields is None:
            return True
        if path == '_id':
            return fields.get('_id', 1) != 0
        keys = [k for k in fields if k != '_id']
        if not keys:
            return True
        inclusive = bool(fields[keys[0]])
        for key in keys:
            if path == key or path.startswith(key + '.'):
                return inclusive
            if inclusive and key.startswith(path + '.'):
                return True
        return not inclusive

    def in_projection(self, path):
        """
        Like is_selected, but a `select: False` path also counts as
        deselected unless the field selection names it.
        """
        if not self.is_selected(path):
            return False
        schematype = self.schema.paths.get(path)
        if schematype is None or schematype.selected is not False:
            return True
        return bool(self._selected and self._selected.get(path))

    def is_empty(self, path=None):
        """
        True if the object at path (or the whole document) has no keys once
        empty objects are minimized away.
        """
        options = {'minimize': True, 'virtuals': False, 'getters': False, 'transform': False}
        if path is None:
            return len(self.to_object(**options)) == 0
        value = self.get_value(path)
        if is_nullish(value):
            return True
        if is_document(value):
            return len(value.to_object(**options)) == 0
        if isinstance(value, dict):
            return _is_empty_mapping(value)
        return False

    def overwrite(self, obj):
        """
        Replaces every path but _id: keys missing from obj are unset.
        """
        obj = as_mapping(obj)
        keys = []
        for key in list(self._doc.keys()) + list(obj.keys()):
            if key not in keys and key != '_id':
                keys.append(key)
        for key in keys:
            if self.schema.path_type(key) == 'virtual':
                continue
            if key in obj:
                self.set(key, obj[key])
            else:
                self.unset(key)
        return self

    def equals(self, other):
        """
        Documents are equal when their _ids are. Without _ids on both sides
        only the same instance is equal.
        """
        if not is_document(other):
            return False
        mine = self.get_value('_id')
        theirs = other.get_value('_id')
        if is_nullish(mine) and is_nullish(theirs):
            return self is other
        return deep_equal(mine, theirs)

    #-----------------------------------------------------------------#
    # Population
    #-----------------------------------------------------------------#

    def populated(self, path, value=UNDEFINED):
        """
        populated(path) gives the raw id(s) of a populated path or None;
        populated(path, ids) records population, populated(path, None)
        clears it.
        """
        if value is UNDEFINED:
            return self._populated.get(path)
        if value is None:
            self._populated.pop(path, None)
            return None
        self._populated[path] = value
        return value

    def depopulate(self, path=None):
        """
        Replaces populated documents with their ids.
        """
        paths = [path] if path is not None else list(self._populated)
        for p in paths:
            if self._populated.pop(p, None) is None:
                continue
            value = self.get_value(p)
            if isinstance(value, list):
                ids = [item.get_value('_id') if is_document(item) else item for item in value]
                self.set_value(p, CoreArray(ids, owner=self, path=p,
                                            schematype=self.schema.path(p)))
            elif is_document(value):
                self.set_value(p, value.get_value('_id'))
        if path is None:
            for sub in self._subdocs():
                sub.depopulate()
        return self

    #-----------------------------------------------------------------#
    # Validation
    #-----------------------------------------------------------------#

    @property
    def validation_state(self):
        return self._state.current_state

    @property
    def errors(self):
        """
        Path -> error of the last validation (plus invalidate() calls since),
        or None.
        """
        if self._validation_error is None:
            return None
        return self._validation_error.errors

    def invalidate(self, path, err, value=UNDEFINED, kind=None):
        """
        Records an error for path; the next validation pass reports it.
        @retval the document's ValidationError
        """
        if isinstance(err, (CastError, ValidatorError, ValidationError)):
            error = err
        else:
            error = ValidatorError(path=path, value=value, kind=kind or 'user defined',
                                   message=str(err),
                                   reason=err if isinstance(err, Exception) else None)
        self._pending_errors[path] = error
        if self._validation_error is None:
            self._validation_error = ValidationError(self)
        self._validation_error.add_error(path, error)
        return self._validation_error

    def mark_valid(self, path):
        self._pending_errors.pop(path, None)
        self._cast_errors.pop(path, None)
        if self._validation_error is not None:
            self._validation_error.remove_error(path)
            if not len(self._validation_error):
                self._validation_error = None
        return self

    def is_valid(self, path=None):
        if self._validation_error is None:
            return True
        if path is None:
            return len(self._validation_error) == 0
        return path not in self._validation_error

    def _validation_options(self, paths, modified_only):
        if isinstance(paths, str):
            paths = paths.split()
        if modified_only is None:
            modified_only = self.schema.options.get('validate_modified_only', False)
        return paths, modified_only

    def validate(self, paths=None, modified_only=None):
        """
        Runs pre validate hooks, one validation pass and post validate hooks.

        @param paths only these paths (list or space separated string)
        @param modified_only only paths modified since the last reset()
        @retval Deferred firing None, or failing with ValidationError;
            ParallelValidateError if a pass over overlapping paths is
            already in flight on this document
        """
        paths, modified_only = self._validation_options(paths, modified_only)
        scope = frozenset(paths) if paths is not None else None
        for running in self._validating:
            if running is None or scope is None or running & scope:
                return defer.fail(ParallelValidateError(self))
        self._validating.append(scope)
        self._state.process('start')

        def _release(result):
            self._validating.remove(scope)
            if isinstance(result, failure.Failure) and \
                    self.validation_state == ValidationState.VALIDATING:
                self._state.process('failed')
            return result

        d = self.schema.hooks.exec_pre('validate', self)
        d.addCallback(lambda _: ValidationPass(self, paths, modified_only).run())
        d.addCallback(self._complete_validation)
        d.addBoth(_release)
        d.addCallback(lambda _: self.schema.hooks.exec_post('validate', self, None))
        d.addCallback(lambda _: None)
        return d

    def _complete_validation(self, errors):
        error = build_error(self, errors)
        self._validation_error = error
        if error is not None:
            self._state.process('failed')
            raise error
        self._state.process('passed')

    def validate_sync(self, paths=None, modified_only=None):
        """
        Synchronous pass: asynchronous validators and hooks are skipped.
        @retval ValidationError or None
        """
        paths, modified_only = self._validation_options(paths, modified_only)
        return self._validate_sync_node(paths, modified_only)

    def _validate_sync_node(self, paths, modified_only):
        errors = ValidationPass(self, paths, modified_only, sync=True).run_sync()
        error = build_error(self, errors)
        self._validation_error = error
        self._state.process('failed' if error is not None else 'passed')
        return error

    #-----------------------------------------------------------------#
    # Output
    #-----------------------------------------------------------------#

    def to_object(self, **options):
        return serializer.to_object(self, options)

    def to_json(self, **options):
        return serializer.to_json(self, options)

    def to_json_string(self, **options):
        return serializer.to_json_string(self, options)

    def _detach(self):
        pass

    def __repr__(self):
        return '%s(%r)' % (self.__class__.__name__, self.to_object(**PLAIN))


def _is_empty_mapping(value):
    for item in value.values():
        if item is UNDEFINED:
            continue
        if is_plain_mapping(item) and _is_empty_mapping(item):
            continue
        return False
    return True
