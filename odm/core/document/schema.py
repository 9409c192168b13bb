#!/usr/bin/env python
"""
@file odm/core/document/schema.py
@brief Compiles a dict definition into the flat path descriptor documents
consume.

The definition is walked once at construction. Every real path maps to a
SchemaType in Schema.paths; plain nested objects are recorded in
Schema.nested. Documents resolve paths by lookup, never by re-parsing the
definition. A schema is shared read-only by every document of its type once
the first document class has been built from it.
"""

import datetime

from bson import ObjectId

from odm.core.exception import OdmError
from odm.core.document import schematypes
from odm.core.document.hooks import Hooks
from odm.core.document.virtuals import VirtualRegistry
from odm.core.document.object_utils import UNDEFINED, split_path, parent_paths, \
    is_reserved_key, is_nullish, utcnow

import odm.util.odmlog
from odm.core import odminit

CONF = odminit.config(__name__)
log = odm.util.odmlog.getLogger(__name__)


class Mixed(object):
    """
    Marker type: the path stores any value without casting.
    """


class Map(object):
    """
    Marker type: {'type': Map, 'of': <type>} stores a string keyed map.
    """


class Types(object):
    String = str
    Number = float
    Boolean = bool
    Date = datetime.datetime
    ObjectId = ObjectId
    Buffer = bytes
    Mixed = Mixed
    Map = Map


TYPE_MAP = {
    str: schematypes.String,
    int: schematypes.Number,
    float: schematypes.Number,
    bool: schematypes.Boolean,
    datetime.datetime: schematypes.Date,
    datetime.date: schematypes.Date,
    ObjectId: schematypes.ObjectIdType,
    bytes: schematypes.Buffer,
    dict: schematypes.Mixed,
    object: schematypes.Mixed,
    Mixed: schematypes.Mixed,
}

NAME_MAP = {
    'String': schematypes.String,
    'Number': schematypes.Number,
    'Boolean': schematypes.Boolean,
    'Date': schematypes.Date,
    'ObjectId': schematypes.ObjectIdType,
    'Buffer': schematypes.Buffer,
    'Mixed': schematypes.Mixed,
}

DEFAULT_OPTIONS = {
    'strict': True,
    'minimize': True,
    'to_object': None,
    'to_json': None,
    'id': True,
    '_id': True,
    'timestamps': False,
    'validate_before_save': True,
    'validate_modified_only': False,
    'store_subdoc_validation_error': True,
    'boolean_table': None,
}

# Resolved positional and map paths kept per schema
SUBPATH_CACHE_SIZE = 4096

# Options a child schema built from an inline definition inherits
INHERITED_OPTIONS = ('strict', 'boolean_table', 'minimize')

# Top level names taken by the document API
RESERVED = frozenset([
    'collection', 'depopulate', 'direct_modified_paths', 'equals', 'errors', 'get',
    'get_changes', 'get_value', 'ignore', 'in_projection', 'init', 'invalidate', 'is_default',
    'is_direct_modified', 'is_empty', 'is_init', 'is_modified', 'is_new', 'is_selected',
    'is_valid', 'mark_modified', 'mark_valid', 'model_name', 'modified_paths', 'on_error',
    'overwrite', 'owner_document', 'parent', 'populated', 'remove', 'reset', 'save', 'schema',
    'set', 'set_value', 'to_json', 'to_json_string', 'to_object', 'unmark_modified', 'unset',
    'validate', 'validate_sync', 'validation_state',
])


def _is_type_options(obj):
    """
    {'type': X, ...} declares path options, unless X is itself a dict with a
    'type' key, which declares a nested field named 'type'.
    """
    if 'type' not in obj:
        return False
    t = obj['type']
    return not (isinstance(t, dict) and 'type' in t)


class Schema(object):
    """
    @param definition dict mapping path names to types or path options
    @param options see DEFAULT_OPTIONS
    """

    def __init__(self, definition=None, **options):
        self.options = dict(DEFAULT_OPTIONS)
        self.options.update(CONF.getValue('defaults', {}))
        self.options.update(options)
        self.paths = {}
        self.nested = {}
        self.subpaths = {}
        self.virtuals = VirtualRegistry()
        self.methods = {}
        self.statics = {}
        self.hooks = Hooks()
        self.timestamps = None

        if definition:
            self.add(definition)

        if self.options['_id'] and '_id' not in self.paths:
            self.path('_id', {'type': ObjectId, 'auto': True})

        if self.options['id'] and '_id' in self.paths and 'id' not in self.paths \
                and 'id' not in self.virtuals:
            self.virtual('id').get(_id_getter)

        self._setup_timestamps()

    def __repr__(self):
        return '<Schema paths=%s>' % list(self.paths.keys())

    #-----------------------------------------------------------------#
    # Definition
    #-----------------------------------------------------------------#

    def add(self, obj, prefix=''):
        """
        Adds the paths of a definition dict, under prefix.
        """
        for key, value in obj.items():
            if is_reserved_key(key) or (not prefix and key in RESERVED):
                raise OdmError('`%s` may not be used as a schema pathname' % key)
            full = prefix + key
            if value is None:
                raise TypeError('Invalid value for schema path `%s`' % full)
            if isinstance(value, dict) and not _is_type_options(value):
                if not value:
                    self.path(full, Mixed)
                else:
                    for ancestor in parent_paths(full):
                        self.nested[ancestor] = True
                    self.add(value, full + '.')
            else:
                self.path(full, value)
        return self

    def path(self, path, obj=UNDEFINED):
        """
        With one argument, returns the SchemaType at path (resolving
        positional and subdocument paths) or None. With two, defines path.
        """
        if obj is UNDEFINED:
            if path in self.paths:
                return self.paths[path]
            if path in self.subpaths:
                return self.subpaths[path]
            schematype = self._resolve_subpath(path)
            if schematype is not None and len(self.subpaths) < SUBPATH_CACHE_SIZE:
                self.subpaths[path] = schematype
            return schematype

        for ancestor in parent_paths(path)[:-1]:
            if ancestor in self.paths:
                raise TypeError('Cannot set nested path `%s`. Parent path `%s` already set to type %s.'
                                % (path, ancestor, self.paths[ancestor].instance))
            self.nested[ancestor] = True

        schematype = self.interpret_as_type(path, obj)
        self.paths[path] = schematype
        if schematype.alias_name:
            if schematype.alias_name in self.paths:
                raise OdmError('Alias `%s` conflicts with an existing path' % schematype.alias_name)
            self.virtuals.define_alias(schematype.alias_name, path)
        return self

    def _child_options(self):
        return dict((k, self.options[k]) for k in INHERITED_OPTIONS if k in self.options)

    def interpret_as_type(self, path, obj):
        """
        @retval the SchemaType for a definition value at path
        """
        if isinstance(obj, dict) and _is_type_options(obj):
            options = dict(obj)
            t = options['type']
        else:
            options = {}
            t = obj

        if t is list:
            t = []

        if isinstance(t, (list, tuple)):
            cast = t[0] if len(t) else Mixed
            if isinstance(cast, Schema):
                return schematypes.DocumentArray(path, cast, options, self)
            if isinstance(cast, dict) and not _is_type_options(cast):
                if not cast:
                    return schematypes.Array(path, schematypes.Mixed(path), options, self)
                child = Schema(cast, **self._child_options())
                return schematypes.DocumentArray(path, child, options, self)
            if isinstance(cast, dict) and isinstance(cast['type'], Schema):
                merged = dict(cast)
                merged.update(options)
                return schematypes.DocumentArray(path, cast['type'], merged, self)
            caster = self.interpret_as_type(path, cast)
            return schematypes.Array(path, caster, options, self)

        if isinstance(t, Schema):
            return schematypes.SingleNested(path, t, options, self)

        if t is Map or t == 'Map':
            value_type = self.interpret_as_type(path + '.$*', options.get('of', Mixed))
            return schematypes.Map(path, value_type, options, self)

        if isinstance(t, dict):
            if not t:
                return schematypes.Mixed(path, options, self)
            child = Schema(t, **self._child_options())
            return schematypes.SingleNested(path, child, options, self)

        try:
            cls = TYPE_MAP.get(t) or NAME_MAP.get(t)
        except TypeError:
            cls = None
        if cls is None:
            raise TypeError('Invalid schema configuration: `%r` is not a valid type at path `%s`'
                            % (t, path))
        return cls(path, options, self)

    def _resolve_subpath(self, path):
        parts = split_path(path)
        for i in range(len(parts) - 1, 0, -1):
            prefix = '.'.join(parts[:i])
            schematype = self.paths.get(prefix)
            if schematype is None:
                continue
            rest = list(parts[i:])
            if schematype.is_document_array:
                if rest and (rest[0].isdigit() or rest[0] == '$'):
                    rest = rest[1:]
                if not rest:
                    return schematype
                return schematype.schema.path('.'.join(rest))
            if schematype.is_single_nested:
                return schematype.schema.path('.'.join(rest))
            if schematype.is_array:
                caster = schematype
                while rest and rest[0].isdigit() and caster.is_array:
                    caster = caster.caster
                    rest = rest[1:]
                return caster if not rest else None
            if schematype.is_map:
                value_type = schematype.value_type
                rest = rest[1:]
                if not rest:
                    return value_type
                if value_type.is_single_nested:
                    return value_type.schema.path('.'.join(rest))
                return None
            return None
        return None

    def path_type(self, path):
        """
        @retval 'real', 'virtual', 'nested' or 'adhocOrUndefined'
        """
        if path in self.paths:
            return 'real'
        if path in self.virtuals:
            return 'virtual'
        if path in self.nested or self.virtuals.is_prefix(path):
            return 'nested'
        if self.path(path) is not None:
            return 'real'
        return 'adhocOrUndefined'

    def is_mixed_subpath(self, path):
        """
        True if path lies under a Mixed path ('meta.a.b' when 'meta' is Mixed).
        """
        for ancestor in parent_paths(path)[:-1]:
            schematype = self.paths.get(ancestor)
            if schematype is not None:
                return isinstance(schematype, schematypes.Mixed) and not schematype.is_array
        return False

    def required_paths(self):
        return [path for path, schematype in self.paths.items() if schematype.is_required]

    def deselected_paths(self):
        """
        @retval paths declared with `select: False`
        """
        return [path for path, schematype in self.paths.items() if schematype.selected is False]

    def default_fields(self, fields):
        """
        Excludes the `select: False` paths from a field selection that does
        not name them. An inclusive selection leaves them out already.

        @param fields normalized selection (dict path -> 0/1) or None
        @retval the selection to load documents with
        """
        deselected = self.deselected_paths()
        if not deselected:
            return fields
        fields = dict(fields or {})
        if any(v for k, v in fields.items() if k != '_id'):
            return fields
        for path in deselected:
            fields.setdefault(path, 0)
        return fields

    def virtual(self, name, options=None):
        """
        @retval the VirtualType at name; chain .get(fn) / .set(fn) on it
        """
        if name in self.paths:
            raise OdmError('Virtual path `%s` conflicts with a real path' % name)
        return self.virtuals.define_path(name, options=options)

    def method(self, name, fn=None):
        """
        Adds instance methods: method(name, fn) or method({name: fn}).
        """
        if isinstance(name, dict):
            for key, value in name.items():
                self.method(key, value)
            return self
        if name in RESERVED:
            raise OdmError('You have a method named `%s` that conflicts with the document API' % name)
        self.methods[name] = fn
        return self

    def static(self, name, fn):
        self.statics[name] = fn
        return self

    def pre(self, name, fn):
        self.hooks.pre(name, fn)
        return self

    def post(self, name, fn):
        self.hooks.post(name, fn)
        return self

    def set(self, key, value):
        self.options[key] = value
        return self

    def get(self, key):
        return self.options.get(key)

    #-----------------------------------------------------------------#
    # Timestamps
    #-----------------------------------------------------------------#

    def _setup_timestamps(self):
        ts = self.options.get('timestamps')
        if not ts:
            return
        created, updated = 'created_at', 'updated_at'
        if isinstance(ts, dict):
            created = ts.get('created_at', created)
            updated = ts.get('updated_at', updated)
        if created and self.path(created) is None:
            self.path(created, {'type': datetime.datetime, 'immutable': True})
        if updated and self.path(updated) is None:
            self.path(updated, {'type': datetime.datetime})
        self.timestamps = (created, updated)
        self.pre('save', apply_timestamps)


def _id_getter(value, virtual, doc):
    _id = doc.get_value('_id')
    if is_nullish(_id):
        return None
    return str(_id)


def apply_timestamps(doc):
    """
    pre save hook: stamps created on insert, updated on insert and on any
    modification.
    """
    created, updated = doc.schema.timestamps
    now = utcnow()
    if doc.is_new:
        if created and is_nullish(doc.get_value(created)):
            doc.set(created, now)
        if updated:
            doc.set(updated, doc.get_value(created) if created else now)
    elif updated and doc.is_modified():
        doc.set(updated, now)
