#!/usr/bin/env python
"""
@file odm/core/document/serializer.py
@brief Projects documents to plain data (to_object) and JSON ready data
(to_json, to_json_string).

Options, in increasing precedence: DEFAULTS, the schema's minimize option,
the schema's to_object / to_json options, the call options.
  transform      True: the node's schema transform; a function: applied to
                 the root only; False: none anywhere
  virtuals       include virtual paths
  getters        apply path getters (and include virtuals unless
                 virtuals is False)
  depopulate     populated documents are written as their _id
  minimize       omit empty objects
  flatten_maps   maps become plain dicts (default for JSON)
  aliases        include alias virtuals
  use_projection omit paths outside the document's field selection
"""

import inspect

import simplejson as json

from twisted.internet import defer

from odm.core.document.containers import DocumentMap
from odm.core.document.errors import SynchronousTransformError, json_default
from odm.core.document.object_utils import UNDEFINED, is_document, is_plain_mapping, \
    set_nested, clone

import odm.util.odmlog
log = odm.util.odmlog.getLogger(__name__)


DEFAULTS = {
    'transform': True,
    'virtuals': None,
    'getters': False,
    'depopulate': False,
    'minimize': True,
    'flatten_maps': False,
    'aliases': True,
    'use_projection': False,
}


def _schema_options(doc, as_json):
    return doc.schema.options.get('to_json' if as_json else 'to_object') or {}


def resolve_options(doc, options, as_json=False):
    result = dict(DEFAULTS)
    if as_json:
        result['flatten_maps'] = True
    result['minimize'] = doc.schema.options.get('minimize', True)
    result.update(_schema_options(doc, as_json))
    result.update(options)
    return result


def to_object(doc, options=None):
    return _serialize(doc, options or {}, False)


def to_json(doc, options=None):
    return _serialize(doc, options or {}, True)


def to_json_string(doc, options=None):
    return json.dumps(to_json(doc, options), default=json_default)


def _serialize(doc, call_options, as_json):
    options = resolve_options(doc, call_options, as_json)

    child_options = dict(call_options)
    child_options['transform'] = call_options.get('transform') is not False

    ret = _project(doc, doc._doc, '', options, child_options, as_json)

    if options['virtuals'] is True or (options['getters'] and options['virtuals'] is not False):
        _apply_virtuals(doc, ret, options, child_options, as_json)

    transform = options.get('transform')
    if transform is True:
        transform = _schema_options(doc, as_json).get('transform')
    if callable(transform):
        result = transform(doc, ret, options)
        if isinstance(result, defer.Deferred) or inspect.isawaitable(result):
            if hasattr(result, 'close'):
                result.close()
            elif isinstance(result, defer.Deferred):
                result.addErrback(lambda f: None)
            raise SynchronousTransformError()
        if result is not None:
            ret = result
    return ret if ret is not None else {}


def _project(doc, raw, prefix, options, child_options, as_json):
    result = {}
    schema = doc.schema
    for key, value in raw.items():
        if value is UNDEFINED:
            continue
        path = prefix + key
        if options['use_projection'] and not doc.in_projection(path):
            continue
        schematype = schema.paths.get(path)
        if schematype is None and path in schema.nested and is_plain_mapping(value):
            sub = _project(doc, value, path + '.', options, child_options, as_json)
            if options['minimize'] and not sub:
                continue
            result[key] = sub
            continue

        out = _value(value, options, child_options, as_json)
        if options['minimize'] and isinstance(out, dict) and not out and \
                not is_document(value):
            continue
        if schematype is not None:
            if options['getters'] and schematype.getters:
                out = schematype.apply_getters(out, doc)
            if options['transform'] is not False:
                out = _apply_path_transform(schematype, out)
        result[key] = out
    return result


def _apply_path_transform(schematype, value):
    caster = getattr(schematype, 'caster', None)
    if caster is not None and caster.transform_fn and isinstance(value, list):
        value = [caster.transform_fn(item) for item in value]
    if schematype.transform_fn:
        value = schematype.transform_fn(value)
    return value


def _value(value, options, child_options, as_json):
    if is_document(value):
        if not value._embedded and options['depopulate']:
            return value.get_value('_id')
        return _serialize(value, child_options, as_json)
    if isinstance(value, DocumentMap):
        items = dict((k, _value(v, options, child_options, as_json))
                     for k, v in value.items() if v is not UNDEFINED)
        if options['flatten_maps']:
            return items
        return DocumentMap(items)
    if isinstance(value, list):
        return [_value(item, options, child_options, as_json) for item in value]
    if isinstance(value, dict):
        result = {}
        for k, v in value.items():
            if v is UNDEFINED:
                continue
            out = _value(v, options, child_options, as_json)
            if options['minimize'] and isinstance(out, dict) and not out:
                continue
            result[k] = out
        return result
    return clone(value)


def _apply_virtuals(doc, ret, options, child_options, as_json):
    schema = doc.schema
    for path, virtual in schema.virtuals.items():
        if not virtual.has_getter():
            continue
        if schema.virtuals.is_alias(path):
            if options['aliases'] is False:
                continue
            if options['use_projection'] and not doc.in_projection(schema.virtuals.aliases[path]):
                continue
        elif options['use_projection'] and not doc.in_projection(path):
            continue
        value = virtual.apply_getters(None, doc)
        if value is UNDEFINED:
            continue
        if is_document(value):
            value = _value(value, options, child_options, as_json)
        set_nested(ret, path, value)
