#!/usr/bin/env python
"""
@file odm/core/document/errors.py
@brief Errors raised or collected by the document core. All of them derive
from OdmError and convert to plain data with to_dict().
"""

import simplejson as json

from bson import ObjectId

from odm.core.exception import OdmError
from odm.core.document.object_utils import UNDEFINED

import odm.util.odmlog
log = odm.util.odmlog.getLogger(__name__)


# Default validator messages; {PATH}, {VALUE} and option names are filled in
MESSAGES = {
    'general': {
        'default': 'Validator failed for path `{PATH}` with value `{VALUE}`',
        'required': 'Path `{PATH}` is required.',
    },
    'Number': {
        'min': 'Path `{PATH}` ({VALUE}) is less than minimum allowed value ({MIN}).',
        'max': 'Path `{PATH}` ({VALUE}) is more than maximum allowed value ({MAX}).',
        'enum': '`{VALUE}` is not a valid enum value for path `{PATH}`.',
    },
    'Date': {
        'min': 'Path `{PATH}` ({VALUE}) is before minimum allowed value ({MIN}).',
        'max': 'Path `{PATH}` ({VALUE}) is after maximum allowed value ({MAX}).',
    },
    'String': {
        'enum': '`{VALUE}` is not a valid enum value for path `{PATH}`.',
        'match': 'Path `{PATH}` is invalid ({VALUE}).',
        'minlength': 'Path `{PATH}` (`{VALUE}`) is shorter than the minimum allowed length ({MINLENGTH}).',
        'maxlength': 'Path `{PATH}` (`{VALUE}`) is longer than the maximum allowed length ({MAXLENGTH}).',
    },
}


def json_default(obj):
    if isinstance(obj, ObjectId):
        return str(obj)
    if hasattr(obj, 'isoformat'):
        return obj.isoformat()
    if isinstance(obj, (bytes, bytearray)):
        return obj.decode('latin-1')
    if obj is UNDEFINED:
        return None
    if hasattr(obj, 'to_dict'):
        return obj.to_dict()
    if hasattr(obj, 'to_json'):
        return obj.to_json()
    return repr(obj)


def _plain(value):
    if hasattr(value, 'to_object') and callable(value.to_object):
        try:
            return value.to_object()
        except TypeError:
            return repr(value)
    if value is UNDEFINED:
        return None
    return value


def format_message(message, properties):
    """
    Fills {KEY} templates in a message from the given properties. A callable
    message is called with the properties instead.
    """
    if callable(message):
        return message(properties)
    if not isinstance(message, str):
        return message
    for key, value in properties.items():
        if key in ('message', 'validator', 'reason'):
            continue
        token = '{%s}' % key.upper()
        if token in message:
            message = message.replace(token, '%s' % (_plain(value),))
    return message


class DocumentError(OdmError):
    """
    Base for errors tied to a document path.
    """
    name = 'DocumentError'

    def to_dict(self):
        return {'name': self.name, 'message': self.message}

    def to_json(self):
        return json.dumps(self.to_dict(), default=json_default)


class CastError(DocumentError):
    """
    Raw input could not be converted to the declared type of a path.
    """
    name = 'CastError'

    def __init__(self, kind, value, path, reason=None, schematype=None):
        self.kind = kind
        self.value = value
        self.path = path
        self.reason = reason
        self.schematype = schematype
        self.string_value = self._string_value(value)
        DocumentError.__init__(self, self._format())

    def _string_value(self, value):
        if isinstance(value, str):
            return '"%s"' % value
        return repr(_plain(value))

    def _format(self):
        msg = 'Cast to %s failed for value %s (type %s) at path "%s"' % (
            self.kind, self.string_value, type(self.value).__name__, self.path)
        if self.reason is not None and str(self.reason):
            msg += ' because of "%s"' % (self.reason.__class__.__name__,)
        return msg

    def set_path(self, path):
        self.path = path
        self.message = self._format()

    def to_dict(self):
        result = {
            'name': self.name,
            'message': self.message,
            'kind': self.kind,
            'path': self.path,
            'value': _plain(self.value),
            'string_value': self.string_value,
        }
        if self.reason is not None:
            result['reason'] = _reason_dict(self.reason)
        return result


class ValidatorError(DocumentError):
    """
    A required, built-in or custom validator rejected a value.
    """
    name = 'ValidatorError'

    def __init__(self, properties=None, **kwargs):
        properties = dict(properties or {}, **kwargs)
        message = properties.get('message')
        if message is None:
            message = MESSAGES['general']['default']
        properties.setdefault('kind', properties.get('type', 'user defined'))
        properties.setdefault('type', properties['kind'])
        message = format_message(message, properties)
        properties['message'] = message
        self.properties = properties
        self.kind = properties['kind']
        self.path = properties.get('path')
        self.value = properties.get('value', UNDEFINED)
        self.reason = properties.get('reason')
        DocumentError.__init__(self, message)

    def to_dict(self):
        result = {
            'name': self.name,
            'message': self.message,
            'kind': self.kind,
            'path': self.path,
            'value': _plain(self.value),
        }
        if self.reason is not None:
            result['reason'] = _reason_dict(self.reason)
        return result


def _reason_dict(reason):
    if hasattr(reason, 'to_dict'):
        return reason.to_dict()
    return {'name': reason.__class__.__name__, 'message': str(reason)}


class ValidationError(DocumentError):
    """
    Aggregate of every path error found in one validation pass, keyed by
    dotted path in the order the errors were added.
    """
    name = 'ValidationError'

    def __init__(self, instance=None):
        self.errors = {}
        self._model_name = None
        if instance is not None:
            self._model_name = getattr(instance.__class__, 'model_name', None)
        if self._model_name:
            self._base = '%s validation failed' % self._model_name
        else:
            self._base = 'Validation failed'
        DocumentError.__init__(self, self._base)

    def add_error(self, path, error):
        if error is self:
            raise OdmError('A ValidationError cannot contain itself')
        self.errors[path] = error
        self.message = self._format()

    def remove_error(self, path):
        self.errors.pop(path, None)
        self.message = self._format()

    def _format(self):
        if not self.errors:
            return self._base
        parts = []
        for path, error in self.errors.items():
            if isinstance(error, ValidationError):
                continue
            parts.append('%s: %s' % (path, error.message if hasattr(error, 'message') else error))
        return '%s: %s' % (self._base, ', '.join(parts))

    def __len__(self):
        return len(self.errors)

    def __contains__(self, path):
        return path in self.errors

    def __getitem__(self, path):
        return self.errors[path]

    def to_dict(self):
        errors = {}
        for path, error in self.errors.items():
            errors[path] = _reason_dict(error)
        return {
            'name': self.name,
            'message': self.message,
            'errors': errors,
        }


class ParallelValidateError(DocumentError):
    """
    A second validate() was started on a document while one is in flight.
    """
    name = 'ParallelValidateError'

    def __init__(self, doc):
        self.document = doc
        msg = "Can't validate() the same doc multiple times in parallel. Document: %s" % (
            getattr(doc, '_id', None),)
        DocumentError.__init__(self, msg)


class DocumentNotFoundError(DocumentError):
    """
    The persistence target of a save no longer exists.
    """
    name = 'DocumentNotFoundError'

    def __init__(self, filter, model_name, result=None):
        self.filter = filter
        self.model_name = model_name
        self.result = result
        msg = 'No document found for query "%s" on model "%s"' % (
            json.dumps(filter, default=json_default, sort_keys=True), model_name)
        DocumentError.__init__(self, msg)

    def to_dict(self):
        return {'name': self.name, 'message': self.message,
                'filter': self.filter, 'model_name': self.model_name}


class StrictModeError(DocumentError):
    """
    Write to a path not in the schema while strict is 'throw', or to an
    immutable path.
    """
    name = 'StrictModeError'

    def __init__(self, path, message=None, immutable=False):
        self.path = path
        self.is_immutable_error = immutable
        if message is None:
            message = 'Field `%s` is not in schema and strict mode is set to throw.' % path
        DocumentError.__init__(self, message)


class ObjectParameterError(DocumentError):
    """
    A value that must be a mapping was something else.
    """
    name = 'ObjectParameterError'

    def __init__(self, value, param_name, fn_name):
        self.value = value
        msg = 'Parameter "%s" to %s() must be an object, got %r' % (param_name, fn_name, _plain(value))
        DocumentError.__init__(self, msg)


class ObjectExpectedError(DocumentError):
    """
    A scalar or list was assigned where an embedded document is expected.
    """
    name = 'ObjectExpectedError'

    def __init__(self, path, value):
        self.path = path
        self.value = value
        msg = 'Tried to set nested object field `%s` to primitive value `%r`' % (path, _plain(value))
        DocumentError.__init__(self, msg)


class ArrayAtomicsError(DocumentError):
    """
    Two array operations that cannot be combined into one update were
    requested in the same change window.
    """
    name = 'ArrayAtomicsError'


class SynchronousTransformError(DocumentError):
    """
    A serialization transform returned a Deferred or awaitable.
    """
    name = 'SynchronousTransformError'

    def __init__(self, path=None):
        if path:
            msg = '`transform` function must be synchronous, but the transform on path `%s` returned a Deferred.' % path
        else:
            msg = '`transform` function must be synchronous, but the transform returned a Deferred.'
        DocumentError.__init__(self, msg)
