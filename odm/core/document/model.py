#!/usr/bin/env python
"""
@file odm/core/document/model.py
@brief Named document classes bound to a collection, and their persistence
operations.

model('Person', schema) compiles a Document subclass once per name. Saving
validates, runs the save hooks of the document and all of its subdocuments,
then inserts (new documents) or applies get_changes() as an update.
"""

from twisted.internet import defer
from twisted.python import failure

from odm.core.exception import OdmError
from odm.core.data.store import Collection
from odm.core.document.document import Document, DocumentType, normalize_fields
from odm.core.document.errors import DocumentNotFoundError
from odm.core.document.object_utils import is_nullish, to_object_id

import odm.util.odmlog
log = odm.util.odmlog.getLogger(__name__)


_models = {}


def model(name, schema=None, collection=None):
    """
    Compiles (or with only a name, looks up) the model class for name.

    @param collection ICollection provider; an in-memory Collection named
        after the model by default
    @retval the model class
    """
    if schema is None:
        return get_model(name)
    existing = _models.get(name)
    if existing is not None:
        if existing.schema is schema:
            return existing
        raise OdmError('Cannot overwrite `%s` model once compiled.' % name)

    attrs = {
        'schema': schema,
        'model_name': name,
        'collection': collection if collection is not None else Collection(name.lower() + 's'),
        'error_listeners': [],
    }
    for static_name, fn in schema.statics.items():
        attrs[static_name] = classmethod(fn)
    cls = DocumentType(str(name), (Model,), attrs)
    _models[name] = cls
    log.debug('Compiled model %s' % name)
    return cls


def get_model(name):
    try:
        return _models[name]
    except KeyError:
        raise OdmError('Schema hasn\'t been registered for model "%s".' % name)


def reset_models():
    _models.clear()


class Model(Document):
    """
    Base class of compiled models.
    """

    collection = None
    error_listeners = None

    @classmethod
    def on_error(cls, fn):
        """
        Registers fn(err) to receive errors raised outside of any Deferred
        chain, e.g. by save callbacks.
        """
        cls.error_listeners.append(fn)
        return cls

    @classmethod
    def emit_error(cls, err):
        if not cls.error_listeners:
            log.error('Unhandled error on model %s: %s' % (cls.model_name, err))
            return
        for fn in list(cls.error_listeners):
            fn(err)

    @classmethod
    def hydrate(cls, raw, fields=None):
        """
        @param fields projection; `select: False` paths are left out unless named
        @retval a document for data already stored; nothing is modified
        """
        fields = cls.schema.default_fields(normalize_fields(fields))
        doc = cls(fields=fields, skip_id=True)
        doc.init(raw)
        return doc

    @classmethod
    def create(cls, obj):
        """
        Constructs and saves one document, or each of a list.
        @retval Deferred firing with the saved document(s)
        """
        if isinstance(obj, (list, tuple)):
            ds = [cls(item).save() for item in obj]
            return defer.gatherResults(ds, consumeErrors=True).addErrback(
                lambda f: f.value.subFailure)
        return defer.maybeDeferred(cls, obj).addCallback(lambda doc: doc.save())

    @classmethod
    def find_one(cls, filter, fields=None):
        """
        @retval Deferred firing with the first matching document or None
        """
        d = cls.collection.find_one(filter)
        d.addCallback(lambda raw: cls.hydrate(raw, fields) if raw is not None else None)
        return d

    @classmethod
    def find_by_id(cls, id, fields=None):
        d = defer.maybeDeferred(to_object_id, id)
        d.addCallback(lambda _id: cls.find_one({'_id': _id}, fields))
        return d

    @classmethod
    def delete_one(cls, filter):
        return cls.collection.delete_one(filter)

    def _where(self):
        return {'_id': self.get_value('_id')}

    def save(self, validate_before_save=None, callback=None):
        """
        @param validate_before_save overrides the schema option
        @param callback optional callback(err, doc); an exception raised by it
            is passed to emit_error()
        @retval Deferred firing with self
        """
        d = self._save(validate_before_save)
        if callback is None:
            return d

        def _done(result):
            if isinstance(result, failure.Failure):
                err, doc = result.value, None
            else:
                err, doc = None, result
            try:
                callback(err, doc)
            except Exception as ex:
                log.error('save callback failed: %s' % ex)
                self.emit_error(ex)
            return doc
        d.addBoth(_done)
        return d

    @defer.inlineCallbacks
    def _save(self, validate_before_save=None):
        if validate_before_save is None:
            validate_before_save = self.schema.options.get('validate_before_save', True)
        if validate_before_save:
            yield self.validate()

        subdocs = self.all_subdocs()
        for sub in subdocs:
            yield sub.schema.hooks.exec_pre('save', sub)
        yield self.schema.hooks.exec_pre('save', self)

        if self.is_new:
            raw = self.to_object(transform=False, virtuals=False, getters=False,
                                 depopulate=True, flatten_maps=True)
            yield self.collection.insert_one(raw)
        else:
            where = self._where()
            changes = self.get_changes()
            if changes:
                matched = yield self.collection.update_one(where, changes)
            else:
                exists = yield self.collection.exists(where)
                matched = 1 if exists else 0
            if not matched:
                raise DocumentNotFoundError(where, self.model_name)

        self.reset()
        yield self.schema.hooks.exec_post('save', self, self)
        for sub in subdocs:
            yield sub.schema.hooks.exec_post('save', sub, sub)
        return self

    @defer.inlineCallbacks
    def remove(self):
        """
        Deletes the stored document, running the remove hooks.
        @retval Deferred firing with self
        """
        yield self.schema.hooks.exec_pre('remove', self)
        if not is_nullish(self.get_value('_id')):
            yield self.collection.delete_one(self._where())
        yield self.schema.hooks.exec_post('remove', self, self)
        return self
