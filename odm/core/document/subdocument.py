#!/usr/bin/env python
"""
@file odm/core/document/subdocument.py
@brief Embedded documents: elements of document arrays and single nested
subdocuments. Changes made inside them are reported to the parent under the
subdocument's base path.
"""

import weakref

from odm.core.document.document import Document
from odm.core.document.object_utils import UNDEFINED

import odm.util.odmlog
log = odm.util.odmlog.getLogger(__name__)


def _ref(parent):
    return weakref.ref(parent) if parent is not None else None


class EmbeddedDocument(Document):
    """
    Element of a document array.

    @param parent the owning document
    @param parent_array the DocumentArray holding this element
    """

    _embedded = True

    def __init__(self, obj=None, parent=None, parent_array=None, fields=None,
                 skip_id=False, defaults=True, strict=None):
        self._parent_ref = _ref(parent)
        self._parent_array = parent_array
        Document.__init__(self, obj, fields, skip_id, defaults, strict)

    def parent(self):
        return self._parent_ref() if self._parent_ref is not None else None

    def parent_array(self):
        return self._parent_array

    def owner_document(self):
        doc = self
        while doc.parent() is not None:
            doc = doc.parent()
        return doc

    def array_index(self):
        arr = self._parent_array
        if arr is None:
            return None
        for i, item in enumerate(arr):
            if item is self:
                return i
        return None

    def base_path(self):
        arr = self._parent_array
        idx = self.array_index()
        if arr is None or idx is None:
            return None
        return '%s.%s' % (arr.path, idx)

    def _container_path(self):
        arr = self._parent_array
        return arr.path if arr is not None else None

    def _adopt(self, parent, where):
        self._parent_ref = _ref(parent)
        self._parent_array = where

    def _detach(self):
        self._parent_ref = None
        self._parent_array = None

    def _after_modified(self, path):
        Document._after_modified(self, path)
        parent = self.parent()
        if self._constructing or parent is None:
            return
        if self.is_new:
            # Not persisted yet: the whole container goes out with the parent
            container = self._container_path()
            if container is not None:
                parent.mark_modified(container)
            return
        arr = self.parent_array()
        if arr is not None and arr._atomics:
            arr._register_atomic('$set', arr)
            parent.mark_modified(self._container_path())
            return
        base = self.base_path()
        if base is not None:
            parent.mark_modified('%s.%s' % (base, path))

    def _after_unmarked(self, path):
        parent = self.parent()
        base = self.base_path()
        if parent is None or base is None or self.is_new:
            return
        parent.unmark_modified('%s.%s' % (base, path))

    def ignore(self, path):
        Document.ignore(self, path)
        parent = self.parent()
        base = self.base_path()
        if parent is not None and base is not None:
            parent.ignore('%s.%s' % (base, path))
        return self

    def invalidate(self, path, err, value=UNDEFINED, kind=None):
        error = Document.invalidate(self, path, err, value, kind)
        parent = self.parent()
        base = self.base_path()
        if parent is not None and base is not None:
            parent.invalidate('%s.%s' % (base, path), error.errors[path], value, kind)
        return error

    def remove(self):
        """
        Removes this element from its parent array.
        """
        arr = self._parent_array
        if arr is not None:
            arr.pull(self)
        return self


class SingleNestedDocument(EmbeddedDocument):
    """
    Subdocument stored under a single path of its parent.
    """

    def __init__(self, obj=None, parent=None, path=None, fields=None,
                 skip_id=False, defaults=True, strict=None):
        self._base_path = path
        EmbeddedDocument.__init__(self, obj, parent, None, fields, skip_id, defaults, strict)

    def base_path(self):
        return self._base_path

    def array_index(self):
        return None

    def _container_path(self):
        return self._base_path

    def _adopt(self, parent, where):
        self._parent_ref = _ref(parent)
        self._base_path = where

    def _detach(self):
        self._parent_ref = None

    def remove(self):
        """
        Unsets this subdocument in its parent.
        """
        parent = self.parent()
        if parent is not None and self._base_path is not None:
            parent.set(self._base_path, None)
        return self
