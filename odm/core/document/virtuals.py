#!/usr/bin/env python
"""
@file odm/core/document/virtuals.py
@brief Virtual (computed, not stored) paths and the per schema registry.
"""

from odm.core.document.object_utils import UNDEFINED, split_path

import odm.util.odmlog
log = odm.util.odmlog.getLogger(__name__)


class VirtualType(object):
    """
    A virtual path: getters compute the value on read, setters write the
    incoming value into real paths. Both receive the owning document as the
    trailing argument: getter(value, virtual, doc), setter(value, virtual, doc).
    """

    def __init__(self, path, options=None):
        self.path = path
        self.options = dict(options or {})
        self.getters = []
        self.setters = []

    def get(self, fn):
        self.getters.append(fn)
        return self

    def set(self, fn):
        self.setters.append(fn)
        return self

    def has_getter(self):
        return len(self.getters) > 0

    def apply_getters(self, value, doc):
        """
        @retval computed value, or UNDEFINED when no getter is defined
        """
        if not self.getters:
            return UNDEFINED
        v = value
        for fn in self.getters:
            v = fn(v, self, doc)
        return v

    def apply_setters(self, value, doc):
        v = value
        for fn in self.setters:
            v = fn(v, self, doc)
        return v

    def __repr__(self):
        return '<VirtualType path=%s>' % self.path


class VirtualRegistry(object):
    """
    Virtual paths of one schema, in definition order. Dotted virtuals also
    register their prefixes so nested scaffolding can be built on read and
    in output.
    """

    def __init__(self):
        self._virtuals = {}
        self._prefixes = set()
        self.aliases = {}

    def define_path(self, path, get=None, set=None, options=None):
        virtual = self._virtuals.get(path)
        if virtual is None:
            virtual = self._virtuals[path] = VirtualType(path, options)
            parts = split_path(path)
            for i in range(1, len(parts)):
                self._prefixes.add('.'.join(parts[:i]))
        if get is not None:
            virtual.get(get)
        if set is not None:
            virtual.set(set)
        return virtual

    def define_alias(self, alias, path):
        """
        Registers alias as a virtual reading and writing the real path.
        """
        self.aliases[alias] = path
        return self.define_path(alias,
                                get=lambda value, virtual, doc: doc.get(path),
                                set=lambda value, virtual, doc: doc.set(path, value))

    def get(self, path):
        return self._virtuals.get(path)

    def __contains__(self, path):
        return path in self._virtuals

    def __iter__(self):
        return iter(list(self._virtuals.keys()))

    def __len__(self):
        return len(self._virtuals)

    def items(self):
        return list(self._virtuals.items())

    def is_prefix(self, path):
        """
        True if path is an intermediate segment of some dotted virtual.
        """
        return path in self._prefixes

    def is_alias(self, path):
        return path in self.aliases
