#!/usr/bin/env python
"""
@file odm/core/document/hooks.py
@brief pre/post extension points around document operations.

Hooks are registered per schema by operation name ('validate', 'save',
'remove' or any instance method) and run in registration order. A hook may
return a Deferred; a raised exception or failed Deferred aborts the wrapped
operation through its errback.
"""

import functools

from twisted.internet import defer

import odm.util.odmlog
log = odm.util.odmlog.getLogger(__name__)


class Hooks(object):

    def __init__(self):
        self._pres = {}
        self._posts = {}

    def pre(self, name, fn):
        """
        @param fn callable(doc), may return a Deferred
        """
        self._pres.setdefault(name, []).append(fn)
        return self

    def post(self, name, fn):
        """
        @param fn callable(doc, result), may return a Deferred
        """
        self._posts.setdefault(name, []).append(fn)
        return self

    def has_hooks(self, name):
        return bool(self._pres.get(name) or self._posts.get(name))

    @defer.inlineCallbacks
    def exec_pre(self, name, doc):
        for fn in list(self._pres.get(name, [])):
            yield defer.maybeDeferred(fn, doc)

    @defer.inlineCallbacks
    def exec_post(self, name, doc, result=None):
        for fn in list(self._posts.get(name, [])):
            yield defer.maybeDeferred(fn, doc, result)
        return result

    def execute(self, name, doc, fn, *args, **kwargs):
        """
        Runs pre hooks, fn, then post hooks.
        @retval Deferred firing with the result of fn
        """
        d = self.exec_pre(name, doc)
        d.addCallback(lambda _: defer.maybeDeferred(fn, *args, **kwargs))
        d.addCallback(lambda result: self.exec_post(name, doc, result))
        return d

    def wrap_method(self, name, method):
        """
        Wraps an instance method so that calling it runs its hooks. The
        wrapped method returns a Deferred.
        """
        hooks = self

        @functools.wraps(method)
        def hooked(doc, *args, **kwargs):
            return hooks.execute(name, doc, method, doc, *args, **kwargs)
        return hooked
