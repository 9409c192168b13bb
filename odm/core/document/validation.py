#!/usr/bin/env python
"""
@file odm/core/document/validation.py
@brief Orchestrates a validation pass over a document tree.

A pass picks the paths to check (explicit list, modified only, or every
active path), validates each of them exactly once, descends into embedded
documents and collects everything into one ValidationError. Asynchronous
validators of independent paths and subdocuments run concurrently.
"""

from twisted.internet import defer

from odm.core.document.errors import ValidationError
from odm.core.document.object_utils import UNDEFINED, split_path, is_document

import odm.util.odmlog
log = odm.util.odmlog.getLogger(__name__)


class PathOutcome(object):
    """
    Result of validating one path in a pass. REQUIRED_FAILED short-circuits
    the remaining validators of that path only.
    """
    PASSED = 'passed'
    REQUIRED_FAILED = 'required_failed'
    VALIDATOR_FAILED = 'validator_failed'
    CAST_FAILED = 'cast_failed'
    SKIPPED = 'skipped'


def paths_to_validate(doc, paths=None, modified_only=False):
    """
    Selects the node relative schema paths a pass over doc must check.

    @param paths explicit list of paths; nested roots expand to their leaves
    @param modified_only only paths that are modified (or under a modified path)
    @retval list of paths, each once, in first-seen order
    """
    schema = doc.schema
    seen = set()
    result = []

    def _add(path):
        if path in seen:
            return
        seen.add(path)
        result.append(path)

    if paths is not None:
        for path in paths:
            if path in schema.nested:
                for sub in schema.paths:
                    if sub.startswith(path + '.'):
                        _add(sub)
            elif path in schema.paths:
                _add(path)
            else:
                # Positional or deep path: validate the owning top path
                owner = _owning_path(schema, path)
                if owner is not None:
                    _add(owner)
        return result

    tracker = doc._tracker
    candidates = tracker.paths_in_states('require', 'init', 'modify', 'default')
    for path in candidates:
        if path in schema.nested:
            # Replaced nested object: its leaves carry no records of their own
            owners = [sub for sub in schema.paths if sub.startswith(path + '.')]
        else:
            owner = path if path in schema.paths else _owning_path(schema, path)
            owners = [owner] if owner is not None else []
        for owner in owners:
            if modified_only and not doc.is_modified(owner):
                continue
            if not doc.is_selected(owner):
                continue
            _add(owner)
    return result


def _owning_path(schema, path):
    parts = split_path(path)
    for i in range(len(parts), 0, -1):
        prefix = '.'.join(parts[:i])
        if prefix in schema.paths:
            return prefix
    return None


class ValidationPass(object):
    """
    One validation pass over a single document node. Subdocuments validate
    themselves; their errors are re-keyed under the subdocument path.
    """

    def __init__(self, doc, paths=None, modified_only=False, sync=False):
        self.doc = doc
        self.sync = sync
        self.modified_only = modified_only
        self.explicit = paths is not None
        self.paths = paths_to_validate(doc, paths, modified_only)
        self.outcomes = {}

    def _path_outcome(self, path):
        doc = self.doc
        if path in doc._cast_errors:
            return (PathOutcome.CAST_FAILED, doc._cast_errors[path])
        schematype = doc.schema.paths[path]
        value = doc.get_value(path)
        return schematype.do_validate(value, doc, self.sync)

    def _subdocuments(self, path):
        """
        @retval list of (error key prefix, subdocument, store aggregate flag)
        """
        schematype = self.doc.schema.paths[path]
        value = self.doc.get_value(path)
        subs = []
        if schematype.is_single_nested and is_document(value):
            subs.append((path, value, value.schema.options.get('store_subdoc_validation_error', True)))
        elif schematype.is_document_array and isinstance(value, list):
            for i, sub in enumerate(value):
                if is_document(sub):
                    subs.append(('%s.%s' % (path, i), sub, False))
        return subs

    def run_sync(self):
        """
        @retval dict path -> error of every failing path
        """
        errors = {}
        for path in self.paths:
            outcome, error = self._path_outcome(path)
            self.outcomes[path] = outcome
            if error is not None:
                errors[path] = error
                continue
            for prefix, sub, store in self._subdocuments(path):
                sub_error = sub._validate_sync_node(None, self.modified_only)
                self._merge_sub(errors, prefix, sub_error, store)
        return errors

    def run(self):
        """
        @retval Deferred firing with dict path -> error
        """
        errors = {}
        ds = []

        def _record(result, path):
            outcome, error = result
            self.outcomes[path] = outcome
            if error is not None:
                errors[path] = error
            return outcome

        for path in self.paths:
            result = self._path_outcome(path)
            if isinstance(result, defer.Deferred):
                result.addCallback(_record, path)
                ds.append(result)
            else:
                _record(result, path)

            if self.outcomes.get(path) not in (None, PathOutcome.PASSED):
                continue

            for prefix, sub, store in self._subdocuments(path):
                d = sub.validate(modified_only=self.modified_only)
                d.addCallbacks(lambda _: None, self._sub_failed,
                               errbackArgs=(errors, prefix, store))
                ds.append(d)

        d = defer.gatherResults(ds, consumeErrors=True) if ds else defer.succeed(None)
        d.addErrback(lambda f: f.value.subFailure)
        d.addCallback(lambda _: self._ordered(errors))
        return d

    def _sub_failed(self, fail, errors, prefix, store):
        fail.trap(ValidationError)
        self._merge_sub(errors, prefix, fail.value, store)

    def _merge_sub(self, errors, prefix, sub_error, store):
        if sub_error is None or not sub_error.errors:
            return
        for path, error in sub_error.errors.items():
            errors['%s.%s' % (prefix, path)] = error
        if store:
            errors[prefix] = sub_error

    def _ordered(self, errors):
        # Report in path order, then anything nested
        ordered = {}
        for path in self.paths:
            if path in errors:
                ordered[path] = errors[path]
        for path, error in errors.items():
            if path not in ordered:
                ordered[path] = error
        return ordered


def build_error(doc, pass_errors):
    """
    Combines pending errors of the document (cast errors that persist,
    manual invalidations consumed by this pass) with the pass results.
    @retval ValidationError or None
    """
    errors = {}
    for path, error in doc._cast_errors.items():
        errors[path] = error
    for path, error in doc._pending_errors.items():
        errors.setdefault(path, error)
    for path, error in pass_errors.items():
        errors[path] = error
    doc._pending_errors = {}
    if not errors:
        return None
    result = ValidationError(doc)
    for path, error in errors.items():
        result.add_error(path, error)
    return result
