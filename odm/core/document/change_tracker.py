#!/usr/bin/env python
"""
@file odm/core/document/change_tracker.py
@brief Dirty path bookkeeping and update delta construction for one document
node.

Every known path is in exactly one ActivePaths state:
  require  - declared required, no value seen yet
  init     - loaded by init() from storage
  default  - filled by a default
  modify   - direct target of a change since the last reset()
  ignore   - excluded from the next update
"""

import weakref

from odm.core.document.object_utils import UNDEFINED, parent_paths, split_path, \
    is_document, is_plain_mapping, flatten_keys, deep_equal, clone

import odm.util.odmlog
log = odm.util.odmlog.getLogger(__name__)


STATES = ('require', 'modify', 'init', 'default', 'ignore')

# to_object options used when a value goes into an update
INTERNAL_TO_OBJECT = {'transform': False, 'virtuals': False, 'getters': False,
                      'depopulate': True, 'minimize': False, 'flatten_maps': True}


class ActivePaths(object):

    def __init__(self):
        self.paths = {}
        self.states = dict((state, {}) for state in STATES)

    def _change_state(self, path, state):
        previous = self.paths.get(path)
        if previous is not None:
            del self.states[previous][path]
        self.paths[path] = state
        self.states[state][path] = True

    def require(self, path):
        self._change_state(path, 'require')

    def modify(self, path):
        self._change_state(path, 'modify')

    def init(self, path):
        self._change_state(path, 'init')

    def default(self, path):
        self._change_state(path, 'default')

    def ignore(self, path):
        self._change_state(path, 'ignore')

    def state_of(self, path):
        return self.paths.get(path)

    def clear_path(self, path):
        state = self.paths.pop(path, None)
        if state is not None:
            del self.states[state][path]

    def clear(self, state):
        for path in list(self.states[state]):
            del self.paths[path]
        self.states[state] = {}

    def get_state_paths(self, state):
        return list(self.states[state].keys())

    def paths_in_states(self, *states):
        """
        @retval paths in any of states, in first-marked order per state
        """
        result = []
        for state in states:
            result.extend(self.states[state].keys())
        return result


class ChangeTracker(object):
    """
    Tracks which paths of a document need persisting. Holds only a weak
    reference back to its document.
    """

    def __init__(self, doc):
        self._doc = weakref.ref(doc)
        self.active = ActivePaths()
        self.saved_state = {}

    @property
    def doc(self):
        return self._doc()

    def paths_in_states(self, *states):
        return self.active.paths_in_states(*states)

    #-----------------------------------------------------------------#
    # Marking
    #-----------------------------------------------------------------#

    def mark_modified(self, path):
        """
        Marks path as directly modified. A path under an already modified
        ancestor is subsumed by it and not recorded.
        @retval True if the path was recorded
        """
        for ancestor in parent_paths(path)[:-1]:
            if self.active.state_of(ancestor) == 'modify':
                return False
        self.active.modify(path)
        return True

    def unmark_modified(self, path):
        if self.active.state_of(path) == 'modify':
            self.active.init(path)
        self.saved_state.pop(path, None)

    def record_change(self, path, prior, value):
        """
        Marks path modified after an assignment. Persisted documents remember
        the value before the first change; assigning that value again
        unmarks the path.
        @retval True if path is modified afterwards
        """
        doc = self.doc
        if doc is not None and not doc.is_new:
            if path not in self.saved_state:
                self.saved_state[path] = clone(prior)
            elif deep_equal(self.saved_state[path], value) or (
                    self.saved_state[path] is UNDEFINED and value is UNDEFINED):
                self.unmark_modified(path)
                return False
        return self.mark_modified(path) or self.is_modified(path)

    def clear_subpaths(self, path):
        """
        Drops every tracked path below path, after the object at path was
        replaced.
        @retval list of the dropped paths
        """
        prefix = path + '.'
        dropped = [p for p in list(self.active.paths) if p.startswith(prefix)]
        for p in dropped:
            if self.active.state_of(p) in ('modify', 'default'):
                self.active.clear_path(p)
            self.saved_state.pop(p, None)
        return dropped

    def ignore(self, path):
        self.active.ignore(path)
        self.saved_state.pop(path, None)

    #-----------------------------------------------------------------#
    # Queries
    #-----------------------------------------------------------------#

    def direct_modified_paths(self):
        return self.active.get_state_paths('modify')

    def is_direct_modified(self, paths):
        if isinstance(paths, str):
            paths = [paths]
        direct = self.direct_modified_paths()
        for path in paths:
            if path in direct:
                return True
            # 'a.b' directly set counts for 'a.b.c' when the value is under it
            parts = split_path(path)
            for i in range(1, len(parts)):
                if '.'.join(parts[:i]) in direct:
                    return True
        return False

    def modified_paths(self, include_children=False):
        """
        Every directly modified path and all of its ancestors. With
        include_children, also the paths below each direct path: keys of
        plain objects and the modified paths of embedded documents.
        """
        seen = {}
        for path in self.direct_modified_paths():
            for prefix in parent_paths(path):
                seen[prefix] = True
            if include_children:
                for child in self._children(path):
                    seen[child] = True
        return list(seen.keys())

    def _children(self, path):
        doc = self.doc
        if doc is None:
            return []
        value = doc.get_value(path)
        result = []
        if is_document(value):
            for sub in value.modified_paths(include_children=True):
                result.append('%s.%s' % (path, sub))
        elif isinstance(value, list):
            for i, item in enumerate(value):
                result.append('%s.%s' % (path, i))
                if is_document(item):
                    for sub in item.modified_paths(include_children=True):
                        result.append('%s.%s.%s' % (path, i, sub))
        elif is_plain_mapping(value):
            for key in flatten_keys(value):
                result.append('%s.%s' % (path, key))
        return result

    def is_modified(self, paths=None, include_children=False):
        """
        @param paths None for "anything modified", a path, a space separated
            list of paths or a list
        """
        direct = self.direct_modified_paths()
        if paths is None:
            return len(direct) > 0
        if isinstance(paths, str):
            paths = paths.split()
        modified = self.modified_paths(include_children)
        for path in paths:
            if path in modified:
                return True
        for path in paths:
            for mod in direct:
                if path.startswith(mod + '.'):
                    return True
        return False

    #-----------------------------------------------------------------#
    # Deltas
    #-----------------------------------------------------------------#

    def dirty(self):
        """
        @retval list of (path, value) to persist, reduced to the outermost
            dirty path: 'a.b' is dropped when 'a' is dirty
        """
        doc = self.doc
        items = []
        for path in self.active.get_state_paths('modify'):
            items.append((path, doc.get_value(path)))
        for path in self.active.get_state_paths('default'):
            if path == '_id':
                continue
            value = doc.get_value(path)
            if value is None or value is UNDEFINED:
                continue
            items.append((path, value))

        all_paths = set(path for path, _ in items)
        minimal = []
        for path, value in items:
            top = None
            for ancestor in parent_paths(path)[:-1]:
                if ancestor in all_paths:
                    top = ancestor
                    break
            if top is None:
                minimal.append((path, value))
                continue
            # The array and a path inside it are both dirty: only a full
            # $set of the array can honour both
            top_value = doc.get_value(top)
            if isinstance(top_value, list) and hasattr(top_value, '_atomics'):
                top_value._atomics = {'$set': top_value}
        return minimal

    def get_changes(self):
        """
        @retval update document ({'$set': {...}, '$unset': {...}, '$push': ...})
            or {} when nothing is dirty
        """
        delta = {}
        for path, value in self.dirty():
            if value is UNDEFINED:
                delta.setdefault('$unset', {})[path] = 1
            elif value is None:
                delta.setdefault('$set', {})[path] = None
            elif isinstance(value, list) and hasattr(value, '_atomics'):
                self._handle_atomics(delta, path, value)
            else:
                delta.setdefault('$set', {})[path] = _to_plain(value)
        return delta

    def _handle_atomics(self, delta, path, value):
        if path in delta.get('$set', {}):
            return
        atomics = value._atomics
        if not atomics:
            delta.setdefault('$set', {})[path] = value.to_object(**INTERNAL_TO_OBJECT)
            return
        for op, val in atomics.items():
            if op == '$set' or val is value:
                operand = value.to_object(**INTERNAL_TO_OBJECT)
                op = '$set'
            elif op == '$push':
                operand = dict(val)
                operand['$each'] = [_to_plain(v) for v in val['$each']]
            elif op == '$addToSet':
                operand = {'$each': [_to_plain(v) for v in val]}
            elif op == '$pullAll':
                operand = [_to_plain(v) for v in val]
            else:
                operand = _to_plain(val)
            delta.setdefault(op, {})[path] = operand

    def reset(self):
        """
        Clears every change record: modified paths become init paths and
        array atomics are dropped. Called once a write is acknowledged.
        """
        doc = self.doc
        for path in self.active.get_state_paths('modify') + self.active.get_state_paths('default'):
            self.active.init(path)
        self.active.clear('ignore')
        self.saved_state = {}
        if doc is not None:
            for path in list(doc.schema.paths):
                value = doc.get_value(path)
                if isinstance(value, list) and hasattr(value, '_atomics'):
                    value.reset_atomics()


def _to_plain(value):
    if is_document(value) and not value._embedded:
        # Populated: stored as the reference
        return value.get_value('_id')
    if hasattr(value, 'to_object') and not isinstance(value, type):
        return value.to_object(**INTERNAL_TO_OBJECT)
    return clone(value)
