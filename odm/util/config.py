#!/usr/bin/env python

"""
@file odm/util/config.py
@brief  supports work with config files
"""

import ast
import os.path
import weakref

from odm.core.exception import ConfigurationError
from odm.util.path import adjust_dir

class Config(object):
    """
    Helper class managing config files. A config file holds a single python
    dict literal, keyed by module name.
    """

    def __init__(self, cfgFile, config=None):
        """
        @brief Creates a new Config for retrieving configuration
        @param cfgFile filename or key within Config
        @param config if present, a Config instance for which the value given
            by cfgFile will be extracted
        """
        if not cfgFile:
            raise ConfigurationError("Config needs a file name or key")
        self.filename = cfgFile
        self.config = None

        if config != None:
            # Save config to look up later
            self.config = weakref.ref(config)
            self.obj = None
        else:
            # Load config from filename; a missing file is an empty config
            self.filename = adjust_dir(cfgFile)
            self.obj = self._load(self.filename)

    def _load(self, filename):
        if not os.path.isfile(filename):
            return {}
        with open(filename) as f:
            obj = ast.literal_eval(f.read())
        if type(obj) is not dict:
            raise ConfigurationError("Config file %s must hold a dict" % filename)
        return obj

    def __getitem__(self, key):
        return self._getValue(self.obj, key)

    def __str__(self):
        result = ''
        result += 'Config File Name: %s \n' % self.filename
        result += 'Config Content: \n %s' % str(self.getObject())
        return result

    def getObject(self):
        if self.obj is None and self.config is not None and self.config() is not None:
            return self.config().getValue(self.filename, {})
        return self.obj

    def _getValue(self, dic, key, default=None):
        if dic == None:

            # lookup in live configuration
            if self.config is not None and self.config() is not None:
                obj = self.config().getValue(self.filename, {})
                return obj.get(key, default)

            return default
        return dic.get(key, default)

    def getValue(self, key, default=None):
        return self._getValue(self.obj, key, default)

    def getValue2(self, key1, key2, default=None):
        value = self.getValue(key1, {})
        return value.get(key2, default)

    def getValue3(self, key1, key2, key3, default=None):
        value = self.getValue2(key1, key2, {})
        return value.get(key3, default)

    def update_from_file(self, filename):
        filename = adjust_dir(filename)
        if os.path.isfile(filename):
            # Load config override from filename
            self.update(self._load(filename))

    def update(self, updates):
        """
        Recursively updates configuration dict with values in given dict.
        """
        if self.obj is None:
            # Sub-config: apply the update to the subtree of the parent config
            self.config().update({self.filename: updates})
            return
        self._update_dict(self.obj, updates)

    def _update_dict(self, src, upd):
        """
        Recursively updates a dict with values in another dict.
        """
        if type(src) is not dict or type(upd) is not dict:
            raise ConfigurationError("Config updates must be dicts")
        for ukey, uval in upd.items():
            if type(uval) is dict:
                if not ukey in src or type(src[ukey]) is not dict:
                    src[ukey] = {}
                self._update_dict(src[ukey], uval)
            else:
                src[ukey] = uval
