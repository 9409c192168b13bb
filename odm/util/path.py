#!/usr/bin/env python

"""
@file odm/util/path.py
@brief Resolves resource paths (res/...) against the project root
"""

import os
import os.path

# The project root holds the res/ directory; odm/util/path.py is two levels down
ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir, os.pardir))

ODM_HOME = "ODM_HOME"

def adjust_dir(path):
    """
    Makes a relative path absolute with respect to the project root, or to the
    directory named by the ODM_HOME environment variable if set. Absolute
    paths are returned unchanged.
    """
    if path is None:
        return None
    path = os.path.expanduser(path)
    if os.path.isabs(path):
        return path
    base = os.environ.get(ODM_HOME, ROOT_DIR)
    return os.path.normpath(os.path.join(base, path))
