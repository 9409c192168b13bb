#!/usr/bin/env python

"""
@file odm/core/odminit.py
@brief definitions and code that needs to run for any use of odm
"""

import ast
import logging
import logging.config
import os, os.path
import sys

from odm.util.path import adjust_dir
from odm.core import odmconst as oc
from odm.util.config import Config
from odm.core.exception import ConfigurationError

# odm has a minimum required python version
if sys.version_info < (3, 7):
    raise RuntimeError("odm requires Python 3.7 or later.")

# Configure logging system (console, logfile, other loggers)
logconf = adjust_dir(oc.LOGCONF_FILENAME)
if oc.ODM_ALTERNATE_LOGGING_CONF in os.environ:
    # make sure that path exists
    altpath = adjust_dir(os.environ.get(oc.ODM_ALTERNATE_LOGGING_CONF))
    if os.path.exists(altpath):
        logconf = altpath
    else:
        sys.stderr.write("Warning: ODM_ALTERNATE_LOGGING_CONF specified (%s), but not found\n" % altpath)

if os.path.isfile(logconf):
    logging.config.fileConfig(logconf, disable_existing_loggers=False)

# Load configuration properties for any module to access
odm_config = Config(oc.ODM_CONF_FILENAME)

# Update configuration with local override config
odm_config.update_from_file(oc.ODM_LOCAL_CONF_FILENAME)

# Global flag determining whether currently running unit test
testing = False

def config(name):
    """
    Get a subtree of the global configuration, typically for a module
    """
    return Config(name, odm_config)

def set_log_levels(levelfilekey=None):
    """
    Sets logging levels of per module loggers to given values. Loggers of
    packages are higher in the chain of module specific loggers.
    If called with None argument, will read the global and local files with
    log levels. Otherwise, read the file indicated by the config key and if it
    exists, set the log levels as given.
    """
    if levelfilekey == None:
        set_log_levels('loglevels')
        set_log_levels('loglevelslocal')
        return

    levellistkey = odm_config.getValue2(__name__, levelfilekey, None)
    if levellistkey is None:
        return
    levelfile = adjust_dir(levellistkey)
    if not os.path.isfile(levelfile):
        return
    with open(levelfile) as f:
        levellist = ast.literal_eval(f.read())
    if not levellist:
        return
    if type(levellist) is not list:
        raise ConfigurationError("Log level file %s must hold a list" % levelfile)
    for name, level in levellist:
        logging.getLogger(name).setLevel(level)

set_log_levels()
