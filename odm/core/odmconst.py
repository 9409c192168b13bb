#!/usr/bin/env python

"""
@file odm/core/odmconst.py
@brief definitions of odm package wide constants
"""

# Name of central logging configuration file
LOGCONF_FILENAME = 'res/logging/odmlogging.conf'

# Name of environment variable to override logging configuration
ODM_ALTERNATE_LOGGING_CONF = "ODM_ALTERNATE_LOGGING_CONF"

# Name of central odm configuration file (not to be changed)
ODM_CONF_FILENAME = 'res/config/odm.config'

# Name of local odm config override file (can be changed locally)
ODM_LOCAL_CONF_FILENAME = 'res/config/odmlocal.config'

# odm master version
from odm import __version__ as VERSION
