#!/usr/bin/env python

"""
@file odm/core/exception.py
@brief module for exceptions
"""

class OdmError(Exception):
    """
    Root of all errors raised by odm. Carries the message as .message so
    subclasses can rebuild it after construction.
    """

    def __init__(self, message=''):
        Exception.__init__(self, message)
        self.message = message

    def __str__(self):
        return self.message

class ConfigurationError(OdmError):
    pass

class IllegalStateError(OdmError):
    pass
