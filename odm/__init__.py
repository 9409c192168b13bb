#!/usr/bin/env python

"""
@file odm/__init__.py
@brief odm: schema driven, change tracked document model core
"""

__version__ = '0.4.2'
