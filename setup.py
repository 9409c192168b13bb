#!/usr/bin/env python

"""
@file setup.py
@brief setup file for the odm document modeling core
@see http://peak.telecommunity.com/DevCenter/setuptools
"""

import os

from setuptools import setup, find_packages

from odm import __version__ as version

# Workaround a bug in "package_data" that ignores directories. Build flattened list of all files.
excludeFiles = set(['odmlocal.config', 'loglevelslocal.cfg'])
resFiles = [os.path.relpath(os.path.join(root, name), 'res')
            for root, dirs, files in os.walk('res')
            for name in files if name not in excludeFiles]

setup( name = 'odm',
       version = version,
       description = 'Schema driven document models with change tracking and validation',
       license = 'Apache 2.0',
       keywords = ['odm', 'document', 'schema', 'mongodb'],

       packages = find_packages() + ['res'],
       package_data = {
           'res': resFiles
                      },
       test_suite = 'odm',
       install_requires = [
           'Twisted>=20.3.0',
           'zope.interface>=5.0',
           'simplejson>=3.17',
           'pymongo>=3.10',
                          ],
       extras_require = {
           'test': ['pytest'],
                        },
       include_package_data = True,
       classifiers = [
           'Development Status :: 3 - Alpha',
           'Intended Audience :: Developers',
           'License :: OSI Approved :: Apache Software License',
           'Operating System :: OS Independent',
           'Programming Language :: Python :: 3',
           'Topic :: Database'
                     ]
     )
