#!/usr/bin/env python

"""
@file odm/test/odmtest.py
@brief test case base for odm unit tests
"""

from twisted.trial import unittest

import odm.util.odmlog
log = odm.util.odmlog.getLogger(__name__)

from odm.core import odminit
from odm.core.document import casting
from odm.core.document.model import reset_models


class OdmTestCase(unittest.TestCase):
    """
    Extension of trial unittest.TestCase that restores odm global state
    (model registry, default boolean cast table) after each test.
    Use this as a base case for your unit tests, e.g.
     class SchemaTest(OdmTestCase):
    """

    # Set timeout for Trial tests
    timeout = 20

    def setUp(self):
        odminit.testing = True

    def tearDown(self):
        reset_models()
        casting.default_boolean_table.reset()
        odminit.testing = False

    def assertValidationError(self, err, *paths):
        """
        Asserts err is a ValidationError reporting exactly paths.
        """
        from odm.core.document.errors import ValidationError
        self.assertIsInstance(err, ValidationError)
        self.assertEqual(sorted(err.errors.keys()), sorted(paths))
