#!/usr/bin/env python
'''Run the route53update test suite

Usage: run_tests.py [PATTERN]   e.g. run_tests.py 'test_ip*.py'
'''

import os
import sys
import unittest

if __name__ == '__main__':
    here = os.path.dirname(os.path.abspath(__file__))
    pattern = sys.argv[1] if len(sys.argv) > 1 else 'test*.py'
    suite = unittest.defaultTestLoader.discover(os.path.join(here, 'tests'), pattern=pattern, top_level_dir=here)
    result = unittest.TextTestRunner(verbosity=2).run(suite)

    # Non-zero exit for CI
    sys.exit(not result.wasSuccessful())
