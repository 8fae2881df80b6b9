# File: tests/run_tests.py
#!/usr/bin/env python3
"""
Test runner for the Park Angel Pricing and Revenue Engine tests.

    python tests/run_tests.py                          # everything
    python tests/run_tests.py unit                     # one package
    python tests/run_tests.py unit.test_pricing        # one module
    python tests/run_tests.py integration.test_remittance_flow.TestTransferTimeout
"""

import unittest
import sys
from pathlib import Path

# Add the project root to the Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from parkangel.config import EngineSettings, setup_logging


def run_all_tests(start_dir=None):
    """Run all test suites"""
    test_loader = unittest.TestLoader()

    # Pattern to match test files
    test_pattern = 'test_*.py'

    start_dir = start_dir or str(Path(__file__).parent)
    test_suite = test_loader.discover(start_dir, pattern=test_pattern, top_level_dir=str(project_root))

    test_runner = unittest.TextTestRunner(verbosity=2)
    return test_runner.run(test_suite)


def run_specific_test(test_name):
    """Run a test package, module or test case"""
    package_dir = Path(__file__).parent / test_name
    if package_dir.is_dir():
        return run_all_tests(str(package_dir))

    test_loader = unittest.TestLoader()
    test_suite = test_loader.loadTestsFromName(f'tests.{test_name}')

    test_runner = unittest.TextTestRunner(verbosity=2)
    return test_runner.run(test_suite)


if __name__ == "__main__":
    setup_logging(EngineSettings(LOG_LEVEL="WARNING"))

    if len(sys.argv) > 1:
        result = run_specific_test(sys.argv[1])
    else:
        result = run_all_tests()

    sys.exit(0 if result.wasSuccessful() else 1)
