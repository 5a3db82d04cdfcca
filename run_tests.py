#!/usr/bin/env python3
"""
Quote Intake Test Runner

Runs the unit and integration suites with PYTHONPATH pointing at the
project root so `quote_intake` and `tests.conftest` resolve without an
editable install.

USAGE:
    python run_tests.py                       # all tests
    python run_tests.py tests/unit            # one directory
    python run_tests.py tests/unit/test_guardrails.py --cov
"""

import os
import sys
import subprocess
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent.absolute()
sys.path.insert(0, str(project_root))


def run_tests(target=None, coverage=False):
    """Run tests with correct environment"""
    env = os.environ.copy()
    env['PYTHONPATH'] = str(project_root)

    cmd = [sys.executable, "-m", "pytest", target or "tests/", "-v"]
    if coverage:
        cmd += ["--cov=quote_intake", "--cov-report=term-missing"]

    print(f"Running command: {' '.join(cmd)}")
    print(f"PYTHONPATH: {env['PYTHONPATH']}")
    print("=" * 70)

    result = subprocess.run(cmd, env=env, cwd=project_root)
    return result.returncode


if __name__ == "__main__":
    args = sys.argv[1:]
    coverage = "--cov" in args
    targets = [a for a in args if a != "--cov"]
    exit_code = run_tests(targets[0] if targets else None, coverage)
    sys.exit(exit_code)
