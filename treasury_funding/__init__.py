"""treasury_funding package root.

Move USDC from a depositor's Circle Gateway unified balance into
a treasury vault contract on the destination chain.

See :py:mod:`treasury_funding.gateway` for the transfer state machine.
"""

import sys


#: Minimum required Python version to run this package
MIN_PYTHON_VERSION = (3, 10)


def _check_python_version():
    """Try early abort if the Python version is too old."""
    if sys.version_info < MIN_PYTHON_VERSION:
        raise RuntimeError(f"treasury-funding needs Python {MIN_PYTHON_VERSION[0]}.{MIN_PYTHON_VERSION[1]} or later")


_check_python_version()
