# SPDX-License-Identifier: MPL-2.0
"""
Veracity - supply-chain audits for published crates.

This package checks whether a published package version can be trusted, by
verifying signed build provenance and by independently rebuilding the package
from its source and comparing the result with what the registry serves.
"""

import contextlib
from importlib.metadata import version

# Set up version
__version__ = "0.1.0"

with contextlib.suppress(Exception):
    __version__ = version("veracity-audit")


# Core components
from veracity.core import canonicalize, compare, digest

# Public API
__all__ = [
    "canonicalize",
    "compare",
    "digest",
    "__version__",
]
