# SPDX-License-Identifier: MPL-2.0
"""Core functionality for Veracity: digests, canonicalization, attestations and models."""
from veracity.core.canonicalization import DifferAt, Equal, canonicalize, compare
from veracity.core.digests import Digest, digest

__all__ = [
    "canonicalize",
    "compare",
    "digest",
    "Digest",
    "DifferAt",
    "Equal",
]
