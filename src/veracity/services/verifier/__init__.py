# SPDX-License-Identifier: MPL-2.0
"""
Provenance verification.

Checks signed attestations against explicitly configured trusted issuers:
signature, signer identity, artifact digest and source commit.
"""

from .provenance import ProvenanceOutcome, ProvenanceVerifier

__all__ = ["ProvenanceOutcome", "ProvenanceVerifier"]
