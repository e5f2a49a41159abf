# SPDX-License-Identifier: MPL-2.0
"""Policy evaluation: combines the stage verdicts into a trust report."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from veracity.core.canonicalization import DifferAt
from veracity.core.models import (
    Finding,
    OverallVerdict,
    ProvenanceRecord,
    ProvenanceVerdict,
    ReproducibilityVerdict,
    Target,
    TrustReport,
    VerdictEvidence,
)

STAGE = "policy"

_P = ProvenanceVerdict
_R = ReproducibilityVerdict

POLICY_TABLE = {
    (_P.TRUSTED, _R.MATCHED): OverallVerdict.FULLY_VERIFIED,
    (_P.TRUSTED, _R.MISMATCHED): OverallVerdict.PROVENANCE_ONLY,
    (_P.TRUSTED, _R.INDETERMINATE): OverallVerdict.PROVENANCE_ONLY_TRUSTED,
    (_P.UNTRUSTED, _R.MATCHED): OverallVerdict.REPRODUCIBLE_BUT_UNATTRIBUTED,
    (_P.UNTRUSTED, _R.MISMATCHED): OverallVerdict.UNVERIFIED,
    (_P.UNTRUSTED, _R.INDETERMINATE): OverallVerdict.INDETERMINATE,
    (_P.INDETERMINATE, _R.MATCHED): OverallVerdict.REPRODUCIBLE_BUT_UNATTRIBUTED,
    (_P.INDETERMINATE, _R.MISMATCHED): OverallVerdict.INDETERMINATE,
    (_P.INDETERMINATE, _R.INDETERMINATE): OverallVerdict.INDETERMINATE,
}


def overall_verdict(
    provenance: ProvenanceVerdict, reproducibility: ReproducibilityVerdict
) -> OverallVerdict:
    return POLICY_TABLE[(provenance, reproducibility)]


def evaluate(
    target: Target,
    provenance: ProvenanceVerdict,
    reproducibility: ReproducibilityVerdict,
    evidence: Iterable[Finding] = (),
    artifact_digest: Optional[str] = None,
    canonical: Optional[ProvenanceRecord] = None,
    difference: Optional[DifferAt] = None,
    generated_at: Optional[datetime] = None,
) -> TrustReport:
    """Build the final report for one target.

    Pure: no I/O, and the same inputs always give the same report.

    Args:
        target: The audited package version.
        provenance: Verdict of the provenance stage.
        reproducibility: Verdict of the reproducibility stage.
        evidence: Findings of all stages, in recording order.
        artifact_digest: Digest of the published artifact, if it was fetched.
        canonical: The canonical passing attestation, if any.
        difference: First differing location when the rebuild mismatched.
        generated_at: Timestamp to stamp on the report.
    """
    verdict = overall_verdict(provenance, reproducibility)
    log = VerdictEvidence(STAGE)
    if provenance is _P.TRUSTED and reproducibility is _R.MISMATCHED:
        location = str(difference) if difference is not None else "unknown location"
        log.fail(
            "policy.provenance_rebuild_divergence",
            f"Trusted provenance, but the rebuild diverges from the published artifact at {location}",
            location=difference.location if difference is not None else None,
        )
    log.info(
        "policy.verdict",
        f"{target}: {verdict.value} (provenance {provenance.value}, "
        f"reproducibility {reproducibility.value})",
    )
    return TrustReport(
        target=target,
        provenance_verdict=provenance,
        reproducibility_verdict=reproducibility,
        overall_verdict=verdict,
        evidence=tuple(evidence) + log.findings,
        artifact_digest=artifact_digest,
        canonical_provenance=canonical,
        generated_at=generated_at,
    )
