# SPDX-License-Identifier: MPL-2.0
"""Tests for report rendering."""

import json

from veracity.core.models import (
    Finding,
    OverallVerdict,
    ProvenanceRecord,
    ProvenanceVerdict,
    ReproducibilityVerdict,
    Severity,
    Target,
    TrustReport,
)
from veracity.core.reporting import (
    render_json,
    render_lockfile_json,
    render_lockfile_text,
    render_survey_json,
    render_survey_text,
    render_text,
)
from veracity.services.audit import EcosystemSurvey, LockfileAudit, LockfileFailure

TARGET = Target(name="widget", version="1.2.3")
DIGEST = "sha256:" + "ab" * 32


def make_report():
    return TrustReport(
        target=TARGET,
        provenance_verdict=ProvenanceVerdict.TRUSTED,
        reproducibility_verdict=ReproducibilityVerdict.MISMATCHED,
        overall_verdict=OverallVerdict.PROVENANCE_ONLY,
        artifact_digest=DIGEST,
        canonical_provenance=ProvenanceRecord(
            index=0,
            source="https://attestations.example.org/widget.jsonl",
            builder_id="https://rebuild.example.org/builder",
            issuer="https://rebuild.example.org",
            subject="release.yml",
            repository="https://github.com/acme/widget",
            commit="0" * 40,
        ),
        evidence=(
            Finding(code="artifact.fetched", severity=Severity.INFO, message="Fetched", stage="fetch"),
            Finding(code="rebuild.mismatched", severity=Severity.FAIL, message="Differs", stage="rebuild"),
        ),
    )


class TestRenderReport:
    def test_json_round_trips_through_model(self):
        rendered = render_json(make_report())
        assert TrustReport.model_validate_json(rendered) == make_report()
        assert json.loads(rendered)["overall_verdict"] == "provenance-only"

    def test_text_hides_info_findings(self):
        text = render_text(make_report())
        assert "Verdict: provenance-only" in text
        assert f"Artifact: {DIGEST}" in text
        assert "Built from: https://github.com/acme/widget@" + "0" * 40 in text
        assert "✗ [rebuild.mismatched] Differs" in text
        assert "artifact.fetched" not in text

    def test_text_verbose_lists_everything(self):
        assert "✓ [artifact.fetched] Fetched" in render_text(make_report(), verbose=True)


class TestRenderLockfile:
    def test_text_and_json(self):
        audit = LockfileAudit(
            path="Cargo.lock",
            reports=(make_report(),),
            failures=(LockfileFailure(package="pkg:cargo/gadget@0.4.0", message="boom"),),
        )

        text = render_lockfile_text(audit)
        assert "total packages: 2" in text
        assert "with trusted provenance: 1" in text
        assert "pkg:cargo/widget@1.2.3: provenance-only" in text
        assert "pkg:cargo/gadget@0.4.0: audit failed (boom)" in text

        document = json.loads(render_lockfile_json(audit))
        assert document["statistics"]["failed"] == 1
        assert document["statistics"]["verdicts"]["provenance-only"] == 1
        assert document["failures"] == [{"package": "pkg:cargo/gadget@0.4.0", "message": "boom"}]


class TestRenderSurvey:
    def test_percentages(self):
        survey = EcosystemSurvey(
            registry="https://crates.io",
            requested=3,
            reports=(make_report(),),
            failures=(
                LockfileFailure(package="pkg:cargo/gadget@0.4.0", message="boom"),
                LockfileFailure(package="pkg:cargo/sprocket@2.0.0", message="boom"),
            ),
        )

        text = render_survey_text(survey)
        assert "Most downloaded crates: 3 of 3 requested" in text
        assert "with trusted provenance: 1 (33.3%)" in text
        assert "with reproducible builds: 0 (0.0%)" in text
        assert "failed audits: 2" in text

        document = json.loads(render_survey_json(survey))
        assert document["registry"] == "https://crates.io"
        assert document["statistics"]["provenance_percent"] == 33.3
        assert len(document["failures"]) == 2
