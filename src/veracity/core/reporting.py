# SPDX-License-Identifier: MPL-2.0
"""Rendering of trust reports as JSON or plain text."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, List

from veracity.core.models import Severity, TrustReport

if TYPE_CHECKING:
    from veracity.services.audit import EcosystemSurvey, LockfileAudit

_MARKERS = {Severity.INFO: "✓", Severity.WARN: "⚠", Severity.FAIL: "✗"}


def render_json(report: TrustReport) -> str:
    return report.model_dump_json(indent=2)


def render_text(report: TrustReport, verbose: bool = False) -> str:
    """Render a report for a terminal.

    Informational findings are only listed when ``verbose`` is set.
    """
    lines: List[str] = [
        f"Target: {report.target}",
        f"Verdict: {report.overall_verdict.value}",
        f"  provenance: {report.provenance_verdict.value}",
        f"  reproducibility: {report.reproducibility_verdict.value}",
    ]
    if report.artifact_digest:
        lines.append(f"Artifact: {report.artifact_digest}")
    if report.canonical_provenance is not None:
        record = report.canonical_provenance
        lines.append(f"Built from: {record.repository}@{record.commit}")
        lines.append(f"Signed by: {record.subject or '(no subject)'} ({record.issuer})")

    findings = [
        finding
        for finding in report.evidence
        if verbose or finding.severity is not Severity.INFO
    ]
    if findings:
        lines.append("")
        lines.append("Evidence:")
        for finding in findings:
            lines.append(f"  {_MARKERS[finding.severity]} [{finding.code}] {finding.message}")
    return "\n".join(lines)


def lockfile_to_dict(audit: "LockfileAudit") -> dict:
    return {
        "path": audit.path,
        "statistics": audit.statistics,
        **_batch_to_dict(audit),
    }


def _batch_to_dict(batch) -> dict:
    return {
        "reports": [report.model_dump(mode="json") for report in batch.reports],
        "failures": [
            {"package": failure.package, "message": failure.message} for failure in batch.failures
        ],
    }


def render_lockfile_json(audit: "LockfileAudit") -> str:
    return json.dumps(lockfile_to_dict(audit), indent=2)


def render_lockfile_text(audit: "LockfileAudit") -> str:
    statistics = audit.statistics
    lines = [
        f"Lockfile: {audit.path}",
        "",
        "Statistics:",
        f"  total packages: {statistics['total']}",
        f"  with trusted provenance: {statistics['provenance_trusted']}",
        f"  with reproducible builds: {statistics['reproducible']}",
        f"  failed audits: {statistics['failed']}",
        "",
        "Packages:",
    ]
    lines.extend(_package_lines(audit))
    return "\n".join(lines)


def _package_lines(batch) -> List[str]:
    lines = [
        f"  {report.target}: {report.overall_verdict.value}"
        for report in sorted(batch.reports, key=lambda report: report.target.purl)
    ]
    lines.extend(f"  {failure.package}: audit failed ({failure.message})" for failure in batch.failures)
    return lines


def survey_to_dict(survey: "EcosystemSurvey") -> dict:
    return {
        "registry": survey.registry,
        "statistics": survey.statistics,
        **_batch_to_dict(survey),
    }


def render_survey_json(survey: "EcosystemSurvey") -> str:
    return json.dumps(survey_to_dict(survey), indent=2)


def render_survey_text(survey: "EcosystemSurvey") -> str:
    """Summarize a popular-crates survey with provenance and reproducibility shares."""
    statistics = survey.statistics
    lines = [
        f"Registry: {survey.registry}",
        f"Most downloaded crates: {statistics['total']} of {statistics['requested']} requested",
        "",
        "Statistics:",
        f"  with trusted provenance: {statistics['provenance_trusted']}"
        f" ({statistics['provenance_percent']:.1f}%)",
        f"  with reproducible builds: {statistics['reproducible']}"
        f" ({statistics['reproducible_percent']:.1f}%)",
        f"  failed audits: {statistics['failed']}",
        "",
        "Packages:",
    ]
    lines.extend(_package_lines(survey))
    return "\n".join(lines)
