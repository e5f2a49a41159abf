# SPDX-License-Identifier: MPL-2.0
"""Audit orchestration.

One audit of one target runs in two phases:

1. fetch: registry metadata, the artifact, attestations and issuer keys,
   concurrently and bounded by the fetcher's semaphore;
2. verify: the provenance and reproducibility stages, concurrently, each
   recording into its own evidence log.

The whole run is bounded by the configured time budget. When it expires the
in-flight work is cancelled and the report is ``indeterminate`` with
whatever evidence was recorded until then.
"""

from __future__ import annotations

import asyncio
import logging
import tomllib
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, Union

from pydantic import ValidationError

from veracity.core.config import AuditConfig
from veracity.core.crypto import IssuerKeySet
from veracity.core.exceptions import ConfigurationError, FetchFailed, MalformedInput, VeracityError
from veracity.core.models import (
    ArtifactRecord,
    OverallVerdict,
    ProvenanceVerdict,
    RegistryMetadata,
    ReproducibilityVerdict,
    Target,
    TrustReport,
    VerdictEvidence,
    parse_target_spec,
)
from veracity.services.fetcher import AttestationBundle, Fetcher
from veracity.services.policy import evaluate
from veracity.services.rebuild import ReproducibilityEngine
from veracity.services.recipes import resolve_recipe
from veracity.services.sandbox import LocalSandboxFactory
from veracity.services.verifier.provenance import ProvenanceOutcome, ProvenanceVerifier

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY_SOURCES = frozenset(
    {
        "registry+https://github.com/rust-lang/crates.io-index",
        "sparse+https://index.crates.io/",
    }
)


@dataclass
class _RunState:
    """Evidence logs of one run, kept reachable for deadline reports."""

    logs: list[VerdictEvidence] = field(default_factory=list)
    artifact: Optional[ArtifactRecord] = None

    def log(self, stage: str) -> VerdictEvidence:
        evidence = VerdictEvidence(stage)
        self.logs.append(evidence)
        return evidence

    def findings(self) -> tuple:
        return tuple(finding for log in self.logs for finding in log)


@dataclass(frozen=True)
class LockfileFailure:
    """A lockfile package whose audit could not be completed."""

    package: str
    message: str


@dataclass(frozen=True)
class LockfileAudit:
    """Reports for every crates.io package of a ``Cargo.lock``."""

    path: str
    reports: tuple[TrustReport, ...] = ()
    failures: tuple[LockfileFailure, ...] = ()

    @property
    def statistics(self) -> dict[str, Any]:
        return batch_statistics(self.reports, self.failures)


@dataclass(frozen=True)
class EcosystemSurvey:
    """Reports for the most downloaded crates of a registry."""

    registry: str
    requested: int
    reports: tuple[TrustReport, ...] = ()
    failures: tuple[LockfileFailure, ...] = ()

    @property
    def statistics(self) -> dict[str, Any]:
        statistics = batch_statistics(self.reports, self.failures)
        total = statistics["total"]
        statistics["requested"] = self.requested
        statistics["provenance_percent"] = _percent(statistics["provenance_trusted"], total)
        statistics["reproducible_percent"] = _percent(statistics["reproducible"], total)
        return statistics


def _percent(count: int, total: int) -> float:
    return round(100.0 * count / total, 1) if total else 0.0


def batch_statistics(reports, failures) -> dict[str, Any]:
    """Counts over the reports and failures of a batch of audits."""
    verdicts = Counter(report.overall_verdict.value for report in reports)
    return {
        "total": len(reports) + len(failures),
        "audited": len(reports),
        "failed": len(failures),
        "provenance_trusted": sum(
            report.provenance_verdict is ProvenanceVerdict.TRUSTED for report in reports
        ),
        "reproducible": sum(
            report.reproducibility_verdict is ReproducibilityVerdict.MATCHED for report in reports
        ),
        "verdicts": {verdict.value: verdicts.get(verdict.value, 0) for verdict in OverallVerdict},
    }


def parse_lockfile(path: Union[str, Path], registry: Optional[str] = None) -> list[Target]:
    """Read the crates.io packages pinned by a ``Cargo.lock``.

    Raises:
        MalformedInput: If the file cannot be read or is not a lockfile.
    """
    try:
        with open(path, "rb") as f:
            document = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise MalformedInput(f"Cannot read lockfile {path}: {exc}") from exc

    packages = document.get("package", [])
    if not isinstance(packages, list):
        raise MalformedInput(f"{path} has no [[package]] entries")

    targets, seen = [], set()
    for package in packages:
        if not isinstance(package, dict) or package.get("source") not in DEFAULT_REGISTRY_SOURCES:
            continue
        key = (package.get("name"), package.get("version"))
        if key in seen:
            continue
        seen.add(key)
        try:
            extra = {"registry": registry} if registry else {}
            targets.append(Target(name=key[0], version=key[1], **extra))
        except ValidationError as exc:
            raise MalformedInput(
                f"{path} pins an invalid package {key[0]!r} {key[1]!r}",
                {"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
            ) from exc
    return targets


class Auditor:
    """Runs audits with an explicit configuration.

    Args:
        config: The audit configuration, including the trusted issuers.
        fetcher_factory: Builds the fetcher of one audit run from ``config``.
        sandbox_factory: Provides sandboxes for rebuilds.
    """

    def __init__(
        self,
        config: AuditConfig,
        fetcher_factory: Callable[[AuditConfig], Fetcher] = Fetcher,
        sandbox_factory: Optional[Any] = None,
    ) -> None:
        self.config = config
        self.fetcher_factory = fetcher_factory
        self.sandbox_factory = sandbox_factory or LocalSandboxFactory(config)

    async def resolve(self, spec: str) -> Target:
        """Turn ``name``, ``name@version`` or a cargo package URL into a pinned target.

        Raises:
            ValueError: If ``spec`` is not a valid package reference.
            FetchFailed: If the latest version cannot be resolved.
        """
        name, version = parse_target_spec(spec)
        if version is not None:
            return Target(name=name, version=version, registry=self.config.registry_url)
        async with self.fetcher_factory(self.config) as fetcher:
            return await fetcher.resolve_target(name)

    async def audit(self, target: Target) -> TrustReport:
        """Audit one package version.

        Raises:
            ConfigurationError: If trusted issuers are required but none are
                configured. Every other failure is reported as evidence.
        """
        issuers = self.config.require_issuers()
        state = _RunState()
        logger.info(f"Auditing {target}")
        async with self.fetcher_factory(self.config) as fetcher:
            try:
                return await asyncio.wait_for(
                    self._run(fetcher, target, issuers, state), self.config.time_budget
                )
            except asyncio.TimeoutError:
                logger.warning(f"Audit of {target} exceeded {self.config.time_budget:.0f}s")
                deadline = state.log("audit")
                deadline.fail(
                    "audit.deadline_exceeded",
                    f"Audit did not complete within {self.config.time_budget:.0f}s",
                    time_budget=self.config.time_budget,
                )
                return evaluate(
                    target,
                    ProvenanceVerdict.INDETERMINATE,
                    ReproducibilityVerdict.INDETERMINATE,
                    state.findings(),
                    artifact_digest=str(state.artifact.digest) if state.artifact else None,
                    generated_at=datetime.now(timezone.utc),
                )

    async def _run(self, fetcher: Fetcher, target: Target, issuers, state: _RunState) -> TrustReport:
        fetch_log = state.log("fetch")
        metadata, artifact, bundle, key_sets = await asyncio.gather(
            self._fetch_metadata(fetcher, target, fetch_log),
            self._fetch_artifact(fetcher, target, fetch_log),
            self._fetch_attestations(fetcher, target, fetch_log),
            self._fetch_keys(fetcher, issuers, fetch_log),
        )
        if artifact is None:
            return evaluate(
                target,
                ProvenanceVerdict.INDETERMINATE,
                ReproducibilityVerdict.INDETERMINATE,
                state.findings(),
                generated_at=datetime.now(timezone.utc),
            )
        state.artifact = artifact
        self._check_checksum(artifact, metadata, fetch_log)

        recipe_log = state.log("recipe")
        attestations = bundle.attestations if bundle is not None else ()
        recipe = resolve_recipe(target, attestations, artifact, metadata, self.config, recipe_log)

        verifier = ProvenanceVerifier(issuers, key_sets, fetcher.resolve_commit)
        engine = ReproducibilityEngine(self.config, fetcher, self.sandbox_factory)
        provenance_log = state.log("provenance")
        rebuild_log = state.log("rebuild")
        provenance, reproducibility = await asyncio.gather(
            self._verify_provenance(verifier, artifact, bundle, metadata, provenance_log),
            engine.rebuild(artifact, recipe, rebuild_log),
        )
        report = evaluate(
            target,
            provenance.verdict,
            reproducibility.verdict,
            state.findings(),
            artifact_digest=str(artifact.digest),
            canonical=provenance.canonical,
            difference=reproducibility.difference,
            generated_at=datetime.now(timezone.utc),
        )
        logger.info(f"{target}: {report.overall_verdict.value}")
        return report

    async def _verify_provenance(
        self,
        verifier: ProvenanceVerifier,
        artifact: ArtifactRecord,
        bundle: Optional[AttestationBundle],
        metadata: Optional[RegistryMetadata],
        evidence: VerdictEvidence,
    ) -> ProvenanceOutcome:
        if bundle is None:
            evidence.warn("provenance.unavailable", "Attestations could not be fetched")
            return ProvenanceOutcome(ProvenanceVerdict.INDETERMINATE, evidence)
        return await verifier.verify(
            artifact, bundle.attestations, bundle.rejected, metadata, evidence=evidence
        )

    @staticmethod
    async def _fetch_metadata(
        fetcher: Fetcher, target: Target, evidence: VerdictEvidence
    ) -> Optional[RegistryMetadata]:
        try:
            return await fetcher.fetch_metadata(target)
        except FetchFailed as exc:
            evidence.warn("registry.metadata_unavailable", exc.message, **exc.details)
            return None

    @staticmethod
    async def _fetch_artifact(
        fetcher: Fetcher, target: Target, evidence: VerdictEvidence
    ) -> Optional[ArtifactRecord]:
        try:
            artifact = await fetcher.fetch_artifact(target)
        except FetchFailed as exc:
            evidence.fail("artifact.fetch_failed", exc.message, **exc.details)
            return None
        evidence.info(
            "artifact.fetched",
            f"Fetched {target.artifact_name} ({artifact.size} bytes)",
            digest=str(artifact.digest),
            url=artifact.url,
        )
        return artifact

    @staticmethod
    async def _fetch_attestations(
        fetcher: Fetcher, target: Target, evidence: VerdictEvidence
    ) -> Optional[AttestationBundle]:
        try:
            return await fetcher.fetch_attestations(target)
        except FetchFailed as exc:
            evidence.warn("provenance.fetch_failed", exc.message, **exc.details)
            return None

    @staticmethod
    async def _fetch_keys(fetcher: Fetcher, issuers, evidence: VerdictEvidence) -> dict[str, IssuerKeySet]:
        results = await asyncio.gather(
            *(fetcher.fetch_issuer_keys(issuer) for issuer in issuers), return_exceptions=True
        )
        key_sets = {}
        for issuer, result in zip(issuers, results):
            if isinstance(result, FetchFailed):
                evidence.warn(
                    "issuer.keys_unavailable",
                    f"Key material of {issuer.issuer} unavailable: {result.message}",
                    issuer=issuer.issuer,
                    **result.details,
                )
            elif isinstance(result, BaseException):
                raise result
            else:
                key_sets[issuer.issuer] = result
        return key_sets

    @staticmethod
    def _check_checksum(
        artifact: ArtifactRecord, metadata: Optional[RegistryMetadata], evidence: VerdictEvidence
    ) -> None:
        if metadata is None or metadata.checksum is None:
            return
        if metadata.checksum == artifact.digest:
            evidence.info("artifact.checksum_matches", "Registry checksum matches the artifact")
        else:
            evidence.fail(
                "artifact.checksum_mismatch",
                f"Registry checksum {metadata.checksum} differs from the artifact's {artifact.digest}",
                registry=str(metadata.checksum),
                actual=str(artifact.digest),
            )

    async def audit_lockfile(self, path: Union[str, Path]) -> LockfileAudit:
        """Audit every crates.io package pinned by a ``Cargo.lock``.

        A package whose audit cannot be completed is recorded as a failure
        without stopping the others.

        Raises:
            ConfigurationError: If the configuration cannot support any audit.
            MalformedInput: If the lockfile cannot be parsed.
        """
        self.config.require_issuers()
        targets = parse_lockfile(path, self.config.registry_url)
        logger.info(f"Auditing {len(targets)} package(s) from {path}")
        reports, failures = await self._audit_batch(targets)
        return LockfileAudit(path=str(path), reports=reports, failures=failures)

    async def survey(self, count: int) -> EcosystemSurvey:
        """Audit the ``count`` most downloaded crates of the registry.

        Raises:
            ValueError: If ``count`` is not positive.
            ConfigurationError: If the configuration cannot support any audit.
            FetchFailed: If the registry's crate listing cannot be fetched.
        """
        if count < 1:
            raise ValueError(f"Survey size must be positive, got {count}")
        self.config.require_issuers()
        async with self.fetcher_factory(self.config) as fetcher:
            targets = await fetcher.fetch_popular_crates(count)
        logger.info(f"Surveying {len(targets)} popular crate(s) of {self.config.registry_url}")
        reports, failures = await self._audit_batch(targets)
        return EcosystemSurvey(
            registry=self.config.registry_url, requested=count, reports=reports, failures=failures
        )

    async def _audit_batch(
        self, targets: list[Target]
    ) -> tuple[tuple[TrustReport, ...], tuple[LockfileFailure, ...]]:
        """Audit ``targets`` concurrently, keeping going past individual failures."""
        semaphore = asyncio.Semaphore(self.config.lockfile_concurrency)

        async def audit_one(target: Target) -> Union[TrustReport, LockfileFailure]:
            async with semaphore:
                try:
                    return await self.audit(target)
                except ConfigurationError:
                    raise
                except VeracityError as exc:
                    logger.error(f"Audit of {target} failed: {exc}", exc_info=True)
                    return LockfileFailure(package=target.purl, message=exc.message)

        outcomes = await asyncio.gather(*(audit_one(target) for target in targets))
        return (
            tuple(outcome for outcome in outcomes if isinstance(outcome, TrustReport)),
            tuple(outcome for outcome in outcomes if isinstance(outcome, LockfileFailure)),
        )
