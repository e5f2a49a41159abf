# SPDX-License-Identifier: MPL-2.0
"""Reproducibility Engine.

Rebuilds a published crate from its source in a sandbox and compares the
canonical forms of the published and rebuilt artifacts. Every failure along
the way (no recipe, source unavailable, sandbox problems, build errors,
timeouts) ends in an ``indeterminate`` verdict for this stage only.
"""

from __future__ import annotations

import asyncio
import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from veracity.core.canonicalization import DifferAt, canonicalize, compare
from veracity.core.config import AuditConfig
from veracity.core.digests import digest
from veracity.core.exceptions import (
    BuildFailed,
    BuildTimedOut,
    FetchFailed,
    MalformedArtifact,
    SandboxSetupFailed,
)
from veracity.core.models import (
    ArtifactRecord,
    BuildRecipe,
    RebuildResult,
    RebuildState,
    ReproducibilityVerdict,
    VerdictEvidence,
)

logger = logging.getLogger(__name__)

STAGE = "rebuild"

_TRUNCATION_MARKER = "[... {0} bytes truncated ...]\n"


def truncate_logs(data: bytes, limit: int, total: Optional[int] = None) -> str:
    """Keep the tail of build output.

    Args:
        data: Output bytes, possibly already reduced to a tail.
        limit: Maximum number of bytes to keep.
        total: Size of the full output when ``data`` is already a tail.
    """
    total = len(data) if total is None else total
    if len(data) > limit:
        data = data[-limit:]
    text = data.decode("utf-8", "replace")
    dropped = total - len(data)
    if dropped > 0:
        return _TRUNCATION_MARKER.format(dropped) + text
    return text


@dataclass(frozen=True)
class RebuildOutcome:
    """Result of the reproducibility stage."""

    verdict: ReproducibilityVerdict
    evidence: VerdictEvidence
    result: RebuildResult
    difference: Optional[DifferAt] = None


class ReproducibilityEngine:
    """Executes build recipes and compares their output with published artifacts.

    Args:
        config: Audit configuration (timeouts, log limits).
        fetcher: Provides ``fetch_source(repository, commit, destination)``.
        sandbox_factory: Provides ``open(source)``, an async context manager
            yielding a sandbox.
    """

    def __init__(self, config: AuditConfig, fetcher, sandbox_factory) -> None:
        self.config = config
        self.fetcher = fetcher
        self.sandbox_factory = sandbox_factory

    def _indeterminate(
        self, evidence: VerdictEvidence, state: RebuildState, **result
    ) -> RebuildOutcome:
        return RebuildOutcome(
            ReproducibilityVerdict.INDETERMINATE, evidence, RebuildResult(state=state, **result)
        )

    async def rebuild(
        self,
        artifact: ArtifactRecord,
        recipe: Optional[BuildRecipe],
        evidence: Optional[VerdictEvidence] = None,
    ) -> RebuildOutcome:
        """Rebuild ``artifact`` from ``recipe`` and compare the results."""
        evidence = evidence if evidence is not None else VerdictEvidence(STAGE)
        if recipe is None:
            evidence.warn("rebuild.skipped", "No build recipe; reproducibility not evaluated")
            return self._indeterminate(evidence, RebuildState.PENDING)

        with tempfile.TemporaryDirectory(prefix="veracity-source-") as scratch:
            try:
                source = await self.fetcher.fetch_source(
                    recipe.repository, recipe.commit, Path(scratch) / "source"
                )
            except FetchFailed as exc:
                evidence.fail(
                    "rebuild.source_unavailable",
                    f"Cannot fetch {recipe.repository}@{recipe.commit}: {exc.message}",
                    **exc.details,
                )
                return self._indeterminate(evidence, RebuildState.PENDING)

            try:
                async with self.sandbox_factory.open(source) as sandbox:
                    return await self._build_and_compare(artifact, recipe, sandbox, evidence)
            except SandboxSetupFailed as exc:
                evidence.fail("rebuild.sandbox_failed", exc.message, **exc.details)
                return self._indeterminate(evidence, RebuildState.PENDING)

    async def _run_recipe(self, recipe: BuildRecipe, sandbox, deadline: float) -> None:
        loop = asyncio.get_running_loop()
        cwd = sandbox.source_dir / recipe.path_in_vcs if recipe.path_in_vcs else None
        steps = [(command, True) for command in recipe.prefetch_commands]
        steps += [(command, False) for command in recipe.commands]
        for command, network in steps:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise BuildTimedOut(
                    f"Build exceeded {self.config.build_timeout:.0f}s", timeout=self.config.build_timeout
                )
            result = await sandbox.run(
                command,
                timeout=remaining,
                cwd=cwd,
                environment=recipe.environment,
                network=network,
            )
            if result.exit_status != 0:
                raise BuildFailed(
                    f"{' '.join(command)} exited with status {result.exit_status}",
                    exit_status=result.exit_status,
                    logs=truncate_logs(result.output, self.config.log_limit_bytes, result.output_size),
                )

    async def _build_and_compare(
        self,
        artifact: ArtifactRecord,
        recipe: BuildRecipe,
        sandbox,
        evidence: VerdictEvidence,
    ) -> RebuildOutcome:
        limit = self.config.log_limit_bytes
        logger.info(f"Rebuilding {artifact.target} from {recipe.repository}@{recipe.commit}")
        evidence.info(
            "rebuild.started",
            f"Rebuilding from {recipe.repository}@{recipe.commit} with toolchain {recipe.toolchain}",
            origin=recipe.origin,
            state=RebuildState.RUNNING.value,
        )
        deadline = asyncio.get_running_loop().time() + self.config.build_timeout
        try:
            await self._run_recipe(recipe, sandbox, deadline)
        except BuildTimedOut as exc:
            logs = truncate_logs(exc.logs.encode("utf-8"), limit)
            evidence.fail("rebuild.timed_out", exc.message, timeout=exc.timeout, logs=logs)
            return self._indeterminate(evidence, RebuildState.TIMED_OUT, logs=logs)
        except BuildFailed as exc:
            evidence.fail(
                "rebuild.failed", exc.message, exit_status=exc.exit_status, logs=exc.logs
            )
            return self._indeterminate(
                evidence, RebuildState.FAILED, exit_status=exc.exit_status, logs=exc.logs
            )

        produced = sandbox.artifact_path(recipe.artifact_name)
        try:
            rebuilt = await asyncio.get_running_loop().run_in_executor(None, produced.read_bytes)
        except OSError as exc:
            evidence.fail("rebuild.failed", f"Build produced no {recipe.artifact_name}: {exc}")
            return self._indeterminate(evidence, RebuildState.FAILED, exit_status=0)

        result = RebuildResult(state=RebuildState.SUCCEEDED, digest=digest(rebuilt), exit_status=0)
        try:
            published_form = canonicalize(artifact.content)
        except MalformedArtifact as exc:
            evidence.fail("artifact.malformed", f"Published artifact: {exc.message}", **exc.details)
            return RebuildOutcome(ReproducibilityVerdict.INDETERMINATE, evidence, result)
        try:
            rebuilt_form = canonicalize(rebuilt, path_prefixes=sandbox.path_prefixes())
        except MalformedArtifact as exc:
            evidence.fail("rebuild.failed", f"Rebuilt artifact: {exc.message}", **exc.details)
            return self._indeterminate(evidence, RebuildState.FAILED, exit_status=0)

        comparison = compare(published_form, rebuilt_form)
        if comparison.equal:
            evidence.info(
                "rebuild.matched",
                f"Rebuilt {recipe.artifact_name} matches the published artifact",
                rebuilt_digest=str(result.digest),
                canonical_digest=str(published_form.digest),
            )
            return RebuildOutcome(
                ReproducibilityVerdict.MATCHED,
                evidence,
                RebuildResult(state=RebuildState.MATCHED, digest=result.digest, exit_status=0),
            )

        evidence.fail(
            "rebuild.mismatched",
            f"Rebuilt {recipe.artifact_name} differs at {comparison}",
            location=comparison.location,
            reason=comparison.reason,
            offset=comparison.offset,
            rebuilt_digest=str(result.digest),
        )
        return RebuildOutcome(
            ReproducibilityVerdict.MISMATCHED,
            evidence,
            RebuildResult(state=RebuildState.MISMATCHED, digest=result.digest, exit_status=0),
            difference=comparison,
        )
