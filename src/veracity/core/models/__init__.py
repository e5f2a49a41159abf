# SPDX-License-Identifier: MPL-2.0
"""Data models for Veracity.

Values exchanged between the fetcher, the verifiers and the policy layer are
immutable. Models that end up in a serialized report are pydantic models;
the rest are frozen dataclasses.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from veracity.core.digests import Digest

DEFAULT_REGISTRY = "https://crates.io"

_CRATE_NAME = re.compile(r"[A-Za-z0-9][A-Za-z0-9_-]{0,63}")
_CRATE_VERSION = re.compile(r"[0-9A-Za-z][0-9A-Za-z.+-]{0,127}")


class Severity(str, Enum):
    """Severity of a finding."""

    INFO = "info"
    WARN = "warn"
    FAIL = "fail"


class ProvenanceVerdict(str, Enum):
    TRUSTED = "trusted"
    UNTRUSTED = "untrusted"
    INDETERMINATE = "indeterminate"


class ReproducibilityVerdict(str, Enum):
    MATCHED = "matched"
    MISMATCHED = "mismatched"
    INDETERMINATE = "indeterminate"


class OverallVerdict(str, Enum):
    FULLY_VERIFIED = "fully-verified"
    PROVENANCE_ONLY = "provenance-only"
    PROVENANCE_ONLY_TRUSTED = "provenance-only-trusted"
    REPRODUCIBLE_BUT_UNATTRIBUTED = "reproducible-but-unattributed"
    UNVERIFIED = "unverified"
    INDETERMINATE = "indeterminate"


class RebuildState(str, Enum):
    """Lifecycle of a rebuild. The last four are terminal."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    MATCHED = "matched"
    MISMATCHED = "mismatched"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


def parse_target_spec(spec: str) -> tuple[str, Optional[str]]:
    """Split ``pkg:cargo/name@version``, ``name@version`` or ``name``.

    Returns:
        The crate name and the version, ``None`` when not pinned.
    """
    value = spec.strip()
    if value.startswith("pkg:"):
        if not value.startswith("pkg:cargo/"):
            raise ValueError(f"Only cargo package URLs are supported: {spec!r}")
        value = value[len("pkg:cargo/"):]
    name, sep, version = value.partition("@")
    if not _CRATE_NAME.fullmatch(name):
        raise ValueError(f"Invalid crate name: {name!r}")
    if sep and not _CRATE_VERSION.fullmatch(version):
        raise ValueError(f"Invalid crate version: {version!r}")
    return name, (version if sep else None)


class Target(BaseModel):
    """The package and version under audit."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    registry: str = DEFAULT_REGISTRY

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not _CRATE_NAME.fullmatch(value):
            raise ValueError(f"Invalid crate name: {value!r}")
        return value

    @field_validator("version")
    @classmethod
    def _check_version(cls, value: str) -> str:
        if not _CRATE_VERSION.fullmatch(value):
            raise ValueError(f"Invalid crate version: {value!r}")
        return value

    @property
    def purl(self) -> str:
        return f"pkg:cargo/{self.name}@{self.version}"

    @property
    def artifact_name(self) -> str:
        return f"{self.name}-{self.version}.crate"

    def __str__(self) -> str:
        return self.purl


class TrustedIssuer(BaseModel):
    """An authority whose signing identities are accepted as provenance.

    ``identity_pattern`` is a regular expression that must match the whole
    subject bound to the signing key, e.g. a workflow identity such as
    ``https://github.com/acme/widget/.github/workflows/release.yml@refs/tags/.*``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    issuer: str
    identity_pattern: str
    keys_url: str

    @field_validator("identity_pattern")
    @classmethod
    def _check_pattern(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"Invalid identity pattern: {exc}") from exc
        return value

    def accepts(self, subject: Optional[str]) -> bool:
        return subject is not None and re.fullmatch(self.identity_pattern, subject) is not None


@dataclass(frozen=True)
class ArtifactRecord:
    """Published artifact bytes and where they came from.

    ``digest`` is always computed locally from ``content``.
    """

    target: Target
    digest: Digest
    size: int
    url: str
    retrieved_at: datetime
    content: bytes = field(repr=False, compare=False)


@dataclass(frozen=True)
class TrustedPublishing:
    """Trusted publishing data reported by the registry."""

    repository: str
    run_id: Optional[str] = None
    commit: Optional[str] = None


@dataclass(frozen=True)
class RegistryMetadata:
    """Registry-declared facts about a version. Informational, never trusted."""

    repository: Optional[str] = None
    checksum: Optional[Digest] = None
    trusted_publishing: Optional[TrustedPublishing] = None


@dataclass(frozen=True)
class SourceTree:
    """A checked-out source revision on the local filesystem."""

    root: Path
    repository: str
    commit: str


@dataclass(frozen=True)
class BuildRecipe:
    """Concrete, executable build steps for one package."""

    package: str
    version: str
    repository: str
    commit: str
    toolchain: str
    path_in_vcs: str = ""
    prefetch_commands: tuple[tuple[str, ...], ...] = ()
    commands: tuple[tuple[str, ...], ...] = ()
    environment: tuple[tuple[str, str], ...] = ()
    origin: str = "inferred"

    @property
    def artifact_name(self) -> str:
        return f"{self.package}-{self.version}.crate"


@dataclass(frozen=True)
class RebuildResult:
    """Outcome of executing a recipe in isolation."""

    state: RebuildState
    digest: Optional[Digest] = None
    exit_status: Optional[int] = None
    logs: str = ""


class Finding(BaseModel):
    """A single verification step and its outcome."""

    model_config = ConfigDict(frozen=True)

    code: str
    severity: Severity
    message: str
    stage: str
    details: dict[str, Any] = Field(default_factory=dict)


class VerdictEvidence:
    """Append-only log of findings.

    Each verification stage owns its own log and the aggregator merges them;
    entries are never removed or rewritten.
    """

    def __init__(self, stage: str) -> None:
        self.stage = stage
        self._findings: list[Finding] = []

    def record(
        self,
        code: str,
        severity: Severity,
        message: str,
        **details: Any,
    ) -> Finding:
        finding = Finding(
            code=code, severity=severity, message=message, stage=self.stage, details=details
        )
        self._findings.append(finding)
        return finding

    def info(self, code: str, message: str, **details: Any) -> Finding:
        return self.record(code, Severity.INFO, message, **details)

    def warn(self, code: str, message: str, **details: Any) -> Finding:
        return self.record(code, Severity.WARN, message, **details)

    def fail(self, code: str, message: str, **details: Any) -> Finding:
        return self.record(code, Severity.FAIL, message, **details)

    def extend(self, other: VerdictEvidence) -> None:
        self._findings.extend(other.findings)

    @property
    def findings(self) -> tuple[Finding, ...]:
        return tuple(self._findings)

    def codes(self) -> list[str]:
        return [finding.code for finding in self._findings]

    def __iter__(self) -> Iterator[Finding]:
        return iter(tuple(self._findings))

    def __len__(self) -> int:
        return len(self._findings)


class ProvenanceRecord(BaseModel):
    """Summary of an attestation that passed every provenance check."""

    model_config = ConfigDict(frozen=True)

    index: int
    source: str
    builder_id: str
    issuer: str
    subject: str
    repository: str
    commit: str
    built_at: Optional[datetime] = None


class TrustReport(BaseModel):
    """Final, immutable result of one audit run."""

    model_config = ConfigDict(frozen=True)

    target: Target
    provenance_verdict: ProvenanceVerdict
    reproducibility_verdict: ReproducibilityVerdict
    overall_verdict: OverallVerdict
    evidence: tuple[Finding, ...] = ()
    artifact_digest: Optional[str] = None
    canonical_provenance: Optional[ProvenanceRecord] = None
    generated_at: Optional[datetime] = None

    @property
    def verified_digest(self) -> Optional[str]:
        """The artifact digest, only when trusted provenance or a matching rebuild backs it."""
        if (
            self.provenance_verdict is ProvenanceVerdict.TRUSTED
            or self.reproducibility_verdict is ReproducibilityVerdict.MATCHED
        ):
            return self.artifact_digest
        return None
