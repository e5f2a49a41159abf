# SPDX-License-Identifier: MPL-2.0
"""Strict parsing of attestation records.

An attestation record is a DSSE envelope, either bare or wrapped in a bundle
as ``{"dsseEnvelope": {...}}``, whose payload is an in-toto v1 Statement with
an SLSA v1 provenance predicate. Everything here is untrusted input: records
are parsed into strict models first and only then inspected. A structural
deviation raises :class:`MalformedAttestation`; nothing is coerced.
"""

from __future__ import annotations

import binascii
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from veracity.core.crypto import PAYLOAD_TYPE_INTOTO, b64_decode
from veracity.core.digests import Digest
from veracity.core.exceptions import MalformedAttestation

STATEMENT_TYPE = "https://in-toto.io/Statement/v1"
PREDICATE_TYPE_SLSA_PROVENANCE = "https://slsa.dev/provenance/v1"

_GIT_COMMIT = re.compile(r"[0-9a-f]{40}")


class _Strict(BaseModel):
    model_config = ConfigDict(strict=True, frozen=True, extra="forbid")


class _Lenient(BaseModel):
    model_config = ConfigDict(strict=True, frozen=True, extra="ignore")


class DsseSignature(_Strict):
    keyid: str = ""
    sig: str


class DsseEnvelope(_Strict):
    payloadType: str
    payload: str
    signatures: list[DsseSignature] = Field(min_length=1)


class _Bundle(_Lenient):
    dsseEnvelope: DsseEnvelope


class ResourceDescriptor(_Lenient):
    name: Optional[str] = None
    uri: Optional[str] = None
    digest: dict[str, str] = Field(default_factory=dict)


class Subject(_Lenient):
    name: str
    digest: dict[str, str] = Field(min_length=1)


class BuildDefinition(_Lenient):
    buildType: str
    externalParameters: dict[str, Any]
    internalParameters: dict[str, Any] = Field(default_factory=dict)
    resolvedDependencies: list[ResourceDescriptor] = Field(default_factory=list)


class Builder(_Lenient):
    id: str


class BuildMetadata(_Lenient):
    invocationId: Optional[str] = None
    startedOn: Optional[datetime] = None
    finishedOn: Optional[datetime] = None


class RunDetails(_Lenient):
    builder: Builder
    metadata: Optional[BuildMetadata] = None


class ProvenancePredicate(_Lenient):
    buildDefinition: BuildDefinition
    runDetails: RunDetails


class Statement(_Strict):
    type: str = Field(alias="_type")
    subject: list[Subject] = Field(min_length=1)
    predicateType: str
    predicate: ProvenancePredicate


class SourceParameters(_Lenient):
    repository: str
    commit: Optional[str] = None
    ref: Optional[str] = None


class CargoBuildParameters(_Lenient):
    """The ``externalParameters`` of a cargo package build definition."""

    source: SourceParameters
    toolchain: Optional[str] = None
    package: Optional[str] = None
    version: Optional[str] = None
    path: str = ""


def normalize_repository(url: str) -> str:
    """Reduce a repository URL to a comparable form.

    ``git+https://github.com/acme/Widget.git@refs/tags/v1`` and
    ``https://github.com/acme/widget`` both become
    ``https://github.com/acme/widget``.
    """
    return repository_url(url).lower()


def repository_url(url: str) -> str:
    """Strip ``git+``, ``.git``, a trailing ref and trailing slashes from a repository URL."""
    value = url.strip()
    if value.startswith("git+"):
        value = value[4:]
    scheme, sep, rest = value.partition("://")
    host, slash, path = rest.partition("/")
    if sep and "@" in path:
        value = f"{scheme}://{host}{slash}{path.split('@', 1)[0]}"
    value = value.rstrip("/")
    if value.endswith(".git"):
        value = value[: -len(".git")]
    return value


@dataclass(frozen=True)
class Attestation:
    """A parsed attestation record."""

    index: int
    source: str
    envelope: DsseEnvelope = field(repr=False)
    payload: bytes = field(repr=False)
    statement: Statement = field(repr=False)

    @property
    def builder_id(self) -> str:
        return self.statement.predicate.runDetails.builder.id

    @property
    def built_at(self) -> Optional[datetime]:
        metadata = self.statement.predicate.runDetails.metadata
        if metadata is None:
            return None
        moment = metadata.finishedOn or metadata.startedOn
        if moment is not None and moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)
        return moment

    def subject_digests(self) -> list[Digest]:
        digests = []
        for subject in self.statement.subject:
            value = subject.digest.get("sha256")
            if value is None:
                continue
            try:
                digests.append(Digest(hex=value))
            except ValueError:
                continue
        return digests

    def build_parameters(self) -> CargoBuildParameters:
        """Parse the build definition's external parameters.

        Raises:
            MalformedAttestation: If the parameters do not describe a cargo build.
        """
        try:
            return CargoBuildParameters.model_validate(
                self.statement.predicate.buildDefinition.externalParameters
            )
        except ValidationError as exc:
            raise MalformedAttestation(
                f"Attestation {self.index} has no usable build definition",
                {"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
            ) from exc

    def source_commit(self) -> Optional[str]:
        """The commit the build definition claims, if it names a full git commit."""
        try:
            parameters = self.build_parameters()
        except MalformedAttestation:
            return None
        commit = parameters.source.commit
        if commit is None:
            for dependency in self.statement.predicate.buildDefinition.resolvedDependencies:
                if dependency.uri and _same_repository(dependency.uri, parameters.source.repository):
                    commit = dependency.digest.get("gitCommit") or dependency.digest.get("sha1")
                    break
        if commit is None or not _GIT_COMMIT.fullmatch(commit):
            return None
        return commit

    def resolved_source_commits(self) -> dict[str, str]:
        """Repository to commit mapping from ``resolvedDependencies``."""
        commits = {}
        for dependency in self.statement.predicate.buildDefinition.resolvedDependencies:
            commit = dependency.digest.get("gitCommit") or dependency.digest.get("sha1")
            if dependency.uri and commit:
                commits[normalize_repository(dependency.uri)] = commit
        return commits


def _same_repository(left: str, right: str) -> bool:
    return normalize_repository(left) == normalize_repository(right)


def is_git_commit(value: Optional[str]) -> bool:
    return value is not None and _GIT_COMMIT.fullmatch(value) is not None


def parse_attestation(record: bytes, index: int = 0, source: str = "") -> Attestation:
    """Parse one attestation record.

    Args:
        record: The JSON text of one record (one JSONL line).
        index: Position of the record in its source, used in evidence.
        source: Where the record was fetched from.

    Raises:
        MalformedAttestation: If the record is not a well-formed DSSE envelope
            carrying an in-toto SLSA provenance statement.
    """
    context = {"index": index, "source": source}
    try:
        document = json.loads(record)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise MalformedAttestation(f"Attestation {index} is not valid JSON: {exc}", context) from exc
    if not isinstance(document, dict):
        raise MalformedAttestation(f"Attestation {index} must be a JSON object", context)

    try:
        if "dsseEnvelope" in document:
            envelope = _Bundle.model_validate(document).dsseEnvelope
        else:
            envelope = DsseEnvelope.model_validate(document)
    except ValidationError as exc:
        context["errors"] = exc.errors(include_url=False, include_context=False, include_input=False)
        raise MalformedAttestation(f"Attestation {index} is not a DSSE envelope", context) from exc

    if envelope.payloadType != PAYLOAD_TYPE_INTOTO:
        raise MalformedAttestation(
            f"Attestation {index} has unsupported payload type {envelope.payloadType!r}", context
        )
    try:
        payload = b64_decode(envelope.payload)
    except (binascii.Error, ValueError) as exc:
        raise MalformedAttestation(f"Attestation {index} payload is not base64", context) from exc

    try:
        statement = Statement.model_validate_json(payload)
    except ValidationError as exc:
        context["errors"] = exc.errors(include_url=False, include_context=False, include_input=False)
        raise MalformedAttestation(
            f"Attestation {index} payload is not an in-toto statement", context
        ) from exc
    if statement.type != STATEMENT_TYPE:
        raise MalformedAttestation(
            f"Attestation {index} has unsupported statement type {statement.type!r}", context
        )
    if statement.predicateType != PREDICATE_TYPE_SLSA_PROVENANCE:
        raise MalformedAttestation(
            f"Attestation {index} has unsupported predicate type {statement.predicateType!r}",
            context,
        )

    return Attestation(
        index=index, source=source, envelope=envelope, payload=payload, statement=statement
    )


def build_statement(
    subjects: list[dict[str, Any]],
    build_definition: dict[str, Any],
    run_details: dict[str, Any],
) -> dict[str, Any]:
    """Build an in-toto v1 Statement carrying SLSA v1 provenance."""
    return {
        "_type": STATEMENT_TYPE,
        "subject": subjects,
        "predicateType": PREDICATE_TYPE_SLSA_PROVENANCE,
        "predicate": {"buildDefinition": build_definition, "runDetails": run_details},
    }
