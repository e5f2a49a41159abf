# SPDX-License-Identifier: MPL-2.0
"""Provenance Verifier.

Each attestation goes through four checks:

1. signature: a DSSE signature verifies under a key published by a trusted
   issuer, and the key is valid both at build time and now;
2. identity: the subject bound to that key matches the issuer's identity
   pattern;
3. digest: the statement names the digest we computed for the artifact;
4. source: the build definition names a full commit of its source
   repository, consistent with the resolved dependencies, and the commit
   exists.

All four are evaluated and recorded for every attestation. An attestation
failing any of them is left out of the trusted set; it never stops the
others from being checked.
"""

from __future__ import annotations

import asyncio
import binascii
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Mapping, Optional, Sequence

from veracity.core.attestation import Attestation, normalize_repository
from veracity.core.crypto import IssuerKey, IssuerKeySet, b64_decode, pae, verify_signature
from veracity.core.exceptions import (
    DigestMismatch,
    FetchFailed,
    IssuerUntrusted,
    MalformedAttestation,
    SignatureInvalid,
    SourceMismatch,
    VerificationError,
)
from veracity.core.models import (
    ArtifactRecord,
    ProvenanceRecord,
    ProvenanceVerdict,
    RegistryMetadata,
    TrustedIssuer,
    VerdictEvidence,
)

logger = logging.getLogger(__name__)

STAGE = "provenance"

CommitResolver = Callable[[str, str], Awaitable[bool]]

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class ProvenanceOutcome:
    """Result of verifying every attestation of a target."""

    verdict: ProvenanceVerdict
    evidence: VerdictEvidence
    canonical: Optional[ProvenanceRecord] = None
    passing: tuple[ProvenanceRecord, ...] = ()


class ProvenanceVerifier:
    """Verifies attestations against an explicit set of trusted issuers.

    Args:
        trusted_issuers: Issuers whose identities are accepted. Immutable for
            the lifetime of the verifier.
        key_sets: Key material fetched for those issuers, keyed by issuer.
        resolve_commit: Coroutine telling whether a commit exists in a
            repository.
    """

    def __init__(
        self,
        trusted_issuers: Sequence[TrustedIssuer],
        key_sets: Mapping[str, IssuerKeySet],
        resolve_commit: CommitResolver,
    ) -> None:
        self.trusted_issuers = tuple(trusted_issuers)
        trusted_names = {issuer.issuer for issuer in self.trusted_issuers}
        self._key_sets = {
            name: key_set for name, key_set in key_sets.items() if name in trusted_names
        }
        self._resolve_commit = resolve_commit

    async def verify(
        self,
        artifact: ArtifactRecord,
        attestations: Sequence[Attestation],
        rejected: Sequence[MalformedAttestation] = (),
        metadata: Optional[RegistryMetadata] = None,
        evidence: Optional[VerdictEvidence] = None,
    ) -> ProvenanceOutcome:
        """Verify all attestations of ``artifact`` and decide the provenance verdict."""
        evidence = evidence if evidence is not None else VerdictEvidence(STAGE)
        for failure in rejected:
            evidence.fail("provenance.malformed_attestation", failure.message, **failure.details)

        if not attestations and not rejected:
            evidence.warn(
                "provenance.no_attestations",
                f"No attestation found for {artifact.target}",
            )
            self._record_registry_claims(evidence, metadata, None)
            return ProvenanceOutcome(ProvenanceVerdict.INDETERMINATE, evidence)

        per_attestation = [VerdictEvidence(STAGE) for _ in attestations]
        records = await asyncio.gather(
            *(
                self.verify_attestation(attestation, artifact, log)
                for attestation, log in zip(attestations, per_attestation)
            )
        )
        for log in per_attestation:
            evidence.extend(log)

        passing = tuple(
            sorted(
                (record for record in records if record is not None),
                key=lambda record: record.built_at or _EPOCH,
            )
        )
        if not passing:
            evidence.fail(
                "provenance.untrusted",
                f"None of the {len(attestations) + len(rejected)} attestation record(s) passed verification",
            )
            self._record_registry_claims(evidence, metadata, None)
            return ProvenanceOutcome(ProvenanceVerdict.UNTRUSTED, evidence)

        canonical = passing[-1]
        evidence.info(
            "provenance.trusted",
            f"{len(passing)} attestation(s) passed; attestation {canonical.index} is canonical",
            canonical_index=canonical.index,
            passing=[record.index for record in passing],
        )
        self._record_registry_claims(evidence, metadata, canonical)
        return ProvenanceOutcome(ProvenanceVerdict.TRUSTED, evidence, canonical, passing)

    async def verify_attestation(
        self,
        attestation: Attestation,
        artifact: ArtifactRecord,
        evidence: VerdictEvidence,
    ) -> Optional[ProvenanceRecord]:
        """Run the four checks on one attestation.

        Returns:
            A provenance record when every check passed, ``None`` otherwise.
        """
        ref = {"attestation": attestation.index}

        key = self._step(evidence, ref, "provenance.signature_valid", "signature verified",
                         lambda: self._check_signature(attestation))
        issuer = self._step(evidence, ref, "provenance.issuer_trusted", "signer identity trusted",
                            lambda: self._check_identity(key))
        digest_ok = self._step(evidence, ref, "provenance.digest_matches", "attested digest matches artifact",
                               lambda: self._check_digest(attestation, artifact))
        try:
            repository, commit = await self._check_source(attestation, artifact)
        except VerificationError as exc:
            evidence.fail(exc.code, exc.message, **ref, **exc.details)
            repository = commit = None
        else:
            evidence.info(
                "provenance.source_resolved",
                f"Attestation {attestation.index}: source {repository}@{commit} resolved",
                **ref,
            )

        if key is None or issuer is None or not digest_ok or commit is None:
            logger.info(f"Attestation {attestation.index} for {artifact.target} rejected")
            return None
        return ProvenanceRecord(
            index=attestation.index,
            source=attestation.source,
            builder_id=attestation.builder_id,
            issuer=issuer.issuer,
            subject=key.subject or "",
            repository=repository,
            commit=commit,
            built_at=attestation.built_at,
        )

    @staticmethod
    def _step(evidence: VerdictEvidence, ref: dict, code: str, description: str, check):
        try:
            result = check()
        except VerificationError as exc:
            evidence.fail(exc.code, exc.message, **ref, **exc.details)
            return None
        evidence.info(code, f"Attestation {ref['attestation']}: {description}", **ref)
        return result

    def _candidate_keys(self, keyid: str) -> list[IssuerKey]:
        candidates = []
        for key_set in self._key_sets.values():
            if keyid:
                key = key_set.get(keyid)
                if key is not None:
                    candidates.append(key)
            else:
                candidates.extend(key_set)
        return candidates

    def _check_signature(self, attestation: Attestation) -> IssuerKey:
        message = pae(attestation.envelope.payloadType, attestation.payload)
        now = datetime.now(timezone.utc)
        built_at = attestation.built_at
        if built_at is not None and built_at > now:
            raise SignatureInvalid(
                f"Attestation {attestation.index}: build time {built_at.isoformat()} lies in the future",
                {"reasons": ["build time is later than verification time"]},
            )
        reasons = []
        for signature in attestation.envelope.signatures:
            try:
                raw = b64_decode(signature.sig)
            except (binascii.Error, ValueError):
                reasons.append(f"signature for key {signature.keyid!r} is not base64")
                continue
            candidates = self._candidate_keys(signature.keyid)
            if not candidates:
                reasons.append(f"no trusted key material for key {signature.keyid!r}")
                continue
            for key in candidates:
                if not verify_signature(key.public_key, message, raw):
                    continue
                if not key.is_valid_at(built_at):
                    reasons.append(f"key {key.kid!r} was not valid at build time")
                    break
                # built_at is claimed by the signer; the key must still be valid now
                if not key.is_valid_at(now):
                    reasons.append(f"key {key.kid!r} is not valid at verification time")
                    break
                return key
            else:
                reasons.append(f"signature does not verify under key {signature.keyid!r}")
        raise SignatureInvalid(
            f"Attestation {attestation.index}: no valid signature from a trusted issuer",
            {"reasons": reasons},
        )

    def _check_identity(self, key: Optional[IssuerKey]) -> TrustedIssuer:
        if key is None:
            raise IssuerUntrusted(
                "Signer identity unknown: no signature verified under trusted issuer keys"
            )
        for issuer in self.trusted_issuers:
            if issuer.issuer == key.issuer and issuer.accepts(key.subject):
                return issuer
        raise IssuerUntrusted(
            f"Signer {key.subject!r} of issuer {key.issuer!r} does not match any trusted identity",
            {"issuer": key.issuer, "subject": key.subject, "kid": key.kid},
        )

    def _check_digest(self, attestation: Attestation, artifact: ArtifactRecord) -> bool:
        claimed = attestation.subject_digests()
        if artifact.digest in claimed:
            return True
        raise DigestMismatch(
            f"Attestation {attestation.index} does not attest {artifact.digest}",
            {"claimed": [str(value) for value in claimed], "actual": str(artifact.digest)},
        )

    async def _check_source(
        self, attestation: Attestation, artifact: ArtifactRecord
    ) -> tuple[str, str]:
        try:
            parameters = attestation.build_parameters()
        except MalformedAttestation as exc:
            raise SourceMismatch(exc.message, exc.details) from exc

        target = artifact.target
        if parameters.package is not None and parameters.package != target.name:
            raise SourceMismatch(
                f"Attestation {attestation.index} builds {parameters.package!r}, not {target.name!r}"
            )
        if parameters.version is not None and parameters.version != target.version:
            raise SourceMismatch(
                f"Attestation {attestation.index} builds version {parameters.version!r}, "
                f"not {target.version!r}"
            )

        repository = parameters.source.repository
        commit = attestation.source_commit()
        if commit is None:
            raise SourceMismatch(
                f"Attestation {attestation.index} does not name a full source commit",
                {"repository": repository},
            )
        resolved = attestation.resolved_source_commits().get(normalize_repository(repository))
        if resolved != commit:
            raise SourceMismatch(
                f"Attestation {attestation.index}: build definition commit {commit} "
                f"is not the resolved source dependency",
                {"repository": repository, "commit": commit, "resolved": resolved},
            )
        try:
            exists = await self._resolve_commit(repository, commit)
        except FetchFailed as exc:
            raise SourceMismatch(
                f"Attestation {attestation.index}: cannot resolve {repository}@{commit}: {exc.message}",
                {"repository": repository, "commit": commit, "retryable": exc.retryable},
            ) from exc
        if not exists:
            raise SourceMismatch(
                f"Attestation {attestation.index}: commit {commit} not found in {repository}",
                {"repository": repository, "commit": commit},
            )
        return repository, commit

    @staticmethod
    def _record_registry_claims(
        evidence: VerdictEvidence,
        metadata: Optional[RegistryMetadata],
        canonical: Optional[ProvenanceRecord],
    ) -> None:
        if metadata is None or metadata.trusted_publishing is None:
            return
        published = metadata.trusted_publishing
        evidence.info(
            "registry.trusted_publishing",
            f"Registry reports trusted publishing from {published.repository}",
            repository=published.repository,
            run_id=published.run_id,
            commit=published.commit,
        )
        if canonical is None:
            return
        if normalize_repository(published.repository) != normalize_repository(canonical.repository):
            evidence.warn(
                "provenance.repository_divergence",
                f"Attested repository {canonical.repository} differs from the registry's "
                f"trusted publisher {published.repository}",
            )
        if published.commit and published.commit != canonical.commit:
            evidence.warn(
                "provenance.commit_divergence",
                f"Attested commit {canonical.commit} differs from the registry's {published.commit}",
            )
