# SPDX-License-Identifier: MPL-2.0
"""Tests for the provenance verifier."""

from datetime import datetime, timedelta, timezone

import pytest

from veracity.core.attestation import parse_attestation
from veracity.core.crypto import IssuerKeySet, KeyPair
from veracity.core.digests import digest
from veracity.core.exceptions import FetchFailed, MalformedAttestation
from veracity.core.models import (
    ArtifactRecord,
    ProvenanceVerdict,
    RegistryMetadata,
    Severity,
    Target,
    TrustedPublishing,
)
from veracity.services.verifier import ProvenanceVerifier

ISSUER = "https://rebuild.example.org"
IDENTITY = "https://github.com/acme/widget/.github/workflows/release.yml@refs/tags/v1.2.3"
COMMIT = "0123456789abcdef0123456789abcdef01234567"
OTHER_COMMIT = "fedcba9876543210fedcba9876543210fedcba98"


@pytest.fixture
def artifact(crate_bytes):
    return ArtifactRecord(
        target=Target(name="widget", version="1.2.3"),
        digest=digest(crate_bytes),
        size=len(crate_bytes),
        url="https://crates.io/api/v1/crates/widget/1.2.3/download",
        retrieved_at=datetime.now(timezone.utc),
        content=crate_bytes,
    )


@pytest.fixture
def known_commits():
    return {("https://github.com/acme/widget", COMMIT), ("https://github.com/acme/widget", OTHER_COMMIT)}


@pytest.fixture
def verifier(trusted_issuer, key_document, known_commits):
    async def resolve_commit(repository, commit):
        return (repository, commit) in known_commits

    key_sets = {ISSUER: IssuerKeySet.from_jwks(ISSUER, key_document)}
    return ProvenanceVerifier([trusted_issuer], key_sets, resolve_commit)


def parse(records):
    return [parse_attestation(record, index=index) for index, record in enumerate(records)]


class TestProvenanceVerifier:
    """Tests for ProvenanceVerifier.verify()."""

    async def test_valid_attestation_is_trusted(self, verifier, artifact, crate_bytes, attestation_record):
        outcome = await verifier.verify(artifact, parse([attestation_record(crate_bytes)]))
        assert outcome.verdict is ProvenanceVerdict.TRUSTED
        assert outcome.canonical.commit == COMMIT
        assert outcome.canonical.subject == IDENTITY
        assert outcome.canonical.issuer == ISSUER
        codes = outcome.evidence.codes()
        for code in (
            "provenance.signature_valid",
            "provenance.issuer_trusted",
            "provenance.digest_matches",
            "provenance.source_resolved",
            "provenance.trusted",
        ):
            assert code in codes

    async def test_no_attestations_is_indeterminate(self, verifier, artifact):
        outcome = await verifier.verify(artifact, [])
        assert outcome.verdict is ProvenanceVerdict.INDETERMINATE
        assert outcome.canonical is None
        assert "provenance.no_attestations" in outcome.evidence.codes()

    async def test_only_malformed_records_is_untrusted(self, verifier, artifact):
        rejected = [MalformedAttestation("Attestation 0 is not valid JSON", {"index": 0})]
        outcome = await verifier.verify(artifact, [], rejected)
        assert outcome.verdict is ProvenanceVerdict.UNTRUSTED
        assert "provenance.malformed_attestation" in outcome.evidence.codes()

    async def test_invalid_signature_never_trusted(self, verifier, artifact, crate_bytes, signing_key, statement_factory, record_signer):
        """A record signed by an unknown key with a reused key id does not verify."""
        impostor = KeyPair.generate(signing_key.kid)
        record = record_signer(impostor, statement_factory(crate_bytes))
        outcome = await verifier.verify(artifact, parse([record]))
        assert outcome.verdict is ProvenanceVerdict.UNTRUSTED
        codes = outcome.evidence.codes()
        assert "provenance.signature_invalid" in codes
        assert "provenance.issuer_untrusted" in codes
        # The remaining checks are still evaluated and recorded
        assert "provenance.digest_matches" in codes
        assert "provenance.source_resolved" in codes

    async def test_untrusted_identity(self, trusted_issuer, artifact, crate_bytes, signing_key, attestation_record):
        async def resolve_commit(repository, commit):
            return True

        document = {"keys": [signing_key.to_jwk(subject="https://github.com/evil/fork/.github/workflows/x.yml@refs/heads/main")]}
        verifier = ProvenanceVerifier(
            [trusted_issuer], {ISSUER: IssuerKeySet.from_jwks(ISSUER, document)}, resolve_commit
        )
        outcome = await verifier.verify(artifact, parse([attestation_record(crate_bytes)]))
        assert outcome.verdict is ProvenanceVerdict.UNTRUSTED
        assert "provenance.signature_valid" in outcome.evidence.codes()
        assert "provenance.issuer_untrusted" in outcome.evidence.codes()

    async def test_keys_of_unconfigured_issuers_ignored(self, trusted_issuer, artifact, crate_bytes, key_document, attestation_record):
        async def resolve_commit(repository, commit):
            return True

        verifier = ProvenanceVerifier(
            [trusted_issuer],
            {"https://other.example.org": IssuerKeySet.from_jwks("https://other.example.org", key_document)},
            resolve_commit,
        )
        outcome = await verifier.verify(artifact, parse([attestation_record(crate_bytes)]))
        assert outcome.verdict is ProvenanceVerdict.UNTRUSTED

    async def test_key_outside_validity_window(self, trusted_issuer, artifact, crate_bytes, signing_key, attestation_record):
        async def resolve_commit(repository, commit):
            return True

        expired = datetime(2024, 1, 1, tzinfo=timezone.utc)
        document = {"keys": [signing_key.to_jwk(subject=IDENTITY, not_after=expired)]}
        verifier = ProvenanceVerifier(
            [trusted_issuer], {ISSUER: IssuerKeySet.from_jwks(ISSUER, document)}, resolve_commit
        )
        outcome = await verifier.verify(artifact, parse([attestation_record(crate_bytes)]))
        assert outcome.verdict is ProvenanceVerdict.UNTRUSTED
        failure = next(f for f in outcome.evidence if f.code == "provenance.signature_invalid")
        assert any("not valid at build time" in reason for reason in failure.details["reasons"])

    async def test_expired_key_with_backdated_build_time(self, trusted_issuer, artifact, crate_bytes, signing_key, attestation_record):
        """A key past its expiry cannot sign new statements claiming an old build time."""
        async def resolve_commit(repository, commit):
            return True

        now = datetime.now(timezone.utc)
        document = {"keys": [signing_key.to_jwk(subject=IDENTITY, not_after=now - timedelta(days=1))]}
        verifier = ProvenanceVerifier(
            [trusted_issuer], {ISSUER: IssuerKeySet.from_jwks(ISSUER, document)}, resolve_commit
        )
        record = attestation_record(crate_bytes, built_at=now - timedelta(days=30))
        outcome = await verifier.verify(artifact, parse([record]))
        assert outcome.verdict is ProvenanceVerdict.UNTRUSTED
        failure = next(f for f in outcome.evidence if f.code == "provenance.signature_invalid")
        assert any("not valid at verification time" in reason for reason in failure.details["reasons"])

    async def test_future_build_time_rejected(self, verifier, artifact, crate_bytes, attestation_record):
        record = attestation_record(crate_bytes, built_at=datetime.now(timezone.utc) + timedelta(days=365))
        outcome = await verifier.verify(artifact, parse([record]))
        assert outcome.verdict is ProvenanceVerdict.UNTRUSTED
        assert "provenance.signature_invalid" in outcome.evidence.codes()

    async def test_digest_mismatch(self, verifier, artifact, attestation_record):
        outcome = await verifier.verify(artifact, parse([attestation_record(b"other bytes")]))
        assert outcome.verdict is ProvenanceVerdict.UNTRUSTED
        assert "provenance.digest_mismatch" in outcome.evidence.codes()

    async def test_unresolvable_commit(self, verifier, artifact, crate_bytes, attestation_record):
        record = attestation_record(crate_bytes, commit="1" * 40)
        outcome = await verifier.verify(artifact, parse([record]))
        assert outcome.verdict is ProvenanceVerdict.UNTRUSTED
        assert "provenance.source_mismatch" in outcome.evidence.codes()

    async def test_inconsistent_resolved_dependency(self, verifier, artifact, crate_bytes, attestation_record):
        record = attestation_record(crate_bytes, resolved_commit=OTHER_COMMIT)
        outcome = await verifier.verify(artifact, parse([record]))
        assert outcome.verdict is ProvenanceVerdict.UNTRUSTED
        assert "provenance.source_mismatch" in outcome.evidence.codes()

    async def test_resolver_failure_is_a_finding(self, trusted_issuer, key_document, artifact, crate_bytes, attestation_record):
        async def resolve_commit(repository, commit):
            raise FetchFailed("boom", url=repository, retryable=True)

        verifier = ProvenanceVerifier(
            [trusted_issuer], {ISSUER: IssuerKeySet.from_jwks(ISSUER, key_document)}, resolve_commit
        )
        outcome = await verifier.verify(artifact, parse([attestation_record(crate_bytes)]))
        assert outcome.verdict is ProvenanceVerdict.UNTRUSTED
        failure = next(f for f in outcome.evidence if f.code == "provenance.source_mismatch")
        assert failure.details["retryable"] is True

    async def test_most_recent_passing_attestation_is_canonical(self, verifier, artifact, crate_bytes, attestation_record):
        older = datetime(2025, 1, 1, tzinfo=timezone.utc)
        records = [
            attestation_record(crate_bytes, commit=OTHER_COMMIT, built_at=older + timedelta(days=10)),
            attestation_record(crate_bytes, commit=COMMIT, built_at=older),
            attestation_record(b"bogus", built_at=older + timedelta(days=30)),
        ]
        outcome = await verifier.verify(artifact, parse(records))
        assert outcome.verdict is ProvenanceVerdict.TRUSTED
        assert [record.index for record in outcome.passing] == [1, 0]
        assert outcome.canonical.index == 0
        assert outcome.canonical.commit == OTHER_COMMIT

    async def test_one_bad_record_does_not_block_good_ones(self, verifier, artifact, crate_bytes, attestation_record):
        impostor = KeyPair.generate("rebuild-key-1")
        records = [attestation_record(crate_bytes, key=impostor), attestation_record(crate_bytes)]
        outcome = await verifier.verify(artifact, parse(records))
        assert outcome.verdict is ProvenanceVerdict.TRUSTED
        assert outcome.canonical.index == 1

    async def test_trusted_publishing_recorded(self, verifier, artifact, crate_bytes, attestation_record):
        metadata = RegistryMetadata(
            repository="https://github.com/acme/widget",
            trusted_publishing=TrustedPublishing(
                repository="https://github.com/someone/else", run_id="7", commit=COMMIT
            ),
        )
        outcome = await verifier.verify(
            artifact, parse([attestation_record(crate_bytes)]), metadata=metadata
        )
        assert outcome.verdict is ProvenanceVerdict.TRUSTED
        published = next(f for f in outcome.evidence if f.code == "registry.trusted_publishing")
        assert published.severity is Severity.INFO
        assert published.details["run_id"] == "7"
        divergence = next(f for f in outcome.evidence if f.code == "provenance.repository_divergence")
        assert divergence.severity is Severity.WARN
