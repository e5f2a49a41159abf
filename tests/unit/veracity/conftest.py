# SPDX-License-Identifier: MPL-2.0
"""Shared fixtures: crate archives, signing keys and attestations."""

import gzip
import io
import json
import tarfile
from datetime import datetime, timezone

import pytest

from veracity.core.attestation import build_statement
from veracity.core.crypto import KeyPair
from veracity.core.digests import digest
from veracity.core.models import TrustedIssuer

ISSUER = "https://rebuild.example.org"
IDENTITY = "https://github.com/acme/widget/.github/workflows/release.yml@refs/tags/v1.2.3"
REPOSITORY = "https://github.com/acme/widget"
COMMIT = "0123456789abcdef0123456789abcdef01234567"
BUILT_AT = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


def build_tar(files, mtime=0, compress=True, uid=0, order=None):
    """Build a tar archive.

    ``files`` maps member paths to bytes (a regular file), to a
    ``(bytes, mode)`` tuple, or to ``("symlink", target)``.
    """
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as archive:
        for path in order or files:
            value = files[path]
            info = tarfile.TarInfo(path)
            info.mtime = mtime
            info.uid = info.gid = uid
            if isinstance(value, tuple) and value[0] == "symlink":
                info.type = tarfile.SYMTYPE
                info.linkname = value[1]
                info.mode = 0o777
                archive.addfile(info)
                continue
            content, mode = value if isinstance(value, tuple) else (value, 0o644)
            info.mode = mode
            info.size = len(content)
            archive.addfile(info, io.BytesIO(content))
    data = buffer.getvalue()
    if compress:
        return gzip.compress(data, mtime=mtime)
    return data


def crate_files(name="widget", version="1.2.3", extra=None, vcs_info=None):
    root = f"{name}-{version}"
    files = {
        f"{root}/Cargo.toml": f'[package]\nname = "{name}"\nversion = "{version}"\n'.encode(),
        f"{root}/src/lib.rs": b"pub fn answer() -> u32 { 42 }\n",
    }
    if vcs_info is not None:
        files[f"{root}/.cargo_vcs_info.json"] = json.dumps(vcs_info).encode()
    files.update(extra or {})
    return files


@pytest.fixture
def crate_bytes():
    """A small gzip-compressed crate for widget 1.2.3."""
    return build_tar(crate_files(), mtime=1700000000)


@pytest.fixture
def signing_key():
    return KeyPair.generate("rebuild-key-1")


@pytest.fixture
def trusted_issuer():
    return TrustedIssuer(
        issuer=ISSUER,
        identity_pattern=r"https://github\.com/acme/widget/\.github/workflows/release\.yml@refs/tags/.*",
        keys_url="https://rebuild.example.org/keys.json",
    )


def make_statement(
    artifact,
    repository=REPOSITORY,
    commit=COMMIT,
    built_at=BUILT_AT,
    name="widget",
    version="1.2.3",
    toolchain="1.84.0",
    resolved_commit=None,
):
    """Return an SLSA provenance statement for ``artifact`` as a dict."""
    metadata = {}
    if built_at is not None:
        metadata = {"startedOn": built_at.isoformat(), "finishedOn": built_at.isoformat()}
    external = {
        "source": {"repository": repository},
        "toolchain": toolchain,
        "package": name,
        "version": version,
        "path": "",
    }
    if commit is not None:
        external["source"]["commit"] = commit
    return build_statement(
        subjects=[{"name": f"{name}-{version}.crate", "digest": {"sha256": digest(artifact).hex}}],
        build_definition={
            "buildType": "https://rebuild.example.org/cargo-package/v1",
            "externalParameters": external,
            "resolvedDependencies": [
                {"uri": f"git+{repository}", "digest": {"gitCommit": resolved_commit or commit or ""}}
            ],
        },
        run_details={
            "builder": {"id": "https://rebuild.example.org/builder"},
            "metadata": metadata,
        },
    )


def sign_statement(key, statement):
    """Return one JSONL record holding ``statement`` signed by ``key``."""
    payload = json.dumps(statement).encode()
    return json.dumps({"dsseEnvelope": key.sign_envelope(payload)}).encode()


@pytest.fixture
def attestation_record(signing_key):
    """Factory: ``attestation_record(artifact, **statement_fields) -> bytes``."""

    def factory(artifact, key=None, **fields):
        return sign_statement(key or signing_key, make_statement(artifact, **fields))

    return factory


@pytest.fixture
def key_document(signing_key):
    """JWKS document publishing the signing key under the trusted identity."""
    return {"keys": [signing_key.to_jwk(subject=IDENTITY)]}


@pytest.fixture
def tar_builder():
    return build_tar


@pytest.fixture
def crate_builder():
    """Factory: ``crate_builder(extra=None, vcs_info=None, mtime=0) -> bytes``."""

    def factory(extra=None, vcs_info=None, mtime=0, name="widget", version="1.2.3"):
        return build_tar(crate_files(name, version, extra, vcs_info), mtime=mtime)

    return factory


@pytest.fixture
def statement_factory():
    return make_statement


@pytest.fixture
def record_signer():
    return sign_statement
