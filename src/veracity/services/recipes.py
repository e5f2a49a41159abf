# SPDX-License-Identifier: MPL-2.0
"""Build recipe resolution.

A recipe says where the source lives and which toolchain to use. The command
lines themselves are fixed here and never taken from an attestation, so a
recipe from an unverified attestation is safe to execute in the sandbox.
"""

from __future__ import annotations

import io
import json
import logging
import re
import tarfile
import zlib
from pathlib import PurePosixPath
from typing import Optional, Sequence

from pydantic import BaseModel, ConfigDict, ValidationError

from veracity.core.attestation import Attestation, is_git_commit
from veracity.core.config import AuditConfig
from veracity.core.exceptions import MalformedAttestation
from veracity.core.models import (
    ArtifactRecord,
    BuildRecipe,
    RegistryMetadata,
    Target,
    VerdictEvidence,
)

logger = logging.getLogger(__name__)

VCS_INFO_FILE = ".cargo_vcs_info.json"

_TOOLCHAIN = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]{0,63}")


class _GitInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sha1: str
    dirty: bool = False


class VcsInfo(BaseModel):
    """Contents of ``.cargo_vcs_info.json`` as written by ``cargo package``."""

    model_config = ConfigDict(extra="ignore")

    git: _GitInfo
    path_in_vcs: str = ""


def cargo_commands(
    package: str, toolchain: str, config: AuditConfig
) -> tuple[tuple[tuple[str, ...], ...], tuple[tuple[str, ...], ...], tuple[tuple[str, str], ...]]:
    """Return the prefetch commands, build commands and environment for a package."""
    cargo = config.cargo_binary
    prefetch = ((cargo, "fetch", "--locked"),)
    build = ((cargo, "package", "--no-verify", "--allow-dirty", "--offline", "-p", package),)
    environment = (("CARGO_NET_OFFLINE", "true"), ("RUSTUP_TOOLCHAIN", toolchain))
    return prefetch, build, environment


def _safe_path(path: str) -> Optional[str]:
    value = PurePosixPath(path.strip() or ".")
    if value.is_absolute() or ".." in value.parts:
        return None
    return "" if str(value) == "." else str(value)


def _recipe(
    target: Target,
    repository: str,
    commit: str,
    toolchain: str,
    path_in_vcs: str,
    origin: str,
    config: AuditConfig,
) -> BuildRecipe:
    prefetch, build, environment = cargo_commands(target.name, toolchain, config)
    return BuildRecipe(
        package=target.name,
        version=target.version,
        repository=repository,
        commit=commit,
        toolchain=toolchain,
        path_in_vcs=path_in_vcs,
        prefetch_commands=prefetch,
        commands=build,
        environment=environment,
        origin=origin,
    )


def recipe_from_attestations(
    target: Target,
    attestations: Sequence[Attestation],
    config: AuditConfig,
    evidence: VerdictEvidence,
) -> Optional[BuildRecipe]:
    """Take the build parameters of the most recent usable attestation."""
    ordered = sorted(
        attestations,
        key=lambda attestation: (attestation.built_at is not None, attestation.built_at),
        reverse=True,
    )
    for attestation in ordered:
        try:
            parameters = attestation.build_parameters()
        except MalformedAttestation:
            continue
        commit = attestation.source_commit()
        path = _safe_path(parameters.path)
        if commit is None or path is None:
            continue
        if parameters.package not in (None, target.name):
            continue

        toolchain = parameters.toolchain or config.default_toolchain
        if not _TOOLCHAIN.fullmatch(toolchain):
            evidence.warn(
                "recipe.toolchain_rejected",
                f"Ignoring unusable toolchain {parameters.toolchain!r}; using {config.default_toolchain}",
                attestation=attestation.index,
            )
            toolchain = config.default_toolchain
        evidence.info(
            "recipe.from_attestation",
            f"Build recipe taken from attestation {attestation.index}",
            attestation=attestation.index,
            repository=parameters.source.repository,
            commit=commit,
            toolchain=toolchain,
        )
        return _recipe(
            target, parameters.source.repository, commit, toolchain, path, "attestation", config
        )
    return None


def read_vcs_info(content: bytes, target: Target) -> Optional[VcsInfo]:
    """Read ``.cargo_vcs_info.json`` from the root of a published crate.

    Returns ``None`` when the crate has none or it cannot be parsed.
    """
    member_name = f"{target.name}-{target.version}/{VCS_INFO_FILE}"
    try:
        with tarfile.open(fileobj=io.BytesIO(content), mode="r:*") as archive:
            try:
                member = archive.getmember(member_name)
            except KeyError:
                return None
            if not member.isfile():
                return None
            extracted = archive.extractfile(member)
            data = extracted.read() if extracted is not None else b""
    except (tarfile.TarError, EOFError, zlib.error, OSError) as exc:
        logger.warning(f"Cannot read {VCS_INFO_FILE} from {target.artifact_name}: {exc}")
        return None
    try:
        return VcsInfo.model_validate(json.loads(data))
    except (ValueError, ValidationError) as exc:
        logger.warning(f"Malformed {VCS_INFO_FILE} in {target.artifact_name}: {exc}")
        return None


def recipe_from_crate(
    target: Target,
    artifact: ArtifactRecord,
    metadata: Optional[RegistryMetadata],
    config: AuditConfig,
    evidence: VerdictEvidence,
) -> Optional[BuildRecipe]:
    """Infer a recipe from cargo packaging conventions."""
    repository = metadata.repository if metadata is not None else None
    if not repository:
        evidence.warn("recipe.no_repository", "Registry declares no source repository")
        return None
    info = read_vcs_info(artifact.content, target)
    if info is None or not is_git_commit(info.git.sha1):
        evidence.warn(
            "recipe.no_vcs_info",
            f"{target.artifact_name} records no source commit in {VCS_INFO_FILE}",
        )
        return None
    path = _safe_path(info.path_in_vcs)
    if path is None:
        evidence.warn("recipe.no_vcs_info", f"Unsafe path_in_vcs {info.path_in_vcs!r}")
        return None
    if info.git.dirty:
        evidence.warn("recipe.dirty_source", f"{target.artifact_name} was packaged from a dirty tree")
    evidence.warn(
        "recipe.inferred",
        f"Build recipe inferred from {VCS_INFO_FILE}; toolchain defaults to {config.default_toolchain}",
        repository=repository,
        commit=info.git.sha1,
        toolchain=config.default_toolchain,
    )
    return _recipe(
        target, repository, info.git.sha1, config.default_toolchain, path, "inferred", config
    )


def resolve_recipe(
    target: Target,
    attestations: Sequence[Attestation],
    artifact: ArtifactRecord,
    metadata: Optional[RegistryMetadata],
    config: AuditConfig,
    evidence: VerdictEvidence,
) -> Optional[BuildRecipe]:
    """Resolve a build recipe, preferring attested build parameters over inference."""
    recipe = recipe_from_attestations(target, attestations, config, evidence)
    if recipe is None:
        recipe = recipe_from_crate(target, artifact, metadata, config, evidence)
    if recipe is None:
        evidence.warn("recipe.unavailable", f"No build recipe could be resolved for {target}")
    return recipe
