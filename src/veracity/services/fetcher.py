# SPDX-License-Identifier: MPL-2.0
"""Source & Artifact Fetcher.

Retrieves published crates, registry metadata, attestation records, issuer
key material and source revisions. Every response is untrusted: registry JSON
is parsed into lenient-but-typed models, attestation records into strict
ones, and the artifact digest is always computed from the bytes we received.
"""

from __future__ import annotations

import asyncio
import io
import json
import logging
import os
import stat
import tarfile
import zlib
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Iterator, Optional, Union

import aiohttp
from pydantic import BaseModel, ConfigDict, ValidationError

from veracity import __version__
from veracity.core.attestation import Attestation, is_git_commit, parse_attestation, repository_url
from veracity.core.config import AuditConfig
from veracity.core.crypto import IssuerKeySet
from veracity.core.digests import Digest, digest
from veracity.core.exceptions import FetchFailed, InvalidKeyError, MalformedAttestation
from veracity.core.models import (
    ArtifactRecord,
    RegistryMetadata,
    SourceTree,
    Target,
    TrustedIssuer,
    TrustedPublishing,
)

logger = logging.getLogger(__name__)

USER_AGENT = f"veracity/{__version__}"

# Statuses worth another attempt
RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})

# crates.io caps page sizes of crate listings
LISTING_PAGE_SIZE = 100


class _RegistryCrate(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str
    repository: Optional[str] = None
    max_stable_version: Optional[str] = None
    max_version: Optional[str] = None


class _RegistryCrateResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    crate: _RegistryCrate


class _RegistryCrateListResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    crates: list[_RegistryCrate]


class _TrustPubData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    provider: Optional[str] = None
    repository: str
    run_id: Optional[Union[str, int]] = None
    sha: Optional[str] = None


class _RegistryVersion(BaseModel):
    model_config = ConfigDict(extra="ignore")

    num: str
    checksum: Optional[str] = None
    trustpub_data: Optional[_TrustPubData] = None


class _RegistryVersionResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    version: _RegistryVersion


@dataclass(frozen=True)
class _Response:
    status: int
    url: str
    body: bytes


@dataclass(frozen=True)
class AttestationBundle:
    """Attestation records fetched for one target.

    Iterating yields the parsed attestations; records that failed to parse
    are kept in ``rejected`` so that they still show up in evidence.
    """

    source: str
    attestations: tuple[Attestation, ...] = ()
    rejected: tuple[MalformedAttestation, ...] = ()

    @property
    def found(self) -> bool:
        """Whether any record at all was published for the target."""
        return bool(self.attestations or self.rejected)

    def __iter__(self) -> Iterator[Attestation]:
        return iter(self.attestations)

    def __len__(self) -> int:
        return len(self.attestations)


def _archive_url(repository: str, commit: str) -> str:
    base = repository_url(repository)
    if not base.startswith("https://"):
        raise FetchFailed(f"Unsupported repository URL: {repository}", url=repository)
    if not is_git_commit(commit):
        raise FetchFailed(f"Not a full git commit: {commit!r}", url=repository)
    return f"{base}/archive/{commit}.tar.gz"


class Fetcher:
    """Network access for one audit run.

    Use as an async context manager; a session is created on entry unless
    one was supplied.

    Transient failures (timeouts, connection errors, 408/429/5xx) are retried
    with exponential backoff; anything else fails immediately with
    :class:`FetchFailed`. Concurrent requests are bounded by
    ``config.max_concurrency``.
    """

    def __init__(self, config: AuditConfig, session: Optional[aiohttp.ClientSession] = None):
        self.config = config
        self.registry_url = config.registry_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._semaphore = asyncio.Semaphore(config.max_concurrency)

    async def __aenter__(self) -> Fetcher:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                headers={"User-Agent": USER_AGENT},
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout),
            )
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    async def _attempt(self, method: str, url: str) -> _Response:
        if self._session is None:
            raise RuntimeError("Fetcher used outside of its context manager")
        try:
            async with self._session.request(method, url, allow_redirects=True) as response:
                body = await response.read() if method != "HEAD" else b""
                return _Response(status=response.status, url=str(response.url), body=body)
        except asyncio.TimeoutError as exc:
            raise FetchFailed(f"Timed out fetching {url}", url=url, retryable=True) from exc
        except aiohttp.ClientError as exc:
            raise FetchFailed(f"Error fetching {url}: {exc}", url=url, retryable=True) from exc

    async def _request(
        self, url: str, method: str = "GET", allowed: frozenset = frozenset({200})
    ) -> _Response:
        """Perform a request with retries.

        Args:
            url: The URL to fetch.
            method: HTTP method.
            allowed: Statuses returned to the caller instead of raising.
        """
        attempts = self.config.retry_attempts
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self._semaphore:
                    response = await self._attempt(method, url)
                if response.status in allowed:
                    return response
                raise FetchFailed(
                    f"HTTP {response.status} from {url}",
                    url=url,
                    status=response.status,
                    retryable=response.status in RETRYABLE_STATUSES,
                )
            except FetchFailed as exc:
                if not exc.retryable or attempt == attempts:
                    if exc.retryable:
                        logger.warning(f"Giving up on {url} after {attempts} attempts: {exc}")
                    raise
                delay = self.config.retry_base_delay * 2 ** (attempt - 1)
                logger.info(f"Retrying {url} in {delay:.2f}s (attempt {attempt}/{attempts}): {exc}")
                await asyncio.sleep(delay)

    async def _registry_request(self, url: str) -> _Response:
        if self.config.registry_delay:
            await asyncio.sleep(self.config.registry_delay)
        return await self._request(url)

    @staticmethod
    def _parse(model: type[BaseModel], response: _Response) -> Any:
        try:
            return model.model_validate_json(response.body)
        except ValidationError as exc:
            raise FetchFailed(
                f"Malformed response from {response.url}",
                url=response.url,
                status=response.status,
                details={"errors": exc.errors(include_url=False, include_context=False, include_input=False)},
            ) from exc

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------
    async def resolve_target(self, name: str, version: Optional[str] = None) -> Target:
        """Return a fully pinned target, resolving the latest stable version if needed."""
        if version is not None:
            return Target(name=name, version=version, registry=self.registry_url)
        response = await self._registry_request(f"{self.registry_url}/api/v1/crates/{name}")
        crate = self._parse(_RegistryCrateResponse, response).crate
        resolved = crate.max_stable_version or crate.max_version
        if not resolved:
            raise FetchFailed(f"Registry reports no version for {name}", url=response.url)
        logger.info(f"Resolved {name} to version {resolved}")
        return Target(name=name, version=resolved, registry=self.registry_url)

    async def fetch_popular_crates(self, count: int) -> list[Target]:
        """Return the ``count`` most downloaded crates, pinned to their latest stable version."""
        per_page = min(count, LISTING_PAGE_SIZE)
        targets: list[Target] = []
        page = 1
        while len(targets) < count:
            response = await self._registry_request(
                f"{self.registry_url}/api/v1/crates?page={page}&per_page={per_page}&sort=downloads"
            )
            crates = self._parse(_RegistryCrateListResponse, response).crates
            if not crates:
                break
            for crate in crates:
                version = crate.max_stable_version or crate.max_version
                if not version:
                    logger.warning(f"Skipping {crate.name}: registry reports no version")
                    continue
                try:
                    targets.append(Target(name=crate.name, version=version, registry=self.registry_url))
                except ValidationError:
                    logger.warning(f"Skipping invalid registry entry {crate.name!r} {version!r}")
            page += 1
        logger.info(f"Selected {len(targets[:count])} popular crate(s)")
        return targets[:count]

    async def fetch_metadata(self, target: Target) -> RegistryMetadata:
        """Fetch registry-declared repository, checksum and trusted publishing data."""
        base = f"{self.registry_url}/api/v1/crates/{target.name}"
        crate_response, version_response = await asyncio.gather(
            self._registry_request(base),
            self._registry_request(f"{base}/{target.version}"),
        )
        crate = self._parse(_RegistryCrateResponse, crate_response).crate
        version = self._parse(_RegistryVersionResponse, version_response).version

        checksum = None
        if version.checksum:
            try:
                checksum = Digest(hex=version.checksum)
            except ValueError:
                logger.warning(f"Ignoring malformed registry checksum for {target}")

        trusted_publishing = None
        if version.trustpub_data is not None:
            repository = version.trustpub_data.repository
            if version.trustpub_data.provider == "github" and "://" not in repository:
                repository = f"https://github.com/{repository}"
            run_id = version.trustpub_data.run_id
            trusted_publishing = TrustedPublishing(
                repository=repository,
                run_id=str(run_id) if run_id is not None else None,
                commit=version.trustpub_data.sha,
            )
        return RegistryMetadata(
            repository=crate.repository,
            checksum=checksum,
            trusted_publishing=trusted_publishing,
        )

    async def fetch_artifact(self, target: Target) -> ArtifactRecord:
        """Download the published crate and digest it locally."""
        url = f"{self.registry_url}/api/v1/crates/{target.name}/{target.version}/download"
        response = await self._registry_request(url)
        if not response.body:
            raise FetchFailed(f"Empty artifact received from {response.url}", url=response.url)
        record = ArtifactRecord(
            target=target,
            digest=digest(response.body),
            size=len(response.body),
            url=response.url,
            retrieved_at=datetime.now(timezone.utc),
            content=response.body,
        )
        logger.info(f"Fetched {target.artifact_name} ({record.size} bytes, {record.digest})")
        return record

    # ------------------------------------------------------------------
    # Attestations and issuers
    # ------------------------------------------------------------------
    async def fetch_attestations(self, target: Target) -> AttestationBundle:
        """Fetch and parse the attestation records published for ``target``."""
        url = self.config.attestation_url_template.format(name=target.name, version=target.version)
        response = await self._request(url, allowed=frozenset({200, 404}))
        if response.status == 404:
            logger.info(f"No attestations published for {target}")
            return AttestationBundle(source=url)

        attestations, rejected = [], []
        lines = [line for line in response.body.splitlines() if line.strip()]
        for index, line in enumerate(lines):
            try:
                attestations.append(parse_attestation(line, index=index, source=url))
            except MalformedAttestation as exc:
                logger.warning(f"Rejected attestation {index} for {target}: {exc}")
                rejected.append(exc)
        logger.info(
            f"Fetched {len(attestations)} attestation(s) for {target} ({len(rejected)} rejected)"
        )
        return AttestationBundle(
            source=url, attestations=tuple(attestations), rejected=tuple(rejected)
        )

    async def fetch_issuer_keys(self, issuer: TrustedIssuer) -> IssuerKeySet:
        """Fetch the public key set published by a trusted issuer."""
        response = await self._request(issuer.keys_url)
        try:
            document = json.loads(response.body)
            return IssuerKeySet.from_jwks(issuer.issuer, document)
        except (ValueError, InvalidKeyError) as exc:
            raise FetchFailed(
                f"Malformed key set from {issuer.keys_url}: {exc}", url=issuer.keys_url
            ) from exc

    # ------------------------------------------------------------------
    # Source
    # ------------------------------------------------------------------
    async def resolve_commit(self, repository: str, commit: str) -> bool:
        """Whether ``commit`` exists in ``repository``."""
        url = _archive_url(repository, commit)
        response = await self._request(url, method="HEAD", allowed=frozenset({200, 404}))
        return response.status == 200

    async def fetch_source(self, repository: str, commit: str, destination: Path) -> SourceTree:
        """Download and extract a source revision into ``destination``."""
        url = _archive_url(repository, commit)
        response = await self._request(url)
        try:
            destination.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise FetchFailed(f"Cannot create {destination}: {exc}", url=url) from exc
        await asyncio.get_running_loop().run_in_executor(
            None, extract_source_archive, response.body, destination
        )
        logger.info(f"Extracted {repository}@{commit} into {destination}")
        return SourceTree(root=destination, repository=repository, commit=commit)


def _strip_top_level(name: str) -> Optional[PurePosixPath]:
    path = PurePosixPath(name)
    if path.is_absolute() or ".." in path.parts:
        raise FetchFailed(f"Unsafe path in source archive: {name!r}")
    parts = [part for part in path.parts if part != "."]
    if len(parts) <= 1:
        return None
    return PurePosixPath(*parts[1:])


def _inside(root: Path, path: Path) -> bool:
    return path == root or root in path.parents


def _member_target(root: Path, relative: PurePosixPath, name: str) -> Path:
    """Return where a member lands, refusing to write through links or over entries."""
    target = root / relative
    parent = target.parent.resolve()
    if not _inside(root, parent):
        raise FetchFailed(f"Member escapes source tree through a symlink: {name!r}")
    target = parent / target.name
    if target.is_symlink():
        raise FetchFailed(f"Member would be written through a symlink: {name!r}")
    return target


def _check_links(root: Path) -> None:
    """Refuse any extracted symlink whose real target lies outside ``root``."""
    for path in root.rglob("*"):
        if not path.is_symlink():
            continue
        name = path.relative_to(root).as_posix()
        try:
            resolved = path.resolve()
        except RuntimeError as exc:
            raise FetchFailed(f"Symlink loop in source archive: {name!r}") from exc
        if not _inside(root, resolved):
            raise FetchFailed(f"Symlink escapes source tree: {name!r}")


def extract_source_archive(data: bytes, destination: Path) -> None:
    """Extract a source tarball, dropping its single top-level directory.

    Absolute paths, ``..`` components, hard links, special files, symlinks
    pointing outside the tree, members written through an earlier symlink
    and members colliding with an earlier entry are refused.

    Raises:
        FetchFailed: If the archive is unreadable or holds an unsafe member.
    """
    root = destination.resolve()
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as archive:
            for member in archive:
                relative = _strip_top_level(member.name)
                if relative is None:
                    continue
                if member.isdir():
                    target = _member_target(root, relative, member.name)
                    if target.exists() and not target.is_dir():
                        raise FetchFailed(f"Directory collides with a file: {member.name!r}")
                    target.parent.mkdir(parents=True, exist_ok=True)
                    target.mkdir(exist_ok=True)
                    continue
                if not (member.isfile() or member.issym()):
                    raise FetchFailed(f"Unsupported member in source archive: {member.name!r}")
                _member_target(root, relative, member.name).parent.mkdir(parents=True, exist_ok=True)
                target = _member_target(root, relative, member.name)
                if target.exists():
                    raise FetchFailed(f"Duplicate member in source archive: {member.name!r}")
                if member.isfile():
                    extracted = archive.extractfile(member)
                    target.write_bytes(extracted.read() if extracted is not None else b"")
                    mode = stat.S_IRUSR | stat.S_IWUSR | stat.S_IRGRP | stat.S_IROTH
                    if member.mode & 0o111:
                        mode |= stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH
                    os.chmod(target, mode)
                else:
                    link_target = PurePosixPath(member.linkname)
                    resolved = Path(os.path.normpath(target.parent / link_target))
                    if link_target.is_absolute() or not _inside(root, resolved):
                        raise FetchFailed(f"Symlink escapes source tree: {member.name!r}")
                    os.symlink(member.linkname, target)
            _check_links(root)
    except (tarfile.TarError, EOFError, zlib.error) as exc:
        raise FetchFailed(f"Source archive is not a readable tarball: {exc}") from exc
    except OSError as exc:
        raise FetchFailed(f"Cannot extract source archive into {destination}: {exc}") from exc
