# SPDX-License-Identifier: MPL-2.0
"""Tests for the fetcher, served by an in-process aiohttp application."""

import io
import json
import tarfile

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from veracity.core.config import AuditConfig
from veracity.core.digests import digest
from veracity.core.exceptions import FetchFailed
from veracity.core.models import Target, TrustedIssuer
from veracity.services.fetcher import Fetcher, _archive_url, extract_source_archive

COMMIT = "0123456789abcdef0123456789abcdef01234567"


class Registry:
    """A fake crates.io plus attestation store."""

    def __init__(self, crate, records=None, keys=None):
        self.crate = crate
        self.records = records
        self.keys = keys
        self.failures = {}
        self.calls = {}
        self.popular = []

    def app(self):
        app = web.Application()
        app.router.add_get("/api/v1/crates", self.listing)
        app.router.add_get("/api/v1/crates/{name}", self.crate_info)
        app.router.add_get("/api/v1/crates/{name}/{version}", self.version_info)
        app.router.add_get("/api/v1/crates/{name}/{version}/download", self.download)
        app.router.add_get("/attestations/{name}/{version}.jsonl", self.attestations)
        app.router.add_get("/keys.json", self.key_set)
        return app

    def _maybe_fail(self, request):
        path = request.path
        self.calls[path] = self.calls.get(path, 0) + 1
        remaining = self.failures.get(path, 0)
        if remaining:
            self.failures[path] = remaining - 1
            raise web.HTTPServiceUnavailable()

    async def listing(self, request):
        self._maybe_fail(request)
        assert request.query["sort"] == "downloads"
        page, per_page = int(request.query["page"]), int(request.query["per_page"])
        crates = self.popular[(page - 1) * per_page : page * per_page]
        return web.json_response({"crates": crates, "meta": {"total": len(self.popular)}})

    async def crate_info(self, request):
        self._maybe_fail(request)
        if request.match_info["name"] != "widget":
            raise web.HTTPNotFound()
        return web.json_response(
            {
                "crate": {
                    "name": "widget",
                    "repository": "https://github.com/acme/widget",
                    "max_stable_version": "1.2.3",
                    "max_version": "2.0.0-rc.1",
                }
            }
        )

    async def version_info(self, request):
        self._maybe_fail(request)
        return web.json_response(
            {
                "version": {
                    "num": request.match_info["version"],
                    "checksum": digest(self.crate).hex,
                    "trustpub_data": {
                        "provider": "github",
                        "repository": "acme/widget",
                        "run_id": 4242,
                        "sha": COMMIT,
                    },
                }
            }
        )

    async def download(self, request):
        self._maybe_fail(request)
        return web.Response(body=self.crate, content_type="application/gzip")

    async def attestations(self, request):
        self._maybe_fail(request)
        if self.records is None:
            raise web.HTTPNotFound()
        return web.Response(body=b"\n".join(self.records) + b"\n")

    async def key_set(self, request):
        self._maybe_fail(request)
        if isinstance(self.keys, bytes):
            return web.Response(body=self.keys)
        return web.json_response(self.keys)


@pytest.fixture
def registry(crate_bytes):
    return Registry(crate_bytes)


@pytest.fixture
async def server(registry):
    async with TestServer(registry.app()) as test_server:
        yield test_server


@pytest.fixture
def base_url(server):
    return f"http://{server.host}:{server.port}"


@pytest.fixture
def config(base_url):
    return AuditConfig(
        registry_url=base_url,
        attestation_url_template=base_url + "/attestations/{name}/{version}.jsonl",
        retry_attempts=3,
        retry_base_delay=0,
        require_trusted_issuers=False,
    )


@pytest.fixture
def target(base_url):
    return Target(name="widget", version="1.2.3", registry=base_url)


class TestRegistry:
    """Tests for registry access."""

    async def test_resolve_latest_stable_version(self, config):
        async with Fetcher(config) as fetcher:
            target = await fetcher.resolve_target("widget")
        assert target.version == "1.2.3"

    async def test_resolve_pinned_version_without_request(self, config, registry):
        async with Fetcher(config) as fetcher:
            target = await fetcher.resolve_target("widget", "0.9.0")
        assert target.version == "0.9.0"
        assert registry.calls == {}

    async def test_unknown_crate(self, config):
        async with Fetcher(config) as fetcher:
            with pytest.raises(FetchFailed) as exc_info:
                await fetcher.resolve_target("missing")
        assert exc_info.value.status == 404
        assert not exc_info.value.retryable

    async def test_metadata(self, config, target, crate_bytes):
        async with Fetcher(config) as fetcher:
            metadata = await fetcher.fetch_metadata(target)
        assert metadata.repository == "https://github.com/acme/widget"
        assert metadata.checksum == digest(crate_bytes)
        assert metadata.trusted_publishing.repository == "https://github.com/acme/widget"
        assert metadata.trusted_publishing.run_id == "4242"
        assert metadata.trusted_publishing.commit == COMMIT

    async def test_artifact_digest_computed_locally(self, config, target, crate_bytes):
        async with Fetcher(config) as fetcher:
            artifact = await fetcher.fetch_artifact(target)
        assert artifact.content == crate_bytes
        assert artifact.digest == digest(crate_bytes)
        assert artifact.size == len(crate_bytes)


    async def test_popular_crates_paginated(self, config, registry, base_url):
        registry.popular = [
            {"name": f"crate{i}", "max_stable_version": f"1.0.{i}", "max_version": f"2.0.0-rc.{i}"}
            for i in range(150)
        ]
        async with Fetcher(config) as fetcher:
            targets = await fetcher.fetch_popular_crates(120)
        assert len(targets) == 120
        assert targets[0] == Target(name="crate0", version="1.0.0", registry=base_url)
        assert targets[-1].name == "crate119"
        assert registry.calls["/api/v1/crates"] == 2

    async def test_popular_crates_skip_unusable_entries(self, config, registry):
        registry.popular = [
            {"name": "prerelease-only", "max_stable_version": None, "max_version": "0.1.0-alpha"},
            {"name": "yanked", "max_stable_version": None, "max_version": None},
            {"name": "bad name!", "max_stable_version": "1.0.0"},
            {"name": "widget", "max_stable_version": "1.2.3"},
        ]
        async with Fetcher(config) as fetcher:
            targets = await fetcher.fetch_popular_crates(10)
        assert [(t.name, t.version) for t in targets] == [("prerelease-only", "0.1.0-alpha"), ("widget", "1.2.3")]

    async def test_popular_crates_listing_unavailable(self, config, registry):
        registry.failures["/api/v1/crates"] = 5
        async with Fetcher(config) as fetcher:
            with pytest.raises(FetchFailed):
                await fetcher.fetch_popular_crates(10)


class TestRetries:
    """Tests for retry behavior."""

    async def test_transient_failures_retried(self, config, target, registry):
        path = "/api/v1/crates/widget/1.2.3/download"
        registry.failures[path] = 2
        async with Fetcher(config) as fetcher:
            artifact = await fetcher.fetch_artifact(target)
        assert artifact.size > 0
        assert registry.calls[path] == 3

    async def test_gives_up_after_configured_attempts(self, config, target, registry):
        path = "/api/v1/crates/widget/1.2.3/download"
        registry.failures[path] = 5
        async with Fetcher(config) as fetcher:
            with pytest.raises(FetchFailed) as exc_info:
                await fetcher.fetch_artifact(target)
        assert exc_info.value.status == 503
        assert exc_info.value.retryable
        assert registry.calls[path] == 3

    async def test_connection_errors_are_retryable(self, target):
        config = AuditConfig(
            registry_url="http://127.0.0.1:9",
            retry_attempts=2,
            retry_base_delay=0,
            request_timeout=2,
        )
        async with Fetcher(config) as fetcher:
            with pytest.raises(FetchFailed) as exc_info:
                await fetcher.fetch_artifact(target)
        assert exc_info.value.retryable


class TestAttestations:
    """Tests for attestation retrieval."""

    async def test_not_published(self, config, target):
        async with Fetcher(config) as fetcher:
            bundle = await fetcher.fetch_attestations(target)
        assert not bundle.found
        assert len(bundle) == 0

    async def test_records_parsed_and_malformed_kept(self, config, target, registry, crate_bytes, attestation_record):
        registry.records = [attestation_record(crate_bytes), b"{broken", attestation_record(crate_bytes)]
        async with Fetcher(config) as fetcher:
            bundle = await fetcher.fetch_attestations(target)
        assert bundle.found
        assert [attestation.index for attestation in bundle] == [0, 2]
        assert len(bundle.rejected) == 1
        assert bundle.rejected[0].details["index"] == 1

    async def test_issuer_keys(self, config, registry, base_url, key_document, signing_key):
        registry.keys = key_document
        issuer = TrustedIssuer(issuer="test", identity_pattern=".*", keys_url=base_url + "/keys.json")
        async with Fetcher(config) as fetcher:
            key_set = await fetcher.fetch_issuer_keys(issuer)
        assert key_set.get(signing_key.kid) is not None

    async def test_malformed_issuer_keys(self, config, registry, base_url):
        registry.keys = b"not json"
        issuer = TrustedIssuer(issuer="test", identity_pattern=".*", keys_url=base_url + "/keys.json")
        async with Fetcher(config) as fetcher:
            with pytest.raises(FetchFailed):
                await fetcher.fetch_issuer_keys(issuer)


def source_tarball(members):
    """Build a source tarball from a dict or from ``(name, value)`` pairs."""
    items = members.items() if isinstance(members, dict) else members
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name, value in items:
            info = tarfile.TarInfo(name)
            if isinstance(value, tuple):
                info.type = tarfile.SYMTYPE
                info.linkname = value[1]
                archive.addfile(info)
            else:
                info.size = len(value)
                info.mode = 0o755 if name.endswith(".sh") else 0o644
                archive.addfile(info, io.BytesIO(value))
    return buffer.getvalue()


class TestSourceArchives:
    """Tests for source archive handling."""

    def test_archive_url(self):
        assert _archive_url("git+https://github.com/acme/widget.git", COMMIT) == (
            f"https://github.com/acme/widget/archive/{COMMIT}.tar.gz"
        )

    @pytest.mark.parametrize(
        "repository,commit",
        [("http://github.com/acme/widget", COMMIT), ("https://github.com/acme/widget", "main")],
    )
    def test_archive_url_rejects(self, repository, commit):
        with pytest.raises(FetchFailed):
            _archive_url(repository, commit)

    def test_extract_strips_top_level(self, tmp_path):
        data = source_tarball(
            {
                "widget-0123/Cargo.toml": b"[package]",
                "widget-0123/src/lib.rs": b"",
                "widget-0123/build.sh": b"#!/bin/sh",
                "widget-0123/link": ("symlink", "src/lib.rs"),
            }
        )
        extract_source_archive(data, tmp_path)
        assert (tmp_path / "Cargo.toml").read_bytes() == b"[package]"
        assert (tmp_path / "src" / "lib.rs").exists()
        assert (tmp_path / "build.sh").stat().st_mode & 0o111
        assert (tmp_path / "link").is_symlink()

    @pytest.mark.parametrize(
        "members",
        [
            {"widget-0123/../../escape": b"x"},
            {"/abs/path": b"x"},
            {"widget-0123/link": ("symlink", "../../etc/passwd")},
            {"widget-0123/link": ("symlink", "/etc/passwd")},
            [
                ("widget-0123/x/l1", ("symlink", "..")),
                ("widget-0123/x/l1/l2", ("symlink", "..")),
                ("widget-0123/x/l1/l2/pwned", b"x"),
            ],
            [("widget-0123/a", ("symlink", "b")), ("widget-0123/a", ("symlink", "b"))],
            [("widget-0123/s", ("symlink", ".")), ("widget-0123/t", ("symlink", "s/.."))],
            [("widget-0123/dir/inner", b"x"), ("widget-0123/dir", b"y")],
            [("widget-0123/file", b"x"), ("widget-0123/file/inner", b"y")],
            [("widget-0123/link", ("symlink", "target")), ("widget-0123/link", b"x")],
        ],
    )
    def test_extract_rejects_unsafe_members(self, tmp_path, members):
        destination = tmp_path / "source"
        destination.mkdir()
        with pytest.raises(FetchFailed):
            extract_source_archive(source_tarball(members), destination)
        assert sorted(path.name for path in tmp_path.iterdir()) == ["source"]

    def test_extract_rejects_garbage(self, tmp_path):
        with pytest.raises(FetchFailed):
            extract_source_archive(b"garbage", tmp_path)

    def test_extract_filesystem_errors_become_fetch_failed(self, tmp_path):
        occupied = tmp_path / "source"
        occupied.write_bytes(b"not a directory")
        with pytest.raises(FetchFailed, match="Cannot extract"):
            extract_source_archive(source_tarball({"widget-0123/src/lib.rs": b"x"}), occupied)
