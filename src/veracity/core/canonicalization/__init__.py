# SPDX-License-Identifier: MPL-2.0
"""Canonicalization of crate archives prior to comparison.

Two packagings of the same source tree differ in ways that carry no meaning:
gzip headers, member timestamps and ownership, member ordering, permission
bits beyond "executable or not", and absolute paths of the machine that ran
the build. :func:`canonicalize` removes those so that :func:`compare` only
reports differences in content.

The policy applied here:

* the gzip layer is dropped (its header carries an mtime and a file name);
* member mtime, uid/gid and user/group names are dropped;
* members are sorted by path;
* regular file modes become ``0o755`` when any execute bit is set and
  ``0o644`` otherwise, symlinks become ``0o777``;
* directory members are ignored, only files and symlinks are kept;
* occurrences of the supplied absolute build-path prefixes inside file
  contents and link targets are rewritten to :data:`BUILD_PATH_PLACEHOLDER`;
* ``.cargo_vcs_info.json`` at the crate root is left out, cargo only writes it
  when packaging from a git checkout and it describes the checkout rather
  than the package.

Archives holding devices, fifos, hard links, duplicate members, absolute
paths or ``..`` components are rejected with :class:`MalformedArtifact`.
"""

from __future__ import annotations

import io
import re
import tarfile
import zlib
from dataclasses import dataclass, field
from typing import ClassVar, Iterable, Optional, Union

from veracity.core.digests import Digest, digest
from veracity.core.exceptions import MalformedArtifact

BUILD_PATH_PLACEHOLDER = b"/__build__"
EXCLUDED_ROOT_MEMBERS = frozenset({".cargo_vcs_info.json"})

FILE = "file"
SYMLINK = "symlink"


@dataclass(frozen=True)
class CanonicalEntry:
    """A single normalized archive member."""

    path: str
    kind: str
    mode: int
    content: bytes = field(repr=False)

    @property
    def digest(self) -> Digest:
        return digest(self.content)


@dataclass(frozen=True)
class CanonicalForm:
    """Normalized, ordered view of an archive."""

    entries: tuple[CanonicalEntry, ...]

    @property
    def paths(self) -> tuple[str, ...]:
        return tuple(entry.path for entry in self.entries)

    def get(self, path: str) -> Optional[CanonicalEntry]:
        for entry in self.entries:
            if entry.path == path:
                return entry
        return None

    def to_bytes(self) -> bytes:
        """Serialize to a deterministic, uncompressed tar archive."""
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as archive:
            for entry in self.entries:
                info = tarfile.TarInfo(entry.path)
                info.mtime = 0
                info.uid = info.gid = 0
                info.uname = info.gname = ""
                info.mode = entry.mode
                if entry.kind == SYMLINK:
                    info.type = tarfile.SYMTYPE
                    info.linkname = entry.content.decode("utf-8", "surrogateescape")
                    archive.addfile(info)
                else:
                    info.size = len(entry.content)
                    archive.addfile(info, io.BytesIO(entry.content))
        return buffer.getvalue()

    @property
    def digest(self) -> Digest:
        return digest(self.to_bytes())


@dataclass(frozen=True)
class Equal:
    """Both canonical forms hold the same members with the same content."""

    equal: ClassVar[bool] = True

    def __str__(self) -> str:
        return "equal"


@dataclass(frozen=True)
class DifferAt:
    """First location at which two canonical forms differ.

    ``reason`` is one of ``missing`` (only in the first form), ``unexpected``
    (only in the second form), ``type``, ``mode``, ``content`` or
    ``link_target``. ``offset`` is the first differing byte for ``content``.
    """

    location: str
    reason: str
    offset: Optional[int] = None

    equal: ClassVar[bool] = False

    def __str__(self) -> str:
        if self.offset is not None:
            return f"{self.location} ({self.reason} at byte {self.offset})"
        return f"{self.location} ({self.reason})"


Comparison = Union[Equal, DifferAt]


def _normalize_path(name: str) -> str:
    path = name.replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    path = path.rstrip("/")
    parts = path.split("/")
    if not path or path.startswith("/") or any(part in ("", ".", "..") for part in parts):
        raise MalformedArtifact(f"Illegal archive member path: {name!r}", {"member": name})
    return path


def _normalize_mode(kind: str, mode: int) -> int:
    if kind == SYMLINK:
        return 0o777
    return 0o755 if mode & 0o111 else 0o644


def _is_excluded(path: str) -> bool:
    _, sep, relative = path.partition("/")
    return bool(sep) and relative in EXCLUDED_ROOT_MEMBERS


def _overlaps_placeholder(prefix: bytes) -> bool:
    if BUILD_PATH_PLACEHOLDER in prefix or prefix in BUILD_PATH_PLACEHOLDER:
        return True
    # a prefix ending in the placeholder's head could match across a rewrite
    return any(
        prefix.endswith(BUILD_PATH_PLACEHOLDER[:size])
        for size in range(2, len(BUILD_PATH_PLACEHOLDER))
    )


def _checked_prefixes(path_prefixes: Iterable[Union[str, bytes]]) -> Optional[re.Pattern[bytes]]:
    prefixes = []
    for prefix in path_prefixes:
        raw = prefix.encode("utf-8") if isinstance(prefix, str) else bytes(prefix)
        raw = raw.rstrip(b"/")
        if not raw.startswith(b"/") or _overlaps_placeholder(raw):
            raise ValueError(f"Build path prefix must be an absolute directory: {prefix!r}")
        prefixes.append(raw)
    if not prefixes:
        return None
    # longest first so nested prefixes are rewritten as a whole
    ordered = sorted(set(prefixes), key=len, reverse=True)
    return re.compile(b"|".join(re.escape(prefix) for prefix in ordered))


def _rewrite(content: bytes, prefixes: Optional[re.Pattern[bytes]]) -> bytes:
    if prefixes is None:
        return content
    return prefixes.sub(BUILD_PATH_PLACEHOLDER, content)


def _read_members(data: bytes) -> list[CanonicalEntry]:
    entries = []
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as archive:
            for member in archive:
                if member.isdir():
                    continue
                path = _normalize_path(member.name)
                if member.issym():
                    entries.append(
                        CanonicalEntry(
                            path, SYMLINK, 0o777, member.linkname.encode("utf-8", "surrogateescape")
                        )
                    )
                elif member.isfile():
                    extracted = archive.extractfile(member)
                    content = extracted.read() if extracted is not None else b""
                    entries.append(CanonicalEntry(path, FILE, member.mode, content))
                else:
                    raise MalformedArtifact(
                        f"Unsupported archive member type for {member.name!r}",
                        {"member": member.name},
                    )
    except (tarfile.TarError, EOFError, zlib.error, OSError) as exc:
        raise MalformedArtifact(f"Artifact is not a readable tar archive: {exc}") from exc
    return entries


def canonicalize(
    archive: Union[bytes, CanonicalForm],
    path_prefixes: Iterable[Union[str, bytes]] = (),
) -> CanonicalForm:
    """Return the canonical form of a crate archive.

    Args:
        archive: Raw ``.crate`` bytes (gzip-compressed or plain tar) or an
            already canonical form.
        path_prefixes: Absolute build directories to neutralize inside file
            contents and link targets.

    Raises:
        MalformedArtifact: If ``archive`` cannot be parsed as a tar archive.
    """
    prefixes = _checked_prefixes(path_prefixes)
    if isinstance(archive, CanonicalForm):
        members = list(archive.entries)
    elif isinstance(archive, (bytes, bytearray, memoryview)):
        members = _read_members(bytes(archive))
    else:
        raise MalformedArtifact(f"Cannot canonicalize object of type {type(archive)!r}")

    entries: dict[str, CanonicalEntry] = {}
    for member in members:
        if _is_excluded(member.path):
            continue
        if member.path in entries:
            raise MalformedArtifact(
                f"Duplicate archive member: {member.path!r}", {"member": member.path}
            )
        entries[member.path] = CanonicalEntry(
            path=member.path,
            kind=member.kind,
            mode=_normalize_mode(member.kind, member.mode),
            content=_rewrite(member.content, prefixes),
        )
    return CanonicalForm(entries=tuple(entries[path] for path in sorted(entries)))


def _first_difference(left: bytes, right: bytes) -> int:
    for offset, (a, b) in enumerate(zip(left, right)):
        if a != b:
            return offset
    return min(len(left), len(right))


def compare(a: CanonicalForm, b: CanonicalForm) -> Comparison:
    """Compare two canonical forms, reporting the first difference in path order."""
    left = {entry.path: entry for entry in a.entries}
    right = {entry.path: entry for entry in b.entries}
    for path in sorted(left.keys() | right.keys()):
        first, second = left.get(path), right.get(path)
        if second is None:
            return DifferAt(path, "missing")
        if first is None:
            return DifferAt(path, "unexpected")
        if first.kind != second.kind:
            return DifferAt(path, "type")
        if first.content != second.content:
            if first.kind == SYMLINK:
                return DifferAt(path, "link_target")
            return DifferAt(path, "content", _first_difference(first.content, second.content))
        if first.mode != second.mode:
            return DifferAt(path, "mode")
    return Equal()
