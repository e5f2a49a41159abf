# SPDX-License-Identifier: MPL-2.0
"""Isolated build environments.

A sandbox is a fresh temporary directory holding a copy of the source tree,
a private ``HOME``, ``CARGO_HOME`` and target directory. Commands run with a
minimal environment, resource limits and their own process group so that a
timed-out or cancelled build can be killed as a whole. The directory is
removed on every exit path.
"""

from __future__ import annotations

import asyncio
import logging
import os
import resource
import shutil
import signal
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Callable, Optional, Sequence

from veracity.core.config import AuditConfig
from veracity.core.exceptions import BuildTimedOut, SandboxSetupFailed
from veracity.core.models import SourceTree

logger = logging.getLogger(__name__)

UNSHARE_PREFIX = ("unshare", "--net", "--map-root-user")

# Variables passed through from the host environment
PASSTHROUGH_ENV = ("PATH", "RUSTUP_HOME", "LANG", "TZ")

_CHUNK = 64 * 1024


@dataclass(frozen=True)
class CommandResult:
    """Exit status and (tail of the) combined output of one command."""

    exit_status: int
    output: bytes
    output_size: int


def _limits(config: AuditConfig) -> Optional[Callable[[], None]]:
    limits = []
    if config.memory_limit_bytes is not None:
        limits.append((resource.RLIMIT_AS, config.memory_limit_bytes))
    if config.cpu_limit_seconds is not None:
        limits.append((resource.RLIMIT_CPU, config.cpu_limit_seconds))
    if config.open_files_limit is not None:
        limits.append((resource.RLIMIT_NOFILE, config.open_files_limit))
    if not limits:
        return None

    def apply() -> None:
        for which, value in limits:
            _, hard = resource.getrlimit(which)
            if hard != resource.RLIM_INFINITY:
                value = min(value, hard)
            resource.setrlimit(which, (value, value))

    return apply


def _kill_group(process: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


async def _drain(stream: asyncio.StreamReader, limit: int) -> tuple[bytes, int]:
    """Read a stream to EOF, keeping only its last ``limit`` bytes."""
    tail = bytearray()
    total = 0
    while True:
        chunk = await stream.read(_CHUNK)
        if not chunk:
            break
        total += len(chunk)
        tail += chunk
        if len(tail) > limit:
            del tail[: len(tail) - limit]
    return bytes(tail), total


class Sandbox:
    """A prepared build directory.

    Obtain one through :meth:`LocalSandboxFactory.open`; it is only valid
    inside that ``async with`` block.
    """

    def __init__(self, root: Path, config: AuditConfig) -> None:
        self.root = root
        self.config = config
        self.source_dir = root / "src"
        self.home = root / "home"
        self.cargo_home = self.home / ".cargo"
        self.target_dir = root / "target"

    def environment(self, extra: Sequence[tuple[str, str]] = ()) -> dict[str, str]:
        env = {name: os.environ[name] for name in PASSTHROUGH_ENV if name in os.environ}
        if "RUSTUP_HOME" not in env and "HOME" in os.environ:
            # Toolchains stay where rustup installed them on the host
            env["RUSTUP_HOME"] = os.path.join(os.environ["HOME"], ".rustup")
        env.update(
            HOME=str(self.home),
            CARGO_HOME=str(self.cargo_home),
            CARGO_TARGET_DIR=str(self.target_dir),
            SOURCE_DATE_EPOCH="0",
        )
        env.update(dict(extra))
        return env

    def path_prefixes(self) -> tuple[str, ...]:
        """Absolute paths that may leak into build outputs."""
        return (str(self.root), str(self.root.resolve()))

    def artifact_path(self, artifact_name: str) -> Path:
        return self.target_dir / "package" / artifact_name

    async def run(
        self,
        command: Sequence[str],
        timeout: float,
        cwd: Optional[Path] = None,
        environment: Sequence[tuple[str, str]] = (),
        network: bool = False,
    ) -> CommandResult:
        """Run a command inside the sandbox.

        Args:
            command: Program and arguments; never passed through a shell.
            timeout: Wall-clock limit in seconds.
            cwd: Working directory, defaults to the source copy.
            environment: Extra environment variables.
            network: Whether the command may reach the network.

        Raises:
            BuildTimedOut: If the command outlives ``timeout``. Its process
                group is killed first.
        """
        argv = tuple(command)
        if not network and self.config.network_isolation == "unshare":
            argv = UNSHARE_PREFIX + argv
        logger.info(f"Running {' '.join(argv)} (network={'on' if network else 'off'})")

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd or self.source_dir),
                env=self.environment(environment),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
                preexec_fn=_limits(self.config),
            )
        except OSError as exc:
            raise SandboxSetupFailed(f"Cannot start {argv[0]}: {exc}") from exc

        drain = asyncio.ensure_future(_drain(process.stdout, self.config.log_limit_bytes))
        try:
            exit_status = await asyncio.wait_for(process.wait(), timeout)
        except asyncio.TimeoutError:
            _kill_group(process)
            await process.wait()
            output, _ = await drain
            raise BuildTimedOut(
                f"{argv[0]} exceeded {timeout:.0f}s", timeout=timeout,
                logs=output.decode("utf-8", "replace"),
            ) from None
        except asyncio.CancelledError:
            _kill_group(process)
            drain.cancel()
            raise
        # Descendants may still hold the pipe open
        _kill_group(process)
        output, size = await drain
        return CommandResult(exit_status=exit_status, output=output, output_size=size)


class LocalSandboxFactory:
    """Creates sandboxes in temporary directories on the local host."""

    def __init__(self, config: AuditConfig, base_dir: Optional[Path] = None) -> None:
        self.config = config
        self.base_dir = base_dir

    def _check_tools(self) -> None:
        if shutil.which(self.config.cargo_binary) is None:
            raise SandboxSetupFailed(f"Build tool {self.config.cargo_binary!r} not found")
        if self.config.network_isolation == "unshare" and shutil.which(UNSHARE_PREFIX[0]) is None:
            raise SandboxSetupFailed("Network isolation requested but 'unshare' is not available")

    @asynccontextmanager
    async def open(self, source: SourceTree) -> AsyncIterator[Sandbox]:
        """Prepare a sandbox holding a copy of ``source``.

        Raises:
            SandboxSetupFailed: If the build tools are missing or the
                directory cannot be prepared.
        """
        self._check_tools()
        loop = asyncio.get_running_loop()
        try:
            root = Path(tempfile.mkdtemp(prefix="veracity-build-", dir=self.base_dir))
        except OSError as exc:
            raise SandboxSetupFailed(f"Cannot create sandbox directory: {exc}") from exc
        sandbox = Sandbox(root, self.config)
        try:
            try:
                copy = loop.run_in_executor(
                    None,
                    lambda: shutil.copytree(source.root, sandbox.source_dir, symlinks=True),
                )
                try:
                    await asyncio.shield(copy)
                except asyncio.CancelledError:
                    # The copying thread cannot be interrupted; it must finish before removal
                    await asyncio.wait([copy])
                    raise
                sandbox.cargo_home.mkdir(parents=True)
                sandbox.target_dir.mkdir()
            except (OSError, shutil.Error) as exc:
                raise SandboxSetupFailed(f"Cannot prepare sandbox in {root}: {exc}") from exc
            logger.debug(f"Sandbox ready at {root}")
            yield sandbox
        finally:
            _remove_tree(root)


def _remove_tree(root: Path) -> None:
    try:
        shutil.rmtree(root)
    except OSError as exc:
        logger.warning(f"Cannot remove sandbox {root}: {exc}")
        return
    logger.debug(f"Sandbox {root} removed")
