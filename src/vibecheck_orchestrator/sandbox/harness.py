"""Sandboxed execution harness: run one artifact, collect the errors it reports."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import os
import re
import resource
import shutil
import signal
import sys
import tempfile
from pathlib import Path
from typing import BinaryIO, Callable, Literal, Protocol
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, ValidationError

from vibecheck_orchestrator.errors import SandboxSetupError
from vibecheck_orchestrator.sandbox.scaffolds import Scaffold, scaffold_for

logger = logging.getLogger(__name__)

_READ_LIMIT = 1024 * 1024
_FILE_SIZE_LIMIT = 16 * 1024 * 1024
# V8 reserves far more address space than it touches; only Python runs get RLIMIT_AS.
_PYTHON_ADDRESS_SPACE = 1024 * 1024 * 1024
_NODE_VERSION = re.compile(r"v?(\d+)\.(\d+)\.(\d+)")


class ExecutableMode(Protocol):
    id: str
    syntax: str
    is_renderable: bool
    image_output: bool


class SandboxRunner(Protocol):
    async def run(self, artifact: str, config_id: str) -> list[str]: ...


class ConsoleMessage(BaseModel):
    """One event posted by the instrumented runner."""

    model_config = ConfigDict(extra="ignore")

    source: Literal["renderer-console"]
    channel: str
    level: str
    message: str


def parse_console_message(line: bytes | str, run_id: str) -> ConsoleMessage | None:
    """Decode one channel line; anything malformed or from another run is dropped."""
    try:
        message = ConsoleMessage.model_validate_json(line)
    except ValidationError:
        return None
    if message.channel != run_id:
        return None
    return message


class SandboxHarness:
    """Run candidate artifacts in a fresh subprocess with a hard time bound.

    Each run gets its own working directory, its own channel pipe, and its own
    correlation id. Runtime errors are data for the caller; only setup failures
    are reported as a single synthetic error string.

    Containment is layered: the Python runner installs an audit hook that
    refuses sockets, process creation and writes outside the working
    directory; Node runs under its permission model with read access to its
    runner script only; both get CPU, file size and core rlimits.
    """

    def __init__(
        self,
        lookup: Callable[[str], ExecutableMode | None],
        *,
        timeout_s: float = 3.0,
        node_binary: str = "node",
    ) -> None:
        self._lookup = lookup
        self.timeout_s = timeout_s
        self.node_binary = node_binary
        self._node_permission_flag: str | None = None

    async def run(self, artifact: str, config_id: str) -> list[str]:
        mode = self._lookup(config_id)
        if mode is None or not mode.is_renderable or mode.image_output:
            return []
        scaffold = scaffold_for(mode.id, mode.syntax)
        if scaffold is None:
            return []

        run_id = uuid4().hex
        with tempfile.TemporaryDirectory(prefix="vibecheck-sandbox-") as workdir:
            workdir = os.path.realpath(workdir)
            script = Path(workdir) / scaffold.filename
            try:
                argv = await self._command_for(scaffold, script)
                source = scaffold.render(artifact)
            except SandboxSetupError as exc:
                logger.warning("sandbox_run event=setup_failed config_id=%s reason=%s", config_id, exc)
                return [f"Failed to create execution environment: {exc}"]
            script.write_text(source, encoding="utf-8")
            errors = await self._execute(
                [*argv, str(script)],
                workdir=workdir,
                run_id=run_id,
                address_space=_PYTHON_ADDRESS_SPACE if scaffold.runtime == "python" else None,
            )
        logger.info(
            "sandbox_run event=done config_id=%s run_id=%s errors=%d",
            config_id,
            run_id,
            len(errors),
        )
        return errors

    async def _command_for(self, scaffold: Scaffold, script: Path) -> list[str]:
        if scaffold.runtime == "python":
            return [sys.executable, "-I", "-B", "-X", "utf8"]
        binary = shutil.which(self.node_binary)
        if binary is None:
            raise SandboxSetupError(f"Node.js runtime {self.node_binary!r} not found")
        if self._node_permission_flag is None:
            self._node_permission_flag = permission_flag(await _node_version(binary))
        # Read access to the runner only; the channel is an inherited fd.
        return [binary, self._node_permission_flag, f"--allow-fs-read={script}"]

    async def _execute(
        self,
        argv: list[str],
        *,
        workdir: str,
        run_id: str,
        address_space: int | None = None,
    ) -> list[str]:
        read_fd, write_fd = os.pipe()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=workdir,
                env=_sandbox_env(write_fd, run_id),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                pass_fds=(write_fd,),
                start_new_session=True,
                preexec_fn=_resource_limits(self.timeout_s, address_space),
            )
        except OSError as exc:
            os.close(read_fd)
            logger.warning("sandbox_run event=spawn_failed run_id=%s reason=%s", run_id, exc)
            return [f"Failed to create execution environment: {exc}"]
        finally:
            # The child holds its own copy; EOF on read_fd now means the child is gone.
            os.close(write_fd)

        errors: list[str] = []
        channel = os.fdopen(read_fd, "rb", buffering=0)
        collector = asyncio.create_task(self._collect(channel, run_id, errors))
        try:
            await asyncio.wait({collector}, timeout=self.timeout_s)
            if not collector.done():
                logger.info("sandbox_run event=timeout run_id=%s timeout_s=%.1f", run_id, self.timeout_s)
        finally:
            await _terminate(process)
            if not collector.done():
                collector.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                try:
                    await collector
                except Exception as exc:  # noqa: BLE001
                    logger.warning("sandbox_run event=channel_failed run_id=%s reason=%s", run_id, exc)
            channel.close()
        return errors

    async def _collect(self, pipe: BinaryIO, run_id: str, errors: list[str]) -> None:
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader(limit=_READ_LIMIT)
        try:
            transport, _ = await loop.connect_read_pipe(
                lambda: asyncio.StreamReaderProtocol(reader), pipe
            )
        except BaseException:
            pipe.close()
            raise
        try:
            while True:
                try:
                    line = await reader.readline()
                except ValueError:
                    # Oversized line; skip what was buffered and keep listening.
                    continue
                if not line:
                    return
                message = parse_console_message(line, run_id)
                if message is not None and message.level == "error":
                    errors.append(message.message)
        finally:
            transport.close()


async def _terminate(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(process.pid, signal.SIGKILL)
    await process.wait()


def permission_flag(version: tuple[int, int, int]) -> str:
    """Map a Node.js version to the flag that enables its permission model."""
    major, minor, _ = version
    if major >= 24 or (major == 23 and minor >= 5) or (major == 22 and minor >= 13):
        return "--permission"
    if major >= 20:
        return "--experimental-permission"
    raise SandboxSetupError(
        f"Node.js {major}.{minor} has no permission model; version 20 or newer is required"
    )


async def _node_version(binary: str) -> tuple[int, int, int]:
    try:
        process = await asyncio.create_subprocess_exec(
            binary,
            "--version",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=10.0)
    except (OSError, TimeoutError) as exc:
        raise SandboxSetupError(f"could not query Node.js version: {exc}") from exc
    match = _NODE_VERSION.search(stdout.decode("ascii", "replace"))
    if match is None:
        raise SandboxSetupError(f"unrecognised Node.js version {stdout!r}")
    major, minor, patch = (int(part) for part in match.groups())
    return major, minor, patch


def _resource_limits(timeout_s: float, address_space: int | None) -> Callable[[], None]:
    cpu_s = math.ceil(timeout_s) + 1

    def apply() -> None:
        _cap(resource.RLIMIT_CPU, cpu_s, cpu_s + 1)
        _cap(resource.RLIMIT_FSIZE, _FILE_SIZE_LIMIT, _FILE_SIZE_LIMIT)
        _cap(resource.RLIMIT_CORE, 0, 0)
        if address_space is not None:
            _cap(resource.RLIMIT_AS, address_space, address_space)

    return apply


def _cap(which: int, soft: int, hard: int) -> None:
    _, current_hard = resource.getrlimit(which)
    if current_hard != resource.RLIM_INFINITY:
        soft = min(soft, current_hard)
        hard = min(hard, current_hard)
    resource.setrlimit(which, (soft, hard))


def _sandbox_env(channel_fd: int, run_id: str) -> dict[str, str]:
    return {
        "PATH": os.environ.get("PATH", os.defpath),
        "LANG": "C.UTF-8",
        "VIBECHECK_CHANNEL_FD": str(channel_fd),
        "VIBECHECK_RUN_ID": run_id,
    }
