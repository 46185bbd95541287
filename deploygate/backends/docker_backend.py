"""
Docker Backend
==============
Runs each deployment attempt as one docker container driven through the
docker CLI.

Containers are named `deploygate-<attempt id>`, so a repeated create for
the same attempt (even from another controller process) resolves to the
existing container instead of creating a second one.

Requires: docker CLI on PATH with access to the daemon.
"""

import asyncio
import re
from dataclasses import dataclass
from typing import Dict

from deploygate import constants
from deploygate.backends.base import DeploymentBackend
from deploygate.errors import BackendCreateFailed, BackendStartFailed, BackendStopFailed
from deploygate.logging_config import get_logger
from deploygate.models import BackendStatus, ChangeDescriptor

logger = get_logger(__name__)

_NAME_UNSAFE = re.compile(r"[^a-zA-Z0-9_.-]")

# docker inspect .State.Status -> BackendStatus
_STATE_MAP = {
    "created": BackendStatus.STARTING,
    "restarting": BackendStatus.STARTING,
    "running": BackendStatus.RUNNING,
    "paused": BackendStatus.RUNNING,
    "removing": BackendStatus.STOPPED,
    "dead": BackendStatus.ERRORED,
}


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class DockerBackend(DeploymentBackend):
    """Docker container operations"""

    name = "docker"

    def __init__(self, docker_binary: str = None, stop_timeout: int = None,
                 name_prefix: str = "deploygate", command_timeout: float = None):
        self.docker_binary = docker_binary or constants.DOCKER_BINARY
        self.stop_timeout = stop_timeout if stop_timeout is not None else constants.DOCKER_STOP_TIMEOUT_SECONDS
        self.command_timeout = (
            command_timeout if command_timeout is not None else constants.DOCKER_COMMAND_TIMEOUT_SECONDS
        )
        self.name_prefix = name_prefix
        self._handles: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def container_name(self, attempt_id: str) -> str:
        return f"{self.name_prefix}-{_NAME_UNSAFE.sub('-', attempt_id)}"

    async def _run_docker(self, *args: str, timeout: float = None) -> CommandResult:
        cmd = [self.docker_binary, *args]
        timeout = timeout if timeout is not None else self.command_timeout
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return CommandResult(127, "", f"cannot execute {self.docker_binary}: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            await self._kill(proc)
            logger.error(f"[DOCKER] docker {args[0]} killed after {timeout:g}s")
            return CommandResult(124, "", f"docker {args[0]} timed out after {timeout:g}s")
        except asyncio.CancelledError:
            await self._kill(proc)
            raise

        return CommandResult(
            proc.returncode,
            stdout.decode(errors="replace").strip(),
            stderr.decode(errors="replace").strip(),
        )

    @staticmethod
    async def _kill(proc):
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()

    def _forget(self, handle: str):
        for attempt_id, known in list(self._handles.items()):
            if known == handle:
                del self._handles[attempt_id]
                self._locks.pop(attempt_id, None)

    @staticmethod
    def _no_such_container(result: CommandResult) -> bool:
        return "no such container" in result.stderr.lower()

    async def create(self, attempt_id: str, change: ChangeDescriptor) -> str:
        lock = self._locks.setdefault(attempt_id, asyncio.Lock())
        async with lock:
            if attempt_id in self._handles:
                return self._handles[attempt_id]

            name = self.container_name(attempt_id)
            logger.info(f"[DOCKER] Create container {name} from {change.content_ref}")

            result = await self._run_docker(
                "create",
                "--name", name,
                "--label", f"deploygate.attempt={attempt_id}",
                "--label", f"deploygate.revision={change.revision}",
                "--label", f"deploygate.environment={change.environment}",
                "-e", f"DEPLOYGATE_REVISION={change.revision}",
                "-e", f"DEPLOYGATE_ENVIRONMENT={change.environment}",
                change.content_ref,
                *change.command,
            )

            if result.ok and result.stdout:
                handle = result.stdout.splitlines()[-1].strip()
            elif "is already in use" in result.stderr:
                existing = await self._run_docker("inspect", "--format", "{{.Id}}", name)
                if not existing.ok or not existing.stdout:
                    raise BackendCreateFailed(
                        f"container {name} exists but cannot be inspected", detail=existing.stderr
                    )
                handle = existing.stdout.strip()
                logger.info(f"[DOCKER] Reusing existing container {name}")
            else:
                raise BackendCreateFailed(f"docker create failed for {name}", detail=result.stderr)

            self._handles[attempt_id] = handle
            return handle

    async def start(self, handle: str) -> None:
        logger.info(f"[DOCKER] Start container {handle[:12]}")
        result = await self._run_docker("start", handle)
        if not result.ok:
            raise BackendStartFailed(f"docker start failed for {handle[:12]}", detail=result.stderr)

    async def stop(self, handle: str) -> None:
        logger.info(f"[DOCKER] Stop container {handle[:12]}")
        # docker stop waits up to stop_timeout before it kills the container itself
        result = await self._run_docker(
            "stop", "-t", str(self.stop_timeout), handle,
            timeout=max(self.command_timeout, self.stop_timeout + 5),
        )
        if result.ok:
            self._forget(handle)
            return
        if self._no_such_container(result):
            logger.warning(f"[DOCKER] Container {handle[:12]} no longer exists, nothing to stop")
            self._forget(handle)
            return
        raise BackendStopFailed(f"docker stop failed for {handle[:12]}", detail=result.stderr)

    async def status(self, handle: str) -> BackendStatus:
        result = await self._run_docker(
            "inspect", "--format", "{{.State.Status}} {{.State.ExitCode}}", handle
        )
        if not result.ok:
            return BackendStatus.UNKNOWN

        parts = result.stdout.split()
        if not parts:
            return BackendStatus.UNKNOWN
        state = parts[0]
        if state == "exited":
            exit_code = parts[1] if len(parts) > 1 else "0"
            return BackendStatus.STOPPED if exit_code == "0" else BackendStatus.ERRORED
        return _STATE_MAP.get(state, BackendStatus.UNKNOWN)
