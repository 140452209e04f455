"""Directory-backed environments for local development.

Each environment is a directory under ``LOCAL_SANDBOX_ROOT``; absolute paths
inside the environment (``/home/user/workspace/a.txt``) map to the same path
below that directory. Commands run as local subprocesses in their own process
group so ``kill`` can stop everything an environment started.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
import shutil
import signal
import socket
from typing import Optional, Union
from uuid import uuid4

from .provisioner import (
    CommandResult,
    EnvironmentHandle,
    EnvironmentProvisioner,
    ProvisionerError,
)

logger = logging.getLogger(__name__)


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class LocalEnvironment(EnvironmentHandle):
    def __init__(self, sandbox_id: str, root: Path, port: int, envs: dict[str, str]):
        super().__init__(sandbox_id, f"http://127.0.0.1:{port}", port)
        self.root = root
        self.envs = dict(envs)
        self.processes: list[asyncio.subprocess.Process] = []

    def resolve(self, path: str) -> Path:
        """Map an in-environment absolute path onto the environment directory."""
        target = (self.root / path.lstrip("/")).resolve()
        if target != self.root and self.root not in target.parents:
            raise ProvisionerError(f"Path escapes environment root: {path}")
        return target

    def _process_env(self, envs: Optional[dict[str, str]]) -> dict[str, str]:
        merged = dict(os.environ)
        merged.update(self.envs)
        merged.update(envs or {})
        home = (envs or {}).get("HOME") or self.envs.get("HOME")
        if home:
            merged["HOME"] = str(self.resolve(home))
        merged["SANDBOX_ROOT"] = str(self.root)
        return merged

    async def run_background(self, command: str, envs: Optional[dict[str, str]] = None) -> None:
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(self.root),
            env=self._process_env(envs),
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            start_new_session=True,
        )
        self.processes.append(process)
        logger.debug(f"[{self.id}] background pid {process.pid}: {command}")

    async def run(
        self,
        command: str,
        timeout_s: float = 30.0,
        envs: Optional[dict[str, str]] = None,
    ) -> CommandResult:
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(self.root),
            env=self._process_env(envs),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_s)
        except asyncio.TimeoutError:
            await _terminate(process)
            return CommandResult(exit_code=124, stderr=f"timed out after {timeout_s}s")
        return CommandResult(
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    async def read_file(self, path: str) -> bytes:
        return await asyncio.to_thread(self.resolve(path).read_bytes)

    async def write_file(self, path: str, data: Union[str, bytes]) -> None:
        target = self.resolve(path)
        payload = data.encode("utf-8") if isinstance(data, str) else data
        target.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(target.write_bytes, payload)

    async def make_dir(self, path: str) -> None:
        self.resolve(path).mkdir(parents=True, exist_ok=True)


TERMINATE_GRACE_S = 5.0


def _signal_group(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
    try:
        os.killpg(process.pid, sig)
    except (ProcessLookupError, PermissionError):
        pass


async def _terminate(process: asyncio.subprocess.Process, grace_s: float = TERMINATE_GRACE_S) -> None:
    """Stop the process group and reap the child; SIGKILL if it outlives the grace period."""
    if process.returncode is not None:
        return
    _signal_group(process, signal.SIGTERM)
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_s)
    except asyncio.TimeoutError:
        logger.warning(f"pid {process.pid} ignored SIGTERM, sending SIGKILL")
        _signal_group(process, signal.SIGKILL)
        await process.wait()


class LocalProvisioner(EnvironmentProvisioner):
    name = "local"

    def __init__(self, root: Union[str, Path], agent_port: Optional[int] = None):
        self.root = Path(root).expanduser().resolve()
        # None allocates a free port per environment so several can run side by side
        self.agent_port = agent_port
        self._environments: dict[str, LocalEnvironment] = {}

    async def create(
        self,
        template_id: str,
        envs: Optional[dict[str, str]] = None,
        timeout_s: Optional[int] = None,
    ) -> EnvironmentHandle:
        sandbox_id = f"local-{uuid4().hex[:12]}"
        env_root = self.root / sandbox_id
        try:
            env_root.mkdir(parents=True, exist_ok=False)
        except OSError as e:
            raise ProvisionerError(f"Cannot create local environment at {env_root}: {e}") from e
        port = self.agent_port or _free_port()
        merged_envs = {**(envs or {}), "AGENT_SERVER_PORT": str(port)}
        environment = LocalEnvironment(sandbox_id, env_root.resolve(), port, merged_envs)
        self._environments[sandbox_id] = environment
        logger.info(f"Created local environment {sandbox_id} ({template_id}) at {env_root}")
        return environment

    async def connect(self, sandbox_id: str) -> EnvironmentHandle:
        environment = self._environments.get(sandbox_id)
        if environment is None:
            raise ProvisionerError(f"Unknown local environment: {sandbox_id}")
        return environment

    async def set_timeout(self, sandbox_id: str, timeout_s: int) -> None:
        # Local environments live until killed
        if sandbox_id not in self._environments:
            raise ProvisionerError(f"Unknown local environment: {sandbox_id}")

    async def kill(self, sandbox_id: str) -> bool:
        environment = self._environments.pop(sandbox_id, None)
        if environment is None:
            logger.debug(f"Local environment {sandbox_id} already gone")
            return False
        await asyncio.gather(*(_terminate(process) for process in environment.processes))
        shutil.rmtree(environment.root, ignore_errors=True)
        logger.info(f"Killed local environment {sandbox_id}")
        return True


__all__ = ["LocalEnvironment", "LocalProvisioner"]
