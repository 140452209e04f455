"""E2B-backed environment provisioner."""

from __future__ import annotations

import logging
from typing import Optional, Union

from e2b import AsyncSandbox, CommandExitException

from .provisioner import (
    CommandResult,
    EnvironmentHandle,
    EnvironmentProvisioner,
    ProvisionerError,
)

logger = logging.getLogger(__name__)


class E2BEnvironment(EnvironmentHandle):
    """``EnvironmentHandle`` over an ``e2b.AsyncSandbox``."""

    def __init__(self, sandbox: AsyncSandbox, port: int):
        endpoint = f"https://{sandbox.get_host(port)}"
        super().__init__(sandbox.sandbox_id, endpoint, port)
        self._sandbox = sandbox

    async def run_background(self, command: str, envs: Optional[dict[str, str]] = None) -> None:
        # timeout=0 keeps the background process alive past the default connection limit
        await self._sandbox.commands.run(command, background=True, envs=envs, timeout=0)

    async def run(
        self,
        command: str,
        timeout_s: float = 30.0,
        envs: Optional[dict[str, str]] = None,
    ) -> CommandResult:
        try:
            result = await self._sandbox.commands.run(command, envs=envs, timeout=timeout_s)
        except CommandExitException as e:
            return CommandResult(exit_code=e.exit_code, stdout=e.stdout, stderr=e.stderr)
        return CommandResult(exit_code=result.exit_code, stdout=result.stdout, stderr=result.stderr)

    async def read_file(self, path: str) -> bytes:
        data = await self._sandbox.files.read(path, format="bytes")
        return bytes(data)

    async def write_file(self, path: str, data: Union[str, bytes]) -> None:
        await self._sandbox.files.write(path, data)

    async def make_dir(self, path: str) -> None:
        await self._sandbox.files.make_dir(path)


class E2BProvisioner(EnvironmentProvisioner):
    name = "e2b"

    def __init__(self, agent_port: int = 4096):
        self.agent_port = agent_port

    async def create(
        self,
        template_id: str,
        envs: Optional[dict[str, str]] = None,
        timeout_s: Optional[int] = None,
    ) -> EnvironmentHandle:
        logger.info(f"Creating E2B sandbox from template {template_id}")
        try:
            sandbox = await AsyncSandbox.create(
                template=template_id,
                envs=envs or {},
                timeout=timeout_s or 600,
                metadata={"sessionId": (envs or {}).get("SESSION_ID", "")},
            )
        except Exception as e:
            raise ProvisionerError(f"E2B create failed for template {template_id}: {e}") from e
        logger.info(f"Created E2B sandbox {sandbox.sandbox_id}")
        return E2BEnvironment(sandbox, self.agent_port)

    async def connect(self, sandbox_id: str) -> EnvironmentHandle:
        try:
            sandbox = await AsyncSandbox.connect(sandbox_id)
        except Exception as e:
            raise ProvisionerError(f"E2B connect failed for {sandbox_id}: {e}") from e
        return E2BEnvironment(sandbox, self.agent_port)

    async def set_timeout(self, sandbox_id: str, timeout_s: int) -> None:
        try:
            await AsyncSandbox.set_timeout(sandbox_id, timeout_s)
        except Exception as e:
            raise ProvisionerError(f"E2B set_timeout failed for {sandbox_id}: {e}") from e
        logger.debug(f"E2B sandbox {sandbox_id} now expires in {timeout_s}s")

    async def kill(self, sandbox_id: str) -> bool:
        try:
            killed = await AsyncSandbox.kill(sandbox_id)
        except Exception as e:
            logger.warning(f"E2B kill of {sandbox_id} failed: {e}")
            return False
        if killed:
            logger.info(f"Killed E2B sandbox {sandbox_id}")
        else:
            logger.debug(f"E2B sandbox {sandbox_id} already gone")
        return bool(killed)


__all__ = ["E2BEnvironment", "E2BProvisioner"]
