"""Ephemeral environment provisioning interface.

The orchestrator only needs a handful of capabilities from an environment:
start a background process, run a short command, read and write files. Each
backend adapts its vendor SDK to ``EnvironmentHandle`` and
``EnvironmentProvisioner``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
import logging
from typing import Optional, Union

from .config import AppConfig, get_config

logger = logging.getLogger(__name__)


class ProvisionerError(Exception):
    """Raised by a backend when an environment cannot be created or reached."""


@dataclass
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class EnvironmentHandle(ABC):
    """A live environment. ``endpoint`` is the agent server base URL."""

    def __init__(self, sandbox_id: str, endpoint: Optional[str], port: int):
        self.id = sandbox_id
        self.endpoint = endpoint
        self.port = port

    @abstractmethod
    async def run_background(self, command: str, envs: Optional[dict[str, str]] = None) -> None:
        """Start ``command`` and return without waiting for it."""

    @abstractmethod
    async def run(
        self,
        command: str,
        timeout_s: float = 30.0,
        envs: Optional[dict[str, str]] = None,
    ) -> CommandResult:
        """Run ``command`` to completion. Non-zero exits are returned, not raised."""

    @abstractmethod
    async def read_file(self, path: str) -> bytes: ...

    @abstractmethod
    async def write_file(self, path: str, data: Union[str, bytes]) -> None: ...

    @abstractmethod
    async def make_dir(self, path: str) -> None: ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id!r}, endpoint={self.endpoint!r})"


class EnvironmentProvisioner(ABC):
    """Creates, reconnects to and kills environments."""

    name = "abstract"

    @abstractmethod
    async def create(
        self,
        template_id: str,
        envs: Optional[dict[str, str]] = None,
        timeout_s: Optional[int] = None,
    ) -> EnvironmentHandle: ...

    @abstractmethod
    async def connect(self, sandbox_id: str) -> EnvironmentHandle: ...

    @abstractmethod
    async def set_timeout(self, sandbox_id: str, timeout_s: int) -> None:
        """Reset the remaining lifetime of a live environment to ``timeout_s`` from now."""

    @abstractmethod
    async def kill(self, sandbox_id: str) -> bool:
        """Kill the environment. Must not raise for dead or unknown ids."""


HandleOrId = Union[EnvironmentHandle, str]


async def safe_kill(provisioner: EnvironmentProvisioner, target: Optional[HandleOrId]) -> bool:
    """Kill ``target`` and log, never raise. Returns whether a live environment was killed."""
    if target is None:
        return False
    sandbox_id = target.id if isinstance(target, EnvironmentHandle) else target
    try:
        return await provisioner.kill(sandbox_id)
    except Exception as e:
        logger.warning(f"Kill of environment {sandbox_id} failed (ignored): {e}")
        return False


def environment_vars(
    config: AppConfig,
    session_id: Optional[str] = None,
    scope_id: Optional[str] = None,
    sandbox_token: Optional[str] = None,
) -> dict[str, str]:
    """Variables the agent process and forwarder read at startup.

    Pool environments are warmed before any session exists, so the
    session-scoped values are only present when given.
    """
    envs = {
        "HOME": config.agent_home,
        "AGENT_SERVER_PORT": str(config.agent_server_port),
        "CONTROL_PLANE_URL": config.public_base_url,
    }
    if config.llm_api_key:
        envs[f"{config.llm_provider.upper()}_API_KEY"] = config.llm_api_key
    if sandbox_token:
        envs["SANDBOX_JWT"] = sandbox_token
    if scope_id:
        envs["SCOPE_ID"] = scope_id
    if session_id:
        envs["SESSION_ID"] = session_id
    return envs


_provisioners: dict[str, EnvironmentProvisioner] = {}


def get_provisioner(config: Optional[AppConfig] = None) -> EnvironmentProvisioner:
    """Return the provisioner for the configured ``SANDBOX_BACKEND``."""
    config = config or get_config()
    backend = config.sandbox_backend
    if backend not in _provisioners:
        if backend == "local":
            from .local_provisioner import LocalProvisioner

            _provisioners[backend] = LocalProvisioner(root=config.local_sandbox_root)
        else:
            from .e2b_provisioner import E2BProvisioner

            _provisioners[backend] = E2BProvisioner(agent_port=config.agent_server_port)
        logger.info(f"Using {backend} environment provisioner")
    return _provisioners[backend]


__all__ = [
    "CommandResult",
    "EnvironmentHandle",
    "EnvironmentProvisioner",
    "HandleOrId",
    "ProvisionerError",
    "environment_vars",
    "get_provisioner",
    "safe_kill",
]
