"""
Agent Dispatch Client
=====================

Asks the external agent runtime to start a worker for one pipeline step.

The request is one-shot: we wait for the runtime to acknowledge that the
worker began, never for the work itself. The worker reports back through the
callback URLs embedded in its instructions. Failures are raised as
``DispatchError`` and are not retried here.

Backends:
- GatewayDispatchBackend: HTTP call to the runtime's gateway (httpx)
- CliDispatchBackend: runs the runtime's CLI and parses its JSON output
"""

import asyncio
import json
import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
import structlog

from hive.core.config import Settings
from hive.core.pipeline.errors import DispatchError

logger = structlog.get_logger()


# Keys the runtime has used for the session handle in its responses
SESSION_KEY_FIELDS = ("sessionKey", "session_key", "key", "sessionId", "session_id", "id")


@dataclass
class DispatchHandle:
    """Acknowledgment that a worker was started."""
    session_key: str
    raw: Dict[str, Any] = field(default_factory=dict)


def extract_session_key(payload: Any) -> Optional[str]:
    """Find the session handle in a runtime response, if there is one."""
    if not isinstance(payload, dict):
        return None
    for name in SESSION_KEY_FIELDS:
        value = payload.get(name)
        if value:
            return str(value)
    nested = payload.get("session")
    if isinstance(nested, dict):
        return extract_session_key(nested)
    return None


# ==========================================================================
# Dispatcher Interface
# ==========================================================================

class AgentDispatcher(ABC):
    """Abstract interface for starting workers in the agent runtime."""

    @abstractmethod
    async def start(
        self,
        instruction: str,
        *,
        model: str,
        label: str,
        workdir: Optional[str] = None,
    ) -> DispatchHandle:
        """Request that one worker starts. Returns its handle."""
        pass

    async def close(self) -> None:
        """Release any held resources."""
        return None


# ==========================================================================
# Gateway Backend (HTTP)
# ==========================================================================

class GatewayDispatchBackend(AgentDispatcher):
    """
    Starts workers through the agent runtime's HTTP gateway.

    POST {gateway}/api/sessions/spawn
        {"task": ..., "model": ..., "label": ..., "cwd": ...}
    """

    SPAWN_PATH = "/api/sessions/spawn"

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def start(
        self,
        instruction: str,
        *,
        model: str,
        label: str,
        workdir: Optional[str] = None,
    ) -> DispatchHandle:
        payload: Dict[str, Any] = {"task": instruction, "model": model, "label": label}
        if workdir:
            payload["cwd"] = workdir

        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            response = await self._client.post(
                f"{self.base_url}{self.SPAWN_PATH}",
                json=payload,
                headers=headers,
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.error("agent_dispatch_transport_error", label=label, error=str(e))
            raise DispatchError(f"Agent gateway unreachable: {e}") from e

        if response.status_code >= 400:
            logger.warning(
                "agent_dispatch_rejected",
                label=label,
                status_code=response.status_code,
            )
            raise DispatchError(
                f"Agent gateway returned {response.status_code}: {response.text[:500]}"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise DispatchError("Agent gateway returned a non-JSON response") from e

        session_key = extract_session_key(body)
        if not session_key:
            raise DispatchError("Agent gateway response did not include a session key")

        logger.info("agent_dispatched", backend="gateway", label=label, session_key=session_key)
        return DispatchHandle(session_key=session_key, raw=body)

    async def close(self) -> None:
        await self._client.aclose()


# ==========================================================================
# CLI Backend (subprocess)
# ==========================================================================

class CliDispatchBackend(AgentDispatcher):
    """
    Starts workers by running the agent runtime's CLI.

    The instruction is written to the CLI's stdin; stdout is parsed as JSON
    and, failing that, used verbatim as the handle.
    """

    def __init__(self, command: str, timeout: float = 60.0):
        self.argv: List[str] = shlex.split(command)
        if not self.argv:
            raise ValueError("Agent CLI command is empty")
        self.timeout = timeout

    def build_argv(self, *, model: str, label: str, workdir: Optional[str]) -> List[str]:
        argv = [*self.argv, "--model", model, "--label", label]
        if workdir:
            argv += ["--cwd", workdir]
        return argv

    async def start(
        self,
        instruction: str,
        *,
        model: str,
        label: str,
        workdir: Optional[str] = None,
    ) -> DispatchHandle:
        argv = self.build_argv(model=model, label=label, workdir=workdir)

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            logger.error("agent_cli_spawn_failed", command=argv[0], error=str(e))
            raise DispatchError(f"Could not run agent CLI '{argv[0]}': {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(input=instruction.encode()),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            logger.error("agent_cli_timeout", label=label, timeout=self.timeout)
            raise DispatchError(f"Agent CLI did not respond within {self.timeout:.0f}s") from e

        out = stdout.decode(errors="replace").strip()
        err = stderr.decode(errors="replace").strip()

        if proc.returncode != 0:
            logger.warning("agent_cli_failed", label=label, returncode=proc.returncode)
            raise DispatchError(err or out or f"Agent CLI exited with code {proc.returncode}")

        try:
            body = json.loads(out)
        except ValueError:
            body = {"raw": out}

        session_key = extract_session_key(body) or out
        if not session_key:
            raise DispatchError("Agent CLI produced no session handle")

        logger.info("agent_dispatched", backend="cli", label=label, session_key=session_key)
        return DispatchHandle(session_key=session_key, raw=body if isinstance(body, dict) else {"raw": body})


# ==========================================================================
# Factory
# ==========================================================================

def create_dispatcher(settings: Settings) -> AgentDispatcher:
    """Create the dispatcher configured by ``AGENT_DISPATCH_BACKEND``."""
    if settings.AGENT_DISPATCH_BACKEND == "gateway":
        return GatewayDispatchBackend(
            base_url=settings.AGENT_GATEWAY_URL,
            token=settings.AGENT_GATEWAY_TOKEN,
            timeout=settings.AGENT_DISPATCH_TIMEOUT_SECONDS,
        )
    return CliDispatchBackend(
        command=settings.AGENT_CLI_COMMAND,
        timeout=settings.AGENT_DISPATCH_TIMEOUT_SECONDS,
    )
