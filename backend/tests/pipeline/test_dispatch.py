"""
Hive - Agent Dispatch Tests
===========================

Gateway backend against an httpx mock transport, CLI backend against small
scripts run with the current interpreter.
"""

import json
import shlex
import sys

import httpx
import pytest

from hive.core.config import Settings
from hive.core.pipeline.dispatch import (
    CliDispatchBackend,
    GatewayDispatchBackend,
    create_dispatcher,
    extract_session_key,
)
from hive.core.pipeline.errors import DispatchError


# ==========================================================================
# Session Key Extraction
# ==========================================================================

class TestExtractSessionKey:
    @pytest.mark.parametrize(
        "payload,expected",
        [
            ({"sessionKey": "agent:main:1"}, "agent:main:1"),
            ({"session_key": "abc"}, "abc"),
            ({"id": 17}, "17"),
            ({"session": {"key": "nested"}}, "nested"),
            ({"ok": True}, None),
            ("plain", None),
        ],
    )
    def test_extract(self, payload, expected):
        assert extract_session_key(payload) == expected


# ==========================================================================
# Gateway Backend
# ==========================================================================

def _gateway(handler, token="gw-secret") -> GatewayDispatchBackend:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GatewayDispatchBackend("http://gateway.local/", token=token, client=client)


class TestGatewayDispatch:
    async def test_spawn_request(self):
        """Instruction, model, label and cwd go to the spawn endpoint."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"sessionKey": "agent:hive:42"})

        backend = _gateway(handler)
        handle = await backend.start(
            "do the thing",
            model="sonnet",
            label="hive-task-1-implement-run-1",
            workdir="/srv/repo",
        )
        await backend.close()

        assert handle.session_key == "agent:hive:42"
        assert seen["url"] == "http://gateway.local/api/sessions/spawn"
        assert seen["auth"] == "Bearer gw-secret"
        assert seen["body"] == {
            "task": "do the thing",
            "model": "sonnet",
            "label": "hive-task-1-implement-run-1",
            "cwd": "/srv/repo",
        }

    async def test_no_token_no_auth_header(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert "Authorization" not in request.headers
            assert "cwd" not in json.loads(request.content)
            return httpx.Response(201, json={"session": {"id": "s-1"}})

        handle = await _gateway(handler, token=None).start("x", model="m", label="l")
        assert handle.session_key == "s-1"

    async def test_error_status(self):
        backend = _gateway(lambda request: httpx.Response(503, text="overloaded"))

        with pytest.raises(DispatchError, match="503"):
            await backend.start("x", model="m", label="l")

    async def test_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(DispatchError, match="unreachable"):
            await _gateway(handler).start("x", model="m", label="l")

    async def test_invalid_gateway_url(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200)))
        backend = GatewayDispatchBackend("http://gateway.local:99999", client=client)

        with pytest.raises(DispatchError, match="unreachable"):
            await backend.start("x", model="m", label="l")

    async def test_non_json_body(self):
        backend = _gateway(lambda request: httpx.Response(200, text="<html>ok</html>"))

        with pytest.raises(DispatchError, match="non-JSON"):
            await backend.start("x", model="m", label="l")

    async def test_missing_session_key(self):
        backend = _gateway(lambda request: httpx.Response(200, json={"ok": True}))

        with pytest.raises(DispatchError, match="session key"):
            await backend.start("x", model="m", label="l")


# ==========================================================================
# CLI Backend
# ==========================================================================

def _cli(tmp_path, source: str, timeout: float = 10.0) -> CliDispatchBackend:
    script = tmp_path / "fake_agent_cli.py"
    script.write_text(source)
    command = f"{shlex.quote(sys.executable)} {shlex.quote(str(script))}"
    return CliDispatchBackend(command, timeout=timeout)


class TestCliDispatch:
    async def test_json_output(self, tmp_path):
        """Instruction arrives on stdin; flags are appended to the command."""
        backend = _cli(
            tmp_path,
            "import json, sys\n"
            "prompt = sys.stdin.read()\n"
            "print(json.dumps({'sessionKey': 'cli-1', 'argv': sys.argv[1:], 'prompt': prompt}))\n",
        )

        handle = await backend.start("hello agent", model="opus", label="run-9", workdir="/srv/repo")

        assert handle.session_key == "cli-1"
        assert handle.raw["prompt"] == "hello agent"
        assert handle.raw["argv"] == ["--model", "opus", "--label", "run-9", "--cwd", "/srv/repo"]

    async def test_raw_output_fallback(self, tmp_path):
        backend = _cli(tmp_path, "import sys\nsys.stdin.read()\nprint('session-raw-77')\n")

        handle = await backend.start("x", model="m", label="l")

        assert handle.session_key == "session-raw-77"
        assert handle.raw == {"raw": "session-raw-77"}

    async def test_nonzero_exit_uses_stderr(self, tmp_path):
        backend = _cli(
            tmp_path,
            "import sys\nsys.stdin.read()\nsys.stderr.write('gateway closed')\nsys.exit(3)\n",
        )

        with pytest.raises(DispatchError, match="gateway closed"):
            await backend.start("x", model="m", label="l")

    async def test_timeout(self, tmp_path):
        backend = _cli(tmp_path, "import time\ntime.sleep(30)\n", timeout=0.5)

        with pytest.raises(DispatchError, match="did not respond"):
            await backend.start("x", model="m", label="l")

    async def test_missing_binary(self):
        backend = CliDispatchBackend("/nonexistent/agent-cli spawn")

        with pytest.raises(DispatchError, match="Could not run"):
            await backend.start("x", model="m", label="l")

    def test_empty_command_rejected(self):
        with pytest.raises(ValueError):
            CliDispatchBackend("   ")


# ==========================================================================
# Factory
# ==========================================================================

class TestCreateDispatcher:
    def test_cli_backend(self):
        dispatcher = create_dispatcher(Settings(AGENT_DISPATCH_BACKEND="cli", AGENT_CLI_COMMAND="agent spawn"))
        assert isinstance(dispatcher, CliDispatchBackend)
        assert dispatcher.argv == ["agent", "spawn"]

    async def test_gateway_backend(self):
        dispatcher = create_dispatcher(
            Settings(AGENT_DISPATCH_BACKEND="gateway", AGENT_GATEWAY_URL="http://gw:18789/")
        )
        assert isinstance(dispatcher, GatewayDispatchBackend)
        assert dispatcher.base_url == "http://gw:18789"
        await dispatcher.close()
