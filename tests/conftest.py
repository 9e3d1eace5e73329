import asyncio
import sys
from pathlib import Path

import pytest

ECHO_SERVER = Path(__file__).resolve().parent / "fixtures" / "echo_tool_server.py"
FASTMCP_SERVER = Path(__file__).resolve().parent / "fixtures" / "fake_mcp_server.py"


def pytest_configure():
    # Ensure `src/` is on sys.path so `import toolhost` works without an editable install.
    root = Path(__file__).resolve().parent.parent
    src = root / "src"
    if src.exists():
        p = str(src)
        if p not in sys.path:
            sys.path.insert(0, p)


@pytest.fixture
def echo_config():
    """Factory for ServerConfigs that launch tests/fixtures/echo_tool_server.py."""
    from toolhost.config.models import ServerConfig

    def make(server_id: str = "echo", mode: str = "normal", env=None, **kwargs) -> ServerConfig:
        merged = {"ECHO_SERVER_MODE": mode}
        merged.update(env or {})
        return ServerConfig(
            id=server_id,
            name=kwargs.pop("name", f"Echo {server_id}"),
            command=sys.executable,
            args=["-u", str(ECHO_SERVER)],
            env=merged,
            **kwargs,
        )

    return make


@pytest.fixture
def fast_timeouts():
    from toolhost.config.models import HostTimeouts

    return HostTimeouts(
        handshake_seconds=5.0,
        tool_call_seconds=5.0,
        startup_seconds=10.0,
        stop_grace_seconds=2.0,
    )


@pytest.fixture
def wait_until():
    async def _wait(predicate, timeout: float = 5.0, interval: float = 0.02) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if predicate():
                return True
            await asyncio.sleep(interval)
        return predicate()

    return _wait
