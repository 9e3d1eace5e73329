import asyncio
import json
import signal
import sys

import pytest

from toolhost.config.models import HostTimeouts, ServerConfig
from toolhost.core import events
from toolhost.core.errors import (
    ConnectionLost,
    ErrorKind,
    HandshakeFailure,
    NotRunning,
    RequestTimeout,
    SpawnFailure,
    ToolError,
    ToolNotFound,
)
from toolhost.core.events import EventBus
from toolhost.mcp.supervisor import ServerStatus, ServerSupervisor, _flatten_content


def _text(result) -> str:
    return result["content"][0]["text"]


def _track_spawns(supervisor):
    """Record every process the supervisor launches."""
    spawned = []
    original = supervisor._spawn

    async def spawn():
        process = await original()
        spawned.append(process)
        return process

    supervisor._spawn = spawn
    return spawned


@pytest.mark.asyncio
async def test_ping_only_server_lifecycle(echo_config, fast_timeouts):
    sup = ServerSupervisor(echo_config(mode="ping_only"), timeouts=fast_timeouts)
    try:
        await sup.start()
        assert sup.status == ServerStatus.RUNNING
        assert [t.name for t in sup.tools] == ["ping"]
        assert sup.pid is not None
        assert sup.protocol_version == "2024-11-05"
        assert sup.server_info["name"] == "echo-tool-server"

        result = await sup.execute("ping", {})
        assert _text(result) == "pong"
        assert result["isError"] is False
    finally:
        await sup.stop()

    assert sup.status == ServerStatus.STOPPED
    assert sup.tools == []
    assert sup.pid is None
    with pytest.raises(NotRunning):
        await sup.execute("ping", {})


@pytest.mark.asyncio
async def test_missing_command_is_spawn_failure(fast_timeouts):
    config = ServerConfig(id="ghost", command="/nonexistent/toolhost-missing-binary")
    sup = ServerSupervisor(config, timeouts=fast_timeouts)

    with pytest.raises(SpawnFailure):
        await sup.start()

    assert sup.status == ServerStatus.ERROR
    assert sup.tools == []
    assert "Failed to launch" in sup.last_error
    assert sup.snapshot().last_error == sup.last_error


@pytest.mark.asyncio
async def test_handshake_timeout_kills_process(echo_config):
    timeouts = HostTimeouts(handshake_seconds=0.5, tool_call_seconds=5.0, startup_seconds=10.0, stop_grace_seconds=2.0)
    sup = ServerSupervisor(echo_config(mode="hang_initialize"), timeouts=timeouts)
    spawned = _track_spawns(sup)

    with pytest.raises(RequestTimeout):
        await sup.start()

    assert sup.status == ServerStatus.ERROR
    assert "timed out" in sup.last_error
    assert len(spawned) == 1
    assert spawned[0].returncode is not None
    assert sup.process is None


@pytest.mark.asyncio
async def test_startup_deadline_covers_whole_launch(echo_config):
    timeouts = HostTimeouts(handshake_seconds=30.0, tool_call_seconds=5.0, startup_seconds=0.5, stop_grace_seconds=2.0)
    sup = ServerSupervisor(echo_config(mode="hang_initialize"), timeouts=timeouts)

    with pytest.raises(RequestTimeout, match="Startup"):
        await sup.start()
    assert sup.status == ServerStatus.ERROR


@pytest.mark.asyncio
@pytest.mark.parametrize("mode", ["error_initialize", "malformed_initialize", "bad_tools"])
async def test_bad_handshake_is_handshake_failure(echo_config, fast_timeouts, mode):
    sup = ServerSupervisor(echo_config(mode=mode), timeouts=fast_timeouts)
    spawned = _track_spawns(sup)

    with pytest.raises(HandshakeFailure):
        await sup.start()

    assert sup.status == ServerStatus.ERROR
    assert sup.tools == []
    assert spawned[0].returncode is not None


@pytest.mark.asyncio
async def test_zero_tools_is_running(echo_config, fast_timeouts):
    sup = ServerSupervisor(echo_config(mode="no_tools"), timeouts=fast_timeouts)
    try:
        await sup.start()
        assert sup.status == ServerStatus.RUNNING
        assert sup.tools == []
        assert sup.snapshot().tool_count == 0
    finally:
        await sup.stop()


@pytest.mark.asyncio
async def test_process_exiting_during_handshake(echo_config, fast_timeouts):
    sup = ServerSupervisor(echo_config(mode="exit_on_start"), timeouts=fast_timeouts)

    with pytest.raises(ConnectionLost):
        await sup.start()

    assert sup.status == ServerStatus.ERROR
    assert sup.last_error


@pytest.mark.asyncio
async def test_crash_while_running_moves_to_error(echo_config, fast_timeouts, wait_until):
    sup = ServerSupervisor(echo_config(), timeouts=fast_timeouts)
    await sup.start()
    try:
        with pytest.raises(ConnectionLost):
            await sup.execute("crash", {})

        assert await wait_until(lambda: sup.status == ServerStatus.ERROR)
        assert "exit code 7" in sup.last_error or "connection lost" in sup.last_error
        assert sup.tools == []
        with pytest.raises(NotRunning):
            await sup.execute("ping", {})
    finally:
        await sup.stop()

    assert sup.status == ServerStatus.STOPPED


@pytest.mark.asyncio
async def test_restart_after_crash(echo_config, fast_timeouts, wait_until):
    sup = ServerSupervisor(echo_config(), timeouts=fast_timeouts)
    await sup.start()
    try:
        with pytest.raises(ConnectionLost):
            await sup.execute("crash", {})
        assert await wait_until(lambda: sup.status == ServerStatus.ERROR)

        await sup.start()
        assert sup.status == ServerStatus.RUNNING
        assert sup.last_error is None
        assert _text(await sup.execute("ping", {})) == "pong"
    finally:
        await sup.stop()


@pytest.mark.asyncio
async def test_start_is_idempotent(echo_config, fast_timeouts):
    sup = ServerSupervisor(echo_config(), timeouts=fast_timeouts)
    spawned = _track_spawns(sup)
    try:
        await asyncio.gather(sup.start(), sup.start())
        pid = sup.pid
        await sup.start()
        assert sup.pid == pid
        assert len(spawned) == 1
    finally:
        await sup.stop()


@pytest.mark.asyncio
async def test_stop_and_start_again_uses_new_process(echo_config, fast_timeouts):
    sup = ServerSupervisor(echo_config(), timeouts=fast_timeouts)
    spawned = _track_spawns(sup)
    try:
        await sup.start()
        await sup.stop()
        assert spawned[0].returncode is not None

        await sup.start()
        assert sup.status == ServerStatus.RUNNING
        assert len(spawned) == 2
        assert _text(await sup.execute("echo", {"text": "again"})) == "again"
    finally:
        await sup.stop()


@pytest.mark.asyncio
async def test_stop_is_noop_when_stopped(echo_config, fast_timeouts):
    bus = EventBus()
    sup = ServerSupervisor(echo_config(), timeouts=fast_timeouts, event_bus=bus)
    await sup.stop()
    assert sup.status == ServerStatus.STOPPED
    assert bus.get_history(events.SERVER_STOPPED) == []


@pytest.mark.asyncio
async def test_stop_during_start(echo_config, fast_timeouts, wait_until):
    sup = ServerSupervisor(echo_config(mode="hang_initialize"), timeouts=fast_timeouts)
    spawned = _track_spawns(sup)

    start = asyncio.create_task(sup.start())
    assert await wait_until(lambda: sup.process is not None)
    assert sup.status == ServerStatus.STARTING

    await sup.stop()

    with pytest.raises(NotRunning):
        await start
    assert sup.status == ServerStatus.STOPPED
    assert sup.last_error is None
    assert spawned[0].returncode is not None


@pytest.mark.asyncio
async def test_unknown_tool_is_rejected_locally(echo_config, fast_timeouts):
    sup = ServerSupervisor(echo_config(), timeouts=fast_timeouts)
    await sup.start()
    try:
        next_id = sup._connection._next_id
        with pytest.raises(ToolNotFound):
            await sup.execute("does_not_exist", {})
        assert sup._connection._next_id == next_id
        assert sup.status == ServerStatus.RUNNING
    finally:
        await sup.stop()


@pytest.mark.asyncio
async def test_concurrent_calls_get_their_own_results(echo_config, fast_timeouts):
    sup = ServerSupervisor(echo_config(), timeouts=fast_timeouts)
    await sup.start()
    try:
        slow, fast = await asyncio.gather(
            sup.execute("sleep", {"seconds": 0.5, "label": "slow"}),
            sup.execute("sleep", {"seconds": 0.05, "label": "fast"}),
        )
        assert _text(slow) == "slow"
        assert _text(fast) == "fast"
    finally:
        await sup.stop()


@pytest.mark.asyncio
async def test_tool_call_timeout_leaves_server_running(echo_config):
    timeouts = HostTimeouts(handshake_seconds=5.0, tool_call_seconds=0.3, startup_seconds=10.0, stop_grace_seconds=2.0)
    sup = ServerSupervisor(echo_config(), timeouts=timeouts)
    await sup.start()
    try:
        with pytest.raises(RequestTimeout):
            await sup.execute("sleep", {"seconds": 1.5, "label": "late"})
        assert sup.status == ServerStatus.RUNNING
        assert _text(await sup.execute("ping", {})) == "pong"
    finally:
        await sup.stop()


@pytest.mark.asyncio
async def test_is_error_result_raises_tool_error(echo_config, fast_timeouts):
    sup = ServerSupervisor(echo_config(), timeouts=fast_timeouts)
    await sup.start()
    try:
        with pytest.raises(ToolError) as excinfo:
            await sup.execute("fail", {})
        assert excinfo.value.kind == ErrorKind.TOOL_ERROR
        assert "it broke" in excinfo.value.message
        assert excinfo.value.result["isError"] is True
    finally:
        await sup.stop()


@pytest.mark.asyncio
async def test_env_is_merged_over_parent_environment(echo_config, fast_timeouts, monkeypatch):
    monkeypatch.setenv("TOOLHOST_INHERITED", "from-parent")
    sup = ServerSupervisor(echo_config(env={"TOOLHOST_CUSTOM": "from-config"}), timeouts=fast_timeouts)
    await sup.start()
    try:
        custom = await sup.execute("env", {"name": "TOOLHOST_CUSTOM"})
        inherited = await sup.execute("env", {"name": "TOOLHOST_INHERITED"})
        assert _text(custom) == "from-config"
        assert _text(inherited) == "from-parent"
    finally:
        await sup.stop()


@pytest.mark.asyncio
async def test_stdout_noise_is_tolerated(echo_config, fast_timeouts):
    sup = ServerSupervisor(echo_config(env={"ECHO_SERVER_NOISE": "1"}), timeouts=fast_timeouts)
    await sup.start()
    try:
        assert _text(await sup.execute("echo", {"text": "still works"})) == "still works"
        assert sup._connection.framer.discarded >= 3
    finally:
        await sup.stop()


@pytest.mark.asyncio
async def test_list_changed_triggers_rediscovery(echo_config, fast_timeouts, wait_until):
    bus = EventBus()
    sup = ServerSupervisor(echo_config(), timeouts=fast_timeouts, event_bus=bus)
    await sup.start()
    try:
        assert sup.find_tool("extra") is None
        await sup.execute("add_tool", {})

        assert await wait_until(lambda: sup.find_tool("extra") is not None)
        assert _text(await sup.execute("extra", {})) == "extra"
        assert len(bus.get_history(events.TOOLS_DISCOVERED)) >= 2
    finally:
        await sup.stop()


@pytest.mark.asyncio
async def test_server_ping_is_answered(echo_config, fast_timeouts):
    sup = ServerSupervisor(echo_config(), timeouts=fast_timeouts)
    await sup.start()
    try:
        reply = json.loads(_text(await sup.execute("ping_host", {})))
        assert reply["id"] == "srv-1"
        assert reply["result"] == {}
    finally:
        await sup.stop()


@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
async def test_stop_kills_process_that_ignores_sigterm(echo_config):
    timeouts = HostTimeouts(handshake_seconds=5.0, tool_call_seconds=5.0, startup_seconds=10.0, stop_grace_seconds=0.5)
    sup = ServerSupervisor(echo_config(mode="ignore_sigterm"), timeouts=timeouts)
    await sup.start()
    process = sup.process

    await sup.stop()

    assert process.returncode == -signal.SIGKILL
    assert sup.status == ServerStatus.STOPPED


@pytest.mark.asyncio
async def test_lifecycle_events(echo_config, fast_timeouts):
    bus = EventBus()
    sup = ServerSupervisor(echo_config(), timeouts=fast_timeouts, event_bus=bus)
    await sup.start()
    await sup.stop()

    names = [e.name for e in bus.get_history()]
    assert names == [
        events.SERVER_STARTING,
        events.TOOLS_DISCOVERED,
        events.SERVER_STARTED,
        events.SERVER_STOPPED,
    ]
    started = bus.get_history(events.SERVER_STARTED)[0]
    assert started.source == "echo"
    assert started.data["status"] == "running"


@pytest.mark.asyncio
async def test_failed_start_emits_error_event(fast_timeouts):
    bus = EventBus()
    sup = ServerSupervisor(ServerConfig(id="ghost", command="/nonexistent/toolhost-missing-binary"),
                           timeouts=fast_timeouts, event_bus=bus)
    with pytest.raises(SpawnFailure):
        await sup.start()

    errors = bus.get_history(events.SERVER_ERROR)
    assert len(errors) == 1
    assert errors[0].data["kind"] == "spawn_failure"
    assert errors[0].data["status"] == "error"


@pytest.mark.asyncio
async def test_tools_are_copies(echo_config, fast_timeouts):
    sup = ServerSupervisor(echo_config(), timeouts=fast_timeouts)
    await sup.start()
    try:
        tools = sup.tools
        tools[0].input_schema["tampered"] = True
        tools.clear()
        assert len(sup.tools) > 0
        assert "tampered" not in sup.tools[0].input_schema
    finally:
        await sup.stop()


def test_flatten_content():
    assert _flatten_content([{"type": "text", "text": " a "}, {"type": "text", "text": "b"}]) == "a\nb"
    assert _flatten_content(None) == ""
    assert _flatten_content("plain") == "plain"


@pytest.mark.asyncio
async def test_deeply_nested_stdout_line_is_skipped(echo_config, fast_timeouts):
    sup = ServerSupervisor(echo_config(), timeouts=fast_timeouts)
    await sup.start()
    try:
        assert _text(await sup.execute("deep_noise", {})) == "still here"
        assert sup.status == ServerStatus.RUNNING
        assert sup.last_error is None
        assert _text(await sup.execute("ping", {})) == "pong"
    finally:
        await sup.stop()


@pytest.mark.asyncio
async def test_long_stderr_output_keeps_being_drained(echo_config, fast_timeouts):
    sup = ServerSupervisor(echo_config(), timeouts=fast_timeouts)
    await sup.start()
    try:
        # Each call writes far more than a pipe buffer; the child only gets to answer if stderr is read.
        for _ in range(3):
            assert _text(await sup.execute("stderr_flood", {})) == "flooded"
        assert _text(await sup.execute("ping", {})) == "pong"
    finally:
        await sup.stop()


@pytest.mark.asyncio
async def test_clean_exit_moves_to_stopped(echo_config, fast_timeouts, wait_until):
    bus = EventBus()
    sup = ServerSupervisor(echo_config(), timeouts=fast_timeouts, event_bus=bus)
    await sup.start()
    try:
        assert _text(await sup.execute("quit", {})) == "bye"

        assert await wait_until(lambda: sup.status == ServerStatus.STOPPED)
        assert sup.last_error is None
        assert sup.tools == []
        assert sup.pid is None
        with pytest.raises(NotRunning):
            await sup.execute("ping", {})

        assert await wait_until(lambda: bus.get_history(events.SERVER_STOPPED))
        assert bus.get_history(events.SERVER_ERROR) == []
        assert bus.get_history(events.SERVER_STOPPED)[0].data["reason"] == "process exited with exit code 0"

        await sup.start()
        assert _text(await sup.execute("ping", {})) == "pong"
    finally:
        await sup.stop()
