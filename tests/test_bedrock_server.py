import asyncio
import subprocess
import time

from bedrock_manager.services import bedrock_server, server_layout
from bedrock_manager.services.bedrock_server import BedrockSupervisor

# Behaves like the console of a dedicated server: echoes commands, quits on "stop".
CONSOLE_SCRIPT = """
echo "Server started."
echo "boot warning" >&2
while read line; do
  echo "cmd: $line"
  if [ "$line" = "stop" ]; then
    echo "Quit correctly"
    exit 0
  fi
done
"""

# Ignores both the stop command and SIGTERM.
STUBBORN_SCRIPT = """
trap '' TERM
echo "Server started."
while true; do
  read line || exit 3
done
"""

CRASHING_SCRIPT = """
echo "fatal: world corrupted" >&2
exit 3
"""


def _install_fake_server(tmp_path, monkeypatch, instance_id: int, script: str):
    monkeypatch.setattr(server_layout, "SERVERS_DIR", tmp_path / "servers")
    monkeypatch.setattr(bedrock_server, "START_GRACE_SEC", 0.3)
    server_dir = server_layout.ensure_server_dir(instance_id)
    executable = server_dir / server_layout.EXECUTABLE_NAME
    executable.write_text("#!/bin/sh\n" + script)
    executable.chmod(0o755)
    return executable


async def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.05)
    return predicate()


def _messages(supervisor: BedrockSupervisor, instance_id: int) -> list:
    return [entry["message"] for entry in supervisor.get_logs(instance_id)]


def test_start_without_executable_reports_not_installed(tmp_path, monkeypatch):
    monkeypatch.setattr(server_layout, "SERVERS_DIR", tmp_path / "servers")

    async def scenario():
        supervisor = BedrockSupervisor()
        result = await supervisor.start_server(1, 19132)
        assert result["success"] is False
        assert result["error_code"] == "not_installed"
        assert supervisor.running_ids() == []

    asyncio.run(scenario())


def test_console_round_trip(tmp_path, monkeypatch):
    _install_fake_server(tmp_path, monkeypatch, 7, CONSOLE_SCRIPT)

    async def scenario():
        supervisor = BedrockSupervisor()
        try:
            result = await supervisor.start_server(7, 19132, auto_restart=False)
            assert result["success"] is True
            assert supervisor.is_running(7)
            assert supervisor.get_process(7).pid == result["pid"]

            assert await _wait_for(lambda: "Server started." in _messages(supervisor, 7))
            assert "ERROR: boot warning" in _messages(supervisor, 7)

            sent = await supervisor.send_command(7, "list")
            assert sent["success"] is True
            assert await _wait_for(lambda: "cmd: list" in _messages(supervisor, 7))
            assert "> list" in _messages(supervisor, 7)

            stopped = await supervisor.stop_server(7)
            assert stopped["success"] is True
            assert not supervisor.is_running(7)
            assert supervisor.get_logs(7) == []
        finally:
            await supervisor.shutdown()

    asyncio.run(scenario())


def test_second_start_is_rejected(tmp_path, monkeypatch):
    _install_fake_server(tmp_path, monkeypatch, 2, CONSOLE_SCRIPT)

    async def scenario():
        supervisor = BedrockSupervisor()
        try:
            first = await supervisor.start_server(2, 19132)
            second = await supervisor.start_server(2, 19132)

            assert first["success"] is True
            assert second["success"] is False
            assert second["error_code"] == "already_running"
            assert supervisor.running_ids() == [2]
            assert supervisor.get_process(2).pid == first["pid"]
        finally:
            await supervisor.shutdown()

    asyncio.run(scenario())


def test_concurrent_starts_spawn_one_process(tmp_path, monkeypatch):
    _install_fake_server(tmp_path, monkeypatch, 4, CONSOLE_SCRIPT)

    async def scenario():
        supervisor = BedrockSupervisor()
        try:
            results = await asyncio.gather(
                supervisor.start_server(4, 19132),
                supervisor.start_server(4, 19132),
            )
            successes = [r for r in results if r["success"]]
            rejections = [r for r in results if not r["success"]]

            assert len(successes) == 1
            assert [r["error_code"] for r in rejections] == ["already_running"]
            assert supervisor.running_ids() == [4]
            assert supervisor.get_process(4).pid == successes[0]["pid"]
        finally:
            await supervisor.shutdown()

    asyncio.run(scenario())


def test_spawn_failure_leaves_auto_restart_alone(tmp_path, monkeypatch):
    _install_fake_server(tmp_path, monkeypatch, 5, CONSOLE_SCRIPT)

    async def _refuse_spawn(*args, **kwargs):
        raise PermissionError("exec format error")

    monkeypatch.setattr(bedrock_server.asyncio, "create_subprocess_exec", _refuse_spawn)

    async def scenario():
        supervisor = BedrockSupervisor()
        supervisor.set_auto_restart(5, True)

        result = await supervisor.start_server(5, 19132, auto_restart=False)

        assert result["error_code"] == "spawn_failed"
        assert supervisor.is_auto_restart_enabled(5) is True
        assert supervisor.running_ids() == []

    asyncio.run(scenario())


def test_multi_line_command_is_rejected(tmp_path, monkeypatch):
    _install_fake_server(tmp_path, monkeypatch, 3, CONSOLE_SCRIPT)

    async def scenario():
        supervisor = BedrockSupervisor()
        try:
            await supervisor.start_server(3, 19132)
            result = await supervisor.send_command(3, "say hi\nstop")
            assert result["success"] is False
            assert result["error_code"] == "invalid_command"
            assert supervisor.is_running(3)
        finally:
            await supervisor.shutdown()

    asyncio.run(scenario())


def test_command_to_stopped_server_fails():
    async def scenario():
        result = await BedrockSupervisor().send_command(9, "list")
        assert result["error_code"] == "not_running"

    asyncio.run(scenario())


def test_process_that_dies_during_grace_period_fails_start(tmp_path, monkeypatch):
    _install_fake_server(tmp_path, monkeypatch, 4, CRASHING_SCRIPT)

    async def scenario():
        supervisor = BedrockSupervisor()
        result = await supervisor.start_server(4, 19132, auto_restart=False)

        assert result["success"] is False
        assert result["error_code"] == "process_exited_early"
        assert result["exit_code"] == 3
        assert supervisor.running_ids() == []

    asyncio.run(scenario())


def test_stop_escalates_to_kill(tmp_path, monkeypatch):
    _install_fake_server(tmp_path, monkeypatch, 5, STUBBORN_SCRIPT)
    monkeypatch.setattr(bedrock_server, "STOP_TERMINATE_AFTER_SEC", 0.3)
    monkeypatch.setattr(bedrock_server, "STOP_KILL_AFTER_SEC", 0.6)

    async def scenario():
        supervisor = BedrockSupervisor()
        try:
            started = await supervisor.start_server(5, 19132)
            assert started["success"] is True

            result = await supervisor.stop_server(5)

            assert result["success"] is True
            assert not supervisor.is_running(5)
        finally:
            await supervisor.shutdown()

    asyncio.run(scenario())


def test_start_terminates_stray_process(tmp_path, monkeypatch):
    executable = _install_fake_server(tmp_path, monkeypatch, 6, CONSOLE_SCRIPT)
    stray = subprocess.Popen(
        [str(executable)],
        stdin=subprocess.PIPE,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )

    async def scenario():
        supervisor = BedrockSupervisor()
        try:
            result = await supervisor.start_server(6, 19132)
            assert result["success"] is True
            assert result["pid"] != stray.pid
        finally:
            await supervisor.shutdown()

    try:
        asyncio.run(scenario())
        assert stray.wait(timeout=5) is not None
    finally:
        if stray.poll() is None:
            stray.kill()
            stray.wait()


def test_log_tail_is_limited(tmp_path, monkeypatch):
    _install_fake_server(tmp_path, monkeypatch, 8, CONSOLE_SCRIPT)

    async def scenario():
        supervisor = BedrockSupervisor()
        try:
            await supervisor.start_server(8, 19132)
            for i in range(5):
                await supervisor.send_command(8, f"say {i}")
            assert await _wait_for(lambda: "cmd: say 4" in _messages(supervisor, 8))

            tail = supervisor.get_logs(8, 2)
            assert len(tail) == 2
            assert tail[-1]["message"] == "cmd: say 4"
            assert supervisor.get_logs(8, 0) == []
        finally:
            await supervisor.shutdown()

    asyncio.run(scenario())
